"""
Results archive.

Copies the score history of soft-ended sessions into PostgreSQL so
presenters can look up their results after the live document is gone.
"""
from datetime import datetime, timezone

from sqlalchemy import delete, select

from classvote.models.session import SessionDoc
from classvote.models.session_archive import ArchivedScore
from classvote.services.database import get_db


class ResultsArchive:
    """Read/write access to archived presenter scores."""

    async def archive_session(self, session_id: str, doc: SessionDoc) -> int:
        """
        Store every recorded round of a session.

        Re-archiving the same session replaces its rows.

        Returns:
            Number of rows written
        """
        created_at = datetime.fromtimestamp(doc.created_at, tz=timezone.utc)
        rows = [
            ArchivedScore(
                session_id=session_id,
                admin_uid=doc.admin_uid,
                position=position,
                presenter_name=score.name,
                presenter_uid=score.uid,
                likes=score.likes,
                dislikes=score.dislikes,
                net_score=score.net_score,
                session_created_at=created_at,
            )
            for position, score in enumerate(doc.presenter_scores)
        ]
        async with get_db() as db:
            await db.execute(delete(ArchivedScore).where(ArchivedScore.session_id == session_id))
            db.add_all(rows)
        return len(rows)

    async def results_for_presenter(self, uid: str, limit: int = 50) -> list[dict]:
        """Rounds credited to one account, newest session first."""
        async with get_db() as db:
            query = (
                select(ArchivedScore)
                .where(ArchivedScore.presenter_uid == uid)
                .order_by(ArchivedScore.session_created_at.desc(), ArchivedScore.presenter_name)
                .limit(limit)
            )
            result = await db.execute(query)
            return [row.to_dict() for row in result.scalars().all()]

    async def recent(self, limit: int = 20) -> list[dict]:
        async with get_db() as db:
            query = select(ArchivedScore).order_by(ArchivedScore.archived_at.desc()).limit(limit)
            result = await db.execute(query)
            return [row.to_dict() for row in result.scalars().all()]


results_archive = ResultsArchive()
