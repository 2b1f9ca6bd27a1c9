"""
Session service: lifecycle, participants, presenter queue, votes.

Every mutation is a read-modify-write inside a store transaction so the
queue engine always sees the document it is changing. Votes are the
exception: they are conditional increments, see `vote`. Admin operations from
anyone but the session's admin are dropped without touching the store and
reported back as `applied=False`.
"""
import logging
import secrets
import time
from collections.abc import Callable
from contextlib import asynccontextmanager
from dataclasses import dataclass
from datetime import datetime, timezone

from classvote.config import settings
from classvote.core import queue_engine
from classvote.core.access import has_joined, is_admin, results_visible_to
from classvote.core.queue_engine import Transition
from classvote.core.votes import VoteKind, cast_vote, presenter_results, rank, vote_conditions
from classvote.errors import (
    ActionInProgress,
    NicknameTaken,
    ResultsHidden,
    SessionNotFound,
    StoreUnavailable,
    ValidationFailed,
    VoteRejected,
)
from classvote.models.session import (
    Participant,
    PresenterScore,
    QueueEntry,
    SessionDoc,
    SessionKind,
    VotingMode,
)
from classvote.services.archive import ResultsArchive, results_archive
from classvote.services.identity import Actor
from classvote.services.session_store import (
    DELETE_FIELD,
    ArrayRemove,
    SessionStore,
    session_store,
)

logger = logging.getLogger(__name__)


@dataclass
class Outcome:
    """Result of an admin operation."""
    applied: bool
    session: SessionDoc | None
    recorded: PresenterScore | None = None
    deleted: bool = False


def generate_session_code() -> str:
    """Six digit, human-shareable session code."""
    return str(100000 + secrets.randbelow(900000))


class SessionService:
    """Operations on live session documents."""

    def __init__(self, store: SessionStore, archive: ResultsArchive | None = None):
        self.store = store
        self.archive = archive
        self._processing: set[tuple[str, str]] = set()

    @asynccontextmanager
    async def _guard(self, session_id: str, action: str):
        """Reject a second concurrent run of the same action on the same session."""
        key = (session_id, action)
        if key in self._processing:
            raise ActionInProgress(f"'{action}' is already being processed for session {session_id}")
        self._processing.add(key)
        try:
            yield
        finally:
            self._processing.discard(key)

    async def get_session(self, session_id: str) -> SessionDoc:
        data = await self.store.get(session_id)
        if data is None:
            raise SessionNotFound(session_id)
        return SessionDoc.from_store(data)

    # --- Lifecycle ---

    async def create_session(
        self,
        actor: Actor,
        kind: SessionKind = SessionKind.QUICK,
        voting_mode: VotingMode = VotingMode.SINGLE,
    ) -> tuple[str, SessionDoc]:
        if kind is SessionKind.ACCOUNT and actor.is_anonymous:
            raise ValidationFailed("Creating an account session requires signing in")

        doc = SessionDoc(
            admin_uid=actor.uid,
            created_at=time.time(),
            session_type=kind,
            voting_mode=voting_mode,
        )
        for _ in range(settings.session_code_attempts):
            session_id = generate_session_code()
            if await self.store.create(session_id, doc.to_store()):
                logger.info("Created %s session %s for %s", kind.value, session_id, actor.uid)
                return session_id, doc
            logger.debug("Session code %s already taken, retrying", session_id)
        raise StoreUnavailable("Could not allocate a free session code")

    async def end_session(self, session_id: str, actor: Actor) -> Outcome:
        """
        End a session.

        Quick sessions that were not saved are deleted outright. Everything
        else is soft-ended: the active presenter's round is recorded, the
        session is flagged as ended and its scores are archived. A failed
        delete falls back to soft-ending.
        """
        async with self._guard(session_id, "end"):
            doc = await self.get_session(session_id)
            if not is_admin(actor, doc):
                logger.info("Ignoring end of %s by non-admin %s", session_id, actor.uid)
                return Outcome(False, doc)
            if doc.session_ended:
                return Outcome(False, doc)

            disposable = doc.session_type is SessionKind.QUICK and not doc.is_permanently_saved
            if disposable:
                try:
                    await self.store.delete(session_id)
                    logger.info("Deleted quick session %s", session_id)
                    return Outcome(True, None, deleted=True)
                except StoreUnavailable as e:
                    logger.warning("Delete of %s failed (%s), soft-ending instead", session_id, e)

            try:
                outcome = await self._apply(session_id, actor, queue_engine.finalize_for_end)
            except SessionNotFound:
                if not disposable:
                    raise
                # the delete went through, only its reply was lost
                logger.info("Quick session %s is already gone", session_id)
                return Outcome(True, None, deleted=True)
            if outcome.applied:
                logger.info("Session %s ended", session_id)
                await self._archive(session_id, outcome.session)
            return outcome

    async def _archive(self, session_id: str, doc: SessionDoc | None) -> None:
        if self.archive is None or doc is None or not doc.presenter_scores:
            return
        try:
            count = await self.archive.archive_session(session_id, doc)
            logger.info("Archived %d presenter scores for %s", count, session_id)
        except Exception as e:
            logger.warning("Failed to archive results of %s: %s", session_id, e)

    async def list_admin_sessions(self, actor: Actor) -> list[tuple[str, SessionDoc]]:
        rows = await self.store.query({"adminUid": actor.uid}, order_by="createdAt", descending=True)
        return [(session_id, SessionDoc.from_store(data)) for session_id, data in rows]

    # --- Participants ---

    async def join_session(self, session_id: str, actor: Actor, nickname: str) -> SessionDoc:
        """
        Register `actor` under `nickname`.

        Nicknames are unique per session ignoring case and cannot be changed
        once set; repeating the same join is a no-op. The uniqueness check
        and the write happen in one store transaction.
        """
        nickname = (nickname or "").strip()
        if not nickname:
            raise ValidationFailed("Nickname cannot be empty")
        if len(nickname) > settings.nickname_max_length:
            raise ValidationFailed(f"Nickname must be at most {settings.nickname_max_length} characters")

        def mutate(current: dict) -> dict | None:
            doc = SessionDoc.from_store(current)
            if doc.session_ended:
                raise ValidationFailed("This session has already ended")
            existing = doc.participants.get(actor.uid)
            if existing and existing.nickname:
                if existing.nickname == nickname:
                    return None
                raise ValidationFailed("Your nickname is already set for this session")
            folded = nickname.casefold()
            for uid, participant in doc.participants.items():
                if uid != actor.uid and participant.nickname.casefold() == folded:
                    raise NicknameTaken(f"The nickname '{nickname}' is already taken")
            participant = Participant(
                nickname=nickname,
                joined_at=time.time(),
                uid=actor.uid,
                is_anonymous=actor.is_anonymous,
            )
            return {f"participants.{actor.uid}": participant}

        updated = await self.store.transaction(session_id, mutate)
        logger.info("%s joined %s as %r", actor.uid, session_id, nickname)
        return SessionDoc.from_store(updated)

    async def kick_participant(self, session_id: str, actor: Actor, participant_id: str) -> Outcome:
        def build(doc: SessionDoc) -> Transition | None:
            if doc.session_ended:
                return None
            if participant_id not in doc.participants:
                raise ValidationFailed(f"No participant {participant_id} in this session")
            transition = queue_engine.remove_participant_entries(doc, participant_id) or Transition()
            transition.fields[f"participants.{participant_id}"] = DELETE_FIELD
            transition.fields.setdefault("roundVoters", ArrayRemove([participant_id]))
            return transition

        async with self._guard(session_id, "kick"):
            return await self._apply(session_id, actor, build)

    # --- Presenter queue ---

    async def add_presenter(
        self,
        session_id: str,
        actor: Actor,
        participant_id: str | None = None,
        name: str | None = None,
    ) -> Outcome:
        name = (name or "").strip() or None
        if participant_id is None and name is None:
            raise ValidationFailed("A presenter needs a participant or a name")

        def build(doc: SessionDoc) -> Transition | None:
            if participant_id is None:
                return queue_engine.add_presenter(doc, QueueEntry(name=name))
            participant = doc.participants.get(participant_id)
            if participant is None:
                raise ValidationFailed(f"No participant {participant_id} in this session")
            entry = QueueEntry(
                name=name or participant.nickname,
                uid=None if participant.is_anonymous else participant.uid,
                participant_id=participant_id,
            )
            return queue_engine.add_presenter(doc, entry)

        async with self._guard(session_id, "add_presenter"):
            return await self._apply(session_id, actor, build)

    async def advance(self, session_id: str, actor: Actor) -> Outcome:
        async with self._guard(session_id, "advance"):
            return await self._apply(session_id, actor, queue_engine.advance)

    async def remove_presenter(self, session_id: str, actor: Actor, position: int) -> Outcome:
        async with self._guard(session_id, "remove_presenter"):
            return await self._apply(
                session_id, actor, lambda doc: queue_engine.remove_presenter(doc, position)
            )

    async def clear_queue(self, session_id: str, actor: Actor) -> Outcome:
        async with self._guard(session_id, "clear_queue"):
            return await self._apply(session_id, actor, queue_engine.clear_queue)

    async def reset_votes(self, session_id: str, actor: Actor) -> Outcome:
        """Zero the counters of the current presenter, or of general feedback."""
        def build(doc: SessionDoc) -> Transition | None:
            return queue_engine.reset_presenter_votes(doc) or queue_engine.reset_general_votes(doc)

        async with self._guard(session_id, "reset_votes"):
            return await self._apply(session_id, actor, build)

    async def set_round(self, session_id: str, actor: Actor, active: bool | None = None) -> Outcome:
        """Pause or resume the round; toggles when `active` is None."""
        def build(doc: SessionDoc) -> Transition | None:
            if active is None:
                return queue_engine.toggle_round(doc)
            return queue_engine.set_round_active(doc, active)

        async with self._guard(session_id, "round"):
            return await self._apply(session_id, actor, build)

    async def update_settings(
        self,
        session_id: str,
        actor: Actor,
        sounds_enabled: bool | None = None,
        results_visible: bool | None = None,
        voting_mode: VotingMode | None = None,
        permanently_saved: bool | None = None,
    ) -> Outcome:
        fields = {
            "soundsEnabled": sounds_enabled,
            "resultsVisible": results_visible,
            "votingMode": voting_mode.value if voting_mode else None,
            "isPermanentlySaved": permanently_saved,
        }
        fields = {key: value for key, value in fields.items() if value is not None}
        if not fields:
            raise ValidationFailed("No settings to update")

        def build(doc: SessionDoc) -> Transition | None:
            if doc.session_ended and set(fields) != {"isPermanentlySaved"}:
                return None
            return Transition(dict(fields))

        async with self._guard(session_id, "settings"):
            return await self._apply(session_id, actor, build)

    async def _apply(
        self,
        session_id: str,
        actor: Actor,
        build: Callable[[SessionDoc], Transition | None],
    ) -> Outcome:
        """Run an admin transition inside a store transaction."""
        result: dict = {}

        def mutate(current: dict) -> dict | None:
            result.clear()
            doc = SessionDoc.from_store(current)
            if not is_admin(actor, doc):
                return None
            transition = build(doc)
            if transition is None:
                return None
            result["recorded"] = transition.recorded
            return transition.fields

        updated = SessionDoc.from_store(await self.store.transaction(session_id, mutate))
        if "recorded" not in result:
            logger.info("No-op admin operation on %s by %s", session_id, actor.uid)
            return Outcome(False, updated)
        recorded = result["recorded"]
        if recorded is not None:
            logger.info(
                "Recorded %s on %s: %d/%d (net %d)",
                recorded.name, session_id, recorded.likes, recorded.dislikes, recorded.net_score,
            )
        return Outcome(True, updated, recorded)

    # --- Votes & results ---

    async def vote(self, session_id: str, actor: Actor, kind: VoteKind) -> SessionDoc:
        """
        Count one vote.

        The checks run against a snapshot and the increment is committed only
        if the round the snapshot showed is still the current one. Votes from
        other participants never invalidate each other, so only a round
        change makes us re-read and re-check.
        """
        for attempt in range(1, settings.store_transaction_retries + 1):
            doc = await self.get_session(session_id)
            if not has_joined(actor, doc):
                raise VoteRejected("not_joined", "Join the session with a nickname before voting.")
            fields = cast_vote(doc, actor.uid, kind)
            updated = await self.store.update(session_id, fields, vote_conditions(doc, actor.uid))
            if updated is not None:
                return SessionDoc.from_store(updated)
            logger.debug("Round of %s changed under a vote by %s (attempt %d)", session_id, actor.uid, attempt)
        raise StoreUnavailable("Session is too busy, please retry")

    async def leaderboard(self, session_id: str, actor: Actor | None) -> list[PresenterScore]:
        doc = await self.get_session(session_id)
        if not results_visible_to(actor, doc):
            raise ResultsHidden("Results for this session are hidden by the admin")
        return rank(doc.presenter_scores)

    async def presenter_history(self, actor: Actor) -> list[dict]:
        """
        Rounds credited to `actor` across live and archived sessions,
        newest session first.
        """
        rows = []
        seen = set()
        for session_id, data in await self.store.query(order_by="createdAt", descending=True):
            doc = SessionDoc.from_store(data)
            seen.add(session_id)
            for score in presenter_results(doc.presenter_scores, actor.uid):
                rows.append({
                    "session_id": session_id,
                    "session_created_at": datetime.fromtimestamp(doc.created_at, tz=timezone.utc).isoformat(),
                    **score.model_dump(),
                })
        if self.archive is not None:
            try:
                archived = await self.archive.results_for_presenter(actor.uid)
            except Exception as e:
                logger.warning("Archive lookup for %s failed: %s", actor.uid, e)
                archived = []
            rows.extend(row for row in archived if row["session_id"] not in seen)
        return rows


# Singleton instance
session_service = SessionService(session_store, results_archive)
