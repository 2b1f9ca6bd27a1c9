"""
Result listings: the admin dashboard, a presenter's own results, and the
archive of ended sessions.
"""
from fastapi import APIRouter, Depends, HTTPException

from classvote.services.identity import Actor, require_actor
from classvote.services.sessions import session_service

router = APIRouter()


def _signed_in(actor: Actor = Depends(require_actor)) -> Actor:
    if actor.is_anonymous:
        raise HTTPException(status_code=403, detail="Sign in to view your sessions and results")
    return actor


@router.get("/dashboard")
async def admin_dashboard(actor: Actor = Depends(_signed_in)):
    """Sessions administered by the caller, newest first."""
    sessions = await session_service.list_admin_sessions(actor)
    return {
        "sessions": [
            {
                "session_id": session_id,
                "created_at": doc.created_at,
                "session_type": doc.session_type.value,
                "session_ended": doc.session_ended,
                "is_permanently_saved": doc.is_permanently_saved,
                "participant_count": len(doc.participants),
                "presenter_count": len(doc.presenter_queue),
                "presenter_scores": [score.model_dump() for score in doc.presenter_scores],
            }
            for session_id, doc in sessions
        ]
    }


@router.get("/mine")
async def my_results(actor: Actor = Depends(_signed_in)):
    """Every recorded round credited to the caller's account."""
    return {"results": await session_service.presenter_history(actor)}


@router.get("/history")
async def results_history(limit: int = 20):
    """Most recently archived presenter scores."""
    limit = min(limit, 50)
    if session_service.archive is None:
        return {"results": []}
    return {"results": await session_service.archive.recent(limit)}
