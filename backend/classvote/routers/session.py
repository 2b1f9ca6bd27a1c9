"""
Session routes: lifecycle, participants, presenter queue, votes.
"""

from fastapi import APIRouter, Depends
from pydantic import BaseModel

from classvote.core.access import results_visible_to
from classvote.core.queue_engine import classify
from classvote.core.votes import VoteKind
from classvote.models.session import PresenterScore, SessionDoc, SessionKind, SessionView, VotingMode
from classvote.services.identity import Actor, optional_actor, require_actor
from classvote.services.sessions import Outcome, session_service

router = APIRouter()


class CreateSessionRequest(BaseModel):
    """Request to create a new session."""
    kind: SessionKind = SessionKind.QUICK
    voting_mode: VotingMode = VotingMode.SINGLE


class CreateSessionResponse(BaseModel):
    session_id: str
    session: SessionView


class JoinRequest(BaseModel):
    nickname: str


class VoteRequest(BaseModel):
    kind: VoteKind


class AddPresenterRequest(BaseModel):
    """Queue a joined participant, or a free-text name."""
    participant_id: str | None = None
    name: str | None = None


class RoundRequest(BaseModel):
    """Omit `active` to toggle."""
    active: bool | None = None


class SettingsRequest(BaseModel):
    sounds_enabled: bool | None = None
    results_visible: bool | None = None
    voting_mode: VotingMode | None = None
    permanently_saved: bool | None = None


class OutcomeResponse(BaseModel):
    """Result of an admin operation. `applied` is false for ignored requests."""
    applied: bool
    deleted: bool = False
    recorded: PresenterScore | None = None
    session: SessionView | None = None


def session_view(session_id: str, doc: SessionDoc, actor: Actor | None = None) -> SessionView:
    """Client-facing copy of the document; score history is hidden when results are."""
    view = SessionView(**doc.model_dump(), session_id=session_id, phase=classify(doc).name)
    if not results_visible_to(actor, doc):
        view.presenter_scores = []
    return view


def _outcome(session_id: str, outcome: Outcome, actor: Actor) -> OutcomeResponse:
    return OutcomeResponse(
        applied=outcome.applied,
        deleted=outcome.deleted,
        recorded=outcome.recorded,
        session=session_view(session_id, outcome.session, actor) if outcome.session else None,
    )


@router.post("/create", response_model=CreateSessionResponse)
async def create_session(request: CreateSessionRequest, actor: Actor = Depends(require_actor)):
    """Create a session owned by the caller and return its six digit code."""
    session_id, doc = await session_service.create_session(actor, request.kind, request.voting_mode)
    return CreateSessionResponse(session_id=session_id, session=session_view(session_id, doc, actor))


@router.get("/{session_id}", response_model=SessionView)
async def get_session(session_id: str, actor: Actor | None = Depends(optional_actor)):
    doc = await session_service.get_session(session_id)
    return session_view(session_id, doc, actor)


@router.post("/{session_id}/join", response_model=SessionView)
async def join_session(session_id: str, request: JoinRequest, actor: Actor = Depends(require_actor)):
    """Set the caller's nickname. Nicknames are unique per session and final."""
    doc = await session_service.join_session(session_id, actor, request.nickname)
    return session_view(session_id, doc, actor)


@router.post("/{session_id}/vote", response_model=SessionView)
async def vote(session_id: str, request: VoteRequest, actor: Actor = Depends(require_actor)):
    doc = await session_service.vote(session_id, actor, request.kind)
    return session_view(session_id, doc, actor)


@router.get("/{session_id}/leaderboard", response_model=list[PresenterScore])
async def leaderboard(session_id: str, actor: Actor | None = Depends(optional_actor)):
    """Recorded presenters ranked by likes, then net score."""
    return await session_service.leaderboard(session_id, actor)


# --- Admin ---

@router.post("/{session_id}/end", response_model=OutcomeResponse)
async def end_session(session_id: str, actor: Actor = Depends(require_actor)):
    """
    End the session.

    Unsaved quick sessions are deleted; other sessions keep their document
    with `sessionEnded` set and the final round recorded.
    """
    outcome = await session_service.end_session(session_id, actor)
    return _outcome(session_id, outcome, actor)


@router.delete("/{session_id}/participants/{participant_id}", response_model=OutcomeResponse)
async def kick_participant(session_id: str, participant_id: str, actor: Actor = Depends(require_actor)):
    outcome = await session_service.kick_participant(session_id, actor, participant_id)
    return _outcome(session_id, outcome, actor)


@router.post("/{session_id}/queue", response_model=OutcomeResponse)
async def add_presenter(session_id: str, request: AddPresenterRequest, actor: Actor = Depends(require_actor)):
    outcome = await session_service.add_presenter(
        session_id, actor, participant_id=request.participant_id, name=request.name
    )
    return _outcome(session_id, outcome, actor)


@router.post("/{session_id}/queue/advance", response_model=OutcomeResponse)
async def advance(session_id: str, actor: Actor = Depends(require_actor)):
    """Record the current presenter's round and move to the next presenter."""
    outcome = await session_service.advance(session_id, actor)
    return _outcome(session_id, outcome, actor)


@router.delete("/{session_id}/queue/{position}", response_model=OutcomeResponse)
async def remove_presenter(session_id: str, position: int, actor: Actor = Depends(require_actor)):
    outcome = await session_service.remove_presenter(session_id, actor, position)
    return _outcome(session_id, outcome, actor)


@router.delete("/{session_id}/queue", response_model=OutcomeResponse)
async def clear_queue(session_id: str, actor: Actor = Depends(require_actor)):
    """Empty the queue and the score history; back to general feedback."""
    outcome = await session_service.clear_queue(session_id, actor)
    return _outcome(session_id, outcome, actor)


@router.post("/{session_id}/votes/reset", response_model=OutcomeResponse)
async def reset_votes(session_id: str, actor: Actor = Depends(require_actor)):
    outcome = await session_service.reset_votes(session_id, actor)
    return _outcome(session_id, outcome, actor)


@router.post("/{session_id}/round", response_model=OutcomeResponse)
async def set_round(session_id: str, request: RoundRequest, actor: Actor = Depends(require_actor)):
    outcome = await session_service.set_round(session_id, actor, request.active)
    return _outcome(session_id, outcome, actor)


@router.patch("/{session_id}/settings", response_model=OutcomeResponse)
async def update_settings(session_id: str, request: SettingsRequest, actor: Actor = Depends(require_actor)):
    outcome = await session_service.update_settings(
        session_id,
        actor,
        sounds_enabled=request.sounds_enabled,
        results_visible=request.results_visible,
        voting_mode=request.voting_mode,
        permanently_saved=request.permanently_saved,
    )
    return _outcome(session_id, outcome, actor)
