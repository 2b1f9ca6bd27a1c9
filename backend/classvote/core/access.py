"""
Permission predicates for admin mutations, voting and result visibility.
"""
from classvote.models.session import SessionDoc
from classvote.services.identity import Actor


def is_admin(actor: Actor | None, doc: SessionDoc) -> bool:
    return actor is not None and actor.uid == doc.admin_uid


def can_vote(doc: SessionDoc) -> bool:
    """Open round, not ended, and either general mode or a valid presenter."""
    if doc.session_ended or not doc.is_round_active:
        return False
    if not doc.presenter_queue:
        return True
    return 0 <= doc.current_presenter_index < len(doc.presenter_queue)


def has_joined(actor: Actor | None, doc: SessionDoc) -> bool:
    if actor is None:
        return False
    participant = doc.participants.get(actor.uid)
    return participant is not None and bool(participant.nickname)


def results_visible_to(actor: Actor | None, doc: SessionDoc) -> bool:
    return doc.results_visible or is_admin(actor, doc)
