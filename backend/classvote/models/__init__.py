"""Session document and archive models."""
from classvote.models.session import (
    Participant,
    PresenterScore,
    QueueEntry,
    SessionDoc,
    SessionKind,
    SessionView,
    VotingMode,
)
from classvote.models.session_archive import Base, ArchivedScore

__all__ = [
    "Base",
    "ArchivedScore",
    "Participant",
    "PresenterScore",
    "QueueEntry",
    "SessionDoc",
    "SessionKind",
    "SessionView",
    "VotingMode",
]
