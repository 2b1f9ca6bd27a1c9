"""
Pydantic models for the session document.

The document is stored as camelCase JSON (the shape clients subscribe to);
Python code uses the snake_case attribute names.
"""
from enum import Enum

from pydantic import BaseModel, ConfigDict, Field, NonNegativeInt
from pydantic.alias_generators import to_camel


class VotingMode(str, Enum):
    SINGLE = "single"
    INFINITE = "infinite"


class SessionKind(str, Enum):
    QUICK = "quick"
    ACCOUNT = "account"


class CamelModel(BaseModel):
    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True)


class Participant(CamelModel):
    """A joined participant, keyed by uid in the session's participant map."""
    nickname: str
    joined_at: float
    uid: str
    is_anonymous: bool = True


class QueueEntry(CamelModel):
    """One slot in the presenter queue."""
    name: str
    uid: str | None = None  # linked account, absent for anonymous presenters
    participant_id: str | None = None


class PresenterScore(CamelModel):
    """Closed round of one presenter. Never mutated once recorded."""
    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True, frozen=True)

    name: str
    uid: str | None = None
    likes: NonNegativeInt = 0
    dislikes: NonNegativeInt = 0
    net_score: int = 0


class SessionDoc(CamelModel):
    """
    Root session document.

    One record per session code. All mutations go through field-level
    store updates; this model is the read side.
    """
    admin_uid: str
    is_round_active: bool = True
    like_clicks: NonNegativeInt = 0
    dislike_clicks: NonNegativeInt = 0
    created_at: float
    session_ended: bool = False
    sounds_enabled: bool = True
    results_visible: bool = True
    participants: dict[str, Participant] = Field(default_factory=dict)
    presenter_queue: list[QueueEntry] = Field(default_factory=list)
    current_presenter_index: int = -1
    current_presenter_name: str = ""
    presenter_scores: list[PresenterScore] = Field(default_factory=list)
    is_permanently_saved: bool = False
    voting_mode: VotingMode = VotingMode.SINGLE
    session_type: SessionKind = SessionKind.QUICK
    round_voters: list[str] = Field(default_factory=list)

    @classmethod
    def from_store(cls, data: dict) -> "SessionDoc":
        return cls.model_validate(data)

    def to_store(self) -> dict:
        return self.model_dump(by_alias=True, mode="json")


class SessionView(SessionDoc):
    """Session document as returned to a client, tagged with its code."""
    session_id: str
    phase: str
