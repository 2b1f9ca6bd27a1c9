"""
Vote aggregation and leaderboard ranking.
"""
from enum import Enum
from typing import Any

from classvote.core.access import can_vote
from classvote.errors import VoteRejected
from classvote.models.session import PresenterScore, QueueEntry, SessionDoc, VotingMode
from classvote.services.session_store import ArrayUnion, Condition, Equals, Increment, Lacks


class VoteKind(str, Enum):
    LIKE = "like"
    DISLIKE = "dislike"

    @property
    def counter(self) -> str:
        return "likeClicks" if self is VoteKind.LIKE else "dislikeClicks"


def score_for(entry: QueueEntry, likes: int, dislikes: int) -> PresenterScore:
    return PresenterScore(
        name=entry.name,
        uid=entry.uid,
        likes=likes,
        dislikes=dislikes,
        net_score=likes - dislikes,
    )


def cast_vote(doc: SessionDoc, voter_id: str, kind: VoteKind) -> dict[str, Any]:
    """
    Build the store update for one vote, or raise VoteRejected.

    Under single mode a voter counts once per round; `roundVoters` is emptied
    whenever the round changes, so the next presenter starts clean.
    """
    if not can_vote(doc):
        raise VoteRejected("round_closed", "The feedback round is closed or the session has ended.")

    fields: dict[str, Any] = {kind.counter: Increment(1)}
    if doc.voting_mode is VotingMode.SINGLE:
        if voter_id in doc.round_voters:
            raise VoteRejected("already_voted", "You have already voted in this round.")
        fields["roundVoters"] = ArrayUnion([voter_id])
    return fields


def vote_conditions(doc: SessionDoc, voter_id: str) -> list[Condition]:
    """
    What `cast_vote` relied on when it accepted the vote. The store commits
    the vote only if these still hold, so a vote never lands in a round that
    closed or changed presenter in the meantime.
    """
    participant = doc.participants.get(voter_id)
    conditions: list[Condition] = [
        Equals("sessionEnded", False),
        Equals("isRoundActive", True),
        Equals("votingMode", doc.voting_mode.value),
        Equals("currentPresenterIndex", doc.current_presenter_index),
        Equals("currentPresenterName", doc.current_presenter_name),
        Equals(f"participants.{voter_id}.nickname", participant.nickname if participant else None),
    ]
    if doc.voting_mode is VotingMode.SINGLE:
        conditions.append(Lacks("roundVoters", voter_id))
    return conditions


def rank(scores: list[PresenterScore]) -> list[PresenterScore]:
    """Likes descending, then net score descending; ties keep recording order."""
    return sorted(scores, key=lambda s: (-s.likes, -s.net_score))


def presenter_results(scores: list[PresenterScore], uid: str) -> list[PresenterScore]:
    """Recorded rounds credited to one linked account."""
    return [score for score in scores if score.uid == uid]
