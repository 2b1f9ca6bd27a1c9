"""
Tests for vote aggregation, ranking and access predicates.
"""
import pytest

from classvote.core.access import can_vote, has_joined, is_admin, results_visible_to
from classvote.core.votes import VoteKind, cast_vote, presenter_results, rank
from classvote.errors import VoteRejected
from classvote.models.session import Participant, PresenterScore, VotingMode
from classvote.services.session_store import ArrayUnion, Increment, apply_update

from tests.conftest import ADMIN, ALICE, BOB, make_doc, queue_of


def score(name, likes, dislikes, uid=None):
    return PresenterScore(name=name, uid=uid, likes=likes, dislikes=dislikes, net_score=likes - dislikes)


# --- cast_vote ---

def test_like_in_general_mode():
    fields = cast_vote(make_doc(), "alice-uid", VoteKind.LIKE)
    assert fields == {"likeClicks": Increment(1), "roundVoters": ArrayUnion(["alice-uid"])}


def test_dislike_in_infinite_mode_is_not_tracked():
    doc = make_doc(voting_mode=VotingMode.INFINITE, round_voters=[])
    fields = cast_vote(doc, "alice-uid", VoteKind.DISLIKE)
    assert fields == {"dislikeClicks": Increment(1)}


def test_single_mode_rejects_second_vote():
    doc = make_doc(round_voters=["alice-uid"])
    with pytest.raises(VoteRejected) as exc:
        cast_vote(doc, "alice-uid", VoteKind.DISLIKE)
    assert exc.value.reason == "already_voted"


def test_infinite_mode_allows_repeat_votes():
    doc = make_doc(voting_mode=VotingMode.INFINITE)
    data = doc.to_store()
    for _ in range(3):
        data = apply_update(data, cast_vote(doc, "alice-uid", VoteKind.LIKE))
    assert data["likeClicks"] == 3


def test_vote_rejected_when_round_closed():
    with pytest.raises(VoteRejected) as exc:
        cast_vote(make_doc(is_round_active=False), "alice-uid", VoteKind.LIKE)
    assert exc.value.reason == "round_closed"


def test_vote_rejected_when_queue_not_started():
    doc = make_doc(presenter_queue=queue_of("A"))
    with pytest.raises(VoteRejected):
        cast_vote(doc, "alice-uid", VoteKind.LIKE)


def test_votes_are_monotonic_until_reset():
    doc = make_doc(voting_mode=VotingMode.INFINITE)
    data = doc.to_store()
    seen = []
    for kind in [VoteKind.LIKE, VoteKind.DISLIKE, VoteKind.LIKE, VoteKind.LIKE]:
        data = apply_update(data, cast_vote(doc, "x", kind))
        seen.append((data["likeClicks"], data["dislikeClicks"]))
    assert seen == [(1, 0), (1, 1), (2, 1), (3, 1)]


# --- ranking ---

def test_rank_by_likes_then_net_score():
    scores = [score("A", 3, 3), score("B", 5, 4), score("C", 3, 0), score("D", 5, 0)]
    assert [s.name for s in rank(scores)] == ["D", "B", "C", "A"]


def test_rank_keeps_recording_order_on_ties():
    scores = [score("First", 2, 1), score("Second", 2, 1)]
    assert [s.name for s in rank(scores)] == ["First", "Second"]


def test_presenter_results_filters_by_account():
    scores = [score("Alice", 1, 0, uid="alice-uid"), score("Bob", 2, 0), score("Alice 2", 0, 1, uid="alice-uid")]
    assert [s.name for s in presenter_results(scores, "alice-uid")] == ["Alice", "Alice 2"]


# --- access ---

def test_is_admin():
    doc = make_doc()
    assert is_admin(ADMIN, doc)
    assert not is_admin(ALICE, doc)
    assert not is_admin(None, doc)


def test_can_vote_rules():
    assert can_vote(make_doc())
    assert can_vote(make_doc(presenter_queue=queue_of("A"), current_presenter_index=0))
    assert not can_vote(make_doc(session_ended=True))
    assert not can_vote(make_doc(is_round_active=False))
    assert not can_vote(make_doc(presenter_queue=queue_of("A"), current_presenter_index=1))


def test_has_joined():
    doc = make_doc(participants={
        ALICE.uid: Participant(nickname="Alice", joined_at=1.0, uid=ALICE.uid, is_anonymous=False)
    })
    assert has_joined(ALICE, doc)
    assert not has_joined(BOB, doc)
    assert not has_joined(None, doc)


def test_results_visibility():
    hidden = make_doc(results_visible=False)
    assert results_visible_to(ADMIN, hidden)
    assert not results_visible_to(ALICE, hidden)
    assert results_visible_to(None, make_doc())
