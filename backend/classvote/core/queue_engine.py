"""
Presenter queue state machine.

Pure functions over a SessionDoc. Each transition returns a `Transition`
holding the field overwrites to commit, or None when the operation does not
apply to the current phase (a rejected no-op). Nothing here talks to the
store; the session service runs these inside a store transaction.
"""
from dataclasses import dataclass, field
from typing import Any

from classvote.core.votes import score_for
from classvote.errors import ValidationFailed
from classvote.models.session import PresenterScore, QueueEntry, SessionDoc


# Phases -------------------------------------------------------------------

@dataclass(frozen=True)
class Ended:
    name = "ended"


@dataclass(frozen=True)
class EmptyQueue:
    """No presenters: votes go to general feedback."""
    likes: int
    dislikes: int
    round_active: bool
    name = "empty_queue"


@dataclass(frozen=True)
class AwaitingStart:
    queue_length: int
    name = "awaiting_start"


@dataclass(frozen=True)
class Presenting:
    index: int
    entry: QueueEntry
    likes: int
    dislikes: int
    round_active: bool
    name = "presenting"


@dataclass(frozen=True)
class QueueExhausted:
    index: int
    queue_length: int
    name = "queue_exhausted"


Phase = Ended | EmptyQueue | AwaitingStart | Presenting | QueueExhausted


def classify(doc: SessionDoc) -> Phase:
    if doc.session_ended:
        return Ended()
    queue = doc.presenter_queue
    index = doc.current_presenter_index
    if not queue:
        return EmptyQueue(doc.like_clicks, doc.dislike_clicks, doc.is_round_active)
    if index < 0:
        return AwaitingStart(len(queue))
    if index >= len(queue):
        return QueueExhausted(index, len(queue))
    return Presenting(index, queue[index], doc.like_clicks, doc.dislike_clicks, doc.is_round_active)


# Transitions --------------------------------------------------------------

@dataclass
class Transition:
    fields: dict[str, Any] = field(default_factory=dict)
    recorded: PresenterScore | None = None


def _dump(items) -> list[dict]:
    return [item.model_dump(by_alias=True, mode="json") for item in items]


def _reset_round() -> dict[str, Any]:
    return {"likeClicks": 0, "dislikeClicks": 0, "roundVoters": []}


def _pointer(queue: list[QueueEntry], index: int) -> dict[str, Any]:
    name = queue[index].name if 0 <= index < len(queue) else ""
    return {"currentPresenterIndex": index, "currentPresenterName": name}


def add_presenter(doc: SessionDoc, entry: QueueEntry) -> Transition | None:
    if isinstance(classify(doc), Ended):
        return None
    queue = [*doc.presenter_queue, entry]
    return Transition({"presenterQueue": _dump(queue)})


def advance(doc: SessionDoc) -> Transition | None:
    """Close the current presenter's round (if any) and move to the next one."""
    phase = classify(doc)
    if not isinstance(phase, (AwaitingStart, Presenting)):
        return None

    transition = Transition()
    scores = list(doc.presenter_scores)
    if isinstance(phase, Presenting):
        transition.recorded = score_for(phase.entry, phase.likes, phase.dislikes)
        scores.append(transition.recorded)
        transition.fields["presenterScores"] = _dump(scores)

    queue = doc.presenter_queue
    next_index = doc.current_presenter_index + 1
    transition.fields.update(_reset_round())
    transition.fields.update(_pointer(queue, next_index))
    transition.fields["isRoundActive"] = next_index < len(queue)
    return transition


def _remove_at(queue: list[QueueEntry], index: int, position: int) -> tuple[list[QueueEntry], int, bool]:
    """Drop one entry and return (queue, new index, whether the active slot was removed)."""
    queue = queue[:position] + queue[position + 1:]
    if position < index:
        return queue, index - 1, False
    if position == index:
        if not queue:
            return queue, -1, True
        return queue, min(index, len(queue) - 1), True
    return queue, index, False


def _after_removal(queue: list[QueueEntry], index: int, removed_active: bool) -> Transition:
    if not queue:
        index = -1
    transition = Transition({"presenterQueue": _dump(queue)})
    transition.fields.update(_pointer(queue, index))
    if removed_active:
        transition.fields.update(_reset_round())
        transition.fields["isRoundActive"] = 0 <= index < len(queue)
    return transition


def remove_presenter(doc: SessionDoc, position: int) -> Transition | None:
    if isinstance(classify(doc), Ended):
        return None
    if not 0 <= position < len(doc.presenter_queue):
        raise ValidationFailed(f"No presenter at position {position}")
    queue, index, removed_active = _remove_at(
        list(doc.presenter_queue), doc.current_presenter_index, position
    )
    return _after_removal(queue, index, removed_active)


def remove_participant_entries(doc: SessionDoc, participant_id: str) -> Transition | None:
    """Remove every queue entry pointing at `participant_id`. None if there are none."""
    positions = [
        i for i, entry in enumerate(doc.presenter_queue) if entry.participant_id == participant_id
    ]
    if not positions:
        return None
    queue = list(doc.presenter_queue)
    index = doc.current_presenter_index
    removed_active = False
    # back to front so earlier positions stay valid
    for position in reversed(positions):
        queue, index, hit = _remove_at(queue, index, position)
        removed_active = removed_active or hit
    return _after_removal(queue, index, removed_active)


def clear_queue(doc: SessionDoc) -> Transition | None:
    if isinstance(classify(doc), Ended):
        return None
    fields = {"presenterQueue": [], "presenterScores": [], "isRoundActive": True}
    fields.update(_reset_round())
    fields.update(_pointer([], -1))
    return Transition(fields)


def reset_presenter_votes(doc: SessionDoc) -> Transition | None:
    if not isinstance(classify(doc), Presenting):
        return None
    return Transition(_reset_round())


def reset_general_votes(doc: SessionDoc) -> Transition | None:
    if not isinstance(classify(doc), EmptyQueue):
        return None
    return Transition(_reset_round())


def set_round_active(doc: SessionDoc, active: bool) -> Transition | None:
    if isinstance(classify(doc), Ended):
        return None
    fields: dict[str, Any] = {"isRoundActive": active}
    if active and not doc.is_round_active:
        # reopened round: earlier single-mode votes no longer count against anyone
        fields["roundVoters"] = []
    return Transition(fields)


def toggle_round(doc: SessionDoc) -> Transition | None:
    return set_round_active(doc, not doc.is_round_active)


def finalize_for_end(doc: SessionDoc) -> Transition | None:
    """Soft-end fields; records the active presenter's round first."""
    phase = classify(doc)
    if isinstance(phase, Ended):
        return None
    transition = Transition({"sessionEnded": True, "isRoundActive": False})
    if isinstance(phase, Presenting):
        transition.recorded = score_for(phase.entry, phase.likes, phase.dislikes)
        transition.fields["presenterScores"] = _dump([*doc.presenter_scores, transition.recorded])
    return transition
