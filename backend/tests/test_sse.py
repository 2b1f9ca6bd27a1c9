"""
Tests for the live session event stream.
"""
import json
from unittest.mock import patch

import pytest

from classvote.routers.sse import _format_sse, _session_event_generator

from tests.conftest import ADMIN, ALICE, make_doc, headers_for


def parse(message: str) -> tuple[str, dict]:
    event_line, data_line = message.strip().split("\n")
    return event_line.removeprefix("event: "), json.loads(data_line.removeprefix("data: "))


@pytest.fixture
def patched_service(service):
    with patch("classvote.routers.sse.session_service", service):
        yield service


def test_format_sse():
    assert _format_sse("heartbeat", {}) == "event: heartbeat\ndata: {}\n\n"
    assert "é" in _format_sse("session", {"name": "é"})


async def test_stream_sends_current_document_then_changes(patched_service, store):
    store.put("123456", make_doc())
    stream = _session_event_generator("123456", ALICE)

    event, data = parse(await anext(stream))
    assert event == "connected"
    assert data == {"session_id": "123456"}

    event, data = parse(await anext(stream))
    assert event == "session"
    assert data["sessionId"] == "123456"
    assert data["phase"] == "empty_queue"

    await patched_service.set_round("123456", ADMIN, False)
    event, data = parse(await anext(stream))
    assert event == "session"
    assert data["isRoundActive"] is False

    await stream.aclose()
    assert store.subscribers["123456"] == []


async def test_stream_reports_deleted_session(patched_service, store):
    store.put("123456", make_doc())
    stream = _session_event_generator("123456", ALICE)
    await anext(stream)
    await anext(stream)

    await patched_service.end_session("123456", ADMIN)
    event, data = parse(await anext(stream))
    assert event == "ended"

    with pytest.raises(StopAsyncIteration):
        await anext(stream)
    assert store.subscribers["123456"] == []


async def test_stream_hides_scores_from_participants(patched_service, store):
    store.put("123456", make_doc(
        results_visible=False,
        presenter_scores=[{"name": "A", "likes": 1, "dislikes": 0, "net_score": 1}],
    ))
    stream = _session_event_generator("123456", ALICE)
    await anext(stream)
    _, data = parse(await anext(stream))
    assert data["presenterScores"] == []
    await stream.aclose()


async def test_stream_heartbeat(patched_service, store):
    store.put("123456", make_doc())
    with patch("classvote.routers.sse.settings.sse_heartbeat_interval", 0.01):
        stream = _session_event_generator("123456", ALICE)
        await anext(stream)
        await anext(stream)
        event, _ = parse(await anext(stream))
        await stream.aclose()
    assert event == "heartbeat"


async def test_stream_unknown_session_returns_404(client):
    response = await client.get("/api/session/999999/stream", headers=headers_for(ALICE))
    assert response.status_code == 404
