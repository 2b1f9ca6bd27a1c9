"""
Server-Sent Events endpoint for live session updates.

Clients receive the full session document on connect and again after every
committed change, pushed from the session store's change channel:
- session: current document (same shape as GET /api/session/{id})
- ended: the document was deleted
- heartbeat: keep-alive while nothing changes
"""
import asyncio
import json
import logging

from fastapi import APIRouter, Depends
from fastapi.responses import StreamingResponse

from classvote.config import settings
from classvote.models.session import SessionDoc
from classvote.routers.session import session_view
from classvote.services.identity import Actor, optional_actor
from classvote.services.sessions import session_service

logger = logging.getLogger(__name__)

router = APIRouter()


def _format_sse(event: str, data: dict) -> str:
    """Format a Server-Sent Event message."""
    return f"event: {event}\ndata: {json.dumps(data, ensure_ascii=False)}\n\n"


async def _session_event_generator(session_id: str, actor: Actor | None):
    """
    Async generator that relays store change notifications as SSE events.

    A heartbeat goes out whenever no change arrived for
    `sse_heartbeat_interval` seconds, and the stream closes after
    `sse_max_duration`.
    """
    changes: asyncio.Queue = asyncio.Queue()

    async def on_change(data: dict | None):
        await changes.put(("change", data))

    async def on_error(error: Exception):
        await changes.put(("error", str(error)))

    unsubscribe = await session_service.store.subscribe(session_id, on_change, on_error)
    loop = asyncio.get_running_loop()
    deadline = loop.time() + settings.sse_max_duration
    try:
        yield _format_sse("connected", {"session_id": session_id})
        while True:
            remaining = deadline - loop.time()
            if remaining <= 0:
                yield _format_sse("timeout", {"message": "SSE connection reached its maximum duration"})
                return
            try:
                kind, payload = await asyncio.wait_for(
                    changes.get(), timeout=min(settings.sse_heartbeat_interval, remaining)
                )
            except asyncio.TimeoutError:
                yield _format_sse("heartbeat", {})
                continue

            if kind == "error":
                yield _format_sse("error", {"message": payload})
                return
            if payload is None:
                yield _format_sse("ended", {"session_id": session_id})
                return
            view = session_view(session_id, SessionDoc.from_store(payload), actor)
            yield _format_sse("session", view.model_dump(by_alias=True, mode="json"))
    except asyncio.CancelledError:
        logger.debug("SSE connection cancelled for %s", session_id)
        raise
    finally:
        await unsubscribe()


@router.get("/{session_id}/stream")
async def stream_session_events(session_id: str, actor: Actor | None = Depends(optional_actor)):
    """
    SSE endpoint for live session updates.

    Usage: const es = new EventSource('/api/session/{id}/stream')
    """
    await session_service.get_session(session_id)  # 404 before opening the stream

    return StreamingResponse(
        _session_event_generator(session_id, actor),
        media_type="text/event-stream",
        headers={
            "Cache-Control": "no-cache",
            "Connection": "keep-alive",
            "X-Accel-Buffering": "no",
        },
    )
