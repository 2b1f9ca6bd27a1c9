"""
Test fixtures for the classvote backend.

Provides:
- In-memory session store (same update semantics as the Redis store)
- SessionService wired to the in-memory store and a mocked archive
- FastAPI test client (httpx AsyncClient) with the service patched in
- Header helpers for admin / participant identities
"""
import copy
from unittest.mock import AsyncMock, patch

import pytest
from httpx import AsyncClient, ASGITransport

from classvote.errors import SessionNotFound, StoreUnavailable
from classvote.main import app
from classvote.models.session import QueueEntry, SessionDoc
from classvote.services.identity import Actor
from classvote.services.session_store import SessionStore, apply_update, matches, order
from classvote.services.sessions import SessionService


ADMIN = Actor(uid="admin-uid", is_anonymous=False)
ALICE = Actor(uid="alice-uid", is_anonymous=False)
BOB = Actor(uid="bob-uid", is_anonymous=True)


def headers_for(actor: Actor) -> dict:
    return {"X-User-Id": actor.uid, "X-User-Anonymous": str(actor.is_anonymous).lower()}


def make_doc(**overrides) -> SessionDoc:
    """Session document with sensible defaults; pass snake_case field overrides."""
    data = {"admin_uid": ADMIN.uid, "created_at": 1700000000.0}
    data.update(overrides)
    return SessionDoc(**data)


def queue_of(*names: str) -> list[QueueEntry]:
    return [QueueEntry(name=name, participant_id=f"{name.lower()}-pid") for name in names]


# ============================================
# In-memory session store
# ============================================

class MemorySessionStore(SessionStore):
    """Dict-backed store for tests; no TTLs, synchronous notifications."""

    def __init__(self):
        self.docs: dict[str, dict] = {}
        self.subscribers: dict[str, list] = {}
        self.deleted: list[str] = []
        self.writes: list[tuple[str, dict]] = []
        self.fail_delete = False
        self.fail_writes = False
        self.lose_delete_reply = False

    async def _notify(self, session_id: str, data: dict | None):
        for on_change, _on_error in list(self.subscribers.get(session_id, [])):
            await on_change(copy.deepcopy(data))

    async def get(self, session_id: str) -> dict | None:
        data = self.docs.get(session_id)
        return copy.deepcopy(data) if data is not None else None

    async def create(self, session_id: str, data: dict) -> bool:
        if session_id in self.docs:
            return False
        self.docs[session_id] = copy.deepcopy(data)
        await self._notify(session_id, data)
        return True

    async def transaction(self, session_id: str, mutate) -> dict:
        current = await self.get(session_id)
        if current is None:
            raise SessionNotFound(session_id)
        fields = mutate(current)
        if not fields:
            return current
        if self.fail_writes:
            raise StoreUnavailable("Session store unavailable during transaction")
        self.writes.append((session_id, dict(fields)))
        updated = apply_update(current, fields)
        self.docs[session_id] = updated
        await self._notify(session_id, updated)
        return copy.deepcopy(updated)

    async def delete(self, session_id: str) -> bool:
        if self.fail_delete:
            raise StoreUnavailable("Session store unavailable during delete")
        existed = self.docs.pop(session_id, None) is not None
        if self.lose_delete_reply:
            raise StoreUnavailable("Session store unavailable during delete")
        self.deleted.append(session_id)
        await self._notify(session_id, None)
        return existed

    async def query(self, filters=None, order_by=None, descending=False):
        rows = [
            (session_id, copy.deepcopy(doc))
            for session_id, doc in self.docs.items()
            if matches(doc, filters or {})
        ]
        return order(rows, order_by, descending)

    async def subscribe(self, session_id, on_change, on_error):
        entry = (on_change, on_error)
        self.subscribers.setdefault(session_id, []).append(entry)
        await on_change(await self.get(session_id))

        async def unsubscribe():
            self.subscribers[session_id].remove(entry)

        return unsubscribe

    def put(self, session_id: str, doc: SessionDoc) -> None:
        self.docs[session_id] = doc.to_store()


# ============================================
# Fixtures
# ============================================

@pytest.fixture
def store():
    return MemorySessionStore()


@pytest.fixture
def mock_archive():
    archive = AsyncMock()
    archive.archive_session.return_value = 0
    archive.results_for_presenter.return_value = []
    archive.recent.return_value = []
    return archive


@pytest.fixture
def service(store, mock_archive):
    return SessionService(store, mock_archive)


@pytest.fixture
async def client(service):
    """
    Async test client with the session service backed by the in-memory store.

    Patches the singleton service so routes never reach Redis or PostgreSQL.
    """
    with (
        patch("classvote.routers.session.session_service", service),
        patch("classvote.routers.sse.session_service", service),
        patch("classvote.routers.results.session_service", service),
    ):
        transport = ASGITransport(app=app)
        async with AsyncClient(transport=transport, base_url="http://test") as ac:
            ac.store = service.store  # type: ignore
            ac.service = service  # type: ignore
            yield ac
