"""
Session store: one document per session, kept in Redis.

Writes are field-level partial updates. Besides plain overwrites a partial
update may carry the sentinels below, which are resolved against the current
document atomically:

    await session_store.update("123456", {
        "likeClicks": Increment(1),
        "roundVoters": ArrayUnion(["uid-1"]),
        "participants.uid-2": DELETE_FIELD,
    })

Dotted keys address members of nested maps. An update may also carry
conditions (`Equals`, `Lacks`) that must hold on the current document; if
one does not, nothing is written and `update` returns None.

Every committed write is published on `session:{id}:changes` so subscribers
see the new document (or `null` once the session is deleted).
"""
import abc
import asyncio
import contextlib
import copy
import json
import logging
import random
from collections.abc import Awaitable, Callable
from dataclasses import dataclass
from typing import Any

from pydantic_core import to_jsonable_python
from redis.exceptions import RedisError, WatchError

from classvote.config import settings
from classvote.errors import SessionNotFound, StoreUnavailable
from classvote.services.redis_client import RedisClient, redis_client

logger = logging.getLogger(__name__)

KEY_PREFIX = "session:"

ChangeHandler = Callable[[dict | None], Awaitable[None]]
ErrorHandler = Callable[[Exception], Awaitable[None]]
Unsubscribe = Callable[[], Awaitable[None]]
Mutation = Callable[[dict], dict | None]


@dataclass(frozen=True)
class Increment:
    delta: int = 1


@dataclass(frozen=True)
class ArrayUnion:
    values: list


@dataclass(frozen=True)
class ArrayRemove:
    values: list


class _DeleteField:
    def __repr__(self) -> str:
        return "DELETE_FIELD"


DELETE_FIELD = _DeleteField()


@dataclass(frozen=True)
class Equals:
    """Condition: the value at `path` equals `value`."""
    path: str
    value: Any


@dataclass(frozen=True)
class Lacks:
    """Condition: the list at `path` does not contain `value`."""
    path: str
    value: Any


Condition = Equals | Lacks


def _plain(value: Any) -> Any:
    return to_jsonable_python(value, by_alias=True)


def _resolve(doc: dict, path: str) -> tuple[dict, str]:
    """Walk a dotted path, creating intermediate maps, and return (parent, leaf)."""
    *parents, leaf = path.split(".")
    node = doc
    for part in parents:
        child = node.get(part)
        if not isinstance(child, dict):
            child = {}
            node[part] = child
        node = child
    return node, leaf


def _lookup(doc: dict, path: str) -> Any:
    node: Any = doc
    for part in path.split("."):
        if not isinstance(node, dict):
            return None
        node = node.get(part)
    return node


def apply_update(doc: dict, fields: dict[str, Any]) -> dict:
    """Return a copy of `doc` with a partial update applied."""
    updated = copy.deepcopy(doc)
    for path, value in fields.items():
        parent, leaf = _resolve(updated, path)
        if value is DELETE_FIELD:
            parent.pop(leaf, None)
        elif isinstance(value, Increment):
            current = parent.get(leaf) or 0
            parent[leaf] = current + value.delta
        elif isinstance(value, ArrayUnion):
            items = list(parent.get(leaf) or [])
            for item in _plain(value.values):
                if item not in items:
                    items.append(item)
            parent[leaf] = items
        elif isinstance(value, ArrayRemove):
            removed = _plain(value.values)
            parent[leaf] = [item for item in parent.get(leaf) or [] if item not in removed]
        else:
            parent[leaf] = _plain(value)
    return updated


def holds(doc: dict, conditions: list[Condition]) -> bool:
    """True when every condition is met by `doc`."""
    for condition in conditions:
        value = _lookup(doc, condition.path)
        if isinstance(condition, Equals):
            if value != _plain(condition.value):
                return False
        elif _plain(condition.value) in (value or []):
            return False
    return True


def matches(doc: dict, filters: dict[str, Any]) -> bool:
    return all(doc.get(field) == _plain(expected) for field, expected in filters.items())


def order(rows: list[tuple[str, dict]], order_by: str | None, descending: bool) -> list[tuple[str, dict]]:
    if not order_by:
        return rows
    return sorted(rows, key=lambda row: row[1].get(order_by) or 0, reverse=descending)


class SessionStore(abc.ABC):
    """Document store contract the session services are written against."""

    @abc.abstractmethod
    async def get(self, session_id: str) -> dict | None:
        """Return the session document, or None when it does not exist."""

    @abc.abstractmethod
    async def create(self, session_id: str, data: dict) -> bool:
        """Store a new document. Returns False if the id is already taken."""

    @abc.abstractmethod
    async def transaction(self, session_id: str, mutate: Mutation) -> dict:
        """
        Optimistic read-modify-write.

        `mutate` receives the current document and returns the partial update
        to commit (or None to leave it untouched). It may be called several
        times when a concurrent writer wins the race, so it must not have
        side effects. Returns the resulting document.
        """

    async def update(
        self,
        session_id: str,
        fields: dict[str, Any],
        conditions: list[Condition] | None = None,
    ) -> dict | None:
        """
        Apply a partial update atomically. Fails if the session is missing.

        Returns the resulting document, or None when a condition did not hold.
        """
        met = True

        def mutate(current: dict) -> dict | None:
            nonlocal met
            met = holds(current, conditions or [])
            return fields if met else None

        updated = await self.transaction(session_id, mutate)
        return updated if met else None

    @abc.abstractmethod
    async def delete(self, session_id: str) -> bool:
        """Delete the document. Returns True if it existed."""

    @abc.abstractmethod
    async def query(
        self,
        filters: dict[str, Any] | None = None,
        order_by: str | None = None,
        descending: bool = False,
    ) -> list[tuple[str, dict]]:
        """Return (session_id, document) pairs whose top-level fields equal `filters`."""

    @abc.abstractmethod
    async def subscribe(
        self, session_id: str, on_change: ChangeHandler, on_error: ErrorHandler
    ) -> Unsubscribe:
        """
        Deliver the current document, then every committed change, to
        `on_change`. Returns a coroutine function that stops the feed.
        """


@contextlib.contextmanager
def _store_errors(action: str, session_id: str | None = None):
    try:
        yield
    except RedisError as e:
        logger.warning("Session store %s failed (session=%s): %s", action, session_id, e)
        raise StoreUnavailable(f"Session store unavailable during {action}") from e


def _encode(doc: dict) -> dict[str, str]:
    return {field: json.dumps(value, ensure_ascii=False) for field, value in doc.items()}


def _decode(raw: dict[str, str]) -> dict:
    return {field: json.loads(value) for field, value in raw.items()}


# Fields that decide the key's TTL; updates touching them go through a transaction.
_TTL_FIELDS = {"sessionType", "isPermanentlySaved"}


class RedisSessionStore(SessionStore):
    """
    Session documents as Redis hashes under `session:{id}`.

    Each top-level field is its own hash field holding a JSON value, so
    counters are plain integers that HINCRBY can bump in place.
    """

    # Create the hash only if the code is free
    _CREATE_LUA = """
    local key = KEYS[1]
    if redis.call('EXISTS', key) == 1 then return 0 end
    local ttl = tonumber(ARGV[1])
    local unpack = unpack or table.unpack
    redis.call('HSET', key, unpack(ARGV, 3))
    if ttl > 0 then redis.call('EXPIRE', key, ttl) end
    redis.call('PUBLISH', KEYS[2], ARGV[2])
    return 1
    """

    # Conditional field-level update, runs entirely inside Redis (no race window).
    # Returns {-1} when the session is missing, {0, n} when condition n failed,
    # {1, document} on success. The key's TTL is left as is.
    _UPDATE_LUA = """
    local key = KEYS[1]
    if redis.call('EXISTS', key) == 0 then return {-1} end
    local ops = cjson.decode(ARGV[1])
    local conditions = cjson.decode(ARGV[2])

    local function lookup(path)
        local parts = {}
        for part in string.gmatch(path, '[^.]+') do table.insert(parts, part) end
        local raw = redis.call('HGET', key, parts[1])
        if not raw then return nil end
        local value = cjson.decode(raw)
        for i = 2, #parts do
            if type(value) ~= 'table' then return nil end
            value = value[parts[i]]
        end
        return value
    end

    local function contains(items, value)
        for _, item in ipairs(items) do
            if item == value then return true end
        end
        return false
    end

    for i, condition in ipairs(conditions) do
        local value = lookup(condition[2])
        if condition[1] == 'eq' then
            if value ~= condition[3] then return {0, i} end
        elseif type(value) == 'table' and contains(value, condition[3]) then
            return {0, i}
        end
    end

    local function members(field)
        local raw = redis.call('HGET', key, field)
        if not raw then return {} end
        local items = cjson.decode(raw)
        if type(items) ~= 'table' then return {} end
        return items
    end

    local function store_list(field, items)
        if #items == 0 then
            redis.call('HSET', key, field, '[]')
        else
            redis.call('HSET', key, field, cjson.encode(items))
        end
    end

    for _, op in ipairs(ops) do
        local kind, field, arg = op[1], op[2], op[3]
        if kind == 'set' then
            redis.call('HSET', key, field, arg)
        elseif kind == 'del' then
            redis.call('HDEL', key, field)
        elseif kind == 'incr' then
            redis.call('HINCRBY', key, field, arg)
        elseif kind == 'union' then
            local items = members(field)
            for _, value in ipairs(arg) do
                if not contains(items, value) then table.insert(items, value) end
            end
            store_list(field, items)
        elseif kind == 'remove' then
            local kept = {}
            for _, item in ipairs(members(field)) do
                if not contains(arg, item) then table.insert(kept, item) end
            end
            store_list(field, kept)
        end
    end

    local flat = redis.call('HGETALL', key)
    local parts = {}
    for i = 1, #flat, 2 do
        table.insert(parts, '"' .. flat[i] .. '":' .. flat[i + 1])
    end
    local doc = '{' .. table.concat(parts, ',') .. '}'
    redis.call('PUBLISH', KEYS[2], doc)
    return {1, doc}
    """

    def __init__(self, client: RedisClient, retries: int | None = None):
        self._redis = client
        self._retries = retries or settings.store_transaction_retries

    @staticmethod
    def key(session_id: str) -> str:
        return f"{KEY_PREFIX}{session_id}"

    @staticmethod
    def channel(session_id: str) -> str:
        return f"{KEY_PREFIX}{session_id}:changes"

    @staticmethod
    def _ttl_for(doc: dict) -> int | None:
        """Quick sessions expire unless saved; everything else is kept."""
        if doc.get("sessionType") == "quick" and not doc.get("isPermanentlySaved"):
            return settings.quick_session_ttl
        return None

    async def get(self, session_id: str) -> dict | None:
        with _store_errors("get", session_id):
            client = await self._redis.get_client()
            raw = await client.hgetall(self.key(session_id))
        return _decode(raw) if raw else None

    async def create(self, session_id: str, data: dict) -> bool:
        args = [self._ttl_for(data) or 0, json.dumps(data, ensure_ascii=False)]
        for field, value in _encode(data).items():
            args.extend((field, value))
        with _store_errors("create", session_id):
            client = await self._redis.get_client()
            created = await client.eval(
                self._CREATE_LUA, 2, self.key(session_id), self.channel(session_id), *args
            )
        return created == 1

    async def transaction(self, session_id: str, mutate: Mutation) -> dict:
        key = self.key(session_id)
        with _store_errors("transaction", session_id):
            client = await self._redis.get_client()
            for attempt in range(1, self._retries + 1):
                async with client.pipeline(transaction=True) as pipe:
                    try:
                        await pipe.watch(key)
                        raw = await pipe.hgetall(key)
                        if not raw:
                            raise SessionNotFound(session_id)
                        current = _decode(raw)
                        fields = mutate(current)
                        if not fields:
                            await pipe.unwatch()
                            return current
                        updated = apply_update(current, fields)
                        changed = {
                            field: value for field, value in updated.items()
                            if field not in current or current[field] != value
                        }
                        removed = [field for field in current if field not in updated]
                        ttl = self._ttl_for(updated)
                        pipe.multi()
                        if changed:
                            pipe.hset(key, mapping=_encode(changed))
                        if removed:
                            pipe.hdel(key, *removed)
                        if ttl:
                            pipe.expire(key, ttl)
                        else:
                            pipe.persist(key)
                        pipe.publish(self.channel(session_id), json.dumps(updated, ensure_ascii=False))
                        await pipe.execute()
                        return updated
                    except WatchError:
                        logger.debug("Write conflict on %s (attempt %d)", key, attempt)
                await asyncio.sleep(random.uniform(0, 0.005 * attempt))
        logger.warning("Giving up on %s after %d conflicting writes", key, self._retries)
        raise StoreUnavailable("Session is too busy, please retry")

    @staticmethod
    def _script_ops(fields: dict[str, Any]) -> list[list] | None:
        """Translate a partial update for the update script, or None if it needs a transaction."""
        ops = []
        for path, value in fields.items():
            if "." in path or path in _TTL_FIELDS:
                return None
            if value is DELETE_FIELD:
                ops.append(["del", path])
            elif isinstance(value, Increment):
                ops.append(["incr", path, value.delta])
            elif isinstance(value, (ArrayUnion, ArrayRemove)):
                values = _plain(value.values)
                if any(isinstance(item, (dict, list)) for item in values):
                    return None
                ops.append(["union" if isinstance(value, ArrayUnion) else "remove", path, values])
            else:
                ops.append(["set", path, json.dumps(_plain(value), ensure_ascii=False)])
        return ops

    async def update(
        self,
        session_id: str,
        fields: dict[str, Any],
        conditions: list[Condition] | None = None,
    ) -> dict | None:
        """
        Atomic update through a server-side script, so concurrent increments
        never conflict. Nested paths and TTL-relevant fields fall back to a
        transaction.
        """
        ops = self._script_ops(fields)
        if ops is None:
            return await super().update(session_id, fields, conditions)

        encoded_conditions = [
            ["eq" if isinstance(c, Equals) else "lacks", c.path, _plain(c.value)]
            for c in conditions or []
        ]
        with _store_errors("update", session_id):
            client = await self._redis.get_client()
            result = await client.eval(
                self._UPDATE_LUA, 2, self.key(session_id), self.channel(session_id),
                json.dumps(ops, ensure_ascii=False),
                json.dumps(encoded_conditions, ensure_ascii=False),
            )
        status = int(result[0])
        if status == -1:
            raise SessionNotFound(session_id)
        if status == 0:
            logger.debug("Condition %s failed on %s", result[1], session_id)
            return None
        return json.loads(result[1])

    async def delete(self, session_id: str) -> bool:
        with _store_errors("delete", session_id):
            client = await self._redis.get_client()
            removed = await client.delete(self.key(session_id))
        try:
            await client.publish(self.channel(session_id), "null")
        except RedisError as e:
            logger.warning("Deleted %s but could not notify subscribers: %s", session_id, e)
        return removed > 0

    async def query(
        self,
        filters: dict[str, Any] | None = None,
        order_by: str | None = None,
        descending: bool = False,
    ) -> list[tuple[str, dict]]:
        rows = []
        with _store_errors("query"):
            client = await self._redis.get_client()
            async for key in client.scan_iter(match=f"{KEY_PREFIX}*", count=200):
                session_id = key[len(KEY_PREFIX):]
                if ":" in session_id:
                    continue
                raw = await client.hgetall(key)
                if not raw:
                    continue  # expired between SCAN and HGETALL
                doc = _decode(raw)
                if matches(doc, filters or {}):
                    rows.append((session_id, doc))
        return order(rows, order_by, descending)

    async def subscribe(
        self, session_id: str, on_change: ChangeHandler, on_error: ErrorHandler
    ) -> Unsubscribe:
        with _store_errors("subscribe", session_id):
            client = await self._redis.get_client()
            pubsub = client.pubsub()
            await pubsub.subscribe(self.channel(session_id))

        async def _listen():
            try:
                await on_change(await self.get(session_id))
                async for message in pubsub.listen():
                    if message["type"] != "message":
                        continue
                    await on_change(json.loads(message["data"]))
            except asyncio.CancelledError:
                raise
            except (RedisError, StoreUnavailable, ValueError) as e:
                logger.warning("Subscription to %s failed: %s", session_id, e)
                await on_error(e)

        task = asyncio.create_task(_listen())

        async def unsubscribe():
            task.cancel()
            with contextlib.suppress(asyncio.CancelledError):
                await task
            with contextlib.suppress(RedisError):
                await pubsub.unsubscribe()
                await pubsub.aclose()

        return unsubscribe


# Singleton instance
session_store = RedisSessionStore(redis_client)
