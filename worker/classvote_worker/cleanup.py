"""
Periodic sweep of abandoned quick sessions.

Scheduled via Celery beat (every hour).

Quick sessions are meant to be deleted when their admin ends them; the
ones nobody ended linger. Any quick session that is not permanently saved
and was created more than STALE_SESSION_HOURS ago is deleted, and a `null`
change is published so connected clients see it disappear. Account
sessions and saved quick sessions are never touched.
"""
import json
import logging
import os
import time

import redis
from celery import shared_task

logger = logging.getLogger(__name__)

REDIS_URL = os.getenv("REDIS_URL", "redis://localhost:6379/0")
STALE_SESSION_HOURS = int(os.getenv("STALE_SESSION_HOURS", "12"))

KEY_PREFIX = "session:"


def is_stale(session_data: dict, now: float, max_age_seconds: float) -> bool:
    """True for unsaved quick sessions older than `max_age_seconds`."""
    if session_data.get("sessionType") != "quick":
        return False
    if session_data.get("isPermanentlySaved"):
        return False
    created_at = session_data.get("createdAt")
    if not created_at:
        return False
    return now - float(created_at) >= max_age_seconds


@shared_task(name="classvote_worker.cleanup.cleanup_stale_sessions")
def cleanup_stale_sessions():
    """Delete quick sessions that were left running."""
    try:
        r = redis.from_url(REDIS_URL, decode_responses=True, socket_connect_timeout=5)
    except Exception as e:
        logger.error("Failed to connect to Redis for cleanup: %s", e)
        return {"error": str(e)}

    now = time.time()
    max_age = STALE_SESSION_HOURS * 3600
    scanned = 0
    deleted = 0

    # SCAN for all session:* keys (non-blocking, batched)
    try:
        for key in r.scan_iter(match=f"{KEY_PREFIX}*", count=100):
            session_id = key[len(KEY_PREFIX):]
            if ":" in session_id:
                continue
            scanned += 1
            try:
                raw = r.hgetall(key)
                if not raw:
                    continue
                session_data = {field: json.loads(value) for field, value in raw.items()}
                if not is_stale(session_data, now, max_age):
                    continue
                r.delete(key)
                r.publish(f"{KEY_PREFIX}{session_id}:changes", "null")
                deleted += 1
                logger.info("Deleted stale quick session: %s", session_id)
            except (redis.RedisError, ValueError) as e:
                logger.warning("Error processing key %s: %s", key, e)
    except redis.RedisError as e:
        logger.error("Redis SCAN failed during cleanup: %s", e)

    logger.info("Cleanup complete: %d sessions scanned, %d deleted", scanned, deleted)
    return {"scanned_sessions": scanned, "deleted_sessions": deleted}
