"""
Celery application configuration.
"""
import os
import logging

from celery import Celery

# Structured logging config
logging.basicConfig(
    level=logging.INFO,
    format="%(asctime)s [%(name)s] %(levelname)s %(message)s",
    datefmt="%Y-%m-%d %H:%M:%S",
)
logger = logging.getLogger(__name__)

# Redis URL from environment
REDIS_URL = os.getenv("REDIS_URL", "redis://localhost:6379/0")

celery_app = Celery(
    "classvote",
    broker=REDIS_URL,
    backend=REDIS_URL,
    include=["classvote_worker.cleanup"],
)

celery_app.conf.update(
    task_serializer="json",
    accept_content=["json"],
    result_serializer="json",
    enable_utc=True,
    task_track_started=True,
    task_time_limit=300,
    task_acks_late=True,
)

# Periodic tasks (Celery beat)
celery_app.conf.beat_schedule = {
    "cleanup-stale-sessions": {
        "task": "classvote_worker.cleanup.cleanup_stale_sessions",
        "schedule": 3600.0,  # Every hour
    },
}
