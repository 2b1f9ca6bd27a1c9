"""
Celery worker for session housekeeping.
"""
from .celery_app import celery_app
from .cleanup import cleanup_stale_sessions

__all__ = ["celery_app", "cleanup_stale_sessions"]
