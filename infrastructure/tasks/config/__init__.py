"""Celery app and the periodic maintenance schedule."""
from .beat import CELERY_BEAT_SCHEDULE
from .celery import celery_app

__all__ = ["CELERY_BEAT_SCHEDULE", "celery_app"]
