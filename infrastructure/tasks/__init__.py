"""Background payment jobs.

Exposes the Celery app and the dispatcher the generation pipeline uses to
schedule refunds without importing task modules.
"""
from .config.celery import celery_app
from .utils.dispatcher import TaskDispatcher

__all__ = ["celery_app", "TaskDispatcher"]
