"""Celery app for payment jobs: refunds on their own queue, maintenance on default."""
from __future__ import annotations

import os

from celery import Celery
from kombu import Queue

from core.config import settings
from core.logging_config import get_logger
from .beat import CELERY_BEAT_SCHEDULE


TASK_PACKAGES = ("infrastructure.tasks.tasks",)

REFUND_TASKS = (
    "payments.auto_refund",
    "payments.partial_refund_for_generation",
)

logger = get_logger(__name__)

celery_app = Celery("pinglass_payments")

celery_app.conf.update(
    broker_url=settings.redis.url or os.getenv("CELERY_BROKER_URL"),
    result_backend=settings.redis.url or os.getenv("CELERY_RESULT_BACKEND"),
    broker_connection_retry_on_startup=True,
    task_serializer="json",
    result_serializer="json",
    accept_content=["json"],
    timezone="UTC",
    enable_utc=True,
    # ack after the work: a lost worker means a redelivery, the CAS lock absorbs the duplicate
    task_acks_late=True,
    task_reject_on_worker_lost=True,
    worker_prefetch_multiplier=1,
    # provider calls are bounded by their own HTTP timeouts
    task_soft_time_limit=120,
    task_time_limit=180,
    result_expires=3600,
    task_default_queue="default",
    task_default_retry_delay=30,
    task_queues=(Queue("refunds"), Queue("default")),
    task_routes={
        **{name: {"queue": "refunds"} for name in REFUND_TASKS},
        "payments.*": {"queue": "default"},
    },
    beat_schedule=CELERY_BEAT_SCHEDULE,
    imports=TASK_PACKAGES,
)

# dev/test run tasks inline so no broker is needed
if settings.ENVIRONMENT.lower() in {"development", "dev", "test", "testing"}:
    celery_app.conf.task_always_eager = True


@celery_app.on_after_configure.connect
def _log_configuration(sender, **kwargs):
    logger.info(
        "celery_configured",
        broker_set=bool(sender.conf.broker_url),
        eager=bool(sender.conf.task_always_eager),
    )
