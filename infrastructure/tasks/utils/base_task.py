"""Base task for payment jobs: structured logs for success, retry and failure."""
from __future__ import annotations

from typing import Any, Mapping

from celery import Task
from core.logging_config import get_logger

logger = get_logger(__name__)

_TRACE_KEYS = ("payment_id", "user_id", "avatar_id")


def trace_fields(kwargs: Mapping[str, Any] | None) -> dict[str, Any]:
    """Identifiers worth attaching to every task log line."""
    if not kwargs:
        return {}
    return {key: kwargs[key] for key in _TRACE_KEYS if kwargs.get(key) is not None}


class BaseTask(Task):
    def on_retry(self, exc, task_id, args, kwargs, einfo):  # type: ignore[override]
        logger.warning(
            "celery_task_retry",
            task_id=task_id,
            task_name=self.name,
            retries=self.request.retries,
            exc=str(exc),
            **trace_fields(kwargs),
        )
        super().on_retry(exc, task_id, args, kwargs, einfo)

    def on_failure(self, exc, task_id, args, kwargs, einfo):  # type: ignore[override]
        logger.error(
            "celery_task_failure",
            task_id=task_id,
            task_name=self.name,
            exc=str(exc),
            **trace_fields(kwargs),
        )
        super().on_failure(exc, task_id, args, kwargs, einfo)

    def on_success(self, retval, task_id, args, kwargs):  # type: ignore[override]
        logger.info(
            "celery_task_success",
            task_id=task_id,
            task_name=self.name,
            result=retval,
            **trace_fields(kwargs),
        )
        super().on_success(retval, task_id, args, kwargs)
