"""Small dispatching helpers to decouple Celery from callers."""
from __future__ import annotations

from typing import Any, Dict, Optional

from ..config.celery import celery_app


class TaskDispatcher:
    """Facade the generation pipeline uses to schedule refunds."""

    def schedule_auto_refund(self, user_id: int, *, avatar_id: Optional[int] = None, payment_id: Optional[int] = None) -> None:
        """Full refund after a generation failed completely."""
        celery_app.send_task(
            "payments.auto_refund",
            kwargs={"user_id": user_id, "avatar_id": avatar_id, "payment_id": payment_id},
        )

    def schedule_partial_refund(
        self,
        user_id: int,
        failed_units: int,
        total_units: int,
        *,
        avatar_id: Optional[int] = None,
        payment_id: Optional[int] = None,
    ) -> None:
        celery_app.send_task(
            "payments.partial_refund_for_generation",
            kwargs={
                "user_id": user_id,
                "failed_units": failed_units,
                "total_units": total_units,
                "avatar_id": avatar_id,
                "payment_id": payment_id,
            },
        )

    def enqueue(self, task_name: str, *, args: tuple | None = None, kwargs: Dict[str, Any] | None = None) -> None:
        """Generic escape hatch for scheduling arbitrary tasks by name."""
        celery_app.send_task(task_name, args=args or (), kwargs=kwargs or {})
