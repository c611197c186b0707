"""Task base class, log helpers and the refund dispatcher facade."""
from .base_task import BaseTask, trace_fields
from .dispatcher import TaskDispatcher

__all__ = ["BaseTask", "TaskDispatcher", "trace_fields"]
