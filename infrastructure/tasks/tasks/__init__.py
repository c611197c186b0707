"""Payment task modules; importing registers them with the Celery app."""
from . import payments  # noqa: F401

__all__ = ["payments"]
