"""Celery beat schedule: periodic payment maintenance."""
from __future__ import annotations

CELERY_BEAT_SCHEDULE = {
    "expire-ton-payments": {
        "task": "payments.expire_ton_payments",
        "schedule": 300,
    },
    "reconcile-tbank-payments": {
        "task": "payments.reconcile_tbank_payments",
        "schedule": 300,
    },
    "refresh-ton-rate": {
        "task": "payments.refresh_ton_rate",
        "schedule": 300,
    },
}
