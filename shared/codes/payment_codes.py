"""
Payment specific codes and provider status mapping.
"""
from __future__ import annotations

from enum import IntEnum


class PaymentCode(IntEnum):
    # Payment records (201xx)
    PAYMENT_NOT_FOUND = 20101
    PAYMENT_VALIDATION = 20102
    PROVIDER_DISABLED = 20103
    UNKNOWN_PROVIDER = 20104

    # Provider/Network errors (6xxxx)
    PROVIDER_ERROR = 60000
    PROVIDER_RECOVERABLE = 60001
    SIGNATURE_ERROR = 60002
    CONFIGURATION_ERROR = 60005


# Provider→internal status mapping. Anything not listed maps to "pending".
PROVIDER_STATUS_TO_INTERNAL = {
    "tbank": {
        "CONFIRMED": "succeeded",
        "REJECTED": "canceled",
        "CANCELED": "canceled",
        "REFUNDED": "refunded",
    },
}
