"""Infrastructure models package exports."""
from .base import Base, metadata
from .payment import (
    AdminSettingModel,
    ExchangeRateModel,
    OrphanPaymentModel,
    PaymentModel,
    UserIdentityModel,
)

__all__ = [
    "Base",
    "metadata",
    "PaymentModel",
    "ExchangeRateModel",
    "OrphanPaymentModel",
    "AdminSettingModel",
    "UserIdentityModel",
]
