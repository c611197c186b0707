"""
Provider API clients.
"""
from .exceptions import PaymentProviderError, PaymentRecoverableError, PaymentSignatureError
from .tbank_client import TBankClient
from .telegram_client import TelegramBotClient

__all__ = [
    "PaymentProviderError",
    "PaymentRecoverableError",
    "PaymentSignatureError",
    "TBankClient",
    "TelegramBotClient",
]
