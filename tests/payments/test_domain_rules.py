from datetime import datetime, timedelta, timezone
from decimal import Decimal

import pytest

from domain.common.exceptions import DomainValidationException, PaymentValidationError
from domain.payment.entity import (
    Payment,
    PaymentProvider,
    PaymentStatus,
    RefundStatus,
    can_transition,
    sources_for,
)
from domain.payment.pricing import PaymentMethodsConfig, TierId, get_tier
from domain.payment.service import (
    amount_within_tolerance,
    build_ton_comment,
    calculate_partial_refund,
    map_provider_status,
    parse_ton_comment,
    to_minor_units,
    ton_manual_refund_instructions,
    ton_status_for_confirmations,
)


def test_partial_refund_amounts_round_to_whole_rubles():
    assert calculate_partial_refund(Decimal("999"), 5, 15) == Decimal("333")
    assert calculate_partial_refund(Decimal("499"), 1, 23) == Decimal("22")
    assert calculate_partial_refund(Decimal("1499"), 23, 23) == Decimal("1499")
    assert calculate_partial_refund(Decimal("999"), 0, 15) == Decimal("0")


def test_partial_refund_rejects_bad_units():
    with pytest.raises(DomainValidationException):
        calculate_partial_refund(Decimal("999"), 1, 0)
    with pytest.raises(DomainValidationException):
        calculate_partial_refund(Decimal("999"), 16, 15)


def test_minor_units():
    assert to_minor_units(Decimal("999")) == 99900
    assert to_minor_units(Decimal("0.015")) == 2


def test_ton_comment_roundtrip_and_garbage():
    assert build_ton_comment(42) == "PG42"
    assert parse_ton_comment("PG42") == 42
    assert parse_ton_comment("payment PG7 thanks") == 7
    assert parse_ton_comment("hello") is None
    assert parse_ton_comment(None) is None
    assert parse_ton_comment("") is None


def test_amount_tolerance_is_relative_one_percent():
    expected = Decimal("3.0")
    assert amount_within_tolerance(Decimal("3.0"), expected, Decimal("0.01"))
    assert amount_within_tolerance(Decimal("2.97"), expected, Decimal("0.01"))
    assert amount_within_tolerance(Decimal("3.03"), expected, Decimal("0.01"))
    assert not amount_within_tolerance(Decimal("2.96"), expected, Decimal("0.01"))
    assert not amount_within_tolerance(Decimal("1"), Decimal("0"), Decimal("0.01"))


def test_confirmation_depth():
    assert ton_status_for_confirmations(3, 10) == PaymentStatus.PROCESSING
    assert ton_status_for_confirmations(10, 10) == PaymentStatus.SUCCEEDED


def test_status_transitions_are_monotonic():
    assert can_transition(PaymentStatus.PENDING, PaymentStatus.SUCCEEDED)
    assert can_transition(PaymentStatus.PROCESSING, PaymentStatus.SUCCEEDED)
    assert can_transition(PaymentStatus.SUCCEEDED, PaymentStatus.REFUNDED)
    assert can_transition(PaymentStatus.PARTIAL, PaymentStatus.REFUNDED)
    assert not can_transition(PaymentStatus.SUCCEEDED, PaymentStatus.PENDING)
    assert not can_transition(PaymentStatus.REFUNDED, PaymentStatus.SUCCEEDED)
    assert not can_transition(PaymentStatus.EXPIRED, PaymentStatus.SUCCEEDED)
    assert set(sources_for(PaymentStatus.EXPIRED)) == {PaymentStatus.PENDING}


def test_provider_status_mapping():
    assert map_provider_status("tbank", "CONFIRMED") == PaymentStatus.SUCCEEDED
    assert map_provider_status("tbank", "REJECTED") == PaymentStatus.CANCELED
    assert map_provider_status("tbank", "NEW") == PaymentStatus.PENDING
    assert map_provider_status("tbank", None) == PaymentStatus.PENDING


def test_payment_requires_positive_amount():
    with pytest.raises(DomainValidationException):
        Payment(id=None, user_id=1, provider=PaymentProvider.TBANK, amount=Decimal("0"))


def test_rate_expiry_normalizes_naive_datetimes():
    naive = datetime(2026, 10, 19, 12, 0)
    payment = Payment(
        id=1,
        user_id=1,
        provider=PaymentProvider.TON,
        amount=Decimal("999"),
        rate_expires_at=naive,
    )
    assert payment.rate_expires_at.tzinfo is not None
    assert payment.is_rate_expired(datetime(2026, 10, 19, 12, 1, tzinfo=timezone.utc))
    assert not payment.is_rate_expired(datetime(2026, 10, 19, 11, 59, tzinfo=timezone.utc))


def test_refundable_mirrors_lock_condition():
    payment = Payment(id=1, user_id=1, provider=PaymentProvider.TBANK, amount=Decimal("999"))
    assert not payment.is_refundable()
    payment.status = PaymentStatus.SUCCEEDED
    assert payment.is_refundable()
    payment.refund_status = RefundStatus.FAILED
    assert payment.is_refundable()
    payment.refund_status = RefundStatus.PROCESSING
    assert not payment.is_refundable()


def test_ton_instructions_include_amount_and_hash():
    payment = Payment(
        id=1,
        user_id=1,
        provider=PaymentProvider.TON,
        amount=Decimal("999"),
        ton_amount=Decimal("3.0"),
        ton_tx_hash="abc123",
        ton_sender_address="EQ-sender",
    )
    text = ton_manual_refund_instructions(payment)
    assert "3.0 TON" in text
    assert "EQ-sender" in text
    assert "abc123" in text

    payment.ton_sender_address = None
    text = ton_manual_refund_instructions(payment, Decimal("1.5"))
    assert "1.5 TON" in text
    assert "abc123" in text
    assert "contact user" in text


def test_get_tier():
    tier = get_tier("standard")
    assert tier.id is TierId.STANDARD
    assert tier.price_rub == Decimal("999")
    assert tier.photos == 15
    with pytest.raises(PaymentValidationError):
        get_tier("ultimate")


def test_payment_methods_defaults():
    config = PaymentMethodsConfig.defaults()
    assert config.tbank.enabled is True
    assert config.stars.enabled is False
    assert config.ton.enabled is False
    assert config.stars.pricing[TierId.STARTER] == 99
    assert config.ton.pricing[TierId.PREMIUM] == Decimal("4.5")


def test_payment_methods_overrides():
    config = PaymentMethodsConfig.from_dict(
        {
            "tbank": {"enabled": False},
            "stars": {"enabled": True, "pricing": {"starter": {"stars": 150}, "bogus": 1}},
            "ton": {"enabled": True, "walletAddress": "EQ-admin", "pricing": {"standard": "2.5"}},
        }
    )
    assert config.tbank.enabled is False
    assert config.stars.pricing[TierId.STARTER] == 150
    assert config.stars.pricing[TierId.STANDARD] == 199
    assert config.ton.pricing[TierId.STANDARD] == Decimal("2.5")
    assert config.ton.wallet_address == "EQ-admin"
    assert config.for_provider("ton") is config.ton
