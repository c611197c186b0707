import asyncio
from decimal import Decimal

import pytest

from application.services.providers import get_provider
from application.services.webhook_ingress import WebhookIngress
from domain.common.exceptions import UnknownProviderError
from domain.payment.entity import PaymentProvider, PaymentStatus, RefundContext, RefundStatus
from infrastructure.external.payments.exceptions import PaymentProviderError


@pytest.fixture
def paid_tbank(seed_payment):
    async def _paid(**overrides):
        fields = dict(status=PaymentStatus.SUCCEEDED, tbank_payment_id="7001")
        fields.update(overrides)
        return await seed_payment(**fields)

    return _paid


@pytest.mark.asyncio
async def test_full_refund_completes(paid_tbank, dispatcher, tbank, load_payment, clock):
    payment = await paid_tbank()

    result = await dispatcher.refund(payment, "Admin refund")

    assert result.success is True
    assert result.manual_refund is False
    assert result.refund_id == "7001"
    assert result.refund_amount == Decimal("999")
    assert tbank.cancel_calls[0]["amount_kopeks"] is None
    assert tbank.cancel_calls[0]["receipt"]["Items"][0]["Amount"] == 99900

    stored = await load_payment(payment.id)
    assert stored.status is PaymentStatus.REFUNDED
    assert stored.refund_status is RefundStatus.COMPLETED
    assert stored.refund_reason == "Admin refund"
    assert stored.refund_at == clock()


@pytest.mark.asyncio
async def test_concurrent_refunds_call_gateway_once(paid_tbank, dispatcher, tbank, load_payment):
    payment = await paid_tbank()
    tbank.cancel_delay = 0.05

    results = await asyncio.gather(
        dispatcher.refund(payment, "first"),
        dispatcher.refund(payment, "second"),
    )

    assert len(tbank.cancel_calls) == 1
    assert sorted(r.success for r in results) == [False, True]
    loser = next(r for r in results if not r.success)
    assert loser.already_in_progress is True
    assert loser.manual_refund is False
    assert (await load_payment(payment.id)).status is PaymentStatus.REFUNDED


@pytest.mark.asyncio
async def test_partial_refund_then_further_refunds_are_locked_out(paid_tbank, dispatcher, tbank, load_payment):
    payment = await paid_tbank()

    partial = await dispatcher.partial_refund(payment, 5, 15)

    assert partial.success is True
    assert partial.refund_amount == Decimal("333")
    assert tbank.cancel_calls[0]["amount_kopeks"] == 33300
    stored = await load_payment(payment.id)
    assert stored.status is PaymentStatus.PARTIAL
    assert stored.refund_status is RefundStatus.PARTIAL
    assert stored.refund_reason == "Partial: 5/15 failed"

    again = await dispatcher.refund(stored, "Admin refund")
    assert again.success is False
    assert again.already_in_progress is True
    assert len(tbank.cancel_calls) == 1


@pytest.mark.asyncio
async def test_gateway_rejection_marks_refund_failed(paid_tbank, dispatcher, tbank, load_payment):
    payment = await paid_tbank()
    tbank.cancel_error = PaymentProviderError("Refund rejected", provider="tbank", provider_code="9999")

    failed = await dispatcher.refund(payment, "Admin refund")

    assert failed.success is False
    assert failed.manual_refund is True
    assert failed.error == "Refund rejected"
    assert "Refund rejected" in failed.manual_instructions
    stored = await load_payment(payment.id)
    assert stored.refund_status is RefundStatus.FAILED
    assert stored.status is PaymentStatus.SUCCEEDED

    tbank.cancel_error = None
    retried = await dispatcher.refund(stored, "Admin refund")
    assert retried.success is True
    assert (await load_payment(payment.id)).status is PaymentStatus.REFUNDED


@pytest.mark.asyncio
async def test_missing_gateway_id_releases_lock(seed_payment, dispatcher, tbank, load_payment):
    payment = await seed_payment(status=PaymentStatus.SUCCEEDED)

    result = await dispatcher.refund(payment, "Admin refund")

    assert result.success is False
    assert result.manual_refund is True
    assert "T-Bank ID" in result.manual_instructions
    assert tbank.cancel_calls == []
    assert (await load_payment(payment.id)).refund_status is RefundStatus.NONE


@pytest.mark.asyncio
async def test_unexpected_error_marks_failed_and_propagates(paid_tbank, dispatcher, tbank, load_payment):
    payment = await paid_tbank()
    tbank.cancel_error = RuntimeError("boom")

    with pytest.raises(RuntimeError):
        await dispatcher.refund(payment, "Admin refund")

    assert (await load_payment(payment.id)).refund_status is RefundStatus.FAILED


@pytest.mark.asyncio
async def test_pending_payment_cannot_be_refunded(seed_payment, dispatcher, tbank):
    payment = await seed_payment(tbank_payment_id="7001")

    result = await dispatcher.refund(payment, "Admin refund")

    assert result.success is False
    assert result.already_in_progress is True
    assert tbank.cancel_calls == []


@pytest.mark.asyncio
async def test_tiny_partial_refund_is_skipped(paid_tbank, dispatcher, tbank, load_payment):
    payment = await paid_tbank(amount=Decimal("10"))

    result = await dispatcher.partial_refund(payment, 1, 23)

    assert result.success is True
    assert result.refund_amount == Decimal("0")
    assert result.error == "Refund amount too small"
    assert tbank.cancel_calls == []
    assert (await load_payment(payment.id)).status is PaymentStatus.SUCCEEDED


@pytest.mark.asyncio
async def test_stars_partial_refund_needs_operator(seed_payment, dispatcher, telegram):
    payment = await seed_payment(
        provider=PaymentProvider.STARS,
        status=PaymentStatus.SUCCEEDED,
        telegram_charge_id="ch_1",
        stars_amount=199,
    )

    result = await dispatcher.partial_refund(payment, 5, 15)

    assert result.success is True
    assert result.manual_refund is True
    assert result.refund_amount == Decimal("333")
    assert "doesn't support partial refunds" in result.manual_instructions
    assert telegram.refunds == []


@pytest.mark.asyncio
async def test_dispatch_accepts_context(paid_tbank, dispatcher):
    payment = await paid_tbank()

    result = await dispatcher.dispatch(RefundContext(payment=payment, reason="Support ticket", admin_id=7))

    assert result.success is True


@pytest.mark.asyncio
async def test_unknown_provider_is_rejected(providers):
    with pytest.raises(UnknownProviderError):
        get_provider("paypal", providers)
    assert get_provider(PaymentProvider.TON, providers) is providers.ton
    assert get_provider("stars", providers) is providers.stars


@pytest.mark.asyncio
async def test_ingress_rejects_unknown_provider(providers):
    with pytest.raises(UnknownProviderError):
        await WebhookIngress(providers).handle("paypal", {})


@pytest.mark.asyncio
async def test_auto_refund_prefers_matching_avatar(paid_tbank, dispatcher, load_payment):
    first = await paid_tbank(user_id=5, avatar_id=1)
    second = await paid_tbank(user_id=5, avatar_id=2, tbank_payment_id="7002")

    result = await dispatcher.auto_refund(5, avatar_id=1)

    assert result.success is True
    assert (await load_payment(first.id)).status is PaymentStatus.REFUNDED
    assert (await load_payment(second.id)).status is PaymentStatus.SUCCEEDED


@pytest.mark.asyncio
async def test_auto_refund_without_payment(dispatcher):
    result = await dispatcher.auto_refund(404)

    assert result.success is False
    assert result.error == "No payment found"


@pytest.mark.asyncio
async def test_partial_refund_for_generation(paid_tbank, dispatcher, tbank, load_payment):
    payment = await paid_tbank(user_id=6)

    result = await dispatcher.partial_refund_for_generation(6, 5, 15, payment_id=payment.id)

    assert result.success is True
    assert tbank.cancel_calls[0]["amount_kopeks"] == 33300
    assert (await load_payment(payment.id)).status is PaymentStatus.PARTIAL


@pytest.mark.asyncio
async def test_provider_refund_entry_point(paid_tbank, providers, load_payment):
    payment = await paid_tbank()

    result = await providers.tbank.refund(payment.id, "Admin refund")

    assert result.success is True
    assert (await load_payment(payment.id)).status is PaymentStatus.REFUNDED
