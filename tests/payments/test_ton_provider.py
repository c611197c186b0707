from datetime import timedelta
from decimal import Decimal

import pytest

from application.dtos.payments import TonConfirmation
from application.services.providers import build_providers
from application.services.webhook_ingress import WebhookIngress
from core.settings import PaymentSettings
from domain.common.exceptions import PaymentConfigurationError
from domain.common.unit_of_work import run_in_transaction
from domain.payment.entity import Currency, PaymentProvider, PaymentStatus, RefundStatus


def transfer(comment, *, tx_hash: str = "tx1", amount: str = "3.0", confirmations: int = 3) -> TonConfirmation:
    return TonConfirmation(
        tx_hash=tx_hash,
        amount=Decimal(amount),
        sender_address="EQ-sender",
        comment=comment,
        confirmations=confirmations,
    )


async def orphan(uow_factory, tx_hash: str):
    return await run_in_transaction(
        uow_factory, lambda uow: uow.orphan_payment_repository.get_by_tx_hash(tx_hash)
    )


@pytest.mark.asyncio
async def test_create_returns_wallet_comment_and_deadline(providers, load_payment, clock):
    created = await providers.ton.create_payment(1, "standard")

    assert created.wallet_address == "EQ-test-wallet"
    assert created.comment == f"PG{created.payment_id}"
    assert created.amount == Decimal("3.0")
    assert created.currency == "TON"
    assert created.exchange_rate == Decimal("250")
    assert created.expires_at == clock() + timedelta(minutes=30)

    payment = await load_payment(created.payment_id)
    assert payment.original_currency is Currency.TON
    assert payment.ton_amount == Decimal("3.0")
    assert payment.provider_payment_id == created.comment
    assert payment.rate_expires_at == clock() + timedelta(minutes=30)


@pytest.mark.asyncio
async def test_admin_wallet_overrides_environment(providers, enable_methods):
    await enable_methods(ton={"enabled": True, "wallet_address": "EQ-admin"})

    created = await providers.ton.create_payment(1, "starter")

    assert created.wallet_address == "EQ-admin"


@pytest.mark.asyncio
async def test_missing_wallet_is_configuration_error(uow_factory, rate_service, tbank, telegram, clock):
    bare = build_providers(
        uow_factory,
        rate_service=rate_service,
        tbank_client=tbank,
        telegram_client=telegram,
        settings=PaymentSettings(),
        clock=clock,
    )
    with pytest.raises(PaymentConfigurationError):
        await bare.ton.create_payment(1, "starter")


@pytest.mark.asyncio
async def test_transfer_moves_through_processing_to_succeeded(providers, load_payment):
    created = await providers.ton.create_payment(1, "standard")

    shallow = await providers.ton.process_webhook(transfer(created.comment, confirmations=3))
    assert shallow.success is True
    assert shallow.status == "processing"

    deeper = await providers.ton.process_webhook(transfer(created.comment, confirmations=6))
    assert deeper.status == "processing"
    assert (await load_payment(created.payment_id)).ton_confirmations == 6

    deep = await providers.ton.process_webhook(transfer(created.comment, confirmations=10))
    assert deep.status == "succeeded"

    replay = await providers.ton.process_webhook(transfer(created.comment, confirmations=10))
    assert replay.duplicate is True

    payment = await load_payment(created.payment_id)
    assert payment.status is PaymentStatus.SUCCEEDED
    assert payment.ton_tx_hash == "tx1"
    assert payment.ton_sender_address == "EQ-sender"


@pytest.mark.asyncio
async def test_within_tolerance_settles_directly(providers):
    created = await providers.ton.create_payment(1, "standard")

    result = await providers.ton.process_webhook(transfer(created.comment, amount="2.98", confirmations=12))

    assert result.success is True
    assert result.status == "succeeded"


@pytest.mark.asyncio
async def test_amount_mismatch_is_stored_as_orphan_once(providers, uow_factory, load_payment):
    created = await providers.ton.create_payment(1, "standard")

    first = await providers.ton.process_webhook(transfer(created.comment, amount="2.5"))
    again = await providers.ton.process_webhook(transfer(created.comment, amount="2.5"))

    assert first.success is False
    assert first.error == "Unmatched TON transaction: amount_mismatch"
    assert first.duplicate is False
    assert again.duplicate is True
    stored = await orphan(uow_factory, "tx1")
    assert stored.reason == "amount_mismatch"
    assert stored.amount == Decimal("2.5")
    assert (await load_payment(created.payment_id)).status is PaymentStatus.PENDING


@pytest.mark.asyncio
async def test_late_transfer_expires_payment(providers, uow_factory, load_payment, clock):
    created = await providers.ton.create_payment(1, "standard")
    clock.advance(minutes=31)

    result = await providers.ton.process_webhook(transfer(created.comment))

    assert result.success is False
    assert result.error == "Unmatched TON transaction: rate_expired"
    assert (await load_payment(created.payment_id)).status is PaymentStatus.EXPIRED
    assert (await orphan(uow_factory, "tx1")).reason == "rate_expired"


@pytest.mark.asyncio
async def test_transfer_without_payment_reference(providers, uow_factory):
    ingress = WebhookIngress(providers)

    result = await ingress.handle(
        "ton",
        {"tx_hash": "tx-anon", "amount": "1.5", "comment": "thanks!", "confirmations": 1},
    )

    assert result.success is False
    assert result.error == "Unmatched TON transaction: no_payment_id"
    assert (await orphan(uow_factory, "tx-anon")).reason == "no_payment_id"


@pytest.mark.asyncio
async def test_malformed_confirmation_is_rejected(providers):
    result = await WebhookIngress(providers).handle("ton", {"tx_hash": "", "amount": "-1", "confirmations": 1})

    assert result.success is False
    assert result.error == "Invalid payload"


@pytest.mark.asyncio
async def test_expiry_sweep(providers, load_payment, clock):
    stale = await providers.ton.create_payment(1, "starter")
    clock.advance(minutes=20)
    live = await providers.ton.create_payment(2, "starter")
    clock.advance(minutes=11)

    count = await providers.ton.expire_old_payments()

    assert count == 1
    assert (await load_payment(stale.payment_id)).status is PaymentStatus.EXPIRED
    assert (await load_payment(live.payment_id)).status is PaymentStatus.PENDING


@pytest.mark.asyncio
async def test_refund_is_manual_with_instructions(seed_payment, load_payment, dispatcher):
    payment = await seed_payment(
        provider=PaymentProvider.TON,
        status=PaymentStatus.SUCCEEDED,
        original_currency=Currency.TON,
        ton_amount=Decimal("3"),
        ton_tx_hash="txhash-9",
        ton_sender_address="EQ-sender",
    )

    result = await dispatcher.refund(payment, "Admin refund")

    assert result.success is True
    assert result.manual_refund is True
    assert "EQ-sender" in result.manual_instructions
    assert "txhash-9" in result.manual_instructions
    stored = await load_payment(payment.id)
    assert stored.refund_status is RefundStatus.PENDING
    assert stored.status is PaymentStatus.SUCCEEDED


@pytest.mark.asyncio
async def test_partial_refund_instructions_scale_ton_amount(seed_payment, dispatcher):
    payment = await seed_payment(
        provider=PaymentProvider.TON,
        status=PaymentStatus.SUCCEEDED,
        original_currency=Currency.TON,
        ton_amount=Decimal("3"),
        ton_tx_hash="txhash-10",
    )

    result = await dispatcher.partial_refund(payment, 5, 15)

    assert result.success is True
    assert result.manual_refund is True
    assert result.refund_amount == Decimal("333")
    assert "1.000000000 TON" in result.manual_instructions


@pytest.mark.asyncio
async def test_operator_confirms_manual_refund(providers, seed_payment, load_payment):
    payment = await seed_payment(
        provider=PaymentProvider.TON,
        status=PaymentStatus.SUCCEEDED,
        ton_amount=Decimal("3"),
        ton_tx_hash="txhash-11",
    )

    assert await providers.ton.confirm_manual_refund(payment.id, tx_hash="refund-tx") is True
    assert await providers.ton.confirm_manual_refund(payment.id) is False

    stored = await load_payment(payment.id)
    assert stored.status is PaymentStatus.REFUNDED
    assert stored.refund_status is RefundStatus.COMPLETED
    assert stored.refund_amount == Decimal("999")


@pytest.mark.asyncio
async def test_confirmed_manual_refund_is_not_reissued(providers, seed_payment, load_payment, dispatcher):
    payment = await seed_payment(
        provider=PaymentProvider.TON,
        status=PaymentStatus.SUCCEEDED,
        ton_amount=Decimal("3"),
        ton_tx_hash="txhash-12",
        ton_sender_address="EQ-sender",
    )
    first = await dispatcher.refund(payment, "Admin refund")
    assert first.success is True
    assert await providers.ton.confirm_manual_refund(payment.id) is True

    again = await dispatcher.refund(payment, "Admin refund")

    assert again.success is False
    assert again.already_in_progress is True
    assert again.manual_refund is False
    assert "Send" not in (again.manual_instructions or "")
    assert (await load_payment(payment.id)).refund_status is RefundStatus.COMPLETED


@pytest.mark.asyncio
async def test_unpaid_ton_payment_gets_no_refund_instructions(providers, dispatcher, load_payment):
    created = await providers.ton.create_payment(1, "standard")
    payment = await load_payment(created.payment_id)

    full = await dispatcher.refund(payment, "Admin refund")
    partial = await dispatcher.partial_refund(payment, 5, 15)

    for result in (full, partial):
        assert result.success is False
        assert result.manual_refund is False
        assert result.manual_instructions is None
        assert result.error == "Payment is not refundable (status=pending)"
    assert (await load_payment(payment.id)).refund_status is RefundStatus.NONE


@pytest.mark.asyncio
async def test_manual_confirmation_waits_for_automatic_refund_lock(providers, seed_payment, load_payment):
    payment = await seed_payment(
        provider=PaymentProvider.TON,
        status=PaymentStatus.SUCCEEDED,
        refund_status=RefundStatus.PROCESSING,
        ton_amount=Decimal("3"),
    )

    assert await providers.ton.confirm_manual_refund(payment.id, tx_hash="refund-tx") is False

    stored = await load_payment(payment.id)
    assert stored.status is PaymentStatus.SUCCEEDED
    assert stored.refund_status is RefundStatus.PROCESSING


@pytest.mark.asyncio
async def test_settlement_keeps_rate_locked_at_creation(providers, market, load_payment, clock):
    created = await providers.ton.create_payment(1, "standard")
    assert created.exchange_rate == Decimal("250")

    market.rate = Decimal("400")
    clock.advance(minutes=20)
    result = await providers.ton.process_webhook(transfer(created.comment, tx_hash="tx-locked", confirmations=12))

    assert result.success is True
    assert result.status == "succeeded"
    payment = await load_payment(created.payment_id)
    assert payment.status is PaymentStatus.SUCCEEDED
    assert payment.exchange_rate == Decimal("250")
    assert payment.ton_amount == Decimal("3.0")
    assert payment.amount == Decimal("999")

    later = await providers.ton.create_payment(2, "standard")
    assert later.exchange_rate == Decimal("400")
