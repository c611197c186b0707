import json
from decimal import Decimal

import pytest

from application.dtos.payments import StarsSuccessfulPayment
from application.services.webhook_ingress import WebhookIngress, parse_telegram_update
from domain.common.exceptions import PaymentConfigurationError, PaymentValidationError
from domain.common.unit_of_work import run_in_transaction
from domain.payment.entity import Currency, PaymentProvider, PaymentStatus


TELEGRAM_USER = 4242


@pytest.fixture
def link_telegram(uow_factory):
    async def _link(user_id: int = 1, telegram_user_id: int = TELEGRAM_USER) -> None:
        await run_in_transaction(
            uow_factory,
            lambda uow: uow.user_identity_repository.link_telegram_user(user_id, telegram_user_id),
        )

    return _link


def successful_payment_update(charge_id: str, payload: str, total: int = 199) -> dict:
    return {
        "update_id": 1,
        "message": {
            "message_id": 10,
            "from": {"id": TELEGRAM_USER},
            "successful_payment": {
                "currency": "XTR",
                "total_amount": total,
                "invoice_payload": payload,
                "telegram_payment_charge_id": charge_id,
                "provider_payment_charge_id": "",
            },
        },
    }


@pytest.mark.asyncio
async def test_create_sends_invoice_in_stars(providers, telegram, link_telegram, load_payment):
    await link_telegram()

    created = await providers.stars.create_payment(1, "standard", avatar_id=3)

    assert created.invoice_target == TELEGRAM_USER
    assert created.amount == Decimal("199")
    assert created.currency == "XTR"
    assert created.settlement_amount == Decimal("999")
    assert created.provider_ref == "55"

    invoice = telegram.invoices[0]
    assert invoice["chat_id"] == TELEGRAM_USER
    assert invoice["amount"] == 199
    assert invoice["label"] == "15 AI Photos"
    assert json.loads(invoice["payload"]) == {
        "payment_id": created.payment_id,
        "user_id": 1,
        "avatar_id": 3,
        "tier_id": "standard",
    }

    payment = await load_payment(created.payment_id)
    assert payment.original_currency is Currency.XTR
    assert payment.stars_amount == 199
    assert payment.exchange_rate == Decimal("1")


@pytest.mark.asyncio
async def test_create_requires_linked_telegram_account(providers, telegram):
    with pytest.raises(PaymentValidationError):
        await providers.stars.create_payment(1, "starter")
    assert telegram.invoices == []


@pytest.mark.asyncio
async def test_create_requires_bot_token(providers, telegram, link_telegram):
    await link_telegram()
    telegram.has_token = False
    with pytest.raises(PaymentConfigurationError):
        await providers.stars.create_payment(1, "starter")


@pytest.mark.asyncio
async def test_pre_checkout_is_always_answered(providers, telegram):
    update = {
        "update_id": 2,
        "pre_checkout_query": {
            "id": "q1",
            "from": {"id": TELEGRAM_USER},
            "currency": "XTR",
            "total_amount": 199,
            "invoice_payload": "{}",
        },
    }

    result = await WebhookIngress(providers).handle("stars", update)

    assert result.success is True
    assert telegram.pre_checkout_answers == [("q1", True)]


@pytest.mark.asyncio
async def test_successful_payment_settles_and_replays_are_duplicates(providers, telegram, link_telegram, load_payment):
    await link_telegram()
    created = await providers.stars.create_payment(1, "standard")
    update = successful_payment_update("ch_1", telegram.invoices[0]["payload"])
    ingress = WebhookIngress(providers)

    first = await ingress.handle("stars", update)
    replay = await ingress.handle("stars", update)

    assert first.success is True
    assert first.status == "succeeded"
    assert replay.duplicate is True
    payment = await load_payment(created.payment_id)
    assert payment.status is PaymentStatus.SUCCEEDED
    assert payment.telegram_charge_id == "ch_1"


@pytest.mark.asyncio
async def test_garbled_invoice_payload_is_rejected(providers):
    event = StarsSuccessfulPayment(charge_id="ch_2", currency="XTR", total_amount=199, invoice_payload="not-json")

    result = await providers.stars.process_webhook(event)

    assert result.success is False
    assert result.error == "Invalid invoice payload"


@pytest.mark.asyncio
async def test_unrelated_updates_are_ignored(providers):
    assert parse_telegram_update({"update_id": 3, "message": {"text": "hi"}}) is None

    result = await WebhookIngress(providers).handle("stars", {"update_id": 3, "message": {"text": "hi"}})

    assert result.success is True
    assert result.payment_id is None


@pytest.mark.asyncio
async def test_refund_goes_through_bot_api(providers, telegram, link_telegram, seed_payment, load_payment, dispatcher):
    await link_telegram()
    payment = await seed_payment(
        provider=PaymentProvider.STARS,
        status=PaymentStatus.SUCCEEDED,
        telegram_charge_id="ch_9",
        stars_amount=199,
        original_currency=Currency.XTR,
    )

    result = await dispatcher.refund(payment, "Generation failed")

    assert result.success is True
    assert result.refund_id == "ch_9"
    assert telegram.refunds == [{"user_id": TELEGRAM_USER, "charge_id": "ch_9"}]
    assert (await load_payment(payment.id)).status is PaymentStatus.REFUNDED


@pytest.mark.asyncio
async def test_refund_without_charge_id_releases_lock(providers, seed_payment, load_payment, dispatcher):
    payment = await seed_payment(provider=PaymentProvider.STARS, status=PaymentStatus.SUCCEEDED)

    result = await dispatcher.refund(payment, "Generation failed")

    assert result.success is False
    assert result.manual_refund is True
    assert "BotFather" in result.manual_instructions
    stored = await load_payment(payment.id)
    assert stored.refund_status.value == "none"
    assert stored.status is PaymentStatus.SUCCEEDED
