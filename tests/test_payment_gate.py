"""Tests del flujo Premium: ningún ticket existe antes de confirmar el pago"""
from unittest.mock import patch

import pytest

from conftest import sign_webhook
from services.ticket_purchase.models.ticket import CreateOutcome, Tier
from services.ticket_purchase.services.payment_gate import PaymentOutcome
from services.ticket_purchase.services.pending_drafts import PAYMENT_PREFIX
from shared.utils.errors import PaymentGatewayError, StoreUnavailableError


async def test_premium_creates_nothing_until_paid(lifecycle, store, drafts, mp_sdk, make_draft, account):
    result = await lifecycle.create(make_draft(tier=Tier.PREMIUM), account)

    assert result.outcome == CreateOutcome.PAYMENT_PENDING
    assert result.ticket is None
    assert result.payment_link == "https://sandbox.mercadopago.com/checkout/pref-123"
    assert await store.find_by_owner(email="ana@example.com") == []
    assert await drafts.exists(PAYMENT_PREFIX, result.payment_session_ref)

    preference = mp_sdk.preference.return_value.create.call_args.args[0]
    assert preference["external_reference"] == result.payment_session_ref
    assert preference["items"][0]["unit_price"] == 4.99
    assert "reference" not in preference["metadata"]


async def test_confirm_payment_creates_ticket_once(lifecycle, store, dispatcher, make_draft, account):
    pending = await lifecycle.create(make_draft(tier=Tier.PREMIUM), account)

    confirmed = await lifecycle.confirm_payment(pending.payment_session_ref, payment_reference="pay-1")
    replay = await lifecycle.confirm_payment(pending.payment_session_ref, payment_reference="pay-1")

    assert confirmed.outcome == CreateOutcome.CREATED
    assert confirmed.ticket.tier == Tier.PREMIUM
    assert confirmed.ticket.owner_account_id == "acc-ana"
    assert confirmed.ticket.payment_reference == "pay-1"
    assert replay.outcome == CreateOutcome.NOT_PENDING
    assert len(await store.find_by_owner(email="ana@example.com")) == 1
    # La cuenta retenida con el borrador recibe el email
    assert dispatcher.calls[0][1] == account


async def test_cancel_payment_discards_draft(lifecycle, store, make_draft):
    pending = await lifecycle.create(make_draft(tier=Tier.PREMIUM))

    cancelled = await lifecycle.cancel_payment(pending.payment_session_ref)
    late_success = await lifecycle.confirm_payment(pending.payment_session_ref)

    assert cancelled.outcome == CreateOutcome.DISCARDED
    assert late_success.outcome == CreateOutcome.NOT_PENDING
    assert await store.find_by_owner(email="ana@example.com") == []
    assert (await lifecycle.cancel_payment(pending.payment_session_ref)).outcome == CreateOutcome.NOT_PENDING


async def test_gateway_failure_holds_nothing(lifecycle, redis_client, mp_sdk, make_draft):
    mp_sdk.preference.return_value.create.return_value = {"status": 500, "response": {"message": "caído"}}

    with pytest.raises(PaymentGatewayError):
        await lifecycle.create(make_draft(tier=Tier.PREMIUM))

    assert await redis_client.keys(f"{PAYMENT_PREFIX}:*") == []


async def test_initiate_rejects_standard(payment_gate, make_draft):
    with pytest.raises(ValueError):
        await payment_gate.initiate(make_draft(tier=Tier.STANDARD))


@pytest.mark.parametrize(
    "status,outcome",
    [
        ("approved", PaymentOutcome.SUCCEEDED),
        ("cancelled", PaymentOutcome.FAILED),
        ("rejected", PaymentOutcome.IGNORED),
        ("refunded", PaymentOutcome.FAILED),
        ("in_process", PaymentOutcome.IGNORED),
    ],
)
async def test_resolve_notification_maps_status(payment_gate, mp_sdk, status, outcome):
    mp_sdk.payment.return_value.get.return_value = {
        "status": 200,
        "response": {"status": status, "external_reference": "sess-1"},
    }

    notification = await payment_gate.resolve_notification("987")

    assert notification.outcome == outcome
    assert notification.session_ref == "sess-1"
    mp_sdk.payment.return_value.get.assert_called_with("987")


async def test_payment_notification_approved(lifecycle, mp_sdk, make_draft, account):
    pending = await lifecycle.create(make_draft(tier=Tier.PREMIUM), account)
    mp_sdk.payment.return_value.get.return_value = {
        "status": 200,
        "response": {"status": "approved", "external_reference": pending.payment_session_ref},
    }

    result = await lifecycle.process_payment_notification("987")

    assert result.outcome == CreateOutcome.CREATED
    assert result.ticket.payment_reference == "987"


async def test_payment_notification_pending_and_cancelled(lifecycle, drafts, mp_sdk, make_draft):
    pending = await lifecycle.create(make_draft(tier=Tier.PREMIUM))
    session_ref = pending.payment_session_ref

    mp_sdk.payment.return_value.get.return_value = {
        "status": 200,
        "response": {"status": "in_process", "external_reference": session_ref},
    }
    waiting = await lifecycle.process_payment_notification("1")
    assert waiting.outcome == CreateOutcome.NOT_PENDING
    assert await drafts.exists(PAYMENT_PREFIX, session_ref)

    mp_sdk.payment.return_value.get.return_value = {
        "status": 200,
        "response": {"status": "cancelled", "external_reference": session_ref},
    }
    cancelled = await lifecycle.process_payment_notification("1")
    assert cancelled.outcome == CreateOutcome.DISCARDED
    assert not await drafts.exists(PAYMENT_PREFIX, session_ref)


async def test_rejected_card_can_still_be_paid(lifecycle, store, drafts, mp_sdk, make_draft, account):
    """Un rechazo de tarjeta deja el borrador: el reintento aprobado crea el ticket"""
    pending = await lifecycle.create(make_draft(tier=Tier.PREMIUM), account)
    session_ref = pending.payment_session_ref

    mp_sdk.payment.return_value.get.return_value = {
        "status": 200,
        "response": {"status": "rejected", "external_reference": session_ref},
    }
    rejected = await lifecycle.process_payment_notification("401")
    assert rejected.outcome == CreateOutcome.NOT_PENDING
    assert await drafts.exists(PAYMENT_PREFIX, session_ref)

    mp_sdk.payment.return_value.get.return_value = {
        "status": 200,
        "response": {"status": "approved", "external_reference": session_ref},
    }
    approved = await lifecycle.process_payment_notification("402")

    assert approved.outcome == CreateOutcome.CREATED
    assert approved.ticket.payment_reference == "402"
    assert len(await store.find_by_owner(email="ana@example.com")) == 1


# ========== CONFIRMACIÓN IDEMPOTENTE ==========

async def test_confirm_payment_store_failure_keeps_draft(lifecycle, store, drafts, make_draft, account):
    """Si el almacén falla el borrador sobrevive y el reintento del webhook crea el ticket"""
    pending = await lifecycle.create(make_draft(tier=Tier.PREMIUM), account)
    session_ref = pending.payment_session_ref

    with patch.object(store, "create_if_absent", side_effect=StoreUnavailableError("base caída")):
        with pytest.raises(StoreUnavailableError):
            await lifecycle.confirm_payment(session_ref, payment_reference="pay-1")

    assert await drafts.exists(PAYMENT_PREFIX, session_ref)
    assert await store.find_by_owner(email="ana@example.com") == []

    retried = await lifecycle.confirm_payment(session_ref, payment_reference="pay-1")

    assert retried.outcome == CreateOutcome.CREATED
    assert retried.ticket.payment_session_ref == session_ref
    assert not await drafts.exists(PAYMENT_PREFIX, session_ref)
    assert len(await store.find_by_owner(email="ana@example.com")) == 1


async def test_confirm_payment_in_progress_is_not_repeated(lifecycle, store, drafts, make_draft):
    pending = await lifecycle.create(make_draft(tier=Tier.PREMIUM))
    session_ref = pending.payment_session_ref
    assert await drafts.claim(PAYMENT_PREFIX, session_ref)

    concurrent = await lifecycle.confirm_payment(session_ref)

    assert concurrent.outcome == CreateOutcome.NOT_PENDING
    assert await drafts.exists(PAYMENT_PREFIX, session_ref)
    assert await store.find_by_owner(email="ana@example.com") == []


async def test_confirm_payment_after_partial_success(lifecycle, store, drafts, payment_gate, make_draft):
    """Ticket persistido pero borrador sin limpiar: el reintento no duplica"""
    pending = await lifecycle.create(make_draft(tier=Tier.PREMIUM))
    session_ref = pending.payment_session_ref

    with patch.object(payment_gate, "on_succeeded", side_effect=ConnectionError("redis caído")):
        with pytest.raises(ConnectionError):
            await lifecycle.confirm_payment(session_ref, payment_reference="pay-1")

    # El claim vence por TTL
    await drafts.release_claim(PAYMENT_PREFIX, session_ref)
    retried = await lifecycle.confirm_payment(session_ref, payment_reference="pay-1")

    tickets = await store.find_by_owner(email="ana@example.com")
    assert retried.outcome == CreateOutcome.NOT_PENDING
    assert retried.ticket.reference == tickets[0].reference
    assert len(tickets) == 1
    assert not await drafts.exists(PAYMENT_PREFIX, session_ref)


# ========== WEBHOOK ==========

def test_verify_webhook_signature(mercado_pago):
    signature = sign_webhook("whsec-test", "12345", "req-1")
    body = {"type": "payment", "data": {"id": "12345"}}

    assert mercado_pago.verify_webhook(body, signature, "req-1", {"data.id": "12345"})
    assert not mercado_pago.verify_webhook(body, signature, "req-2", {"data.id": "12345"})
    assert not mercado_pago.verify_webhook(body, None, "req-1")


def test_verify_webhook_without_secret(mercado_pago):
    mercado_pago.webhook_secret = ""
    assert mercado_pago.verify_webhook({}, None, None)


def test_verify_payment_error_status(mercado_pago, mp_sdk):
    mp_sdk.payment.return_value.get.return_value = {"status": 404, "response": {}}

    with pytest.raises(PaymentGatewayError):
        mercado_pago.verify_payment("404")
