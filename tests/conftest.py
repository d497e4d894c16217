"""Fixtures compartidos: SQLite en memoria, Redis falso y Mercado Pago simulado"""
import os

os.environ.setdefault("APP_ENV", "test")
os.environ.setdefault("DATABASE_URL", "sqlite+aiosqlite:///:memory:")
os.environ.setdefault("JWT_SECRET_KEY", "test-secret-key")
os.environ.setdefault("APP_BASE_URL", "https://tickets.example.com")
os.environ.setdefault("MERCADOPAGO_ACCESS_TOKEN", "")
os.environ.setdefault("MERCADOPAGO_WEBHOOK_SECRET", "whsec-test")
os.environ.setdefault("MERCADOPAGO_ENVIRONMENT", "sandbox")
os.environ.setdefault("RESEND_API_KEY", "")
os.environ.setdefault("EMAIL_RETRY_DELAY_SECONDS", "0")
os.environ.setdefault("REQUIRE_ACCOUNT_FOR_TICKETS", "false")

import hashlib
import hmac
import io
from typing import List, Optional
from unittest.mock import MagicMock

import fakeredis
import numpy as np
import pytest
from PIL import Image

from shared.database import connection
from services.notifications.services.dispatcher import DeliveryResult, resolve_recipients
from services.ticket_purchase.models.ticket import Account, TicketDraft, TicketRecord, Tier
from services.ticket_purchase.services.mercado_pago_service import MercadoPagoService
from services.ticket_purchase.services.payment_gate import PaymentGate
from services.ticket_purchase.services.pending_drafts import PendingDraftStore
from services.ticket_purchase.services.ticket_lifecycle_service import TicketLifecycleService
from services.ticket_purchase.services.ticket_store import SQLAlchemyTicketStore
from services.ticket_validation.services.qr_codec import QRCodec


class RecordingDispatcher:
    """Registra los envíos en lugar de mandar emails"""

    def __init__(self, fail: bool = False):
        self.fail = fail
        self.calls = []

    async def dispatch_ticket(self, ticket: TicketRecord, account: Optional[Account] = None) -> List[DeliveryResult]:
        self.calls.append((ticket, account))
        if self.fail:
            raise RuntimeError("Resend caído")
        return [
            DeliveryResult(recipient=recipient, delivered=True, attempts=1)
            for recipient in resolve_recipients(ticket, account)
        ]


def sign_webhook(secret: str, data_id: str, request_id: str, ts: str = "1742505638683") -> str:
    """Construir un x-signature válido para Mercado Pago"""
    manifest = f"id:{data_id.lower()};request-id:{request_id};ts:{ts};"
    digest = hmac.new(secret.encode(), msg=manifest.encode(), digestmod=hashlib.sha256).hexdigest()
    return f"ts={ts},v1={digest}"


def qr_frame(codec: QRCodec, reference: str) -> np.ndarray:
    """QR renderizado como matriz RGB"""
    artifact = codec.encode(reference)
    with Image.open(io.BytesIO(artifact.png)) as image:
        return np.asarray(image.convert("RGB"))


def blank_frame(size: int = 240) -> np.ndarray:
    return np.full((size, size, 3), 255, dtype=np.uint8)


@pytest.fixture
async def session_maker():
    await connection.init_db("sqlite+aiosqlite:///:memory:")
    await connection.create_schema()
    yield connection.get_session_maker()
    await connection.close_db()


@pytest.fixture
def store(session_maker):
    return SQLAlchemyTicketStore(session_maker)


@pytest.fixture
async def redis_client():
    client = fakeredis.FakeAsyncRedis(decode_responses=True)
    yield client
    await client.flushall()
    await client.aclose()


@pytest.fixture
def drafts(redis_client):
    return PendingDraftStore(redis_client, ttl_seconds=1800)


@pytest.fixture
def codec():
    return QRCodec(base_url="https://tickets.example.com")


@pytest.fixture
def mp_sdk():
    sdk = MagicMock()
    sdk.preference.return_value.create.return_value = {
        "status": 201,
        "response": {
            "id": "pref-123",
            "init_point": "https://www.mercadopago.com/checkout/pref-123",
            "sandbox_init_point": "https://sandbox.mercadopago.com/checkout/pref-123",
        },
    }
    return sdk


@pytest.fixture
def mercado_pago(mp_sdk):
    service = MercadoPagoService(access_token="TEST-123", sdk=mp_sdk)
    service.webhook_secret = "whsec-test"
    return service


@pytest.fixture
def payment_gate(mercado_pago, drafts):
    return PaymentGate(mercado_pago, drafts, price=4.99, currency="USD")


@pytest.fixture
def dispatcher():
    return RecordingDispatcher()


@pytest.fixture
def lifecycle(store, drafts, payment_gate, dispatcher):
    return TicketLifecycleService(
        store=store,
        drafts=drafts,
        payment_gate=payment_gate,
        dispatcher=dispatcher,
        require_account=False,
    )


@pytest.fixture
def make_draft():
    def _make(email: str = "ana@example.com", tier: Tier = Tier.STANDARD, **overrides) -> TicketDraft:
        data = {
            "holder_name": "Ana Pérez",
            "owner_email": email,
            "event_name": "Concierto de Primavera",
            "event_date": "2026-11-20",
            "event_time": "21:00",
            "location": "Teatro Municipal",
            "tier": tier,
        }
        data.update(overrides)
        return TicketDraft(**data)

    return _make


@pytest.fixture
def account():
    return Account(id="acc-ana", email="ana@example.com")


@pytest.fixture
def other_account():
    return Account(id="acc-bruno", email="bruno@example.com")
