"""Pasarela de pago para tickets Premium"""
import asyncio
import logging
import uuid
from enum import Enum
from functools import partial
from typing import Optional

from pydantic import BaseModel

from app.core.config import settings
from services.ticket_purchase.models.ticket import Account, TicketDraft, Tier
from services.ticket_purchase.services.mercado_pago_service import (
    FAILED_STATUSES,
    SUCCEEDED_STATUSES,
    MercadoPagoService,
)
from services.ticket_purchase.services.pending_drafts import PAYMENT_PREFIX, PendingDraftStore
from shared.utils.errors import PaymentGatewayError
from shared.utils.retry import retry_decorator

logger = logging.getLogger(__name__)


class PaymentOutcome(str, Enum):
    SUCCEEDED = "succeeded"
    FAILED = "failed"
    IGNORED = "ignored"  # pending, in_process, rejected, etc.


class PaymentSession(BaseModel):
    session_ref: str
    preference_id: str
    payment_link: str


class PaymentNotification(BaseModel):
    outcome: PaymentOutcome
    session_ref: Optional[str] = None
    payment_id: str
    status: Optional[str] = None


class PaymentGate:
    """
    Ningún ticket Premium se persiste hasta que el pago se confirma.

    initiate() solo crea la preferencia y retiene el borrador bajo la
    referencia de sesión. Al confirmarse el pago el borrador se lee con
    pending(), se marca con begin_confirmation() y solo se elimina con
    on_succeeded() una vez persistido el ticket; si la persistencia falla,
    abort_confirmation() lo deja disponible para el reintento del webhook.
    on_failed()/on_cancelled() lo descartan.
    """

    def __init__(
        self,
        mercado_pago: MercadoPagoService,
        drafts: PendingDraftStore,
        price: Optional[float] = None,
        currency: Optional[str] = None,
    ):
        self.mercado_pago = mercado_pago
        self.drafts = drafts
        self.price = price if price is not None else settings.PREMIUM_TICKET_PRICE
        self.currency = currency or settings.PAYMENT_CURRENCY

    async def initiate(self, draft: TicketDraft, account: Optional[Account] = None) -> PaymentSession:
        """
        Crear la sesión de pago y retener el borrador

        Raises:
            PaymentGatewayError: el procesador falló; no se retuvo nada
        """
        if draft.tier != Tier.PREMIUM:
            raise ValueError(f"El tier {draft.tier.value} no requiere pago")

        session_ref = str(uuid.uuid4())
        # Sin referencia de ticket: todavía no existe
        metadata = {
            "session_ref": session_ref,
            "event_name": draft.event_name,
            "holder_name": draft.holder_name,
            "owner_email": draft.owner_email,
            "tier": draft.tier.value,
        }

        loop = asyncio.get_running_loop()
        preference = await loop.run_in_executor(
            None,
            partial(
                self.mercado_pago.create_preference,
                session_ref=session_ref,
                title=f"Ticket {draft.tier.value} - {draft.event_name}",
                amount=self.price,
                currency=self.currency,
                description=f"{draft.event_name} ({draft.event_date} {draft.event_time})",
                payer_email=draft.owner_email,
                payer_name=draft.holder_name,
                metadata=metadata,
                expires_in_minutes=max(1, settings.PENDING_DRAFT_TTL_SECONDS // 60),
            ),
        )

        await self.drafts.hold(PAYMENT_PREFIX, session_ref, draft, account)
        logger.info(f"Sesión de pago {session_ref} creada (preferencia {preference['preference_id']})")

        return PaymentSession(
            session_ref=session_ref,
            preference_id=preference["preference_id"],
            payment_link=preference["payment_link"],
        )

    async def pending(self, session_ref: str) -> Optional[dict]:
        """Borrador retenido de la sesión; None si ya se procesó o expiró"""
        held = await self.drafts.peek(PAYMENT_PREFIX, session_ref)
        if held is None:
            logger.info(f"Pago confirmado para sesión {session_ref} sin borrador pendiente")
        return held

    async def begin_confirmation(self, session_ref: str) -> bool:
        """False si otra notificación ya está creando el ticket de esta sesión"""
        claimed = await self.drafts.claim(PAYMENT_PREFIX, session_ref)
        if not claimed:
            logger.info(f"Confirmación de sesión {session_ref} ya en curso")
        return claimed

    async def abort_confirmation(self, session_ref: str):
        await self.drafts.release_claim(PAYMENT_PREFIX, session_ref)

    async def on_succeeded(self, session_ref: str) -> bool:
        """Ticket persistido: eliminar el borrador y la marca de confirmación"""
        discarded = await self.drafts.discard(PAYMENT_PREFIX, session_ref)
        await self.drafts.release_claim(PAYMENT_PREFIX, session_ref)
        logger.info(f"Sesión de pago {session_ref} confirmada")
        return discarded

    async def on_failed(self, session_ref: str) -> bool:
        discarded = await self.drafts.discard(PAYMENT_PREFIX, session_ref)
        logger.info(f"Sesión de pago {session_ref} descartada (existía: {discarded})")
        return discarded

    async def on_cancelled(self, session_ref: str) -> bool:
        return await self.on_failed(session_ref)

    @retry_decorator(max_retries=2, initial_delay=0.5, exceptions=(PaymentGatewayError,))
    async def _fetch_payment(self, payment_id: str) -> dict:
        loop = asyncio.get_running_loop()
        return await loop.run_in_executor(None, self.mercado_pago.verify_payment, payment_id)

    async def resolve_notification(self, payment_id: str) -> PaymentNotification:
        """Consultar el pago notificado y mapear su estado"""
        payment = await self._fetch_payment(payment_id)
        status = payment.get("status")
        session_ref = payment.get("external_reference")

        if status in SUCCEEDED_STATUSES:
            outcome = PaymentOutcome.SUCCEEDED
        elif status in FAILED_STATUSES:
            outcome = PaymentOutcome.FAILED
        else:
            outcome = PaymentOutcome.IGNORED

        logger.info(f"Pago {payment_id} ({status}) para sesión {session_ref}: {outcome.value}")
        return PaymentNotification(
            outcome=outcome,
            session_ref=session_ref,
            payment_id=str(payment_id),
            status=status,
        )
