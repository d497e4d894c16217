"""Construcción de servicios para las rutas (sobrescribibles en tests)"""
import logging
from functools import lru_cache
from typing import Optional

from fastapi import Depends

from app.core.config import settings
from services.notifications.services.dispatcher import NotificationDispatcher
from services.notifications.tasks.email_tasks import QueuedNotificationDispatcher
from services.ticket_purchase.services.mercado_pago_service import MercadoPagoService
from services.ticket_purchase.services.payment_gate import PaymentGate
from services.ticket_purchase.services.pending_drafts import PendingDraftStore
from services.ticket_purchase.services.ticket_lifecycle_service import TicketLifecycleService
from services.ticket_purchase.services.ticket_store import SQLAlchemyTicketStore, TicketStore
from services.ticket_validation.services.qr_codec import QRCodec
from services.ticket_validation.services.validation_service import TicketValidationService
from shared.cache.redis_client import get_redis
from shared.database.connection import get_session_maker

logger = logging.getLogger(__name__)


@lru_cache()
def get_qr_codec() -> QRCodec:
    return QRCodec()


@lru_cache()
def get_notification_dispatcher():
    if settings.NOTIFICATIONS_ASYNC:
        return QueuedNotificationDispatcher()
    return NotificationDispatcher(codec=get_qr_codec())


@lru_cache()
def get_mercado_pago_service() -> Optional[MercadoPagoService]:
    if not settings.MERCADOPAGO_ACCESS_TOKEN:
        logger.warning("MERCADOPAGO_ACCESS_TOKEN no configurado: tickets Premium deshabilitados")
        return None
    return MercadoPagoService()


async def get_ticket_store() -> TicketStore:
    return SQLAlchemyTicketStore(get_session_maker())


async def get_draft_store() -> PendingDraftStore:
    return PendingDraftStore(await get_redis())


async def get_lifecycle_service(
    store: TicketStore = Depends(get_ticket_store),
    drafts: PendingDraftStore = Depends(get_draft_store),
    mercado_pago: Optional[MercadoPagoService] = Depends(get_mercado_pago_service),
) -> TicketLifecycleService:
    payment_gate = PaymentGate(mercado_pago, drafts) if mercado_pago else None
    return TicketLifecycleService(
        store=store,
        drafts=drafts,
        payment_gate=payment_gate,
        dispatcher=get_notification_dispatcher(),
    )


async def get_validation_service(
    lifecycle: TicketLifecycleService = Depends(get_lifecycle_service),
) -> TicketValidationService:
    return TicketValidationService(lifecycle)
