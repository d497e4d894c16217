"""Tareas asíncronas para envío de tickets por email"""
from typing import List, Optional
import logging
import asyncio

from shared.cache.celery_app import celery_app
from services.ticket_purchase.models.ticket import Account, TicketRecord

logger = logging.getLogger(__name__)


def run_async(coro):
    """Helper para ejecutar coroutines en contexto síncrono de Celery"""
    loop = asyncio.new_event_loop()
    asyncio.set_event_loop(loop)
    try:
        return loop.run_until_complete(coro)
    finally:
        loop.close()


async def _dispatch(reference: str, recipients: List[str]):
    from shared.database.connection import init_db, close_db, get_session_maker
    from services.notifications.services.dispatcher import NotificationDispatcher
    from services.ticket_purchase.services.ticket_store import SQLAlchemyTicketStore

    # El engine queda ligado al event loop de esta tarea
    await init_db()
    try:
        store = SQLAlchemyTicketStore(get_session_maker())
        ticket = await store.get_by_reference(reference)
        if ticket is None:
            return None
        return await NotificationDispatcher().dispatch(ticket, recipients)
    finally:
        await close_db()


@celery_app.task(
    name="send_ticket_notification",
    bind=True,
    max_retries=3,
    default_retry_delay=60,
)
def send_ticket_notification_task(self, reference: str, recipients: List[str]):
    """
    Enviar un ticket ya persistido a sus destinatarios

    Solo los destinatarios que fallaron se reintentan.
    """
    logger.info(f"[CELERY] Enviando ticket {reference} a {len(recipients)} destinatarios")

    results = run_async(_dispatch(reference, recipients))
    if results is None:
        logger.warning(f"[CELERY] Ticket {reference} no encontrado, no se envía")
        return {"status": "not_found", "reference": reference}

    failed = [result.recipient for result in results if not result.delivered]
    if failed:
        logger.error(f"[CELERY] Falló el envío de {reference} a {failed}")
        raise self.retry(
            kwargs={"reference": reference, "recipients": failed},
            countdown=60 * (2 ** self.request.retries),
        )

    return {"status": "sent", "reference": reference, "recipients": recipients}


class QueuedNotificationDispatcher:
    """Dispatcher que encola el envío en Celery en lugar de enviarlo en la request"""

    def __init__(self, task=None):
        self.task = task or send_ticket_notification_task

    async def dispatch_ticket(self, ticket: TicketRecord, account: Optional[Account] = None) -> list:
        from services.notifications.services.dispatcher import resolve_recipients

        recipients = resolve_recipients(ticket, account)
        if recipients:
            result = self.task.delay(reference=ticket.reference, recipients=recipients)
            logger.info(f"Envío de {ticket.reference} encolado (task {result.id})")
        return []
