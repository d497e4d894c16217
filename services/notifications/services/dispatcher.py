"""Envío best-effort de tickets por email"""
import asyncio
import logging
from typing import List, Optional, Tuple

from pydantic import BaseModel

from app.core.config import settings
from services.notifications.services.email_service import EmailService
from services.notifications.services.pdf_service import generate_ticket_pdf
from services.ticket_purchase.models.ticket import Account, TicketRecord, normalize_email
from services.ticket_validation.services.qr_codec import QRArtifact, QRCodec
from shared.utils.errors import DispatchError
from shared.utils.retry import retry_with_backoff

logger = logging.getLogger(__name__)


class DeliveryResult(BaseModel):
    recipient: str
    delivered: bool
    attempts: int = 0
    error: Optional[str] = None


def resolve_recipients(ticket: TicketRecord, account: Optional[Account] = None) -> List[str]:
    """
    Destinatarios de un ticket

    Si el email de la cuenta coincide con el del ticket se envía una sola vez;
    si no, a ambos (quien compra puede no ser el titular).
    """
    recipients = []
    if account is not None and account.email:
        recipients.append(normalize_email(account.email))
    owner_email = normalize_email(ticket.owner_email)
    if owner_email and owner_email not in recipients:
        recipients.append(owner_email)
    return recipients


class NotificationDispatcher:
    """Un fallo de envío nunca revierte el ticket: se registra y se reporta"""

    def __init__(
        self,
        email_service: Optional[EmailService] = None,
        codec: Optional[QRCodec] = None,
        max_retries: Optional[int] = None,
        retry_delay: Optional[float] = None,
    ):
        self.email_service = email_service or EmailService()
        self.codec = codec or QRCodec()
        self.max_retries = max_retries if max_retries is not None else settings.EMAIL_MAX_RETRIES
        self.retry_delay = retry_delay if retry_delay is not None else settings.EMAIL_RETRY_DELAY_SECONDS

    def render(self, ticket: TicketRecord) -> Tuple[QRArtifact, Optional[bytes]]:
        qr = self.codec.encode(ticket.reference)
        try:
            pdf = generate_ticket_pdf(ticket, qr)
        except Exception as e:
            # Sin PDF el email sigue llevando el QR
            logger.error(f"Error generando PDF para {ticket.reference}: {e}", exc_info=True)
            pdf = None
        return qr, pdf

    async def _deliver(self, recipient: str, ticket: TicketRecord, qr: QRArtifact, pdf: Optional[bytes]) -> DeliveryResult:
        attempts = 0

        async def attempt():
            nonlocal attempts
            attempts += 1
            sent = await self.email_service.send_ticket_email(recipient, ticket, qr, pdf)
            if not sent:
                raise DispatchError(f"Resend rechazó el envío a {recipient}")

        try:
            await retry_with_backoff(
                attempt,
                max_retries=self.max_retries,
                initial_delay=self.retry_delay,
                exceptions=(DispatchError,),
                on_retry=lambda attempt_number, error: logger.warning(
                    f"Reintentando envío de {ticket.reference} a {recipient} (intento {attempt_number} falló)"
                ),
            )
        except Exception as e:
            logger.error(f"No se pudo enviar ticket {ticket.reference} a {recipient} tras {attempts} intentos: {e}")
            return DeliveryResult(recipient=recipient, delivered=False, attempts=attempts, error=str(e))

        return DeliveryResult(recipient=recipient, delivered=True, attempts=attempts)

    async def dispatch(self, ticket: TicketRecord, recipients: List[str]) -> List[DeliveryResult]:
        """Enviar a cada destinatario de forma independiente"""
        if not recipients:
            return []

        qr, pdf = await asyncio.to_thread(self.render, ticket)
        results = []
        for recipient in recipients:
            results.append(await self._deliver(recipient, ticket, qr, pdf))

        delivered = sum(1 for result in results if result.delivered)
        logger.info(f"Ticket {ticket.reference} enviado a {delivered}/{len(results)} destinatarios")
        return results

    async def dispatch_ticket(self, ticket: TicketRecord, account: Optional[Account] = None) -> List[DeliveryResult]:
        return await self.dispatch(ticket, resolve_recipients(ticket, account))
