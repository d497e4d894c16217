"""Servicio de envío de emails usando Resend"""
import asyncio
import base64
import html
import logging
from typing import List, Optional, Union

import resend

from app.core.config import settings
from services.ticket_purchase.models.ticket import TicketRecord
from services.ticket_validation.services.qr_codec import QRArtifact

logger = logging.getLogger(__name__)


class EmailService:
    """Servicio para enviar emails usando Resend (desarrollo y producción)"""

    def __init__(self, api_key: Optional[str] = None, from_email: Optional[str] = None):
        self.resend_api_key = api_key if api_key is not None else settings.RESEND_API_KEY
        self.from_email = from_email or settings.RESEND_FROM_EMAIL

        if not self.resend_api_key:
            logger.warning("RESEND_API_KEY no configurado. Los emails no se enviarán.")
            self.resend_configured = False
        else:
            resend.api_key = self.resend_api_key
            self.resend_configured = True
            logger.info(f"EmailService (Resend) inicializado con from: {self.from_email}")

    async def send_email(
        self,
        to_email: Union[str, List[str]],
        subject: str,
        html_content: str,
        text_content: Optional[str] = None,
        attachments: Optional[List[dict]] = None
    ) -> bool:
        """
        Enviar email usando Resend

        Args:
            to_email: Email destino (string o lista de strings)
            subject: Asunto del email
            html_content: Contenido HTML del email
            text_content: Contenido de texto plano (opcional)
            attachments: [{"filename": "ticket.pdf", "content": bytes}]

        Returns:
            True si se envió correctamente, False en caso contrario
        """
        if not self.resend_configured:
            logger.warning(f"Resend no configurado. Email simulado a {to_email}: {subject}")
            return True

        to_emails = [to_email] if isinstance(to_email, str) else to_email

        params = {
            "from": self.from_email,
            "to": to_emails,
            "subject": subject,
            "html": html_content,
        }
        if text_content:
            params["text"] = text_content
        if attachments:
            # Resend requiere base64 para adjuntos
            params["attachments"] = [
                {
                    "filename": attachment["filename"],
                    "content": (
                        attachment["content"]
                        if isinstance(attachment["content"], str)
                        else base64.b64encode(attachment["content"]).decode("utf-8")
                    ),
                }
                for attachment in attachments
            ]

        # Resend SDK es síncrono, se ejecuta en el thread pool
        loop = asyncio.get_running_loop()
        try:
            result = await loop.run_in_executor(None, resend.Emails.send, params)
        except Exception as e:
            logger.error(f"Error enviando email a {to_emails}: {e}")
            return False

        if isinstance(result, dict) and result.get("error"):
            logger.error(f"Error enviando email a {to_emails}: {result.get('error')}")
            return False

        message_id = result.get("id", "N/A") if isinstance(result, dict) else "N/A"
        logger.info(f"Email enviado exitosamente a {to_emails}: {subject} (ID: {message_id})")
        return True

    async def send_ticket_email(
        self,
        to_email: str,
        ticket: TicketRecord,
        qr: QRArtifact,
        pdf_attachment: Optional[bytes] = None,
    ) -> bool:
        """
        Enviar el ticket con su QR embebido como data URI

        Se adjunta también el PNG del QR y, si existe, el PDF del ticket.
        Los datos del ticket los escribe el comprador: se escapan en el HTML.
        """
        event_name = html.escape(ticket.event_name)
        holder_name = html.escape(ticket.holder_name)
        event_when = html.escape(f"{ticket.event_date} {ticket.event_time}")
        location = html.escape(ticket.location)
        reference = html.escape(ticket.reference)
        validation_url = html.escape(qr.payload, quote=True)

        html_content = f"""
        <!DOCTYPE html>
        <html>
        <head><meta charset="UTF-8"></head>
        <body style="font-family: Arial, sans-serif; line-height: 1.6; color: #333; max-width: 600px; margin: 0 auto; padding: 20px;">
            <h1 style="color: #4f46e5;">🎫 Tu ticket para {event_name}</h1>
            <p>Hola {holder_name},</p>
            <p>Tu ticket <strong>{ticket.tier.value}</strong> está confirmado.</p>
            <table style="margin: 20px 0;">
                <tr><td><strong>Fecha:</strong></td><td>{event_when}</td></tr>
                <tr><td><strong>Ubicación:</strong></td><td>{location}</td></tr>
                <tr><td><strong>Referencia:</strong></td><td>{reference}</td></tr>
            </table>
            <div style="text-align: center; margin: 30px 0; padding: 20px;">
                <div style="display: inline-block; border: 2px solid #e5e7eb; border-radius: 8px; padding: 15px; background: white;">
                    <img src="{qr.data_uri}" alt="Código QR del Ticket" width="250" height="250" style="display: block; margin: 0 auto;" />
                </div>
                <p style="margin-top: 15px; font-size: 12px; color: #6b7280;">Escanea este código en la entrada del evento</p>
                <p><a href="{validation_url}">{validation_url}</a></p>
            </div>
        </body>
        </html>
        """

        text_content = f"""
Tu ticket para {ticket.event_name}

Titular: {ticket.holder_name}
Fecha: {ticket.event_date} {ticket.event_time}
Ubicación: {ticket.location}
Referencia: {ticket.reference}

Validación: {qr.payload}
        """

        attachments = [{"filename": f"qr-{ticket.reference}.png", "content": qr.png}]
        if pdf_attachment:
            attachments.append({"filename": f"ticket-{ticket.reference}.pdf", "content": pdf_attachment})

        return await self.send_email(
            to_email=to_email,
            subject=f"🎫 Tu ticket para {ticket.event_name}",
            html_content=html_content,
            text_content=text_content,
            attachments=attachments,
        )
