"""Servicio de validación: captura -> decode -> check-in"""
import logging
from typing import Optional

from services.ticket_purchase.models.ticket import Account, CheckInOutcome
from services.ticket_purchase.services.ticket_lifecycle_service import TicketLifecycleService
from services.ticket_validation.models.scan import ScanResponse, ScanStatus
from services.ticket_validation.services.capture import (
    CaptureAdapter,
    DocumentRasterizer,
    StaticImageAdapter,
)
from services.ticket_validation.services.qr_codec import QRCodec

logger = logging.getLogger(__name__)

CHECK_IN_MESSAGES = {
    CheckInOutcome.SUCCESS: "Check-in realizado",
    CheckInOutcome.ALREADY_CHECKED_IN: "Este ticket ya fue validado anteriormente",
    CheckInOutcome.NOT_OWNED: "Este ticket pertenece a otra cuenta. Inicia sesión con la cuenta correcta",
    CheckInOutcome.NOT_FOUND: "Ticket no encontrado",
    CheckInOutcome.CANCELLED: "Este ticket fue cancelado",
}

SCAN_MESSAGES = {
    ScanStatus.NOT_FOUND: "No se encontró un código QR. Intenta con otra imagen",
    ScanStatus.UNRECOVERABLE: "El código QR no corresponde a un ticket",
    ScanStatus.CANCELLED: "Escaneo cancelado",
}


def adapter_for_upload(
    data: bytes,
    content_type: Optional[str] = None,
    filename: Optional[str] = None,
    codec: Optional[QRCodec] = None,
) -> CaptureAdapter:
    """PDF -> DocumentRasterizer, cualquier otra cosa -> StaticImageAdapter"""
    is_pdf = (
        data[:5] == b"%PDF-"
        or (content_type or "").lower() == "application/pdf"
        or (filename or "").lower().endswith(".pdf")
    )
    if is_pdf:
        return DocumentRasterizer(data, codec=codec)
    return StaticImageAdapter(data, codec=codec)


class TicketValidationService:
    def __init__(self, lifecycle: TicketLifecycleService):
        self.lifecycle = lifecycle

    async def scan_and_check_in(self, adapter: CaptureAdapter, account: Optional[Account]) -> ScanResponse:
        """Obtener la referencia del adaptador y, si existe, hacer check-in"""
        scan = await adapter.scan()
        if scan.status != ScanStatus.FOUND:
            logger.info(f"Escaneo sin referencia: {scan.status.value} tras {scan.attempts} intentos")
            return ScanResponse(
                scan_status=scan.status,
                attempts=scan.attempts,
                message=SCAN_MESSAGES[scan.status],
            )

        result = await self.lifecycle.check_in(scan.reference, account)
        return ScanResponse(
            scan_status=scan.status,
            reference=scan.reference,
            attempts=scan.attempts,
            check_in=result.outcome,
            message=CHECK_IN_MESSAGES[result.outcome],
        )
