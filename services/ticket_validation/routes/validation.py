"""Rutas de validación de tickets"""
from fastapi import APIRouter, Depends, File, HTTPException, UploadFile, status
import logging

from app.core.dependencies import get_lifecycle_service, get_qr_codec, get_validation_service
from shared.auth.dependencies import get_current_user
from shared.utils.errors import DocumentRenderError, MalformedPixelBufferError, StoreUnavailableError
from services.ticket_purchase.models.ticket import Account, CheckInOutcome, CheckInResponse
from services.ticket_purchase.services.ticket_lifecycle_service import TicketLifecycleService
from services.ticket_validation.models.scan import ScanResponse, ScanStatus
from services.ticket_validation.services.qr_codec import QRCodec
from services.ticket_validation.services.validation_service import (
    CHECK_IN_MESSAGES,
    TicketValidationService,
    adapter_for_upload,
)

logger = logging.getLogger(__name__)

router = APIRouter()

CHECK_IN_STATUS_CODES = {
    CheckInOutcome.NOT_FOUND: status.HTTP_404_NOT_FOUND,
    CheckInOutcome.NOT_OWNED: status.HTTP_403_FORBIDDEN,
    CheckInOutcome.CANCELLED: status.HTTP_409_CONFLICT,
}


def _raise_for_outcome(outcome: CheckInOutcome):
    """SUCCESS y ALREADY_CHECKED_IN responden 200; el resto es error"""
    status_code = CHECK_IN_STATUS_CODES.get(outcome)
    if status_code is not None:
        raise HTTPException(status_code=status_code, detail=CHECK_IN_MESSAGES[outcome])


@router.post("/scan", response_model=ScanResponse)
async def scan_ticket(
    file: UploadFile = File(...),
    current_user: Account = Depends(get_current_user),
    service: TicketValidationService = Depends(get_validation_service),
    codec: QRCodec = Depends(get_qr_codec),
):
    """
    Validar un ticket a partir de una imagen o PDF subido

    Los PDF se rasterizan en escalas descendentes; las imágenes se decodifican una vez.
    """
    data = await file.read()
    if not data:
        raise HTTPException(status_code=status.HTTP_400_BAD_REQUEST, detail="Archivo vacío")

    adapter = adapter_for_upload(data, file.content_type, file.filename, codec=codec)
    try:
        result = await service.scan_and_check_in(adapter, current_user)
    except (MalformedPixelBufferError, DocumentRenderError) as e:
        raise HTTPException(status_code=status.HTTP_400_BAD_REQUEST, detail=str(e))
    except StoreUnavailableError as e:
        logger.error(f"Almacén no disponible durante escaneo: {e}")
        raise HTTPException(
            status_code=status.HTTP_503_SERVICE_UNAVAILABLE,
            detail="Servicio de tickets no disponible, intenta nuevamente"
        )

    if result.scan_status != ScanStatus.FOUND:
        raise HTTPException(status_code=status.HTTP_422_UNPROCESSABLE_ENTITY, detail=result.message)

    _raise_for_outcome(result.check_in)
    return result


@router.post("/{reference}/check-in", response_model=CheckInResponse)
async def check_in_ticket(
    reference: str,
    current_user: Account = Depends(get_current_user),
    lifecycle: TicketLifecycleService = Depends(get_lifecycle_service),
):
    """Check-in por referencia (QR leído en el cliente)"""
    try:
        result = await lifecycle.check_in(reference, current_user)
    except StoreUnavailableError as e:
        logger.error(f"Almacén no disponible durante check-in: {e}")
        raise HTTPException(
            status_code=status.HTTP_503_SERVICE_UNAVAILABLE,
            detail="Servicio de tickets no disponible, intenta nuevamente"
        )

    _raise_for_outcome(result.outcome)
    return CheckInResponse(
        outcome=result.outcome,
        reference=result.reference,
        message=CHECK_IN_MESSAGES[result.outcome],
        checked_in_at=result.checked_in_at,
    )
