"""Rutas de pagos (Mercado Pago)"""
from fastapi import APIRouter, Depends, HTTPException, Request, status
from typing import Optional
import logging

from app.core.dependencies import get_lifecycle_service, get_mercado_pago_service
from shared.utils.errors import PaymentGatewayError, ReferenceGenerationError, StoreUnavailableError
from services.ticket_purchase.models.ticket import CreateResult
from services.ticket_purchase.services.mercado_pago_service import MercadoPagoService
from services.ticket_purchase.services.ticket_lifecycle_service import TicketLifecycleService

logger = logging.getLogger(__name__)

router = APIRouter()


@router.post("/webhook")
async def mercado_pago_webhook(
    request: Request,
    lifecycle: TicketLifecycleService = Depends(get_lifecycle_service),
    mercado_pago: Optional[MercadoPagoService] = Depends(get_mercado_pago_service),
):
    """
    Webhook para recibir notificaciones de Mercado Pago

    No requiere autenticación (se valida la firma x-signature)
    """
    if mercado_pago is None:
        raise HTTPException(
            status_code=status.HTTP_503_SERVICE_UNAVAILABLE,
            detail="Pagos no configurados"
        )

    try:
        body = await request.json()
    except ValueError:
        body = {}
    if not isinstance(body, dict):
        body = {}

    query_params = dict(request.query_params)
    signature = request.headers.get("x-signature")
    request_id = request.headers.get("x-request-id")

    if not mercado_pago.verify_webhook(body, signature, request_id, query_params):
        raise HTTPException(
            status_code=status.HTTP_401_UNAUTHORIZED,
            detail="Firma de webhook inválida"
        )

    topic = query_params.get("type") or query_params.get("topic") or body.get("type") or body.get("topic")
    if topic != "payment":
        logger.info(f"Webhook ignorado (type={topic})")
        return {"status": "ignored", "type": topic}

    data = body.get("data") if isinstance(body.get("data"), dict) else {}
    payment_id = query_params.get("data.id") or data.get("id") or query_params.get("id")
    if not payment_id:
        raise HTTPException(
            status_code=status.HTTP_400_BAD_REQUEST,
            detail="Notificación sin id de pago"
        )

    try:
        result = await lifecycle.process_payment_notification(str(payment_id))
    except PaymentGatewayError as e:
        logger.error(f"Error consultando pago {payment_id}: {e}")
        raise HTTPException(
            status_code=status.HTTP_502_BAD_GATEWAY,
            detail="No se pudo consultar el pago"
        )
    except (StoreUnavailableError, ReferenceGenerationError) as e:
        logger.error(f"Error creando ticket para pago {payment_id}: {e}")
        raise HTTPException(
            status_code=status.HTTP_503_SERVICE_UNAVAILABLE,
            detail="Servicio de tickets no disponible"
        )

    return {
        "status": "processed",
        "outcome": result.outcome.value,
        "reference": result.ticket.reference if result.ticket else None,
        "warnings": result.warnings,
    }


@router.post("/{session_ref}/cancel", response_model=CreateResult)
async def cancel_payment(
    session_ref: str,
    lifecycle: TicketLifecycleService = Depends(get_lifecycle_service),
):
    """El usuario abandonó el checkout: descartar el borrador retenido"""
    try:
        return await lifecycle.cancel_payment(session_ref)
    except PaymentGatewayError:
        raise HTTPException(
            status_code=status.HTTP_503_SERVICE_UNAVAILABLE,
            detail="Pagos no configurados"
        )
