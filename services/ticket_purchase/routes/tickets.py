"""Rutas de tickets: creación, consulta, QR y post-signup"""
from fastapi import APIRouter, Depends, HTTPException, Response, status
from typing import List, Optional
import logging

from app.core.dependencies import get_lifecycle_service, get_qr_codec
from shared.auth.dependencies import get_current_user, get_optional_user
from shared.utils.errors import PaymentGatewayError, ReferenceGenerationError, StoreUnavailableError
from services.ticket_purchase.models.ticket import (
    Account,
    ClaimResponse,
    CreateOutcome,
    CreateResult,
    CreateTicketRequest,
    Ownership,
    SignupCompleteRequest,
    TicketRecord,
    resolve_ownership,
)
from services.ticket_purchase.services.ticket_lifecycle_service import TicketLifecycleService
from services.ticket_validation.services.qr_codec import QRCodec

logger = logging.getLogger(__name__)

router = APIRouter()


def _unavailable(e: Exception) -> HTTPException:
    logger.error(f"Almacén de tickets no disponible: {e}")
    return HTTPException(
        status_code=status.HTTP_503_SERVICE_UNAVAILABLE,
        detail="Servicio de tickets no disponible, intenta nuevamente"
    )


@router.post("", response_model=CreateResult)
async def create_ticket(
    ticket_request: CreateTicketRequest,
    response: Response,
    current_user: Optional[Account] = Depends(get_optional_user),
    lifecycle: TicketLifecycleService = Depends(get_lifecycle_service),
):
    """
    Crear ticket

    - Standard: 201 con el ticket creado
    - Premium: 202 con el link de pago; el ticket se crea al confirmarse el pago
    - Sin sesión y con cuenta obligatoria: 202 con signup_token
    """
    try:
        result = await lifecycle.create(ticket_request, current_user)
    except PaymentGatewayError as e:
        logger.error(f"Error iniciando pago: {e}")
        raise HTTPException(
            status_code=status.HTTP_502_BAD_GATEWAY,
            detail="No se pudo iniciar el pago, intenta nuevamente"
        )
    except (StoreUnavailableError, ReferenceGenerationError) as e:
        raise _unavailable(e)

    response.status_code = (
        status.HTTP_201_CREATED if result.outcome == CreateOutcome.CREATED else status.HTTP_202_ACCEPTED
    )
    return result


@router.get("/mine", response_model=List[TicketRecord])
async def list_my_tickets(
    current_user: Account = Depends(get_current_user),
    lifecycle: TicketLifecycleService = Depends(get_lifecycle_service),
):
    """Tickets de la cuenta (por id o por email)"""
    try:
        return await lifecycle.list_account_tickets(current_user)
    except StoreUnavailableError as e:
        raise _unavailable(e)


@router.post("/signup/complete", response_model=ClaimResponse)
async def complete_signup(
    signup_request: SignupCompleteRequest,
    current_user: Account = Depends(get_current_user),
    lifecycle: TicketLifecycleService = Depends(get_lifecycle_service),
):
    """
    Llamar después de crear la cuenta o iniciar sesión

    Vincula los tickets anónimos del email y crea el borrador retenido, si hay.
    """
    try:
        claimed, result = await lifecycle.complete_signup(current_user, signup_request.signup_token)
    except PaymentGatewayError:
        raise HTTPException(
            status_code=status.HTTP_502_BAD_GATEWAY,
            detail="No se pudo iniciar el pago, intenta nuevamente"
        )
    except (StoreUnavailableError, ReferenceGenerationError) as e:
        raise _unavailable(e)

    return ClaimResponse(
        claimed=claimed,
        ticket=result.ticket if result else None,
        outcome=result.outcome if result else None,
    )


async def _owned_ticket(reference: str, account: Account, lifecycle: TicketLifecycleService) -> TicketRecord:
    try:
        ticket = await lifecycle.get_ticket(reference)
    except StoreUnavailableError as e:
        raise _unavailable(e)

    if ticket is None:
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail="Ticket no encontrado")
    if resolve_ownership(ticket, account) == Ownership.NOT_OWNED:
        raise HTTPException(status_code=status.HTTP_403_FORBIDDEN, detail="Este ticket pertenece a otra cuenta")
    return ticket


@router.get("/{reference}", response_model=TicketRecord)
async def get_ticket(
    reference: str,
    current_user: Account = Depends(get_current_user),
    lifecycle: TicketLifecycleService = Depends(get_lifecycle_service),
):
    return await _owned_ticket(reference, current_user, lifecycle)


@router.get("/{reference}/qr.png")
async def get_ticket_qr_png(
    reference: str,
    branded: bool = False,
    current_user: Account = Depends(get_current_user),
    lifecycle: TicketLifecycleService = Depends(get_lifecycle_service),
    codec: QRCodec = Depends(get_qr_codec),
):
    ticket = await _owned_ticket(reference, current_user, lifecycle)
    artifact = codec.encode_branded(ticket.reference) if branded else codec.encode(ticket.reference)
    return Response(content=artifact.png, media_type="image/png")


@router.get("/{reference}/qr.svg")
async def get_ticket_qr_svg(
    reference: str,
    current_user: Account = Depends(get_current_user),
    lifecycle: TicketLifecycleService = Depends(get_lifecycle_service),
    codec: QRCodec = Depends(get_qr_codec),
):
    ticket = await _owned_ticket(reference, current_user, lifecycle)
    return Response(content=codec.encode(ticket.reference).svg, media_type="image/svg+xml")
