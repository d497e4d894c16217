"""
Ciclo de vida del ticket: creación, reclamo por email y check-in

Estados: sin registro -> activo sin reclamar -> activo reclamado -> validado.
Los resultados esperados se devuelven como enums (CreateOutcome,
CheckInOutcome); solo las fallas inesperadas se propagan como excepciones.
"""
import logging
from datetime import datetime, timezone
from typing import Callable, List, Optional

from app.core.config import settings
from services.ticket_purchase.models.ticket import (
    ANONYMOUS,
    Account,
    CheckInOutcome,
    CheckInResult,
    CreateOutcome,
    CreateResult,
    Ownership,
    TicketDraft,
    TicketRecord,
    TicketStatus,
    Tier,
    normalize_email,
    resolve_ownership,
)
from services.ticket_purchase.services.payment_gate import PaymentGate, PaymentOutcome
from services.ticket_purchase.services.pending_drafts import SIGNUP_PREFIX, PendingDraftStore
from services.ticket_purchase.services.ticket_store import TicketStore
from services.ticket_validation.services.qr_codec import generate_reference
from shared.utils.errors import PaymentGatewayError, ReferenceGenerationError

logger = logging.getLogger(__name__)


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


class TicketLifecycleService:
    def __init__(
        self,
        store: TicketStore,
        drafts: PendingDraftStore,
        payment_gate: Optional[PaymentGate] = None,
        dispatcher=None,
        reference_factory: Callable[[], str] = generate_reference,
        require_account: Optional[bool] = None,
        max_reference_attempts: Optional[int] = None,
    ):
        self.store = store
        self.drafts = drafts
        self.payment_gate = payment_gate
        self.dispatcher = dispatcher
        self.reference_factory = reference_factory
        self.require_account = (
            require_account if require_account is not None else settings.REQUIRE_ACCOUNT_FOR_TICKETS
        )
        self.max_reference_attempts = max_reference_attempts or settings.TICKET_REFERENCE_MAX_ATTEMPTS

    def _gate(self) -> PaymentGate:
        if self.payment_gate is None:
            raise PaymentGatewayError("Pasarela de pago no configurada para tickets Premium")
        return self.payment_gate

    # ========== CREACIÓN ==========

    async def create(self, draft: TicketDraft, account: Optional[Account] = None) -> CreateResult:
        """
        Crear un ticket

        - Sin cuenta y con política de cuenta obligatoria: se retiene el
          borrador y se devuelve un token de signup (DRAFT_HELD)
        - Premium: se inicia el pago y no se persiste nada (PAYMENT_PENDING)
        - Standard: se persiste de inmediato (CREATED)
        """
        if account is None and self.require_account:
            token = PendingDraftStore.new_token()
            await self.drafts.hold(SIGNUP_PREFIX, token, draft)
            logger.info(f"Borrador para {draft.owner_email} retenido hasta completar signup")
            return CreateResult(outcome=CreateOutcome.DRAFT_HELD, signup_token=token)

        if draft.tier == Tier.PREMIUM:
            session = await self._gate().initiate(draft, account)
            return CreateResult(
                outcome=CreateOutcome.PAYMENT_PENDING,
                payment_session_ref=session.session_ref,
                payment_link=session.payment_link,
            )

        return await self._persist_and_notify(draft, account.id if account else None, account)

    async def _persist(
        self,
        draft: TicketDraft,
        account_id: Optional[str],
        payment_reference: Optional[str] = None,
        payment_session_ref: Optional[str] = None,
    ) -> TicketRecord:
        """Persistir con una referencia nueva, reintentando ante colisiones"""
        for attempt in range(1, self.max_reference_attempts + 1):
            record = TicketRecord(
                reference=self.reference_factory(),
                owner_account_id=account_id or ANONYMOUS,
                owner_email=normalize_email(draft.owner_email),
                holder_name=draft.holder_name,
                event_name=draft.event_name,
                event_date=draft.event_date,
                event_time=draft.event_time,
                location=draft.location,
                tier=draft.tier,
                payment_reference=payment_reference,
                payment_session_ref=payment_session_ref,
            )
            if await self.store.create_if_absent(record):
                owner = "anónimo" if record.is_anonymous else record.owner_account_id
                logger.info(f"Ticket {record.reference} creado ({record.tier.value}, dueño {owner})")
                return await self.store.get_by_reference(record.reference) or record
            logger.warning(f"Colisión de referencia {record.reference} (intento {attempt}/{self.max_reference_attempts})")

        raise ReferenceGenerationError(
            f"No se pudo generar una referencia única tras {self.max_reference_attempts} intentos"
        )

    async def _notify(self, ticket: TicketRecord, account: Optional[Account]) -> List[str]:
        """Enviar el ticket; los fallos se devuelven como advertencias"""
        if self.dispatcher is None:
            return []
        try:
            results = await self.dispatcher.dispatch_ticket(ticket, account)
        except Exception as e:
            logger.error(f"Error enviando ticket {ticket.reference}: {e}", exc_info=True)
            return [f"No se pudo enviar el ticket por email: {e}"]
        return [
            f"No se pudo enviar el ticket a {result.recipient}"
            for result in results
            if not result.delivered
        ]

    async def _persist_and_notify(
        self,
        draft: TicketDraft,
        account_id: Optional[str],
        account: Optional[Account],
        payment_reference: Optional[str] = None,
        payment_session_ref: Optional[str] = None,
    ) -> CreateResult:
        ticket = await self._persist(draft, account_id, payment_reference, payment_session_ref)
        warnings = await self._notify(ticket, account)
        return CreateResult(outcome=CreateOutcome.CREATED, ticket=ticket, warnings=warnings)

    # ========== PAGOS ==========

    async def confirm_payment(self, session_ref: str, payment_reference: Optional[str] = None) -> CreateResult:
        """
        Pago confirmado: crear el ticket retenido (una sola vez por sesión)

        El borrador se elimina recién después de persistir el ticket. Si el
        almacén falla, la excepción se propaga con el borrador intacto y el
        reintento del webhook lo vuelve a procesar.
        """
        gate = self._gate()
        held = await gate.pending(session_ref)
        if held is None:
            return CreateResult(outcome=CreateOutcome.NOT_PENDING, payment_session_ref=session_ref)
        if not await gate.begin_confirmation(session_ref):
            return CreateResult(outcome=CreateOutcome.NOT_PENDING, payment_session_ref=session_ref)

        try:
            existing = await self.store.get_by_payment_session(session_ref)
            if existing is not None:
                # Persistido en un intento anterior que no llegó a limpiar el borrador
                logger.info(f"Sesión {session_ref} ya tiene ticket {existing.reference}")
                result = CreateResult(outcome=CreateOutcome.NOT_PENDING, ticket=existing)
            else:
                # La cuenta viene del borrador: el webhook no trae sesión de usuario
                account = held["account"]
                result = await self._persist_and_notify(
                    held["draft"],
                    account.id if account else None,
                    account,
                    payment_reference=payment_reference or session_ref,
                    payment_session_ref=session_ref,
                )
        except Exception:
            await gate.abort_confirmation(session_ref)
            raise

        await gate.on_succeeded(session_ref)
        result.payment_session_ref = session_ref
        return result

    async def cancel_payment(self, session_ref: str) -> CreateResult:
        """Pago cancelado o rechazado: se descarta el borrador"""
        discarded = await self._gate().on_cancelled(session_ref)
        return CreateResult(
            outcome=CreateOutcome.DISCARDED if discarded else CreateOutcome.NOT_PENDING,
            payment_session_ref=session_ref,
        )

    async def process_payment_notification(self, payment_id: str) -> CreateResult:
        notification = await self._gate().resolve_notification(payment_id)
        if not notification.session_ref or notification.outcome == PaymentOutcome.IGNORED:
            return CreateResult(outcome=CreateOutcome.NOT_PENDING, payment_session_ref=notification.session_ref)

        if notification.outcome == PaymentOutcome.SUCCEEDED:
            return await self.confirm_payment(notification.session_ref, payment_reference=notification.payment_id)

        discarded = await self._gate().on_failed(notification.session_ref)
        return CreateResult(
            outcome=CreateOutcome.DISCARDED if discarded else CreateOutcome.NOT_PENDING,
            payment_session_ref=notification.session_ref,
        )

    # ========== RECLAMO ==========

    async def claim_anonymous_tickets(self, email: str, account_id: str) -> int:
        """
        Vincular a la cuenta los tickets anónimos creados con su email

        Secuencial y best-effort: cada actualización exige que el ticket siga
        siendo anónimo, y un fallo individual se registra sin abortar el resto.
        """
        email = normalize_email(email)
        candidates = await self.store.find_by_owner(
            account_id=ANONYMOUS, email=email, status=TicketStatus.ACTIVE
        )

        claimed = 0
        for ticket in candidates:
            try:
                changed = await self.store.update_fields(
                    ticket.reference,
                    {"owner_account_id": account_id, "claimed_at": utcnow()},
                    precondition={"owner_account_id": ANONYMOUS},
                )
            except Exception as e:
                logger.error(f"Error vinculando ticket {ticket.reference} a {account_id}: {e}")
                continue
            if changed:
                claimed += 1

        if candidates:
            logger.info(f"{claimed}/{len(candidates)} tickets anónimos vinculados a {account_id}")
        return claimed

    async def complete_signup(self, account: Account, signup_token: Optional[str] = None) -> tuple:
        """
        Post-signup: reclamar tickets anónimos y crear el borrador retenido

        El token se consume antes de procesar; un segundo disparo no encuentra
        borrador y no crea nada.

        Returns:
            (cantidad reclamada, CreateResult o None)
        """
        claimed = await self.claim_anonymous_tickets(account.email, account.id)

        if not signup_token:
            return claimed, None

        held = await self.drafts.consume(SIGNUP_PREFIX, signup_token)
        if held is None:
            logger.info("Token de signup sin borrador pendiente (ya procesado o expirado)")
            return claimed, CreateResult(outcome=CreateOutcome.NOT_PENDING)

        return claimed, await self.create(held["draft"], account)

    # ========== CONSULTAS ==========

    async def get_ticket(self, reference: str) -> Optional[TicketRecord]:
        return await self.store.get_by_reference(reference)

    async def list_account_tickets(self, account: Account) -> List[TicketRecord]:
        """Tickets de la cuenta por id o por email"""
        return await self.store.find_by_owner(account_id=account.id, email=account.email, match_any=True)

    # ========== CHECK-IN ==========

    async def check_in(self, reference: str, account: Optional[Account]) -> CheckInResult:
        """
        Marcar asistencia una sola vez

        El UPDATE exige checked_in = false, así dos escaneos simultáneos no
        pueden validar ambos: el que pierde recibe ALREADY_CHECKED_IN.
        """
        ticket = await self.store.get_by_reference(reference)
        if ticket is None:
            return CheckInResult(outcome=CheckInOutcome.NOT_FOUND, reference=reference)

        if resolve_ownership(ticket, account) == Ownership.NOT_OWNED:
            logger.info(f"Check-in rechazado para {reference}: la cuenta no es dueña")
            return CheckInResult(outcome=CheckInOutcome.NOT_OWNED, reference=reference)

        if ticket.status == TicketStatus.CANCELLED:
            return CheckInResult(outcome=CheckInOutcome.CANCELLED, reference=reference)

        if ticket.checked_in:
            return CheckInResult(
                outcome=CheckInOutcome.ALREADY_CHECKED_IN,
                reference=reference,
                checked_in_at=ticket.checked_in_at,
            )

        checked_in_at = utcnow()
        changed = await self.store.update_fields(
            reference,
            {"checked_in": True, "checked_in_at": checked_in_at},
            precondition={"checked_in": False},
        )
        if not changed:
            current = await self.store.get_by_reference(reference)
            logger.info(f"Check-in concurrente para {reference}, ya estaba validado")
            return CheckInResult(
                outcome=CheckInOutcome.ALREADY_CHECKED_IN,
                reference=reference,
                checked_in_at=current.checked_in_at if current else None,
            )

        logger.info(f"Check-in exitoso para {reference}")
        return CheckInResult(outcome=CheckInOutcome.SUCCESS, reference=reference, checked_in_at=checked_in_at)
