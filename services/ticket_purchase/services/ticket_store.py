"""Gateway del almacén de tickets"""
import logging
from abc import ABC, abstractmethod
from typing import Any, Dict, List, Optional

from sqlalchemy import and_, or_, select, update
from sqlalchemy.exc import DBAPIError, IntegrityError, OperationalError
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from services.ticket_purchase.models.ticket import TicketRecord, TicketStatus, normalize_email
from shared.database.models import Ticket
from shared.utils.errors import StoreUnavailableError

logger = logging.getLogger(__name__)

# Campos que se pueden usar en update_fields / precondiciones
MUTABLE_FIELDS = {
    "owner_account_id",
    "status",
    "checked_in",
    "checked_in_at",
    "claimed_at",
    "payment_reference",
}


class TicketStore(ABC):
    """Contrato mínimo que necesita el ciclo de vida de tickets"""

    @abstractmethod
    async def create_if_absent(self, record: TicketRecord) -> bool:
        """Persistir el ticket; False si la referencia ya existe"""
        pass

    @abstractmethod
    async def get_by_reference(self, reference: str) -> Optional[TicketRecord]:
        pass

    @abstractmethod
    async def get_by_payment_session(self, session_ref: str) -> Optional[TicketRecord]:
        """Ticket creado por una sesión de pago, si ya existe"""
        pass

    @abstractmethod
    async def find_by_owner(
        self,
        account_id: Optional[str] = None,
        email: Optional[str] = None,
        match_any: bool = False,
        status: Optional[TicketStatus] = None,
    ) -> List[TicketRecord]:
        """
        Buscar tickets por dueño.

        Con match_any=False deben coincidir todos los criterios dados (AND);
        con match_any=True basta con uno (OR).
        """
        pass

    @abstractmethod
    async def update_fields(
        self,
        reference: str,
        fields: Dict[str, Any],
        precondition: Optional[Dict[str, Any]] = None,
    ) -> bool:
        """Actualizar campos si se cumple la precondición; True si cambió el registro"""
        pass


def _validate_fields(fields: Dict[str, Any]):
    unknown = set(fields) - MUTABLE_FIELDS
    if unknown:
        raise ValueError(f"Campos no actualizables: {sorted(unknown)}")


class SQLAlchemyTicketStore(TicketStore):
    """Implementación sobre la tabla tickets (PostgreSQL o SQLite)"""

    def __init__(self, session_maker: async_sessionmaker):
        self.session_maker = session_maker

    async def create_if_absent(self, record: TicketRecord) -> bool:
        ticket = Ticket(
            reference=record.reference,
            owner_account_id=record.owner_account_id,
            owner_email=normalize_email(record.owner_email),
            holder_name=record.holder_name,
            event_name=record.event_name,
            event_date=record.event_date,
            event_time=record.event_time,
            location=record.location,
            tier=record.tier.value,
            status=record.status.value,
            checked_in=record.checked_in,
            checked_in_at=record.checked_in_at,
            claimed_at=record.claimed_at,
            payment_reference=record.payment_reference,
            payment_session_ref=record.payment_session_ref,
        )
        async with self.session_maker() as session:
            try:
                session.add(ticket)
                await session.commit()
            except IntegrityError:
                await session.rollback()
                logger.warning(f"Referencia duplicada al crear ticket: {record.reference}")
                return False
            except (OperationalError, DBAPIError) as e:
                await session.rollback()
                raise StoreUnavailableError(f"No se pudo crear el ticket: {e}") from e
        return True

    async def get_by_reference(self, reference: str) -> Optional[TicketRecord]:
        async with self.session_maker() as session:
            try:
                result = await session.execute(select(Ticket).where(Ticket.reference == reference))
            except (OperationalError, DBAPIError) as e:
                raise StoreUnavailableError(f"No se pudo consultar el ticket: {e}") from e
            ticket = result.scalar_one_or_none()
            return TicketRecord.model_validate(ticket) if ticket else None

    async def get_by_payment_session(self, session_ref: str) -> Optional[TicketRecord]:
        async with self.session_maker() as session:
            try:
                result = await session.execute(select(Ticket).where(Ticket.payment_session_ref == session_ref))
            except (OperationalError, DBAPIError) as e:
                raise StoreUnavailableError(f"No se pudo consultar la sesión de pago {session_ref}: {e}") from e
            ticket = result.scalar_one_or_none()
            return TicketRecord.model_validate(ticket) if ticket else None

    async def find_by_owner(
        self,
        account_id: Optional[str] = None,
        email: Optional[str] = None,
        match_any: bool = False,
        status: Optional[TicketStatus] = None,
    ) -> List[TicketRecord]:
        criteria = []
        if account_id is not None:
            criteria.append(Ticket.owner_account_id == account_id)
        if email is not None:
            criteria.append(Ticket.owner_email == normalize_email(email))
        if not criteria:
            raise ValueError("Se requiere account_id o email")

        owner_clause = or_(*criteria) if match_any else and_(*criteria)
        query = select(Ticket).where(owner_clause)
        if status is not None:
            query = query.where(Ticket.status == status.value)
        query = query.order_by(Ticket.created_at.desc())

        async with self.session_maker() as session:
            try:
                result = await session.execute(query)
            except (OperationalError, DBAPIError) as e:
                raise StoreUnavailableError(f"No se pudieron listar los tickets: {e}") from e
            return [TicketRecord.model_validate(ticket) for ticket in result.scalars().all()]

    async def update_fields(
        self,
        reference: str,
        fields: Dict[str, Any],
        precondition: Optional[Dict[str, Any]] = None,
    ) -> bool:
        _validate_fields(fields)
        precondition = precondition or {}
        _validate_fields(precondition)

        values = {
            key: (value.value if isinstance(value, TicketStatus) else value)
            for key, value in fields.items()
        }
        statement = update(Ticket).where(Ticket.reference == reference)
        for key, expected in precondition.items():
            if isinstance(expected, TicketStatus):
                expected = expected.value
            statement = statement.where(getattr(Ticket, key) == expected)
        statement = statement.values(**values).execution_options(synchronize_session=False)

        async with self.session_maker() as session:
            try:
                result = await session.execute(statement)
                await session.commit()
            except (OperationalError, DBAPIError) as e:
                await session.rollback()
                raise StoreUnavailableError(f"No se pudo actualizar el ticket {reference}: {e}") from e
        return result.rowcount == 1
