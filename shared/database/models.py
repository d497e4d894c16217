"""Modelos SQLAlchemy"""
from sqlalchemy import Column, String, Boolean, DateTime, Uuid, Index
from sqlalchemy.sql import func
import uuid
from shared.database.connection import Base


class Ticket(Base):
    __tablename__ = "tickets"

    id = Column(Uuid(as_uuid=True), primary_key=True, default=uuid.uuid4)
    reference = Column(String, unique=True, index=True, nullable=False)  # TICKET-<ms>-<rand>
    owner_account_id = Column(String, nullable=False, server_default="anonymous", index=True)
    owner_email = Column(String, nullable=False, index=True)  # Siempre normalizado (strip + lower)
    holder_name = Column(String, nullable=False)
    event_name = Column(String, nullable=False)
    event_date = Column(String, nullable=False)
    event_time = Column(String, nullable=False)
    location = Column(String, nullable=False)
    tier = Column(String, nullable=False, server_default="Standard")  # Standard, Premium
    status = Column(String, nullable=False, server_default="active")  # active, cancelled
    checked_in = Column(Boolean, nullable=False, default=False, server_default="false")
    checked_in_at = Column(DateTime(timezone=True), nullable=True)
    claimed_at = Column(DateTime(timezone=True), nullable=True)  # Cuando se vinculó a una cuenta
    payment_reference = Column(String, nullable=True)
    # Sesión de pago que originó el ticket: a lo sumo un ticket por sesión
    payment_session_ref = Column(String, unique=True, nullable=True)
    created_at = Column(DateTime(timezone=True), server_default=func.now(), nullable=False)
    updated_at = Column(DateTime(timezone=True), server_default=func.now(), onupdate=func.now(), nullable=False)

    __table_args__ = (
        Index("ix_tickets_owner_email_account", "owner_email", "owner_account_id"),
    )
