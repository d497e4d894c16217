"""Modelos Pydantic del ciclo de vida de tickets"""
from pydantic import BaseModel, EmailStr, field_validator
from typing import Optional, List
from datetime import datetime
from enum import Enum


# Dueño centinela para tickets creados sin cuenta
ANONYMOUS = "anonymous"


def normalize_email(email: Optional[str]) -> str:
    return (email or "").strip().lower()


class Tier(str, Enum):
    STANDARD = "Standard"
    PREMIUM = "Premium"


class TicketStatus(str, Enum):
    ACTIVE = "active"
    CANCELLED = "cancelled"


class Ownership(str, Enum):
    OWNED = "owned"
    NOT_OWNED = "not_owned"


class CheckInOutcome(str, Enum):
    SUCCESS = "success"
    ALREADY_CHECKED_IN = "already_checked_in"
    NOT_OWNED = "not_owned"
    NOT_FOUND = "not_found"
    CANCELLED = "cancelled"


class CreateOutcome(str, Enum):
    CREATED = "created"
    PAYMENT_PENDING = "payment_pending"
    DRAFT_HELD = "draft_held"
    DISCARDED = "discarded"
    NOT_PENDING = "not_pending"


class Account(BaseModel):
    """Cuenta autenticada que hace la solicitud"""
    id: str
    email: str

    @field_validator("email")
    @classmethod
    def _normalize(cls, value: str) -> str:
        return normalize_email(value)


class TicketDraft(BaseModel):
    """Datos capturados antes de que exista un registro"""
    holder_name: str
    owner_email: EmailStr
    event_name: str
    event_date: str
    event_time: str
    location: str
    tier: Tier = Tier.STANDARD

    @field_validator("owner_email")
    @classmethod
    def _normalize(cls, value: str) -> str:
        return normalize_email(value)


class TicketRecord(BaseModel):
    reference: str
    owner_account_id: str = ANONYMOUS
    owner_email: str
    holder_name: str
    event_name: str
    event_date: str
    event_time: str
    location: str
    tier: Tier = Tier.STANDARD
    status: TicketStatus = TicketStatus.ACTIVE
    checked_in: bool = False
    checked_in_at: Optional[datetime] = None
    claimed_at: Optional[datetime] = None
    payment_reference: Optional[str] = None
    payment_session_ref: Optional[str] = None
    created_at: Optional[datetime] = None

    class Config:
        from_attributes = True

    @property
    def is_anonymous(self) -> bool:
        return self.owner_account_id == ANONYMOUS


class CreateResult(BaseModel):
    outcome: CreateOutcome
    ticket: Optional[TicketRecord] = None
    payment_session_ref: Optional[str] = None
    payment_link: Optional[str] = None
    signup_token: Optional[str] = None
    warnings: List[str] = []


class CheckInResult(BaseModel):
    outcome: CheckInOutcome
    reference: str
    checked_in_at: Optional[datetime] = None


def resolve_ownership(ticket: TicketRecord, account: Optional[Account]) -> Ownership:
    """
    Un ticket pertenece a la cuenta si coincide el id o el email.

    El email cubre la ventana en que el ticket ya fue reclamado por email
    pero owner_account_id aún no se actualizó.
    """
    if account is None:
        return Ownership.NOT_OWNED
    if ticket.owner_account_id == account.id:
        return Ownership.OWNED
    if ticket.owner_email and normalize_email(ticket.owner_email) == normalize_email(account.email):
        return Ownership.OWNED
    return Ownership.NOT_OWNED


# Requests / responses HTTP

class CreateTicketRequest(TicketDraft):
    pass


class SignupCompleteRequest(BaseModel):
    signup_token: Optional[str] = None


class ClaimResponse(BaseModel):
    claimed: int
    ticket: Optional[TicketRecord] = None
    outcome: Optional[CreateOutcome] = None


class CheckInResponse(BaseModel):
    outcome: CheckInOutcome
    reference: str
    message: str
    checked_in_at: Optional[datetime] = None
