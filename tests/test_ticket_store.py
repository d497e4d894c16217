"""Tests del almacén SQLAlchemy (SQLite en memoria)"""
import pytest

from services.ticket_purchase.models.ticket import ANONYMOUS, TicketRecord, TicketStatus


def _record(reference: str, email: str = "ana@example.com", owner: str = ANONYMOUS) -> TicketRecord:
    return TicketRecord(
        reference=reference,
        owner_account_id=owner,
        owner_email=email,
        holder_name="Ana Pérez",
        event_name="Concierto de Primavera",
        event_date="2026-11-20",
        event_time="21:00",
        location="Teatro Municipal",
    )


async def test_create_if_absent_rejects_duplicate_reference(store):
    assert await store.create_if_absent(_record("TICKET-DUP1")) is True
    assert await store.create_if_absent(_record("TICKET-DUP1", email="otro@example.com")) is False

    stored = await store.get_by_reference("TICKET-DUP1")
    assert stored.owner_email == "ana@example.com"


async def test_get_by_reference_missing(store):
    assert await store.get_by_reference("TICKET-NOPE") is None


async def test_email_is_normalized_on_write(store):
    await store.create_if_absent(_record("TICKET-NORM1", email="  Ana@Example.COM "))

    stored = await store.get_by_reference("TICKET-NORM1")
    assert stored.owner_email == "ana@example.com"
    assert stored.is_anonymous


async def test_one_ticket_per_payment_session(store):
    first = _record("TICKET-SES1")
    first.payment_session_ref = "sess-1"
    second = _record("TICKET-SES2")
    second.payment_session_ref = "sess-1"

    assert await store.create_if_absent(first) is True
    assert await store.create_if_absent(second) is False

    assert (await store.get_by_payment_session("sess-1")).reference == "TICKET-SES1"
    assert await store.get_by_payment_session("sess-otra") is None


async def test_update_fields_respects_precondition(store):
    await store.create_if_absent(_record("TICKET-UPD1"))

    assert await store.update_fields("TICKET-UPD1", {"checked_in": True}, precondition={"checked_in": False})
    assert not await store.update_fields("TICKET-UPD1", {"checked_in": True}, precondition={"checked_in": False})

    stored = await store.get_by_reference("TICKET-UPD1")
    assert stored.checked_in is True


async def test_update_fields_missing_reference(store):
    assert await store.update_fields("TICKET-NOPE", {"status": TicketStatus.CANCELLED}) is False


async def test_update_fields_rejects_unknown_fields(store):
    with pytest.raises(ValueError):
        await store.update_fields("TICKET-ANY", {"reference": "TICKET-OTHER"})


async def test_find_by_owner_and_or(store):
    """match_any=False exige ambos criterios; match_any=True acepta cualquiera"""
    await store.create_if_absent(_record("TICKET-F1", owner=ANONYMOUS))
    await store.create_if_absent(_record("TICKET-F2", owner="acc-ana"))
    await store.create_if_absent(_record("TICKET-F3", email="bruno@example.com", owner="acc-ana"))
    await store.create_if_absent(_record("TICKET-F4", email="bruno@example.com", owner=ANONYMOUS))

    both = await store.find_by_owner(account_id=ANONYMOUS, email="ana@example.com")
    assert {ticket.reference for ticket in both} == {"TICKET-F1"}

    either = await store.find_by_owner(account_id="acc-ana", email="ANA@example.com", match_any=True)
    assert {ticket.reference for ticket in either} == {"TICKET-F1", "TICKET-F2", "TICKET-F3"}


async def test_find_by_owner_filters_status(store):
    await store.create_if_absent(_record("TICKET-S1"))
    await store.create_if_absent(_record("TICKET-S2"))
    await store.update_fields("TICKET-S2", {"status": TicketStatus.CANCELLED})

    active = await store.find_by_owner(email="ana@example.com", status=TicketStatus.ACTIVE)
    assert [ticket.reference for ticket in active] == ["TICKET-S1"]


async def test_find_by_owner_requires_criteria(store):
    with pytest.raises(ValueError):
        await store.find_by_owner()
