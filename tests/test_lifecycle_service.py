"""Tests del ciclo de vida: creación, reclamo, signup y check-in"""
import pytest

from conftest import RecordingDispatcher
from services.ticket_purchase.models.ticket import (
    ANONYMOUS,
    Account,
    CheckInOutcome,
    CreateOutcome,
    TicketStatus,
)
from services.ticket_purchase.services.pending_drafts import SIGNUP_PREFIX
from services.ticket_purchase.services.ticket_lifecycle_service import TicketLifecycleService
from shared.utils.errors import PaymentGatewayError, ReferenceGenerationError


def _sequence(*references):
    remaining = list(references)
    calls = []

    def factory():
        calls.append(remaining[0])
        return remaining.pop(0) if len(remaining) > 1 else remaining[0]

    factory.calls = calls
    return factory


# ========== CREACIÓN ==========

async def test_create_standard_anonymous(lifecycle, dispatcher, make_draft):
    result = await lifecycle.create(make_draft(email="  Ana@Example.com "))

    assert result.outcome == CreateOutcome.CREATED
    assert result.ticket.owner_account_id == ANONYMOUS
    assert result.ticket.owner_email == "ana@example.com"
    assert result.ticket.checked_in is False
    assert result.warnings == []
    assert len(dispatcher.calls) == 1


async def test_create_standard_with_account(lifecycle, make_draft, account):
    result = await lifecycle.create(make_draft(), account)

    assert result.ticket.owner_account_id == "acc-ana"


async def test_reference_collision_retries(store, drafts, make_draft):
    """Una colisión de referencia genera otra; nunca se sobrescribe"""
    factory = _sequence("TICKET-1-AAA", "TICKET-1-AAA", "TICKET-1-BBB")
    lifecycle = TicketLifecycleService(store=store, drafts=drafts, reference_factory=factory, require_account=False)

    first = await lifecycle.create(make_draft(email="ana@example.com"))
    second = await lifecycle.create(make_draft(email="bruno@example.com"))

    assert first.ticket.reference == "TICKET-1-AAA"
    assert second.ticket.reference == "TICKET-1-BBB"
    assert factory.calls == ["TICKET-1-AAA", "TICKET-1-AAA", "TICKET-1-BBB"]
    assert (await store.get_by_reference("TICKET-1-AAA")).owner_email == "ana@example.com"


async def test_reference_generation_exhausted(store, drafts, make_draft):
    lifecycle = TicketLifecycleService(
        store=store,
        drafts=drafts,
        reference_factory=lambda: "TICKET-FIXED",
        require_account=False,
        max_reference_attempts=3,
    )
    await lifecycle.create(make_draft())

    with pytest.raises(ReferenceGenerationError):
        await lifecycle.create(make_draft())


async def test_dispatch_failure_is_a_warning(store, drafts, make_draft):
    """Un fallo de email no revierte el ticket"""
    lifecycle = TicketLifecycleService(
        store=store, drafts=drafts, dispatcher=RecordingDispatcher(fail=True), require_account=False
    )

    result = await lifecycle.create(make_draft())

    assert result.outcome == CreateOutcome.CREATED
    assert len(result.warnings) == 1
    assert await store.get_by_reference(result.ticket.reference) is not None


async def test_premium_without_gateway_fails(store, drafts, make_draft):
    lifecycle = TicketLifecycleService(store=store, drafts=drafts, require_account=False)

    with pytest.raises(PaymentGatewayError):
        await lifecycle.create(make_draft(tier="Premium"))


# ========== RECLAMO ==========

async def test_claim_anonymous_tickets_is_idempotent(lifecycle, store, make_draft):
    await lifecycle.create(make_draft(email="ana@example.com"))
    await lifecycle.create(make_draft(email="ANA@example.com"))
    other = await lifecycle.create(make_draft(email="bruno@example.com"))

    assert await lifecycle.claim_anonymous_tickets("Ana@Example.com", "acc-ana") == 2
    first_pass = await store.find_by_owner(account_id="acc-ana")
    assert await lifecycle.claim_anonymous_tickets("ana@example.com", "acc-ana") == 0

    second_pass = await store.find_by_owner(account_id="acc-ana")
    assert len(second_pass) == 2
    assert {t.reference: t.claimed_at for t in first_pass} == {t.reference: t.claimed_at for t in second_pass}
    assert (await store.get_by_reference(other.ticket.reference)).owner_account_id == ANONYMOUS


async def test_claim_skips_cancelled_tickets(lifecycle, store, make_draft):
    result = await lifecycle.create(make_draft())
    await store.update_fields(result.ticket.reference, {"status": TicketStatus.CANCELLED})

    assert await lifecycle.claim_anonymous_tickets("ana@example.com", "acc-ana") == 0


async def test_claim_does_not_steal_owned_tickets(lifecycle, store, make_draft, account):
    result = await lifecycle.create(make_draft(), account)

    assert await lifecycle.claim_anonymous_tickets("ana@example.com", "acc-intruso") == 0
    assert (await store.get_by_reference(result.ticket.reference)).owner_account_id == "acc-ana"


async def test_list_account_tickets_by_id_or_email(lifecycle, make_draft, account):
    await lifecycle.create(make_draft())
    await lifecycle.create(make_draft(email="regalo@example.com"), account)
    await lifecycle.create(make_draft(email="bruno@example.com"))

    tickets = await lifecycle.list_account_tickets(account)
    assert {t.owner_email for t in tickets} == {"ana@example.com", "regalo@example.com"}


# ========== SIGNUP ==========

async def test_anonymous_purchase_then_signup(lifecycle, store, make_draft):
    """Compra sin cuenta y luego registro con el mismo email"""
    created = await lifecycle.create(make_draft(email="a@x.com"))
    assert created.ticket.owner_account_id == ANONYMOUS

    claimed, result = await lifecycle.complete_signup(Account(id="acc-1", email="A@X.com"))

    assert claimed == 1
    assert result is None
    ticket = await store.get_by_reference(created.ticket.reference)
    assert ticket.owner_account_id == "acc-1"
    assert ticket.claimed_at is not None


async def test_required_account_holds_draft_until_signup(store, drafts, dispatcher, make_draft):
    lifecycle = TicketLifecycleService(store=store, drafts=drafts, dispatcher=dispatcher, require_account=True)

    held = await lifecycle.create(make_draft(email="a@x.com"))
    assert held.outcome == CreateOutcome.DRAFT_HELD
    assert held.signup_token
    assert await store.find_by_owner(email="a@x.com") == []
    assert await drafts.exists(SIGNUP_PREFIX, held.signup_token)

    account = Account(id="acc-1", email="a@x.com")
    claimed, result = await lifecycle.complete_signup(account, held.signup_token)
    assert claimed == 0
    assert result.outcome == CreateOutcome.CREATED
    assert result.ticket.owner_account_id == "acc-1"

    _, replay = await lifecycle.complete_signup(account, held.signup_token)
    assert replay.outcome == CreateOutcome.NOT_PENDING
    assert len(await store.find_by_owner(email="a@x.com")) == 1
    assert len(dispatcher.calls) == 1


# ========== CHECK-IN ==========

async def test_check_in_once(lifecycle, store, make_draft, account):
    created = await lifecycle.create(make_draft(), account)
    reference = created.ticket.reference

    first = await lifecycle.check_in(reference, account)
    assert first.outcome == CheckInOutcome.SUCCESS
    stored_at = (await store.get_by_reference(reference)).checked_in_at

    second = await lifecycle.check_in(reference, account)
    assert second.outcome == CheckInOutcome.ALREADY_CHECKED_IN
    assert (await store.get_by_reference(reference)).checked_in_at == stored_at


async def test_check_in_not_owned_does_not_mutate(lifecycle, store, make_draft, account, other_account):
    created = await lifecycle.create(make_draft(), account)

    result = await lifecycle.check_in(created.ticket.reference, other_account)

    assert result.outcome == CheckInOutcome.NOT_OWNED
    assert (await store.get_by_reference(created.ticket.reference)).checked_in is False


async def test_check_in_anonymous_caller_is_not_owner(lifecycle, make_draft):
    created = await lifecycle.create(make_draft())

    result = await lifecycle.check_in(created.ticket.reference, None)
    assert result.outcome == CheckInOutcome.NOT_OWNED


async def test_check_in_owner_by_email(lifecycle, make_draft):
    """Ticket aún anónimo: el email de la cuenta basta"""
    created = await lifecycle.create(make_draft(email="ana@example.com"))

    result = await lifecycle.check_in(created.ticket.reference, Account(id="acc-9", email="ANA@example.com"))
    assert result.outcome == CheckInOutcome.SUCCESS


async def test_check_in_not_found(lifecycle, account):
    result = await lifecycle.check_in("TICKET-NOPE", account)
    assert result.outcome == CheckInOutcome.NOT_FOUND


async def test_check_in_cancelled(lifecycle, store, make_draft, account):
    created = await lifecycle.create(make_draft(), account)
    await store.update_fields(created.ticket.reference, {"status": TicketStatus.CANCELLED})

    result = await lifecycle.check_in(created.ticket.reference, account)

    assert result.outcome == CheckInOutcome.CANCELLED
    assert (await store.get_by_reference(created.ticket.reference)).checked_in is False


async def test_check_in_lost_race(store, drafts, make_draft, account):
    """Si otro escaneo validó entre la lectura y el UPDATE, se informa ya validado"""
    lifecycle = TicketLifecycleService(store=store, drafts=drafts, require_account=False)
    created = await lifecycle.create(make_draft(), account)
    stale = created.ticket
    await lifecycle.check_in(stale.reference, account)

    class StaleStore:
        def __init__(self, inner):
            self.inner = inner

        async def get_by_reference(self, reference):
            if not hasattr(self, "served"):
                self.served = True
                return stale
            return await self.inner.get_by_reference(reference)

        async def update_fields(self, *args, **kwargs):
            return await self.inner.update_fields(*args, **kwargs)

    racing = TicketLifecycleService(store=StaleStore(store), drafts=drafts, require_account=False)
    result = await racing.check_in(stale.reference, account)

    assert result.outcome == CheckInOutcome.ALREADY_CHECKED_IN
    assert result.checked_in_at is not None
