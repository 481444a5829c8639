"""
Bilateral Invoice Ledger (BIL) - Test Suite
Version: 1.0.0

- Unit tests (invariants and state machine in isolation)
- Service tests (store, approval, modification, settlement, sweep)
- Failure tests (rollback and zero side effects)
- Concurrency tests (serialized id allocation)
"""

import pytest
from datetime import datetime, timedelta, timezone
from decimal import Decimal
import threading

from bil_enforcement_v1 import (
    InvariantEnforcer,
    DecisionLedger,
    EnforcementDecision,
    EnforcementResult,
    InvariantViolation,
    Unauthorized,
    InvalidRecipient,
    SelfAssignment,
    DueDateInPast,
    InvalidAmount,
    InvalidTransition,
    NotApproved,
    AmountMismatch,
    TransferFailed,
    SystemCompromised,
    RecipientNotNull,
    NoSelfAssignment,
    DueDateInFuture,
    NULL_IDENTITY
)

from bil_remaining_invariants_v1 import (
    PartyAuthorization,
    ActingPartyPending,
    StatusPairConsistent,
    validate_party_transition
)

from bil_invoice_service_v1 import (
    Invoice,
    InvoiceStorage,
    InvoiceEventLog,
    InvoiceCreated,
    InvoiceUpdated,
    IssuerStatus,
    RecipientStatus,
    FixedClock
)

from bil_settlement_service_v1 import InMemoryTransferRail
from bil_overdue_sweep_v1 import is_sweep_eligible
from bil_e2e_integration_v1 import InvoiceLedger

NOW = datetime(2026, 3, 1, 12, 0, 0)
LATER = NOW + timedelta(hours=1)
TOMORROW = NOW + timedelta(days=1)

ISSUER = "ACME"
RECIPIENT = "GLOBEX"
OUTSIDER = "INITECH"
ADMIN = "ADMIN-001"

# ============================================
# FIXTURES
# ============================================

@pytest.fixture
def rail():
    return InMemoryTransferRail(balances={ISSUER: Decimal(0), RECIPIENT: Decimal(1000)})

@pytest.fixture
def ledger(rail):
    return InvoiceLedger(admin=ADMIN, rail=rail, clock=FixedClock(NOW))

def create(ledger, amount=Decimal(100), due_date=TOMORROW, caller=ISSUER, recipient=RECIPIENT, now=NOW):
    return ledger.create_invoice(
        "Acme Corp", "Globex", recipient, amount, due_date, "Consulting", caller=caller, now=now
    )

def statuses(ledger, invoice_id):
    invoice = ledger.get_by_id(invoice_id)
    return invoice.issuer_status, invoice.recipient_status

def make_invoice(issuer_status=IssuerStatus.APPROVED, recipient_status=RecipientStatus.PENDING):
    return Invoice(
        id=1,
        issuer_name="Acme Corp",
        client_name="Globex",
        issuer=ISSUER,
        recipient=RECIPIENT,
        amount=Decimal(100),
        due_date=TOMORROW,
        issuer_status=issuer_status,
        recipient_status=recipient_status,
        creation_date=NOW,
        last_modified_date=NOW
    )

# ============================================
# UNIT TESTS - CREATION INVARIANTS
# ============================================

class TestCreationInvariants:
    """Creation pre-checks in isolation."""

    @pytest.mark.parametrize("recipient", [NULL_IDENTITY, "", None])
    def test_null_recipient_fails(self, recipient):
        assert RecipientNotNull().pre_check(recipient=recipient) == False

    def test_real_recipient_passes(self):
        assert RecipientNotNull().pre_check(recipient=RECIPIENT) == True

    def test_self_assignment_fails(self):
        assert NoSelfAssignment().pre_check(recipient=ISSUER, caller=ISSUER) == False

    def test_due_date_must_be_strictly_later(self):
        inv = DueDateInFuture()
        assert inv.pre_check(due_date=NOW, now=NOW) == False
        assert inv.pre_check(due_date=NOW - timedelta(seconds=1), now=NOW) == False
        assert inv.pre_check(due_date=NOW + timedelta(seconds=1), now=NOW) == True

# ============================================
# UNIT TESTS - PARTY STATE MACHINE
# ============================================

class TestPartyStateMachine:
    """The acting party's own status decides every approve/reject/modify."""

    @pytest.mark.parametrize("operation", ["approve", "reject", "modify"])
    def test_recipient_pending_allowed(self, operation):
        invoice = make_invoice()
        assert validate_party_transition(invoice, RECIPIENT, operation) == True

    @pytest.mark.parametrize("operation", ["approve", "reject", "modify"])
    def test_issuer_approved_not_allowed(self, operation):
        invoice = make_invoice()
        assert validate_party_transition(invoice, ISSUER, operation) == False

    @pytest.mark.parametrize("status", [
        RecipientStatus.APPROVED,
        RecipientStatus.PAID,
        RecipientStatus.OVERDUE,
        RecipientStatus.REJECTED
    ])
    def test_recipient_non_pending_not_allowed(self, status):
        invoice = make_invoice(recipient_status=status)
        assert validate_party_transition(invoice, RECIPIENT, "approve") == False

    def test_other_party_status_is_ignored(self):
        """Issuer may act while the recipient is already Rejected."""
        invoice = make_invoice(IssuerStatus.PENDING, RecipientStatus.REJECTED)
        assert validate_party_transition(invoice, ISSUER, "approve") == True

    def test_outsider_never_allowed(self):
        assert validate_party_transition(make_invoice(), OUTSIDER, "approve") == False

    def test_party_authorization_rejects_sentinel(self):
        """The zero-valued record has no parties, even for the null identity."""
        inv = PartyAuthorization()
        assert inv.pre_check(invoice=Invoice.empty(), caller=NULL_IDENTITY) == False

# ============================================
# STORE & INDEX
# ============================================

class TestInvoiceStore:
    """Creation, lookup and per-party index."""

    def test_ids_strictly_increase(self, ledger):
        ids = [create(ledger) for _ in range(3)]
        assert ids == [1, 2, 3]

    def test_index_contains_id_once_per_party(self, ledger):
        first = create(ledger)
        second = create(ledger, caller=RECIPIENT, recipient=OUTSIDER)

        assert ledger.list_for(ISSUER) == [first]
        assert ledger.list_for(RECIPIENT) == [first, second]
        assert ledger.list_for(OUTSIDER) == [second]

    def test_initial_state(self, ledger):
        """Issuer's creation counts as its approval."""
        invoice = ledger.get_by_id(create(ledger))

        assert invoice.issuer == ISSUER
        assert invoice.recipient == RECIPIENT
        assert invoice.issuer_status == IssuerStatus.APPROVED
        assert invoice.recipient_status == RecipientStatus.PENDING
        assert invoice.creation_date == NOW
        assert invoice.last_modified_date == NOW
        assert invoice.message == "Consulting"

    def test_creation_notification(self, ledger):
        invoice_id = create(ledger)

        assert ledger.event_log.events == [
            InvoiceCreated(invoice_id, ISSUER, RECIPIENT, Decimal(100), TOMORROW)
        ]

    def test_now_defaults_to_clock(self, ledger):
        invoice_id = ledger.create_invoice("Acme Corp", "Globex", RECIPIENT, Decimal(5), TOMORROW, "", caller=ISSUER)
        assert ledger.get_by_id(invoice_id).creation_date == NOW

    @pytest.mark.parametrize("recipient,due_date,amount,error", [
        (NULL_IDENTITY, TOMORROW, Decimal(100), InvalidRecipient),
        ("", TOMORROW, Decimal(100), InvalidRecipient),
        (ISSUER, TOMORROW, Decimal(100), SelfAssignment),
        (RECIPIENT, NOW, Decimal(100), DueDateInPast),
        (RECIPIENT, NOW - timedelta(days=1), Decimal(100), DueDateInPast),
        (RECIPIENT, TOMORROW, Decimal(-1), InvalidAmount),
    ])
    def test_failed_creation_leaves_store_unchanged(self, ledger, recipient, due_date, amount, error):
        with pytest.raises(error):
            create(ledger, amount=amount, due_date=due_date, recipient=recipient)

        assert ledger.storage.count() == 0
        assert ledger.list_for(ISSUER) == []
        assert ledger.event_log.events == []

        # Counter did not advance
        assert create(ledger) == 1

    def test_error_precedence(self, ledger):
        """Null recipient is reported before self-assignment and due date."""
        with pytest.raises(InvalidRecipient):
            create(ledger, recipient=NULL_IDENTITY, due_date=NOW)
        with pytest.raises(SelfAssignment):
            create(ledger, recipient=ISSUER, due_date=NOW)

    def test_aware_due_date_normalized_to_utc(self, ledger):
        """Timezone-aware due dates are compared and stored as naive UTC."""
        due = datetime(2026, 3, 31, 14, 0, tzinfo=timezone(timedelta(hours=2)))

        invoice_id = create(ledger, due_date=due)

        assert ledger.get_by_id(invoice_id).due_date == datetime(2026, 3, 31, 12, 0)

    def test_aware_due_date_in_past_rejected(self, ledger):
        """Normalization keeps the comparison strict: 12:30+01:00 is 11:30 UTC, before 12:00."""
        with pytest.raises(DueDateInPast):
            create(ledger, due_date=datetime(2026, 3, 1, 12, 30, tzinfo=timezone(timedelta(hours=1))))

    def test_zero_amount_allowed(self, ledger):
        invoice_id = create(ledger, amount=Decimal(0))
        assert ledger.get_by_id(invoice_id).amount == Decimal(0)

    def test_unassigned_id_returns_sentinel(self, ledger):
        create(ledger)
        invoice = ledger.get_by_id(99)

        assert invoice.id == 0
        assert invoice.exists == False

    def test_get_by_id_returns_copy(self, ledger):
        invoice_id = create(ledger)
        copy = ledger.get_by_id(invoice_id)
        copy.recipient_status = RecipientStatus.PAID

        assert ledger.get_by_id(invoice_id).recipient_status == RecipientStatus.PENDING

    def test_reads_are_idempotent(self, ledger):
        invoice_id = create(ledger)

        assert ledger.get_by_id(invoice_id) == ledger.get_by_id(invoice_id)
        assert ledger.list_for(ISSUER) == ledger.list_for(ISSUER)
        assert ledger.list_for("NOBODY") == []

    def test_list_for_is_restartable(self, ledger):
        create(ledger)
        ids = ledger.list_for(ISSUER)
        ids.append(42)

        assert ledger.list_for(ISSUER) == [1]

# ============================================
# APPROVAL STATE MACHINE
# ============================================

class TestApprove:
    """Each party moves only its own status Pending -> Approved."""

    def test_recipient_approves(self, ledger):
        invoice_id = create(ledger)
        invoice = ledger.approve_invoice(invoice_id, RECIPIENT, now=LATER)

        assert invoice.recipient_status == RecipientStatus.APPROVED
        assert invoice.issuer_status == IssuerStatus.APPROVED
        assert invoice.last_modified_date == LATER
        assert ledger.event_log.events[-1] == InvoiceUpdated(
            invoice_id, IssuerStatus.APPROVED, RecipientStatus.APPROVED
        )

    def test_recipient_cannot_approve_twice(self, ledger):
        invoice_id = create(ledger)
        ledger.approve_invoice(invoice_id, RECIPIENT, now=NOW)
        events_before = len(ledger.event_log.events)

        with pytest.raises(InvalidTransition):
            ledger.approve_invoice(invoice_id, RECIPIENT, now=LATER)

        assert statuses(ledger, invoice_id) == (IssuerStatus.APPROVED, RecipientStatus.APPROVED)
        assert ledger.get_by_id(invoice_id).last_modified_date == NOW
        assert len(ledger.event_log.events) == events_before

    def test_issuer_already_approved_by_creation(self, ledger):
        invoice_id = create(ledger)

        with pytest.raises(InvalidTransition):
            ledger.approve_invoice(invoice_id, ISSUER)

    def test_outsider_unauthorized(self, ledger):
        invoice_id = create(ledger)

        with pytest.raises(Unauthorized):
            ledger.approve_invoice(invoice_id, OUTSIDER)

    def test_unassigned_id_unauthorized(self, ledger):
        with pytest.raises(Unauthorized):
            ledger.approve_invoice(7, RECIPIENT)

    def test_issuer_approves_after_recipient_modification(self, ledger):
        invoice_id = create(ledger)
        ledger.modify_invoice(invoice_id, "Globex Ltd", Decimal(80), TOMORROW, "discount", RECIPIENT)

        invoice = ledger.approve_invoice(invoice_id, ISSUER)

        assert invoice.issuer_status == IssuerStatus.APPROVED
        assert invoice.recipient_status == RecipientStatus.APPROVED

class TestReject:
    """Rejection is a unilateral veto that writes both sides."""

    def test_recipient_rejects_even_though_issuer_approved(self, ledger):
        invoice_id = create(ledger)
        invoice = ledger.reject_invoice(invoice_id, RECIPIENT, now=LATER)

        assert invoice.issuer_status == IssuerStatus.REJECTED
        assert invoice.recipient_status == RecipientStatus.REJECTED
        assert invoice.last_modified_date == LATER

    def test_issuer_rejects_while_pending(self, ledger):
        invoice_id = create(ledger)
        ledger.modify_invoice(invoice_id, "Globex", Decimal(90), TOMORROW, "counter-offer", RECIPIENT)

        ledger.reject_invoice(invoice_id, ISSUER)

        assert statuses(ledger, invoice_id) == (IssuerStatus.REJECTED, RecipientStatus.REJECTED)

    def test_issuer_cannot_reject_own_approved_invoice(self, ledger):
        invoice_id = create(ledger)

        with pytest.raises(InvalidTransition):
            ledger.reject_invoice(invoice_id, ISSUER)

        assert statuses(ledger, invoice_id) == (IssuerStatus.APPROVED, RecipientStatus.PENDING)

    def test_outsider_unauthorized(self, ledger):
        invoice_id = create(ledger)

        with pytest.raises(Unauthorized):
            ledger.reject_invoice(invoice_id, OUTSIDER)

    def test_rejected_invoice_is_terminal(self, ledger):
        invoice_id = create(ledger)
        ledger.reject_invoice(invoice_id, RECIPIENT)

        with pytest.raises(NotApproved):
            ledger.pay_invoice(invoice_id, RECIPIENT, Decimal(100))
        with pytest.raises(InvalidTransition):
            ledger.approve_invoice(invoice_id, RECIPIENT)
        with pytest.raises(InvalidTransition):
            ledger.approve_invoice(invoice_id, ISSUER)
        with pytest.raises(InvalidTransition):
            ledger.reject_invoice(invoice_id, ISSUER)

# ============================================
# MODIFICATION WORKFLOW
# ============================================

class TestModify:
    """Rewriting terms re-opens approval on the other side."""

    def test_recipient_modifies(self, ledger):
        invoice_id = create(ledger)
        new_due = NOW + timedelta(days=30)

        invoice = ledger.modify_invoice(invoice_id, "Globex Ltd", Decimal(75), new_due, "partial scope", RECIPIENT, now=LATER)

        assert invoice.recipient_status == RecipientStatus.APPROVED
        assert invoice.issuer_status == IssuerStatus.PENDING
        assert invoice.client_name == "Globex Ltd"
        assert invoice.amount == Decimal(75)
        assert invoice.due_date == new_due
        assert invoice.message == "partial scope"
        assert invoice.last_modified_date == LATER

        # Immutable fields
        assert invoice.issuer_name == "Acme Corp"
        assert invoice.issuer == ISSUER
        assert invoice.recipient == RECIPIENT
        assert invoice.creation_date == NOW

    def test_issuer_counter_modifies(self, ledger):
        invoice_id = create(ledger)
        ledger.modify_invoice(invoice_id, "Globex", Decimal(75), TOMORROW, "", RECIPIENT)

        invoice = ledger.modify_invoice(invoice_id, "Globex", Decimal(90), TOMORROW, "meet halfway", ISSUER)

        assert invoice.issuer_status == IssuerStatus.APPROVED
        assert invoice.recipient_status == RecipientStatus.PENDING
        assert invoice.amount == Decimal(90)

    def test_issuer_cannot_modify_while_approved(self, ledger):
        invoice_id = create(ledger)

        with pytest.raises(InvalidTransition):
            ledger.modify_invoice(invoice_id, "Globex", Decimal(1), TOMORROW, "", ISSUER)

        assert ledger.get_by_id(invoice_id).amount == Decimal(100)

    def test_due_date_checked_before_transition(self, ledger):
        invoice_id = create(ledger)

        with pytest.raises(DueDateInPast):
            ledger.modify_invoice(invoice_id, "Globex", Decimal(1), NOW, "", ISSUER)

    def test_negative_amount_rejected(self, ledger):
        invoice_id = create(ledger)

        with pytest.raises(InvalidAmount):
            ledger.modify_invoice(invoice_id, "Globex", Decimal(-5), TOMORROW, "", RECIPIENT)

    def test_outsider_unauthorized(self, ledger):
        invoice_id = create(ledger)

        with pytest.raises(Unauthorized):
            ledger.modify_invoice(invoice_id, "Globex", Decimal(1), TOMORROW, "", OUTSIDER)

    def test_fully_rejected_invoice_cannot_be_modified(self, ledger):
        """Rejection leaves neither party Pending, so revising is unreachable."""
        invoice_id = create(ledger)
        ledger.reject_invoice(invoice_id, RECIPIENT)

        for party in (ISSUER, RECIPIENT):
            with pytest.raises(InvalidTransition):
                ledger.modify_invoice(invoice_id, "Globex", Decimal(50), TOMORROW, "retry", party)

# ============================================
# SETTLEMENT
# ============================================

class TestSettlement:
    """Exact-amount settlement after dual approval."""

    def test_end_to_end_settlement(self, ledger, rail):
        invoice_id = create(ledger, amount=Decimal(100), due_date=TOMORROW)
        ledger.approve_invoice(invoice_id, RECIPIENT)

        # Issuer approved at creation; a second approval is not a valid transition
        with pytest.raises(InvalidTransition):
            ledger.approve_invoice(invoice_id, ISSUER)

        invoice = ledger.pay_invoice(invoice_id, RECIPIENT, Decimal(100), now=LATER)

        assert invoice.issuer_status == IssuerStatus.PAYMENT_RECEIVED
        assert invoice.recipient_status == RecipientStatus.PAID
        assert invoice.last_modified_date == LATER
        assert rail.get_balance(ISSUER) == Decimal(100)
        assert rail.get_balance(RECIPIENT) == Decimal(900)
        assert len(rail.transfers) == 1
        assert rail.transfers[0].from_identity == RECIPIENT
        assert rail.transfers[0].to_identity == ISSUER
        assert ledger.event_log.events[-1] == InvoiceUpdated(
            invoice_id, IssuerStatus.PAYMENT_RECEIVED, RecipientStatus.PAID
        )

    @pytest.mark.parametrize("tendered", [Decimal(99), Decimal(101), Decimal("100.01"), Decimal(0)])
    def test_amount_mismatch(self, ledger, rail, tendered):
        invoice_id = create(ledger)
        ledger.approve_invoice(invoice_id, RECIPIENT)

        with pytest.raises(AmountMismatch):
            ledger.pay_invoice(invoice_id, RECIPIENT, tendered)

        assert statuses(ledger, invoice_id) == (IssuerStatus.APPROVED, RecipientStatus.APPROVED)
        assert rail.transfers == []

    def test_pay_before_recipient_approval(self, ledger):
        invoice_id = create(ledger)

        with pytest.raises(NotApproved):
            ledger.pay_invoice(invoice_id, RECIPIENT, Decimal(100))

        assert statuses(ledger, invoice_id) == (IssuerStatus.APPROVED, RecipientStatus.PENDING)

    def test_pay_while_issuer_pending(self, ledger):
        invoice_id = create(ledger)
        ledger.modify_invoice(invoice_id, "Globex", Decimal(100), TOMORROW, "", RECIPIENT)

        with pytest.raises(NotApproved):
            ledger.pay_invoice(invoice_id, RECIPIENT, Decimal(100))

    def test_only_recipient_pays(self, ledger):
        invoice_id = create(ledger)
        ledger.approve_invoice(invoice_id, RECIPIENT)

        for caller in (ISSUER, OUTSIDER):
            with pytest.raises(Unauthorized):
                ledger.pay_invoice(invoice_id, caller, Decimal(100))

    def test_settles_exactly_once(self, ledger, rail):
        invoice_id = create(ledger)
        ledger.approve_invoice(invoice_id, RECIPIENT)
        ledger.pay_invoice(invoice_id, RECIPIENT, Decimal(100))

        with pytest.raises(NotApproved):
            ledger.pay_invoice(invoice_id, RECIPIENT, Decimal(100))

        assert len(rail.transfers) == 1
        assert rail.get_balance(RECIPIENT) == Decimal(900)

    def test_rail_down_rolls_back(self, ledger, rail):
        """Failed transfer leaves no trace on the invoice."""
        invoice_id = create(ledger)
        ledger.approve_invoice(invoice_id, RECIPIENT, now=NOW)
        events_before = len(ledger.event_log.events)
        rail.status = "DOWN"

        with pytest.raises(TransferFailed):
            ledger.pay_invoice(invoice_id, RECIPIENT, Decimal(100), now=LATER)

        invoice = ledger.get_by_id(invoice_id)
        assert invoice.issuer_status == IssuerStatus.APPROVED
        assert invoice.recipient_status == RecipientStatus.APPROVED
        assert invoice.last_modified_date == NOW
        assert rail.get_balance(ISSUER) == Decimal(0)
        assert rail.get_balance(RECIPIENT) == Decimal(1000)
        assert len(ledger.event_log.events) == events_before

        # Payment succeeds once the rail recovers
        rail.status = "UP"
        assert ledger.pay_invoice(invoice_id, RECIPIENT, Decimal(100)).recipient_status == RecipientStatus.PAID

    def test_insufficient_balance_rolls_back(self, ledger, rail):
        invoice_id = create(ledger, amount=Decimal(5000))
        ledger.approve_invoice(invoice_id, RECIPIENT)

        with pytest.raises(TransferFailed):
            ledger.pay_invoice(invoice_id, RECIPIENT, Decimal(5000))

        assert statuses(ledger, invoice_id) == (IssuerStatus.APPROVED, RecipientStatus.APPROVED)

    def test_overdraft_rail(self):
        """End-to-end balances are relative: issuer +100, recipient -100."""
        rail = InMemoryTransferRail(allow_overdraft=True)
        ledger = InvoiceLedger(admin=ADMIN, rail=rail, clock=FixedClock(NOW))
        invoice_id = create(ledger)
        ledger.approve_invoice(invoice_id, RECIPIENT)
        ledger.pay_invoice(invoice_id, RECIPIENT, Decimal(100))

        assert rail.get_balance(ISSUER) == Decimal(100)
        assert rail.get_balance(RECIPIENT) == Decimal(-100)

    def test_empty_transaction_id_is_transfer_failure(self):
        """A rail that moves funds but reports no transaction is rolled back as TransferFailed."""

        class SilentRail(InMemoryTransferRail):
            def transfer(self, from_identity, to_identity, amount):
                super().transfer(from_identity, to_identity, amount)
                return None

        silent = SilentRail(balances={RECIPIENT: Decimal(1000)})
        ledger = InvoiceLedger(admin=ADMIN, rail=silent, clock=FixedClock(NOW))
        invoice_id = create(ledger)
        ledger.approve_invoice(invoice_id, RECIPIENT)

        with pytest.raises(TransferFailed) as exc_info:
            ledger.pay_invoice(invoice_id, RECIPIENT, Decimal(100))

        assert exc_info.value.reason == "TransferFailed"
        assert silent.get_balance(RECIPIENT) == Decimal(1000)
        assert silent.get_balance(ISSUER) == Decimal(0)
        assert statuses(ledger, invoice_id) == (IssuerStatus.APPROVED, RecipientStatus.APPROVED)

    def test_rail_exception_is_transfer_failure(self):
        """Errors from the rail itself reach the caller as TransferFailed."""

        class UnreachableRail(InMemoryTransferRail):
            def transfer(self, from_identity, to_identity, amount):
                raise ConnectionError("rail unreachable")

        unreachable = UnreachableRail(balances={RECIPIENT: Decimal(1000)})
        ledger = InvoiceLedger(admin=ADMIN, rail=unreachable, clock=FixedClock(NOW))
        invoice_id = create(ledger)
        ledger.approve_invoice(invoice_id, RECIPIENT)
        events_before = len(ledger.event_log.events)

        with pytest.raises(TransferFailed) as exc_info:
            ledger.pay_invoice(invoice_id, RECIPIENT, Decimal(100))

        assert isinstance(exc_info.value.__cause__, ConnectionError)
        assert statuses(ledger, invoice_id) == (IssuerStatus.APPROVED, RecipientStatus.APPROVED)
        assert len(ledger.event_log.events) == events_before

    def test_float_amount_settles_exactly(self, ledger):
        """Float amounts are taken at their shortest repr, not their binary expansion."""
        invoice_id = create(ledger, amount=0.1)
        ledger.approve_invoice(invoice_id, RECIPIENT)

        invoice = ledger.pay_invoice(invoice_id, RECIPIENT, Decimal("0.1"))

        assert invoice.amount == Decimal("0.1")
        assert invoice.recipient_status == RecipientStatus.PAID

# ============================================
# OVERDUE SWEEP
# ============================================

class TestOverdueSweep:
    """Administrative pass over every invoice, ascending."""

    def test_non_admin_unauthorized(self, ledger):
        invoice_id = create(ledger)

        for caller in (ISSUER, RECIPIENT, OUTSIDER):
            with pytest.raises(Unauthorized):
                ledger.sweep_overdue(caller, now=TOMORROW + timedelta(days=1))

        assert ledger.get_by_id(invoice_id).recipient_status == RecipientStatus.PENDING

    def test_marks_past_due_only(self, ledger):
        due_soon = create(ledger, due_date=TOMORROW)
        due_later = create(ledger, due_date=NOW + timedelta(days=10))
        sweep_time = TOMORROW + timedelta(hours=1)

        swept = ledger.sweep_overdue(ADMIN, now=sweep_time)

        assert swept == [due_soon]
        invoice = ledger.get_by_id(due_soon)
        assert invoice.recipient_status == RecipientStatus.OVERDUE
        assert invoice.issuer_status == IssuerStatus.APPROVED
        assert invoice.last_modified_date == sweep_time
        assert ledger.get_by_id(due_later).recipient_status == RecipientStatus.PENDING

    def test_due_date_equal_to_now_not_swept(self, ledger):
        create(ledger, due_date=TOMORROW)
        assert ledger.sweep_overdue(ADMIN, now=TOMORROW) == []

    def test_paid_invoice_is_still_marked_overdue(self, ledger):
        """The status guard is a disjunction of inequalities, so Paid is overwritten."""
        invoice_id = create(ledger)
        ledger.approve_invoice(invoice_id, RECIPIENT)
        ledger.pay_invoice(invoice_id, RECIPIENT, Decimal(100))

        ledger.sweep_overdue(ADMIN, now=TOMORROW + timedelta(seconds=1))

        invoice = ledger.get_by_id(invoice_id)
        assert invoice.recipient_status == RecipientStatus.OVERDUE
        assert invoice.issuer_status == IssuerStatus.PAYMENT_RECEIVED

    def test_rejected_and_overdue_invoices_swept_again(self, ledger):
        rejected = create(ledger)
        ledger.reject_invoice(rejected, RECIPIENT)
        pending = create(ledger)
        after_due = TOMORROW + timedelta(seconds=1)

        assert ledger.sweep_overdue(ADMIN, now=after_due) == [rejected, pending]
        assert ledger.get_by_id(rejected).issuer_status == IssuerStatus.REJECTED

        events_before = len(ledger.event_log.events)
        assert ledger.sweep_overdue(ADMIN, now=after_due) == [rejected, pending]
        assert len(ledger.event_log.events) == events_before + 2

    def test_notifications_in_ascending_order(self, ledger):
        ids = [create(ledger) for _ in range(3)]
        events_before = len(ledger.event_log.events)

        ledger.sweep_overdue(ADMIN, now=TOMORROW + timedelta(days=1))

        events = ledger.event_log.events[events_before:]
        assert [event.id for event in events] == ids
        assert all(event.recipient_status == RecipientStatus.OVERDUE for event in events)

    @pytest.mark.parametrize("status", list(RecipientStatus))
    def test_guard_holds_for_every_status(self, status):
        invoice = make_invoice(recipient_status=status)
        assert is_sweep_eligible(invoice, TOMORROW + timedelta(seconds=1)) == True
        assert is_sweep_eligible(invoice, TOMORROW) == False

# ============================================
# NOTIFICATIONS
# ============================================

class TestEventLog:
    """Append-only notification channel."""

    def test_subscribers_see_events_in_order(self, ledger):
        received = []
        ledger.event_log.subscribe(received.append)

        invoice_id = create(ledger)
        ledger.approve_invoice(invoice_id, RECIPIENT)

        assert [type(event).__name__ for event in received] == ["InvoiceCreated", "InvoiceUpdated"]
        assert received == ledger.event_log.events

    def test_failing_subscriber_does_not_drop_events(self, ledger):
        """Every swept invoice is recorded even when a subscriber raises."""
        ids = [create(ledger) for _ in range(3)]
        received = []

        def _flaky(event):
            if isinstance(event, InvoiceUpdated) and event.id == ids[0]:
                raise RuntimeError("subscriber down")

        ledger.event_log.subscribe(_flaky)
        ledger.event_log.subscribe(received.append)

        ledger.sweep_overdue(ADMIN, now=TOMORROW + timedelta(days=1))

        updated = [event.id for event in ledger.event_log.events if isinstance(event, InvoiceUpdated)]
        assert updated == ids
        assert [event.id for event in received] == ids
        assert all(ledger.get_by_id(i).recipient_status == RecipientStatus.OVERDUE for i in ids)

    def test_unsubscribe(self):
        log = InvoiceEventLog()
        received = []
        unsubscribe = log.subscribe(received.append)
        unsubscribe()

        log.publish(InvoiceUpdated(1, IssuerStatus.APPROVED, RecipientStatus.PENDING))

        assert received == []
        assert len(log.events) == 1

    def test_failed_operations_emit_nothing(self, ledger):
        invoice_id = create(ledger)
        events_before = ledger.event_log.events

        for attempt in (
            lambda: ledger.approve_invoice(invoice_id, OUTSIDER),
            lambda: ledger.reject_invoice(invoice_id, ISSUER),
            lambda: ledger.pay_invoice(invoice_id, RECIPIENT, Decimal(100)),
            lambda: ledger.sweep_overdue(ISSUER),
        ):
            with pytest.raises(InvariantViolation):
                attempt()

        assert ledger.event_log.events == events_before

# ============================================
# ENFORCEMENT LAYER
# ============================================

class TestInvariantEnforcer:
    """Ordering, decision ledger and rollback."""

    def test_dependencies_run_first(self):
        enforcer = InvariantEnforcer(
            [ActingPartyPending("approve"), PartyAuthorization()],
            DecisionLedger()
        )
        assert [inv.id for inv in enforcer.sorted_invariants] == [
            "inv_101_party_authorization",
            "inv_102_acting_party_pending_approve"
        ]

    def test_circular_dependency_detected(self):
        first = PartyAuthorization()
        second = ActingPartyPending("approve")
        first.dependencies = [second.id]

        with pytest.raises(InvariantViolation):
            InvariantEnforcer([first, second], DecisionLedger())

    def test_post_check_failure_restores_invoice(self):
        storage = InvoiceStorage()
        storage.add_invoice(make_invoice())
        invoice = storage.get(1)
        snapshot = storage.snapshot_invoice(1)
        enforcer = InvariantEnforcer([StatusPairConsistent()], DecisionLedger())

        def _wrong_action():
            invoice.issuer_status = IssuerStatus.REJECTED
            return {
                'invoice': invoice,
                'expected_statuses': (IssuerStatus.APPROVED, RecipientStatus.PENDING)
            }

        with pytest.raises(InvariantViolation):
            enforcer.enforce_action(_wrong_action, storage=storage, invoice_snapshot=snapshot)

        assert storage.get(1).issuer_status == IssuerStatus.APPROVED

    def test_decisions_recorded_and_signed(self, ledger):
        invoice_id = create(ledger)
        with pytest.raises(InvalidTransition):
            ledger.approve_invoice(invoice_id, ISSUER)

        failures = ledger.decision_ledger.failures()
        assert [entry.invariant_id for entry in failures] == ["inv_102_acting_party_pending_approve"]
        assert ledger.decision_ledger.verify_chain_integrity() == True

    def test_decision_state_holds_plain_values(self, ledger):
        """Audit entries keep ids and status values, not live collaborators."""
        invoice_id = create(ledger)
        ledger.approve_invoice(invoice_id, RECIPIENT)
        ledger.pay_invoice(invoice_id, RECIPIENT, Decimal(100))

        payment_check = [
            entry for entry in ledger.decision_ledger.entries
            if entry.invariant_id == "inv_201_recipient_only_pays"
        ][0]
        state = payment_check.state_snapshot

        assert state['invoice'] == invoice_id
        assert state['invoice_statuses'] == ("Approved", "Approved")
        assert state['caller'] == RECIPIENT
        assert state['tendered_amount'] == Decimal(100)
        assert 'storage' not in state
        assert 'rail' not in state
        assert 'invoice_snapshot' not in state

    def test_health_counts_track_records(self, ledger):
        invoice_id = create(ledger)
        with pytest.raises(InvalidTransition):
            ledger.approve_invoice(invoice_id, ISSUER)

        decisions = ledger.decision_ledger
        health = ledger.get_system_health()

        assert health['failed_checks'] == 1 == len(decisions.failures())
        assert health['total_invariant_checks'] == len(decisions.entries)
        assert health['passed_checks'] == len(decisions.entries) - 1

    def test_tampered_decision_rejected(self):
        decision = EnforcementDecision(
            invariant_id="inv_101_party_authorization",
            check_type="PRE",
            result=True,
            action=EnforcementResult.PROCEED,
            timestamp=NOW,
            state_snapshot={},
            signature="forged"
        )

        with pytest.raises(SystemCompromised):
            DecisionLedger().record(decision)

    def test_system_health(self, ledger):
        invoice_id = create(ledger)
        ledger.approve_invoice(invoice_id, RECIPIENT)

        health = ledger.get_system_health()

        assert health['total_invoices'] == 1
        assert health['total_events'] == 2
        assert health['failed_checks'] == 0
        assert health['ledger_integrity'] == True

# ============================================
# STORAGE ROLLBACK
# ============================================

class TestStorageSnapshot:
    """Creation rollback drops every appended record and index entry."""

    def test_restore_drops_new_invoices(self):
        storage = InvoiceStorage()
        storage.add_invoice(make_invoice())
        storage.last_id = 1
        mark = storage.snapshot()

        second = make_invoice()
        second.id = storage.next_id()
        second.recipient = OUTSIDER
        storage.add_invoice(second)

        storage.restore(mark)

        assert storage.ids() == [1]
        assert storage.list_for(ISSUER) == [1]
        assert storage.list_for(OUTSIDER) == []
        assert storage.next_id() == 2

# ============================================
# CONCURRENCY
# ============================================

class TestConcurrency:
    """All operations serialize on the store's write lock."""

    def test_parallel_creation_allocates_unique_ids(self, ledger):
        threads_count = 8
        per_thread = 25
        created = []
        created_lock = threading.Lock()

        def _worker():
            for _ in range(per_thread):
                invoice_id = create(ledger)
                with created_lock:
                    created.append(invoice_id)

        threads = [threading.Thread(target=_worker) for _ in range(threads_count)]
        for thread in threads:
            thread.start()
        for thread in threads:
            thread.join()

        total = threads_count * per_thread
        assert sorted(created) == list(range(1, total + 1))
        assert ledger.list_for(ISSUER) == list(range(1, total + 1))
        assert ledger.list_for(RECIPIENT) == list(range(1, total + 1))

    def test_parallel_payments_settle_once(self, ledger, rail):
        invoice_id = create(ledger)
        ledger.approve_invoice(invoice_id, RECIPIENT)
        outcomes = []
        outcomes_lock = threading.Lock()

        def _pay():
            try:
                ledger.pay_invoice(invoice_id, RECIPIENT, Decimal(100))
                outcome = "paid"
            except NotApproved:
                outcome = "rejected"
            with outcomes_lock:
                outcomes.append(outcome)

        threads = [threading.Thread(target=_pay) for _ in range(10)]
        for thread in threads:
            thread.start()
        for thread in threads:
            thread.join()

        assert outcomes.count("paid") == 1
        assert outcomes.count("rejected") == 9
        assert len(rail.transfers) == 1
