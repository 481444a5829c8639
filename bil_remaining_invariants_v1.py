"""
Bilateral Invoice Ledger (BIL) - Transition, Settlement & Sweep Invariants
Version: 1.0.0

Invariants guarding every mutation after creation: party authorization,
the per-party status state machine, dual approval, exact settlement
and the administrative overdue sweep.
"""

from decimal import Decimal
from typing import Any, Dict, Optional, Tuple

# Import base classes from main enforcement layer
from bil_enforcement_v1 import (
    Invariant,
    InvariantType,
    Criticality,
    Unauthorized,
    InvalidTransition,
    NotApproved,
    AmountMismatch,
    restore_invoice,
    logger
)

from bil_invoice_service_v1 import (
    Invoice,
    IssuerStatus,
    RecipientStatus,
    PartyRole
)

# ============================================
# PARTY STATE MACHINE
# ============================================

# Source statuses from which the acting party may perform each operation.
# The other party's status is never consulted.
ALLOWED_TRANSITIONS = {
    "approve": {
        PartyRole.ISSUER: {IssuerStatus.PENDING},
        PartyRole.RECIPIENT: {RecipientStatus.PENDING},
    },
    "reject": {
        PartyRole.ISSUER: {IssuerStatus.PENDING},
        PartyRole.RECIPIENT: {RecipientStatus.PENDING},
    },
    "modify": {
        PartyRole.ISSUER: {IssuerStatus.PENDING},
        PartyRole.RECIPIENT: {RecipientStatus.PENDING},
    },
}

def validate_party_transition(invoice: Invoice, caller: str, operation: str) -> bool:
    """True if the caller's own status allows the operation."""
    role = invoice.role_of(caller)
    if role is None:
        return False
    return invoice.status_of(role) in ALLOWED_TRANSITIONS[operation][role]

# ============================================
# TRANSITION INVARIANTS
# ============================================

class PartyAuthorization(Invariant):
    """INV-101: Only the issuer or the recipient may act on an invoice."""

    violation = Unauthorized

    def __init__(self):
        super().__init__(
            id="inv_101_party_authorization",
            statement="It is FORBIDDEN for anyone but the issuer or recipient to act on an invoice",
            type=InvariantType.SECURITY,
            criticality=Criticality.CRITICAL,
            dependencies=[],
            owner="approval_service"
        )

    def pre_check(self, invoice: Invoice, caller: str, **kwargs) -> bool:
        role = invoice.role_of(caller)
        authorized = invoice.exists and role is not None

        logger.info(f"PRE-CHECK {self.id}: invoice={invoice.id}, caller={caller}, role={role.value if role else None}")

        if not authorized:
            logger.warning(f"AUTHORIZATION VIOLATION: {caller} attempted to act on invoice {invoice.id}")

        return authorized

    def post_check(self, result: Any, **kwargs) -> bool:
        # Parties are immutable after creation
        invoice = result['invoice']
        before = result['invoice_snapshot']
        return invoice.issuer == before.issuer and invoice.recipient == before.recipient

class ActingPartyPending(Invariant):
    """INV-102: The acting party may only move its own status out of Pending."""

    violation = InvalidTransition

    def __init__(self, operation: str):
        super().__init__(
            id=f"inv_102_acting_party_pending_{operation}",
            statement=f"It is FORBIDDEN to {operation} unless the acting party's own status is Pending",
            type=InvariantType.TRANSITION,
            criticality=Criticality.CRITICAL,
            dependencies=["inv_101_party_authorization"],
            owner="approval_service"
        )
        self.operation = operation

    def pre_check(self, invoice: Invoice, caller: str, **kwargs) -> bool:
        valid = validate_party_transition(invoice, caller, self.operation)
        role = invoice.role_of(caller)
        current = invoice.status_of(role).value if role else None

        logger.info(f"PRE-CHECK {self.id}: invoice={invoice.id}, {role.value if role else None}={current}, valid={valid}")
        return valid

class StatusPairConsistent(Invariant):
    """INV-103: After a mutation the status pair is exactly the one the operation defines."""

    def __init__(self):
        super().__init__(
            id="inv_103_status_pair_consistent",
            statement="The system MUST always leave the (issuer, recipient) status pair the operation defines",
            type=InvariantType.TRANSITION,
            criticality=Criticality.CRITICAL,
            dependencies=[],
            owner="state_machine_service"
        )

    def pre_check(self, **kwargs) -> bool:
        return True

    def post_check(self, result: Any, **kwargs) -> bool:
        invoice = result['invoice']
        expected: Tuple[IssuerStatus, RecipientStatus] = result['expected_statuses']
        actual = (invoice.issuer_status, invoice.recipient_status)
        valid = actual == expected

        logger.info(f"POST-CHECK {self.id}: invoice={invoice.id}, statuses={actual[0].value}/{actual[1].value}, valid={valid}")
        return valid

# ============================================
# SETTLEMENT INVARIANTS
# ============================================

class RecipientOnlyPays(Invariant):
    """INV-201: Only the recipient may pay an invoice."""

    violation = Unauthorized

    def __init__(self):
        super().__init__(
            id="inv_201_recipient_only_pays",
            statement="It is FORBIDDEN for anyone but the recipient to pay an invoice",
            type=InvariantType.SECURITY,
            criticality=Criticality.CRITICAL,
            dependencies=[],
            owner="settlement_service"
        )

    def pre_check(self, invoice: Invoice, caller: str, **kwargs) -> bool:
        authorized = invoice.exists and caller == invoice.recipient
        logger.info(f"PRE-CHECK {self.id}: invoice={invoice.id}, recipient={invoice.recipient}, caller={caller}, authorized={authorized}")
        return authorized

class DualApprovalRequired(Invariant):
    """INV-202: Both parties must hold Approved before settlement."""

    violation = NotApproved

    def __init__(self):
        super().__init__(
            id="inv_202_dual_approval",
            statement="It is FORBIDDEN to settle unless issuer and recipient are both Approved",
            type=InvariantType.TRANSITION,
            criticality=Criticality.CRITICAL,
            dependencies=["inv_201_recipient_only_pays"],
            owner="settlement_service"
        )

    def pre_check(self, invoice: Invoice, **kwargs) -> bool:
        approved = (
            invoice.recipient_status == RecipientStatus.APPROVED
            and invoice.issuer_status == IssuerStatus.APPROVED
        )
        logger.info(f"PRE-CHECK {self.id}: issuer={invoice.issuer_status.value}, recipient={invoice.recipient_status.value}, approved={approved}")
        return approved

class ExactAmountTendered(Invariant):
    """INV-203: Tendered amount equals the invoice amount exactly."""

    violation = AmountMismatch

    def __init__(self):
        super().__init__(
            id="inv_203_exact_amount",
            statement="It is FORBIDDEN to settle with any amount other than the invoice amount",
            type=InvariantType.FINANCIAL,
            criticality=Criticality.CRITICAL,
            dependencies=["inv_202_dual_approval"],
            owner="settlement_service"
        )

    def pre_check(self, invoice: Invoice, tendered_amount: Decimal, **kwargs) -> bool:
        exact = tendered_amount == invoice.amount
        logger.info(f"PRE-CHECK {self.id}: amount={invoice.amount}, tendered={tendered_amount}, exact={exact}")
        return exact

class AtomicPaymentSettlement(Invariant):
    """INV-204: Status finalization and the transfer happen together or not at all."""

    def __init__(self):
        super().__init__(
            id="inv_204_atomic_settlement",
            statement="The system MUST always settle statuses and funds atomically",
            type=InvariantType.FINANCIAL,
            criticality=Criticality.CRITICAL,
            dependencies=[],
            owner="settlement_service"
        )

    def pre_check(self, **kwargs) -> bool:
        return True

    def post_check(self, result: Any, **kwargs) -> bool:
        invoice = result['invoice']
        transaction_id: Optional[str] = result.get('transaction_id')

        settled = (
            invoice.issuer_status == IssuerStatus.PAYMENT_RECEIVED
            and invoice.recipient_status == RecipientStatus.PAID
            and transaction_id is not None
        )

        logger.info(f"POST-CHECK {self.id}: invoice={invoice.id}, txn={transaction_id}, settled={settled}")
        return settled

    def rollback_action(self, state_before: Dict[str, Any]):
        restore_invoice(state_before)

        rail = state_before.get('rail')
        balances = state_before.get('balances_snapshot')
        if rail is not None and balances is not None:
            rail.restore(balances)

        logger.warning(f"ROLLBACK {self.id}: Reversed settlement for invoice {state_before['invoice'].id}")

# ============================================
# SWEEP INVARIANTS
# ============================================

class AdminOnly(Invariant):
    """INV-301: Only the administrative identity may run the overdue sweep."""

    violation = Unauthorized

    def __init__(self):
        super().__init__(
            id="inv_301_admin_only",
            statement="It is FORBIDDEN for anyone but the administrative identity to sweep overdue invoices",
            type=InvariantType.SECURITY,
            criticality=Criticality.CRITICAL,
            dependencies=[],
            owner="sweep_service"
        )

    def pre_check(self, caller: str, admin: str, **kwargs) -> bool:
        authorized = caller == admin
        logger.info(f"PRE-CHECK {self.id}: caller={caller}, authorized={authorized}")
        return authorized

    def rollback_action(self, state_before: Dict[str, Any]):
        storage = state_before['storage']
        for snapshot in state_before['invoices_snapshot'].values():
            storage.restore_invoice(snapshot)
        logger.warning(f"ROLLBACK {self.id}: Restored {len(state_before['invoices_snapshot'])} invoices")
