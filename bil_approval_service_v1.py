"""
Bilateral Invoice Ledger (BIL) - Approval & Modification Service
Version: 1.0.0

Each party owns its status field. Approve moves the caller's own
status Pending -> Approved, Reject is a unilateral veto that writes
Rejected on both sides, and Modify rewrites the terms and re-opens
approval on the other side.
"""

from datetime import datetime
from decimal import Decimal
from typing import Any, Callable, Dict, List

# Import enforcement layer
from bil_enforcement_v1 import (
    Invariant,
    InvariantEnforcer,
    DecisionLedger,
    DueDateInFuture,
    NonNegativeAmount,
    InvariantViolation,
    to_decimal,
    logger
)

from bil_remaining_invariants_v1 import (
    PartyAuthorization,
    ActingPartyPending,
    StatusPairConsistent
)

from bil_invoice_service_v1 import (
    Invoice,
    InvoiceStorage,
    InvoiceEventLog,
    InvoiceUpdated,
    IssuerStatus,
    RecipientStatus,
    PartyRole,
    to_naive_utc
)

class ApprovalService:
    """Approval state machine and modification workflow."""

    def __init__(
        self,
        storage: InvoiceStorage,
        event_log: InvoiceEventLog,
        ledger: DecisionLedger
    ):
        self.storage = storage
        self.event_log = event_log
        self.ledger = ledger

        self.approve_enforcer = self._enforcer([
            PartyAuthorization(),
            ActingPartyPending("approve"),
            StatusPairConsistent()
        ])
        self.reject_enforcer = self._enforcer([
            PartyAuthorization(),
            ActingPartyPending("reject"),
            StatusPairConsistent()
        ])
        self.modify_enforcer = self._enforcer([
            PartyAuthorization(),
            DueDateInFuture(),
            NonNegativeAmount(),
            ActingPartyPending("modify"),
            StatusPairConsistent()
        ])

        logger.info("[APPROVAL_SERVICE] Initialized")

    def _enforcer(self, invariants: List[Invariant]) -> InvariantEnforcer:
        return InvariantEnforcer(invariants, self.ledger)

    def approve(self, invoice_id: int, caller: str, now: datetime) -> Invoice:
        """Move the caller's own status from Pending to Approved."""

        def _approve(invoice: Invoice):
            if invoice.role_of(caller) is PartyRole.RECIPIENT:
                invoice.recipient_status = RecipientStatus.APPROVED
            else:
                invoice.issuer_status = IssuerStatus.APPROVED

        return self._transition("approve", self.approve_enforcer, invoice_id, caller, now, _approve)

    def reject(self, invoice_id: int, caller: str, now: datetime) -> Invoice:
        """Either party vetoes the invoice while its own side is still Pending."""

        def _reject(invoice: Invoice):
            invoice.recipient_status = RecipientStatus.REJECTED
            invoice.issuer_status = IssuerStatus.REJECTED

        return self._transition("reject", self.reject_enforcer, invoice_id, caller, now, _reject)

    def modify(
        self,
        invoice_id: int,
        client_name: str,
        amount: Decimal,
        due_date: datetime,
        message: str,
        caller: str,
        now: datetime
    ) -> Invoice:
        """
        Rewrite the invoice terms.

        The caller's status becomes Approved and the other party's
        status goes back to Pending. Issuer name, parties and creation
        date are never touched.
        """
        amount = to_decimal(amount)
        due_date = to_naive_utc(due_date)

        def _modify(invoice: Invoice):
            if invoice.role_of(caller) is PartyRole.RECIPIENT:
                invoice.recipient_status = RecipientStatus.APPROVED
                invoice.issuer_status = IssuerStatus.PENDING
            else:
                invoice.issuer_status = IssuerStatus.APPROVED
                invoice.recipient_status = RecipientStatus.PENDING

            invoice.client_name = client_name
            invoice.amount = amount
            invoice.due_date = due_date
            invoice.message = message

        return self._transition(
            "modify", self.modify_enforcer, invoice_id, caller, now, _modify,
            amount=amount,
            due_date=due_date
        )

    def _transition(
        self,
        operation: str,
        enforcer: InvariantEnforcer,
        invoice_id: int,
        caller: str,
        now: datetime,
        mutate: Callable[[Invoice], None],
        **check_args
    ) -> Invoice:
        now = to_naive_utc(now)
        logger.info(f"[APPROVAL_SERVICE] {operation} invoice {invoice_id} by {caller}")

        with self.storage.write_lock:
            invoice = self.storage.get(invoice_id) or Invoice.empty()
            snapshot = self.storage.snapshot_invoice(invoice_id)

            def _transition_action() -> Dict[str, Any]:
                mutate(invoice)
                invoice.last_modified_date = now

                return {
                    'invoice': invoice,
                    'invoice_snapshot': snapshot,
                    'expected_statuses': self._expected_statuses(operation, snapshot, caller)
                }

            try:
                enforcer.enforce_action(
                    _transition_action,
                    invoice=invoice,
                    caller=caller,
                    now=now,
                    storage=self.storage,
                    invoice_snapshot=snapshot,
                    **check_args
                )
            except InvariantViolation as e:
                logger.error(f"[APPROVAL_SERVICE] {operation} failed on invoice {invoice_id} ({e.reason}): {e}")
                raise

            self.event_log.publish(InvoiceUpdated.of(invoice))
            return self.storage.get_by_id(invoice_id)

    @staticmethod
    def _expected_statuses(operation: str, before: Invoice, caller: str):
        """Status pair each operation must produce from the given record."""
        if operation == "reject":
            return IssuerStatus.REJECTED, RecipientStatus.REJECTED

        role = before.role_of(caller)

        if operation == "approve":
            if role is PartyRole.RECIPIENT:
                return before.issuer_status, RecipientStatus.APPROVED
            return IssuerStatus.APPROVED, before.recipient_status

        if role is PartyRole.RECIPIENT:
            return IssuerStatus.PENDING, RecipientStatus.APPROVED
        return IssuerStatus.APPROVED, RecipientStatus.PENDING
