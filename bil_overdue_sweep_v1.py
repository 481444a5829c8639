"""
Bilateral Invoice Ledger (BIL) - Overdue Sweep
Version: 1.0.0

Administrative batch pass that marks lapsed invoices Overdue on the
recipient's side. Only the administrative identity may run it.
"""

from datetime import datetime
from typing import Any, Dict, List

# Import enforcement layer
from bil_enforcement_v1 import (
    InvariantEnforcer,
    DecisionLedger,
    InvariantViolation,
    logger
)

from bil_remaining_invariants_v1 import AdminOnly

from bil_invoice_service_v1 import (
    Invoice,
    InvoiceStorage,
    InvoiceEventLog,
    InvoiceUpdated,
    RecipientStatus,
    to_naive_utc
)

def is_sweep_eligible(invoice: Invoice, now: datetime) -> bool:
    """
    Past-due guard used by the sweep.

    The status clause is a disjunction of inequalities, so it holds for
    every status: any past-due invoice is marked Overdue, including
    ones already Paid or Rejected.
    """
    status = invoice.recipient_status
    return now > invoice.due_date and (
        status != RecipientStatus.PAID
        or status != RecipientStatus.REJECTED
        or status != RecipientStatus.OVERDUE
    )

class OverdueSweepService:
    """Marks past-due invoices as Overdue."""

    def __init__(
        self,
        storage: InvoiceStorage,
        event_log: InvoiceEventLog,
        ledger: DecisionLedger,
        admin: str
    ):
        self.storage = storage
        self.event_log = event_log
        self.ledger = ledger
        self._admin = admin

        self.enforcer = InvariantEnforcer([AdminOnly()], ledger)

        logger.info(f"[SWEEP_SERVICE] Initialized (admin={admin})")

    @property
    def admin(self) -> str:
        return self._admin

    def sweep_overdue(self, caller: str, now: datetime) -> List[int]:
        """Mark every past-due invoice Overdue; returns the ids marked, ascending."""
        now = to_naive_utc(now)

        with self.storage.write_lock:

            def _sweep_action() -> Dict[str, Any]:
                swept = []
                for invoice_id in self.storage.ids():
                    invoice = self.storage.get(invoice_id)
                    if is_sweep_eligible(invoice, now):
                        invoice.recipient_status = RecipientStatus.OVERDUE
                        invoice.last_modified_date = now
                        swept.append(invoice)

                return {'swept': swept}

            try:
                result = self.enforcer.enforce_action(
                    _sweep_action,
                    caller=caller,
                    admin=self._admin,
                    now=now,
                    storage=self.storage,
                    invoices_snapshot=self.storage.snapshot_invoices()
                )
            except InvariantViolation as e:
                logger.error(f"[SWEEP_SERVICE] Sweep by {caller} failed ({e.reason}): {e}")
                raise

            for invoice in result['swept']:
                self.event_log.publish(InvoiceUpdated.of(invoice))

        swept_ids = [invoice.id for invoice in result['swept']]
        logger.info(f"[SWEEP_SERVICE] Marked {len(swept_ids)} invoices overdue: {swept_ids}")
        return swept_ids
