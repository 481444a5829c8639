"""
Bilateral Invoice Ledger (BIL) - End-to-End Integration
Version: 1.0.0

Complete business flow: Issuer creates -> Recipient approves ->
Recipient pays, plus the rejection path and the overdue sweep.
InvoiceLedger wires every service around one store, one event log
and one decision ledger.
"""

from datetime import datetime, timedelta
from decimal import Decimal
from typing import Dict, List, Optional

from bil_invoice_service_v1 import (
    InvoiceService,
    InvoiceStorage,
    InvoiceEventLog,
    Invoice,
    SystemClock
)

from bil_approval_service_v1 import ApprovalService

from bil_settlement_service_v1 import (
    SettlementService,
    TransferRail,
    InMemoryTransferRail
)

from bil_overdue_sweep_v1 import OverdueSweepService

from bil_enforcement_v1 import (
    DecisionLedger,
    InvariantViolation,
    logger
)

# ============================================
# LEDGER
# ============================================

class InvoiceLedger:
    """Two-party invoice ledger with one administrative identity."""

    def __init__(
        self,
        admin: str,
        rail: Optional[TransferRail] = None,
        clock=None
    ):
        self.clock = clock or SystemClock()
        self.rail = rail if rail is not None else InMemoryTransferRail()

        self.storage = InvoiceStorage()
        self.event_log = InvoiceEventLog()
        self.decision_ledger = DecisionLedger()

        self.invoice_service = InvoiceService(self.storage, self.event_log, self.decision_ledger)
        self.approval_service = ApprovalService(self.storage, self.event_log, self.decision_ledger)
        self.settlement_service = SettlementService(
            self.storage, self.event_log, self.decision_ledger, self.rail
        )
        self.sweep_service = OverdueSweepService(
            self.storage, self.event_log, self.decision_ledger, admin
        )

        logger.info(f"[LEDGER] Bilateral invoice ledger initialized (admin={admin})")

    @property
    def admin(self) -> str:
        return self.sweep_service.admin

    def _now(self, now: Optional[datetime]) -> datetime:
        return now if now is not None else self.clock.now()

    # ----- Store & Index -----

    def create_invoice(
        self,
        issuer_name: str,
        client_name: str,
        recipient: str,
        amount: Decimal,
        due_date: datetime,
        message: str,
        caller: str,
        now: Optional[datetime] = None
    ) -> int:
        return self.invoice_service.create(
            issuer_name, client_name, recipient, amount, due_date, message,
            caller, self._now(now)
        )

    def get_by_id(self, invoice_id: int) -> Invoice:
        return self.invoice_service.get_by_id(invoice_id)

    def list_for(self, identity: str) -> List[int]:
        return self.invoice_service.list_for(identity)

    # ----- Approval & Modification -----

    def approve_invoice(self, invoice_id: int, caller: str, now: Optional[datetime] = None) -> Invoice:
        return self.approval_service.approve(invoice_id, caller, self._now(now))

    def reject_invoice(self, invoice_id: int, caller: str, now: Optional[datetime] = None) -> Invoice:
        return self.approval_service.reject(invoice_id, caller, self._now(now))

    def modify_invoice(
        self,
        invoice_id: int,
        client_name: str,
        amount: Decimal,
        due_date: datetime,
        message: str,
        caller: str,
        now: Optional[datetime] = None
    ) -> Invoice:
        return self.approval_service.modify(
            invoice_id, client_name, amount, due_date, message, caller, self._now(now)
        )

    # ----- Settlement & Sweep -----

    def pay_invoice(
        self,
        invoice_id: int,
        caller: str,
        tendered_amount: Decimal,
        now: Optional[datetime] = None
    ) -> Invoice:
        return self.settlement_service.pay(invoice_id, caller, self._now(now), tendered_amount)

    def sweep_overdue(self, caller: str, now: Optional[datetime] = None) -> List[int]:
        return self.sweep_service.sweep_overdue(caller, self._now(now))

    def get_system_health(self) -> Dict:
        """Get complete system health report."""
        decisions = self.decision_ledger

        return {
            'total_invoices': self.storage.count(),
            'total_events': self.event_log.count(),
            'total_invariant_checks': decisions.passed_count + decisions.failed_count,
            'passed_checks': decisions.passed_count,
            'failed_checks': decisions.failed_count,
            'ledger_integrity': decisions.verify_chain_integrity()
        }

# ============================================
# COMPLETE DEMONSTRATION
# ============================================

def demonstrate_complete_system():
    """Walk through settlement, rejection and sweep on a fresh ledger."""

    rail = InMemoryTransferRail(balances={'ACME': Decimal(0), 'GLOBEX': Decimal(1000)})
    ledger = InvoiceLedger(admin="ADMIN-001", rail=rail)
    now = datetime.now()

    print("\n" + "="*80)
    print("BILATERAL INVOICE LEDGER - COMPLETE SYSTEM DEMONSTRATION")
    print("="*80 + "\n")

    # ===== SCENARIO 1: Successful Settlement =====
    invoice_id = ledger.create_invoice(
        "Acme Corp", "Globex", "GLOBEX", Decimal(100), now + timedelta(days=1),
        "Consulting, March", caller="ACME", now=now
    )
    ledger.approve_invoice(invoice_id, caller="GLOBEX", now=now)
    invoice = ledger.pay_invoice(invoice_id, caller="GLOBEX", tendered_amount=Decimal(100), now=now)
    print(f"Scenario 1: invoice {invoice.id} -> {invoice.issuer_status.value}/{invoice.recipient_status.value}")
    print(f"  ACME balance: {rail.get_balance('ACME')}, GLOBEX balance: {rail.get_balance('GLOBEX')}")

    # ===== SCENARIO 2: Unilateral Rejection =====
    rejected_id = ledger.create_invoice(
        "Acme Corp", "Globex", "GLOBEX", Decimal(250), now + timedelta(days=7),
        "Hardware", caller="ACME", now=now
    )
    ledger.reject_invoice(rejected_id, caller="GLOBEX", now=now)
    try:
        ledger.pay_invoice(rejected_id, caller="GLOBEX", tendered_amount=Decimal(250), now=now)
    except InvariantViolation as e:
        print(f"Scenario 2: payment of rejected invoice blocked ({e.reason})")

    # ===== SCENARIO 3: Overdue Sweep =====
    swept = ledger.sweep_overdue(caller="ADMIN-001", now=now + timedelta(days=2))
    print(f"Scenario 3: sweep marked invoices {swept} overdue")

    health = ledger.get_system_health()
    print("\n" + "="*80)
    print(f"Invoices: {health['total_invoices']}  Events: {health['total_events']}")
    print(f"Invariant checks: {health['passed_checks']} passed / {health['failed_checks']} failed")
    print(f"Ledger integrity: {'VERIFIED' if health['ledger_integrity'] else 'COMPROMISED'}")
    print("="*80 + "\n")

if __name__ == "__main__":
    demonstrate_complete_system()
