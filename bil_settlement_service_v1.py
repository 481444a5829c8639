"""
Bilateral Invoice Ledger (BIL) - Settlement Service
Version: 1.0.0

Recipient pays the exact invoice amount once both parties have
approved. Status finalization and the transfer on the rail are one
atomic unit: if the rail fails, the invoice is restored.
"""

from dataclasses import dataclass, field
from datetime import datetime
from decimal import Decimal
from typing import Dict, List, Optional, Any
from abc import ABC, abstractmethod
import itertools

# Import enforcement layer
from bil_enforcement_v1 import (
    InvariantEnforcer,
    DecisionLedger,
    InvariantViolation,
    TransferFailed,
    to_decimal,
    logger
)

from bil_remaining_invariants_v1 import (
    RecipientOnlyPays,
    DualApprovalRequired,
    ExactAmountTendered,
    AtomicPaymentSettlement
)

from bil_invoice_service_v1 import (
    Invoice,
    InvoiceStorage,
    InvoiceEventLog,
    InvoiceUpdated,
    IssuerStatus,
    RecipientStatus,
    to_naive_utc
)

# ============================================
# TRANSFER RAIL
# ============================================

class TransferRail(ABC):
    """Moves value between two identities, all-or-nothing."""

    @abstractmethod
    def transfer(self, from_identity: str, to_identity: str, amount: Decimal) -> str:
        """Move funds and return a transaction ID. An empty result or any exception counts as failure."""
        pass

    def snapshot(self) -> Optional[Dict[str, Decimal]]:
        """Capture balances for rollback, if the rail can."""
        return None

    def restore(self, snapshot: Dict[str, Decimal]):
        pass

@dataclass
class TransferRecord:
    transaction_id: str
    from_identity: str
    to_identity: str
    amount: Decimal
    timestamp: datetime = field(default_factory=datetime.now)

    def to_dict(self) -> Dict:
        return {
            'transaction_id': self.transaction_id,
            'from': self.from_identity,
            'to': self.to_identity,
            'amount': str(self.amount),
            'timestamp': self.timestamp.isoformat()
        }

class InMemoryTransferRail(TransferRail):
    """Balance-keeping rail (production would call the payment network)."""

    def __init__(
        self,
        balances: Optional[Dict[str, Decimal]] = None,
        allow_overdraft: bool = False,
        name: str = "LEDGER"
    ):
        self.name = name
        self.status = "UP"
        self.allow_overdraft = allow_overdraft
        self.balances: Dict[str, Decimal] = {
            identity: to_decimal(amount) for identity, amount in (balances or {}).items()
        }
        self.transfers: List[TransferRecord] = []
        self._sequence = itertools.count(1)

    def get_balance(self, identity: str) -> Decimal:
        return self.balances.get(identity, Decimal(0))

    def deposit(self, identity: str, amount: Decimal):
        self.balances[identity] = self.get_balance(identity) + to_decimal(amount)

    def health_check(self) -> bool:
        return self.status == "UP"

    def transfer(self, from_identity: str, to_identity: str, amount: Decimal) -> str:
        if not self.health_check():
            raise TransferFailed(f"Rail {self.name} is {self.status}")

        if amount < 0:
            raise TransferFailed(f"Cannot transfer negative amount {amount}")

        if not self.allow_overdraft and self.get_balance(from_identity) < amount:
            raise TransferFailed(f"Insufficient balance for {from_identity}")

        self.balances[from_identity] = self.get_balance(from_identity) - amount
        self.balances[to_identity] = self.get_balance(to_identity) + amount

        transaction_id = f"TXN-{self.name}-{next(self._sequence):06d}"
        self.transfers.append(TransferRecord(transaction_id, from_identity, to_identity, amount))

        logger.info(f"[{self.name}] Transfer: {from_identity} -> {to_identity} {amount:,} (txn: {transaction_id})")
        return transaction_id

    def snapshot(self) -> Dict[str, Decimal]:
        return dict(self.balances)

    def restore(self, snapshot: Dict[str, Decimal]):
        self.balances = dict(snapshot)
        logger.warning(f"[{self.name}] Restored balances from snapshot")

# ============================================
# SETTLEMENT SERVICE
# ============================================

class SettlementService:
    """Service for paying invoices with atomic guarantees."""

    def __init__(
        self,
        storage: InvoiceStorage,
        event_log: InvoiceEventLog,
        ledger: DecisionLedger,
        rail: TransferRail
    ):
        self.storage = storage
        self.event_log = event_log
        self.ledger = ledger
        self.rail = rail

        self.invariants = [
            RecipientOnlyPays(),
            DualApprovalRequired(),
            ExactAmountTendered(),
            AtomicPaymentSettlement()
        ]

        self.enforcer = InvariantEnforcer(self.invariants, ledger)

        logger.info(f"[SETTLEMENT_SERVICE] Initialized with {len(self.invariants)} invariants")

    def pay(
        self,
        invoice_id: int,
        caller: str,
        now: datetime,
        tendered_amount: Decimal
    ) -> Invoice:
        """
        Settle an invoice approved by both parties.

        Statuses are finalized first, then the rail moves the tendered
        amount from the recipient to the issuer. Any rail failure, raised
        or reported as an empty transaction id, rolls the statuses and
        balances back and surfaces as TransferFailed.
        """
        tendered_amount = to_decimal(tendered_amount)
        now = to_naive_utc(now)

        logger.info(f"[SETTLEMENT] Paying invoice {invoice_id}: caller={caller}, tendered={tendered_amount}")

        with self.storage.write_lock:
            invoice = self.storage.get(invoice_id) or Invoice.empty()
            snapshot = self.storage.snapshot_invoice(invoice_id)

            def _pay_action() -> Dict[str, Any]:
                invoice.recipient_status = RecipientStatus.PAID
                invoice.issuer_status = IssuerStatus.PAYMENT_RECEIVED
                invoice.last_modified_date = now

                transaction_id = self._transfer(caller, invoice.issuer, tendered_amount)

                return {
                    'invoice': invoice,
                    'transaction_id': transaction_id
                }

            try:
                result = self.enforcer.enforce_action(
                    _pay_action,
                    invoice=invoice,
                    caller=caller,
                    tendered_amount=tendered_amount,
                    now=now,
                    storage=self.storage,
                    invoice_snapshot=snapshot,
                    rail=self.rail,
                    balances_snapshot=self.rail.snapshot()
                )
            except InvariantViolation as e:
                logger.error(f"[SETTLEMENT] Payment of invoice {invoice_id} failed ({e.reason}): {e}")
                raise

            self.event_log.publish(InvoiceUpdated.of(invoice))

            logger.info(f"[SETTLEMENT] Invoice {invoice_id} settled (txn: {result['transaction_id']})")
            return self.storage.get_by_id(invoice_id)

    def _transfer(self, from_identity: str, to_identity: str, amount: Decimal) -> str:
        """Call the rail, reporting every kind of failure as TransferFailed."""
        try:
            transaction_id = self.rail.transfer(
                from_identity=from_identity,
                to_identity=to_identity,
                amount=amount
            )
        except InvariantViolation:
            raise
        except Exception as e:
            raise TransferFailed(f"Rail error: {e}") from e

        if not transaction_id:
            raise TransferFailed(f"Rail reported no transaction for {from_identity} -> {to_identity} {amount}")

        return transaction_id
