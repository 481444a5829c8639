"""
Bilateral Invoice Ledger (BIL) - Invoice Store & Creation Service
Version: 1.0.0

Invoice records, the per-party index, the notification log,
and invoice creation with full invariant enforcement.
"""

from dataclasses import dataclass, field, replace
from datetime import datetime, timezone
from decimal import Decimal
from typing import Callable, Dict, List, Optional, Any, Tuple, Union
from enum import Enum
import threading

# Import enforcement layer
from bil_enforcement_v1 import (
    InvariantEnforcer,
    DecisionLedger,
    RecipientNotNull,
    NoSelfAssignment,
    DueDateInFuture,
    NonNegativeAmount,
    CreatedInInitialState,
    InvariantViolation,
    NULL_IDENTITY,
    to_decimal,
    logger
)

# ============================================
# DATA MODELS
# ============================================

class IssuerStatus(Enum):
    PENDING = "Pending"
    APPROVED = "Approved"
    PAYMENT_RECEIVED = "PaymentReceived"
    REJECTED = "Rejected"

class RecipientStatus(Enum):
    PENDING = "Pending"
    APPROVED = "Approved"
    PAID = "Paid"
    OVERDUE = "Overdue"
    REJECTED = "Rejected"

class PartyRole(Enum):
    ISSUER = "issuer"
    RECIPIENT = "recipient"

EPOCH = datetime(1970, 1, 1)

@dataclass
class Invoice:
    """Invoice between an issuer and a recipient."""
    id: int
    issuer_name: str
    client_name: str
    issuer: str
    recipient: str
    amount: Decimal
    due_date: datetime
    issuer_status: IssuerStatus = IssuerStatus.PENDING
    recipient_status: RecipientStatus = RecipientStatus.PENDING
    creation_date: datetime = EPOCH
    last_modified_date: datetime = EPOCH
    message: str = ""

    @classmethod
    def empty(cls) -> "Invoice":
        """Zero-valued record returned for unassigned ids."""
        return cls(
            id=0,
            issuer_name="",
            client_name="",
            issuer=NULL_IDENTITY,
            recipient=NULL_IDENTITY,
            amount=Decimal(0),
            due_date=EPOCH
        )

    @property
    def exists(self) -> bool:
        return self.id != 0

    def role_of(self, identity: str) -> Optional[PartyRole]:
        """Which side of the invoice the identity is on, if any."""
        if identity == self.issuer:
            return PartyRole.ISSUER
        if identity == self.recipient:
            return PartyRole.RECIPIENT
        return None

    def status_of(self, role: PartyRole) -> Union[IssuerStatus, RecipientStatus]:
        if role is PartyRole.ISSUER:
            return self.issuer_status
        return self.recipient_status

    def to_dict(self) -> Dict:
        """Serialize to dictionary."""
        return {
            'id': self.id,
            'issuer_name': self.issuer_name,
            'client_name': self.client_name,
            'issuer': self.issuer,
            'recipient': self.recipient,
            'amount': str(self.amount),
            'due_date': self.due_date.isoformat(),
            'issuer_status': self.issuer_status.value,
            'recipient_status': self.recipient_status.value,
            'creation_date': self.creation_date.isoformat(),
            'last_modified_date': self.last_modified_date.isoformat(),
            'message': self.message
        }

# ============================================
# NOTIFICATIONS
# ============================================

@dataclass(frozen=True)
class InvoiceCreated:
    id: int
    issuer: str
    recipient: str
    amount: Decimal
    due_date: datetime

    def to_dict(self) -> Dict:
        return {
            'event': 'InvoiceCreated',
            'id': self.id,
            'issuer': self.issuer,
            'recipient': self.recipient,
            'amount': str(self.amount),
            'due_date': self.due_date.isoformat()
        }

@dataclass(frozen=True)
class InvoiceUpdated:
    id: int
    issuer_status: IssuerStatus
    recipient_status: RecipientStatus

    @classmethod
    def of(cls, invoice: Invoice) -> "InvoiceUpdated":
        return cls(invoice.id, invoice.issuer_status, invoice.recipient_status)

    def to_dict(self) -> Dict:
        return {
            'event': 'InvoiceUpdated',
            'id': self.id,
            'issuer_status': self.issuer_status.value,
            'recipient_status': self.recipient_status.value
        }

InvoiceEvent = Union[InvoiceCreated, InvoiceUpdated]

class InvoiceEventLog:
    """Append-only notification channel with synchronous subscribers."""

    def __init__(self):
        self._events: List[InvoiceEvent] = []
        self._subscribers: List[Callable[[InvoiceEvent], None]] = []

    def subscribe(self, callback: Callable[[InvoiceEvent], None]) -> Callable[[], None]:
        """Register a callback; returns a function that unsubscribes it."""
        self._subscribers.append(callback)

        def _unsubscribe():
            if callback in self._subscribers:
                self._subscribers.remove(callback)

        return _unsubscribe

    def publish(self, event: InvoiceEvent):
        """
        Append the event, then notify subscribers in registration order.

        The mutation behind the event has already committed, so a failing
        subscriber is logged and skipped; it never drops the event or
        starves the subscribers after it.
        """
        self._events.append(event)
        logger.info(f"[EVENTS] {type(event).__name__} for invoice {event.id}")

        for callback in list(self._subscribers):
            try:
                callback(event)
            except Exception:
                logger.exception(f"[EVENTS] Subscriber {callback!r} failed on {type(event).__name__} for invoice {event.id}")

    @property
    def events(self) -> List[InvoiceEvent]:
        return list(self._events)

    def count(self) -> int:
        return len(self._events)

# ============================================
# CLOCK
# ============================================

def to_naive_utc(moment: datetime) -> datetime:
    """Ledger times are naive UTC; aware values are converted."""
    if moment.tzinfo is None:
        return moment
    return moment.astimezone(timezone.utc).replace(tzinfo=None)

class SystemClock:
    """Wall-clock time source, naive UTC."""

    def now(self) -> datetime:
        return to_naive_utc(datetime.now(timezone.utc))

@dataclass
class FixedClock:
    """Settable time source for tests and replays."""
    current: datetime = field(default_factory=lambda: SystemClock().now())

    def now(self) -> datetime:
        return self.current

    def advance(self, delta) -> datetime:
        self.current = self.current + delta
        return self.current

# ============================================
# STORAGE LAYER
# ============================================

class InvoiceStorage:
    """In-memory invoice table and per-party index (production would use database)."""

    def __init__(self):
        self.invoices: Dict[int, Invoice] = {}
        self.index: Dict[str, List[int]] = {}
        self.last_id = 0

        # Every operation on the store runs under this lock
        self.write_lock = threading.RLock()

    def next_id(self) -> int:
        self.last_id += 1
        return self.last_id

    def add_invoice(self, invoice: Invoice) -> Invoice:
        """Store invoice and index it under both parties."""
        self.invoices[invoice.id] = invoice
        self.index.setdefault(invoice.issuer, []).append(invoice.id)
        self.index.setdefault(invoice.recipient, []).append(invoice.id)

        logger.info(f"[STORAGE] Created invoice {invoice.id}")
        return invoice

    def get(self, invoice_id: int) -> Optional[Invoice]:
        """Live record, for services that mutate it."""
        return self.invoices.get(invoice_id)

    def get_by_id(self, invoice_id: int) -> Invoice:
        """Copy of the record, or the zero-valued sentinel."""
        invoice = self.invoices.get(invoice_id)
        if invoice is None:
            return Invoice.empty()
        return replace(invoice)

    def list_for(self, identity: str) -> List[int]:
        return list(self.index.get(identity, []))

    def ids(self) -> List[int]:
        """Every assigned id in ascending order."""
        return sorted(self.invoices)

    def snapshot_invoice(self, invoice_id: int) -> Optional[Invoice]:
        invoice = self.invoices.get(invoice_id)
        return replace(invoice) if invoice is not None else None

    def snapshot_invoices(self) -> Dict[int, Invoice]:
        return {invoice_id: replace(invoice) for invoice_id, invoice in self.invoices.items()}

    def restore_invoice(self, snapshot: Invoice):
        """Overwrite a live record with a previously captured copy."""
        self.invoices[snapshot.id] = replace(snapshot)
        logger.warning(f"[STORAGE] Restored invoice {snapshot.id}")

    def snapshot(self) -> Tuple[int, Dict[str, int]]:
        """Capture id counter and index lengths (for creation rollback)."""
        return self.last_id, {identity: len(ids) for identity, ids in self.index.items()}

    def restore(self, snapshot: Tuple[int, Dict[str, int]]):
        """Drop everything appended since the snapshot."""
        last_id, index_lengths = snapshot

        for invoice_id in [i for i in self.invoices if i > last_id]:
            del self.invoices[invoice_id]

        for identity in list(self.index):
            if identity in index_lengths:
                del self.index[identity][index_lengths[identity]:]
            else:
                del self.index[identity]

        self.last_id = last_id
        logger.warning(f"[STORAGE] Restored storage to id counter {last_id}")

    def count(self) -> int:
        return len(self.invoices)

# ============================================
# INVOICE SERVICE
# ============================================

class InvoiceService:
    """Creation and query of invoices with full enforcement."""

    def __init__(
        self,
        storage: InvoiceStorage,
        event_log: InvoiceEventLog,
        ledger: DecisionLedger
    ):
        self.storage = storage
        self.event_log = event_log
        self.ledger = ledger

        self.invariants = [
            RecipientNotNull(),
            NoSelfAssignment(),
            DueDateInFuture(),
            NonNegativeAmount(),
            CreatedInInitialState()
        ]

        self.enforcer = InvariantEnforcer(self.invariants, ledger)

        logger.info(f"[INVOICE_SERVICE] Initialized with {len(self.invariants)} invariants")

    def create(
        self,
        issuer_name: str,
        client_name: str,
        recipient: str,
        amount: Decimal,
        due_date: datetime,
        message: str,
        caller: str,
        now: datetime
    ) -> int:
        """
        Create new invoice with full invariant enforcement.

        The issuer's act of creating the invoice counts as its approval,
        so the invoice starts as (Approved, Pending).
        """
        amount = to_decimal(amount)
        due_date = to_naive_utc(due_date)
        now = to_naive_utc(now)

        logger.info(f"[INVOICE_SERVICE] Creating invoice: {caller} -> {recipient}, amount={amount}, due={due_date.isoformat()}")

        with self.storage.write_lock:

            def _create_invoice_action() -> Dict[str, Any]:
                invoice = Invoice(
                    id=self.storage.next_id(),
                    issuer_name=issuer_name,
                    client_name=client_name,
                    issuer=caller,
                    recipient=recipient,
                    amount=amount,
                    due_date=due_date,
                    issuer_status=IssuerStatus.APPROVED,
                    recipient_status=RecipientStatus.PENDING,
                    creation_date=now,
                    last_modified_date=now,
                    message=message
                )
                self.storage.add_invoice(invoice)

                return {
                    'invoice': invoice,
                    'storage': self.storage
                }

            try:
                result = self.enforcer.enforce_action(
                    _create_invoice_action,
                    recipient=recipient,
                    caller=caller,
                    amount=amount,
                    due_date=due_date,
                    now=now,
                    storage=self.storage,
                    storage_snapshot=self.storage.snapshot()
                )
            except InvariantViolation as e:
                logger.error(f"[INVOICE_SERVICE] Invoice creation failed ({e.reason}): {e}")
                raise

            invoice = result['invoice']
            self.event_log.publish(InvoiceCreated(
                id=invoice.id,
                issuer=invoice.issuer,
                recipient=invoice.recipient,
                amount=invoice.amount,
                due_date=invoice.due_date
            ))

        logger.info(f"[INVOICE_SERVICE] Invoice {invoice.id} created")
        return invoice.id

    def get_by_id(self, invoice_id: int) -> Invoice:
        with self.storage.write_lock:
            return self.storage.get_by_id(invoice_id)

    def list_for(self, identity: str) -> List[int]:
        with self.storage.write_lock:
            return self.storage.list_for(identity)
