"""
Bilateral Invoice Ledger (BIL) - Enforcement Layer
Version: 1.0.0

Every invoice operation runs through the InvariantEnforcer:
pre-checks in dependency order, the action itself, post-checks,
and automatic rollback when the action or a post-check fails.
"""

from dataclasses import dataclass
from datetime import datetime
from decimal import Decimal
from typing import Any, Callable, Dict, List, Optional, Type
from enum import Enum
import hmac
import logging
import os
from abc import ABC, abstractmethod

# ============================================
# SYSTEM CONFIGURATION
# ============================================

SYSTEM_SECRET = os.environ.get(
    "BIL_SYSTEM_SECRET", "PRODUCTION_SECRET_KEY_ROTATE_QUARTERLY"
).encode()

LOG_LEVEL = os.environ.get("BIL_LOG_LEVEL", "INFO").upper()

NULL_IDENTITY = "0x0000000000000000000000000000000000000000"

class InvariantType(Enum):
    STATE = "state"
    TRANSITION = "transition"
    TEMPORAL = "temporal"
    SECURITY = "security"
    FINANCIAL = "financial"

class Criticality(Enum):
    CRITICAL = "critical"
    IMPORTANT = "important"

class EnforcementResult(Enum):
    PROCEED = "proceed"
    ROLLBACK = "rollback"
    FREEZE = "freeze"

# ============================================
# LOGGING SETUP
# ============================================

logging.basicConfig(
    level=getattr(logging, LOG_LEVEL, logging.INFO),
    format='%(asctime)s [%(levelname)s] %(name)s: %(message)s'
)
logger = logging.getLogger("BIL.Enforcement")

# ============================================
# EXCEPTIONS
# ============================================

class InvariantViolation(Exception):
    """Raised when an invariant is violated."""
    reason = "InvariantViolation"

class Unauthorized(InvariantViolation):
    """Caller is not a party to the invoice (or not the admin)."""
    reason = "Unauthorized"

class InvalidRecipient(InvariantViolation):
    """Recipient is the null identity."""
    reason = "InvalidRecipient"

class SelfAssignment(InvariantViolation):
    """Issuer and recipient are the same identity."""
    reason = "SelfAssignment"

class DueDateInPast(InvariantViolation):
    """Due date is not strictly after the operation time."""
    reason = "DueDateInPast"

class InvalidAmount(InvariantViolation):
    """Invoice amount is negative."""
    reason = "InvalidAmount"

class InvalidTransition(InvariantViolation):
    """Acting party's status is not in the required source state."""
    reason = "InvalidTransition"

class NotApproved(InvariantViolation):
    """Settlement attempted without approval on both sides."""
    reason = "NotApproved"

class AmountMismatch(InvariantViolation):
    """Tendered amount differs from the invoice amount."""
    reason = "AmountMismatch"

class TransferFailed(InvariantViolation):
    """Transfer rail could not move the funds."""
    reason = "TransferFailed"

class SystemCompromised(Exception):
    """A rollback failed or a decision signature did not verify."""
    pass

def is_null_identity(identity: Optional[str]) -> bool:
    return not identity or identity == NULL_IDENTITY

def to_decimal(value: Any) -> Decimal:
    """Exact decimal for a money amount; floats go through their shortest repr."""
    if isinstance(value, Decimal):
        return value
    return Decimal(str(value))

# ============================================
# ENFORCEMENT DECISION RECORD
# ============================================

AUDIT_SCALARS = (str, int, float, bool, Decimal, datetime)

def audit_snapshot(state: Dict[str, Any]) -> Dict[str, Any]:
    """
    Plain-value copy of an operation's arguments for the audit trail.

    Enums become their values and records with an id (invoices) become
    the id plus their status pair at capture time. Collaborators such
    as the storage or the rail, and rollback snapshots, are left out.
    """
    audit = {}
    for key, value in state.items():
        if key.endswith('snapshot'):
            continue
        if value is None or isinstance(value, AUDIT_SCALARS):
            audit[key] = value
        elif isinstance(value, Enum):
            audit[key] = value.value
        elif isinstance(getattr(value, 'id', None), int):
            audit[key] = value.id
            if hasattr(value, 'issuer_status') and hasattr(value, 'recipient_status'):
                audit[f"{key}_statuses"] = (value.issuer_status.value, value.recipient_status.value)
    return audit

@dataclass(frozen=True)
class EnforcementDecision:
    """Signed outcome of one invariant check."""
    invariant_id: str
    check_type: str  # "PRE" | "POST"
    result: bool
    action: EnforcementResult
    timestamp: datetime
    state_snapshot: Dict[str, Any]
    signature: str

    def verify_signature(self) -> bool:
        """Recompute the HMAC over id, result and timestamp."""
        expected = sign_decision(self.invariant_id, self.result, self.timestamp)
        return hmac.compare_digest(self.signature, expected)

def sign_decision(invariant_id: str, result: bool, timestamp: datetime) -> str:
    data = f"{invariant_id}:{result}:{timestamp.isoformat()}"
    return hmac.new(SYSTEM_SECRET, data.encode(), 'sha256').hexdigest()

# ============================================
# DECISION LEDGER
# ============================================

class DecisionLedger:
    """
    Append-only audit trail of invariant checks.

    Signatures are verified as entries are recorded, so pass/fail
    counts are kept as running totals and never need a scan.
    """

    def __init__(self):
        self.entries: List[EnforcementDecision] = []
        self.passed_count = 0
        self.failed_count = 0

    def record(self, decision: EnforcementDecision):
        if not decision.verify_signature():
            raise SystemCompromised("Invalid signature on enforcement decision")

        self.entries.append(decision)
        if decision.result:
            self.passed_count += 1
        else:
            self.failed_count += 1

        logger.debug(f"LEDGER: Recorded {decision.check_type} for {decision.invariant_id}: {decision.result}")

    def failures(self) -> List[EnforcementDecision]:
        return [entry for entry in self.entries if not entry.result]

    def verify_chain_integrity(self) -> bool:
        """Re-verify every signature; linear in the number of entries."""
        return all(entry.verify_signature() for entry in self.entries)

# ============================================
# BASE INVARIANT CLASS
# ============================================

class Invariant(ABC):
    """Base class for all invariants."""

    # Raised by the enforcer when pre_check returns False
    violation: Type[InvariantViolation] = InvariantViolation

    def __init__(
        self,
        id: str,
        statement: str,
        type: InvariantType,
        criticality: Criticality,
        dependencies: List[str],
        owner: str
    ):
        self.id = id
        self.statement = statement
        self.type = type
        self.criticality = criticality
        self.dependencies = dependencies
        self.owner = owner

    @abstractmethod
    def pre_check(self, **kwargs) -> bool:
        """True if the action may run with these arguments."""
        pass

    def post_check(self, result: Any, **kwargs) -> bool:
        """True if the action's result still satisfies the invariant. Defaults to no post-condition."""
        return True

    def rollback_action(self, state_before: Dict[str, Any]):
        """Undo the action's effect on the invoice record; overridden where more state is touched."""
        restore_invoice(state_before)

def restore_invoice(state_before: Dict[str, Any]):
    """Put the invoice record captured before the action back in storage."""
    storage = state_before.get('storage')
    snapshot = state_before.get('invoice_snapshot')
    if storage is not None and snapshot is not None:
        storage.restore_invoice(snapshot)

# ============================================
# CREATION INVARIANTS
# ============================================

class RecipientNotNull(Invariant):
    """INV-001: Invoice recipient must be a real identity."""

    violation = InvalidRecipient

    def __init__(self):
        super().__init__(
            id="inv_001_recipient_not_null",
            statement="It is FORBIDDEN to create an invoice addressed to the null identity",
            type=InvariantType.SECURITY,
            criticality=Criticality.CRITICAL,
            dependencies=[],
            owner="invoice_service"
        )

    def pre_check(self, recipient: Optional[str], **kwargs) -> bool:
        valid = not is_null_identity(recipient)
        logger.info(f"PRE-CHECK {self.id}: recipient={recipient}, valid={valid}")
        return valid

class NoSelfAssignment(Invariant):
    """INV-002: Issuer and recipient must differ."""

    violation = SelfAssignment

    def __init__(self):
        super().__init__(
            id="inv_002_no_self_assignment",
            statement="It is FORBIDDEN for an issuer to address an invoice to itself",
            type=InvariantType.STATE,
            criticality=Criticality.CRITICAL,
            dependencies=[],
            owner="invoice_service"
        )

    def pre_check(self, recipient: str, caller: str, **kwargs) -> bool:
        valid = recipient != caller
        logger.info(f"PRE-CHECK {self.id}: issuer={caller}, recipient={recipient}, valid={valid}")
        return valid

    def post_check(self, result: Any, **kwargs) -> bool:
        invoice = result['invoice']
        return invoice.issuer != invoice.recipient

class DueDateInFuture(Invariant):
    """INV-003: Due date must be strictly after the operation time."""

    violation = DueDateInPast

    def __init__(self):
        super().__init__(
            id="inv_003_due_date_in_future",
            statement="The system MUST always ensure due_date > now at creation and modification",
            type=InvariantType.TEMPORAL,
            criticality=Criticality.CRITICAL,
            dependencies=[],
            owner="invoice_service"
        )

    def pre_check(self, due_date: datetime, now: datetime, **kwargs) -> bool:
        valid = due_date > now
        logger.info(f"PRE-CHECK {self.id}: due_date={due_date.isoformat()}, now={now.isoformat()}, valid={valid}")
        return valid

class NonNegativeAmount(Invariant):
    """INV-004: Invoice amounts are non-negative."""

    violation = InvalidAmount

    def __init__(self):
        super().__init__(
            id="inv_004_non_negative_amount",
            statement="It is FORBIDDEN for an invoice amount to be negative",
            type=InvariantType.FINANCIAL,
            criticality=Criticality.CRITICAL,
            dependencies=[],
            owner="invoice_service"
        )

    def pre_check(self, amount: Decimal, **kwargs) -> bool:
        valid = amount >= 0
        logger.info(f"PRE-CHECK {self.id}: amount={amount}, valid={valid}")
        return valid

    def post_check(self, result: Any, **kwargs) -> bool:
        return result['invoice'].amount >= 0

class CreatedInInitialState(Invariant):
    """INV-005: New invoices are issuer-approved, recipient-pending and indexed once per party."""

    def __init__(self):
        super().__init__(
            id="inv_005_created_initial_state",
            statement="The system MUST always create invoices as (Approved, Pending) indexed under both parties",
            type=InvariantType.STATE,
            criticality=Criticality.CRITICAL,
            dependencies=[],
            owner="invoice_service"
        )

    def pre_check(self, **kwargs) -> bool:
        return True

    def post_check(self, result: Any, **kwargs) -> bool:
        # Imported here to avoid a cycle with the invoice service module
        from bil_invoice_service_v1 import IssuerStatus, RecipientStatus

        invoice = result['invoice']
        storage = result['storage']

        valid = (
            invoice.issuer_status == IssuerStatus.APPROVED
            and invoice.recipient_status == RecipientStatus.PENDING
            and storage.list_for(invoice.issuer).count(invoice.id) == 1
            and storage.list_for(invoice.recipient).count(invoice.id) == 1
        )

        logger.info(f"POST-CHECK {self.id}: invoice={invoice.id}, valid={valid}")
        return valid

    def rollback_action(self, state_before: Dict[str, Any]):
        storage = state_before['storage']
        storage.restore(state_before['storage_snapshot'])
        logger.warning(f"ROLLBACK {self.id}: Restored storage to pre-creation state")

# ============================================
# INVARIANT ENFORCER
# ============================================

class InvariantEnforcer:
    """Runs an action between the pre- and post-checks of its invariants."""

    def __init__(self, invariants: List[Invariant], ledger: DecisionLedger):
        self.invariants = invariants
        self.ledger = ledger
        self.sorted_invariants = self._topological_sort(invariants)

    def _topological_sort(self, invariants: List[Invariant]) -> List[Invariant]:
        """Dependency levels first, declaration order within a level."""
        sorted_invs = []
        remaining = set(inv.id for inv in invariants)

        while remaining:
            ready = [
                inv for inv in invariants
                if inv.id in remaining and all(dep not in remaining for dep in inv.dependencies)
            ]

            if not ready:
                raise InvariantViolation("Circular dependency detected in invariants")

            sorted_invs.extend(ready)
            remaining.difference_update(inv.id for inv in ready)

        return sorted_invs

    def enforce_action(self, action: Callable[[], Any], **kwargs) -> Any:
        """
        Check, act, re-check.

        A failed pre-check raises the invariant's own violation before
        anything is touched. An exception from the action, or a failed
        post-check, rolls every invariant back in reverse order.
        """
        state_before = {'timestamp': datetime.now(), **kwargs}
        audit_state = audit_snapshot(kwargs)

        for inv in self.sorted_invariants:
            if not self._run_check(inv, "PRE", lambda: inv.pre_check(**kwargs), audit_state):
                logger.error(f"PRE-CHECK FAILED: {inv.id}")
                raise inv.violation(f"Pre-check failed: {inv.id}")

        try:
            result = action()
        except Exception as e:
            logger.error(f"ACTION FAILED: {e}")
            self._rollback(state_before)
            raise

        for inv in self.sorted_invariants:
            if not self._run_check(inv, "POST", lambda: inv.post_check(result), audit_state):
                logger.error(f"POST-CHECK FAILED: {inv.id}")
                self._rollback(state_before)
                raise InvariantViolation(f"Post-check failed: {inv.id}")

        logger.info("All invariant checks PASSED")
        return result

    def _run_check(
        self,
        inv: Invariant,
        check_type: str,
        check: Callable[[], bool],
        audit_state: Dict[str, Any]
    ) -> bool:
        """Evaluate one check and record the signed outcome."""
        try:
            passed = bool(check())
        except Exception as e:
            # A check that cannot be evaluated counts as failed
            logger.error(f"{check_type}-check exception: {inv.id}", exc_info=e)
            passed = False

        if passed:
            action = EnforcementResult.PROCEED
        else:
            action = EnforcementResult.FREEZE if check_type == "PRE" else EnforcementResult.ROLLBACK

        timestamp = datetime.now()
        self.ledger.record(EnforcementDecision(
            invariant_id=inv.id,
            check_type=check_type,
            result=passed,
            action=action,
            timestamp=timestamp,
            state_snapshot=dict(audit_state),
            signature=sign_decision(inv.id, passed, timestamp)
        ))
        return passed

    def _rollback(self, state_before: Dict[str, Any]):
        logger.warning("ROLLBACK INITIATED")

        for inv in reversed(self.sorted_invariants):
            try:
                inv.rollback_action(state_before)
            except Exception as e:
                logger.critical(f"ROLLBACK FAILED for {inv.id}: {e}")
                raise SystemCompromised(f"Rollback failed for {inv.id}") from e

        logger.info("ROLLBACK COMPLETE")
