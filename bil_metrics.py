"""
Bilateral Invoice Ledger - Prometheus Metrics
Business and enforcement counters for production monitoring
"""

from decimal import Decimal

from prometheus_client import Counter, Histogram, Gauge, CollectorRegistry

# Create custom registry
metrics_registry = CollectorRegistry()

# ============================================
# BUSINESS METRICS
# ============================================

invoice_created_counter = Counter(
    'bil_invoices_created_total',
    'Total number of invoices created',
    registry=metrics_registry
)

invoice_transition_counter = Counter(
    'bil_invoice_transitions_total',
    'Successful approve/reject/modify operations',
    ['operation', 'role'],
    registry=metrics_registry
)

invoice_paid_counter = Counter(
    'bil_invoices_paid_total',
    'Total number of invoices settled',
    registry=metrics_registry
)

invoice_overdue_counter = Counter(
    'bil_invoices_marked_overdue_total',
    'Invoices marked overdue by the sweep',
    registry=metrics_registry
)

invoice_amount_histogram = Histogram(
    'bil_invoice_amount',
    'Invoice amounts at creation',
    buckets=[10, 100, 1000, 10000, 100000, 1000000],
    registry=metrics_registry
)

settled_volume_gauge = Gauge(
    'bil_settled_volume',
    'Total value moved by settlements',
    registry=metrics_registry
)

# ============================================
# INVARIANT ENFORCEMENT METRICS
# ============================================

invariant_violation_counter = Counter(
    'bil_invariant_violations_total',
    'Operations rejected by an invariant',
    ['operation', 'reason'],
    registry=metrics_registry
)

ledger_integrity_gauge = Gauge(
    'bil_decision_ledger_integrity',
    'Decision ledger signature integrity (1=verified, 0=compromised)',
    registry=metrics_registry
)

# ============================================
# HELPER FUNCTIONS
# ============================================

def record_invoice_created(amount: Decimal):
    """Record invoice creation metrics."""
    invoice_created_counter.inc()
    invoice_amount_histogram.observe(float(amount))

def record_transition(operation: str, role: str):
    invoice_transition_counter.labels(operation=operation, role=role).inc()

def record_invoice_paid(amount: Decimal):
    """Record settlement metrics."""
    invoice_paid_counter.inc()
    settled_volume_gauge.inc(float(amount))

def record_overdue(count: int):
    invoice_overdue_counter.inc(count)

def record_violation(operation: str, reason: str):
    invariant_violation_counter.labels(operation=operation, reason=reason).inc()

def update_ledger_integrity(verified: bool):
    ledger_integrity_gauge.set(1 if verified else 0)
