"""
Bilateral Invoice Ledger - FastAPI Application
HTTP surface over the invoice ledger with enforcement and observability
"""

from fastapi import FastAPI, HTTPException, status, Depends, Header
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import Response
from prometheus_client import generate_latest, CONTENT_TYPE_LATEST
from pydantic import BaseModel, Field
from typing import Any, Callable, Dict, List
from datetime import datetime
from decimal import Decimal
import logging
import os
from contextlib import asynccontextmanager

from bil_e2e_integration_v1 import InvoiceLedger
from bil_invoice_service_v1 import Invoice
from bil_enforcement_v1 import InvariantViolation, Unauthorized
from bil_metrics import (
    metrics_registry,
    record_invoice_created,
    record_transition,
    record_invoice_paid,
    record_overdue,
    record_violation,
    update_ledger_integrity
)

logger = logging.getLogger("bil.api")

ADMIN_ID = os.environ.get("BIL_ADMIN_ID", "ADMIN-001")
API_VERSION = "1.0.0"

# ============================================
# PYDANTIC MODELS (API DTOs)
# ============================================

class InvoiceCreateRequest(BaseModel):
    issuer_name: str = Field(..., max_length=200)
    client_name: str = Field(..., max_length=200)
    recipient: str = Field(..., max_length=200)
    amount: Decimal = Field(..., ge=0)
    due_date: datetime
    message: str = Field("", max_length=2000)

    class Config:
        json_schema_extra = {
            "example": {
                "issuer_name": "Acme Corp",
                "client_name": "Globex",
                "recipient": "GLOBEX",
                "amount": "100.00",
                "due_date": "2026-11-01T00:00:00",
                "message": "Consulting, October"
            }
        }

class InvoiceModifyRequest(BaseModel):
    client_name: str = Field(..., max_length=200)
    amount: Decimal = Field(..., ge=0)
    due_date: datetime
    message: str = Field("", max_length=2000)

class PaymentRequest(BaseModel):
    tendered_amount: Decimal

class InvoiceResponse(BaseModel):
    id: int
    issuer_name: str
    client_name: str
    issuer: str
    recipient: str
    amount: str
    due_date: str
    issuer_status: str
    recipient_status: str
    creation_date: str
    last_modified_date: str
    message: str

    class Config:
        json_schema_extra = {
            "example": {
                "id": 1,
                "issuer_name": "Acme Corp",
                "client_name": "Globex",
                "issuer": "ACME",
                "recipient": "GLOBEX",
                "amount": "100.00",
                "due_date": "2026-11-01T00:00:00",
                "issuer_status": "Approved",
                "recipient_status": "Pending",
                "creation_date": "2026-10-16T09:00:00",
                "last_modified_date": "2026-10-16T09:00:00",
                "message": "Consulting, October"
            }
        }

class SweepResponse(BaseModel):
    swept: List[int]

class HealthResponse(BaseModel):
    status: str
    version: str
    total_invoices: int
    total_events: int
    failed_checks: int
    ledger_integrity: bool

# ============================================
# APPLICATION LIFECYCLE
# ============================================

class AppState:
    """Global application state."""
    def __init__(self):
        self.ledger = InvoiceLedger(admin=ADMIN_ID)

app_state = AppState()

def get_ledger() -> InvoiceLedger:
    return app_state.ledger

@asynccontextmanager
async def lifespan(app: FastAPI):
    """Application startup and shutdown."""
    logger.info(f"Bilateral Invoice Ledger starting (admin={ADMIN_ID})...")
    yield
    logger.info("Bilateral Invoice Ledger shutting down...")

# ============================================
# FASTAPI APPLICATION
# ============================================

app = FastAPI(
    title="Bilateral Invoice Ledger",
    description="Two-party invoices with dual approval, settlement and overdue sweeps",
    version=API_VERSION,
    lifespan=lifespan,
    docs_url="/api/docs",
    redoc_url="/api/redoc",
    openapi_url="/api/openapi.json"
)

app.add_middleware(
    CORSMiddleware,
    allow_origins=["*"],
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)

def _invoice_response(invoice: Invoice) -> InvoiceResponse:
    return InvoiceResponse(**invoice.to_dict())

def _enforced(operation: str, call: Callable[[], Any]) -> Any:
    """Run a ledger operation, mapping invariant violations to HTTP errors."""
    try:
        return call()
    except InvariantViolation as e:
        logger.error(f"{operation} failed: {e.reason}: {e}")
        record_violation(operation, e.reason)
        raise HTTPException(
            status_code=status.HTTP_403_FORBIDDEN if isinstance(e, Unauthorized) else status.HTTP_400_BAD_REQUEST,
            detail={"reason": e.reason, "message": str(e)}
        )

# ============================================
# API ENDPOINTS
# ============================================

@app.get("/", tags=["Health"])
async def root():
    """Root endpoint."""
    return {
        "service": "Bilateral Invoice Ledger",
        "version": API_VERSION,
        "status": "operational"
    }

@app.get("/health", response_model=HealthResponse, tags=["Health"])
def health_check(ledger: InvoiceLedger = Depends(get_ledger)):
    """System health check (sync: signature re-verification runs in the threadpool)."""
    health = ledger.get_system_health()
    update_ledger_integrity(health['ledger_integrity'])

    return HealthResponse(
        status="healthy" if health['ledger_integrity'] else "compromised",
        version=API_VERSION,
        total_invoices=health['total_invoices'],
        total_events=health['total_events'],
        failed_checks=health['failed_checks'],
        ledger_integrity=health['ledger_integrity']
    )

@app.post("/api/v1/invoices", response_model=InvoiceResponse, status_code=status.HTTP_201_CREATED, tags=["Invoices"])
def create_invoice(
    request: InvoiceCreateRequest,
    caller: str = Header(..., alias="X-Caller-Id"),
    ledger: InvoiceLedger = Depends(get_ledger)
):
    """Issue a new invoice from the caller to the recipient."""
    invoice_id = _enforced("create", lambda: ledger.create_invoice(
        issuer_name=request.issuer_name,
        client_name=request.client_name,
        recipient=request.recipient,
        amount=request.amount,
        due_date=request.due_date,
        message=request.message,
        caller=caller
    ))
    record_invoice_created(request.amount)
    return _invoice_response(ledger.get_by_id(invoice_id))

@app.get("/api/v1/invoices", response_model=List[int], tags=["Invoices"])
def list_my_invoices(
    caller: str = Header(..., alias="X-Caller-Id"),
    ledger: InvoiceLedger = Depends(get_ledger)
):
    """Ids of every invoice the caller is a party to."""
    return ledger.list_for(caller)

@app.get("/api/v1/invoices/{invoice_id}", response_model=InvoiceResponse, tags=["Invoices"])
def get_invoice(invoice_id: int, ledger: InvoiceLedger = Depends(get_ledger)):
    """Get invoice by ID."""
    invoice = ledger.get_by_id(invoice_id)

    if not invoice.exists:
        raise HTTPException(
            status_code=status.HTTP_404_NOT_FOUND,
            detail=f"Invoice {invoice_id} not found"
        )

    return _invoice_response(invoice)

@app.get("/api/v1/parties/{identity}/invoices", response_model=List[int], tags=["Invoices"])
def list_party_invoices(identity: str, ledger: InvoiceLedger = Depends(get_ledger)):
    return ledger.list_for(identity)

@app.post("/api/v1/invoices/{invoice_id}/approve", response_model=InvoiceResponse, tags=["Approval"])
def approve_invoice(
    invoice_id: int,
    caller: str = Header(..., alias="X-Caller-Id"),
    ledger: InvoiceLedger = Depends(get_ledger)
):
    invoice = _enforced("approve", lambda: ledger.approve_invoice(invoice_id, caller))
    record_transition("approve", invoice.role_of(caller).value)
    return _invoice_response(invoice)

@app.post("/api/v1/invoices/{invoice_id}/reject", response_model=InvoiceResponse, tags=["Approval"])
def reject_invoice(
    invoice_id: int,
    caller: str = Header(..., alias="X-Caller-Id"),
    ledger: InvoiceLedger = Depends(get_ledger)
):
    invoice = _enforced("reject", lambda: ledger.reject_invoice(invoice_id, caller))
    record_transition("reject", invoice.role_of(caller).value)
    return _invoice_response(invoice)

@app.post("/api/v1/invoices/{invoice_id}/modify", response_model=InvoiceResponse, tags=["Approval"])
def modify_invoice(
    invoice_id: int,
    request: InvoiceModifyRequest,
    caller: str = Header(..., alias="X-Caller-Id"),
    ledger: InvoiceLedger = Depends(get_ledger)
):
    """Rewrite the terms; the other party must approve again."""
    invoice = _enforced("modify", lambda: ledger.modify_invoice(
        invoice_id,
        client_name=request.client_name,
        amount=request.amount,
        due_date=request.due_date,
        message=request.message,
        caller=caller
    ))
    record_transition("modify", invoice.role_of(caller).value)
    return _invoice_response(invoice)

@app.post("/api/v1/invoices/{invoice_id}/pay", response_model=InvoiceResponse, tags=["Settlement"])
def pay_invoice(
    invoice_id: int,
    request: PaymentRequest,
    caller: str = Header(..., alias="X-Caller-Id"),
    ledger: InvoiceLedger = Depends(get_ledger)
):
    """Recipient settles the exact invoice amount."""
    invoice = _enforced("pay", lambda: ledger.pay_invoice(invoice_id, caller, request.tendered_amount))
    record_invoice_paid(invoice.amount)
    return _invoice_response(invoice)

@app.post("/api/v1/sweeps/overdue", response_model=SweepResponse, tags=["Administration"])
def sweep_overdue(
    caller: str = Header(..., alias="X-Caller-Id"),
    ledger: InvoiceLedger = Depends(get_ledger)
):
    swept = _enforced("sweep", lambda: ledger.sweep_overdue(caller))
    record_overdue(len(swept))
    return SweepResponse(swept=swept)

@app.get("/api/v1/events", tags=["Events"])
def list_events(ledger: InvoiceLedger = Depends(get_ledger)) -> List[Dict]:
    """Every notification published so far, in order."""
    return [event.to_dict() for event in ledger.event_log.events]

@app.get("/metrics", tags=["Observability"])
async def metrics():
    """Prometheus metrics endpoint."""
    return Response(
        content=generate_latest(metrics_registry),
        media_type=CONTENT_TYPE_LATEST
    )

if __name__ == "__main__":
    import uvicorn
    uvicorn.run(
        "bil_main_api:app",
        host="0.0.0.0",
        port=8000,
        reload=True,
        log_level="info"
    )
