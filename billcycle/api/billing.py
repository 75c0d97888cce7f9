from datetime import date

from fastapi import APIRouter, Depends, HTTPException, Query, status
from sqlalchemy.orm import Session

from billcycle.api.deps import get_payment_gateway
from billcycle.db import get_db
from billcycle.schemas.billing import (
    BillingCycleRead,
    BillingRunRead,
    BillingRunRequest,
    InvoiceDraftCreate,
    InvoiceLineCreate,
    InvoiceRead,
    ManualPaymentCreate,
    PaymentBatchApply,
    PaymentRead,
    PaymentSettle,
    PaymentSubmit,
)
from billcycle.schemas.common import ListResponse
from billcycle.services import billing as billing_service
from billcycle.services import billing_automation as billing_automation_service
from billcycle.services.payment_gateway import PaymentGateway

router = APIRouter()


# --- Invoices ---


@router.post(
    "/invoices",
    response_model=InvoiceRead,
    status_code=status.HTTP_201_CREATED,
    tags=["invoices"],
)
def create_draft_invoice(payload: InvoiceDraftCreate, db: Session = Depends(get_db)):
    return billing_service.invoices.create_draft(db, payload)


@router.get("/invoices/{invoice_id}", response_model=InvoiceRead, tags=["invoices"])
def get_invoice(invoice_id: str, db: Session = Depends(get_db)):
    return billing_service.invoices.get(db, invoice_id)


@router.get("/invoices", response_model=ListResponse[InvoiceRead], tags=["invoices"])
def list_invoices(
    customer_id: str | None = None,
    subscription_id: str | None = None,
    status: str | None = None,
    order_by: str = Query(default="created_at"),
    order_dir: str = Query(default="desc", pattern="^(asc|desc)$"),
    limit: int = Query(default=50, ge=1, le=200),
    offset: int = Query(default=0, ge=0),
    db: Session = Depends(get_db),
):
    return billing_service.invoices.list_response(
        db,
        customer_id=customer_id,
        subscription_id=subscription_id,
        status=status,
        order_by=order_by,
        order_dir=order_dir,
        limit=limit,
        offset=offset,
    )


@router.post(
    "/invoices/{invoice_id}/lines",
    response_model=InvoiceRead,
    status_code=status.HTTP_201_CREATED,
    tags=["invoices"],
)
def add_invoice_line(
    invoice_id: str, payload: InvoiceLineCreate, db: Session = Depends(get_db)
):
    return billing_service.invoices.add_line(db, invoice_id, payload)


@router.post("/invoices/{invoice_id}/confirm", response_model=InvoiceRead, tags=["invoices"])
def confirm_invoice(invoice_id: str, db: Session = Depends(get_db)):
    return billing_service.invoices.confirm(db, invoice_id)


@router.post("/invoices/{invoice_id}/cancel", response_model=InvoiceRead, tags=["invoices"])
def cancel_invoice(invoice_id: str, db: Session = Depends(get_db)):
    return billing_service.invoices.cancel(db, invoice_id)


@router.get("/invoices/{invoice_id}/verify", response_model=InvoiceRead, tags=["invoices"])
def verify_invoice(invoice_id: str, db: Session = Depends(get_db)):
    return billing_service.invoices.verify(db, invoice_id)


# --- Payments ---


@router.post(
    "/payments/manual",
    response_model=PaymentRead,
    status_code=status.HTTP_201_CREATED,
    tags=["payments"],
)
def record_manual_payment(payload: ManualPaymentCreate, db: Session = Depends(get_db)):
    return billing_service.payments.record_manual_payment(
        db,
        payload.invoice_id,
        payload.amount,
        payload.method,
        payment_date=payload.payment_date,
        external_reference=payload.external_reference,
        notes=payload.notes,
    )


@router.post(
    "/payments",
    response_model=PaymentRead,
    status_code=status.HTTP_201_CREATED,
    tags=["payments"],
)
def submit_payment(
    payload: PaymentSubmit,
    db: Session = Depends(get_db),
    gateway: PaymentGateway = Depends(get_payment_gateway),
):
    return billing_service.payments.submit_payment(
        db,
        payload.invoice_id,
        payload.amount,
        payload.method,
        gateway,
        payment_date=payload.payment_date,
    )


@router.post("/payments/{payment_id}/settle", response_model=PaymentRead, tags=["payments"])
def settle_payment(payment_id: str, payload: PaymentSettle, db: Session = Depends(get_db)):
    return billing_service.payments.settle_payment(
        db,
        payment_id,
        payload.succeeded,
        external_reference=payload.external_reference,
        failure_reason=payload.failure_reason,
    )


@router.post("/payments/apply-batch", tags=["payments"])
def apply_payment_batch(payload: PaymentBatchApply, db: Session = Depends(get_db)) -> dict:
    return billing_service.payments.apply_batch(db, payload.payment_ids)


@router.get("/payments/{payment_id}", response_model=PaymentRead, tags=["payments"])
def get_payment(payment_id: str, db: Session = Depends(get_db)):
    return billing_service.payments.get(db, payment_id)


@router.get("/payments", response_model=ListResponse[PaymentRead], tags=["payments"])
def list_payments(
    invoice_id: str | None = None,
    customer_id: str | None = None,
    status: str | None = None,
    order_by: str = Query(default="created_at"),
    order_dir: str = Query(default="desc", pattern="^(asc|desc)$"),
    limit: int = Query(default=50, ge=1, le=200),
    offset: int = Query(default=0, ge=0),
    db: Session = Depends(get_db),
):
    return billing_service.payments.list_response(
        db,
        invoice_id=invoice_id,
        customer_id=customer_id,
        status=status,
        order_by=order_by,
        order_dir=order_dir,
        limit=limit,
        offset=offset,
    )


# --- Billing runs ---


@router.post(
    "/billing-runs",
    response_model=BillingRunRead,
    status_code=status.HTTP_201_CREATED,
    tags=["billing-runs"],
)
def generate_invoices_due(payload: BillingRunRequest, db: Session = Depends(get_db)):
    return billing_automation_service.generate_invoices_due(db, payload.as_of)


@router.post(
    "/subscriptions/{subscription_id}/billing-cycle",
    response_model=BillingCycleRead,
    tags=["billing-runs"],
)
def run_billing_cycle(
    subscription_id: str,
    as_of: date | None = None,
    db: Session = Depends(get_db),
):
    result = billing_automation_service.run_billing_cycle(
        db, subscription_id, as_of or date.today()
    )
    return BillingCycleRead(
        subscription_id=result.subscription_id,
        outcome=result.outcome.value,
        invoice_id=result.invoice_id,
        next_billing_date=result.next_billing_date,
    )


@router.get(
    "/billing-runs", response_model=ListResponse[BillingRunRead], tags=["billing-runs"]
)
def list_billing_runs(
    status: str | None = None,
    run_on: date | None = None,
    with_failures: bool | None = None,
    order_by: str = Query(default="created_at"),
    order_dir: str = Query(default="desc", pattern="^(asc|desc)$"),
    limit: int = Query(default=50, ge=1, le=200),
    offset: int = Query(default=0, ge=0),
    db: Session = Depends(get_db),
):
    return billing_service.billing_runs.list_response(
        db,
        status=status,
        run_on=run_on,
        with_failures=with_failures,
        order_by=order_by,
        order_dir=order_dir,
        limit=limit,
        offset=offset,
    )


@router.get("/billing-runs/latest", response_model=BillingRunRead, tags=["billing-runs"])
def get_latest_billing_run(run_on: date | None = None, db: Session = Depends(get_db)):
    run = billing_service.billing_runs.latest(db, run_on=run_on)
    if run is None:
        raise HTTPException(status_code=404, detail="No billing runs recorded")
    return run


@router.get("/billing-runs/{run_id}", response_model=BillingRunRead, tags=["billing-runs"])
def get_billing_run(run_id: str, db: Session = Depends(get_db)):
    return billing_service.billing_runs.get(db, run_id)
