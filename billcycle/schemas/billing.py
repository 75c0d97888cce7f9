from __future__ import annotations

from datetime import date, datetime
from decimal import Decimal
from uuid import UUID

from pydantic import BaseModel, ConfigDict, Field

from billcycle.models.billing import (
    BillingRunStatus,
    InvoiceStatus,
    PaymentMethodType,
    PaymentStatus,
)


class InvoiceDraftCreate(BaseModel):
    customer_id: UUID
    currency: str | None = Field(default=None, min_length=3, max_length=3)
    issue_date: date | None = None
    due_date: date | None = None
    memo: str | None = None


class InvoiceLineCreate(BaseModel):
    description: str = Field(min_length=1, max_length=255)
    quantity: Decimal = Field(default=Decimal("1.000"), gt=0, decimal_places=3)
    unit_price: Decimal = Field(ge=0, decimal_places=2)
    product_id: UUID | None = None
    discount_amount: Decimal = Field(default=Decimal("0.00"), ge=0, decimal_places=2)
    tax_rate: Decimal = Field(default=Decimal("0"), ge=0, le=100)


class InvoiceLineRead(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    id: UUID
    position: int
    description: str
    product_id: UUID | None
    quantity: Decimal
    unit_price: Decimal
    base_amount: Decimal
    discount_amount: Decimal
    tax_amount: Decimal
    line_total: Decimal
    covered_days: int | None
    period_days: int | None
    rules_snapshot: dict | None


class InvoiceRead(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    id: UUID
    invoice_number: str | None
    subscription_id: UUID | None
    customer_id: UUID
    status: InvoiceStatus
    currency: str
    issue_date: date | None
    due_date: date | None
    billing_period_start: date | None
    billing_period_end: date | None
    subtotal: Decimal
    discount_total: Decimal
    tax_total: Decimal
    total: Decimal
    paid_amount: Decimal
    balance_due: Decimal
    confirmed_at: datetime | None
    paid_at: datetime | None
    cancelled_at: datetime | None
    memo: str | None
    lines: list[InvoiceLineRead] = Field(default_factory=list)
    created_at: datetime


class ManualPaymentCreate(BaseModel):
    invoice_id: UUID
    amount: Decimal = Field(gt=0, decimal_places=2)
    method: PaymentMethodType = PaymentMethodType.cash
    payment_date: date | None = None
    external_reference: str | None = Field(default=None, max_length=120)
    notes: str | None = None


class PaymentSubmit(BaseModel):
    invoice_id: UUID
    amount: Decimal = Field(gt=0, decimal_places=2)
    method: PaymentMethodType = PaymentMethodType.card
    payment_date: date | None = None


class PaymentSettle(BaseModel):
    succeeded: bool
    external_reference: str | None = Field(default=None, max_length=120)
    failure_reason: str | None = None


class PaymentRead(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    id: UUID
    invoice_id: UUID
    customer_id: UUID
    amount: Decimal
    currency: str
    method: PaymentMethodType
    status: PaymentStatus
    external_reference: str | None
    payment_date: date
    submission_seq: int
    failure_reason: str | None
    notes: str | None
    applied_at: datetime | None
    created_at: datetime


class PaymentBatchApply(BaseModel):
    payment_ids: list[UUID] = Field(min_length=1)


class BillingRunRequest(BaseModel):
    as_of: date | None = None


class BillingRunRead(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    id: UUID
    run_at: date
    status: BillingRunStatus
    started_at: datetime | None
    finished_at: datetime | None
    subscriptions_scanned: int
    invoices_created: int
    skipped: int
    failures: int
    suspended: int
    closed: int
    error: str | None
    created_at: datetime


class BillingCycleRead(BaseModel):
    subscription_id: UUID
    outcome: str
    invoice_id: UUID | None = None
    next_billing_date: date | None = None
