"""Invoice lifecycle: drafts, confirmation, payment recording and cancellation."""

import logging
from datetime import date, datetime, timedelta, timezone
from decimal import Decimal

from fastapi import HTTPException
from sqlalchemy.orm import Session, selectinload

from billcycle.config import settings
from billcycle.models.billing import Invoice, InvoiceLine, InvoiceStatus
from billcycle.models.catalog import DiscountType
from billcycle.schemas.billing import InvoiceDraftCreate, InvoiceLineCreate
from billcycle.services import numbering
from billcycle.services.billing.composer import ComposedLine
from billcycle.services.billing.errors import (
    EmptyInvoice,
    InvalidAmount,
    InvalidTransition,
    InvoiceHasPayments,
    InvoiceIntegrityError,
    InvoiceLocked,
    Overpayment,
)
from billcycle.services.billing.money import Money, money_sum
from billcycle.services.billing.rules import DiscountRule, TaxRule, resolve_line
from billcycle.services.common import (
    apply_ordering,
    apply_pagination,
    coerce_uuid,
    get_by_id,
    get_for_update,
    validate_enum,
)
from billcycle.services.locks import invoice_locks
from billcycle.services.response import ListResponseMixin

logger = logging.getLogger(__name__)

INVOICE_TRANSITIONS = {
    InvoiceStatus.draft: {InvoiceStatus.confirmed, InvoiceStatus.cancelled},
    InvoiceStatus.confirmed: {InvoiceStatus.paid, InvoiceStatus.cancelled},
    InvoiceStatus.paid: set(),
    InvoiceStatus.cancelled: set(),
}


def _now() -> datetime:
    return datetime.now(timezone.utc)


def to_money(value: Decimal | None, currency: str) -> Money:
    return Money.of(value if value is not None else Decimal("0"), currency)


def _transition(invoice: Invoice, target: InvoiceStatus) -> None:
    if target not in INVOICE_TRANSITIONS[invoice.status]:
        raise InvalidTransition(
            f"Invoice cannot move from {invoice.status.value} to {target.value}",
            details={
                "invoice_id": str(invoice.id),
                "from": invoice.status.value,
                "to": target.value,
            },
        )
    invoice.status = target


def compute_totals(lines, currency: str) -> dict[str, Money]:
    subtotal = money_sum((to_money(line.base_amount, currency) for line in lines), currency)
    discount = money_sum(
        (to_money(line.discount_amount, currency) for line in lines), currency
    )
    tax = money_sum((to_money(line.tax_amount, currency) for line in lines), currency)
    total = money_sum((to_money(line.line_total, currency) for line in lines), currency)
    return {"subtotal": subtotal, "discount_total": discount, "tax_total": tax, "total": total}


def verify_totals(invoice: Invoice) -> None:
    """Re-derive totals from the lines and compare with the stored values."""
    currency = invoice.currency
    for line in invoice.lines:
        expected = (
            to_money(line.base_amount, currency)
            - to_money(line.discount_amount, currency)
            + to_money(line.tax_amount, currency)
        )
        if expected != to_money(line.line_total, currency):
            raise InvoiceIntegrityError(
                "Invoice line total does not match its components",
                details={"invoice_id": str(invoice.id), "line_id": str(line.id)},
            )
    derived = compute_totals(invoice.lines, currency)
    mismatched = [
        name
        for name, value in derived.items()
        if value != to_money(getattr(invoice, name), currency)
    ]
    if mismatched:
        raise InvoiceIntegrityError(
            details={"invoice_id": str(invoice.id), "fields": mismatched}
        )


def is_overdue(invoice: Invoice, today: date) -> bool:
    if invoice.status in (InvoiceStatus.paid, InvoiceStatus.cancelled, InvoiceStatus.draft):
        return False
    if invoice.due_date is None or today <= invoice.due_date:
        return False
    return to_money(invoice.paid_amount, invoice.currency) < to_money(
        invoice.total, invoice.currency
    )


def find_invoice_by_period(db: Session, subscription_id, period_start: date) -> Invoice | None:
    return (
        db.query(Invoice)
        .filter(Invoice.subscription_id == coerce_uuid(subscription_id))
        .filter(Invoice.billing_period_start == period_start)
        .first()
    )


def _line_from_composed(composed: ComposedLine) -> InvoiceLine:
    return InvoiceLine(
        plan_line_id=composed.plan_line_id,
        product_id=composed.product_id,
        position=composed.position,
        description=composed.description,
        quantity=composed.quantity,
        unit_price=composed.unit_price,
        base_amount=composed.base.amount,
        discount_amount=composed.discount.amount,
        tax_amount=composed.tax.amount,
        line_total=composed.total.amount,
        covered_days=composed.covered_days,
        period_days=composed.period_days,
        rules_snapshot=composed.rules_snapshot,
    )


def create_invoice(
    db: Session,
    *,
    customer_id,
    currency: str,
    issue_date: date,
    lines: list[ComposedLine],
    subscription_id=None,
    period_start: date | None = None,
    period_end: date | None = None,
) -> Invoice:
    """Add a DRAFT invoice holding ``lines``; flushes, never commits."""
    invoice = Invoice(
        invoice_number=numbering.next_invoice_number(db),
        subscription_id=subscription_id,
        customer_id=customer_id,
        status=InvoiceStatus.draft,
        currency=currency,
        issue_date=issue_date,
        due_date=issue_date + timedelta(days=settings.invoice_due_days),
        billing_period_start=period_start,
        billing_period_end=period_end,
    )
    invoice.lines = [_line_from_composed(line) for line in lines]
    db.add(invoice)
    db.flush()
    return invoice


def confirm_locked(invoice: Invoice) -> Invoice:
    """Freeze lines and store totals. Caller holds the invoice lock."""
    if invoice.status != InvoiceStatus.draft:
        raise InvalidTransition(
            f"Only draft invoices can be confirmed, not {invoice.status.value}",
            details={"invoice_id": str(invoice.id), "status": invoice.status.value},
        )
    if not invoice.lines:
        raise EmptyInvoice(details={"invoice_id": str(invoice.id)})
    totals = compute_totals(invoice.lines, invoice.currency)
    for name, value in totals.items():
        setattr(invoice, name, value.amount)
    invoice.paid_amount = Money.zero(invoice.currency).amount
    if invoice.issue_date is None:
        invoice.issue_date = date.today()
    if invoice.due_date is None:
        invoice.due_date = invoice.issue_date + timedelta(days=settings.invoice_due_days)
    _transition(invoice, InvoiceStatus.confirmed)
    invoice.confirmed_at = _now()
    return invoice


def record_payment(invoice: Invoice, amount: Money) -> Invoice:
    """Add ``amount`` to the paid total. Caller holds the invoice lock.

    The invoice becomes PAID exactly when the paid amount reaches the total.
    """
    if invoice.status != InvoiceStatus.confirmed:
        raise InvalidTransition(
            f"Payments can only be recorded on confirmed invoices, not {invoice.status.value}",
            details={"invoice_id": str(invoice.id), "status": invoice.status.value},
        )
    if amount.minor <= 0:
        raise InvalidAmount(details={"amount": str(amount.amount)})
    total = to_money(invoice.total, invoice.currency)
    paid = to_money(invoice.paid_amount, invoice.currency)
    new_paid = paid + amount
    if new_paid > total:
        raise Overpayment(
            details={
                "invoice_id": str(invoice.id),
                "balance_due": str((total - paid).amount),
                "amount": str(amount.amount),
            }
        )
    invoice.paid_amount = new_paid.amount
    if new_paid == total:
        _transition(invoice, InvoiceStatus.paid)
        invoice.paid_at = _now()
    return invoice


def _manual_line(invoice: Invoice, payload: InvoiceLineCreate, position: int) -> ComposedLine:
    currency = invoice.currency
    unit = Money.of(payload.unit_price, currency)
    base = unit.scale(payload.quantity)
    discounts = []
    if payload.discount_amount:
        discounts.append(
            DiscountRule(
                id=None,
                discount_type=DiscountType.fixed,
                value=payload.discount_amount,
                currency=currency,
                name="manual",
            )
        )
    taxes = [TaxRule(id=None, rate=payload.tax_rate, name="manual")] if payload.tax_rate else []
    as_of = invoice.issue_date or date.today()
    resolved = resolve_line(base, discounts, taxes, as_of)
    return ComposedLine(
        position=position,
        description=payload.description,
        quantity=payload.quantity,
        unit_price=payload.unit_price,
        base=resolved.base,
        discount=resolved.discount,
        tax=resolved.tax,
        covered_days=None,
        period_days=None,
        product_id=payload.product_id,
        rules_snapshot={
            "resolved_on": as_of.isoformat(),
            "discounts": [rule.snapshot() for rule in discounts],
            "taxes": [rule.snapshot() for rule in taxes],
        },
    )


class Invoices(ListResponseMixin):
    @staticmethod
    def create_draft(db: Session, payload: InvoiceDraftCreate):
        issue_date = payload.issue_date
        invoice = Invoice(
            invoice_number=numbering.next_invoice_number(db),
            customer_id=payload.customer_id,
            status=InvoiceStatus.draft,
            currency=(payload.currency or settings.default_currency).upper(),
            issue_date=issue_date,
            due_date=payload.due_date
            or (issue_date + timedelta(days=settings.invoice_due_days) if issue_date else None),
            memo=payload.memo,
        )
        db.add(invoice)
        db.commit()
        db.refresh(invoice)
        logger.info("Created draft invoice %s", invoice.invoice_number)
        return invoice

    @staticmethod
    def get(db: Session, invoice_id: str):
        invoice = get_by_id(
            db,
            Invoice,
            invoice_id,
            options=[selectinload(Invoice.lines), selectinload(Invoice.payments)],
        )
        if not invoice:
            raise HTTPException(status_code=404, detail="Invoice not found")
        return invoice

    @staticmethod
    def list(
        db: Session,
        customer_id: str | None = None,
        subscription_id: str | None = None,
        status: str | None = None,
        order_by: str = "created_at",
        order_dir: str = "desc",
        limit: int = 50,
        offset: int = 0,
    ):
        query = db.query(Invoice).options(selectinload(Invoice.lines))
        if customer_id:
            query = query.filter(Invoice.customer_id == coerce_uuid(customer_id))
        if subscription_id:
            query = query.filter(Invoice.subscription_id == coerce_uuid(subscription_id))
        if status:
            query = query.filter(
                Invoice.status == validate_enum(status, InvoiceStatus, "status")
            )
        query = apply_ordering(
            query,
            order_by,
            order_dir,
            {
                "created_at": Invoice.created_at,
                "issue_date": Invoice.issue_date,
                "due_date": Invoice.due_date,
                "status": Invoice.status,
            },
        )
        return apply_pagination(query, limit, offset).all()

    @staticmethod
    def add_line(db: Session, invoice_id: str, payload: InvoiceLineCreate):
        with invoice_locks.hold(coerce_uuid(invoice_id)):
            try:
                invoice = get_for_update(db, Invoice, invoice_id, "Invoice not found")
                if invoice.status != InvoiceStatus.draft:
                    raise InvoiceLocked(
                        details={"invoice_id": str(invoice.id), "status": invoice.status.value}
                    )
                position = max((line.position for line in invoice.lines), default=-1) + 1
                invoice.lines.append(_line_from_composed(_manual_line(invoice, payload, position)))
                db.commit()
            except Exception:
                db.rollback()
                raise
        db.refresh(invoice)
        return invoice

    @staticmethod
    def confirm(db: Session, invoice_id: str):
        with invoice_locks.hold(coerce_uuid(invoice_id)):
            try:
                invoice = get_for_update(db, Invoice, invoice_id, "Invoice not found")
                confirm_locked(invoice)
                db.commit()
            except Exception:
                db.rollback()
                raise
        db.refresh(invoice)
        logger.info("Confirmed invoice %s total=%s", invoice.invoice_number, invoice.total)
        return invoice

    @staticmethod
    def cancel(db: Session, invoice_id: str, memo: str | None = None):
        with invoice_locks.hold(coerce_uuid(invoice_id)):
            try:
                invoice = get_for_update(db, Invoice, invoice_id, "Invoice not found")
                if to_money(invoice.paid_amount, invoice.currency):
                    raise InvoiceHasPayments(
                        details={
                            "invoice_id": str(invoice.id),
                            "paid_amount": str(invoice.paid_amount),
                        }
                    )
                _transition(invoice, InvoiceStatus.cancelled)
                invoice.cancelled_at = _now()
                if memo:
                    invoice.memo = memo
                db.commit()
            except Exception:
                db.rollback()
                raise
        db.refresh(invoice)
        logger.info("Cancelled invoice %s", invoice.invoice_number)
        return invoice

    @staticmethod
    def verify(db: Session, invoice_id: str):
        invoice = Invoices.get(db, invoice_id)
        verify_totals(invoice)
        return invoice
