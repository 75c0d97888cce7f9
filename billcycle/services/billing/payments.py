"""Payment recording and application.

Every mutation of an invoice's paid amount runs under that invoice's keyed
lock plus a row lock, so concurrent payments against one invoice are applied
one at a time and the overpayment guard always sees the latest balance.
Gateway calls happen outside any lock.
"""

import logging
from datetime import date, datetime, timezone
from decimal import Decimal

from fastapi import HTTPException
from sqlalchemy.orm import Session

from billcycle.metrics import PAYMENTS_APPLIED, PAYMENTS_REJECTED
from billcycle.models.billing import (
    Invoice,
    InvoiceStatus,
    Payment,
    PaymentMethodType,
    PaymentStatus,
)
from billcycle.services import billing_automation, numbering
from billcycle.services.billing.errors import (
    BillingError,
    InvalidAmount,
    InvalidTransition,
    Overpayment,
    PaymentStateError,
)
from billcycle.services.billing.invoices import record_payment, to_money
from billcycle.services.billing.money import Money, money_sum
from billcycle.services.common import (
    apply_ordering,
    apply_pagination,
    coerce_uuid,
    get_by_id,
    get_for_update,
    validate_enum,
)
from billcycle.services.locks import invoice_locks
from billcycle.services.payment_gateway import ChargeStatus, PaymentGateway
from billcycle.services.response import ListResponseMixin

logger = logging.getLogger(__name__)

PAYMENT_SEQUENCE = "payment_submission"

PAYMENT_TRANSITIONS = {
    PaymentStatus.pending: {PaymentStatus.completed, PaymentStatus.failed},
    PaymentStatus.failed: {PaymentStatus.completed},
    PaymentStatus.completed: set(),
}


def _now() -> datetime:
    return datetime.now(timezone.utc)


def _transition(payment: Payment, target: PaymentStatus) -> None:
    if target not in PAYMENT_TRANSITIONS[payment.status]:
        raise PaymentStateError(
            f"Payment cannot move from {payment.status.value} to {target.value}",
            details={
                "payment_id": str(payment.id),
                "from": payment.status.value,
                "to": target.value,
            },
        )
    payment.status = target


def _require_confirmed(invoice: Invoice) -> None:
    if invoice.status != InvoiceStatus.confirmed:
        raise InvalidTransition(
            f"Invoice is {invoice.status.value}; payments require a confirmed invoice",
            details={"invoice_id": str(invoice.id), "status": invoice.status.value},
        )


def _amount(invoice: Invoice, amount: Decimal) -> Money:
    money = Money.of(amount, invoice.currency)
    if money.minor <= 0:
        raise InvalidAmount(details={"amount": str(amount)})
    return money


def _pending_total(db: Session, invoice: Invoice) -> Money:
    amounts = (
        db.query(Payment.amount)
        .filter(Payment.invoice_id == invoice.id)
        .filter(Payment.status == PaymentStatus.pending)
        .all()
    )
    return money_sum((to_money(row.amount, invoice.currency) for row in amounts), invoice.currency)


def _after_payment(db: Session, invoice: Invoice) -> None:
    if invoice.subscription_id is None:
        return
    billing_automation.restore_after_payment(db, invoice.subscription_id, date.today())


class Payments(ListResponseMixin):
    @staticmethod
    def get(db: Session, payment_id: str):
        payment = get_by_id(db, Payment, payment_id)
        if not payment:
            raise HTTPException(status_code=404, detail="Payment not found")
        return payment

    @staticmethod
    def list(
        db: Session,
        invoice_id: str | None = None,
        customer_id: str | None = None,
        status: str | None = None,
        order_by: str = "created_at",
        order_dir: str = "desc",
        limit: int = 50,
        offset: int = 0,
    ):
        query = db.query(Payment)
        if invoice_id:
            query = query.filter(Payment.invoice_id == coerce_uuid(invoice_id))
        if customer_id:
            query = query.filter(Payment.customer_id == coerce_uuid(customer_id))
        if status:
            query = query.filter(
                Payment.status == validate_enum(status, PaymentStatus, "status")
            )
        query = apply_ordering(
            query,
            order_by,
            order_dir,
            {
                "created_at": Payment.created_at,
                "payment_date": Payment.payment_date,
                "amount": Payment.amount,
            },
        )
        return apply_pagination(query, limit, offset).all()

    @staticmethod
    def record_manual_payment(
        db: Session,
        invoice_id: str,
        amount: Decimal,
        method: PaymentMethodType | str = PaymentMethodType.cash,
        payment_date: date | None = None,
        external_reference: str | None = None,
        notes: str | None = None,
    ):
        """Create a COMPLETED payment and apply it in one transaction.

        Nothing is persisted when the payment is rejected.
        """
        method = validate_enum(method, PaymentMethodType, "method")
        with invoice_locks.hold(coerce_uuid(invoice_id)):
            try:
                invoice = get_for_update(db, Invoice, invoice_id, "Invoice not found")
                _require_confirmed(invoice)
                money = _amount(invoice, amount)
                record_payment(invoice, money)
                payment = Payment(
                    invoice_id=invoice.id,
                    customer_id=invoice.customer_id,
                    amount=money.amount,
                    currency=invoice.currency,
                    method=method,
                    status=PaymentStatus.completed,
                    external_reference=external_reference,
                    payment_date=payment_date or date.today(),
                    submission_seq=numbering.next_sequence_value(db, PAYMENT_SEQUENCE),
                    notes=notes,
                    applied_at=_now(),
                )
                db.add(payment)
                db.commit()
            except BillingError as exc:
                db.rollback()
                PAYMENTS_REJECTED.labels(reason=exc.code).inc()
                raise
            except Exception:
                db.rollback()
                raise
        PAYMENTS_APPLIED.labels(method=method.value).inc()
        db.refresh(payment)
        logger.info(
            "Recorded %s payment %s on invoice %s", method.value, money, invoice.invoice_number
        )
        _after_payment(db, invoice)
        return payment

    @staticmethod
    def submit_payment(
        db: Session,
        invoice_id: str,
        amount: Decimal,
        method: PaymentMethodType | str,
        gateway: PaymentGateway,
        payment_date: date | None = None,
    ):
        """Create a PENDING payment, charge it through ``gateway``, then settle it."""
        method = validate_enum(method, PaymentMethodType, "method")
        with invoice_locks.hold(coerce_uuid(invoice_id)):
            try:
                invoice = get_for_update(db, Invoice, invoice_id, "Invoice not found")
                _require_confirmed(invoice)
                money = _amount(invoice, amount)
                outstanding = to_money(invoice.balance_due, invoice.currency)
                available = outstanding - _pending_total(db, invoice)
                if money > available:
                    raise Overpayment(
                        details={
                            "invoice_id": str(invoice.id),
                            "available": str(available.amount),
                            "amount": str(money.amount),
                        }
                    )
                payment = Payment(
                    invoice_id=invoice.id,
                    customer_id=invoice.customer_id,
                    amount=money.amount,
                    currency=invoice.currency,
                    method=method,
                    status=PaymentStatus.pending,
                    payment_date=payment_date or date.today(),
                    submission_seq=numbering.next_sequence_value(db, PAYMENT_SEQUENCE),
                )
                db.add(payment)
                db.commit()
            except BillingError as exc:
                db.rollback()
                PAYMENTS_REJECTED.labels(reason=exc.code).inc()
                raise
            except Exception:
                db.rollback()
                raise
        payment_id = payment.id

        try:
            result = gateway.initiate_charge(money, method)
        except Exception as exc:
            logger.exception("Gateway charge failed for payment %s", payment_id)
            return Payments.fail_payment(db, payment_id, f"gateway error: {exc}")

        if result.status == ChargeStatus.succeeded:
            return Payments.settle_payment(db, payment_id, True, result.reference)
        if result.status == ChargeStatus.failed:
            return Payments.settle_payment(
                db, payment_id, False, result.reference, result.message or "declined"
            )
        return Payments.note_reference(db, payment_id, result.reference)

    @staticmethod
    def settle_payment(
        db: Session,
        payment_id: str,
        succeeded: bool,
        external_reference: str | None = None,
        failure_reason: str | None = None,
    ):
        """Apply the outcome of an asynchronous gateway confirmation."""
        payment = Payments.get(db, payment_id)
        if not succeeded:
            return Payments.fail_payment(
                db, payment.id, failure_reason or "declined", external_reference
            )
        try:
            return Payments.apply_payment(
                db, payment.id, external_reference=external_reference
            )
        except (Overpayment, InvalidTransition) as exc:
            # The charge went through but the invoice can no longer take it.
            Payments.fail_payment(db, payment.id, exc.message, external_reference)
            raise

    @staticmethod
    def note_reference(db: Session, payment_id, external_reference: str | None):
        """Attach a gateway reference to a payment that is still pending."""
        payment = Payments.get(db, payment_id)
        if not external_reference:
            return payment
        with invoice_locks.hold(payment.invoice_id):
            try:
                payment = get_for_update(db, Payment, payment_id, "Payment not found")
                if payment.status != PaymentStatus.pending:
                    # Settled in the meantime; settled payments keep their reference.
                    logger.info(
                        "Payment %s already %s; reference %s not recorded",
                        payment.id,
                        payment.status.value,
                        external_reference,
                    )
                    db.rollback()
                    return payment
                payment.external_reference = external_reference
                db.commit()
            except Exception:
                db.rollback()
                raise
        db.refresh(payment)
        return payment

    @staticmethod
    def fail_payment(
        db: Session,
        payment_id,
        reason: str | None = None,
        external_reference: str | None = None,
    ):
        payment = Payments.get(db, payment_id)
        invoice_id = payment.invoice_id
        with invoice_locks.hold(coerce_uuid(invoice_id)):
            try:
                payment = get_for_update(db, Payment, payment_id, "Payment not found")
                if payment.status != PaymentStatus.failed:
                    _transition(payment, PaymentStatus.failed)
                payment.failure_reason = reason
                if external_reference:
                    payment.external_reference = external_reference
                db.commit()
            except Exception:
                db.rollback()
                raise
        PAYMENTS_REJECTED.labels(reason="failed").inc()
        db.refresh(payment)
        logger.warning("Payment %s failed: %s", payment.id, reason)
        return payment

    @staticmethod
    def apply_payment(
        db: Session,
        payment_id,
        target_invoice_ids=None,
        external_reference: str | None = None,
    ):
        """Apply a PENDING or FAILED payment to its invoice and complete it."""
        payment = Payments.get(db, payment_id)
        if target_invoice_ids is not None:
            targets = {coerce_uuid(value) for value in target_invoice_ids}
            if targets != {payment.invoice_id}:
                raise PaymentStateError(
                    "A payment applies to exactly one invoice",
                    details={
                        "payment_id": str(payment.id),
                        "invoice_id": str(payment.invoice_id),
                    },
                )
        with invoice_locks.hold(payment.invoice_id):
            try:
                payment = get_for_update(db, Payment, payment_id, "Payment not found")
                if payment.status == PaymentStatus.completed:
                    raise PaymentStateError(
                        "Payment is already completed",
                        details={"payment_id": str(payment.id)},
                    )
                invoice = get_for_update(db, Invoice, payment.invoice_id, "Invoice not found")
                record_payment(invoice, to_money(payment.amount, invoice.currency))
                _transition(payment, PaymentStatus.completed)
                payment.failure_reason = None
                if external_reference:
                    payment.external_reference = external_reference
                payment.applied_at = _now()
                db.commit()
            except BillingError as exc:
                db.rollback()
                PAYMENTS_REJECTED.labels(reason=exc.code).inc()
                raise
            except Exception:
                db.rollback()
                raise
        PAYMENTS_APPLIED.labels(method=payment.method.value).inc()
        db.refresh(payment)
        logger.info("Applied payment %s to invoice %s", payment.id, invoice.invoice_number)
        _after_payment(db, invoice)
        return payment

    @staticmethod
    def apply_batch(db: Session, payment_ids: list) -> dict:
        """Apply payments in (payment date, submission sequence) order.

        A rejected payment is reported and does not stop the rest.
        """
        ids = [coerce_uuid(value) for value in payment_ids]
        payments = (
            db.query(Payment)
            .filter(Payment.id.in_(ids))
            .order_by(Payment.payment_date.asc(), Payment.submission_seq.asc())
            .all()
        )
        found = {payment.id for payment in payments}
        summary = {"applied": [], "rejected": []}
        for missing in [value for value in ids if value not in found]:
            summary["rejected"].append({"payment_id": str(missing), "code": "not_found"})
        for payment_id in [payment.id for payment in payments]:
            try:
                Payments.apply_payment(db, payment_id)
            except BillingError as exc:
                summary["rejected"].append({"payment_id": str(payment_id), "code": exc.code})
                continue
            summary["applied"].append(str(payment_id))
        return summary
