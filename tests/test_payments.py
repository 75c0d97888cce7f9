"""Tests for payment submission, settlement and batch application."""

import threading
import uuid
from concurrent.futures import ThreadPoolExecutor
from datetime import date
from decimal import Decimal

import pytest
from sqlalchemy import create_engine
from sqlalchemy.orm import sessionmaker

from billcycle.db import Base
from billcycle.models.billing import InvoiceStatus, Payment, PaymentMethodType, PaymentStatus
from billcycle.schemas.billing import InvoiceDraftCreate, InvoiceLineCreate
from billcycle.services import billing as billing_service
from billcycle.services.billing.errors import (
    InvalidAmount,
    InvalidTransition,
    Overpayment,
    PaymentStateError,
)
from billcycle.services.payment_gateway import ChargeResult, ChargeStatus, ManualGateway


class FakeGateway:
    def __init__(self, status=ChargeStatus.succeeded, message=None, error=None):
        self.status = status
        self.message = message
        self.error = error
        self.calls = []

    def initiate_charge(self, amount, method):
        self.calls.append((amount, method))
        if self.error:
            raise self.error
        return ChargeResult(reference="GW-1", status=self.status, message=self.message)


@pytest.fixture()
def invoice(db_session, customer_id):
    draft = billing_service.invoices.create_draft(
        db_session,
        InvoiceDraftCreate(customer_id=customer_id, currency="USD", issue_date=date(2024, 3, 1)),
    )
    billing_service.invoices.add_line(
        db_session,
        str(draft.id),
        InvoiceLineCreate(
            description="Fiber 100",
            unit_price=Decimal("100.00"),
            discount_amount=Decimal("10.00"),
            tax_rate=Decimal("5"),
        ),
    )
    return billing_service.invoices.confirm(db_session, str(draft.id))


def _pending(db_session, invoice, amount, payment_date, seq):
    payment = Payment(
        invoice_id=invoice.id,
        customer_id=invoice.customer_id,
        amount=Decimal(amount),
        currency=invoice.currency,
        method=PaymentMethodType.bank_transfer,
        status=PaymentStatus.pending,
        payment_date=payment_date,
        submission_seq=seq,
    )
    db_session.add(payment)
    db_session.commit()
    return payment


def test_submit_succeeded_completes_payment(db_session, invoice):
    gateway = FakeGateway()
    payment = billing_service.payments.submit_payment(
        db_session, str(invoice.id), Decimal("50.00"), "card", gateway
    )
    assert payment.status == PaymentStatus.completed
    assert payment.external_reference == "GW-1"
    assert payment.applied_at is not None
    amount, method = gateway.calls[0]
    assert amount.amount == Decimal("50.00")
    assert method == PaymentMethodType.card
    db_session.refresh(invoice)
    assert invoice.paid_amount == Decimal("50.00")


def test_submit_declined_leaves_invoice_untouched(db_session, invoice):
    payment = billing_service.payments.submit_payment(
        db_session,
        str(invoice.id),
        Decimal("50.00"),
        PaymentMethodType.card,
        FakeGateway(ChargeStatus.failed, message="insufficient funds"),
    )
    assert payment.status == PaymentStatus.failed
    assert payment.failure_reason == "insufficient funds"
    db_session.refresh(invoice)
    assert invoice.paid_amount == Decimal("0.00")
    assert invoice.status == InvoiceStatus.confirmed


def test_gateway_exception_fails_payment(db_session, invoice):
    payment = billing_service.payments.submit_payment(
        db_session,
        str(invoice.id),
        Decimal("10.00"),
        PaymentMethodType.card,
        FakeGateway(error=RuntimeError("timeout")),
    )
    assert payment.status == PaymentStatus.failed
    assert "timeout" in payment.failure_reason


def test_pending_then_settled(db_session, invoice):
    payment = billing_service.payments.submit_payment(
        db_session,
        str(invoice.id),
        Decimal("94.50"),
        PaymentMethodType.online,
        FakeGateway(ChargeStatus.pending),
    )
    assert payment.status == PaymentStatus.pending
    assert payment.external_reference == "GW-1"

    settled = billing_service.payments.settle_payment(db_session, str(payment.id), True, "GW-2")
    assert settled.status == PaymentStatus.completed
    assert settled.external_reference == "GW-2"
    db_session.refresh(invoice)
    assert invoice.status == InvoiceStatus.paid


def test_settle_failure(db_session, invoice):
    payment = billing_service.payments.submit_payment(
        db_session,
        str(invoice.id),
        Decimal("20.00"),
        PaymentMethodType.online,
        FakeGateway(ChargeStatus.pending),
    )
    failed = billing_service.payments.settle_payment(
        db_session, str(payment.id), False, failure_reason="expired card"
    )
    assert failed.status == PaymentStatus.failed
    assert failed.failure_reason == "expired card"


def test_submit_counts_pending_amounts(db_session, invoice):
    billing_service.payments.submit_payment(
        db_session,
        str(invoice.id),
        Decimal("50.00"),
        PaymentMethodType.online,
        FakeGateway(ChargeStatus.pending),
    )
    gateway = FakeGateway()
    with pytest.raises(Overpayment):
        billing_service.payments.submit_payment(
            db_session, str(invoice.id), Decimal("50.00"), PaymentMethodType.card, gateway
        )
    assert gateway.calls == []


def test_settle_after_invoice_paid_fails_payment(db_session, invoice):
    pending = billing_service.payments.submit_payment(
        db_session,
        str(invoice.id),
        Decimal("50.00"),
        PaymentMethodType.online,
        FakeGateway(ChargeStatus.pending),
    )
    billing_service.payments.record_manual_payment(db_session, str(invoice.id), Decimal("94.50"))

    with pytest.raises(InvalidTransition):
        billing_service.payments.settle_payment(db_session, str(pending.id), True)

    payment = billing_service.payments.get(db_session, str(pending.id))
    assert payment.status == PaymentStatus.failed
    db_session.refresh(invoice)
    assert invoice.paid_amount == Decimal("94.50")


def test_manual_gateway_always_succeeds(db_session, invoice):
    payment = billing_service.payments.submit_payment(
        db_session, str(invoice.id), Decimal("94.50"), PaymentMethodType.cash, ManualGateway()
    )
    assert payment.status == PaymentStatus.completed
    assert payment.external_reference.startswith("MAN-")


def test_apply_batch_orders_by_date_then_sequence(db_session, invoice):
    late = _pending(db_session, invoice, "94.50", date(2024, 3, 2), 1)
    first = _pending(db_session, invoice, "50.00", date(2024, 3, 1), 2)
    second = _pending(db_session, invoice, "44.50", date(2024, 3, 1), 3)

    summary = billing_service.payments.apply_batch(
        db_session, [str(late.id), str(second.id), str(first.id)]
    )

    assert summary["applied"] == [str(first.id), str(second.id)]
    assert summary["rejected"] == [{"payment_id": str(late.id), "code": "invalid_transition"}]
    db_session.refresh(invoice)
    assert invoice.status == InvoiceStatus.paid
    assert billing_service.payments.get(db_session, str(late.id)).status == PaymentStatus.pending


def test_apply_batch_reports_unknown_ids(db_session, invoice):
    missing = uuid.uuid4()
    summary = billing_service.payments.apply_batch(db_session, [str(missing)])
    assert summary == {
        "applied": [],
        "rejected": [{"payment_id": str(missing), "code": "not_found"}],
    }


def test_apply_payment_rejects_other_targets(db_session, invoice, customer_id):
    payment = _pending(db_session, invoice, "10.00", date(2024, 3, 1), 1)
    other = billing_service.invoices.create_draft(
        db_session, InvoiceDraftCreate(customer_id=customer_id)
    )
    with pytest.raises(PaymentStateError):
        billing_service.payments.apply_payment(
            db_session, payment.id, [str(invoice.id), str(other.id)]
        )


def test_apply_completed_payment_twice(db_session, invoice):
    payment = _pending(db_session, invoice, "10.00", date(2024, 3, 1), 1)
    billing_service.payments.apply_payment(db_session, payment.id, [str(invoice.id)])
    with pytest.raises(PaymentStateError):
        billing_service.payments.apply_payment(db_session, payment.id)
    db_session.refresh(invoice)
    assert invoice.paid_amount == Decimal("10.00")


def test_settle_leaves_completed_payment_untouched(db_session, invoice):
    payment = billing_service.payments.record_manual_payment(
        db_session, str(invoice.id), Decimal("50.00"), external_reference="BANK-1"
    )

    with pytest.raises(PaymentStateError):
        billing_service.payments.settle_payment(db_session, str(payment.id), True, "GW-9")
    with pytest.raises(PaymentStateError):
        billing_service.payments.settle_payment(
            db_session, str(payment.id), False, "GW-10", "chargeback"
        )

    db_session.expire_all()
    stored = billing_service.payments.get(db_session, str(payment.id))
    assert stored.status == PaymentStatus.completed
    assert stored.external_reference == "BANK-1"
    assert stored.failure_reason is None
    db_session.refresh(invoice)
    assert invoice.paid_amount == Decimal("50.00")


def test_failed_settlement_records_reference(db_session, invoice):
    payment = billing_service.payments.submit_payment(
        db_session,
        str(invoice.id),
        Decimal("20.00"),
        PaymentMethodType.online,
        FakeGateway(ChargeStatus.pending),
    )
    failed = billing_service.payments.settle_payment(
        db_session, str(payment.id), False, "GW-3", "expired card"
    )
    assert failed.status == PaymentStatus.failed
    assert failed.external_reference == "GW-3"


def test_note_reference_skips_settled_payment(db_session, invoice):
    payment = billing_service.payments.record_manual_payment(
        db_session, str(invoice.id), Decimal("10.00"), external_reference="BANK-2"
    )
    noted = billing_service.payments.note_reference(db_session, payment.id, "GW-4")
    assert noted.external_reference == "BANK-2"


def test_payment_finer_than_currency_unit_is_rejected(db_session, customer_id):
    draft = billing_service.invoices.create_draft(
        db_session, InvoiceDraftCreate(customer_id=customer_id, currency="JPY")
    )
    billing_service.invoices.add_line(
        db_session, str(draft.id), InvoiceLineCreate(description="Fiber", unit_price=Decimal("1000"))
    )
    jpy_invoice = billing_service.invoices.confirm(db_session, str(draft.id))

    with pytest.raises(InvalidAmount):
        billing_service.payments.record_manual_payment(
            db_session, str(jpy_invoice.id), Decimal("10.50")
        )

    assert billing_service.payments.list(db_session, invoice_id=str(jpy_invoice.id)) == []
    db_session.refresh(jpy_invoice)
    assert jpy_invoice.paid_amount == Decimal("0")


def test_concurrent_payments_respect_overpayment_guard(tmp_path, customer_id):
    file_engine = create_engine(
        f"sqlite+pysqlite:///{tmp_path / 'payments.db'}",
        connect_args={"check_same_thread": False, "timeout": 30},
    )
    Base.metadata.create_all(file_engine)
    SessionFactory = sessionmaker(bind=file_engine, autoflush=False)
    with SessionFactory() as setup:
        draft = billing_service.invoices.create_draft(
            setup, InvoiceDraftCreate(customer_id=customer_id, currency="USD")
        )
        billing_service.invoices.add_line(
            setup,
            str(draft.id),
            InvoiceLineCreate(
                description="Fiber 100",
                unit_price=Decimal("100.00"),
                discount_amount=Decimal("10.00"),
                tax_rate=Decimal("5"),
            ),
        )
        invoice_id = str(billing_service.invoices.confirm(setup, str(draft.id)).id)

    barrier = threading.Barrier(4, timeout=10)

    def pay():
        session = SessionFactory()
        try:
            barrier.wait()
            billing_service.payments.record_manual_payment(
                session, invoice_id, Decimal("50.00")
            )
            return "ok"
        except Overpayment:
            return "over"
        finally:
            session.close()

    try:
        with ThreadPoolExecutor(max_workers=4) as pool:
            outcomes = sorted(pool.map(lambda _: pay(), range(4)))

        assert outcomes == ["ok", "over", "over", "over"]
        with SessionFactory() as check:
            stored = billing_service.invoices.get(check, invoice_id)
            assert stored.paid_amount == Decimal("50.00")
            assert stored.status == InvoiceStatus.confirmed
            assert len(billing_service.payments.list(check, invoice_id=invoice_id)) == 1
    finally:
        file_engine.dispose()
