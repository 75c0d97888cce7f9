"""Billing-cycle scheduler.

Invoices are billed in arrears: the period ``[next_billing_date, next + cadence)``
is invoiced once ``as_of`` has reached its end. Each call to
:func:`run_billing_cycle` produces at most one invoice; catch-up over several
missed periods is the caller's loop.
"""

from __future__ import annotations

import enum
import logging
import uuid
from calendar import monthrange
from dataclasses import dataclass
from datetime import UTC, date, datetime, timedelta
from typing import Any

from sqlalchemy import exists
from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import Session

from billcycle.config import settings
from billcycle.metrics import (
    BILLING_CYCLE_FAILURES,
    INVOICES_GENERATED,
    SUBSCRIPTIONS_SUSPENDED,
)
from billcycle.models.billing import BillingRun, BillingRunStatus, Invoice, InvoiceStatus
from billcycle.models.catalog import BillingPeriod
from billcycle.models.subscription import Subscription, SubscriptionStatus
from billcycle.services import subscriptions as subscription_service
from billcycle.services.billing.composer import Period, compose_lines
from billcycle.services.billing.errors import BillingError, InvalidRule, SubscriptionNotActive
from billcycle.services.billing.invoices import (
    confirm_locked,
    create_invoice,
    find_invoice_by_period,
)
from billcycle.services.billing.rules import (
    DatabaseRuleSource,
    RuleSource,
    load_pricing_rules,
)
from billcycle.services.common import coerce_uuid, get_for_update
from billcycle.services.locks import subscription_locks

logger = logging.getLogger(__name__)


class BillingCycleOutcome(enum.Enum):
    generated = "generated"
    already_generated = "already_generated"
    not_due = "not_due"
    closed = "closed"


@dataclass(frozen=True)
class BillingCycleResult:
    subscription_id: uuid.UUID
    outcome: BillingCycleOutcome
    invoice_id: uuid.UUID | None = None
    next_billing_date: date | None = None
    closed: bool = False


def _add_months(value: date, months: int, anchor_day: int | None = None) -> date:
    total = value.month - 1 + months
    year = value.year + total // 12
    month = total % 12 + 1
    day = min(anchor_day or value.day, monthrange(year, month)[1])
    return value.replace(year=year, month=month, day=day)


def _period_end(start: date, period: BillingPeriod, anchor_day: int | None = None) -> date:
    """End (exclusive) of the billing period starting at ``start``.

    ``anchor_day`` keeps monthly and yearly periods on the subscription's day
    of month, so a period shortened by a short month does not drift.
    """
    if period == BillingPeriod.daily:
        return start + timedelta(days=1)
    if period == BillingPeriod.weekly:
        return start + timedelta(weeks=1)
    if period == BillingPeriod.monthly:
        return _add_months(start, 1, anchor_day)
    if period == BillingPeriod.yearly:
        return _add_months(start, 12, anchor_day)
    return _add_months(start, 1, anchor_day)


def _anchor_day(subscription: Subscription) -> int | None:
    if subscription.plan.calendar_aligned:
        return 1
    if subscription.start_date is None:
        return None
    return subscription.start_date.day


def billing_period_for(subscription: Subscription) -> Period:
    start = subscription.next_billing_date
    end = _period_end(start, subscription.plan.billing_period, _anchor_day(subscription))
    return Period(start, end)


def _overdue_cutoff(as_of: date) -> date:
    return as_of - timedelta(days=settings.billing_suspension_grace_days)


def _has_overdue_invoice(db: Session, subscription_id, as_of: date) -> bool:
    return db.query(
        exists().where(
            Invoice.subscription_id == subscription_id,
            Invoice.status == InvoiceStatus.confirmed,
            Invoice.due_date < _overdue_cutoff(as_of),
        )
    ).scalar()


def _close_if_ended(db: Session, subscription: Subscription) -> bool:
    end_date = subscription.end_date
    if end_date is not None and end_date <= subscription.next_billing_date:
        subscription_service.close_locked(db, subscription)
        return True
    return False


def _run_cycle_locked(
    db: Session,
    subscription_id,
    as_of: date,
    rule_source: RuleSource | None,
) -> BillingCycleResult:
    subscription = get_for_update(db, Subscription, subscription_id, "Subscription not found")
    if subscription.status != SubscriptionStatus.active:
        raise SubscriptionNotActive(
            f"Subscription is {subscription.status.value}",
            details={
                "subscription_id": str(subscription.id),
                "status": subscription.status.value,
            },
        )

    if _close_if_ended(db, subscription):
        return BillingCycleResult(
            subscription.id,
            BillingCycleOutcome.closed,
            next_billing_date=subscription.next_billing_date,
            closed=True,
        )

    period = billing_period_for(subscription)
    if as_of < period.end:
        return BillingCycleResult(
            subscription.id,
            BillingCycleOutcome.not_due,
            next_billing_date=subscription.next_billing_date,
        )

    existing = find_invoice_by_period(db, subscription.id, period.start)
    if existing:
        # The invoice exists but the pointer was never advanced.
        if subscription.next_billing_date < period.end:
            subscription.next_billing_date = period.end
        closed = _close_if_ended(db, subscription)
        return BillingCycleResult(
            subscription.id,
            BillingCycleOutcome.already_generated,
            invoice_id=existing.id,
            next_billing_date=subscription.next_billing_date,
            closed=closed,
        )

    plan = subscription.plan
    source = rule_source or DatabaseRuleSource(db)
    rules = load_pricing_rules(source, plan.id, period.start)
    coverage = period.clip(subscription.start_date, subscription.end_date)
    composed = compose_lines(plan, period, coverage, rules)
    if composed.rejected:
        rejected = [
            {"position": line.position, "description": line.description, "error": line.error.message}
            for line in composed.rejected
        ]
        if not composed.lines:
            raise InvalidRule(
                "No line of the plan could be priced",
                details={"subscription_id": str(subscription.id), "rejected": rejected},
            )
        logger.warning(
            "Subscription %s: %d line(s) rejected for period %s: %s",
            subscription.subscription_number,
            len(rejected),
            period.start,
            rejected,
        )

    invoice = create_invoice(
        db,
        customer_id=subscription.customer_id,
        currency=plan.currency,
        issue_date=as_of,
        lines=composed.lines,
        subscription_id=subscription.id,
        period_start=period.start,
        period_end=period.end,
    )
    confirm_locked(invoice)
    subscription.next_billing_date = period.end
    closed = _close_if_ended(db, subscription)
    db.flush()
    return BillingCycleResult(
        subscription.id,
        BillingCycleOutcome.generated,
        invoice_id=invoice.id,
        next_billing_date=subscription.next_billing_date,
        closed=closed,
    )


def _invoice_for_pending_period(db: Session, subscription_id) -> Invoice | None:
    subscription = db.get(Subscription, subscription_id)
    if subscription is None or subscription.next_billing_date is None:
        return None
    period = billing_period_for(subscription)
    return find_invoice_by_period(db, subscription.id, period.start)


def run_billing_cycle(
    db: Session,
    subscription_id,
    as_of: date,
    rule_source: RuleSource | None = None,
) -> BillingCycleResult:
    """Generate at most one invoice for the subscription's next period.

    The invoice is created and confirmed in the same transaction that advances
    the subscription, so a failure leaves neither behind.
    """
    subscription_uuid = coerce_uuid(subscription_id)
    with subscription_locks.hold(subscription_uuid):
        try:
            result = _run_cycle_locked(db, subscription_uuid, as_of, rule_source)
            db.commit()
        except IntegrityError:
            db.rollback()
            # Only a (subscription, period) clash means another writer won.
            existing = _invoice_for_pending_period(db, subscription_uuid)
            if existing is None:
                raise
            logger.info(
                "Invoice for subscription %s already generated concurrently",
                subscription_uuid,
            )
            return BillingCycleResult(
                subscription_uuid,
                BillingCycleOutcome.already_generated,
                invoice_id=existing.id,
            )
        except Exception:
            db.rollback()
            raise
    if result.outcome == BillingCycleOutcome.generated:
        INVOICES_GENERATED.inc()
        logger.info(
            "Generated invoice %s for subscription %s, next billing %s",
            result.invoice_id,
            subscription_uuid,
            result.next_billing_date,
        )
    return result


def enforce_overdue_suspensions(db: Session, as_of: date) -> int:
    """Suspend active subscriptions with an invoice overdue past the grace period."""
    cutoff = _overdue_cutoff(as_of)
    candidates = [
        row.id
        for row in db.query(Subscription.id)
        .filter(Subscription.status == SubscriptionStatus.active)
        .filter(
            exists().where(
                Invoice.subscription_id == Subscription.id,
                Invoice.status == InvoiceStatus.confirmed,
                Invoice.due_date < cutoff,
            )
        )
        .all()
    ]
    suspended = 0
    for subscription_id in candidates:
        with subscription_locks.hold(subscription_id):
            try:
                subscription = get_for_update(db, Subscription, subscription_id)
                if subscription.status != SubscriptionStatus.active:
                    db.rollback()
                    continue
                if not _has_overdue_invoice(db, subscription.id, as_of):
                    db.rollback()
                    continue
                subscription_service.suspend_locked(
                    db,
                    subscription,
                    subscription_service.SUSPENSION_NON_PAYMENT,
                    description=f"Invoice overdue more than {settings.billing_suspension_grace_days} days",
                    actor="system",
                )
                db.commit()
            except Exception:
                db.rollback()
                raise
        suspended += 1
        SUBSCRIPTIONS_SUSPENDED.inc()
        logger.info("Suspended subscription %s for non-payment", subscription_id)
    return suspended


def restore_after_payment(db: Session, subscription_id, as_of: date) -> Subscription | None:
    """Reactivate a subscription suspended for non-payment once it is back in good standing."""
    if not settings.billing_auto_reactivate_on_payment:
        return None
    subscription_uuid = coerce_uuid(subscription_id)
    with subscription_locks.hold(subscription_uuid):
        try:
            subscription = get_for_update(db, Subscription, subscription_uuid)
            if (
                subscription.status != SubscriptionStatus.suspended
                or subscription.suspension_reason != subscription_service.SUSPENSION_NON_PAYMENT
                or _has_overdue_invoice(db, subscription.id, as_of)
            ):
                db.rollback()
                return None
            subscription_service.reactivate_locked(
                db, subscription, description="Overdue balance settled", actor="system"
            )
            db.commit()
        except Exception:
            db.rollback()
            raise
    db.refresh(subscription)
    logger.info("Restored subscription %s after payment", subscription.subscription_number)
    return subscription


def _bill_subscription(db: Session, subscription_id, as_of: date, summary: dict[str, Any]):
    for _ in range(max(settings.billing_max_periods_per_run, 1)):
        try:
            result = run_billing_cycle(db, subscription_id, as_of)
        except BillingError as exc:
            summary["failures"] += 1
            BILLING_CYCLE_FAILURES.labels(error=exc.code).inc()
            logger.warning(
                "Billing cycle failed for subscription %s: %s", subscription_id, exc.message
            )
            return
        except Exception:
            summary["failures"] += 1
            BILLING_CYCLE_FAILURES.labels(error="unexpected").inc()
            logger.exception("Billing cycle crashed for subscription %s", subscription_id)
            return
        if result.outcome == BillingCycleOutcome.generated:
            summary["invoices_created"] += 1
        elif result.outcome == BillingCycleOutcome.already_generated:
            summary["skipped"] += 1
        if result.closed:
            summary["closed"] += 1
            return
        if result.outcome == BillingCycleOutcome.not_due:
            return


def generate_invoices_due(db: Session, as_of: date | None = None) -> BillingRun:
    """Bill every active subscription whose next billing date has been reached."""
    as_of = as_of or date.today()
    run = BillingRun(
        run_at=as_of,
        status=BillingRunStatus.running,
        started_at=datetime.now(UTC),
    )
    db.add(run)
    db.commit()
    db.refresh(run)
    run_uuid = run.id

    summary: dict[str, Any] = {
        "subscriptions_scanned": 0,
        "invoices_created": 0,
        "skipped": 0,
        "failures": 0,
        "suspended": 0,
        "closed": 0,
    }
    try:
        summary["suspended"] = enforce_overdue_suspensions(db, as_of)
        due_ids = [
            row.id
            for row in db.query(Subscription.id)
            .filter(Subscription.status == SubscriptionStatus.active)
            .filter(Subscription.next_billing_date <= as_of)
            .order_by(Subscription.next_billing_date.asc(), Subscription.id.asc())
            .all()
        ]
        for subscription_id in due_ids:
            summary["subscriptions_scanned"] += 1
            _bill_subscription(db, subscription_id, as_of, summary)
    except Exception as exc:
        db.rollback()
        logger.error(f"Billing run failed: {exc}")
        run_db = db.get(BillingRun, run_uuid)
        run_db.status = BillingRunStatus.failed
        run_db.finished_at = datetime.now(UTC)
        run_db.error = str(exc)
        for key, value in summary.items():
            setattr(run_db, key, value)
        db.commit()
        raise

    run_db = db.get(BillingRun, run_uuid)
    run_db.status = BillingRunStatus.success
    run_db.finished_at = datetime.now(UTC)
    for key, value in summary.items():
        setattr(run_db, key, value)
    db.commit()
    db.refresh(run_db)
    logger.info(
        f"Billing run {as_of}: {summary['invoices_created']} invoices, "
        f"{summary['skipped']} skipped, {summary['failures']} failed, "
        f"{summary['suspended']} suspended, {summary['closed']} closed"
    )
    return run_db
