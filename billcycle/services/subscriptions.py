"""Subscription lifecycle and history."""

import logging
from datetime import date, timedelta

from fastapi import HTTPException
from sqlalchemy.orm import Session, selectinload

from billcycle.models.catalog import BillingPeriod, Plan
from billcycle.models.subscription import (
    Subscription,
    SubscriptionEvent,
    SubscriptionStatus,
)
from billcycle.schemas.subscription import SubscriptionCreate, SubscriptionRenew
from billcycle.services import catalog, numbering
from billcycle.services.billing.errors import InvalidTransition
from billcycle.services.common import (
    apply_ordering,
    apply_pagination,
    coerce_uuid,
    get_by_id,
    get_for_update,
    get_or_404,
    validate_enum,
)
from billcycle.services.locks import subscription_locks
from billcycle.services.response import ListResponseMixin

logger = logging.getLogger(__name__)

SUSPENSION_NON_PAYMENT = "non_payment"
SUSPENSION_MANUAL = "manual"

SUBSCRIPTION_TRANSITIONS = {
    SubscriptionStatus.draft: {SubscriptionStatus.active},
    SubscriptionStatus.active: {
        SubscriptionStatus.suspended,
        SubscriptionStatus.cancelled,
        SubscriptionStatus.closed,
    },
    SubscriptionStatus.suspended: {SubscriptionStatus.active, SubscriptionStatus.cancelled},
    SubscriptionStatus.cancelled: set(),
    SubscriptionStatus.closed: set(),
}


def calendar_period_start(day: date, billing_period: BillingPeriod) -> date:
    """Start of the calendar period (day, ISO week, month, year) containing ``day``."""
    if billing_period == BillingPeriod.weekly:
        return day - timedelta(days=day.weekday())
    if billing_period == BillingPeriod.monthly:
        return day.replace(day=1)
    if billing_period == BillingPeriod.yearly:
        return date(day.year, 1, 1)
    return day


def first_billing_date(plan: Plan, start_date: date) -> date:
    if plan.calendar_aligned:
        return calendar_period_start(start_date, plan.billing_period)
    return start_date


def transition_locked(
    db: Session,
    subscription: Subscription,
    target: SubscriptionStatus,
    action: str,
    description: str | None = None,
    actor: str | None = None,
) -> SubscriptionEvent:
    """Move ``subscription`` to ``target`` and append the history row.

    Caller holds the subscription lock and commits.
    """
    current = subscription.status
    if target not in SUBSCRIPTION_TRANSITIONS[current]:
        raise InvalidTransition(
            f"Subscription cannot move from {current.value} to {target.value}",
            details={
                "subscription_id": str(subscription.id),
                "from": current.value,
                "to": target.value,
            },
        )
    subscription.status = target
    event = record_event(
        db, subscription, action, current, target, description=description, actor=actor
    )
    logger.info(
        "Subscription %s %s -> %s (%s)",
        subscription.subscription_number,
        current.value,
        target.value,
        action,
    )
    return event


def record_event(
    db: Session,
    subscription: Subscription,
    action: str,
    from_status: SubscriptionStatus | None,
    to_status: SubscriptionStatus | None,
    description: str | None = None,
    actor: str | None = None,
) -> SubscriptionEvent:
    event = SubscriptionEvent(
        subscription_id=subscription.id,
        action=action,
        from_status=from_status,
        to_status=to_status,
        description=description,
        actor=actor,
    )
    db.add(event)
    return event


def close_locked(db: Session, subscription: Subscription, actor: str | None = None):
    transition_locked(
        db,
        subscription,
        SubscriptionStatus.closed,
        "closed",
        description=f"End date {subscription.end_date} reached",
        actor=actor or "system",
    )


def suspend_locked(
    db: Session,
    subscription: Subscription,
    reason: str,
    description: str | None = None,
    actor: str | None = None,
):
    transition_locked(
        db,
        subscription,
        SubscriptionStatus.suspended,
        "suspended",
        description=description or reason,
        actor=actor,
    )
    subscription.suspension_reason = reason


def reactivate_locked(
    db: Session,
    subscription: Subscription,
    description: str | None = None,
    actor: str | None = None,
):
    transition_locked(
        db,
        subscription,
        SubscriptionStatus.active,
        "reactivated",
        description=description,
        actor=actor,
    )
    subscription.suspension_reason = None


class Subscriptions(ListResponseMixin):
    @staticmethod
    def create(db: Session, payload: SubscriptionCreate):
        plan = get_or_404(db, Plan, payload.plan_id, "Plan not found")
        if not plan.is_active or plan.superseded_by_id is not None:
            raise HTTPException(status_code=400, detail="Plan is not available")
        subscription = Subscription(
            subscription_number=numbering.next_subscription_number(db),
            customer_id=payload.customer_id,
            plan_id=plan.id,
            status=SubscriptionStatus.draft,
            start_date=payload.start_date,
            end_date=payload.end_date,
            notes=payload.notes,
        )
        db.add(subscription)
        db.flush()
        record_event(db, subscription, "created", None, SubscriptionStatus.draft)
        db.commit()
        db.refresh(subscription)
        return subscription

    @staticmethod
    def get(db: Session, subscription_id: str):
        subscription = get_by_id(
            db,
            Subscription,
            subscription_id,
            options=[selectinload(Subscription.plan)],
        )
        if not subscription:
            raise HTTPException(status_code=404, detail="Subscription not found")
        return subscription

    @staticmethod
    def list(
        db: Session,
        customer_id: str | None = None,
        plan_id: str | None = None,
        status: str | None = None,
        order_by: str = "created_at",
        order_dir: str = "desc",
        limit: int = 50,
        offset: int = 0,
    ):
        query = db.query(Subscription)
        if customer_id:
            query = query.filter(Subscription.customer_id == coerce_uuid(customer_id))
        if plan_id:
            query = query.filter(Subscription.plan_id == coerce_uuid(plan_id))
        if status:
            query = query.filter(
                Subscription.status == validate_enum(status, SubscriptionStatus, "status")
            )
        query = apply_ordering(
            query,
            order_by,
            order_dir,
            {
                "created_at": Subscription.created_at,
                "start_date": Subscription.start_date,
                "next_billing_date": Subscription.next_billing_date,
                "status": Subscription.status,
            },
        )
        return apply_pagination(query, limit, offset).all()

    @staticmethod
    def history(db: Session, subscription_id: str):
        subscription = Subscriptions.get(db, subscription_id)
        return (
            db.query(SubscriptionEvent)
            .filter(SubscriptionEvent.subscription_id == subscription.id)
            .order_by(SubscriptionEvent.created_at.asc())
            .all()
        )

    @staticmethod
    def activate(db: Session, subscription_id: str, actor: str | None = None):
        with subscription_locks.hold(coerce_uuid(subscription_id)):
            try:
                subscription = get_for_update(
                    db, Subscription, subscription_id, "Subscription not found"
                )
                plan = subscription.plan
                if not plan.lines:
                    raise InvalidTransition(
                        "Plan has no lines to bill",
                        details={"plan_id": str(plan.id)},
                    )
                start_date = subscription.start_date or date.today()
                subscription.start_date = start_date
                subscription.next_billing_date = first_billing_date(plan, start_date)
                transition_locked(
                    db, subscription, SubscriptionStatus.active, "activated", actor=actor
                )
                db.commit()
            except Exception:
                db.rollback()
                raise
        db.refresh(subscription)
        return subscription

    @staticmethod
    def suspend(
        db: Session,
        subscription_id: str,
        reason: str | None = None,
        actor: str | None = None,
    ):
        """Manual suspension; the plan must allow pausing."""
        with subscription_locks.hold(coerce_uuid(subscription_id)):
            try:
                subscription = get_for_update(
                    db, Subscription, subscription_id, "Subscription not found"
                )
                if not subscription.plan.pausable:
                    raise InvalidTransition(
                        "Plan does not allow suspension",
                        details={"plan_id": str(subscription.plan_id)},
                    )
                suspend_locked(
                    db, subscription, SUSPENSION_MANUAL, description=reason, actor=actor
                )
                db.commit()
            except Exception:
                db.rollback()
                raise
        db.refresh(subscription)
        return subscription

    @staticmethod
    def reactivate(db: Session, subscription_id: str, actor: str | None = None):
        """Resume billing; periods missed while suspended are billed on the next run."""
        with subscription_locks.hold(coerce_uuid(subscription_id)):
            try:
                subscription = get_for_update(
                    db, Subscription, subscription_id, "Subscription not found"
                )
                reactivate_locked(db, subscription, actor=actor)
                db.commit()
            except Exception:
                db.rollback()
                raise
        db.refresh(subscription)
        return subscription

    @staticmethod
    def cancel(
        db: Session,
        subscription_id: str,
        effective_date: date | None = None,
        reason: str | None = None,
        actor: str | None = None,
    ):
        with subscription_locks.hold(coerce_uuid(subscription_id)):
            try:
                subscription = get_for_update(
                    db, Subscription, subscription_id, "Subscription not found"
                )
                if not subscription.plan.closable:
                    raise InvalidTransition(
                        "Plan does not allow cancellation",
                        details={"plan_id": str(subscription.plan_id)},
                    )
                transition_locked(
                    db,
                    subscription,
                    SubscriptionStatus.cancelled,
                    "cancelled",
                    description=reason,
                    actor=actor,
                )
                subscription.cancelled_at = effective_date or date.today()
                db.commit()
            except Exception:
                db.rollback()
                raise
        db.refresh(subscription)
        return subscription

    @staticmethod
    def renew(db: Session, subscription_id: str, payload: SubscriptionRenew | None = None):
        """Create a DRAFT follow-up subscription on the current version of the plan."""
        payload = payload or SubscriptionRenew()
        with subscription_locks.hold(coerce_uuid(subscription_id)):
            try:
                parent = get_for_update(
                    db, Subscription, subscription_id, "Subscription not found"
                )
                if parent.status not in (SubscriptionStatus.active, SubscriptionStatus.closed):
                    raise InvalidTransition(
                        f"Cannot renew a {parent.status.value} subscription",
                        details={"subscription_id": str(parent.id)},
                    )
                if not parent.plan.renewable:
                    raise InvalidTransition(
                        "Plan is not renewable",
                        details={"plan_id": str(parent.plan_id)},
                    )
                plan = catalog.current_version(db, parent.plan)
                start_date = (
                    payload.start_date or parent.end_date or parent.next_billing_date
                )
                if start_date is None:
                    raise InvalidTransition(
                        "Renewal start date is required",
                        details={"subscription_id": str(parent.id)},
                    )
                end_date = payload.end_date
                if end_date is None and parent.start_date and parent.end_date:
                    end_date = start_date + (parent.end_date - parent.start_date)
                child = Subscription(
                    subscription_number=numbering.next_subscription_number(db),
                    customer_id=parent.customer_id,
                    plan_id=plan.id,
                    status=SubscriptionStatus.draft,
                    start_date=start_date,
                    end_date=end_date,
                    parent_subscription_id=parent.id,
                    renewal_type="renewal",
                )
                db.add(child)
                db.flush()
                record_event(
                    db,
                    child,
                    "created",
                    None,
                    SubscriptionStatus.draft,
                    description=f"Renewal of {parent.subscription_number}",
                    actor=payload.actor,
                )
                record_event(
                    db,
                    parent,
                    "renewed",
                    parent.status,
                    parent.status,
                    description=f"Renewed as {child.subscription_number}",
                    actor=payload.actor,
                )
                db.commit()
            except Exception:
                db.rollback()
                raise
        db.refresh(child)
        logger.info(
            "Renewed subscription %s as %s",
            parent.subscription_number,
            child.subscription_number,
        )
        return child


subscriptions = Subscriptions()


def cancel_subscription(db: Session, subscription_id: str, **kwargs):
    return subscriptions.cancel(db, subscription_id, **kwargs)
