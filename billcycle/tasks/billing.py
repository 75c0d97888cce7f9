import logging
import time
from datetime import date

from billcycle.celery_app import celery_app
from billcycle.config import settings
from billcycle.db import SessionLocal
from billcycle.metrics import observe_job
from billcycle.models.subscription import Subscription, SubscriptionStatus
from billcycle.services import billing_automation as billing_automation_service
from billcycle.services.billing.errors import SubscriptionNotActive

logger = logging.getLogger(__name__)


def _as_of(value: str | None) -> date:
    return date.fromisoformat(value) if value else date.today()


@celery_app.task(name="billcycle.tasks.billing.generate_invoices_due")
def generate_invoices_due(as_of: str | None = None):
    start = time.monotonic()
    status = "success"
    session = SessionLocal()
    try:
        run = billing_automation_service.generate_invoices_due(session, _as_of(as_of))
        return {
            "run_id": str(run.id),
            "invoices_created": run.invoices_created,
            "failures": run.failures,
        }
    except Exception:
        status = "error"
        session.rollback()
        logger.exception("Billing run failed.")
        raise
    finally:
        session.close()
        observe_job("generate_invoices_due", status, time.monotonic() - start)


@celery_app.task(name="billcycle.tasks.billing.run_subscription_cycle")
def run_subscription_cycle(subscription_id: str, as_of: str | None = None):
    """Bill one subscription, catching up on every period due at ``as_of``."""
    start = time.monotonic()
    status = "success"
    session = SessionLocal()
    outcomes = []
    try:
        for _ in range(max(settings.billing_max_periods_per_run, 1)):
            result = billing_automation_service.run_billing_cycle(
                session, subscription_id, _as_of(as_of)
            )
            outcomes.append(result.outcome.value)
            if result.closed or result.outcome in (
                billing_automation_service.BillingCycleOutcome.not_due,
                billing_automation_service.BillingCycleOutcome.closed,
            ):
                break
        return outcomes
    except SubscriptionNotActive:
        status = "skipped"
        return outcomes
    except Exception:
        status = "error"
        session.rollback()
        logger.exception("Billing cycle failed for subscription %s.", subscription_id)
        raise
    finally:
        session.close()
        observe_job("run_subscription_cycle", status, time.monotonic() - start)


@celery_app.task(name="billcycle.tasks.billing.dispatch_billing_cycles")
def dispatch_billing_cycles(as_of: str | None = None):
    """Queue one billing-cycle task per due subscription."""
    session = SessionLocal()
    try:
        run_on = _as_of(as_of)
        due_ids = [
            row.id
            for row in session.query(Subscription.id)
            .filter(Subscription.status == SubscriptionStatus.active)
            .filter(Subscription.next_billing_date <= run_on)
            .all()
        ]
    finally:
        session.close()
    for subscription_id in due_ids:
        run_subscription_cycle.delay(str(subscription_id), run_on.isoformat())
    logger.info("Queued %d billing cycles for %s", len(due_ids), run_on)
    return len(due_ids)
