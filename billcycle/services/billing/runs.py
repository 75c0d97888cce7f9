"""Scheduler run history."""

from datetime import date

from sqlalchemy.orm import Session

from billcycle.models.billing import BillingRun, BillingRunStatus
from billcycle.services.common import (
    apply_ordering,
    apply_pagination,
    get_or_404,
    validate_enum,
)
from billcycle.services.response import ListResponseMixin

_RUN_ORDERING = {
    "created_at": BillingRun.created_at,
    "run_at": BillingRun.run_at,
    "invoices_created": BillingRun.invoices_created,
    "failures": BillingRun.failures,
}


class BillingRuns(ListResponseMixin):
    @staticmethod
    def get(db: Session, run_id: str):
        return get_or_404(db, BillingRun, run_id, "Billing run not found")

    @staticmethod
    def latest(db: Session, run_on: date | None = None) -> BillingRun | None:
        """Most recently started run, optionally for one scheduler date."""
        query = db.query(BillingRun)
        if run_on:
            query = query.filter(BillingRun.run_at == run_on)
        return query.order_by(BillingRun.created_at.desc()).first()

    @staticmethod
    def list(
        db: Session,
        status: str | None = None,
        run_on: date | None = None,
        with_failures: bool | None = None,
        order_by: str = "created_at",
        order_dir: str = "desc",
        limit: int = 50,
        offset: int = 0,
    ):
        query = db.query(BillingRun)
        run_status = validate_enum(status or None, BillingRunStatus, "status")
        if run_status is not None:
            query = query.filter(BillingRun.status == run_status)
        if run_on:
            query = query.filter(BillingRun.run_at == run_on)
        if with_failures is True:
            query = query.filter(BillingRun.failures > 0)
        elif with_failures is False:
            query = query.filter(BillingRun.failures == 0)
        query = apply_ordering(query, order_by, order_dir, _RUN_ORDERING)
        return apply_pagination(query, limit, offset).all()
