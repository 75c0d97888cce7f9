"""Tests for Celery tasks."""

import uuid
from datetime import date
from types import SimpleNamespace
from unittest.mock import MagicMock, patch

import pytest

from billcycle.services.billing.errors import SubscriptionNotActive
from billcycle.services.billing_automation import BillingCycleOutcome, BillingCycleResult


def _result(outcome, closed=False):
    return BillingCycleResult(uuid.uuid4(), outcome, closed=closed)


class TestGenerateInvoicesDue:
    def test_success(self):
        mock_session = MagicMock()
        run = SimpleNamespace(id=uuid.uuid4(), invoices_created=2, failures=0)

        with patch("billcycle.tasks.billing.SessionLocal", return_value=mock_session):
            with patch(
                "billcycle.tasks.billing.billing_automation_service.generate_invoices_due",
                return_value=run,
            ) as mock_run:
                from billcycle.tasks.billing import generate_invoices_due

                result = generate_invoices_due("2024-04-01")

        mock_run.assert_called_once_with(mock_session, date(2024, 4, 1))
        assert result == {"run_id": str(run.id), "invoices_created": 2, "failures": 0}
        mock_session.close.assert_called_once()

    def test_exception_rolls_back(self):
        mock_session = MagicMock()

        with patch("billcycle.tasks.billing.SessionLocal", return_value=mock_session):
            with patch(
                "billcycle.tasks.billing.billing_automation_service.generate_invoices_due",
                side_effect=Exception("Billing error"),
            ):
                from billcycle.tasks.billing import generate_invoices_due

                with pytest.raises(Exception, match="Billing error"):
                    generate_invoices_due()

        mock_session.rollback.assert_called_once()
        mock_session.close.assert_called_once()

    def test_job_duration_observed(self):
        with patch("billcycle.tasks.billing.SessionLocal", return_value=MagicMock()):
            with patch(
                "billcycle.tasks.billing.billing_automation_service.generate_invoices_due",
                return_value=SimpleNamespace(id=uuid.uuid4(), invoices_created=0, failures=0),
            ):
                with patch("billcycle.tasks.billing.observe_job") as mock_observe:
                    from billcycle.tasks.billing import generate_invoices_due

                    generate_invoices_due()

        name, status, _ = mock_observe.call_args.args
        assert (name, status) == ("generate_invoices_due", "success")


class TestRunSubscriptionCycle:
    def test_catches_up_until_not_due(self):
        mock_session = MagicMock()
        outcomes = [
            _result(BillingCycleOutcome.generated),
            _result(BillingCycleOutcome.generated),
            _result(BillingCycleOutcome.not_due),
        ]
        subscription_id = str(uuid.uuid4())

        with patch("billcycle.tasks.billing.SessionLocal", return_value=mock_session):
            with patch(
                "billcycle.tasks.billing.billing_automation_service.run_billing_cycle",
                side_effect=outcomes,
            ) as mock_cycle:
                from billcycle.tasks.billing import run_subscription_cycle

                result = run_subscription_cycle(subscription_id, "2024-03-01")

        assert result == ["generated", "generated", "not_due"]
        assert mock_cycle.call_count == 3
        mock_cycle.assert_called_with(mock_session, subscription_id, date(2024, 3, 1))
        mock_session.close.assert_called_once()

    def test_stops_when_closed(self):
        with patch("billcycle.tasks.billing.SessionLocal", return_value=MagicMock()):
            with patch(
                "billcycle.tasks.billing.billing_automation_service.run_billing_cycle",
                side_effect=[_result(BillingCycleOutcome.generated, closed=True)],
            ):
                from billcycle.tasks.billing import run_subscription_cycle

                assert run_subscription_cycle(str(uuid.uuid4()), "2024-03-01") == ["generated"]

    def test_inactive_subscription_is_skipped(self):
        mock_session = MagicMock()

        with patch("billcycle.tasks.billing.SessionLocal", return_value=mock_session):
            with patch(
                "billcycle.tasks.billing.billing_automation_service.run_billing_cycle",
                side_effect=SubscriptionNotActive("Subscription is cancelled"),
            ):
                from billcycle.tasks.billing import run_subscription_cycle

                assert run_subscription_cycle(str(uuid.uuid4())) == []

        mock_session.rollback.assert_not_called()
        mock_session.close.assert_called_once()


class TestDispatchBillingCycles:
    def test_queues_one_task_per_due_subscription(self):
        mock_session = MagicMock()
        due = [SimpleNamespace(id=uuid.uuid4()), SimpleNamespace(id=uuid.uuid4())]
        mock_session.query.return_value.filter.return_value.filter.return_value.all.return_value = due

        with patch("billcycle.tasks.billing.SessionLocal", return_value=mock_session):
            with patch("billcycle.tasks.billing.run_subscription_cycle.delay") as mock_delay:
                from billcycle.tasks.billing import dispatch_billing_cycles

                assert dispatch_billing_cycles("2024-03-01") == 2

        assert [call.args for call in mock_delay.call_args_list] == [
            (str(due[0].id), "2024-03-01"),
            (str(due[1].id), "2024-03-01"),
        ]
        mock_session.close.assert_called_once()


def test_beat_schedule_runs_billing():
    from billcycle.celery_app import celery_app

    entry = celery_app.conf.beat_schedule["generate_invoices_due"]
    assert entry["task"] == "billcycle.tasks.billing.generate_invoices_due"
