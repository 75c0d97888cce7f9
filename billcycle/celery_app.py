from datetime import timedelta

from celery import Celery

from billcycle.config import settings


def get_celery_config() -> dict:
    return {
        "broker_url": settings.celery_broker_url,
        "result_backend": settings.celery_result_backend,
        "timezone": "UTC",
        "task_serializer": "json",
        "result_serializer": "json",
        "accept_content": ["json"],
        "task_acks_late": True,
    }


def build_beat_schedule() -> dict:
    interval = max(settings.billing_cycle_interval_seconds, 60)
    return {
        "generate_invoices_due": {
            "task": "billcycle.tasks.billing.generate_invoices_due",
            "schedule": timedelta(seconds=interval),
        },
    }


celery_app = Celery("billcycle")
celery_app.conf.update(get_celery_config())
celery_app.conf.beat_schedule = build_beat_schedule()
celery_app.autodiscover_tasks(["billcycle.tasks"])
