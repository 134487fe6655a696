from datetime import timedelta

from celery import Celery
from celery.signals import worker_process_init

from app.config import settings
from app.logging import configure_logging
from app.telemetry import setup_otel


def build_beat_schedule() -> dict:
    return {
        "awareness_dispatch_tick": {
            "task": "app.tasks.campaigns.dispatch_due_campaigns",
            "schedule": timedelta(seconds=max(settings.dispatch_tick_seconds, 5)),
        },
    }


celery_app = Celery("phish_awareness", include=["app.tasks.campaigns", "app.tasks.delivery"])
celery_app.conf.update(
    broker_url=settings.celery_broker_url,
    result_backend=settings.celery_result_backend,
    timezone="UTC",
    task_acks_late=True,
    beat_schedule=build_beat_schedule(),
)


@worker_process_init.connect
def _init_worker(**_kwargs):
    configure_logging()
    setup_otel()
