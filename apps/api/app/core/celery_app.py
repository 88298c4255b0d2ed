from celery import Celery

from app.core.config import get_settings
from app.logging import configure_logging
from app.otel import setup_otel

settings = get_settings()

configure_logging()
setup_otel("worker", settings.otel_enabled)

celery_app = Celery(
    "pipeline_automations",
    broker=settings.redis_url,
    backend=settings.redis_url,
    include=["app.automations.tasks"],
)
celery_app.conf.task_acks_late = True
celery_app.conf.task_default_queue = "automations"
celery_app.conf.beat_schedule = {
    "automations-sweep-waiting-runs": {
        "task": "app.automations.sweep_waiting_runs",
        "schedule": float(settings.automation_sweep_interval_seconds),
    },
}
