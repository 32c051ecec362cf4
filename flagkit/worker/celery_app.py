"""
Celery application configuration.
"""

from celery import Celery
from celery.signals import worker_process_init

from flagkit.core.config import settings
from flagkit.core.logging import configure_logging

app = Celery(
    "flagkit-worker",
    broker=settings.queue.broker_url,
    backend=settings.queue.result_backend,
    include=[
        "flagkit.worker.tasks.scheduled",
    ],
)

# Celery configuration
app.conf.update(
    # Task settings
    task_serializer="json",
    accept_content=["json"],
    result_serializer="json",
    timezone="UTC",
    enable_utc=True,

    # Task routing
    task_routes={
        "flagkit.worker.tasks.scheduled.*": {"queue": "scheduled"},
    },

    # Retry settings
    task_default_retry_delay=60,
    task_max_retries=3,

    # Result backend settings
    result_expires=3600,

    # Worker settings
    worker_prefetch_multiplier=1,
    worker_concurrency=1,

    # Beat schedule (periodic tasks)
    beat_schedule={
        "execute-rollout-schedules": {
            "task": "flagkit.worker.tasks.scheduled.execute_rollout_schedules",
            "schedule": settings.queue.schedule_interval,
            # a pass that waited a full interval is superseded by the next one
            "options": {"expires": settings.queue.schedule_interval},
        },
    },
)


@worker_process_init.connect
def setup_worker_logging(**kwargs) -> None:
    configure_logging()


if __name__ == "__main__":
    app.start()
