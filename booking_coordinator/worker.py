"""Celery worker configuration.

Runs the recovery and reconciliation sweep on a beat schedule. Start with::

    celery -A booking_coordinator.worker worker --beat
"""

from celery import Celery

from booking_coordinator.config import settings

celery_app = Celery(
    "booking_coordinator",
    broker=settings.redis_url,
    backend=settings.redis_url,
    include=["booking_coordinator.tasks"],
)

celery_app.conf.update(
    # Task settings
    task_serializer="json",
    accept_content=["json"],
    result_serializer="json",
    timezone="UTC",
    enable_utc=True,

    # Task execution settings
    task_acks_late=True,
    task_reject_on_worker_lost=True,
    task_time_limit=300,
    task_soft_time_limit=240,

    # Worker settings
    worker_prefetch_multiplier=1,

    # Result backend settings
    result_expires=3600,

    # Retry settings
    task_default_retry_delay=60,
    task_max_retries=3,

    beat_schedule={
        "recovery-sweep": {
            "task": "booking_coordinator.tasks.run_recovery_sweep",
            "schedule": settings.recovery_interval_minutes * 60.0,
        },
    },
)


if __name__ == "__main__":
    celery_app.start()
