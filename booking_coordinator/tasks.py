"""Celery background tasks."""

import asyncio
import logging

from celery import shared_task

logger = logging.getLogger(__name__)


def run_async(coro):
    """Run async function in sync context."""
    return asyncio.run(coro)


# ==================== RECOVERY TASKS ====================


@shared_task(bind=True, max_retries=3)
def run_recovery_sweep(self):
    """Reconcile stale bookings with the providers.

    Runs every ``recovery_interval_minutes`` from Celery beat.
    """
    try:
        summary = run_async(_run_recovery_sweep())
        return {"status": "success", "summary": summary}
    except Exception as exc:
        logger.error(f"Recovery sweep task failed: {exc}")
        self.retry(exc=exc, countdown=60)


async def _run_recovery_sweep() -> dict:
    from booking_coordinator.database import close_db
    from booking_coordinator.services.recovery import build_recovery_job

    try:
        summary = await build_recovery_job().sweep()
    finally:
        # Pooled connections are bound to this task's event loop
        await close_db()
    logger.info(f"Recovery sweep completed: {summary.as_dict()}")
    return summary.as_dict()
