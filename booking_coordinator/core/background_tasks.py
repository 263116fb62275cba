"""In-process recovery scheduler for single-process deployments.

Production runs the sweep from Celery beat (see ``worker.py``); this loop is
started from the FastAPI lifespan only when ``run_recovery_in_process`` is
enabled.
"""

import asyncio
import logging

from booking_coordinator.config import settings

logger = logging.getLogger(__name__)

# Flag to stop the background task
_stop_recovery = False


async def run_recovery_sweep(trigger: str = "scheduled") -> dict | None:
    """Run one recovery sweep against the database store."""
    from booking_coordinator.services.recovery import build_recovery_job

    logger.info(f"Starting recovery sweep (trigger: {trigger})")
    try:
        job = build_recovery_job()
        summary = await job.sweep()
    except Exception as e:
        logger.error(f"Recovery sweep failed: {e}")
        return None

    logger.info(f"Recovery sweep completed: {summary.as_dict()}")
    return summary.as_dict()


async def start_recovery_scheduler() -> None:
    """Background task that runs the recovery sweep periodically."""
    global _stop_recovery
    _stop_recovery = False

    interval_seconds = settings.recovery_interval_minutes * 60
    logger.info(f"Recovery scheduler started (every {settings.recovery_interval_minutes} min)")

    while not _stop_recovery:
        await run_recovery_sweep(trigger="scheduled")

        # Check the stop flag every second
        for _ in range(interval_seconds):
            if _stop_recovery:
                break
            await asyncio.sleep(1)

    logger.info("Recovery scheduler stopped")


def stop_recovery_scheduler() -> None:
    """Signal the recovery scheduler to stop."""
    global _stop_recovery
    _stop_recovery = True
