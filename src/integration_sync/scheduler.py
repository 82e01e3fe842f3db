"""Background loops for scheduled syncs and orphaned-run reconciliation.

Task functions are defined separately from the loop that drives them so
tests can run a single sweep directly.
"""

from __future__ import annotations

import asyncio
from datetime import timedelta

import structlog

from src.integration_sync.config import Settings, get_settings
from src.integration_sync.sync.engine import SyncEngine

logger = structlog.get_logger(__name__)


def setup_sync_scheduler(engine: SyncEngine, settings: Settings | None = None) -> dict:
    """Build the background task callables.

    Tasks:
    1. scheduled_sync: sweep every enabled integration once per slot
    2. reconcile_orphaned_runs: fail RUNNING runs whose worker went away

    Each task logs and swallows its own errors so one bad sweep never
    stops the loop.

    Returns:
        Dict mapping task name to (async callable, interval seconds).
    """
    settings = settings or get_settings()
    slot_seconds = settings.SCHEDULED_SYNC_INTERVAL_SECONDS
    orphan_after = timedelta(minutes=settings.RUN_ORPHAN_AFTER_MINUTES)

    async def scheduled_sync_task():
        try:
            results = await engine.sync_all(slot_seconds=slot_seconds)
            logger.info("scheduler.scheduled_sync_completed", integrations=len(results))
            return results
        except Exception:
            logger.warning("scheduler.scheduled_sync_failed", exc_info=True)
            return {}

    async def reconcile_task():
        try:
            count = await engine.reconcile_orphaned_runs(orphan_after)
            logger.info("scheduler.orphaned_runs_reconciled", count=count)
            return count
        except Exception:
            logger.warning("scheduler.reconcile_failed", exc_info=True)
            return 0

    return {
        "scheduled_sync": (scheduled_sync_task, slot_seconds),
        "reconcile_orphaned_runs": (reconcile_task, settings.RUN_RECONCILE_INTERVAL_SECONDS),
    }


async def start_scheduler_background(tasks: dict, app_state) -> list[asyncio.Task]:
    """Start each task as an asyncio loop and store the handles on ``app_state``.

    Args:
        tasks: Output of ``setup_sync_scheduler``.
        app_state: FastAPI app.state; ``sync_scheduler_tasks`` is cancelled on shutdown.
    """
    background_tasks: list[asyncio.Task] = []

    for task_name, (task_fn, interval) in tasks.items():

        async def _loop(fn=task_fn, name=task_name, sleep=interval):
            """Run the task every ``sleep`` seconds until cancelled."""
            while True:
                try:
                    await asyncio.sleep(sleep)
                    await fn()
                except asyncio.CancelledError:
                    logger.info("scheduler.task_cancelled", task=name)
                    break
                except Exception:
                    logger.warning("scheduler.task_loop_error", task=name, exc_info=True)

        background_tasks.append(asyncio.create_task(_loop(), name=f"sync_scheduler_{task_name}"))

    app_state.sync_scheduler_tasks = background_tasks

    logger.info(
        "scheduler.background_tasks_started",
        task_count=len(background_tasks),
        tasks=list(tasks.keys()),
    )
    return background_tasks
