"""Tests for the scheduled-sync and reconciliation background tasks."""

from __future__ import annotations

import asyncio
from datetime import timedelta
from types import SimpleNamespace
from unittest.mock import AsyncMock, MagicMock

import pytest

from src.integration_sync.config import Settings
from src.integration_sync.runs.schemas import RunStatus, RunType
from src.integration_sync.scheduler import setup_sync_scheduler, start_scheduler_background
from tests.doubles import NOW

SETTINGS = Settings(
    SCHEDULED_SYNC_INTERVAL_SECONDS=900,
    RUN_RECONCILE_INTERVAL_SECONDS=600,
    RUN_ORPHAN_AFTER_MINUTES=60,
)


def test_tasks_and_intervals():
    tasks = setup_sync_scheduler(MagicMock(), SETTINGS)

    assert set(tasks) == {"scheduled_sync", "reconcile_orphaned_runs"}
    assert tasks["scheduled_sync"][1] == 900
    assert tasks["reconcile_orphaned_runs"][1] == 600


@pytest.mark.asyncio
async def test_scheduled_sync_task_sweeps_enabled_configs(engine, ledger, configs):
    configs.add(id="cfg-1")
    configs.add(id="cfg-off", enabled=False)
    scheduled_sync, _ = setup_sync_scheduler(engine, SETTINGS)["scheduled_sync"]

    results = await scheduled_sync()

    assert list(results) == ["cfg-1"]
    run = ledger.runs[results["cfg-1"]]
    assert run.run_type is RunType.SCHEDULED


@pytest.mark.asyncio
async def test_reconcile_task_fails_orphaned_runs(engine, ledger):
    ledger.seed(id="run-stuck", started_at=NOW - timedelta(hours=2))
    ledger.seed(id="run-fresh", started_at=NOW - timedelta(minutes=5))
    reconcile, _ = setup_sync_scheduler(engine, SETTINGS)["reconcile_orphaned_runs"]

    assert await reconcile() == 1
    assert ledger.runs["run-stuck"].status is RunStatus.FAILED
    assert ledger.runs["run-fresh"].status is RunStatus.RUNNING


@pytest.mark.asyncio
async def test_task_errors_are_swallowed():
    broken = MagicMock()
    broken.sync_all = AsyncMock(side_effect=RuntimeError("db gone"))
    broken.reconcile_orphaned_runs = AsyncMock(side_effect=RuntimeError("db gone"))
    tasks = setup_sync_scheduler(broken, SETTINGS)

    assert await tasks["scheduled_sync"][0]() == {}
    assert await tasks["reconcile_orphaned_runs"][0]() == 0


@pytest.mark.asyncio
async def test_background_loops_run_until_cancelled():
    ticks: list[str] = []

    async def tick():
        ticks.append("tick")

    state = SimpleNamespace()
    handles = await start_scheduler_background({"tick": (tick, 0.01)}, state)
    await asyncio.sleep(0.05)

    assert state.sync_scheduler_tasks == handles
    assert ticks

    for handle in handles:
        handle.cancel()
    await asyncio.gather(*handles, return_exceptions=True)
    assert all(handle.done() for handle in handles)
