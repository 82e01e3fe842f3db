"""Tests for the pipeline status view."""

from __future__ import annotations

from datetime import timedelta

import pytest

from src.integration_sync.core.context import OperatorContext
from src.integration_sync.operations.pipeline import LATEST_RUNS_LIMIT, PipelineStatusReporter
from src.integration_sync.runs.schemas import RunStatus, RunType
from tests.doubles import NOW

CTX = OperatorContext(organization_id="org-1", user_id="ops-1")


class StaticApprovals:
    def __init__(self, pending: int) -> None:
        self.pending = pending
        self.asked: list[str] = []

    async def count_pending(self, organization_id: str) -> int:
        self.asked.append(organization_id)
        return self.pending


@pytest.mark.asyncio
async def test_buckets_runs_by_type(ledger):
    ledger.seed(run_type=RunType.MANUAL, status=RunStatus.COMPLETED, processed_count=5, success_count=5)
    ledger.seed(run_type=RunType.SCHEDULED, status=RunStatus.FAILED, failure_count=4)
    ledger.seed(run_type=RunType.SCHEDULED, status=RunStatus.RUNNING)
    ledger.seed(run_type=RunType.BACKFILL, status=RunStatus.FAILED, failure_count=1)
    ledger.seed(run_type=RunType.REPLAY, status=RunStatus.COMPLETED, processed_count=2, success_count=2)
    ledger.seed(id="run-old", run_type=RunType.MANUAL, status=RunStatus.FAILED, started_at=NOW - timedelta(days=3))

    approvals = StaticApprovals(pending=7)
    status = await PipelineStatusReporter(ledger, approvals, clock=lambda: NOW).pipeline_status(CTX)

    assert (status.sync.total, status.sync.completed, status.sync.failed, status.sync.running) == (3, 1, 1, 1)
    assert status.sync.processed == 5
    assert status.sync.failures == 4
    assert status.backfill.failed == 1
    assert status.failed_backfills == 1
    assert status.replay.successes == 2
    assert status.pending_approvals == 7
    assert approvals.asked == ["org-1"]
    assert len(status.latest_runs) == 5
    assert "run-old" not in {run.id for run in status.latest_runs}


@pytest.mark.asyncio
async def test_latest_runs_are_capped_and_scoped(ledger):
    for i in range(LATEST_RUNS_LIMIT + 5):
        ledger.seed(started_at=NOW - timedelta(minutes=i))
    ledger.seed(id="run-foreign", organization_id="org-2")

    status = await PipelineStatusReporter(ledger, clock=lambda: NOW).pipeline_status(CTX)

    assert len(status.latest_runs) == LATEST_RUNS_LIMIT
    assert all(run.organization_id == "org-1" for run in status.latest_runs)
    assert status.pending_approvals == 0


@pytest.mark.asyncio
async def test_rejects_non_positive_window(ledger):
    with pytest.raises(ValueError):
        await PipelineStatusReporter(ledger, clock=lambda: NOW).pipeline_status(CTX, window_hours=-1)


@pytest.mark.asyncio
async def test_latest_runs_follow_the_window(ledger):
    ledger.seed(id="run-recent", started_at=NOW - timedelta(hours=2))
    ledger.seed(id="run-yesterday", started_at=NOW - timedelta(hours=30))

    reporter = PipelineStatusReporter(ledger, clock=lambda: NOW)

    narrow = await reporter.pipeline_status(CTX, window_hours=6)
    wide = await reporter.pipeline_status(CTX, window_hours=48)

    assert [run.id for run in narrow.latest_runs] == ["run-recent"]
    assert [run.id for run in wide.latest_runs] == ["run-recent", "run-yesterday"]
