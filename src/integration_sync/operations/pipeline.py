"""Pipeline status -- per-run-type summary for operator dashboards."""

from __future__ import annotations

from collections.abc import Callable
from datetime import datetime, timedelta, timezone
from typing import Protocol

from pydantic import BaseModel, Field

from src.integration_sync.core.context import OperatorContext
from src.integration_sync.runs.repository import RunLedger
from src.integration_sync.runs.schemas import IntegrationRun, RunAggregate, RunFilter, RunStatus, RunType

LATEST_RUNS_LIMIT = 25

# Dashboard bucket -> run types it covers
RUN_TYPE_BUCKETS: dict[str, tuple[RunType, ...]] = {
    "sync": (RunType.MANUAL, RunType.SCHEDULED),
    "backfill": (RunType.BACKFILL,),
    "replay": (RunType.REPLAY,),
}


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


class ApprovalCounter(Protocol):
    """Source of pending approvals (owned by the surrounding platform)."""

    async def count_pending(self, organization_id: str) -> int: ...


class RunTypeSummary(BaseModel):
    total: int = 0
    completed: int = 0
    failed: int = 0
    running: int = 0
    processed: int = 0
    successes: int = 0
    failures: int = 0


class PipelineStatus(BaseModel):
    window_hours: int
    sync: RunTypeSummary = Field(default_factory=RunTypeSummary)
    backfill: RunTypeSummary = Field(default_factory=RunTypeSummary)
    replay: RunTypeSummary = Field(default_factory=RunTypeSummary)
    pending_approvals: int = 0
    failed_backfills: int = 0
    latest_runs: list[IntegrationRun] = Field(default_factory=list)


def summarize(aggregates: list[RunAggregate], run_types: tuple[RunType, ...]) -> RunTypeSummary:
    summary = RunTypeSummary()
    for aggregate in aggregates:
        if aggregate.run_type not in run_types:
            continue
        summary.total += aggregate.runs
        summary.processed += aggregate.processed
        summary.successes += aggregate.successes
        summary.failures += aggregate.failures
        if aggregate.status is RunStatus.COMPLETED:
            summary.completed += aggregate.runs
        elif aggregate.status is RunStatus.FAILED:
            summary.failed += aggregate.runs
        else:
            summary.running += aggregate.runs
    return summary


class PipelineStatusReporter:
    """Builds the pipeline status view.

    Args:
        run_ledger: Source of run aggregates and latest runs.
        approvals: Optional pending-approval source; 0 is reported without one.
        clock: Returns the current UTC time.
    """

    def __init__(
        self,
        run_ledger: RunLedger,
        approvals: ApprovalCounter | None = None,
        *,
        clock: Callable[[], datetime] = _utcnow,
    ) -> None:
        self._ledger = run_ledger
        self._approvals = approvals
        self._clock = clock

    async def pipeline_status(self, context: OperatorContext, window_hours: int = 24) -> PipelineStatus:
        if window_hours <= 0:
            raise ValueError("window_hours must be positive")

        since = self._clock() - timedelta(hours=window_hours)
        aggregates = await self._ledger.summarize_window(context.organization_id, since)
        latest = await self._ledger.list_runs(
            context.organization_id, RunFilter(started_after=since, limit=LATEST_RUNS_LIMIT),
        )
        pending = await self._approvals.count_pending(context.organization_id) if self._approvals else 0

        backfill = summarize(aggregates, RUN_TYPE_BUCKETS["backfill"])
        return PipelineStatus(
            window_hours=window_hours,
            sync=summarize(aggregates, RUN_TYPE_BUCKETS["sync"]),
            backfill=backfill,
            replay=summarize(aggregates, RUN_TYPE_BUCKETS["replay"]),
            pending_approvals=pending,
            failed_backfills=backfill.failed,
            latest_runs=latest,
        )
