"""Dead-letter manager -- inspection and replay of failed runs.

Failed runs are never revived. A replay reads the failed run's provider and
window parameters, derives a fresh idempotency key
(``replay:{original_key}:{timestamp}-{nonce}``), and submits a new REPLAY
run through ``SyncEngine.sync_integration``. The original FAILED row stays
untouched as the audit record.
"""

from __future__ import annotations

import uuid
from collections.abc import Callable
from datetime import datetime, timezone

import structlog
from pydantic import BaseModel, Field

from src.integration_sync.core.context import OperatorContext
from src.integration_sync.errors import RunNotFoundError, RunNotReplayableError
from src.integration_sync.integrations.schemas import IntegrationProvider
from src.integration_sync.runs.repository import IntegrationConfigStore, RunLedger
from src.integration_sync.runs.schemas import (
    IntegrationRun,
    RunFilter,
    RunStatus,
    RunType,
    bounded_limit,
    ensure_enabled,
)
from src.integration_sync.sync.engine import (
    PlannedSync,
    SyncEngine,
    SyncOptions,
    overrides_from_metadata,
    strip_overrides,
)
from src.integration_sync.sync.failures import FailureClass, classify_message

logger = structlog.get_logger(__name__)


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


def _nonce() -> str:
    return uuid.uuid4().hex[:8]


class DeadLetterRun(BaseModel):
    """Read projection of a FAILED run."""

    id: str
    provider: IntegrationProvider
    run_type: RunType
    started_at: datetime
    finished_at: datetime | None = None
    processed_count: int = 0
    success_count: int = 0
    failure_count: int = 0
    error_message: str | None = None
    idempotency_key: str
    failure_class: FailureClass

    @classmethod
    def from_run(cls, run: IntegrationRun) -> DeadLetterRun:
        return cls(
            id=run.id,
            provider=run.provider,
            run_type=run.run_type,
            started_at=run.started_at,
            finished_at=run.finished_at,
            processed_count=run.processed_count,
            success_count=run.success_count,
            failure_count=run.failure_count,
            error_message=run.error_message,
            idempotency_key=run.idempotency_key,
            failure_class=classify_message(run.error_message),
        )


class DeadLetterListing(BaseModel):
    failed_runs: list[DeadLetterRun] = Field(default_factory=list)
    total_failed: int = 0


class DeadLetterManager:
    """Lists FAILED runs and re-submits them as REPLAY runs.

    Args:
        run_ledger: Source of runs (read-only here).
        config_store: Used to load the integration a run belongs to.
        engine: Entry point for re-submission.
        clock: Returns the current UTC time.
        nonce_factory: Returns a short random string for replay keys.
    """

    def __init__(
        self,
        run_ledger: RunLedger,
        config_store: IntegrationConfigStore,
        engine: SyncEngine,
        *,
        clock: Callable[[], datetime] = _utcnow,
        nonce_factory: Callable[[], str] = _nonce,
    ) -> None:
        self._ledger = run_ledger
        self._configs = config_store
        self._engine = engine
        self._clock = clock
        self._nonce = nonce_factory

    async def list_dead_letter_runs(
        self,
        context: OperatorContext,
        provider: IntegrationProvider | None = None,
        limit: int | None = None,
    ) -> DeadLetterListing:
        """Failed runs for the caller's organization, newest first.

        ``total_failed`` counts every matching failed run, not only the
        returned page.
        """
        filters = RunFilter(status=RunStatus.FAILED, provider=provider, limit=bounded_limit(limit))
        runs = await self._ledger.list_runs(context.organization_id, filters)
        total = await self._ledger.count_runs(context.organization_id, filters)
        return DeadLetterListing(
            failed_runs=[DeadLetterRun.from_run(run) for run in runs],
            total_failed=total,
        )

    async def list_runs(
        self,
        context: OperatorContext,
        status: RunStatus | None = None,
        provider: IntegrationProvider | None = None,
        limit: int | None = None,
    ) -> list[IntegrationRun]:
        """General run listing for the operator console."""
        filters = RunFilter(status=status, provider=provider, limit=bounded_limit(limit))
        return await self._ledger.list_runs(context.organization_id, filters)

    async def plan_replay(self, context: OperatorContext, run_id: str) -> PlannedSync:
        """Validate a replay and build its sync request.

        Raises:
            RunNotFoundError: Unknown run, or a run of another organization.
            RunNotReplayableError: The run is not FAILED.
            IntegrationNotConfiguredError: The run's integration no longer exists or is switched off.
            IntegrationInactiveError: The run's integration is DISABLED.
        """
        run = await self._ledger.get(run_id)
        if run is None or run.organization_id != context.organization_id:
            raise RunNotFoundError(f"Run '{run_id}' not found")
        if run.status is not RunStatus.FAILED:
            raise RunNotReplayableError(f"Only FAILED runs can be replayed; run {run.id} is {run.status.value}")

        config = None
        if run.integration_config_id:
            config = await self._configs.get_by_id(run.integration_config_id)
        if config is None:
            config = await self._configs.get(context.organization_id, run.provider)
        config = ensure_enabled(config, run.provider)

        stamp = int(self._clock().timestamp() * 1000)
        key = f"replay:{run.idempotency_key}:{stamp}-{self._nonce()}"
        options = SyncOptions(
            run_type=RunType.REPLAY,
            idempotency_key=key,
            metadata={
                **strip_overrides(run.metadata),
                "replay_of": run.id,
                "original_run_type": run.run_type.value,
            },
            **overrides_from_metadata(run.metadata),
        )
        return PlannedSync(config=config, options=options)

    async def replay_failed_run(self, context: OperatorContext, run_id: str) -> str:
        """Replay a FAILED run under a fresh key. Returns the new run id."""
        planned = await self.plan_replay(context, run_id)
        logger.info(
            "dead_letter.replay_submitted",
            organization_id=context.organization_id,
            run_id=run_id,
            idempotency_key=planned.options.idempotency_key,
            requested_by=context.user_id,
        )
        return await self._engine.submit(planned, context)
