"""Backfill manager -- historical syncs over a date range or from a cursor.

Backfills go through ``SyncEngine.sync_integration`` like every other run,
so they inherit its idempotency and retry guarantees. Without a client
supplied key, the key is derived from the provider and the requested
window, which makes an accidental double submission a no-op.
"""

from __future__ import annotations

import hashlib
from datetime import datetime

import structlog
from pydantic import AwareDatetime, BaseModel, Field

from src.integration_sync.core.context import OperatorContext
from src.integration_sync.errors import (
    IdempotencyConflictError,
    InvalidBackfillRequestError,
    ProviderNotRegisteredError,
)
from src.integration_sync.integrations.registry import ProviderRegistry
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
from src.integration_sync.sync.engine import PlannedSync, SyncEngine, SyncOptions

logger = structlog.get_logger(__name__)


class BackfillRequest(BaseModel):
    """Operator request for a historical sync.

    Dates must carry a UTC offset; naive timestamps are rejected.
    """

    provider: IntegrationProvider
    start_date: AwareDatetime | None = None
    end_date: AwareDatetime | None = None
    cursor: str | None = None
    idempotency_key: str | None = Field(default=None, min_length=3, max_length=200)


class BackfillRun(BaseModel):
    """Read projection of a BACKFILL run."""

    id: str
    provider: IntegrationProvider
    status: RunStatus
    started_at: datetime
    finished_at: datetime | None = None
    processed_count: int = 0
    success_count: int = 0
    failure_count: int = 0
    error_message: str | None = None
    idempotency_key: str
    since: str | None = None
    until: str | None = None
    cursor: str | None = None

    @classmethod
    def from_run(cls, run: IntegrationRun) -> BackfillRun:
        return cls(
            id=run.id,
            provider=run.provider,
            status=run.status,
            started_at=run.started_at,
            finished_at=run.finished_at,
            processed_count=run.processed_count,
            success_count=run.success_count,
            failure_count=run.failure_count,
            error_message=run.error_message,
            idempotency_key=run.idempotency_key,
            since=run.metadata.get("since_override"),
            until=run.metadata.get("until_override"),
            cursor=run.metadata.get("cursor_override"),
        )


def derive_backfill_key(config_id: str, request: BackfillRequest) -> str:
    """Deterministic key for a backfill window.

    The same provider, range and cursor always produce the same key.
    """
    fingerprint = "|".join(
        [
            request.provider.value,
            request.start_date.isoformat() if request.start_date else "",
            request.end_date.isoformat() if request.end_date else "",
            request.cursor or "",
        ]
    )
    digest = hashlib.sha256(fingerprint.encode()).hexdigest()[:24]
    return f"backfill:{config_id}:{digest}"


class BackfillManager:
    """Lists and triggers BACKFILL runs.

    Args:
        run_ledger: Source of runs (read-only here).
        config_store: Used to resolve the integration for a provider.
        registry: Rejects providers the engine does not poll.
        engine: Entry point for submission.
    """

    def __init__(
        self,
        run_ledger: RunLedger,
        config_store: IntegrationConfigStore,
        registry: ProviderRegistry,
        engine: SyncEngine,
    ) -> None:
        self._ledger = run_ledger
        self._configs = config_store
        self._registry = registry
        self._engine = engine

    async def list_backfills(
        self,
        context: OperatorContext,
        provider: IntegrationProvider | None = None,
        limit: int | None = None,
    ) -> list[BackfillRun]:
        filters = RunFilter(run_type=RunType.BACKFILL, provider=provider, limit=bounded_limit(limit))
        runs = await self._ledger.list_runs(context.organization_id, filters)
        return [BackfillRun.from_run(run) for run in runs]

    async def plan_backfill(self, context: OperatorContext, request: BackfillRequest) -> PlannedSync:
        """Validate a backfill request and build its sync request.

        Raises:
            InvalidBackfillRequestError: No start date or cursor, or an inverted range.
            ProviderNotRegisteredError: Provider is not polled by the engine.
            IntegrationNotConfiguredError: No enabled config for the provider.
            IntegrationInactiveError: The config is DISABLED.
            IdempotencyConflictError: A FAILED backfill already owns the key.
        """
        if request.start_date is None and not request.cursor:
            raise InvalidBackfillRequestError("A backfill needs a start_date or a cursor")
        if request.start_date and request.end_date and request.end_date < request.start_date:
            raise InvalidBackfillRequestError("end_date must not be earlier than start_date")
        if not self._registry.is_registered(request.provider):
            raise ProviderNotRegisteredError(f"{request.provider.value} does not support backfills")

        config = await self._configs.get(context.organization_id, request.provider)
        config = ensure_enabled(config, request.provider)

        if request.idempotency_key:
            key = f"backfill:{config.id}:{request.idempotency_key}"
        else:
            key = derive_backfill_key(config.id, request)

        existing = await self._ledger.find_by_idempotency_key(context.organization_id, key)
        if existing is not None and existing.status is RunStatus.FAILED:
            raise IdempotencyConflictError(
                f"Backfill run {existing.id} already failed under this key; replay it from the dead-letter queue",
                run_id=existing.id,
            )

        return PlannedSync(
            config=config,
            options=SyncOptions(
                run_type=RunType.BACKFILL,
                idempotency_key=key,
                since_override=request.start_date,
                until_override=request.end_date,
                cursor_override=request.cursor,
            ),
        )

    async def trigger_backfill(self, context: OperatorContext, request: BackfillRequest) -> str:
        """Plan and run a backfill. Returns the run id owning the key."""
        planned = await self.plan_backfill(context, request)
        logger.info(
            "backfill.submitted",
            organization_id=context.organization_id,
            provider=request.provider.value,
            idempotency_key=planned.options.idempotency_key,
            requested_by=context.user_id,
        )
        return await self._engine.submit(planned, context)
