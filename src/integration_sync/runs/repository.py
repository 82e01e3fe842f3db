"""Run ledger and integration config store -- interfaces and SQL implementations.

The engine depends only on the two abstract interfaces below, so it can be
exercised against in-memory fakes. The SQL implementations use the
session_factory callable pattern (an async generator yielding AsyncSession).

Concurrency contract:
- ``RunLedger.insert_if_absent`` is a single ``INSERT ... ON CONFLICT DO
  NOTHING RETURNING`` against the (organization_id, idempotency_key)
  unique constraint. The loser of a race gets the winner's row back with
  ``created=False``.
- ``RunLedger.finalize`` updates ``WHERE status = 'RUNNING'`` so a terminal
  run can never be rewritten, even by two finalizers racing each other.
"""

from __future__ import annotations

import uuid
from abc import ABC, abstractmethod
from collections.abc import AsyncGenerator, Callable
from datetime import datetime, timezone

import structlog
from sqlalchemy import case, func, select, text, update
from sqlalchemy.dialects.postgresql import insert as pg_insert
from sqlalchemy.ext.asyncio import AsyncSession

from src.integration_sync.errors import RunNotFoundError, RunStateError
from src.integration_sync.integrations.schemas import IntegrationProvider
from src.integration_sync.runs.models import (
    RUN_IDEMPOTENCY_CONSTRAINT,
    IntegrationConfigModel,
    IntegrationRunModel,
)
from src.integration_sync.runs.schemas import (
    ConfigSyncUpdate,
    IntegrationConfig,
    IntegrationRun,
    IntegrationStatus,
    RunAggregate,
    RunCreate,
    RunFilter,
    RunOutcome,
    RunStatus,
    RunType,
    ensure_transition,
)

logger = structlog.get_logger(__name__)

SessionFactory = Callable[..., AsyncGenerator[AsyncSession, None]]


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


def _as_uuid(value: str) -> uuid.UUID | None:
    try:
        return uuid.UUID(str(value))
    except ValueError:
        return None


# ── Interfaces ──────────────────────────────────────────────────────────────


class RunLedger(ABC):
    """Durable record of every sync attempt."""

    @abstractmethod
    async def find_by_idempotency_key(self, organization_id: str, idempotency_key: str) -> IntegrationRun | None:
        ...

    @abstractmethod
    async def insert_if_absent(self, data: RunCreate) -> tuple[IntegrationRun, bool]:
        """Create a RUNNING run unless the key exists. Returns (run, created)."""
        ...

    @abstractmethod
    async def get(self, run_id: str) -> IntegrationRun | None:
        ...

    @abstractmethod
    async def finalize(self, run_id: str, outcome: RunOutcome) -> IntegrationRun:
        """Move a RUNNING run to its terminal state.

        Raises:
            RunNotFoundError: If the run does not exist.
            RunStateError: If the run is already terminal.
        """
        ...

    @abstractmethod
    async def list_runs(self, organization_id: str, filters: RunFilter) -> list[IntegrationRun]:
        """Runs matching ``filters``, newest first, at most ``filters.limit``."""
        ...

    @abstractmethod
    async def count_runs(self, organization_id: str, filters: RunFilter) -> int:
        ...

    @abstractmethod
    async def summarize_window(self, organization_id: str, started_after: datetime) -> list[RunAggregate]:
        """Grouped counts of runs started after ``started_after``."""
        ...

    @abstractmethod
    async def list_stale_running(self, started_before: datetime) -> list[IntegrationRun]:
        """RUNNING runs (any organization) started before the cutoff."""
        ...

    @abstractmethod
    async def ping(self) -> None:
        """Raise if the backing store is unreachable."""
        ...


class IntegrationConfigStore(ABC):
    """Access to IntegrationConfig rows."""

    @abstractmethod
    async def get(self, organization_id: str, provider: IntegrationProvider) -> IntegrationConfig | None:
        ...

    @abstractmethod
    async def get_by_id(self, config_id: str) -> IntegrationConfig | None:
        ...

    @abstractmethod
    async def list_for_organization(self, organization_id: str) -> list[IntegrationConfig]:
        ...

    @abstractmethod
    async def list_enabled(self) -> list[IntegrationConfig]:
        """Enabled configs across all organizations (scheduler sweep)."""
        ...

    @abstractmethod
    async def save_cursor(self, config_id: str, cursor: str | None) -> None:
        """Persist an in-flight cursor so a failed run can resume."""
        ...

    @abstractmethod
    async def apply_sync_update(self, config_id: str, update_data: ConfigSyncUpdate) -> None:
        ...


# ── Serialization Helpers ───────────────────────────────────────────────────


def _model_to_run(model: IntegrationRunModel) -> IntegrationRun:
    """Convert IntegrationRunModel to IntegrationRun schema."""
    return IntegrationRun(
        id=str(model.id),
        organization_id=model.organization_id,
        integration_config_id=str(model.integration_config_id) if model.integration_config_id else None,
        provider=IntegrationProvider(model.provider),
        run_type=RunType(model.run_type),
        status=RunStatus(model.status),
        idempotency_key=model.idempotency_key,
        started_at=model.started_at,
        finished_at=model.finished_at,
        processed_count=model.processed_count or 0,
        success_count=model.success_count or 0,
        failure_count=model.failure_count or 0,
        error_message=model.error_message,
        metadata=model.run_metadata or {},
    )


def _model_to_config(model: IntegrationConfigModel) -> IntegrationConfig:
    """Convert IntegrationConfigModel to IntegrationConfig schema."""
    return IntegrationConfig(
        id=str(model.id),
        organization_id=model.organization_id,
        provider=IntegrationProvider(model.provider),
        enabled=model.enabled,
        credentials=model.credentials or {},
        settings=model.settings or {},
        sync_cursor=model.sync_cursor,
        webhook_secret=model.webhook_secret,
        status=model.status,
        last_sync_at=model.last_sync_at,
        last_error=model.last_error,
        created_at=model.created_at,
        updated_at=model.updated_at,
    )


def _apply_filters(stmt, organization_id: str, filters: RunFilter):
    stmt = stmt.where(IntegrationRunModel.organization_id == organization_id)
    if filters.status is not None:
        stmt = stmt.where(IntegrationRunModel.status == filters.status.value)
    if filters.provider is not None:
        stmt = stmt.where(IntegrationRunModel.provider == filters.provider.value)
    if filters.run_type is not None:
        stmt = stmt.where(IntegrationRunModel.run_type == filters.run_type.value)
    if filters.started_after is not None:
        stmt = stmt.where(IntegrationRunModel.started_at >= filters.started_after)
    return stmt


# ── SQL Run Ledger ──────────────────────────────────────────────────────────


class SqlRunLedger(RunLedger):
    """PostgreSQL-backed run ledger.

    Args:
        session_factory: Async callable that yields AsyncSession instances.
    """

    def __init__(self, session_factory: SessionFactory) -> None:
        self._session_factory = session_factory

    async def find_by_idempotency_key(self, organization_id: str, idempotency_key: str) -> IntegrationRun | None:
        async for session in self._session_factory():
            stmt = select(IntegrationRunModel).where(
                IntegrationRunModel.organization_id == organization_id,
                IntegrationRunModel.idempotency_key == idempotency_key,
            )
            result = await session.execute(stmt)
            model = result.scalar_one_or_none()
            return _model_to_run(model) if model else None

    async def insert_if_absent(self, data: RunCreate) -> tuple[IntegrationRun, bool]:
        """Atomically create the run or return the one already holding the key.

        Args:
            data: RunCreate payload; the run starts in RUNNING.

        Returns:
            Tuple of (run, created). ``created`` is False when another
            caller already owns the idempotency key.
        """
        async for session in self._session_factory():
            stmt = (
                pg_insert(IntegrationRunModel)
                .values(
                    organization_id=data.organization_id,
                    integration_config_id=_as_uuid(data.integration_config_id) if data.integration_config_id else None,
                    provider=data.provider.value,
                    run_type=data.run_type.value,
                    status=RunStatus.RUNNING.value,
                    idempotency_key=data.idempotency_key,
                    run_metadata=data.metadata,
                )
                .on_conflict_do_nothing(constraint=RUN_IDEMPOTENCY_CONSTRAINT)
                .returning(IntegrationRunModel)
            )
            result = await session.execute(stmt)
            model = result.scalars().first()
            await session.commit()
            if model is not None:
                return _model_to_run(model), True

            existing = await session.execute(
                select(IntegrationRunModel).where(
                    IntegrationRunModel.organization_id == data.organization_id,
                    IntegrationRunModel.idempotency_key == data.idempotency_key,
                )
            )
            logger.info(
                "ledger.idempotency_conflict",
                organization_id=data.organization_id,
                idempotency_key=data.idempotency_key,
            )
            return _model_to_run(existing.scalar_one()), False

    async def get(self, run_id: str) -> IntegrationRun | None:
        run_uuid = _as_uuid(run_id)
        if run_uuid is None:
            return None
        async for session in self._session_factory():
            model = await session.get(IntegrationRunModel, run_uuid)
            return _model_to_run(model) if model else None

    async def finalize(self, run_id: str, outcome: RunOutcome) -> IntegrationRun:
        ensure_transition(RunStatus.RUNNING, outcome.status)
        run_uuid = _as_uuid(run_id)
        if run_uuid is None:
            raise RunNotFoundError(f"Run '{run_id}' not found")

        async for session in self._session_factory():
            stmt = (
                update(IntegrationRunModel)
                .where(
                    IntegrationRunModel.id == run_uuid,
                    IntegrationRunModel.status == RunStatus.RUNNING.value,
                )
                .values(
                    status=outcome.status.value,
                    finished_at=outcome.finished_at or _utcnow(),
                    processed_count=outcome.processed_count,
                    success_count=outcome.success_count,
                    failure_count=outcome.failure_count,
                    error_message=outcome.error_message,
                )
                .returning(IntegrationRunModel)
            )
            result = await session.execute(stmt)
            model = result.scalars().first()
            await session.commit()
            if model is not None:
                return _model_to_run(model)

            current = await session.get(IntegrationRunModel, run_uuid)
            if current is None:
                raise RunNotFoundError(f"Run '{run_id}' not found")
            ensure_transition(RunStatus(current.status), outcome.status)
            raise RunStateError(f"Run '{run_id}' could not be finalized")

    async def list_runs(self, organization_id: str, filters: RunFilter) -> list[IntegrationRun]:
        async for session in self._session_factory():
            stmt = _apply_filters(select(IntegrationRunModel), organization_id, filters)
            stmt = stmt.order_by(IntegrationRunModel.started_at.desc()).limit(filters.limit)
            result = await session.execute(stmt)
            return [_model_to_run(m) for m in result.scalars().all()]

    async def count_runs(self, organization_id: str, filters: RunFilter) -> int:
        async for session in self._session_factory():
            stmt = _apply_filters(select(func.count(IntegrationRunModel.id)), organization_id, filters)
            result = await session.execute(stmt)
            return int(result.scalar_one())

    async def summarize_window(self, organization_id: str, started_after: datetime) -> list[RunAggregate]:
        async for session in self._session_factory():
            stmt = (
                select(
                    IntegrationRunModel.provider,
                    IntegrationRunModel.run_type,
                    IntegrationRunModel.status,
                    func.count(IntegrationRunModel.id),
                    func.coalesce(func.sum(IntegrationRunModel.processed_count), 0),
                    func.coalesce(func.sum(IntegrationRunModel.success_count), 0),
                    func.coalesce(func.sum(IntegrationRunModel.failure_count), 0),
                )
                .where(
                    IntegrationRunModel.organization_id == organization_id,
                    IntegrationRunModel.started_at >= started_after,
                )
                .group_by(
                    IntegrationRunModel.provider,
                    IntegrationRunModel.run_type,
                    IntegrationRunModel.status,
                )
            )
            result = await session.execute(stmt)
            return [
                RunAggregate(
                    provider=IntegrationProvider(provider),
                    run_type=RunType(run_type),
                    status=RunStatus(status),
                    runs=int(runs),
                    processed=int(processed),
                    successes=int(successes),
                    failures=int(failures),
                )
                for provider, run_type, status, runs, processed, successes, failures in result.all()
            ]

    async def list_stale_running(self, started_before: datetime) -> list[IntegrationRun]:
        async for session in self._session_factory():
            stmt = (
                select(IntegrationRunModel)
                .where(
                    IntegrationRunModel.status == RunStatus.RUNNING.value,
                    IntegrationRunModel.started_at < started_before,
                )
                .order_by(IntegrationRunModel.started_at.asc())
            )
            result = await session.execute(stmt)
            return [_model_to_run(m) for m in result.scalars().all()]

    async def ping(self) -> None:
        async for session in self._session_factory():
            await session.execute(text("SELECT 1"))


# ── SQL Config Store ────────────────────────────────────────────────────────


class SqlIntegrationConfigStore(IntegrationConfigStore):
    """PostgreSQL-backed integration config store.

    Args:
        session_factory: Async callable that yields AsyncSession instances.
    """

    def __init__(self, session_factory: SessionFactory) -> None:
        self._session_factory = session_factory

    async def get(self, organization_id: str, provider: IntegrationProvider) -> IntegrationConfig | None:
        async for session in self._session_factory():
            stmt = select(IntegrationConfigModel).where(
                IntegrationConfigModel.organization_id == organization_id,
                IntegrationConfigModel.provider == IntegrationProvider(provider).value,
            )
            result = await session.execute(stmt)
            model = result.scalar_one_or_none()
            return _model_to_config(model) if model else None

    async def get_by_id(self, config_id: str) -> IntegrationConfig | None:
        config_uuid = _as_uuid(config_id)
        if config_uuid is None:
            return None
        async for session in self._session_factory():
            model = await session.get(IntegrationConfigModel, config_uuid)
            return _model_to_config(model) if model else None

    async def list_for_organization(self, organization_id: str) -> list[IntegrationConfig]:
        async for session in self._session_factory():
            stmt = select(IntegrationConfigModel).where(
                IntegrationConfigModel.organization_id == organization_id,
            )
            result = await session.execute(stmt)
            return [_model_to_config(m) for m in result.scalars().all()]

    async def list_enabled(self) -> list[IntegrationConfig]:
        async for session in self._session_factory():
            stmt = select(IntegrationConfigModel).where(IntegrationConfigModel.enabled.is_(True))
            result = await session.execute(stmt)
            return [_model_to_config(m) for m in result.scalars().all()]

    async def save_cursor(self, config_id: str, cursor: str | None) -> None:
        async for session in self._session_factory():
            await session.execute(
                update(IntegrationConfigModel)
                .where(IntegrationConfigModel.id == uuid.UUID(config_id))
                .values(sync_cursor=cursor)
            )
            await session.commit()

    async def apply_sync_update(self, config_id: str, update_data: ConfigSyncUpdate) -> None:
        disabled = IntegrationStatus.DISABLED.value
        values: dict = {
            "status": case(
                (IntegrationConfigModel.status == disabled, disabled),
                else_=update_data.status.value,
            ),
            "last_error": update_data.last_error,
        }
        if update_data.update_checkpoint:
            values["sync_cursor"] = update_data.sync_cursor
        if update_data.last_sync_at is not None:
            values["last_sync_at"] = update_data.last_sync_at

        async for session in self._session_factory():
            await session.execute(
                update(IntegrationConfigModel)
                .where(IntegrationConfigModel.id == uuid.UUID(config_id))
                .values(**values)
            )
            await session.commit()
