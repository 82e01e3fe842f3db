"""In-memory test doubles for the run ledger, config store, queue and adapters.

They mirror the SQL/Redis semantics (atomic insert-if-absent, terminal-run
immutability, checkpoint gating) so engine and operator tests run without
Postgres or Redis.
"""

from __future__ import annotations

from collections import defaultdict
from collections.abc import Callable
from datetime import datetime, timezone
from typing import Any

from src.integration_sync.errors import ProviderError, RunNotFoundError
from src.integration_sync.integrations.adapter import ProviderAdapter
from src.integration_sync.integrations.schemas import (
    FetchResult,
    IntegrationProvider,
    NormalizedCall,
    ProviderCategory,
)
from src.integration_sync.processing.queue import ProcessingJob, ProcessingQueue
from src.integration_sync.runs.repository import IntegrationConfigStore, RunLedger
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

NOW = datetime(2026, 3, 1, 12, 0, tzinfo=timezone.utc)


# ── In-Memory Test Doubles ───────────────────────────────────────────────────


class InMemoryRunLedger(RunLedger):
    """In-memory RunLedger for testing without database."""

    def __init__(self, clock: Callable[[], datetime] = lambda: NOW) -> None:
        self.runs: dict[str, IntegrationRun] = {}
        self.insert_calls = 0
        self.ping_error: Exception | None = None
        self._clock = clock
        self._seq = 0

    def seed(self, **fields: Any) -> IntegrationRun:
        """Insert a run directly, bypassing the engine."""
        self._seq += 1
        fields.setdefault("id", f"run-seed-{self._seq}")
        fields.setdefault("organization_id", "org-1")
        fields.setdefault("provider", IntegrationProvider.GONG)
        fields.setdefault("run_type", RunType.MANUAL)
        fields.setdefault("idempotency_key", f"seed:{fields['id']}")
        fields.setdefault("started_at", self._clock())
        run = IntegrationRun(**fields)
        self.runs[run.id] = run
        return run

    async def find_by_idempotency_key(self, organization_id: str, idempotency_key: str) -> IntegrationRun | None:
        for run in self.runs.values():
            if run.organization_id == organization_id and run.idempotency_key == idempotency_key:
                return run
        return None

    async def insert_if_absent(self, data: RunCreate) -> tuple[IntegrationRun, bool]:
        self.insert_calls += 1
        existing = await self.find_by_idempotency_key(data.organization_id, data.idempotency_key)
        if existing is not None:
            return existing, False
        self._seq += 1
        run = IntegrationRun(
            id=f"run-{self._seq}",
            organization_id=data.organization_id,
            integration_config_id=data.integration_config_id,
            provider=data.provider,
            run_type=data.run_type,
            idempotency_key=data.idempotency_key,
            started_at=self._clock(),
            metadata=dict(data.metadata),
        )
        self.runs[run.id] = run
        return run, True

    async def get(self, run_id: str) -> IntegrationRun | None:
        return self.runs.get(run_id)

    async def finalize(self, run_id: str, outcome: RunOutcome) -> IntegrationRun:
        run = self.runs.get(run_id)
        if run is None:
            raise RunNotFoundError(f"Run '{run_id}' not found")
        ensure_transition(run.status, outcome.status)
        updated = run.model_copy(update=outcome.model_dump())
        self.runs[run_id] = updated
        return updated

    def _matching(self, organization_id: str, filters: RunFilter) -> list[IntegrationRun]:
        runs = [
            r for r in self.runs.values()
            if r.organization_id == organization_id
            and (filters.status is None or r.status is filters.status)
            and (filters.provider is None or r.provider is filters.provider)
            and (filters.run_type is None or r.run_type is filters.run_type)
            and (filters.started_after is None or r.started_at >= filters.started_after)
        ]
        return sorted(runs, key=lambda r: r.started_at, reverse=True)

    async def list_runs(self, organization_id: str, filters: RunFilter) -> list[IntegrationRun]:
        return self._matching(organization_id, filters)[: filters.limit]

    async def count_runs(self, organization_id: str, filters: RunFilter) -> int:
        return len(self._matching(organization_id, filters))

    async def summarize_window(self, organization_id: str, started_after: datetime) -> list[RunAggregate]:
        groups: dict[tuple, list[IntegrationRun]] = defaultdict(list)
        for run in self._matching(organization_id, RunFilter(started_after=started_after)):
            groups[(run.provider, run.run_type, run.status)].append(run)
        return [
            RunAggregate(
                provider=provider,
                run_type=run_type,
                status=status,
                runs=len(runs),
                processed=sum(r.processed_count for r in runs),
                successes=sum(r.success_count for r in runs),
                failures=sum(r.failure_count for r in runs),
            )
            for (provider, run_type, status), runs in groups.items()
        ]

    async def list_stale_running(self, started_before: datetime) -> list[IntegrationRun]:
        return [
            r for r in self.runs.values()
            if r.status is RunStatus.RUNNING and r.started_at < started_before
        ]

    async def ping(self) -> None:
        if self.ping_error is not None:
            raise self.ping_error


class InMemoryConfigStore(IntegrationConfigStore):
    """In-memory IntegrationConfigStore recording every write."""

    def __init__(self) -> None:
        self.configs: dict[str, IntegrationConfig] = {}
        self.cursor_saves: list[tuple[str, str | None]] = []
        self.updates: list[tuple[str, ConfigSyncUpdate]] = []

    def add(self, **fields: Any) -> IntegrationConfig:
        fields.setdefault("id", f"cfg-{len(self.configs) + 1}")
        fields.setdefault("organization_id", "org-1")
        fields.setdefault("provider", IntegrationProvider.GONG)
        config = IntegrationConfig(**fields)
        self.configs[config.id] = config
        return config

    async def get(self, organization_id: str, provider: IntegrationProvider) -> IntegrationConfig | None:
        for config in self.configs.values():
            if config.organization_id == organization_id and config.provider is IntegrationProvider(provider):
                return config
        return None

    async def get_by_id(self, config_id: str) -> IntegrationConfig | None:
        return self.configs.get(config_id)

    async def list_for_organization(self, organization_id: str) -> list[IntegrationConfig]:
        return [c for c in self.configs.values() if c.organization_id == organization_id]

    async def list_enabled(self) -> list[IntegrationConfig]:
        return [c for c in self.configs.values() if c.enabled]

    async def save_cursor(self, config_id: str, cursor: str | None) -> None:
        self.cursor_saves.append((config_id, cursor))
        self.configs[config_id] = self.configs[config_id].model_copy(update={"sync_cursor": cursor})

    async def apply_sync_update(self, config_id: str, update_data: ConfigSyncUpdate) -> None:
        self.updates.append((config_id, update_data))
        current = self.configs[config_id]
        status = current.status if current.status is IntegrationStatus.DISABLED else update_data.status
        changes: dict[str, Any] = {"status": status, "last_error": update_data.last_error}
        if update_data.update_checkpoint:
            changes["sync_cursor"] = update_data.sync_cursor
        if update_data.last_sync_at is not None:
            changes["last_sync_at"] = update_data.last_sync_at
        self.configs[config_id] = current.model_copy(update=changes)


class RecordingQueue(ProcessingQueue):
    """ProcessingQueue that keeps every job in a list."""

    def __init__(self) -> None:
        self.jobs: list[ProcessingJob] = []
        self.ping_error: Exception | None = None

    async def add(self, jobs: list[ProcessingJob]) -> int:
        self.jobs.extend(jobs)
        return len(jobs)

    async def ping(self) -> None:
        if self.ping_error is not None:
            raise self.ping_error


class FakeAdapter(ProviderAdapter):
    """Scripted adapter: each fetch pops the next page or raises the next error.

    ``script`` items are FetchResult pages or exceptions; once exhausted the
    last item repeats.
    """

    category = ProviderCategory.CALL_RECORDING

    def __init__(self, provider: IntegrationProvider = IntegrationProvider.GONG, script: list | None = None) -> None:
        self.provider = provider
        self.script = list(script or [FetchResult()])
        self.calls: list[dict[str, Any]] = []
        self.probe_error: Exception | None = None
        self.credentials_valid: bool | Exception = True
        self.validated: list[dict[str, Any]] = []

    def parse_credentials(self, raw: dict[str, Any]) -> Any:
        return raw

    async def validate_credentials(self, credentials: dict[str, Any]) -> bool:
        self.validated.append(credentials)
        if isinstance(self.credentials_valid, BaseException):
            raise self.credentials_valid
        return self.credentials_valid

    async def fetch(self, credentials, cursor=None, since=None, until=None) -> FetchResult:
        self.calls.append({"cursor": cursor, "since": since, "until": until})
        item = self.script.pop(0) if len(self.script) > 1 else self.script[0]
        if isinstance(item, BaseException):
            raise item
        return item

    async def probe(self) -> str:
        if self.probe_error is not None:
            raise self.probe_error
        return "HTTP 200"


def call(external_id: str) -> NormalizedCall:
    return NormalizedCall(external_id=external_id, title=f"Call {external_id}")


def page(*ids: str, cursor: str | None = None) -> FetchResult:
    return FetchResult(records=[call(i) for i in ids], next_cursor=cursor, has_more=cursor is not None)


def outage(message: str = "GONG API returned 503", status_code: int | None = 503) -> ProviderError:
    return ProviderError(message, provider="GONG", status_code=status_code)
