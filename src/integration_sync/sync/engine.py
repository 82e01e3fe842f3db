"""Sync engine -- orchestrates provider fetches into auditable, idempotent runs.

Flow for one ``sync_integration`` call:
1. Look up the idempotency key in the run ledger. A COMPLETED or RUNNING
   run short-circuits (its id is returned, the adapter is not called); a
   FAILED run under the same key is a conflict, since failed work is only
   ever retried under a fresh key.
2. Atomically insert a RUNNING run (insert-if-absent). Losing the insert
   race resolves exactly like step 1.
3. Resolve the adapter from the registry and page through the provider,
   every page fetch going through the retry executor. Records are handed
   to the processing queue page by page. Incremental runs persist the
   cursor after every page so a failed run resumes where it stopped.
4. On success: finalize the run COMPLETED, mark the config ACTIVE and
   advance its checkpoint (incremental runs only).
5. On failure: finalize the run FAILED with the failed attempt count and
   error message, downgrade the config (DEGRADED or FAILED by failure
   class), and re-raise the original error to the caller. A failure in
   that bookkeeping is logged and never replaces the original error.

A config switched off or DISABLED is never synced, and a status written
after a run never overwrites DISABLED.

The engine is also the only writer of runs and configs for the scheduler
sweep (``sync_all``) and the orphaned-run reconciliation
(``reconcile_orphaned_runs``).
"""

from __future__ import annotations

import asyncio
from collections.abc import Callable
from dataclasses import dataclass, field
from datetime import datetime, timedelta, timezone
from functools import partial
from typing import Any

import structlog

from src.integration_sync.core.context import OperatorContext
from src.integration_sync.core.monitoring import record_fetch_attempt, track_sync_run
from src.integration_sync.errors import (
    IdempotencyConflictError,
    IntegrationInactiveError,
    IntegrationNotConfiguredError,
    IntegrationSyncError,
    OrganizationScopeError,
    ProviderNotRegisteredError,
    RunStateError,
)
from src.integration_sync.integrations.adapter import ProviderAdapter
from src.integration_sync.integrations.registry import ProviderRegistry
from src.integration_sync.integrations.schemas import IntegrationProvider, NormalizedRecord
from src.integration_sync.processing.queue import ProcessingJob, ProcessingQueue
from src.integration_sync.runs.repository import IntegrationConfigStore, RunLedger
from src.integration_sync.runs.schemas import (
    SYNCABLE_STATUSES,
    ConfigSyncUpdate,
    IntegrationConfig,
    IntegrationRun,
    IntegrationStatus,
    RunCreate,
    RunOutcome,
    RunStatus,
    RunType,
    ensure_enabled,
)
from src.integration_sync.sync.failures import classify_failure
from src.integration_sync.sync.retry import RetryPolicy, Sleep, with_retry

logger = structlog.get_logger(__name__)

ORPHANED_RUN_MESSAGE = "orphaned run reconciled"

_OVERRIDE_KEYS = ("since_override", "until_override", "cursor_override")


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


def _parse_datetime(value: Any) -> datetime | None:
    if value is None or isinstance(value, datetime):
        return value
    return datetime.fromisoformat(str(value))


# ── Options ─────────────────────────────────────────────────────────────────


@dataclass(frozen=True)
class SyncOptions:
    """Parameters of one sync request.

    Any override turns the run into a windowed run: it reads from the given
    position instead of the config checkpoint and does not move the
    checkpoint when it completes.
    """

    run_type: RunType
    idempotency_key: str
    since_override: datetime | None = None
    until_override: datetime | None = None
    cursor_override: str | None = None
    metadata: dict[str, Any] = field(default_factory=dict)

    @property
    def has_overrides(self) -> bool:
        return any(v is not None for v in (self.since_override, self.until_override, self.cursor_override))

    def run_metadata(self, context: OperatorContext) -> dict[str, Any]:
        """Metadata persisted on the run; overrides are kept so a replay re-issues the same window."""
        data = dict(self.metadata)
        if self.since_override is not None:
            data["since_override"] = self.since_override.isoformat()
        if self.until_override is not None:
            data["until_override"] = self.until_override.isoformat()
        if self.cursor_override is not None:
            data["cursor_override"] = self.cursor_override
        if context.user_id:
            data["requested_by"] = context.user_id
        return data


def overrides_from_metadata(metadata: dict[str, Any]) -> dict[str, Any]:
    """Recover SyncOptions override kwargs from a run's metadata."""
    return {
        "since_override": _parse_datetime(metadata.get("since_override")),
        "until_override": _parse_datetime(metadata.get("until_override")),
        "cursor_override": metadata.get("cursor_override"),
    }


def strip_overrides(metadata: dict[str, Any]) -> dict[str, Any]:
    return {k: v for k, v in metadata.items() if k not in _OVERRIDE_KEYS and k != "requested_by"}


@dataclass(frozen=True)
class PlannedSync:
    """A validated sync request ready to hand to ``SyncEngine.submit``."""

    config: IntegrationConfig
    options: SyncOptions


@dataclass(frozen=True)
class CredentialCheck:
    """Outcome of testing an integration's stored credentials."""

    valid: bool
    message: str


@dataclass
class _RunTally:
    processed: int = 0
    succeeded: int = 0
    failures: int = 0
    pages: int = 0
    exhausted: bool = False
    final_cursor: str | None = None


# ── Engine ──────────────────────────────────────────────────────────────────


class SyncEngine:
    """Runs provider syncs against the run ledger and config store.

    Args:
        run_ledger: Durable store of IntegrationRun rows.
        config_store: Store of IntegrationConfig rows.
        registry: Adapter registry keyed by provider.
        processing_queue: Downstream hand-off for fetched records.
        retry_policy: Retry budget applied to every page fetch.
        max_pages: Upper bound on pages fetched in a single run.
        sleep: Sleep used between retries (tests inject a no-op).
        clock: Returns the current UTC time.
    """

    def __init__(
        self,
        run_ledger: RunLedger,
        config_store: IntegrationConfigStore,
        registry: ProviderRegistry,
        processing_queue: ProcessingQueue,
        *,
        retry_policy: RetryPolicy | None = None,
        max_pages: int = 100,
        sleep: Sleep = asyncio.sleep,
        clock: Callable[[], datetime] = _utcnow,
    ) -> None:
        self._ledger = run_ledger
        self._configs = config_store
        self._registry = registry
        self._queue = processing_queue
        self._retry_policy = retry_policy or RetryPolicy()
        self._max_pages = max_pages
        self._sleep = sleep
        self._clock = clock

    # ── Public API ──────────────────────────────────────────────────────

    async def sync_integration(
        self,
        config: IntegrationConfig,
        options: SyncOptions,
        context: OperatorContext,
    ) -> str:
        """Run one idempotent sync of ``config``.

        Args:
            config: Integration to sync.
            options: Run type, idempotency key and optional window overrides.
            context: Caller identity; must own the integration.

        Returns:
            Id of the run that owns ``options.idempotency_key``.

        Raises:
            OrganizationScopeError: If the context does not own the config.
            IntegrationNotConfiguredError: If the config is switched off.
            IntegrationInactiveError: If the config is DISABLED.
            IdempotencyConflictError: If a FAILED run already owns the key.
            Exception: Whatever the adapter, queue or ledger raised, after
                the run has been recorded as FAILED.
        """
        if context.organization_id != config.organization_id:
            raise OrganizationScopeError(
                f"Organization '{context.organization_id}' does not own integration '{config.id}'"
            )
        ensure_enabled(config, config.provider)
        if not options.idempotency_key:
            raise ValueError("idempotency_key is required")

        log = logger.bind(
            organization_id=config.organization_id,
            provider=config.provider.value,
            run_type=options.run_type.value,
            idempotency_key=options.idempotency_key,
        )

        existing = await self._ledger.find_by_idempotency_key(config.organization_id, options.idempotency_key)
        if existing is not None:
            return self._resolve_existing(existing, log)

        run, created = await self._ledger.insert_if_absent(
            RunCreate(
                organization_id=config.organization_id,
                integration_config_id=config.id,
                provider=config.provider,
                run_type=options.run_type,
                idempotency_key=options.idempotency_key,
                metadata=options.run_metadata(context),
            )
        )
        if not created:
            return self._resolve_existing(run, log)

        log = log.bind(run_id=run.id)
        log.info("sync.run_started", requested_by=context.user_id, windowed=options.has_overrides)

        tally = _RunTally()
        async with track_sync_run(config.provider.value, options.run_type.value) as tracker:
            try:
                adapter = self._registry.resolve(config.provider)
                await self._execute(run, config, adapter, options, tally, log)
            except Exception as exc:
                tracker["records"] = tally.processed
                await self._fail_run(run, config, exc, tally, log)
                raise
            tracker["records"] = tally.processed
            await self._complete_run(run, config, options, tally, log)
        return run.id

    async def submit(self, planned: PlannedSync, context: OperatorContext) -> str:
        """Execute a request produced by one of the ``plan_*`` helpers."""
        return await self.sync_integration(planned.config, planned.options, context)

    async def plan_manual_sync(
        self,
        context: OperatorContext,
        provider: IntegrationProvider | str,
        client_key: str | None = None,
    ) -> PlannedSync:
        """Validate an on-demand sync request and derive its idempotency key.

        The key is ``manual:{config_id}:{client_key}``; without a client key
        the request time in milliseconds is used, so every click is a new run.

        Raises:
            ProviderNotRegisteredError: Webhook-only or unknown provider.
            IntegrationNotConfiguredError: No enabled config for the provider.
            IntegrationInactiveError: Config is FAILED or DISABLED.
            IdempotencyConflictError: A FAILED run already owns the client key.
        """
        provider = IntegrationProvider(provider)
        if not self._registry.is_registered(provider):
            raise ProviderNotRegisteredError(
                f"{provider.value} is not polled by the sync engine and cannot be synced on demand"
            )

        config = ensure_enabled(await self._configs.get(context.organization_id, provider), provider)
        if config.status not in SYNCABLE_STATUSES:
            raise IntegrationInactiveError(
                f"{provider.value} integration is {config.status.value}; fix its configuration before syncing"
            )

        suffix = client_key or str(int(self._clock().timestamp() * 1000))
        key = f"manual:{config.id}:{suffix}"
        if client_key:
            existing = await self._ledger.find_by_idempotency_key(context.organization_id, key)
            if existing is not None and existing.status is RunStatus.FAILED:
                raise IdempotencyConflictError(
                    f"Run {existing.id} already failed under idempotency key '{key}'; replay it instead",
                    run_id=existing.id,
                )
        return PlannedSync(
            config=config,
            options=SyncOptions(run_type=RunType.MANUAL, idempotency_key=key),
        )

    async def test_credentials(
        self,
        context: OperatorContext,
        provider: IntegrationProvider | str,
    ) -> CredentialCheck:
        """Check the stored credentials with the provider and record the result.

        Valid credentials mark the config ACTIVE and clear ``last_error``;
        rejected credentials, or a provider error while checking, mark it
        FAILED with the reason. This is how a FAILED integration becomes
        syncable again once its credentials are fixed. Webhook-only
        providers have nothing to check and are activated directly.

        Raises:
            IntegrationNotConfiguredError: No config for the provider.
        """
        provider = IntegrationProvider(provider)
        config = await self._configs.get(context.organization_id, provider)
        if config is None:
            raise IntegrationNotConfiguredError(f"{provider.value} integration is not configured")

        if not self._registry.is_registered(provider):
            check = CredentialCheck(valid=True, message=f"{provider.value} integration activated")
        else:
            adapter = self._registry.resolve(provider)
            try:
                valid = await adapter.validate_credentials(config.credentials)
            except IntegrationSyncError as exc:
                check = CredentialCheck(valid=False, message=exc.message)
            else:
                message = "Credentials validated successfully" if valid else "Credential validation failed"
                check = CredentialCheck(valid=valid, message=message)

        if check.valid:
            update = ConfigSyncUpdate(status=IntegrationStatus.ACTIVE, last_error=None)
        else:
            update = ConfigSyncUpdate(status=IntegrationStatus.FAILED, last_error=check.message)
        await self._configs.apply_sync_update(config.id, update)

        logger.info(
            "sync.credentials_tested",
            organization_id=context.organization_id,
            provider=provider.value,
            valid=check.valid,
            requested_by=context.user_id,
        )
        return check

    async def sync_all(self, now: datetime | None = None, slot_seconds: int = 900) -> dict[str, str | None]:
        """Scheduled sweep over every enabled, syncable integration.

        Each integration gets a SCHEDULED run keyed by its time slot, so a
        sweep that fires twice in one slot does not sync twice. Failures are
        logged per integration and never stop the sweep.

        Returns:
            Mapping of config id to run id (None where the sync raised).
        """
        now = now or self._clock()
        slot = int(now.timestamp()) // slot_seconds

        configs = await self._configs.list_enabled()
        eligible = [
            c for c in configs
            if c.status in SYNCABLE_STATUSES and self._registry.is_registered(c.provider)
        ]
        results = await asyncio.gather(*(self._scheduled_sync(c, slot) for c in eligible))
        summary = dict(zip((c.id for c in eligible), results))

        logger.info(
            "sync.sweep_complete",
            eligible=len(eligible),
            skipped=len(configs) - len(eligible),
            failed=sum(1 for r in results if r is None),
        )
        return summary

    async def reconcile_orphaned_runs(self, older_than: timedelta, now: datetime | None = None) -> int:
        """Mark RUNNING runs older than ``older_than`` as FAILED.

        Covers runs whose worker died or was cancelled mid-flight. A run that
        finishes on its own between the scan and the update is left alone.

        Returns:
            Number of runs reconciled.
        """
        cutoff = (now or self._clock()) - older_than
        stale = await self._ledger.list_stale_running(cutoff)

        reconciled = 0
        for run in stale:
            try:
                await self._ledger.finalize(
                    run.id,
                    RunOutcome(
                        status=RunStatus.FAILED,
                        processed_count=run.processed_count,
                        success_count=run.success_count,
                        failure_count=max(run.failure_count, 1),
                        error_message=ORPHANED_RUN_MESSAGE,
                        finished_at=self._clock(),
                    ),
                )
            except RunStateError:
                continue
            reconciled += 1
            logger.warning(
                "sync.orphaned_run_reconciled",
                run_id=run.id,
                organization_id=run.organization_id,
                provider=run.provider.value,
                started_at=run.started_at.isoformat(),
            )
        return reconciled

    # ── Internals ───────────────────────────────────────────────────────

    def _resolve_existing(self, run: IntegrationRun, log) -> str:
        if run.status is RunStatus.COMPLETED:
            log.info("sync.idempotent_hit", run_id=run.id)
            return run.id
        if run.status is RunStatus.RUNNING:
            log.info("sync.run_in_progress", run_id=run.id)
            return run.id
        raise IdempotencyConflictError(
            f"Run {run.id} already failed under idempotency key '{run.idempotency_key}'; "
            "replay it to retry under a new key",
            run_id=run.id,
        )

    async def _scheduled_sync(self, config: IntegrationConfig, slot: int) -> str | None:
        options = SyncOptions(run_type=RunType.SCHEDULED, idempotency_key=f"scheduled:{config.id}:{slot}")
        try:
            return await self.sync_integration(config, options, OperatorContext.system(config.organization_id))
        except Exception as exc:
            logger.warning(
                "sync.scheduled_run_failed",
                organization_id=config.organization_id,
                provider=config.provider.value,
                config_id=config.id,
                error=str(exc),
            )
            return None

    async def _execute(
        self,
        run: IntegrationRun,
        config: IntegrationConfig,
        adapter: ProviderAdapter,
        options: SyncOptions,
        tally: _RunTally,
        log,
    ) -> None:
        incremental = not options.has_overrides
        if options.cursor_override is not None:
            cursor = options.cursor_override
        else:
            cursor = config.sync_cursor if incremental else None
        since = config.last_sync_at if incremental else options.since_override
        until = options.until_override
        provider = config.provider.value

        def _on_failed(attempt: int, exc: BaseException) -> None:
            tally.failures += 1
            record_fetch_attempt(provider, "failure")

        while True:
            page = await with_retry(
                partial(adapter.fetch, config.credentials, cursor, since, until),
                self._retry_policy,
                sleep=self._sleep,
                on_attempt_failed=_on_failed,
                label=f"{provider}.fetch",
            )
            record_fetch_attempt(provider, "success")
            tally.pages += 1
            tally.processed += len(page.records)

            if page.records:
                jobs = [self._job(run, config, record) for record in page.records]
                tally.succeeded += await self._queue.add(jobs)

            cursor = page.next_cursor
            if not (page.has_more and cursor):
                tally.exhausted = True
                break
            if incremental:
                await self._configs.save_cursor(config.id, cursor)
            if tally.pages >= self._max_pages:
                log.warning("sync.page_limit_reached", pages=tally.pages, cursor=cursor)
                break

        tally.final_cursor = None if tally.exhausted else cursor

    @staticmethod
    def _job(run: IntegrationRun, config: IntegrationConfig, record: NormalizedRecord) -> ProcessingJob:
        return ProcessingJob(
            organization_id=config.organization_id,
            integration_config_id=config.id,
            provider=config.provider.value,
            run_id=run.id,
            record_type=record.record_type,
            payload=record.model_dump(mode="json"),
        )

    async def _complete_run(
        self,
        run: IntegrationRun,
        config: IntegrationConfig,
        options: SyncOptions,
        tally: _RunTally,
        log,
    ) -> None:
        now = self._clock()
        await self._ledger.finalize(
            run.id,
            RunOutcome(
                status=RunStatus.COMPLETED,
                processed_count=tally.processed,
                success_count=tally.succeeded,
                failure_count=tally.failures,
                finished_at=now,
            ),
        )

        if options.has_overrides:
            update = ConfigSyncUpdate(status=IntegrationStatus.ACTIVE, last_error=None)
        else:
            update = ConfigSyncUpdate(
                status=IntegrationStatus.ACTIVE,
                last_error=None,
                update_checkpoint=True,
                sync_cursor=tally.final_cursor,
                last_sync_at=now if tally.exhausted else None,
            )
        await self._configs.apply_sync_update(config.id, update)

        log.info(
            "sync.run_completed",
            pages=tally.pages,
            processed=tally.processed,
            handed_off=tally.succeeded,
            failed_attempts=tally.failures,
            exhausted=tally.exhausted,
        )

    async def _fail_run(
        self,
        run: IntegrationRun,
        config: IntegrationConfig,
        exc: Exception,
        tally: _RunTally,
        log,
    ) -> None:
        failure_class = classify_failure(exc)
        config_status = IntegrationStatus.DEGRADED if failure_class.retryable else IntegrationStatus.FAILED
        message = str(exc) or type(exc).__name__
        failure_count = max(tally.failures, 1)

        try:
            await self._ledger.finalize(
                run.id,
                RunOutcome(
                    status=RunStatus.FAILED,
                    processed_count=tally.processed,
                    success_count=tally.succeeded,
                    failure_count=failure_count,
                    error_message=message,
                    finished_at=self._clock(),
                ),
            )
        except RunStateError:
            log.warning("sync.run_already_terminal")
        except Exception:
            log.warning("sync.fail_bookkeeping_failed", stage="finalize", exc_info=True)

        try:
            await self._configs.apply_sync_update(
                config.id,
                ConfigSyncUpdate(status=config_status, last_error=message),
            )
        except Exception:
            log.warning("sync.fail_bookkeeping_failed", stage="config_update", exc_info=True)

        log.error(
            "sync.run_failed",
            error=message,
            error_type=type(exc).__name__,
            failure_class=failure_class.value,
            failure_count=failure_count,
            config_status=config_status.value,
        )
