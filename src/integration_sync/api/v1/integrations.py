"""REST endpoints for integration syncs, credential checks, the run ledger, dead letters and backfills.

Every request is validated synchronously (so operators see 4xx errors
immediately) and the sync itself runs as a background task after the
response is sent. The run ledger is the place to track progress.
"""

from __future__ import annotations

from collections.abc import Awaitable, Callable
from datetime import datetime
from typing import Any

import structlog
from fastapi import APIRouter, BackgroundTasks, Depends, Header, HTTPException, Query, Request, status
from pydantic import BaseModel, Field

from src.integration_sync.api.deps import (
    get_component,
    get_operator_context,
    parse_provider,
    to_http_exception,
)
from src.integration_sync.core.context import OperatorContext
from src.integration_sync.errors import IntegrationSyncError
from src.integration_sync.operations.backfill import BackfillManager, BackfillRequest, BackfillRun
from src.integration_sync.operations.dead_letter import DeadLetterManager, DeadLetterListing
from src.integration_sync.runs.schemas import IntegrationRun, RunStatus
from src.integration_sync.sync.engine import PlannedSync, SyncEngine

logger = structlog.get_logger(__name__)

router = APIRouter(prefix="/integrations", tags=["integrations"])


# ── Response Schemas ─────────────────────────────────────────────────────────


class SyncAccepted(BaseModel):
    """Response for an accepted sync, replay or backfill submission."""

    accepted: bool = True
    provider: str
    run_type: str
    idempotency_key: str
    replay_of: str | None = None
    message: str


class RunResponse(BaseModel):
    """Run ledger entry, datetimes serialized to ISO strings."""

    id: str
    provider: str
    run_type: str
    status: str
    idempotency_key: str
    started_at: str
    finished_at: str | None = None
    processed_count: int = 0
    success_count: int = 0
    failure_count: int = 0
    error_message: str | None = None


class CredentialTestResponse(BaseModel):
    valid: bool
    message: str


class RunListResponse(BaseModel):
    runs: list[RunResponse] = Field(default_factory=list)


class BackfillListResponse(BaseModel):
    backfills: list[BackfillRun] = Field(default_factory=list)


# ── Dependency Injection Helpers ─────────────────────────────────────────────


def _get_engine(request: Request) -> SyncEngine:
    return get_component(request, "sync_engine", "Sync engine")


def _get_dead_letter_manager(request: Request) -> DeadLetterManager:
    return get_component(request, "dead_letter_manager", "Dead-letter manager")


def _get_backfill_manager(request: Request) -> BackfillManager:
    return get_component(request, "backfill_manager", "Backfill manager")


# ── Conversion Helpers ───────────────────────────────────────────────────────


def _iso(value: datetime | None) -> str | None:
    return value.isoformat() if value else None


def _run_to_response(run: IntegrationRun) -> RunResponse:
    return RunResponse(
        id=run.id,
        provider=run.provider.value,
        run_type=run.run_type.value,
        status=run.status.value,
        idempotency_key=run.idempotency_key,
        started_at=run.started_at.isoformat(),
        finished_at=_iso(run.finished_at),
        processed_count=run.processed_count,
        success_count=run.success_count,
        failure_count=run.failure_count,
        error_message=run.error_message,
    )


def _accepted(planned: PlannedSync, message: str) -> SyncAccepted:
    return SyncAccepted(
        provider=planned.config.provider.value,
        run_type=planned.options.run_type.value,
        idempotency_key=planned.options.idempotency_key,
        replay_of=planned.options.metadata.get("replay_of"),
        message=message,
    )


async def _run_in_background(
    submit: Callable[[PlannedSync, OperatorContext], Awaitable[str]],
    planned: PlannedSync,
    context: OperatorContext,
) -> None:
    """Execute a planned sync after the response has been sent.

    The engine records failures on the run itself; here they are only logged.
    """
    try:
        run_id = await submit(planned, context)
        logger.info(
            "integrations.background_sync_finished",
            run_id=run_id,
            idempotency_key=planned.options.idempotency_key,
        )
    except Exception as exc:
        logger.warning(
            "integrations.background_sync_failed",
            provider=planned.config.provider.value,
            run_type=planned.options.run_type.value,
            idempotency_key=planned.options.idempotency_key,
            error=str(exc),
        )


async def _plan(step: Awaitable[PlannedSync]) -> PlannedSync:
    try:
        return await step
    except IntegrationSyncError as exc:
        raise to_http_exception(exc)


# ── Sync Endpoints ───────────────────────────────────────────────────────────


@router.post("/{provider}/sync", response_model=SyncAccepted, status_code=status.HTTP_202_ACCEPTED)
async def trigger_sync(
    provider: str,
    request: Request,
    background_tasks: BackgroundTasks,
    context: OperatorContext = Depends(get_operator_context),
    idempotency_key: str | None = Header(default=None, alias="X-Idempotency-Key"),
) -> SyncAccepted:
    """Start an on-demand sync for one provider.

    ``X-Idempotency-Key`` lets clients retry the request safely: the same
    key maps to the same run.
    """
    engine = _get_engine(request)
    parsed = parse_provider(provider)
    client_key = idempotency_key.strip() if idempotency_key and idempotency_key.strip() else None

    planned = await _plan(engine.plan_manual_sync(context, parsed, client_key))
    background_tasks.add_task(_run_in_background, engine.submit, planned, context)
    logger.info(
        "integrations.sync_triggered",
        organization_id=context.organization_id,
        provider=parsed.value,
        idempotency_key=planned.options.idempotency_key,
        requested_by=context.user_id,
    )
    return _accepted(planned, f"Sync started for {parsed.value}. Track it via GET /api/v1/integrations/ops/runs")


# ── Credentials ──────────────────────────────────────────────────────────────


@router.post("/{provider}/test", response_model=CredentialTestResponse)
async def check_credentials(
    provider: str,
    request: Request,
    context: OperatorContext = Depends(get_operator_context),
) -> CredentialTestResponse:
    """Validate the stored credentials and record the result on the integration.

    Valid credentials bring a FAILED integration back to ACTIVE.
    """
    engine = _get_engine(request)
    try:
        check = await engine.test_credentials(context, parse_provider(provider))
    except IntegrationSyncError as exc:
        raise to_http_exception(exc)
    return CredentialTestResponse(valid=check.valid, message=check.message)


# ── Run Ledger ───────────────────────────────────────────────────────────────


@router.get("/ops/runs", response_model=RunListResponse)
async def list_runs(
    request: Request,
    context: OperatorContext = Depends(get_operator_context),
    run_status: RunStatus | None = Query(default=None, alias="status"),
    provider: str | None = Query(default=None),
    limit: int | None = Query(default=None),
) -> RunListResponse:
    manager = _get_dead_letter_manager(request)
    runs = await manager.list_runs(
        context,
        status=run_status,
        provider=parse_provider(provider) if provider else None,
        limit=limit,
    )
    return RunListResponse(runs=[_run_to_response(run) for run in runs])


# ── Dead Letters ─────────────────────────────────────────────────────────────


@router.get("/ops/dead-letter", response_model=DeadLetterListing)
async def list_dead_letter_runs(
    request: Request,
    context: OperatorContext = Depends(get_operator_context),
    provider: str | None = Query(default=None),
    limit: int | None = Query(default=None),
) -> DeadLetterListing:
    manager = _get_dead_letter_manager(request)
    return await manager.list_dead_letter_runs(
        context,
        provider=parse_provider(provider) if provider else None,
        limit=limit,
    )


@router.post(
    "/ops/dead-letter/{run_id}/replay",
    response_model=SyncAccepted,
    status_code=status.HTTP_202_ACCEPTED,
)
@router.post(
    "/ops/runs/{run_id}/replay",
    response_model=SyncAccepted,
    status_code=status.HTTP_202_ACCEPTED,
)
async def replay_dead_letter_run(
    run_id: str,
    request: Request,
    background_tasks: BackgroundTasks,
    context: OperatorContext = Depends(get_operator_context),
) -> SyncAccepted:
    """Re-run a FAILED run under a fresh idempotency key."""
    manager = _get_dead_letter_manager(request)
    engine = _get_engine(request)

    planned = await _plan(manager.plan_replay(context, run_id))
    background_tasks.add_task(_run_in_background, engine.submit, planned, context)
    logger.info(
        "integrations.replay_triggered",
        organization_id=context.organization_id,
        run_id=run_id,
        idempotency_key=planned.options.idempotency_key,
        requested_by=context.user_id,
    )
    return _accepted(planned, f"Replay of run {run_id} started")


# ── Backfills ────────────────────────────────────────────────────────────────


@router.get("/ops/backfills", response_model=BackfillListResponse)
async def list_backfills(
    request: Request,
    context: OperatorContext = Depends(get_operator_context),
    provider: str | None = Query(default=None),
    limit: int | None = Query(default=None),
) -> BackfillListResponse:
    manager = _get_backfill_manager(request)
    backfills = await manager.list_backfills(
        context,
        provider=parse_provider(provider) if provider else None,
        limit=limit,
    )
    return BackfillListResponse(backfills=backfills)


@router.post("/ops/backfills", response_model=SyncAccepted, status_code=status.HTTP_202_ACCEPTED)
async def trigger_backfill(
    body: dict[str, Any],
    request: Request,
    background_tasks: BackgroundTasks,
    context: OperatorContext = Depends(get_operator_context),
) -> SyncAccepted:
    """Start a BACKFILL run over a date range or from a provider cursor."""
    manager = _get_backfill_manager(request)
    engine = _get_engine(request)

    if isinstance(body.get("provider"), str):
        body = {**body, "provider": parse_provider(body["provider"])}
    try:
        backfill = BackfillRequest.model_validate(body)
    except ValueError as exc:
        raise HTTPException(
            status_code=status.HTTP_400_BAD_REQUEST,
            detail={"error": "validation_error", "message": str(exc)},
        )

    planned = await _plan(manager.plan_backfill(context, backfill))
    background_tasks.add_task(_run_in_background, engine.submit, planned, context)
    logger.info(
        "integrations.backfill_triggered",
        organization_id=context.organization_id,
        provider=backfill.provider.value,
        idempotency_key=planned.options.idempotency_key,
        requested_by=context.user_id,
    )
    return _accepted(planned, "Backfill run started. Track it via GET /api/v1/integrations/ops/backfills")
