"""Tests for backfill validation, key derivation and listing."""

from __future__ import annotations

from datetime import datetime, timedelta, timezone

import pytest
from pydantic import ValidationError

from src.integration_sync.core.context import OperatorContext
from src.integration_sync.errors import (
    IdempotencyConflictError,
    IntegrationInactiveError,
    IntegrationNotConfiguredError,
    InvalidBackfillRequestError,
    ProviderNotRegisteredError,
)
from src.integration_sync.integrations.schemas import IntegrationProvider
from src.integration_sync.operations.backfill import BackfillManager, BackfillRequest, derive_backfill_key
from src.integration_sync.runs.schemas import IntegrationStatus, RunStatus, RunType
from tests.doubles import NOW, page

CTX = OperatorContext(organization_id="org-1", user_id="ops-1")
JAN = datetime(2025, 1, 1, tzinfo=timezone.utc)
FEB = datetime(2025, 2, 1, tzinfo=timezone.utc)


@pytest.fixture
def manager(ledger, configs, registry, engine) -> BackfillManager:
    return BackfillManager(ledger, configs, registry, engine)


def _request(**fields) -> BackfillRequest:
    fields.setdefault("provider", IntegrationProvider.GONG)
    return BackfillRequest(**fields)


# ── Validation ───────────────────────────────────────────────────────────────


@pytest.mark.asyncio
async def test_requires_start_date_or_cursor(manager, configs):
    configs.add(id="cfg-1")
    with pytest.raises(InvalidBackfillRequestError):
        await manager.plan_backfill(CTX, _request(end_date=FEB))


@pytest.mark.asyncio
async def test_rejects_inverted_range(manager, configs):
    configs.add(id="cfg-1")
    with pytest.raises(InvalidBackfillRequestError):
        await manager.plan_backfill(CTX, _request(start_date=FEB, end_date=JAN))


@pytest.mark.asyncio
async def test_rejects_unregistered_provider(manager, configs):
    configs.add(id="cfg-1", provider=IntegrationProvider.MERGE_DEV)
    with pytest.raises(ProviderNotRegisteredError):
        await manager.plan_backfill(CTX, _request(provider=IntegrationProvider.MERGE_DEV, start_date=JAN))


@pytest.mark.asyncio
async def test_rejects_missing_or_disabled_config(manager, configs):
    with pytest.raises(IntegrationNotConfiguredError):
        await manager.plan_backfill(CTX, _request(start_date=JAN))

    configs.add(id="cfg-1", enabled=False)
    with pytest.raises(IntegrationNotConfiguredError):
        await manager.plan_backfill(CTX, _request(start_date=JAN))


def test_naive_dates_are_rejected():
    with pytest.raises(ValidationError):
        BackfillRequest(provider=IntegrationProvider.GONG, start_date=datetime(2026, 1, 1), end_date=FEB)


@pytest.mark.asyncio
async def test_disabled_integration_is_not_backfilled(manager, ledger, configs, adapter):
    configs.add(id="cfg-1", status=IntegrationStatus.DISABLED)

    with pytest.raises(IntegrationInactiveError):
        await manager.trigger_backfill(CTX, _request(start_date=JAN))

    assert adapter.calls == []
    assert ledger.runs == {}
    assert configs.configs["cfg-1"].status is IntegrationStatus.DISABLED


# ── Keys ─────────────────────────────────────────────────────────────────────


def test_derived_key_is_deterministic():
    first = derive_backfill_key("cfg-1", _request(start_date=JAN, end_date=FEB))
    second = derive_backfill_key("cfg-1", _request(start_date=JAN, end_date=FEB))
    other = derive_backfill_key("cfg-1", _request(start_date=JAN))

    assert first == second
    assert first != other
    assert first.startswith("backfill:cfg-1:")


@pytest.mark.asyncio
async def test_client_key_is_scoped_to_config(manager, configs):
    configs.add(id="cfg-1")
    planned = await manager.plan_backfill(CTX, _request(start_date=JAN, idempotency_key="q1-import"))

    assert planned.options.idempotency_key == "backfill:cfg-1:q1-import"
    assert planned.options.run_type is RunType.BACKFILL
    assert planned.options.since_override == JAN


@pytest.mark.asyncio
async def test_failed_backfill_under_key_is_a_conflict(manager, ledger, configs):
    configs.add(id="cfg-1")
    ledger.seed(id="run-dead", idempotency_key="backfill:cfg-1:q1-import", status=RunStatus.FAILED)

    with pytest.raises(IdempotencyConflictError) as exc_info:
        await manager.plan_backfill(CTX, _request(start_date=JAN, idempotency_key="q1-import"))

    assert exc_info.value.run_id == "run-dead"


# ── Execution ────────────────────────────────────────────────────────────────


@pytest.mark.asyncio
async def test_double_submission_runs_once(manager, ledger, configs, adapter):
    configs.add(id="cfg-1", sync_cursor="c-live", last_sync_at=NOW - timedelta(hours=1))
    adapter.script = [page("h1", "h2")]

    first = await manager.trigger_backfill(CTX, _request(start_date=JAN, end_date=FEB))
    second = await manager.trigger_backfill(CTX, _request(start_date=JAN, end_date=FEB))

    assert first == second
    assert len(adapter.calls) == 1
    assert adapter.calls[0] == {"cursor": None, "since": JAN, "until": FEB}
    assert ledger.runs[first].processed_count == 2
    assert configs.configs["cfg-1"].sync_cursor == "c-live"


@pytest.mark.asyncio
async def test_cursor_backfill_starts_from_cursor(manager, configs, adapter):
    configs.add(id="cfg-1")

    await manager.trigger_backfill(CTX, _request(cursor="c-2019"))

    assert adapter.calls[0]["cursor"] == "c-2019"
    assert configs.cursor_saves == []


@pytest.mark.asyncio
async def test_lists_backfill_runs_with_window(manager, ledger):
    ledger.seed(
        id="run-bf",
        run_type=RunType.BACKFILL,
        status=RunStatus.COMPLETED,
        metadata={"since_override": JAN.isoformat(), "until_override": FEB.isoformat()},
    )
    ledger.seed(id="run-manual")

    runs = await manager.list_backfills(CTX)

    assert [r.id for r in runs] == ["run-bf"]
    assert runs[0].since == JAN.isoformat()
    assert runs[0].until == FEB.isoformat()
    assert runs[0].cursor is None
