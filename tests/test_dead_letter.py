"""Tests for dead-letter listing and replay of FAILED runs."""

from __future__ import annotations

from datetime import datetime, timedelta, timezone

import pytest

from src.integration_sync.core.context import OperatorContext
from src.integration_sync.errors import (
    IntegrationInactiveError,
    IntegrationNotConfiguredError,
    RunNotFoundError,
    RunNotReplayableError,
)
from src.integration_sync.integrations.schemas import IntegrationProvider
from src.integration_sync.operations.dead_letter import DeadLetterManager
from src.integration_sync.runs.schemas import IntegrationStatus, RunStatus, RunType
from src.integration_sync.sync.failures import FailureClass
from tests.doubles import NOW

CTX = OperatorContext(organization_id="org-1", user_id="ops-1")


@pytest.fixture
def manager(ledger, configs, engine) -> DeadLetterManager:
    return DeadLetterManager(ledger, configs, engine, clock=lambda: NOW, nonce_factory=lambda: "n0nce")


def _failed(ledger, **fields):
    fields.setdefault("integration_config_id", "cfg-1")
    fields.setdefault("status", RunStatus.FAILED)
    fields.setdefault("error_message", "GONG API returned 503 for POST /v2/calls/extensive")
    return ledger.seed(**fields)


# ── Listing ──────────────────────────────────────────────────────────────────


@pytest.mark.asyncio
async def test_lists_only_failed_runs_of_the_caller(manager, ledger):
    _failed(ledger, id="run-a", started_at=NOW - timedelta(hours=2))
    _failed(ledger, id="run-b", started_at=NOW - timedelta(hours=1), error_message="Rate limit exceeded")
    _failed(ledger, id="run-other", organization_id="org-2")
    ledger.seed(id="run-ok", status=RunStatus.COMPLETED)

    listing = await manager.list_dead_letter_runs(CTX)

    assert [r.id for r in listing.failed_runs] == ["run-b", "run-a"]
    assert listing.total_failed == 2
    assert listing.failed_runs[0].failure_class is FailureClass.RATE_LIMIT
    assert listing.failed_runs[1].failure_class is FailureClass.UPSTREAM_TRANSIENT


@pytest.mark.asyncio
async def test_total_counts_beyond_the_returned_page(manager, ledger):
    for i in range(5):
        _failed(ledger, id=f"run-{i}", started_at=NOW - timedelta(minutes=i))

    listing = await manager.list_dead_letter_runs(CTX, limit=2)

    assert len(listing.failed_runs) == 2
    assert listing.total_failed == 5


@pytest.mark.asyncio
async def test_provider_filter(manager, ledger):
    _failed(ledger, id="run-gong")
    _failed(ledger, id="run-sf", provider=IntegrationProvider.SALESFORCE)

    listing = await manager.list_dead_letter_runs(CTX, provider=IntegrationProvider.SALESFORCE)

    assert [r.id for r in listing.failed_runs] == ["run-sf"]


# ── Replay ───────────────────────────────────────────────────────────────────


@pytest.mark.asyncio
async def test_replay_key_embeds_original_key_timestamp_and_nonce(manager, ledger, configs):
    configs.add(id="cfg-1")
    _failed(ledger, id="run-dead", idempotency_key="manual:cfg-1:abc")

    planned = await manager.plan_replay(CTX, "run-dead")

    stamp = int(NOW.timestamp() * 1000)
    assert planned.options.idempotency_key == f"replay:manual:cfg-1:abc:{stamp}-n0nce"
    assert planned.options.run_type is RunType.REPLAY
    assert planned.config.id == "cfg-1"


@pytest.mark.asyncio
async def test_replay_reissues_the_original_window(manager, ledger, configs):
    configs.add(id="cfg-1")
    since = datetime(2025, 1, 1, tzinfo=timezone.utc)
    _failed(
        ledger,
        id="run-dead",
        run_type=RunType.BACKFILL,
        metadata={"since_override": since.isoformat(), "cursor_override": "c-9", "requested_by": "ops-0"},
    )

    planned = await manager.plan_replay(CTX, "run-dead")

    assert planned.options.since_override == since
    assert planned.options.cursor_override == "c-9"
    assert planned.options.until_override is None
    assert planned.options.metadata == {"replay_of": "run-dead", "original_run_type": "BACKFILL"}


@pytest.mark.asyncio
async def test_replay_creates_new_run_and_keeps_original(manager, ledger, configs):
    configs.add(id="cfg-1")
    original = _failed(ledger, id="run-dead")

    new_id = await manager.replay_failed_run(CTX, "run-dead")

    assert new_id != "run-dead"
    replay = ledger.runs[new_id]
    assert replay.run_type is RunType.REPLAY
    assert replay.status is RunStatus.COMPLETED
    assert replay.metadata["replay_of"] == "run-dead"
    assert replay.metadata["requested_by"] == "ops-1"
    assert ledger.runs["run-dead"] == original


@pytest.mark.asyncio
async def test_replay_falls_back_to_provider_config(manager, ledger, configs):
    configs.add(id="cfg-7")
    _failed(ledger, id="run-dead", integration_config_id=None)

    planned = await manager.plan_replay(CTX, "run-dead")

    assert planned.config.id == "cfg-7"


@pytest.mark.asyncio
async def test_only_failed_runs_can_be_replayed(manager, ledger, configs):
    configs.add(id="cfg-1")
    ledger.seed(id="run-ok", status=RunStatus.COMPLETED)

    with pytest.raises(RunNotReplayableError):
        await manager.plan_replay(CTX, "run-ok")


@pytest.mark.asyncio
async def test_run_of_another_organization_is_not_found(manager, ledger, configs):
    configs.add(id="cfg-1")
    _failed(ledger, id="run-foreign", organization_id="org-2")

    with pytest.raises(RunNotFoundError):
        await manager.plan_replay(CTX, "run-foreign")
    with pytest.raises(RunNotFoundError):
        await manager.plan_replay(CTX, "run-missing")


@pytest.mark.asyncio
async def test_replay_without_integration_is_rejected(manager, ledger):
    _failed(ledger, id="run-dead")

    with pytest.raises(IntegrationNotConfiguredError):
        await manager.plan_replay(CTX, "run-dead")


@pytest.mark.asyncio
async def test_replay_of_disabled_integration_is_rejected(manager, ledger, configs, adapter):
    configs.add(id="cfg-1", enabled=False, status=IntegrationStatus.DISABLED)
    _failed(ledger, id="run-dead")

    with pytest.raises(IntegrationNotConfiguredError):
        await manager.replay_failed_run(CTX, "run-dead")

    configs.configs["cfg-1"] = configs.configs["cfg-1"].model_copy(update={"enabled": True})
    with pytest.raises(IntegrationInactiveError):
        await manager.replay_failed_run(CTX, "run-dead")

    assert adapter.calls == []
    assert list(ledger.runs) == ["run-dead"]
    assert configs.configs["cfg-1"].status is IntegrationStatus.DISABLED
