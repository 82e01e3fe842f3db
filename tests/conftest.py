"""Shared fixtures for the integration sync engine tests."""

from __future__ import annotations

from collections.abc import Callable
from datetime import datetime, timedelta

import pytest

from src.integration_sync.integrations.registry import ProviderRegistry
from src.integration_sync.integrations.schemas import IntegrationProvider
from src.integration_sync.sync.engine import SyncEngine
from src.integration_sync.sync.retry import RetryPolicy
from tests.doubles import NOW, FakeAdapter, InMemoryConfigStore, InMemoryRunLedger, RecordingQueue


# ── Fixtures ─────────────────────────────────────────────────────────────────


@pytest.fixture
def ledger() -> InMemoryRunLedger:
    return InMemoryRunLedger()


@pytest.fixture
def configs() -> InMemoryConfigStore:
    return InMemoryConfigStore()


@pytest.fixture
def queue() -> RecordingQueue:
    return RecordingQueue()


@pytest.fixture
def adapter() -> FakeAdapter:
    return FakeAdapter()


@pytest.fixture
def registry(adapter) -> ProviderRegistry:
    return ProviderRegistry(call_recording={IntegrationProvider.GONG: adapter})


@pytest.fixture
def sleeps() -> list[float]:
    return []


@pytest.fixture
def engine(ledger, configs, registry, queue, sleeps) -> SyncEngine:
    async def _no_sleep(seconds: float) -> None:
        sleeps.append(seconds)

    return SyncEngine(
        ledger,
        configs,
        registry,
        queue,
        retry_policy=RetryPolicy(attempts=4, base_delay_ms=500, max_delay_ms=30_000, call_timeout_seconds=None),
        max_pages=10,
        sleep=_no_sleep,
        clock=lambda: NOW,
    )


@pytest.fixture
def hours_ago() -> Callable[[float], datetime]:
    return lambda hours: NOW - timedelta(hours=hours)
