"""Synthetic health monitor -- active probes against critical dependencies.

Each registered provider, the run-ledger store and the processing queue is
probed concurrently under a timeout. Aggregation:
- HEALTHY when every probe passed
- DEGRADED when exactly one probe failed
- CRITICAL when two or more failed, or when the run ledger itself is down
"""

from __future__ import annotations

import asyncio
from collections.abc import Awaitable, Callable
from datetime import datetime, timezone
from enum import Enum

import structlog
from pydantic import BaseModel, Field

from src.integration_sync.integrations.registry import ProviderRegistry
from src.integration_sync.processing.queue import ProcessingQueue
from src.integration_sync.runs.repository import RunLedger

logger = structlog.get_logger(__name__)

RUN_LEDGER_DEPENDENCY = "run_ledger"
PROCESSING_QUEUE_DEPENDENCY = "processing_queue"


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


class HealthStatus(str, Enum):
    HEALTHY = "HEALTHY"
    DEGRADED = "DEGRADED"
    CRITICAL = "CRITICAL"


class DependencyCheck(BaseModel):
    dependency: str
    healthy: bool
    detail: str


class SyntheticHealthReport(BaseModel):
    status: HealthStatus
    checked_at: datetime
    checks: list[DependencyCheck] = Field(default_factory=list)


def aggregate_status(checks: list[DependencyCheck]) -> HealthStatus:
    unhealthy = [c for c in checks if not c.healthy]
    if any(c.dependency == RUN_LEDGER_DEPENDENCY for c in unhealthy):
        return HealthStatus.CRITICAL
    if not unhealthy:
        return HealthStatus.HEALTHY
    if len(unhealthy) >= 2:
        return HealthStatus.CRITICAL
    return HealthStatus.DEGRADED


class SyntheticHealthMonitor:
    """Runs reachability probes and aggregates them.

    Args:
        run_ledger: Probed with ``ping``.
        processing_queue: Probed with ``ping``.
        registry: Every registered adapter is probed with ``probe``.
        probe_timeout: Seconds allowed per probe.
        clock: Returns the current UTC time.
    """

    def __init__(
        self,
        run_ledger: RunLedger,
        processing_queue: ProcessingQueue,
        registry: ProviderRegistry,
        *,
        probe_timeout: float = 2.5,
        clock: Callable[[], datetime] = _utcnow,
    ) -> None:
        self._ledger = run_ledger
        self._queue = processing_queue
        self._registry = registry
        self._probe_timeout = probe_timeout
        self._clock = clock

    async def _run_probe(self, dependency: str, probe: Callable[[], Awaitable[str | None]]) -> DependencyCheck:
        try:
            detail = await asyncio.wait_for(probe(), timeout=self._probe_timeout)
        except asyncio.TimeoutError:
            return DependencyCheck(
                dependency=dependency,
                healthy=False,
                detail=f"timed out after {self._probe_timeout}s",
            )
        except Exception as exc:
            return DependencyCheck(dependency=dependency, healthy=False, detail=str(exc) or type(exc).__name__)
        return DependencyCheck(dependency=dependency, healthy=True, detail=detail or "ok")

    async def check(self) -> SyntheticHealthReport:
        """Probe every dependency and aggregate the result."""
        probes: list[tuple[str, Callable[[], Awaitable[str | None]]]] = [
            (RUN_LEDGER_DEPENDENCY, self._ledger.ping),
            (PROCESSING_QUEUE_DEPENDENCY, self._queue.ping),
        ]
        probes.extend(
            (f"provider:{provider.value}", adapter.probe)
            for provider, adapter in self._registry.items()
        )

        checks = list(await asyncio.gather(*(self._run_probe(name, fn) for name, fn in probes)))
        status = aggregate_status(checks)

        if status is not HealthStatus.HEALTHY:
            logger.warning(
                "health.synthetic_check_unhealthy",
                status=status.value,
                failing=[c.dependency for c in checks if not c.healthy],
            )
        return SyntheticHealthReport(status=status, checked_at=self._clock(), checks=checks)
