"""Queue SLO monitor -- rolling-window reliability metrics and alerts.

Computed on read from the run ledger and the config store:
- failure_rate = failed_runs / total_runs over runs started in the window
  (0.0 when there were no runs)
- per-provider breakdown of failed runs and their failure events
  (sum of failure_count)
- stale_integrations = enabled configs that never synced or whose
  last_sync_at is older than the staleness threshold

Alert rules (thresholds inclusive):
- INTEGRATION_FAILURE_RATE: CRITICAL at >= critical rate, WARN at >= warn rate
- INTEGRATION_STALENESS: CRITICAL at >= critical stale count, WARN for any stale
"""

from __future__ import annotations

from collections import defaultdict
from collections.abc import Callable
from dataclasses import dataclass
from datetime import datetime, timedelta, timezone
from enum import Enum

import structlog
from pydantic import BaseModel, Field

from src.integration_sync.config import Settings, get_settings
from src.integration_sync.core.context import OperatorContext
from src.integration_sync.integrations.schemas import IntegrationProvider
from src.integration_sync.runs.repository import IntegrationConfigStore, RunLedger
from src.integration_sync.runs.schemas import IntegrationConfig, RunStatus

logger = structlog.get_logger(__name__)

FAILURE_RATE_ALERT = "INTEGRATION_FAILURE_RATE"
STALENESS_ALERT = "INTEGRATION_STALENESS"


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


class AlertSeverity(str, Enum):
    WARN = "WARN"
    CRITICAL = "CRITICAL"


@dataclass(frozen=True)
class SLOThresholds:
    failure_rate_warn: float = 0.10
    failure_rate_critical: float = 0.20
    stale_after: timedelta = timedelta(minutes=90)
    stale_critical_count: int = 3

    @classmethod
    def from_settings(cls, settings: Settings | None = None) -> SLOThresholds:
        settings = settings or get_settings()
        return cls(
            failure_rate_warn=settings.SLO_FAILURE_RATE_WARN,
            failure_rate_critical=settings.SLO_FAILURE_RATE_CRITICAL,
            stale_after=timedelta(minutes=settings.SLO_STALE_AFTER_MINUTES),
            stale_critical_count=settings.SLO_STALE_CRITICAL_COUNT,
        )


class SLOAlert(BaseModel):
    severity: AlertSeverity
    code: str
    message: str


class ProviderFailureBreakdown(BaseModel):
    provider: IntegrationProvider
    failed_runs: int
    failure_events: int


class QueueSLOReport(BaseModel):
    window_hours: int
    total_runs: int = 0
    failed_runs: int = 0
    failure_rate: float = 0.0
    stale_integrations: int = 0
    failed_runs_by_provider: list[ProviderFailureBreakdown] = Field(default_factory=list)
    alerts: list[SLOAlert] = Field(default_factory=list)


def is_stale(config: IntegrationConfig, now: datetime, stale_after: timedelta) -> bool:
    """Enabled config that never synced, or last synced before ``now - stale_after``."""
    if not config.enabled:
        return False
    if config.last_sync_at is None:
        return True
    last = config.last_sync_at
    if last.tzinfo is None:
        last = last.replace(tzinfo=timezone.utc)
    return last < now - stale_after


def evaluate_alerts(failure_rate: float, stale_count: int, thresholds: SLOThresholds) -> list[SLOAlert]:
    """Alerts for a computed failure rate and stale integration count."""
    alerts: list[SLOAlert] = []

    if failure_rate >= thresholds.failure_rate_critical:
        alerts.append(
            SLOAlert(
                severity=AlertSeverity.CRITICAL,
                code=FAILURE_RATE_ALERT,
                message=f"Integration failure rate {failure_rate:.1%} is at or above {thresholds.failure_rate_critical:.0%}",
            )
        )
    elif failure_rate >= thresholds.failure_rate_warn:
        alerts.append(
            SLOAlert(
                severity=AlertSeverity.WARN,
                code=FAILURE_RATE_ALERT,
                message=f"Integration failure rate {failure_rate:.1%} is at or above {thresholds.failure_rate_warn:.0%}",
            )
        )

    if stale_count > 0:
        severity = AlertSeverity.CRITICAL if stale_count >= thresholds.stale_critical_count else AlertSeverity.WARN
        minutes = int(thresholds.stale_after.total_seconds() // 60)
        alerts.append(
            SLOAlert(
                severity=severity,
                code=STALENESS_ALERT,
                message=f"{stale_count} integration(s) have not synced in the last {minutes} minutes",
            )
        )
    return alerts


class QueueSLOMonitor:
    """Derives queue SLO metrics for one organization.

    Args:
        run_ledger: Source of run aggregates.
        config_store: Source of integration configs for staleness.
        thresholds: Alerting thresholds.
        clock: Returns the current UTC time.
    """

    def __init__(
        self,
        run_ledger: RunLedger,
        config_store: IntegrationConfigStore,
        thresholds: SLOThresholds | None = None,
        *,
        clock: Callable[[], datetime] = _utcnow,
    ) -> None:
        self._ledger = run_ledger
        self._configs = config_store
        self._thresholds = thresholds or SLOThresholds()
        self._clock = clock

    async def queue_slo_metrics(self, context: OperatorContext, window_hours: int = 24) -> QueueSLOReport:
        """Compute the SLO report for runs started in the last ``window_hours``."""
        if window_hours <= 0:
            raise ValueError("window_hours must be positive")

        now = self._clock()
        aggregates = await self._ledger.summarize_window(
            context.organization_id, now - timedelta(hours=window_hours)
        )

        total_runs = sum(a.runs for a in aggregates)
        failed_runs = 0
        by_provider: dict[IntegrationProvider, list[int]] = defaultdict(lambda: [0, 0])
        for aggregate in aggregates:
            if aggregate.status is not RunStatus.FAILED:
                continue
            failed_runs += aggregate.runs
            by_provider[aggregate.provider][0] += aggregate.runs
            by_provider[aggregate.provider][1] += aggregate.failures

        failure_rate = round(failed_runs / total_runs, 4) if total_runs else 0.0

        configs = await self._configs.list_for_organization(context.organization_id)
        stale = sum(1 for c in configs if is_stale(c, now, self._thresholds.stale_after))

        alerts = evaluate_alerts(failure_rate, stale, self._thresholds)
        if alerts:
            logger.warning(
                "slo.alerts_raised",
                organization_id=context.organization_id,
                alerts=[f"{a.severity.value}:{a.code}" for a in alerts],
                failure_rate=failure_rate,
                stale_integrations=stale,
            )

        return QueueSLOReport(
            window_hours=window_hours,
            total_runs=total_runs,
            failed_runs=failed_runs,
            failure_rate=failure_rate,
            stale_integrations=stale,
            failed_runs_by_provider=[
                ProviderFailureBreakdown(provider=provider, failed_runs=counts[0], failure_events=counts[1])
                for provider, counts in sorted(by_provider.items(), key=lambda item: -item[1][0])
            ],
            alerts=alerts,
        )
