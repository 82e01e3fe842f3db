"""Operator dashboards: queue SLOs, synthetic health and pipeline status."""

from __future__ import annotations

from fastapi import APIRouter, Depends, Query, Request

from src.integration_sync.api.deps import get_component, get_operator_context
from src.integration_sync.core.context import OperatorContext
from src.integration_sync.operations.health import SyntheticHealthMonitor, SyntheticHealthReport
from src.integration_sync.operations.pipeline import PipelineStatus, PipelineStatusReporter
from src.integration_sync.operations.slo import QueueSLOMonitor, QueueSLOReport

router = APIRouter(prefix="/ops", tags=["ops"])

MAX_WINDOW_HOURS = 24 * 30


@router.get("/queue-slo", response_model=QueueSLOReport)
async def queue_slo(
    request: Request,
    context: OperatorContext = Depends(get_operator_context),
    window_hours: int = Query(default=24, ge=1, le=MAX_WINDOW_HOURS),
) -> QueueSLOReport:
    monitor: QueueSLOMonitor = get_component(request, "slo_monitor", "SLO monitor")
    return await monitor.queue_slo_metrics(context, window_hours=window_hours)


@router.get("/synthetic-health", response_model=SyntheticHealthReport)
async def synthetic_health(
    request: Request,
    context: OperatorContext = Depends(get_operator_context),
) -> SyntheticHealthReport:
    """Actively probe providers, the run ledger and the processing queue."""
    monitor: SyntheticHealthMonitor = get_component(request, "health_monitor", "Synthetic health monitor")
    return await monitor.check()


@router.get("/pipeline-status", response_model=PipelineStatus)
async def pipeline_status(
    request: Request,
    context: OperatorContext = Depends(get_operator_context),
    window_hours: int = Query(default=24, ge=1, le=MAX_WINDOW_HOURS),
) -> PipelineStatus:
    reporter: PipelineStatusReporter = get_component(request, "pipeline_reporter", "Pipeline status")
    return await reporter.pipeline_status(context, window_hours=window_hours)
