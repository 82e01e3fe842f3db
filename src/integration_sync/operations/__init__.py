"""Operator surfaces over the run ledger: dead letters, backfills, SLOs, health."""

from src.integration_sync.operations.backfill import BackfillManager, BackfillRequest
from src.integration_sync.operations.dead_letter import DeadLetterManager
from src.integration_sync.operations.health import SyntheticHealthMonitor
from src.integration_sync.operations.pipeline import PipelineStatusReporter
from src.integration_sync.operations.slo import QueueSLOMonitor, SLOThresholds

__all__ = [
    "BackfillManager",
    "BackfillRequest",
    "DeadLetterManager",
    "PipelineStatusReporter",
    "QueueSLOMonitor",
    "SLOThresholds",
    "SyntheticHealthMonitor",
]
