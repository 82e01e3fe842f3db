"""Run ledger: integration configs, sync runs, and their state machine."""

from src.integration_sync.runs.repository import (
    IntegrationConfigStore,
    RunLedger,
    SqlIntegrationConfigStore,
    SqlRunLedger,
)
from src.integration_sync.runs.schemas import (
    IntegrationConfig,
    IntegrationRun,
    IntegrationStatus,
    RunStatus,
    RunType,
)

__all__ = [
    "IntegrationConfig",
    "IntegrationConfigStore",
    "IntegrationRun",
    "IntegrationStatus",
    "RunLedger",
    "RunStatus",
    "RunType",
    "SqlIntegrationConfigStore",
    "SqlRunLedger",
]
