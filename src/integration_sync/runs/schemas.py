"""Pydantic schemas and state rules for integration configs and runs.

Defines:
- Enums: RunStatus, RunType, IntegrationStatus
- IntegrationConfig / IntegrationRun read models
- RunCreate / RunOutcome / ConfigSyncUpdate write payloads
- RunFilter / RunAggregate query shapes
- ensure_transition(): the run state machine guard
- ensure_enabled(): rejects missing, switched-off and DISABLED configs
- bounded_limit(): listing limit clamp shared by the operator surfaces
"""

from __future__ import annotations

import math
from dataclasses import dataclass
from datetime import datetime
from enum import Enum
from typing import Any

from pydantic import BaseModel, Field

from src.integration_sync.errors import (
    IntegrationInactiveError,
    IntegrationNotConfiguredError,
    RunStateError,
)
from src.integration_sync.integrations.schemas import IntegrationProvider

DEFAULT_LIST_LIMIT = 100
MAX_LIST_LIMIT = 500


# ── Enums ───────────────────────────────────────────────────────────────────


class RunStatus(str, Enum):
    RUNNING = "RUNNING"
    COMPLETED = "COMPLETED"
    FAILED = "FAILED"

    @property
    def is_terminal(self) -> bool:
        return self is not RunStatus.RUNNING


class RunType(str, Enum):
    MANUAL = "MANUAL"
    SCHEDULED = "SCHEDULED"
    BACKFILL = "BACKFILL"
    REPLAY = "REPLAY"


class IntegrationStatus(str, Enum):
    ACTIVE = "ACTIVE"
    DEGRADED = "DEGRADED"
    FAILED = "FAILED"
    DISABLED = "DISABLED"


SYNCABLE_STATUSES = frozenset({IntegrationStatus.ACTIVE, IntegrationStatus.DEGRADED})


# ── State machine ───────────────────────────────────────────────────────────


def ensure_transition(current: RunStatus, target: RunStatus) -> None:
    """Allow only RUNNING -> COMPLETED and RUNNING -> FAILED.

    Raises:
        RunStateError: If the run is already terminal or the target is RUNNING.
    """
    if current.is_terminal:
        raise RunStateError(f"Run is already {current.value}; terminal runs are never modified")
    if not target.is_terminal:
        raise RunStateError("A running run can only move to COMPLETED or FAILED")


def ensure_enabled(config: IntegrationConfig | None, provider: IntegrationProvider) -> IntegrationConfig:
    """Return ``config`` if it exists, is switched on and is not DISABLED.

    Raises:
        IntegrationNotConfiguredError: No config, or ``enabled`` is false.
        IntegrationInactiveError: The config is DISABLED.
    """
    if config is None or not config.enabled:
        raise IntegrationNotConfiguredError(f"{provider.value} integration is not configured")
    if config.status is IntegrationStatus.DISABLED:
        raise IntegrationInactiveError(f"{provider.value} integration is disabled")
    return config


# ── Read models ─────────────────────────────────────────────────────────────


class IntegrationConfig(BaseModel):
    """Per-organization, per-provider integration configuration."""

    id: str
    organization_id: str
    provider: IntegrationProvider
    enabled: bool = True
    credentials: dict[str, Any] = Field(default_factory=dict)
    settings: dict[str, Any] = Field(default_factory=dict)
    sync_cursor: str | None = None
    webhook_secret: str | None = None
    status: IntegrationStatus = IntegrationStatus.ACTIVE
    last_sync_at: datetime | None = None
    last_error: str | None = None
    created_at: datetime | None = None
    updated_at: datetime | None = None


class IntegrationRun(BaseModel):
    """One sync attempt recorded in the run ledger."""

    id: str
    organization_id: str
    integration_config_id: str | None = None
    provider: IntegrationProvider
    run_type: RunType
    status: RunStatus = RunStatus.RUNNING
    idempotency_key: str
    started_at: datetime
    finished_at: datetime | None = None
    processed_count: int = 0
    success_count: int = 0
    failure_count: int = 0
    error_message: str | None = None
    metadata: dict[str, Any] = Field(default_factory=dict)


# ── Write payloads ──────────────────────────────────────────────────────────


class RunCreate(BaseModel):
    organization_id: str
    integration_config_id: str | None = None
    provider: IntegrationProvider
    run_type: RunType
    idempotency_key: str = Field(min_length=1)
    metadata: dict[str, Any] = Field(default_factory=dict)


class RunOutcome(BaseModel):
    """Terminal state written once when a run finishes."""

    status: RunStatus
    processed_count: int = 0
    success_count: int = 0
    failure_count: int = 0
    error_message: str | None = None
    finished_at: datetime | None = None


class ConfigSyncUpdate(BaseModel):
    """Post-run mutation of an IntegrationConfig.

    ``update_checkpoint`` gates the cursor write; ``last_sync_at`` is only
    written when set. last_error is always written; status is written unless
    the stored config is DISABLED, which only an operator can undo.
    """

    status: IntegrationStatus
    last_error: str | None = None
    last_sync_at: datetime | None = None
    sync_cursor: str | None = None
    update_checkpoint: bool = False


# ── Queries ─────────────────────────────────────────────────────────────────


class RunFilter(BaseModel):
    status: RunStatus | None = None
    provider: IntegrationProvider | None = None
    run_type: RunType | None = None
    started_after: datetime | None = None
    limit: int = DEFAULT_LIST_LIMIT


@dataclass(frozen=True)
class RunAggregate:
    """Counts for one (provider, run_type, status) group within a window."""

    provider: IntegrationProvider
    run_type: RunType
    status: RunStatus
    runs: int = 0
    processed: int = 0
    successes: int = 0
    failures: int = 0


def bounded_limit(
    value: int | float | None,
    default: int = DEFAULT_LIST_LIMIT,
    maximum: int = MAX_LIST_LIMIT,
) -> int:
    """Clamp a requested listing limit to ``[1, maximum]``.

    Missing or non-finite values fall back to ``default``.
    """
    if value is None or isinstance(value, bool):
        return default
    try:
        number = float(value)
    except (TypeError, ValueError):
        return default
    if not math.isfinite(number):
        return default
    return max(1, min(int(number), maximum))
