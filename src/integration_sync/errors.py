"""Exception hierarchy for the integration sync engine.

Every error raised by the engine, the ledger, or the operator managers
derives from IntegrationSyncError. Each class carries a stable ``code``
(used in HTTP error bodies and logs) and a ``retryable`` flag consulted
by the failure classifier when a run fails.

Provider errors are split into two families:
- ProviderError: transient upstream trouble (timeouts, 5xx, rate limiting)
- FatalProviderError: authentication failures and malformed configuration
"""

from __future__ import annotations


class IntegrationSyncError(Exception):
    """Base class for all integration sync errors."""

    default_code = "INTEGRATION_SYNC_ERROR"
    retryable = False

    def __init__(self, message: str, *, code: str | None = None) -> None:
        super().__init__(message)
        self.message = message
        self.code = code or self.default_code


# ── Provider errors ─────────────────────────────────────────────────────────


class ProviderError(IntegrationSyncError):
    """Transient failure talking to an external provider."""

    default_code = "PROVIDER_ERROR"
    retryable = True

    def __init__(
        self,
        message: str,
        *,
        provider: str | None = None,
        status_code: int | None = None,
        code: str | None = None,
    ) -> None:
        super().__init__(message, code=code)
        self.provider = provider
        self.status_code = status_code


class FatalProviderError(ProviderError):
    """Authentication failure or malformed provider configuration."""

    default_code = "PROVIDER_FATAL"
    retryable = False


class ProviderNotRegisteredError(IntegrationSyncError):
    """No adapter is registered for the requested provider."""

    default_code = "PROVIDER_NOT_REGISTERED"


# ── Run ledger errors ───────────────────────────────────────────────────────


class RunNotFoundError(IntegrationSyncError):
    default_code = "RUN_NOT_FOUND"


class RunStateError(IntegrationSyncError):
    """Attempted to change a run that already reached a terminal state."""

    default_code = "RUN_TERMINAL"


class RunNotReplayableError(IntegrationSyncError):
    default_code = "RUN_NOT_REPLAYABLE"


class IdempotencyConflictError(IntegrationSyncError):
    """A failed run already owns the idempotency key; replay it instead."""

    default_code = "IDEMPOTENCY_CONFLICT"

    def __init__(self, message: str, *, run_id: str | None = None) -> None:
        super().__init__(message)
        self.run_id = run_id


# ── Configuration / request errors ─────────────────────────────────────────


class IntegrationNotConfiguredError(IntegrationSyncError):
    default_code = "INTEGRATION_NOT_CONFIGURED"


class IntegrationInactiveError(IntegrationSyncError):
    """The integration exists but its status does not allow a sync."""

    default_code = "INTEGRATION_INACTIVE"


class OrganizationScopeError(IntegrationSyncError):
    """Operator context does not own the integration being synced."""

    default_code = "ORGANIZATION_SCOPE"


class InvalidBackfillRequestError(IntegrationSyncError):
    default_code = "INVALID_BACKFILL_REQUEST"
