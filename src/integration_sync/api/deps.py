"""FastAPI dependencies for operator identity and app.state components.

Authentication happens upstream; the gateway forwards the resolved
identity as headers, which are turned into an OperatorContext here and
passed explicitly into the managers.
"""

from __future__ import annotations

from typing import Any

from fastapi import HTTPException, Request, status

from src.integration_sync.core.context import OperatorContext
from src.integration_sync.core.monitoring import ORGANIZATION_HEADER
from src.integration_sync.errors import (
    IdempotencyConflictError,
    IntegrationInactiveError,
    IntegrationNotConfiguredError,
    IntegrationSyncError,
    InvalidBackfillRequestError,
    OrganizationScopeError,
    ProviderNotRegisteredError,
    RunNotFoundError,
    RunNotReplayableError,
)
from src.integration_sync.integrations.schemas import IntegrationProvider

USER_HEADER = "X-User-ID"
ROLE_HEADER = "X-User-Role"

_STATUS_BY_ERROR: list[tuple[type[IntegrationSyncError], int]] = [
    (RunNotFoundError, status.HTTP_404_NOT_FOUND),
    (IntegrationNotConfiguredError, status.HTTP_404_NOT_FOUND),
    (IdempotencyConflictError, status.HTTP_409_CONFLICT),
    (OrganizationScopeError, status.HTTP_403_FORBIDDEN),
    (RunNotReplayableError, status.HTTP_400_BAD_REQUEST),
    (InvalidBackfillRequestError, status.HTTP_400_BAD_REQUEST),
    (ProviderNotRegisteredError, status.HTTP_400_BAD_REQUEST),
    (IntegrationInactiveError, status.HTTP_400_BAD_REQUEST),
]


async def get_operator_context(request: Request) -> OperatorContext:
    """Build the operator context from the forwarded identity headers.

    Raises:
        HTTPException(401): If no organization header is present.
    """
    organization_id = (request.headers.get(ORGANIZATION_HEADER) or "").strip()
    if not organization_id:
        raise HTTPException(
            status_code=status.HTTP_401_UNAUTHORIZED,
            detail="Authentication required",
        )
    return OperatorContext(
        organization_id=organization_id,
        user_id=request.headers.get(USER_HEADER) or None,
        role=(request.headers.get(ROLE_HEADER) or "").strip() or None,
    )


def get_component(request: Request, name: str, label: str) -> Any:
    """Retrieve a component from app.state, 503 if not available."""
    component = getattr(request.app.state, name, None)
    if component is None:
        raise HTTPException(
            status_code=status.HTTP_503_SERVICE_UNAVAILABLE,
            detail=f"{label} not initialized",
        )
    return component


def parse_provider(value: str) -> IntegrationProvider:
    """Case-insensitive provider path/query parameter, 400 when unknown."""
    try:
        return IntegrationProvider(value.strip().upper())
    except ValueError:
        raise HTTPException(
            status_code=status.HTTP_400_BAD_REQUEST,
            detail=f"Invalid provider: {value}",
        )


def to_http_exception(exc: IntegrationSyncError) -> HTTPException:
    """Map an engine error onto the HTTP status operators see."""
    for error_type, status_code in _STATUS_BY_ERROR:
        if isinstance(exc, error_type):
            detail: dict[str, Any] = {"error": exc.code, "message": exc.message}
            if isinstance(exc, IdempotencyConflictError) and exc.run_id:
                detail["run_id"] = exc.run_id
            return HTTPException(status_code=status_code, detail=detail)
    return HTTPException(
        status_code=status.HTTP_500_INTERNAL_SERVER_ERROR,
        detail={"error": exc.code, "message": exc.message},
    )
