"""API middleware package."""

from src.integration_sync.api.middleware.logging import LoggingMiddleware

__all__ = ["LoggingMiddleware"]
