"""Provider adapters and registry for external call-recording and CRM systems."""

from src.integration_sync.integrations.adapter import (
    CallRecordingAdapter,
    CRMAdapter,
    ProviderAdapter,
)
from src.integration_sync.integrations.registry import ProviderRegistry, create_provider_registry
from src.integration_sync.integrations.schemas import FetchResult, IntegrationProvider

__all__ = [
    "CRMAdapter",
    "CallRecordingAdapter",
    "FetchResult",
    "IntegrationProvider",
    "ProviderAdapter",
    "ProviderRegistry",
    "create_provider_registry",
]
