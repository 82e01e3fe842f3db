"""Provider adapter registry.

Adapters are registered once at startup into two maps keyed by
IntegrationProvider: call-recording providers and CRM providers.
Resolution checks the call-recording map first, then CRM. MERGE_DEV is
deliberately absent: it delivers data through webhooks and is never
polled by the engine.
"""

from __future__ import annotations

from collections.abc import Mapping

import structlog

from src.integration_sync.config import Settings, get_settings
from src.integration_sync.errors import ProviderNotRegisteredError
from src.integration_sync.integrations.adapter import ProviderAdapter
from src.integration_sync.integrations.gong import GongAdapter
from src.integration_sync.integrations.grain import GrainAdapter
from src.integration_sync.integrations.salesforce import SalesforceAdapter
from src.integration_sync.integrations.schemas import IntegrationProvider

logger = structlog.get_logger(__name__)


class ProviderRegistry:
    """Lookup of adapters by provider identity.

    Args:
        call_recording: Adapters for call-recording providers.
        crm: Adapters for CRM providers.
    """

    def __init__(
        self,
        call_recording: Mapping[IntegrationProvider, ProviderAdapter] | None = None,
        crm: Mapping[IntegrationProvider, ProviderAdapter] | None = None,
    ) -> None:
        self._call_recording = dict(call_recording or {})
        self._crm = dict(crm or {})

    def resolve(self, provider: IntegrationProvider | str) -> ProviderAdapter:
        """Return the adapter for ``provider``.

        Raises:
            ProviderNotRegisteredError: If no adapter handles the provider.
        """
        try:
            key = IntegrationProvider(provider)
        except ValueError as exc:
            raise ProviderNotRegisteredError(f"Unknown provider '{provider}'") from exc

        adapter = self._call_recording.get(key) or self._crm.get(key)
        if adapter is None:
            raise ProviderNotRegisteredError(f"No sync adapter registered for provider {key.value}")
        return adapter

    def is_registered(self, provider: IntegrationProvider | str) -> bool:
        try:
            self.resolve(provider)
        except ProviderNotRegisteredError:
            return False
        return True

    def items(self) -> list[tuple[IntegrationProvider, ProviderAdapter]]:
        """All registered (provider, adapter) pairs, call-recording first."""
        return [*self._call_recording.items(), *self._crm.items()]


def create_provider_registry(settings: Settings | None = None) -> ProviderRegistry:
    """Build the production registry with every polled provider."""
    settings = settings or get_settings()
    timeout = settings.PROVIDER_TIMEOUT_SECONDS

    registry = ProviderRegistry(
        call_recording={
            IntegrationProvider.GONG: GongAdapter(timeout=timeout),
            IntegrationProvider.GRAIN: GrainAdapter(timeout=timeout),
        },
        crm={
            IntegrationProvider.SALESFORCE: SalesforceAdapter(timeout=timeout),
        },
    )
    logger.info("registry.initialized", providers=[p.value for p, _ in registry.items()])
    return registry
