"""Provider adapter abstract base classes -- the uniform fetch capability.

Every external provider implements ProviderAdapter. The SyncEngine only
ever calls ``fetch`` (one page per call) and the synthetic health monitor
only calls ``probe``; adapters hold no business logic and never touch the
run ledger or config store.

Two specializations exist:
- CallRecordingAdapter: pages through recorded calls
- CRMAdapter: walks accounts, then contacts, then opportunities, encoding
  the current object phase inside the opaque cursor it hands back

HttpProviderAdapter supplies the shared httpx plumbing: per-call client
construction with a bounded timeout, and translation of HTTP status codes
and transport failures into ProviderError / FatalProviderError.
"""

from __future__ import annotations

from abc import ABC, abstractmethod
from datetime import datetime
from typing import Any, ClassVar

import httpx
import structlog
from pydantic import BaseModel, ValidationError

from src.integration_sync.errors import FatalProviderError, ProviderError
from src.integration_sync.integrations.schemas import (
    FetchResult,
    IntegrationProvider,
    ProviderCategory,
)

logger = structlog.get_logger(__name__)

FATAL_STATUS_CODES = frozenset({400, 401, 403, 404})


class ProviderAdapter(ABC):
    """Abstract interface for a provider's read-side API.

    Methods:
        parse_credentials: Validate the raw credentials blob into a typed model.
        validate_credentials: Round-trip to the provider to confirm credentials work.
        fetch: Fetch one page of normalized records since a cursor/timestamp.
        probe: Lightweight reachability check; returns a detail string or raises.
    """

    provider: ClassVar[IntegrationProvider]
    category: ClassVar[ProviderCategory]

    @abstractmethod
    def parse_credentials(self, raw: dict[str, Any]) -> BaseModel:
        """Validate a raw credentials blob, raising FatalProviderError if malformed."""
        ...

    @abstractmethod
    async def validate_credentials(self, credentials: dict[str, Any]) -> bool:
        """Return True when the provider accepts the credentials."""
        ...

    @abstractmethod
    async def fetch(
        self,
        credentials: dict[str, Any],
        cursor: str | None = None,
        since: datetime | None = None,
        until: datetime | None = None,
    ) -> FetchResult:
        """Fetch one page of records."""
        ...

    @abstractmethod
    async def probe(self) -> str:
        """Check the provider is reachable. Returns a short detail string."""
        ...


class HttpProviderAdapter(ProviderAdapter):
    """Shared httpx plumbing for HTTP-based providers.

    Args:
        timeout: Per-request timeout in seconds.
        transport: Optional httpx transport (tests inject ``httpx.MockTransport``).
    """

    credentials_model: ClassVar[type[BaseModel]]
    probe_url: ClassVar[str]

    def __init__(
        self,
        timeout: float = 30.0,
        transport: httpx.AsyncBaseTransport | None = None,
    ) -> None:
        self._timeout = timeout
        self._transport = transport

    def _client(self, headers: dict[str, str] | None = None, timeout: float | None = None) -> httpx.AsyncClient:
        """Create a new httpx client with the configured timeout."""
        return httpx.AsyncClient(
            headers=headers,
            timeout=timeout if timeout is not None else self._timeout,
            transport=self._transport,
        )

    def parse_credentials(self, raw: dict[str, Any]) -> Any:
        try:
            return self.credentials_model.model_validate(raw or {})
        except ValidationError as exc:
            raise FatalProviderError(
                f"{self.provider.value} credentials are malformed: {exc.error_count()} invalid field(s)",
                provider=self.provider.value,
            ) from exc

    async def _send(self, client: httpx.AsyncClient, method: str, url: str, **kwargs: Any) -> httpx.Response:
        """Issue a request, mapping transport failures to ProviderError."""
        try:
            return await client.request(method, url, **kwargs)
        except httpx.TimeoutException as exc:
            raise ProviderError(
                f"{self.provider.value} request timed out: {method} {url}",
                provider=self.provider.value,
            ) from exc
        except httpx.TransportError as exc:
            raise ProviderError(
                f"{self.provider.value} network error: {exc}",
                provider=self.provider.value,
            ) from exc

    def _raise_for_status(self, response: httpx.Response) -> None:
        """Translate an error response into the provider error taxonomy."""
        if response.is_success:
            return
        status_code = response.status_code
        message = f"{self.provider.value} API returned {status_code} for {response.request.method} {response.request.url.path}"
        if status_code in FATAL_STATUS_CODES:
            raise FatalProviderError(message, provider=self.provider.value, status_code=status_code)
        raise ProviderError(message, provider=self.provider.value, status_code=status_code)

    async def probe(self) -> str:
        """HEAD the provider's public endpoint; any status below 500 is reachable."""
        async with self._client() as client:
            response = await self._send(client, "HEAD", self.probe_url)
        if response.status_code >= 500:
            raise ProviderError(
                f"HTTP {response.status_code}",
                provider=self.provider.value,
                status_code=response.status_code,
            )
        return f"HTTP {response.status_code}"


class CallRecordingAdapter(HttpProviderAdapter):
    """Adapter for call-recording providers (one record type: calls)."""

    category = ProviderCategory.CALL_RECORDING

    @abstractmethod
    async def fetch_calls(
        self,
        credentials: Any,
        cursor: str | None,
        since: datetime | None,
        until: datetime | None,
    ) -> FetchResult:
        ...

    async def fetch(
        self,
        credentials: dict[str, Any],
        cursor: str | None = None,
        since: datetime | None = None,
        until: datetime | None = None,
    ) -> FetchResult:
        parsed = self.parse_credentials(credentials)
        return await self.fetch_calls(parsed, cursor, since, until)


# ── CRM phase cursor ────────────────────────────────────────────────────────

CRM_PHASES = ("accounts", "contacts", "opportunities")
_PHASE_SEPARATOR = "|"


def encode_crm_cursor(phase: str, inner: str | None) -> str:
    return f"{phase}{_PHASE_SEPARATOR}{inner or ''}"


def decode_crm_cursor(cursor: str | None) -> tuple[str, str | None]:
    """Split a CRM cursor into (phase, provider cursor).

    A missing or unrecognised cursor starts from the first phase.
    """
    if not cursor:
        return CRM_PHASES[0], None
    phase, sep, inner = cursor.partition(_PHASE_SEPARATOR)
    if not sep or phase not in CRM_PHASES:
        return CRM_PHASES[0], None
    return phase, inner or None


class CRMAdapter(HttpProviderAdapter):
    """Adapter for CRM providers.

    ``fetch`` pages through accounts, then contacts, then opportunities.
    The returned cursor names the phase so a resumed run continues with
    the right object type.
    """

    category = ProviderCategory.CRM

    @abstractmethod
    async def fetch_accounts(self, credentials: Any, cursor: str | None, since: datetime | None, until: datetime | None) -> FetchResult:
        ...

    @abstractmethod
    async def fetch_contacts(self, credentials: Any, cursor: str | None, since: datetime | None, until: datetime | None) -> FetchResult:
        ...

    @abstractmethod
    async def fetch_opportunities(self, credentials: Any, cursor: str | None, since: datetime | None, until: datetime | None) -> FetchResult:
        ...

    async def fetch(
        self,
        credentials: dict[str, Any],
        cursor: str | None = None,
        since: datetime | None = None,
        until: datetime | None = None,
    ) -> FetchResult:
        parsed = self.parse_credentials(credentials)
        phase, inner = decode_crm_cursor(cursor)
        fetchers = {
            "accounts": self.fetch_accounts,
            "contacts": self.fetch_contacts,
            "opportunities": self.fetch_opportunities,
        }
        page = await fetchers[phase](parsed, inner, since, until)

        if page.has_more and page.next_cursor:
            return FetchResult(
                records=page.records,
                next_cursor=encode_crm_cursor(phase, page.next_cursor),
                has_more=True,
            )

        index = CRM_PHASES.index(phase)
        if index + 1 < len(CRM_PHASES):
            next_phase = CRM_PHASES[index + 1]
            logger.debug("crm.phase_complete", provider=self.provider.value, phase=phase, next_phase=next_phase)
            return FetchResult(
                records=page.records,
                next_cursor=encode_crm_cursor(next_phase, None),
                has_more=True,
            )
        return FetchResult(records=page.records, next_cursor=None, has_more=False)
