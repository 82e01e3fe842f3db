"""Salesforce CRM adapter.

Uses SOQL through the REST query endpoint for incremental sync filtered on
SystemModstamp. Salesforce's ``nextRecordsUrl`` is used verbatim as the
provider cursor. On a 401 the adapter refreshes the OAuth access token
once (when refresh credentials are present) and retries the request. The
refreshed token is only used for that retry: the adapter is shared across
organizations, so nothing token-related outlives a single request.
"""

from __future__ import annotations

from collections.abc import Callable
from datetime import datetime, timezone
from typing import Any
from urllib.parse import urlparse

import httpx
import structlog

from src.integration_sync.errors import FatalProviderError, ProviderError
from src.integration_sync.integrations.adapter import CRMAdapter
from src.integration_sync.integrations.schemas import (
    FetchResult,
    IntegrationProvider,
    NormalizedAccount,
    NormalizedContact,
    NormalizedOpportunity,
    NormalizedRecord,
    OpportunityStatus,
    SalesforceCredentials,
)

logger = structlog.get_logger(__name__)

API_VERSION = "v59.0"
PAGE_SIZE = 200

ACCOUNT_FIELDS = "Id, Name, Website, Industry, NumberOfEmployees, AnnualRevenue"
CONTACT_FIELDS = "Id, Email, Name, Title, Phone, AccountId"
OPPORTUNITY_FIELDS = "Id, Name, Amount, StageName, IsClosed, IsWon, CloseDate, AccountId"


def _soql_datetime(value: datetime) -> str:
    if value.tzinfo is None:
        value = value.replace(tzinfo=timezone.utc)
    return value.astimezone(timezone.utc).strftime("%Y-%m-%dT%H:%M:%SZ")


def build_soql(sobject: str, fields: str, since: datetime | None, until: datetime | None) -> str:
    """Build the incremental SOQL query for one object type."""
    clauses = []
    if since:
        clauses.append(f"SystemModstamp > {_soql_datetime(since)}")
    if until:
        clauses.append(f"SystemModstamp <= {_soql_datetime(until)}")
    where = f" WHERE {' AND '.join(clauses)}" if clauses else ""
    return f"SELECT {fields} FROM {sobject}{where} ORDER BY SystemModstamp ASC LIMIT {PAGE_SIZE}"


def _domain_from_url(url: str | None) -> str | None:
    if not url:
        return None
    parsed = urlparse(url if "://" in url else f"https://{url}")
    host = parsed.hostname or ""
    return host.removeprefix("www.") or None


class SalesforceAdapter(CRMAdapter):
    """Adapter for the Salesforce REST API."""

    provider = IntegrationProvider.SALESFORCE
    credentials_model = SalesforceCredentials
    probe_url = "https://login.salesforce.com"

    @staticmethod
    def _instance(creds: SalesforceCredentials) -> str:
        return creds.instance_url.rstrip("/")

    def _base_url(self, creds: SalesforceCredentials) -> str:
        return f"{self._instance(creds)}/services/data/{API_VERSION}"

    async def _refresh_access_token(self, client: httpx.AsyncClient, creds: SalesforceCredentials) -> str | None:
        """Exchange the refresh token for a new access token, None if not possible."""
        if not creds.can_refresh:
            return None
        response = await self._send(
            client,
            "POST",
            f"{self._instance(creds)}/services/oauth2/token",
            data={
                "grant_type": "refresh_token",
                "refresh_token": creds.refresh_token,
                "client_id": creds.client_id,
                "client_secret": creds.client_secret,
            },
        )
        if not response.is_success:
            logger.warning("salesforce.token_refresh_failed", status_code=response.status_code)
            return None
        token = response.json().get("access_token")
        if token:
            logger.info("salesforce.token_refreshed", instance=self._instance(creds))
        return token

    async def _get(self, creds: SalesforceCredentials, url: str, params: dict[str, Any] | None = None) -> httpx.Response:
        """GET with one token refresh on 401."""
        async with self._client() as client:
            response = await self._send(
                client, "GET", url, params=params,
                headers={"Authorization": f"Bearer {creds.access_token}"},
            )
            if response.status_code == 401:
                token = await self._refresh_access_token(client, creds)
                if token is None:
                    raise FatalProviderError(
                        "Salesforce access token rejected and could not be refreshed",
                        provider=self.provider.value,
                        status_code=401,
                    )
                response = await self._send(
                    client, "GET", url, params=params,
                    headers={"Authorization": f"Bearer {token}"},
                )
        self._raise_for_status(response)
        return response

    async def validate_credentials(self, credentials: dict[str, Any]) -> bool:
        creds = self.parse_credentials(credentials)
        try:
            await self._get(creds, f"{self._base_url(creds)}/limits")
        except ProviderError:
            return False
        return True

    async def _query(
        self,
        creds: SalesforceCredentials,
        cursor: str | None,
        soql: str,
        normalize: Callable[[dict[str, Any]], NormalizedRecord],
    ) -> FetchResult:
        if cursor:
            response = await self._get(creds, f"{self._instance(creds)}{cursor}")
        else:
            response = await self._get(creds, f"{self._base_url(creds)}/query", params={"q": soql})
        data = response.json()
        return FetchResult(
            records=[normalize(record) for record in data.get("records") or []],
            next_cursor=data.get("nextRecordsUrl"),
            has_more=not data.get("done", True),
        )

    async def fetch_accounts(self, credentials, cursor, since, until) -> FetchResult:
        soql = build_soql("Account", ACCOUNT_FIELDS, since, until)
        return await self._query(credentials, cursor, soql, self._normalize_account)

    async def fetch_contacts(self, credentials, cursor, since, until) -> FetchResult:
        soql = build_soql("Contact", CONTACT_FIELDS, since, until)
        return await self._query(credentials, cursor, soql, self._normalize_contact)

    async def fetch_opportunities(self, credentials, cursor, since, until) -> FetchResult:
        soql = build_soql("Opportunity", OPPORTUNITY_FIELDS, since, until)
        return await self._query(credentials, cursor, soql, self._normalize_opportunity)

    # ── Normalization ───────────────────────────────────────────────────

    @staticmethod
    def _normalize_account(record: dict[str, Any]) -> NormalizedAccount:
        return NormalizedAccount(
            external_id=record["Id"],
            name=record.get("Name") or "",
            domain=_domain_from_url(record.get("Website")),
            industry=record.get("Industry"),
            employee_count=record.get("NumberOfEmployees"),
            annual_revenue=record.get("AnnualRevenue"),
        )

    @staticmethod
    def _normalize_contact(record: dict[str, Any]) -> NormalizedContact:
        return NormalizedContact(
            external_id=record["Id"],
            email=record.get("Email"),
            name=record.get("Name"),
            title=record.get("Title"),
            phone=record.get("Phone"),
            account_external_id=record.get("AccountId"),
        )

    @staticmethod
    def _normalize_opportunity(record: dict[str, Any]) -> NormalizedOpportunity:
        status = OpportunityStatus.OPEN
        if record.get("IsClosed"):
            status = OpportunityStatus.WON if record.get("IsWon") else OpportunityStatus.LOST
        return NormalizedOpportunity(
            external_id=record["Id"],
            name=record.get("Name") or "",
            amount=record.get("Amount"),
            stage=record.get("StageName"),
            status=status,
            close_date=record.get("CloseDate"),
            account_external_id=record.get("AccountId"),
        )
