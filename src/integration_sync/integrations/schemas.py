"""Provider identities, credential shapes, and normalized record types.

Every adapter translates its provider's payloads into one of four
normalized records before they leave the adapter:
- NormalizedCall: a recorded call with participants and transcript text
- NormalizedAccount / NormalizedContact / NormalizedOpportunity: CRM objects

FetchResult is the uniform page shape returned by ``ProviderAdapter.fetch``.
"""

from __future__ import annotations

from dataclasses import dataclass, field
from datetime import datetime
from enum import Enum
from typing import Literal, Union

from pydantic import BaseModel, Field


# ── Enums ───────────────────────────────────────────────────────────────────


class IntegrationProvider(str, Enum):
    """External systems the engine can sync from."""

    GONG = "GONG"
    GRAIN = "GRAIN"
    SALESFORCE = "SALESFORCE"
    MERGE_DEV = "MERGE_DEV"  # webhook-driven, never polled


class ProviderCategory(str, Enum):
    CALL_RECORDING = "call_recording"
    CRM = "crm"


class OpportunityStatus(str, Enum):
    OPEN = "OPEN"
    WON = "WON"
    LOST = "LOST"


# ── Credentials ─────────────────────────────────────────────────────────────


class GongCredentials(BaseModel):
    access_key: str = Field(min_length=1)
    access_key_secret: str = Field(min_length=1)
    base_url: str = "https://api.gong.io"


class GrainCredentials(BaseModel):
    api_token: str = Field(min_length=1)
    base_url: str = "https://api.grain.com/_/public-api"


class SalesforceCredentials(BaseModel):
    instance_url: str = Field(min_length=1)
    access_token: str = Field(min_length=1)
    refresh_token: str | None = None
    client_id: str | None = None
    client_secret: str | None = None

    @property
    def can_refresh(self) -> bool:
        return bool(self.refresh_token and self.client_id and self.client_secret)


# ── Normalized Records ──────────────────────────────────────────────────────


class CallParticipant(BaseModel):
    email: str | None = None
    name: str | None = None
    is_host: bool = False


class NormalizedCall(BaseModel):
    """A recorded call, independent of the recording provider."""

    record_type: Literal["call"] = "call"
    external_id: str
    title: str = ""
    recording_url: str | None = None
    duration_seconds: int | None = None
    occurred_at: datetime | None = None
    participants: list[CallParticipant] = Field(default_factory=list)
    transcript: str | None = None


class NormalizedAccount(BaseModel):
    record_type: Literal["account"] = "account"
    external_id: str
    name: str
    domain: str | None = None
    industry: str | None = None
    employee_count: int | None = None
    annual_revenue: float | None = None


class NormalizedContact(BaseModel):
    record_type: Literal["contact"] = "contact"
    external_id: str
    email: str | None = None
    name: str | None = None
    title: str | None = None
    phone: str | None = None
    account_external_id: str | None = None


class NormalizedOpportunity(BaseModel):
    record_type: Literal["opportunity"] = "opportunity"
    external_id: str
    name: str
    amount: float | None = None
    stage: str | None = None
    status: OpportunityStatus = OpportunityStatus.OPEN
    close_date: str | None = None
    account_external_id: str | None = None


NormalizedRecord = Union[NormalizedCall, NormalizedAccount, NormalizedContact, NormalizedOpportunity]


@dataclass(frozen=True)
class FetchResult:
    """One page of records from a provider.

    Attributes:
        records: Normalized records on this page.
        next_cursor: Opaque token for the next page, None when exhausted.
        has_more: Whether the provider reports further pages.
    """

    records: list[NormalizedRecord] = field(default_factory=list)
    next_cursor: str | None = None
    has_more: bool = False
