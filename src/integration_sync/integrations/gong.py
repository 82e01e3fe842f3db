"""Gong call-recording adapter.

Auth is HTTP Basic with the access key and secret. Calls are listed via
POST /v2/calls/extensive (which carries participant data) and the
transcripts for each page are pulled in one batch from
POST /v2/calls/transcript. A page whose transcript batch fails is still
returned, just without transcript text.
"""

from __future__ import annotations

import base64
from datetime import datetime, timezone
from typing import Any

import structlog

from src.integration_sync.errors import IntegrationSyncError, ProviderError
from src.integration_sync.integrations.adapter import CallRecordingAdapter
from src.integration_sync.integrations.schemas import (
    CallParticipant,
    FetchResult,
    GongCredentials,
    IntegrationProvider,
    NormalizedCall,
)

logger = structlog.get_logger(__name__)


def _isoformat(value: datetime) -> str:
    if value.tzinfo is None:
        value = value.replace(tzinfo=timezone.utc)
    return value.isoformat()


class GongAdapter(CallRecordingAdapter):
    """Adapter for the Gong v2 REST API."""

    provider = IntegrationProvider.GONG
    credentials_model = GongCredentials
    probe_url = "https://api.gong.io"

    def _headers(self, creds: GongCredentials) -> dict[str, str]:
        token = base64.b64encode(f"{creds.access_key}:{creds.access_key_secret}".encode()).decode()
        return {
            "Authorization": f"Basic {token}",
            "Content-Type": "application/json",
        }

    @staticmethod
    def _base_url(creds: GongCredentials) -> str:
        return creds.base_url.rstrip("/")

    async def validate_credentials(self, credentials: dict[str, Any]) -> bool:
        creds = self.parse_credentials(credentials)
        now = _isoformat(datetime.now(timezone.utc))
        try:
            async with self._client(self._headers(creds)) as client:
                response = await self._send(
                    client,
                    "GET",
                    f"{self._base_url(creds)}/v2/calls",
                    params={"fromDateTime": now, "toDateTime": now},
                )
        except ProviderError:
            return False
        return response.status_code == 200

    async def fetch_calls(
        self,
        credentials: GongCredentials,
        cursor: str | None,
        since: datetime | None,
        until: datetime | None,
    ) -> FetchResult:
        body: dict[str, Any] = {}
        if cursor:
            body["cursor"] = cursor
        date_filter: dict[str, str] = {}
        if since:
            date_filter["fromDateTime"] = _isoformat(since)
        if until:
            date_filter["toDateTime"] = _isoformat(until)
        if date_filter:
            body["filter"] = date_filter

        async with self._client(self._headers(credentials)) as client:
            response = await self._send(
                client, "POST", f"{self._base_url(credentials)}/v2/calls/extensive", json=body
            )
            self._raise_for_status(response)
            data = response.json()

            calls = data.get("calls") or []
            transcripts: dict[str, str] = {}
            if calls:
                try:
                    transcripts = await self._fetch_transcripts(client, credentials, [c["id"] for c in calls])
                except IntegrationSyncError:
                    logger.warning(
                        "gong.transcript_batch_failed",
                        call_count=len(calls),
                        exc_info=True,
                    )

        records = [self._normalize_call(call, transcripts.get(call["id"])) for call in calls]
        next_cursor = (data.get("records") or {}).get("cursor")
        return FetchResult(records=records, next_cursor=next_cursor, has_more=bool(next_cursor))

    async def _fetch_transcripts(self, client, credentials: GongCredentials, call_ids: list[str]) -> dict[str, str]:
        response = await self._send(
            client,
            "POST",
            f"{self._base_url(credentials)}/v2/calls/transcript",
            json={"filter": {"callIds": call_ids}},
        )
        self._raise_for_status(response)

        result: dict[str, str] = {}
        for entry in response.json().get("callTranscripts") or []:
            lines = []
            for block in entry.get("transcript") or []:
                speaker = block.get("speakerId")
                for sentence in block.get("sentences") or []:
                    text = sentence.get("text", "")
                    lines.append(f"Speaker {speaker}: {text}" if speaker else text)
            full_text = "\n".join(lines)
            if full_text.strip():
                result[entry["callId"]] = full_text
        return result

    @staticmethod
    def _normalize_call(call: dict[str, Any], transcript: str | None) -> NormalizedCall:
        media = call.get("media") or {}
        return NormalizedCall(
            external_id=call["id"],
            title=call.get("title") or "",
            recording_url=media.get("videoUrl") or media.get("audioUrl") or call.get("url"),
            duration_seconds=call.get("duration"),
            occurred_at=call.get("started"),
            participants=[
                CallParticipant(
                    email=(party.get("emailAddress") or "").lower() or None,
                    name=party.get("name"),
                    is_host=party.get("affiliation") == "INTERNAL",
                )
                for party in call.get("parties") or []
            ],
            transcript=transcript,
        )
