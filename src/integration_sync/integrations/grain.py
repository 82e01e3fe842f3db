"""Grain call-recording adapter (bearer token, cursor-paginated recordings)."""

from __future__ import annotations

from datetime import datetime, timezone
from typing import Any

from src.integration_sync.errors import ProviderError
from src.integration_sync.integrations.adapter import CallRecordingAdapter
from src.integration_sync.integrations.schemas import (
    CallParticipant,
    FetchResult,
    GrainCredentials,
    IntegrationProvider,
    NormalizedCall,
)

PAGE_SIZE = 50


def _started_before(call: NormalizedCall, bound: datetime) -> bool:
    if call.occurred_at is None:
        return True
    occurred = call.occurred_at
    if occurred.tzinfo is None:
        occurred = occurred.replace(tzinfo=timezone.utc)
    return occurred <= bound


class GrainAdapter(CallRecordingAdapter):
    """Adapter for the Grain public API.

    Recordings are listed with transcripts inlined, so one request per page
    is enough. The ``until`` bound is applied client-side because the
    listing endpoint only filters on the lower bound.
    """

    provider = IntegrationProvider.GRAIN
    credentials_model = GrainCredentials
    probe_url = "https://api.grain.com"

    @staticmethod
    def _headers(creds: GrainCredentials) -> dict[str, str]:
        return {
            "Authorization": f"Bearer {creds.api_token}",
            "Content-Type": "application/json",
        }

    @staticmethod
    def _base_url(creds: GrainCredentials) -> str:
        return creds.base_url.rstrip("/")

    async def validate_credentials(self, credentials: dict[str, Any]) -> bool:
        creds = self.parse_credentials(credentials)
        try:
            async with self._client(self._headers(creds)) as client:
                response = await self._send(
                    client, "GET", f"{self._base_url(creds)}/v1/recordings", params={"limit": 1}
                )
        except ProviderError:
            return False
        return response.status_code == 200

    async def fetch_calls(
        self,
        credentials: GrainCredentials,
        cursor: str | None,
        since: datetime | None,
        until: datetime | None,
    ) -> FetchResult:
        params: dict[str, Any] = {"limit": PAGE_SIZE, "include_transcript": "true"}
        if cursor:
            params["cursor"] = cursor
        if since:
            params["started_after"] = since.isoformat()

        async with self._client(self._headers(credentials)) as client:
            response = await self._send(
                client, "GET", f"{self._base_url(credentials)}/v1/recordings", params=params
            )
        self._raise_for_status(response)
        data = response.json()

        records = [self._normalize_recording(rec) for rec in data.get("recordings") or []]
        if until is not None:
            bound = until if until.tzinfo else until.replace(tzinfo=timezone.utc)
            records = [r for r in records if _started_before(r, bound)]

        return FetchResult(
            records=records,
            next_cursor=data.get("cursor"),
            has_more=bool(data.get("has_more")),
        )

    @staticmethod
    def _transcript_text(transcript: dict[str, Any] | None) -> str | None:
        if not transcript:
            return None
        if transcript.get("text"):
            return transcript["text"]
        lines = []
        for segment in transcript.get("segments") or []:
            speaker = segment.get("speaker") or segment.get("speaker_email")
            lines.append(f"{speaker}: {segment['text']}" if speaker else segment["text"])
        return "\n".join(lines) or None

    def _normalize_recording(self, rec: dict[str, Any]) -> NormalizedCall:
        return NormalizedCall(
            external_id=rec["id"],
            title=rec.get("title") or "",
            recording_url=rec.get("url"),
            duration_seconds=rec.get("duration"),
            occurred_at=rec.get("started_at"),
            participants=[
                CallParticipant(
                    email=(p.get("email") or "").lower() or None,
                    name=p.get("name"),
                    is_host=bool(p.get("is_host", p.get("is_organizer", False))),
                )
                for p in rec.get("participants") or []
            ],
            transcript=self._transcript_text(rec.get("transcript")),
        )
