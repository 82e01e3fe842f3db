"""Failure classification for finished runs.

A failed run's error is sorted into one of four classes. The class decides
how far the owning IntegrationConfig is downgraded (retryable classes leave
it DEGRADED, non-retryable ones mark it FAILED) and is shown next to each
dead-letter run so operators can tell outages from broken credentials.

Typed errors are classified by type and status code first; anything else
falls back to matching the message text.
"""

from __future__ import annotations

import asyncio
import re
from enum import Enum

import httpx

from src.integration_sync.errors import FatalProviderError, ProviderError


class FailureClass(str, Enum):
    RATE_LIMIT = "rate_limit"
    UPSTREAM_TRANSIENT = "upstream_transient"
    NETWORK = "network"
    NON_RETRYABLE = "non_retryable"

    @property
    def retryable(self) -> bool:
        return self is not FailureClass.NON_RETRYABLE


_RATE_LIMIT = re.compile(r"429|rate.?limit|too many requests|quota exceeded", re.IGNORECASE)
_UPSTREAM = re.compile(
    r"\b5\d{2}\b|gateway timeout|bad gateway|service unavailable|temporar(y|ily)|upstream",
    re.IGNORECASE,
)
_NETWORK = re.compile(
    r"redis|econnreset|etimedout|timeout|timed out|connection reset|network|socket hang up|connect",
    re.IGNORECASE,
)


def classify_message(message: str | None) -> FailureClass:
    """Classify a stored error message."""
    text = message or ""
    if _RATE_LIMIT.search(text):
        return FailureClass.RATE_LIMIT
    if _UPSTREAM.search(text):
        return FailureClass.UPSTREAM_TRANSIENT
    if _NETWORK.search(text):
        return FailureClass.NETWORK
    return FailureClass.NON_RETRYABLE


def classify_failure(error: BaseException) -> FailureClass:
    """Classify a live exception raised by a run."""
    if isinstance(error, FatalProviderError):
        return FailureClass.NON_RETRYABLE
    if isinstance(error, ProviderError) and error.status_code is not None:
        if error.status_code == 429:
            return FailureClass.RATE_LIMIT
        if error.status_code >= 500:
            return FailureClass.UPSTREAM_TRANSIENT
    if isinstance(error, (asyncio.TimeoutError, httpx.TransportError, ConnectionError)):
        return FailureClass.NETWORK

    by_message = classify_message(str(error))
    if by_message is FailureClass.NON_RETRYABLE and isinstance(error, ProviderError):
        return FailureClass.UPSTREAM_TRANSIENT
    return by_message

