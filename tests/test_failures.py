"""Tests for failure classification of finished runs."""

from __future__ import annotations

import asyncio

import httpx
import pytest

from src.integration_sync.errors import FatalProviderError, ProviderError
from src.integration_sync.sync.failures import FailureClass, classify_failure, classify_message


@pytest.mark.parametrize(
    "message, expected",
    [
        ("GONG API returned 429 for POST /v2/calls/extensive", FailureClass.RATE_LIMIT),
        ("Rate limit exceeded", FailureClass.RATE_LIMIT),
        ("SALESFORCE API returned 503 for GET /query", FailureClass.UPSTREAM_TRANSIENT),
        ("Bad Gateway", FailureClass.UPSTREAM_TRANSIENT),
        ("ECONNRESET while reading", FailureClass.NETWORK),
        ("redis connection refused", FailureClass.NETWORK),
        ("GRAIN credentials are malformed: 1 invalid field(s)", FailureClass.NON_RETRYABLE),
        (None, FailureClass.NON_RETRYABLE),
    ],
)
def test_classify_message(message, expected):
    assert classify_message(message) is expected


def test_fatal_provider_error_is_non_retryable():
    error = FatalProviderError("GONG API returned 401", status_code=401)
    assert classify_failure(error) is FailureClass.NON_RETRYABLE
    assert not classify_failure(error).retryable


def test_status_code_takes_precedence_over_message():
    assert classify_failure(ProviderError("slow down", status_code=429)) is FailureClass.RATE_LIMIT
    assert classify_failure(ProviderError("oops", status_code=502)) is FailureClass.UPSTREAM_TRANSIENT


def test_transport_errors_are_network():
    assert classify_failure(httpx.ConnectError("refused")) is FailureClass.NETWORK
    assert classify_failure(asyncio.TimeoutError()) is FailureClass.NETWORK
    assert classify_failure(ConnectionError("reset")) is FailureClass.NETWORK


def test_unrecognised_provider_error_stays_retryable():
    assert classify_failure(ProviderError("something odd")) is FailureClass.UPSTREAM_TRANSIENT


def test_unrecognised_plain_error_is_non_retryable():
    assert classify_failure(KeyError("calls")) is FailureClass.NON_RETRYABLE
