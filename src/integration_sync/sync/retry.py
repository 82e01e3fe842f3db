"""Bounded retry with exponential backoff for provider calls.

``with_retry`` runs an async operation up to ``policy.attempts`` times.
Between failures it sleeps an exponentially growing delay starting at
``base_delay_ms`` and capped at ``max_delay_ms``. The whole sequence is
also capped by ``max_elapsed_seconds``, and each invocation by
``call_timeout_seconds``.

The executor returns the first successful result. When the budget is
exhausted it re-raises the last error exactly as observed so callers can
classify it. Every error is retried uniformly unless
``fail_fast_on_fatal`` is set, in which case FatalProviderError stops the
loop after the attempt that raised it.

The sleep function is injectable so tests run without real delays.
"""

from __future__ import annotations

import asyncio
from collections.abc import Awaitable, Callable
from dataclasses import dataclass
from typing import TypeVar

import structlog
from tenacity import (
    AsyncRetrying,
    RetryCallState,
    retry_if_exception_type,
    retry_if_not_exception_type,
    stop_after_attempt,
    stop_after_delay,
    wait_exponential,
)

from src.integration_sync.config import Settings, get_settings
from src.integration_sync.errors import FatalProviderError, ProviderError

logger = structlog.get_logger(__name__)

T = TypeVar("T")

Sleep = Callable[[float], Awaitable[None]]
AttemptCallback = Callable[[int, BaseException], None]


@dataclass(frozen=True)
class RetryPolicy:
    """Retry budget for one logical operation.

    Attributes:
        attempts: Total invocations allowed (first call included).
        base_delay_ms: Delay before the second attempt.
        max_delay_ms: Ceiling for any single delay.
        max_elapsed_seconds: Cap on total time across attempts, None for no cap.
        call_timeout_seconds: Per-invocation timeout, None for no timeout.
        fail_fast_on_fatal: Stop immediately on FatalProviderError.
    """

    attempts: int = 4
    base_delay_ms: int = 500
    max_delay_ms: int = 30_000
    max_elapsed_seconds: float | None = 300.0
    call_timeout_seconds: float | None = 30.0
    fail_fast_on_fatal: bool = False

    def __post_init__(self) -> None:
        if self.attempts < 1:
            raise ValueError("RetryPolicy.attempts must be at least 1")
        if self.base_delay_ms < 0 or self.max_delay_ms < 0:
            raise ValueError("RetryPolicy delays must be non-negative")

    @classmethod
    def from_settings(cls, settings: Settings | None = None) -> RetryPolicy:
        settings = settings or get_settings()
        return cls(
            attempts=settings.SYNC_RETRY_ATTEMPTS,
            base_delay_ms=settings.SYNC_RETRY_BASE_DELAY_MS,
            max_delay_ms=settings.SYNC_RETRY_MAX_DELAY_MS,
            max_elapsed_seconds=settings.SYNC_RETRY_MAX_ELAPSED_SECONDS,
            call_timeout_seconds=settings.PROVIDER_TIMEOUT_SECONDS,
            fail_fast_on_fatal=settings.SYNC_FAIL_FAST_ON_FATAL,
        )

    def backoff_seconds(self, attempt: int) -> float:
        """Delay after the ``attempt``-th failure (1-based), before the next try."""
        delay_ms = self.base_delay_ms * (2 ** (attempt - 1))
        return min(delay_ms, self.max_delay_ms) / 1000


async def with_retry(
    operation: Callable[[], Awaitable[T]],
    policy: RetryPolicy | None = None,
    *,
    sleep: Sleep = asyncio.sleep,
    on_attempt_failed: AttemptCallback | None = None,
    label: str = "operation",
) -> T:
    """Run ``operation`` under ``policy``.

    Args:
        operation: Zero-argument coroutine function; invoked once per attempt.
        policy: Retry budget. Defaults to ``RetryPolicy()``.
        sleep: Awaitable sleep used between attempts.
        on_attempt_failed: Called with (attempt_number, error) after each failure.
        label: Name used in log events.

    Returns:
        The first successful result.

    Raises:
        Exception: The last error raised by ``operation``, unmodified.
    """
    policy = policy or RetryPolicy()
    attempt_number = 0

    async def _attempt() -> T:
        nonlocal attempt_number
        attempt_number += 1
        try:
            if policy.call_timeout_seconds is None:
                return await operation()
            try:
                return await asyncio.wait_for(operation(), timeout=policy.call_timeout_seconds)
            except asyncio.TimeoutError as exc:
                raise ProviderError(
                    f"{label} timed out after {policy.call_timeout_seconds}s"
                ) from exc
        except Exception as exc:
            logger.warning(
                "retry.attempt_failed",
                label=label,
                attempt=attempt_number,
                max_attempts=policy.attempts,
                error=str(exc),
                error_type=type(exc).__name__,
            )
            if on_attempt_failed is not None:
                on_attempt_failed(attempt_number, exc)
            raise

    def _before_sleep(state: RetryCallState) -> None:
        logger.info(
            "retry.backing_off",
            label=label,
            attempt=state.attempt_number,
            delay_seconds=state.next_action.sleep if state.next_action else None,
        )

    stop = stop_after_attempt(policy.attempts)
    if policy.max_elapsed_seconds is not None:
        stop = stop | stop_after_delay(policy.max_elapsed_seconds)

    retry = retry_if_exception_type(Exception)
    if policy.fail_fast_on_fatal:
        retry = retry & retry_if_not_exception_type(FatalProviderError)

    retrying = AsyncRetrying(
        stop=stop,
        wait=wait_exponential(
            multiplier=policy.base_delay_ms / 1000,
            min=policy.base_delay_ms / 1000,
            max=policy.max_delay_ms / 1000,
        ),
        retry=retry,
        sleep=sleep,
        before_sleep=_before_sleep,
        reraise=True,
    )
    return await retrying(_attempt)
