"""Processing queue hand-off for fetched records.

The engine hands every fetched page to a ProcessingQueue and moves on;
ingestion and indexing happen in a downstream consumer. The production
implementation appends one entry per record to a Redis Stream, trimmed
approximately to a maximum length.

Stream entries carry the delivery policy the consumer should apply
(``max_attempts`` and ``backoff_ms``) next to the record payload.
"""

from __future__ import annotations

import json
from abc import ABC, abstractmethod
from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Any

import redis.asyncio as aioredis
import structlog

logger = structlog.get_logger(__name__)

JOB_MAX_ATTEMPTS = 3
JOB_BACKOFF_MS = 5000


@dataclass(frozen=True)
class ProcessingJob:
    """One normalized record bound for the downstream consumer."""

    organization_id: str
    integration_config_id: str
    provider: str
    run_id: str
    record_type: str
    payload: dict[str, Any] = field(default_factory=dict)

    def to_fields(self) -> dict[str, str]:
        """Flatten to the string field map Redis Streams require."""
        return {
            "organization_id": self.organization_id,
            "integration_config_id": self.integration_config_id,
            "provider": self.provider,
            "run_id": self.run_id,
            "record_type": self.record_type,
            "payload": json.dumps(self.payload, default=str),
            "max_attempts": str(JOB_MAX_ATTEMPTS),
            "backoff_ms": str(JOB_BACKOFF_MS),
            "enqueued_at": datetime.now(timezone.utc).isoformat(),
        }


class ProcessingQueue(ABC):
    """Fire-and-forget sink for fetched records."""

    @abstractmethod
    async def add(self, jobs: list[ProcessingJob]) -> int:
        """Enqueue jobs. Returns the number accepted."""
        ...

    @abstractmethod
    async def ping(self) -> None:
        """Raise if the queue backend is unreachable."""
        ...


class RedisStreamProcessingQueue(ProcessingQueue):
    """ProcessingQueue backed by a single Redis Stream.

    Args:
        redis: Async Redis client.
        stream: Stream key to append to.
        maxlen: Approximate cap on stream length.
    """

    def __init__(self, redis: aioredis.Redis, stream: str = "integration:processing", maxlen: int = 100_000) -> None:
        self._redis = redis
        self._stream = stream
        self._maxlen = maxlen

    async def add(self, jobs: list[ProcessingJob]) -> int:
        if not jobs:
            return 0
        async with self._redis.pipeline(transaction=False) as pipe:
            for job in jobs:
                pipe.xadd(self._stream, job.to_fields(), maxlen=self._maxlen, approximate=True)
            message_ids = await pipe.execute()

        logger.debug(
            "processing_queue.jobs_enqueued",
            stream=self._stream,
            count=len(message_ids),
            run_id=jobs[0].run_id,
        )
        return len(message_ids)

    async def ping(self) -> None:
        pong = await self._redis.ping()
        if not pong:
            raise ConnectionError("Redis PING did not return PONG")
