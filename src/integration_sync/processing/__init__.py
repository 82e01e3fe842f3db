"""Hand-off of fetched records to the downstream processing consumer."""

from src.integration_sync.processing.queue import (
    ProcessingJob,
    ProcessingQueue,
    RedisStreamProcessingQueue,
)

__all__ = ["ProcessingJob", "ProcessingQueue", "RedisStreamProcessingQueue"]
