"""Sync engine, retry executor, and failure classification."""

from src.integration_sync.sync.engine import PlannedSync, SyncEngine, SyncOptions
from src.integration_sync.sync.failures import FailureClass, classify_failure, classify_message
from src.integration_sync.sync.retry import RetryPolicy, with_retry

__all__ = [
    "FailureClass",
    "PlannedSync",
    "RetryPolicy",
    "SyncEngine",
    "SyncOptions",
    "classify_failure",
    "classify_message",
    "with_retry",
]
