"""Utility modules for ReasonFlow."""

from .cancellation import CancellationToken
from .complexity import ComplexityResult, clear_complexity_cache, detect_complexity
from .errors import (
    CacheCorruption,
    ConfigException,
    InvalidTransition,
    MemoryOverflow,
    NoInferenceAvailable,
    NoViableSolution,
    OracleUnavailable,
    PipelineFailure,
    ReasonFlowError,
    SessionCancelled,
    SessionNotFoundError,
)
from .metrics import PipelineMetrics
from .retry import retry_with_backoff, with_timeout
from .rwlock import AsyncRWLock
from .task_queue import BackgroundTaskQueue, QueueState

__all__ = [
    # Errors
    "ReasonFlowError",
    "ConfigException",
    "OracleUnavailable",
    "MemoryOverflow",
    "CacheCorruption",
    "InvalidTransition",
    "SessionNotFoundError",
    "PipelineFailure",
    "NoInferenceAvailable",
    "NoViableSolution",
    "SessionCancelled",
    # Concurrency
    "AsyncRWLock",
    "BackgroundTaskQueue",
    "CancellationToken",
    "QueueState",
    # Misc
    "ComplexityResult",
    "PipelineMetrics",
    "clear_complexity_cache",
    "detect_complexity",
    "retry_with_backoff",
    "with_timeout",
]
