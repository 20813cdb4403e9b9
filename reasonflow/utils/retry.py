"""Retry and timeout decorators for calls to external collaborators."""

from __future__ import annotations

import asyncio
import inspect
from collections.abc import Awaitable, Callable
from functools import wraps
from typing import ParamSpec, TypeVar

from loguru import logger
from tenacity import (
    AsyncRetrying,
    RetryCallState,
    retry_if_exception_type,
    stop_after_attempt,
    wait_exponential,
)

P = ParamSpec("P")
T = TypeVar("T")


def _log_retry(state: RetryCallState) -> None:
    exc = state.outcome.exception() if state.outcome else None
    name = getattr(state.fn, "__name__", "call")
    logger.warning(f"Retry attempt {state.attempt_number} for {name}: {exc}")


def retry_with_backoff(
    max_attempts: int = 3,
    base_delay: float = 0.5,
    max_delay: float = 10.0,
    retry_on: tuple[type[Exception], ...] | None = None,
) -> Callable[[Callable[P, Awaitable[T]]], Callable[P, Awaitable[T]]]:
    """Decorator for async retry with exponential backoff.

    Args:
        max_attempts: Maximum number of attempts, including the first.
        base_delay: Initial delay between retries in seconds.
        max_delay: Maximum delay between retries in seconds.
        retry_on: Exception types to retry on. If None, retries on all exceptions.

    Returns:
        Decorated coroutine function with retry logic.

    Example:
        @retry_with_backoff(max_attempts=3, base_delay=0.5)
        async def call_oracle(prompt: str) -> str:
            return await client.analyze(prompt)

    """
    retry_exceptions = retry_on or (Exception,)

    def decorator(func: Callable[P, Awaitable[T]]) -> Callable[P, Awaitable[T]]:
        if not inspect.iscoroutinefunction(func):
            raise TypeError("retry_with_backoff can only be applied to async functions")

        @wraps(func)
        async def wrapper(*args: P.args, **kwargs: P.kwargs) -> T:
            async for attempt in AsyncRetrying(
                stop=stop_after_attempt(max_attempts),
                wait=wait_exponential(multiplier=base_delay, min=base_delay, max=max_delay),
                retry=retry_if_exception_type(retry_exceptions),
                before_sleep=_log_retry,
                reraise=True,
            ):
                with attempt:
                    return await func(*args, **kwargs)
            raise AssertionError("unreachable")  # pragma: no cover

        return wrapper

    return decorator


def with_timeout(
    timeout_seconds: float,
) -> Callable[[Callable[P, Awaitable[T]]], Callable[P, Awaitable[T]]]:
    """Decorator to bound an async function's execution time.

    Args:
        timeout_seconds: Maximum execution time in seconds.

    Returns:
        Decorated function with timeout.

    Raises:
        TimeoutError: If function exceeds timeout.

    """

    def decorator(func: Callable[P, Awaitable[T]]) -> Callable[P, Awaitable[T]]:
        if not inspect.iscoroutinefunction(func):
            raise TypeError("with_timeout can only be applied to async functions")

        @wraps(func)
        async def wrapper(*args: P.args, **kwargs: P.kwargs) -> T:
            return await asyncio.wait_for(func(*args, **kwargs), timeout=timeout_seconds)

        return wrapper

    return decorator
