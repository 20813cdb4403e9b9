"""Cooperative cancellation with an optional deadline."""

from __future__ import annotations

import asyncio
import inspect
import time
from collections.abc import Awaitable
from typing import TypeVar

from reasonflow.utils.errors import SessionCancelled

T = TypeVar("T")


class CancellationToken:
    """Caller-supplied cancellation signal shared by every stage of a session.

    The token is cancelled either explicitly via ``cancel()`` or implicitly
    once its deadline passes. Suspension points call ``guard()`` so that a
    pending await is abandoned as soon as the token fires.

    Example:
        token = CancellationToken(timeout=5.0)
        session = await coordinator.process("fix the build", token)

    """

    def __init__(self, timeout: float | None = None) -> None:
        """Initialize token.

        Args:
            timeout: Seconds from now until the deadline. None means no deadline.

        """
        self._event = asyncio.Event()
        self._reason = ""
        self.deadline = time.monotonic() + timeout if timeout is not None else None

    def cancel(self, reason: str = "cancelled by caller") -> None:
        """Signal cancellation."""
        if not self._event.is_set():
            self._reason = reason
            self._event.set()

    @property
    def reason(self) -> str:
        """Why the token fired."""
        if self._reason:
            return self._reason
        return "deadline exceeded" if self._deadline_passed() else ""

    def _deadline_passed(self) -> bool:
        return self.deadline is not None and time.monotonic() >= self.deadline

    @property
    def cancelled(self) -> bool:
        """True once cancelled or past the deadline."""
        return self._event.is_set() or self._deadline_passed()

    def remaining(self) -> float | None:
        """Seconds left before the deadline, or None when unbounded."""
        if self.deadline is None:
            return None
        return max(0.0, self.deadline - time.monotonic())

    def bound(self, timeout: float) -> float:
        """Clamp a stage timeout so it never outlives the deadline."""
        remaining = self.remaining()
        return timeout if remaining is None else min(timeout, remaining)

    def raise_if_cancelled(self) -> None:
        """Raise SessionCancelled if the token has fired.

        Raises:
            SessionCancelled: If cancelled or past the deadline.

        """
        if self.cancelled:
            raise SessionCancelled(f"Session cancelled: {self.reason}")

    async def guard(self, awaitable: Awaitable[T]) -> T:
        """Await ``awaitable`` unless the token fires first.

        The wrapped work is cancelled when the token fires or the deadline
        passes.

        Raises:
            SessionCancelled: If the token fires before the work completes.

        """
        if self.cancelled:
            if inspect.iscoroutine(awaitable):
                awaitable.close()
            self.raise_if_cancelled()
        work = asyncio.ensure_future(awaitable)
        waiter = asyncio.ensure_future(self._event.wait())
        try:
            done, _ = await asyncio.wait(
                {work, waiter},
                timeout=self.remaining(),
                return_when=asyncio.FIRST_COMPLETED,
            )
        except asyncio.CancelledError:
            work.cancel()
            raise
        finally:
            waiter.cancel()

        if work in done:
            return work.result()

        work.cancel()
        await asyncio.gather(work, return_exceptions=True)
        if not self._event.is_set():
            self.cancel("deadline exceeded")
        raise SessionCancelled(f"Session cancelled: {self.reason}")
