"""Tests for the reader/writer lock, cancellation tokens and the background queue."""

from __future__ import annotations

import asyncio

import pytest

from reasonflow.utils.cancellation import CancellationToken
from reasonflow.utils.errors import SessionCancelled
from reasonflow.utils.rwlock import AsyncRWLock
from reasonflow.utils.task_queue import BackgroundTaskQueue, QueueState

# =============================================================================
# AsyncRWLock
# =============================================================================


class TestAsyncRWLock:
    """Test shared and exclusive access."""

    @pytest.mark.asyncio
    async def test_readers_share_the_lock(self) -> None:
        lock = AsyncRWLock()
        inside = asyncio.Event()
        release = asyncio.Event()
        peak = 0

        async def reader() -> None:
            nonlocal peak
            async with lock.read():
                peak = max(peak, lock.readers)
                if lock.readers == 3:
                    inside.set()
                await release.wait()

        tasks = [asyncio.create_task(reader()) for _ in range(3)]
        await asyncio.wait_for(inside.wait(), timeout=1.0)
        release.set()
        await asyncio.gather(*tasks)

        assert peak == 3
        assert lock.readers == 0

    @pytest.mark.asyncio
    async def test_writer_waits_for_readers(self) -> None:
        """A writer only enters once every reader has left."""
        lock = AsyncRWLock()
        events: list[str] = []
        release = asyncio.Event()

        async def reader() -> None:
            async with lock.read():
                events.append("read-start")
                await release.wait()
                events.append("read-end")

        async def writer() -> None:
            async with lock.write():
                assert lock.write_locked
                assert lock.readers == 0
                events.append("write")

        r = asyncio.create_task(reader())
        await asyncio.sleep(0)
        w = asyncio.create_task(writer())
        await asyncio.sleep(0.01)
        assert "write" not in events

        release.set()
        await asyncio.gather(r, w)
        assert events == ["read-start", "read-end", "write"]
        assert not lock.write_locked

    @pytest.mark.asyncio
    async def test_waiting_writer_blocks_new_readers(self) -> None:
        """Writers are preferred over readers that arrive later."""
        lock = AsyncRWLock()
        order: list[str] = []
        release = asyncio.Event()

        async def first_reader() -> None:
            async with lock.read():
                await release.wait()

        async def writer() -> None:
            async with lock.write():
                order.append("writer")

        async def late_reader() -> None:
            async with lock.read():
                order.append("late-reader")

        r1 = asyncio.create_task(first_reader())
        await asyncio.sleep(0)
        w = asyncio.create_task(writer())
        await asyncio.sleep(0)
        r2 = asyncio.create_task(late_reader())
        await asyncio.sleep(0.01)
        assert order == []

        release.set()
        await asyncio.gather(r1, w, r2)
        assert order == ["writer", "late-reader"]

    @pytest.mark.asyncio
    async def test_released_on_exception(self) -> None:
        lock = AsyncRWLock()
        with pytest.raises(RuntimeError):
            async with lock.write():
                raise RuntimeError("boom")
        assert not lock.write_locked

        async with lock.read():
            assert lock.readers == 1


# =============================================================================
# CancellationToken
# =============================================================================


class TestCancellationToken:
    """Test explicit cancellation and deadlines."""

    @pytest.mark.asyncio
    async def test_fresh_token_not_cancelled(self) -> None:
        token = CancellationToken()
        assert not token.cancelled
        assert token.remaining() is None
        assert token.bound(3.0) == 3.0
        token.raise_if_cancelled()

    @pytest.mark.asyncio
    async def test_cancel_sets_reason(self) -> None:
        token = CancellationToken()
        token.cancel("user closed the tab")
        token.cancel("ignored second reason")

        assert token.cancelled
        assert token.reason == "user closed the tab"
        with pytest.raises(SessionCancelled, match="user closed the tab"):
            token.raise_if_cancelled()

    @pytest.mark.asyncio
    async def test_deadline_passes(self) -> None:
        token = CancellationToken(timeout=0.0)
        assert token.cancelled
        assert token.reason == "deadline exceeded"
        assert token.remaining() == 0.0

    @pytest.mark.asyncio
    async def test_bound_clamps_to_remaining(self) -> None:
        token = CancellationToken(timeout=0.5)
        assert token.bound(10.0) <= 0.5
        assert token.bound(0.1) == 0.1

    @pytest.mark.asyncio
    async def test_guard_returns_result(self) -> None:
        async def work() -> str:
            await asyncio.sleep(0)
            return "done"

        token = CancellationToken(timeout=1.0)
        assert await token.guard(work()) == "done"

    @pytest.mark.asyncio
    async def test_guard_propagates_work_errors(self) -> None:
        async def work() -> None:
            raise ValueError("bad input")

        with pytest.raises(ValueError, match="bad input"):
            await CancellationToken().guard(work())

    @pytest.mark.asyncio
    async def test_guard_abandons_work_on_cancel(self) -> None:
        """Cancelling the token cancels the awaited work."""
        token = CancellationToken()
        started = asyncio.Event()
        was_cancelled = False

        async def work() -> None:
            nonlocal was_cancelled
            started.set()
            try:
                await asyncio.sleep(10)
            except asyncio.CancelledError:
                was_cancelled = True
                raise

        async def cancel_soon() -> None:
            await started.wait()
            token.cancel("stop")

        canceller = asyncio.create_task(cancel_soon())
        with pytest.raises(SessionCancelled):
            await token.guard(work())
        await canceller
        assert was_cancelled

    @pytest.mark.asyncio
    async def test_guard_times_out_at_deadline(self) -> None:
        token = CancellationToken(timeout=0.02)
        with pytest.raises(SessionCancelled, match="deadline exceeded"):
            await token.guard(asyncio.sleep(5))
        assert token.cancelled

    @pytest.mark.asyncio
    async def test_guard_on_cancelled_token_never_runs_work(self) -> None:
        ran = False

        async def work() -> None:
            nonlocal ran
            ran = True

        token = CancellationToken()
        token.cancel()
        with pytest.raises(SessionCancelled):
            await token.guard(work())
        assert not ran


# =============================================================================
# BackgroundTaskQueue
# =============================================================================


class TestBackgroundTaskQueue:
    """Test queue lifecycle, ordering and failure isolation."""

    @pytest.mark.asyncio
    async def test_lifecycle(self) -> None:
        queue = BackgroundTaskQueue(name="test")
        assert queue.state == QueueState.IDLE

        queue.start()
        queue.start()
        assert queue.state == QueueState.RUNNING

        await queue.stop()
        assert queue.state == QueueState.STOPPED

    @pytest.mark.asyncio
    async def test_jobs_run_in_order(self) -> None:
        queue = BackgroundTaskQueue(name="test")
        queue.start()
        seen: list[int] = []

        for i in range(5):

            async def job(i: int = i) -> None:
                await asyncio.sleep(0)
                seen.append(i)

            assert queue.submit(job)

        await queue.drain()
        assert seen == [0, 1, 2, 3, 4]
        assert queue.pending == 0
        assert queue.stats.completed == 5
        await queue.stop()

    @pytest.mark.asyncio
    async def test_failing_job_does_not_stop_worker(self) -> None:
        queue = BackgroundTaskQueue(name="test")
        queue.start()
        seen: list[str] = []

        async def bad() -> None:
            raise RuntimeError("job exploded")

        async def good() -> None:
            seen.append("good")

        queue.submit(bad)
        queue.submit(good)
        await queue.drain()

        assert seen == ["good"]
        assert queue.stats.failed == 1
        assert queue.stats.completed == 1
        assert queue.state == QueueState.RUNNING
        await queue.stop()

    @pytest.mark.asyncio
    async def test_submit_when_not_running_drops(self) -> None:
        queue = BackgroundTaskQueue(name="test")

        async def job() -> None:
            return None

        assert queue.submit(job) is False
        assert queue.stats.dropped == 1
        assert queue.pending == 0

    @pytest.mark.asyncio
    async def test_full_queue_drops(self) -> None:
        queue = BackgroundTaskQueue(name="test", max_pending=1)
        queue.start()
        gate = asyncio.Event()

        async def blocked() -> None:
            await gate.wait()

        # The worker picks up the first job; the second fills the queue.
        queue.submit(blocked)
        await asyncio.sleep(0)
        assert queue.submit(blocked)
        assert queue.submit(blocked) is False
        assert queue.stats.dropped == 1

        gate.set()
        await queue.stop()

    @pytest.mark.asyncio
    async def test_stop_without_drain_drops_pending(self) -> None:
        queue = BackgroundTaskQueue(name="test")
        queue.start()
        gate = asyncio.Event()
        ran: list[str] = []

        async def blocked() -> None:
            await gate.wait()

        async def never() -> None:
            ran.append("never")

        queue.submit(blocked)
        await asyncio.sleep(0)
        queue.submit(never)
        await queue.stop(drain=False)

        assert ran == []
        assert queue.state == QueueState.STOPPED
        assert queue.stats.dropped >= 1
