"""Tests for the work queue and per-key backoff."""

import asyncio

import pytest

from tenantctl.controller.workqueue import ExponentialBackoff, QueueShutDown, WorkQueue


class TestExponentialBackoff:
    """Tests for ExponentialBackoff."""

    def test_doubles_and_caps(self) -> None:
        backoff: ExponentialBackoff[str] = ExponentialBackoff(initial=1.0, maximum=5.0)
        delays = [backoff.next_delay("a") for _ in range(5)]
        assert delays == [1.0, 2.0, 4.0, 5.0, 5.0]
        assert backoff.failures("a") == 5

    def test_keys_are_independent(self) -> None:
        backoff: ExponentialBackoff[str] = ExponentialBackoff(initial=1.0)
        backoff.next_delay("a")
        backoff.next_delay("a")
        assert backoff.next_delay("b") == 1.0

    def test_forget_resets(self) -> None:
        backoff: ExponentialBackoff[str] = ExponentialBackoff(initial=0.5)
        backoff.next_delay("a")
        backoff.next_delay("a")
        backoff.forget("a")
        assert backoff.failures("a") == 0
        assert backoff.next_delay("a") == 0.5

    def test_long_streak_does_not_overflow(self) -> None:
        backoff: ExponentialBackoff[str] = ExponentialBackoff(
            initial=1.0, maximum=300.0
        )
        for _ in range(2000):
            delay = backoff.next_delay("a")
        assert delay == 300.0

    @pytest.mark.parametrize(("initial", "maximum"), [(0, 1), (-1, 1), (5, 1)])
    def test_invalid_bounds(self, initial: float, maximum: float) -> None:
        with pytest.raises(ValueError):
            ExponentialBackoff(initial=initial, maximum=maximum)


class TestWorkQueue:
    """Tests for WorkQueue."""

    @pytest.mark.anyio
    async def test_fifo_order(self) -> None:
        queue: WorkQueue[str] = WorkQueue()
        for key in ("a", "b", "c"):
            queue.add(key)

        assert [await queue.get() for _ in range(3)] == ["a", "b", "c"]

    @pytest.mark.anyio
    async def test_duplicate_adds_collapse(self) -> None:
        queue: WorkQueue[str] = WorkQueue()
        queue.add("a")
        queue.add("a")
        queue.add("a")
        assert len(queue) == 1

    @pytest.mark.anyio
    async def test_key_not_handed_out_while_processing(self) -> None:
        """Test a key re-added mid-pass waits for done()."""
        queue: WorkQueue[str] = WorkQueue()
        queue.add("a")
        key = await queue.get()

        queue.add("a")
        queue.add("a")
        assert len(queue) == 0
        assert queue.is_queued("a")
        assert queue.is_processing("a")

        queue.done(key)
        assert len(queue) == 1
        assert await queue.get() == "a"

    @pytest.mark.anyio
    async def test_done_without_readd_goes_idle(self) -> None:
        queue: WorkQueue[str] = WorkQueue()
        queue.add("a")
        queue.done(await queue.get())
        assert queue.is_idle()

    @pytest.mark.anyio
    async def test_get_waits_for_add(self) -> None:
        queue: WorkQueue[str] = WorkQueue()
        getter = asyncio.create_task(queue.get())
        await asyncio.sleep(0)
        assert not getter.done()

        queue.add("a")
        assert await asyncio.wait_for(getter, timeout=1) == "a"

    @pytest.mark.anyio
    async def test_add_after(self) -> None:
        queue: WorkQueue[str] = WorkQueue()
        queue.add_after("a", 0.01)
        assert queue.has_delayed("a")
        assert len(queue) == 0

        assert await asyncio.wait_for(queue.get(), timeout=1) == "a"
        assert not queue.has_delayed("a")

    @pytest.mark.anyio
    async def test_add_after_keeps_earliest(self) -> None:
        """Test a later deadline never replaces an earlier one."""
        queue: WorkQueue[str] = WorkQueue()
        queue.add_after("a", 0.01)
        queue.add_after("a", 60)

        assert await asyncio.wait_for(queue.get(), timeout=1) == "a"

    @pytest.mark.anyio
    async def test_add_after_earlier_replaces_later(self) -> None:
        queue: WorkQueue[str] = WorkQueue()
        queue.add_after("a", 60)
        queue.add_after("a", 0.01)

        assert await asyncio.wait_for(queue.get(), timeout=1) == "a"

    @pytest.mark.anyio
    async def test_add_after_zero_adds_now(self) -> None:
        queue: WorkQueue[str] = WorkQueue()
        queue.add_after("a", 0)
        assert len(queue) == 1

    @pytest.mark.anyio
    async def test_cancel_delayed(self) -> None:
        queue: WorkQueue[str] = WorkQueue()
        queue.add_after("a", 0.01)

        assert queue.cancel_delayed("a") is True
        assert queue.cancel_delayed("a") is False
        await asyncio.sleep(0.03)
        assert len(queue) == 0
        assert queue.is_idle()

    @pytest.mark.anyio
    async def test_shut_down_wakes_waiters(self) -> None:
        queue: WorkQueue[str] = WorkQueue()
        getter = asyncio.create_task(queue.get())
        await asyncio.sleep(0)

        queue.shut_down()

        with pytest.raises(QueueShutDown):
            await asyncio.wait_for(getter, timeout=1)

    @pytest.mark.anyio
    async def test_shut_down_ignores_adds_and_timers(self) -> None:
        queue: WorkQueue[str] = WorkQueue()
        queue.add_after("a", 0.01)
        queue.shut_down()
        queue.add("b")

        assert queue.shutting_down
        assert len(queue) == 0
        assert not queue.has_delayed("a")

    @pytest.mark.anyio
    async def test_concurrent_workers_never_share_a_key(self) -> None:
        """Test per-key serialization with several consumers."""
        queue: WorkQueue[str] = WorkQueue()
        active: set[str] = set()
        overlaps: list[str] = []
        passes: list[str] = []

        async def worker() -> None:
            while True:
                try:
                    key = await queue.get()
                except QueueShutDown:
                    return
                if key in active:
                    overlaps.append(key)
                active.add(key)
                await asyncio.sleep(0.001)
                active.discard(key)
                passes.append(key)
                queue.done(key)

        workers = [asyncio.create_task(worker()) for _ in range(4)]
        for _ in range(20):
            for key in ("a", "b"):
                queue.add(key)
            await asyncio.sleep(0)

        for _ in range(200):
            if queue.is_idle():
                break
            await asyncio.sleep(0.005)
        queue.shut_down()
        await asyncio.gather(*workers)

        assert overlaps == []
        assert {"a", "b"} <= set(passes)
