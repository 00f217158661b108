"""
Tests for the concurrent task front door
"""

import asyncio

import pytest

from ai_operon.orchestration.task_runner import RateLimitExceeded, TaskRunner


class SlowExecutor:
    """Records how many tasks run at once"""

    def __init__(self):
        self.running = 0
        self.peak = 0
        self.release = asyncio.Event()
        self.seen = []

    async def execute(self, task_text, user_id, session_id):
        self.running += 1
        self.peak = max(self.peak, self.running)
        self.seen.append((task_text, user_id, session_id))
        try:
            await self.release.wait()
            return f"done: {task_text}"
        finally:
            self.running -= 1


class FakeClock:

    def __init__(self):
        self.now = 1000.0

    def __call__(self):
        return self.now


@pytest.mark.asyncio
async def test_concurrency_cap():
    executor = SlowExecutor()
    runner = TaskRunner(executor, max_concurrent=2, window_sec=60, max_per_window=10)

    tasks = [asyncio.ensure_future(runner.submit(f"task {i}", f"user{i}")) for i in range(5)]
    for _ in range(20):
        await asyncio.sleep(0)
    assert runner.active == 2

    executor.release.set()
    results = await asyncio.gather(*tasks)

    assert executor.peak == 2
    assert results == [f"done: task {i}" for i in range(5)]
    assert runner.active == 0


@pytest.mark.asyncio
async def test_rate_limit_per_user_rolling_window():
    executor = SlowExecutor()
    executor.release.set()
    clock = FakeClock()
    runner = TaskRunner(executor, max_concurrent=5, window_sec=60, max_per_window=2, clock=clock)

    await runner.submit("a", "alice")
    clock.now += 10
    await runner.submit("b", "alice")

    with pytest.raises(RateLimitExceeded) as excinfo:
        await runner.submit("c", "alice")
    assert excinfo.value.user_id == "alice"
    assert excinfo.value.retry_after == pytest.approx(50)

    # other users are unaffected
    await runner.submit("d", "bob")

    clock.now += 51
    await runner.submit("e", "alice")
    assert [seen[0] for seen in executor.seen] == ["a", "b", "d", "e"]


@pytest.mark.asyncio
async def test_rejected_submission_never_runs():
    executor = SlowExecutor()
    executor.release.set()
    runner = TaskRunner(executor, max_concurrent=1, window_sec=60, max_per_window=1, clock=FakeClock())

    await runner.submit("first", "carol", "s1")
    with pytest.raises(RateLimitExceeded):
        await runner.submit("second", "carol", "s1")

    assert executor.seen == [("first", "carol", "s1")]
