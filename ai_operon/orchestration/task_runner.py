#!/usr/bin/env python3
"""
Task Runner
Front door for running tasks from many users at once: a global cap on
concurrent tasks and a per-user ceiling on submissions per rolling window.
"""

import asyncio
import logging
import time
from collections import defaultdict, deque
from typing import Callable, Deque, Dict, Optional

from ai_operon.core.config import config
from ai_operon.orchestration.orchestrator import PlanExecutor, TaskReport

logger = logging.getLogger(__name__)


class RateLimitExceeded(Exception):
    """A user submitted too many tasks in the current window"""

    def __init__(self, user_id: str, retry_after: float):
        super().__init__(f"Too many tasks from {user_id}, retry in {retry_after:.0f}s")
        self.user_id = user_id
        self.retry_after = retry_after


class TaskRunner:
    """Runs tasks concurrently across users, sequentially within each task"""

    def __init__(
        self,
        executor: PlanExecutor,
        max_concurrent: Optional[int] = None,
        window_sec: Optional[float] = None,
        max_per_window: Optional[int] = None,
        clock: Callable[[], float] = time.monotonic
    ):
        self.executor = executor
        self.max_concurrent = max_concurrent or config.get("tasks.max_concurrent_tasks", 5)
        self.window_sec = window_sec or config.get("tasks.rate_limit_window_sec", 900)
        self.max_per_window = max_per_window or config.get("tasks.rate_limit_max", 100)
        self._clock = clock
        self._semaphore = asyncio.Semaphore(self.max_concurrent)
        self._submissions: Dict[str, Deque[float]] = defaultdict(deque)
        self._active = 0

    @property
    def active(self) -> int:
        return self._active

    def _admit(self, user_id: str) -> None:
        now = self._clock()
        window = self._submissions[user_id]
        while window and now - window[0] >= self.window_sec:
            window.popleft()
        if len(window) >= self.max_per_window:
            retry_after = self.window_sec - (now - window[0])
            logger.warning("Rate limit hit for user %s (%d tasks in window)", user_id, len(window))
            raise RateLimitExceeded(user_id, retry_after)
        window.append(now)

    async def submit(self, task_text: str, user_id: str = "default", session_id: str = "default") -> TaskReport:
        """
        Run one task, waiting for a free slot if the concurrency cap is reached.

        Raises:
            RateLimitExceeded: before queueing, when the user is over the limit
        """
        self._admit(user_id)
        async with self._semaphore:
            self._active += 1
            try:
                return await self.executor.execute(task_text, user_id, session_id)
            finally:
                self._active -= 1
