"""In-process scheduler state shared by ticks and invocations."""

import asyncio
import os
from datetime import datetime
from typing import Callable, Optional, Set

from sqlalchemy.ext.asyncio import async_sessionmaker

from trendbot.core import repositories as repo
from trendbot.core.logging import get_logger
from trendbot.core.settings import get_settings
from trendbot.core.time import get_current_utc_time
from trendbot.scheduler.cadence import is_due
from trendbot.scheduler.invoker import TargetInvoker

logger = get_logger(__name__)

SecretGetter = Callable[[str], Optional[str]]
Clock = Callable[[], datetime]


class SchedulerState:
    """
    Worker pool, running set and task registry of one scheduler process.

    ``claim`` is the only way to start an invocation: under one lock it
    checks the in-process running set, the durable ``running`` rows and
    whether the job is still due.
    """

    def __init__(
        self,
        session_factory: async_sessionmaker,
        invoker: TargetInvoker,
        max_concurrency: Optional[int] = None,
        secret_getter: Optional[SecretGetter] = None,
        clock: Optional[Clock] = None,
        stale_grace_seconds: Optional[float] = None,
        default_timeout_seconds: Optional[float] = None,
    ):
        settings = get_settings()
        self.session_factory = session_factory
        self.invoker = invoker
        self.max_concurrency = max_concurrency or settings.scheduler_max_concurrency
        self.semaphore = asyncio.Semaphore(self.max_concurrency)
        self.secret_getter: SecretGetter = secret_getter or os.environ.get
        self.clock: Clock = clock or get_current_utc_time
        self.stale_grace_seconds = (
            settings.stale_execution_grace_seconds if stale_grace_seconds is None else stale_grace_seconds
        )
        self.default_timeout_seconds = default_timeout_seconds or settings.job_timeout_seconds

        self.running: Set[str] = set()
        self.tasks: Set[asyncio.Task] = set()
        self._lock = asyncio.Lock()

    async def claim(self, job_name: str, now: datetime) -> bool:
        """Reserve ``job_name`` for one invocation; False if running or no longer due."""
        async with self._lock:
            if job_name in self.running:
                return False
            async with self.session_factory() as session:
                if await repo.has_running_execution(session, job_name):
                    return False
                job = await repo.get_job(session, job_name)
                if job is None or not job.enabled or not is_due(job.cadence, job.last_run_at, now):
                    return False
            self.running.add(job_name)
            return True

    async def release(self, job_name: str) -> None:
        async with self._lock:
            self.running.discard(job_name)

    def is_running(self, job_name: str) -> bool:
        return job_name in self.running

    def spawn(self, coro) -> asyncio.Task:
        task = asyncio.create_task(coro)
        self.tasks.add(task)
        task.add_done_callback(self.tasks.discard)
        return task

    async def drain(self) -> None:
        """Wait for every in-flight invocation."""
        while self.tasks:
            await asyncio.gather(*list(self.tasks), return_exceptions=True)

    async def close(self) -> None:
        """Cancel in-flight invocations and wait for them to unwind."""
        for task in list(self.tasks):
            task.cancel()
        await self.drain()
        logger.info("Scheduler state closed")
