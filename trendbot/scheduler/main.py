"""Scheduler process entry point."""

import asyncio
import signal
from typing import Optional

from trendbot.core.db import create_all, get_sessionmaker
from trendbot.core.logging import get_logger, setup_logging
from trendbot.core.settings import get_settings
from trendbot.scheduler.config import load_jobs_config, sync_jobs
from trendbot.scheduler.engine import run_scheduler
from trendbot.scheduler.invoker import TargetInvoker
from trendbot.scheduler.state import SchedulerState
from trendbot.trends.pipeline import build_pipeline

logger = get_logger(__name__)


async def serve(stop_event: Optional[asyncio.Event] = None) -> None:
    """Sync job definitions, then tick until stopped."""
    settings = get_settings()
    session_factory = get_sessionmaker()

    await create_all()

    pipeline = build_pipeline(session_factory)
    stages = pipeline.stages()

    jobs_file = load_jobs_config(settings.jobs_config_path)
    await sync_jobs(session_factory, jobs_file, known_stages=stages)

    state = SchedulerState(session_factory, TargetInvoker(stages))
    stop_event = stop_event or asyncio.Event()

    loop = asyncio.get_running_loop()
    for sig in (signal.SIGINT, signal.SIGTERM):
        try:
            loop.add_signal_handler(sig, stop_event.set)
        except NotImplementedError:
            # not available on every platform (e.g. Windows)
            pass

    await run_scheduler(state, settings.scheduler_tick_seconds, stop_event)


def main() -> None:
    setup_logging("scheduler")
    logger.info("Starting trendbot scheduler")
    asyncio.run(serve())


if __name__ == "__main__":
    main()
