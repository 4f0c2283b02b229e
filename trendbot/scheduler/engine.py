"""Scheduler tick loop and job invocation."""

import asyncio
import time
from dataclasses import dataclass
from datetime import datetime, timedelta
from typing import Any, Dict, List, Optional

from trendbot.core import repositories as repo
from trendbot.core.errors import ConfigMissingError, ErrorCode, InvocationTimeoutError, TrendbotError
from trendbot.core.logging import get_logger
from trendbot.core.models import JOB_STATUS_FAILED, JOB_STATUS_SUCCEEDED, ScheduledJob
from trendbot.core.retry import is_transient
from trendbot.core.settings import get_settings
from trendbot.core.time import ensure_utc, hours_between
from trendbot.scheduler.cadence import is_due, next_fire_time
from trendbot.scheduler.state import SchedulerState

logger = get_logger(__name__)

MAX_ERROR_MESSAGE_LENGTH = 2000


@dataclass
class JobSpec:
    """Detached copy of a scheduled job for use outside its session."""
    name: str
    cadence: str
    target: Dict[str, Any]
    timeout_seconds: float
    secret_env: str

    @classmethod
    def from_job(cls, job: ScheduledJob, default_timeout: float) -> "JobSpec":
        return cls(
            name=job.name,
            cadence=job.cadence,
            target=dict(job.target or {}),
            timeout_seconds=job.timeout_seconds or default_timeout,
            secret_env=job.secret_env,
        )


def error_code_for(exc: BaseException) -> ErrorCode:
    if isinstance(exc, TrendbotError):
        return exc.code
    if is_transient(exc):
        return ErrorCode.TRANSIENT_IO
    return ErrorCode.INVOCATION_ERROR


async def reap_stale_executions(state: SchedulerState, now: datetime) -> int:
    """
    Fail ``running`` executions older than their job's timeout plus grace.

    Executions this process is still running are left to their own deadline.

    Returns:
        Number of executions reaped
    """
    reaped = 0
    async with state.session_factory() as session:
        running = await repo.running_executions_with_timeouts(session)
        for execution, timeout in running:
            if state.is_running(execution.job_name):
                continue
            limit = (timeout or state.default_timeout_seconds) + state.stale_grace_seconds
            age_seconds = hours_between(ensure_utc(execution.started_at), now) * 3600
            if age_seconds <= limit:
                continue
            if await repo.finalize_execution(
                session,
                execution.id,
                JOB_STATUS_FAILED,
                completed_at=now,
                error_code=ErrorCode.TIMEOUT.value,
                error_message=f"Stale execution reaped after {age_seconds:.0f}s",
            ):
                reaped += 1
                logger.warning(
                    f"Reaped stale execution {execution.id} of job {execution.job_name}",
                    extra={"job": execution.job_name, "execution_id": execution.id},
                )
    return reaped


async def tick(state: SchedulerState, now: Optional[datetime] = None) -> List[str]:
    """
    Start every due job that is not already running.

    Does not wait for the invocations; use ``state.drain()`` for that.

    Args:
        state: Scheduler state
        now: Tick time (defaults to the state's clock)

    Returns:
        Names of the jobs started
    """
    now = ensure_utc(now) or state.clock()
    await reap_stale_executions(state, now)

    async with state.session_factory() as session:
        jobs = await repo.list_enabled_jobs(session)
        due = [
            JobSpec.from_job(job, state.default_timeout_seconds)
            for job in jobs
            if is_due(job.cadence, ensure_utc(job.last_run_at), now)
        ]

    started = []
    for spec in due:
        if not await state.claim(spec.name, now):
            continue
        state.spawn(run_job(state, spec, now))
        started.append(spec.name)

    if started:
        logger.info(f"Tick started {len(started)} jobs: {', '.join(started)}", extra={"jobs": started})
    return started


async def run_job(state: SchedulerState, spec: JobSpec, now: datetime) -> None:
    """Run one claimed invocation and record its outcome."""
    try:
        async with state.semaphore:
            await _invoke(state, spec, now)
    except Exception as e:
        logger.error(f"Bookkeeping failed for job {spec.name}: {e}", extra={"job": spec.name})
    finally:
        await state.release(spec.name)


async def _record_failure(
    state: SchedulerState,
    spec: JobSpec,
    execution_id: int,
    error: BaseException,
    completed_at: datetime,
) -> None:
    code = error_code_for(error)
    message = str(error) if isinstance(error, TrendbotError) else f"{type(error).__name__}: {error}"
    logger.error(f"Job {spec.name} failed: {message}", extra={"job": spec.name, "error_code": code.value})
    async with state.session_factory() as session:
        await repo.finalize_execution(
            session,
            execution_id,
            JOB_STATUS_FAILED,
            completed_at=completed_at,
            error_code=code.value,
            error_message=message[:MAX_ERROR_MESSAGE_LENGTH],
        )


async def _invoke(state: SchedulerState, spec: JobSpec, now: datetime) -> None:
    async with state.session_factory() as session:
        execution = await repo.create_execution(session, spec.name, now)
    if execution is None:
        return

    started = time.monotonic()

    def completed_at() -> datetime:
        return now + timedelta(seconds=time.monotonic() - started)

    # fail closed: the target is never called without its secret
    secret = (state.secret_getter(spec.secret_env) or "").strip()
    if not secret:
        error = ConfigMissingError(f"Environment variable {spec.secret_env} is not set")
        await _record_failure(state, spec, execution.id, error, completed_at())
        return

    try:
        result = await asyncio.wait_for(
            state.invoker.invoke(spec.target, secret, now),
            timeout=spec.timeout_seconds,
        )
    except asyncio.TimeoutError:
        error = InvocationTimeoutError(f"Timed out after {spec.timeout_seconds}s")
        await _record_failure(state, spec, execution.id, error, completed_at())
        return
    except Exception as e:
        await _record_failure(state, spec, execution.id, e, completed_at())
        return

    async with state.session_factory() as session:
        await repo.finalize_execution(session, execution.id, JOB_STATUS_SUCCEEDED, completed_at=completed_at())
        await repo.mark_job_run(session, spec.name, now, next_fire_time(spec.cadence, now))

    logger.info(
        f"Job {spec.name} succeeded in {time.monotonic() - started:.2f}s",
        extra={"job": spec.name, "result": result if isinstance(result, dict) else None},
    )


async def run_scheduler(
    state: SchedulerState,
    tick_seconds: Optional[float] = None,
    stop_event: Optional[asyncio.Event] = None,
) -> None:
    """
    Tick forever (or until ``stop_event`` is set), then drain in-flight jobs.

    A failing tick is logged and the loop continues.
    """
    tick_seconds = tick_seconds or get_settings().scheduler_tick_seconds
    stop_event = stop_event or asyncio.Event()
    logger.info(f"Scheduler started (tick every {tick_seconds}s, max {state.max_concurrency} concurrent jobs)")

    try:
        while not stop_event.is_set():
            try:
                await tick(state)
            except Exception as e:
                logger.error(f"Scheduler tick failed: {e}")
            try:
                await asyncio.wait_for(stop_event.wait(), timeout=tick_seconds)
            except asyncio.TimeoutError:
                pass
    finally:
        await state.drain()
        logger.info("Scheduler stopped")
