"""Pipeline health derived from the execution log."""

from datetime import datetime
from typing import Any, Dict, List, Optional

from sqlalchemy.ext.asyncio import AsyncSession

from trendbot.core import repositories as repo
from trendbot.core.models import JOB_STATUS_FAILED, JOB_STATUS_RUNNING, JOB_STATUS_SUCCEEDED
from trendbot.core.time import ensure_utc, get_current_utc_time
from trendbot.scheduler.cadence import compute_next_run

HISTORY_PER_JOB = 10


def _iso(dt: Optional[datetime]) -> Optional[str]:
    dt = ensure_utc(dt)
    return dt.isoformat() if dt else None


async def job_health(session: AsyncSession, now: Optional[datetime] = None) -> Dict[str, Any]:
    """
    Per-job health summary.

    A job is unhealthy when its latest finished execution failed. Overdue
    jobs (due but not started) are reported separately.

    Returns:
        Dict with ``status`` (``healthy`` / ``degraded``) and a ``jobs`` list
    """
    now = ensure_utc(now) or get_current_utc_time()
    jobs_info: List[Dict[str, Any]] = []

    for job in await repo.list_jobs(session):
        history = await repo.recent_executions(session, job.name, limit=HISTORY_PER_JOB)
        finished = [e for e in history if e.status != JOB_STATUS_RUNNING]
        last = finished[0] if finished else None

        consecutive_failures = 0
        for execution in finished:
            if execution.status != JOB_STATUS_FAILED:
                break
            consecutive_failures += 1

        next_run = compute_next_run(job.cadence, ensure_utc(job.last_run_at), now) if job.enabled else None
        running = any(e.status == JOB_STATUS_RUNNING for e in history)

        jobs_info.append({
            "name": job.name,
            "enabled": job.enabled,
            "cadence": job.cadence,
            "last_run_at": _iso(job.last_run_at),
            "next_run_at": _iso(next_run),
            "running": running,
            "overdue": bool(job.enabled and next_run and next_run < now and not running and job.last_run_at),
            "last_status": last.status if last else None,
            "last_error_code": last.error_code if last else None,
            "last_error_message": last.error_message if last else None,
            "last_completed_at": _iso(last.completed_at) if last else None,
            "consecutive_failures": consecutive_failures,
            "healthy": last is None or last.status == JOB_STATUS_SUCCEEDED,
        })

    unhealthy = [j["name"] for j in jobs_info if j["enabled"] and not j["healthy"]]
    return {
        "status": "degraded" if unhealthy else "healthy",
        "checked_at": now.isoformat(),
        "unhealthy_jobs": unhealthy,
        "jobs": jobs_info,
    }
