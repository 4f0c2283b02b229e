"""Job scheduler package.

This package contains modules for:
- Job definitions loaded from YAML (config.py)
- Cron cadence handling (cadence.py)
- Shared in-process state and mutual exclusion (state.py)
- Stage and HTTP target invocation (invoker.py)
- Tick loop and execution bookkeeping (engine.py)
- Execution-log health summaries (health.py)
"""

from .config import JobConfig, JobsFile, TargetConfig, load_jobs_config, sync_jobs
from .cadence import compute_next_run, is_due, next_fire_time, parse_cadence
from .state import SchedulerState
from .invoker import TargetInvoker
from .engine import reap_stale_executions, run_scheduler, tick

__all__ = [
    # Config
    'JobConfig',
    'JobsFile',
    'TargetConfig',
    'load_jobs_config',
    'sync_jobs',

    # Cadence
    'compute_next_run',
    'is_due',
    'next_fire_time',
    'parse_cadence',

    # Engine
    'SchedulerState',
    'TargetInvoker',
    'reap_stale_executions',
    'run_scheduler',
    'tick',
]
