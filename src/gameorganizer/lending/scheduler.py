"""Periodic overdue sweep.

Runs the overdue sweep on a fixed interval with APScheduler. Only one run
is in flight at a time and missed runs are collapsed into one.
"""

import logging
from datetime import datetime, timezone
from typing import Callable, Optional

from apscheduler.schedulers.blocking import BlockingScheduler
from apscheduler.triggers.interval import IntervalTrigger

from ..errors import ValidationError
from .manager import LendingRecordManager
from .sweep import SweepResult, overdue_sweep_job

logger = logging.getLogger(__name__)

SWEEP_JOB_ID = "overdue_sweep"


def build_sweep_scheduler(
    manager: LendingRecordManager,
    interval: int,
    on_result: Optional[Callable[[SweepResult], None]] = None,
) -> BlockingScheduler:
    """Create a scheduler that sweeps every ``interval`` seconds.

    The first run fires as soon as the scheduler starts.

    Args:
        manager: Lending record manager
        interval: Seconds between runs
        on_result: Called with the result of every successful run

    Returns:
        A configured, not yet started, BlockingScheduler
    """
    if interval <= 0:
        raise ValidationError("Sweep interval must be a positive number of seconds")

    scheduler = BlockingScheduler(timezone="UTC")
    scheduler.add_job(
        overdue_sweep_job,
        trigger=IntervalTrigger(seconds=interval),
        args=[manager],
        kwargs={"on_result": on_result},
        id=SWEEP_JOB_ID,
        replace_existing=True,
        max_instances=1,
        coalesce=True,
        misfire_grace_time=interval,
        next_run_time=datetime.now(timezone.utc),
    )
    logger.info("Overdue sweep scheduled every %d seconds", interval)
    return scheduler
