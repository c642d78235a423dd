"""Overdue sweep.

Finds ACTIVE loans past their end date and moves each one to OVERDUE in its
own transaction. A record that was returned, closed or already flagged
between the read and the write is skipped rather than touched twice.
"""

import logging
from dataclasses import dataclass, field
from datetime import datetime
from typing import Callable, Optional

from ..db.models import to_utc, utcnow
from ..errors import NotFoundError, StateError
from .manager import LendingRecordManager

logger = logging.getLogger(__name__)


@dataclass
class SweepResult:
    """Outcome of one sweep run."""

    checked: int = 0
    marked: int = 0
    skipped: int = 0
    marked_ids: list[str] = field(default_factory=list)


def run_overdue_sweep(
    manager: LendingRecordManager,
    now: Optional[datetime] = None,
) -> SweepResult:
    """Flag every overdue ACTIVE record.

    Args:
        manager: Lending record manager
        now: Reference instant (default: current time)

    Returns:
        SweepResult with counts
    """
    now = to_utc(now) if now else utcnow()
    candidates = manager.find_overdue(now)
    result = SweepResult(checked=len(candidates))

    for record in candidates:
        try:
            changed = manager.mark_overdue(
                record.id,
                reason=f"End date {record.end_date.isoformat()} passed",
            )
        except (StateError, NotFoundError) as exc:
            logger.info("Overdue sweep skipped %s: %s", record.id, exc)
            result.skipped += 1
            continue

        if changed:
            result.marked += 1
            result.marked_ids.append(record.id)
        else:
            result.skipped += 1

    logger.info(
        "Overdue sweep at %s: checked=%d marked=%d skipped=%d",
        now.isoformat(),
        result.checked,
        result.marked,
        result.skipped,
    )
    return result


def overdue_sweep_job(
    manager: LendingRecordManager,
    on_result: Optional[Callable[[SweepResult], None]] = None,
) -> Optional[SweepResult]:
    """One scheduled sweep run.

    A failing run is logged and reported as ``None`` so the schedule keeps
    going; the next run starts from a fresh read.
    """
    try:
        result = run_overdue_sweep(manager)
    except Exception:
        logger.exception("Overdue sweep run failed")
        return None
    if on_result:
        on_result(result)
    return result
