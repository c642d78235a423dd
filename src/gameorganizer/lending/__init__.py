"""Lending record module.

Provides functionality for:
- Creating loans from approved borrow requests
- The ACTIVE -> OVERDUE -> CLOSED lifecycle
- Damage assessment on return
- Overdue detection and sweeping, once or on a schedule
"""

from .manager import LendingRecordManager
from .models import LendingRecord, LendingStatusChange
from .schemas import (
    LendingRecordResponse,
    LendingStats,
    LendingStatus,
    StatusChangeResponse,
)
from .scheduler import build_sweep_scheduler
from .sweep import SweepResult, overdue_sweep_job, run_overdue_sweep

__all__ = [
    "LendingRecordManager",
    "LendingRecord",
    "LendingStatusChange",
    "LendingRecordResponse",
    "LendingStats",
    "LendingStatus",
    "StatusChangeResponse",
    "SweepResult",
    "run_overdue_sweep",
    "overdue_sweep_job",
    "build_sweep_scheduler",
]
