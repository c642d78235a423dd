"""Pydantic schemas for lending records."""

from datetime import datetime
from enum import Enum
from typing import Optional

from pydantic import BaseModel

# Damage severity scale, 0 = cosmetic, 5 = unusable
MIN_DAMAGE_SEVERITY = 0
MAX_DAMAGE_SEVERITY = 5


class LendingStatus(str, Enum):
    """Status of a lending record, in lifecycle order."""

    ACTIVE = "ACTIVE"
    OVERDUE = "OVERDUE"
    CLOSED = "CLOSED"

    @property
    def rank(self) -> int:
        return _STATUS_ORDER.index(self)

    def can_advance_to(self, target: "LendingStatus") -> bool:
        """Transitions only move strictly forward."""
        return target.rank > self.rank


_STATUS_ORDER = [LendingStatus.ACTIVE, LendingStatus.OVERDUE, LendingStatus.CLOSED]


class LendingRecordResponse(BaseModel):
    """Schema for lending record responses."""

    id: str
    request_id: str
    record_owner_id: str
    borrower_id: str
    game_id: str
    start_date: datetime
    end_date: datetime
    status: LendingStatus
    is_damaged: bool
    damage_notes: Optional[str]
    damage_severity: Optional[int]
    closed_at: Optional[datetime]
    last_modified_by_id: Optional[str]
    last_modified_reason: Optional[str]
    duration_days: int

    model_config = {"from_attributes": True}


class StatusChangeResponse(BaseModel):
    """Schema for audit trail entries."""

    from_status: LendingStatus
    to_status: LendingStatus
    actor_id: Optional[str]
    reason: Optional[str]
    changed_at: datetime

    model_config = {"from_attributes": True}


class LendingStats(BaseModel):
    """Lending statistics, overall or for one owner."""

    total: int
    active: int
    overdue: int
    closed: int
    damaged_returns: int
