"""Pydantic schemas for borrow requests."""

from datetime import datetime
from enum import Enum
from typing import Optional

from pydantic import BaseModel


class BorrowRequestStatus(str, Enum):
    """Status of a borrow request."""

    PENDING = "PENDING"
    APPROVED = "APPROVED"
    DECLINED = "DECLINED"


class BorrowRequestResponse(BaseModel):
    """Schema for borrow request responses."""

    id: str
    game_id: str
    requester_id: str
    responder_id: Optional[str] = None
    start_date: datetime
    end_date: datetime
    request_date: datetime
    status: BorrowRequestStatus

    model_config = {"from_attributes": True}
