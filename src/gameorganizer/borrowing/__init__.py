"""Borrow request module.

Provides functionality for:
- Requesting a game for a date range
- Overlap checks against approved periods
- Owner approval (creating the lending record) or decline
"""

from .manager import BorrowRequestManager
from .models import BorrowRequest
from .schemas import BorrowRequestResponse, BorrowRequestStatus

__all__ = [
    "BorrowRequestManager",
    "BorrowRequest",
    "BorrowRequestResponse",
    "BorrowRequestStatus",
]
