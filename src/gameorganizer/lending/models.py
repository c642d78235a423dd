"""SQLAlchemy models for lending records.

Tables:
- lending_records: Materialized loans created from approved borrow requests
- lending_status_changes: Audit trail of lending record transitions
"""

from datetime import datetime
from typing import TYPE_CHECKING, Optional

from sqlalchemy import Boolean, DateTime, ForeignKey, Integer, String, Text
from sqlalchemy.orm import Mapped, mapped_column, relationship

from ..db.models import Account, Base, generate_uuid, utcnow
from .schemas import LendingStatus

if TYPE_CHECKING:
    from ..borrowing.models import BorrowRequest


class LendingRecord(Base):
    """Lending record model - tracks one physical loan."""

    __tablename__ = "lending_records"

    id: Mapped[str] = mapped_column(String(36), primary_key=True, default=generate_uuid)

    # Exclusive one-to-one with the originating request
    request_id: Mapped[str] = mapped_column(
        String(36),
        ForeignKey("borrow_requests.id", ondelete="CASCADE"),
        nullable=False,
        unique=True,
    )
    record_owner_id: Mapped[str] = mapped_column(
        String(36),
        ForeignKey("accounts.id", ondelete="CASCADE"),
        nullable=False,
        index=True,
    )

    start_date: Mapped[datetime] = mapped_column(DateTime, nullable=False)
    end_date: Mapped[datetime] = mapped_column(DateTime, nullable=False, index=True)

    status: Mapped[str] = mapped_column(
        String(20), default=LendingStatus.ACTIVE.value, nullable=False, index=True
    )

    # Damage assessment, filled in when the owner closes the loan
    is_damaged: Mapped[bool] = mapped_column(Boolean, default=False, nullable=False)
    damage_notes: Mapped[Optional[str]] = mapped_column(Text)
    damage_severity: Mapped[Optional[int]] = mapped_column(Integer)
    closed_at: Mapped[Optional[datetime]] = mapped_column(DateTime)

    # Last transition audit
    last_modified_by_id: Mapped[Optional[str]] = mapped_column(String(36))
    last_modified_reason: Mapped[Optional[str]] = mapped_column(Text)

    created_at: Mapped[datetime] = mapped_column(DateTime, default=utcnow)
    updated_at: Mapped[datetime] = mapped_column(DateTime, default=utcnow, onupdate=utcnow)

    # Relationships
    request: Mapped["BorrowRequest"] = relationship(
        "BorrowRequest", back_populates="lending_record", lazy="joined"
    )
    record_owner: Mapped["Account"] = relationship("Account")
    status_changes: Mapped[list["LendingStatusChange"]] = relationship(
        "LendingStatusChange",
        back_populates="record",
        cascade="all, delete-orphan",
        order_by="LendingStatusChange.changed_at",
    )

    def __repr__(self) -> str:
        return f"<LendingRecord(id={self.id}, request_id={self.request_id}, status={self.status})>"

    @property
    def borrower_id(self) -> str:
        """ID of the borrowing account."""
        return self.request.requester_id

    @property
    def game_id(self) -> str:
        return self.request.game_id

    @property
    def duration_days(self) -> int:
        """Length of the lending period in whole days."""
        return (self.end_date - self.start_date).days

    def is_overdue_at(self, now: datetime) -> bool:
        """Check if the loan is still active past its end date."""
        return self.status == LendingStatus.ACTIVE.value and self.end_date < now


class LendingStatusChange(Base):
    """One status transition of a lending record."""

    __tablename__ = "lending_status_changes"

    id: Mapped[str] = mapped_column(String(36), primary_key=True, default=generate_uuid)
    record_id: Mapped[str] = mapped_column(
        String(36),
        ForeignKey("lending_records.id", ondelete="CASCADE"),
        nullable=False,
        index=True,
    )
    from_status: Mapped[str] = mapped_column(String(20), nullable=False)
    to_status: Mapped[str] = mapped_column(String(20), nullable=False)
    # NULL when the transition was made by the overdue sweep
    actor_id: Mapped[Optional[str]] = mapped_column(String(36))
    reason: Mapped[Optional[str]] = mapped_column(Text)
    changed_at: Mapped[datetime] = mapped_column(DateTime, default=utcnow)

    record: Mapped["LendingRecord"] = relationship(
        "LendingRecord", back_populates="status_changes"
    )

    def __repr__(self) -> str:
        return (
            f"<LendingStatusChange(record_id={self.record_id}, "
            f"{self.from_status}->{self.to_status})>"
        )
