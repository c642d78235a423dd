"""SQLAlchemy models for borrow requests.

Tables:
- borrow_requests: Proposals to borrow a game for a date range
"""

from datetime import datetime
from typing import TYPE_CHECKING, Optional

from sqlalchemy import DateTime, ForeignKey, Index, String
from sqlalchemy.orm import Mapped, mapped_column, relationship

from ..db.models import Account, Base, Game, generate_uuid, utcnow
from .schemas import BorrowRequestStatus

if TYPE_CHECKING:
    from ..lending.models import LendingRecord


class BorrowRequest(Base):
    """Borrow request model - one account asking to borrow another's game."""

    __tablename__ = "borrow_requests"
    __table_args__ = (
        Index("ix_borrow_requests_game_status", "game_id", "status"),
    )

    id: Mapped[str] = mapped_column(String(36), primary_key=True, default=generate_uuid)

    game_id: Mapped[str] = mapped_column(
        String(36),
        ForeignKey("games.id", ondelete="CASCADE"),
        nullable=False,
        index=True,
    )
    requester_id: Mapped[str] = mapped_column(
        String(36),
        ForeignKey("accounts.id", ondelete="CASCADE"),
        nullable=False,
        index=True,
    )
    # Set to the game owner once the request is decided
    responder_id: Mapped[Optional[str]] = mapped_column(
        String(36), ForeignKey("accounts.id", ondelete="SET NULL")
    )

    start_date: Mapped[datetime] = mapped_column(DateTime, nullable=False)
    end_date: Mapped[datetime] = mapped_column(DateTime, nullable=False)
    request_date: Mapped[datetime] = mapped_column(DateTime, nullable=False, default=utcnow)

    status: Mapped[str] = mapped_column(
        String(20), default=BorrowRequestStatus.PENDING.value, nullable=False
    )

    # Relationships
    requested_game: Mapped["Game"] = relationship("Game", lazy="joined")
    requester: Mapped["Account"] = relationship(
        "Account", foreign_keys=[requester_id], lazy="joined"
    )
    responder: Mapped[Optional["Account"]] = relationship(
        "Account", foreign_keys=[responder_id]
    )
    lending_record: Mapped[Optional["LendingRecord"]] = relationship(
        "LendingRecord",
        back_populates="request",
        uselist=False,
        cascade="all, delete-orphan",
    )

    def __repr__(self) -> str:
        return (
            f"<BorrowRequest(id={self.id}, game_id={self.game_id}, "
            f"requester_id={self.requester_id}, status={self.status})>"
        )

    @property
    def owner_id(self) -> str:
        """ID of the account that owns the requested game."""
        return self.requested_game.owner_id

    def overlaps(self, start: datetime, end: datetime) -> bool:
        """Closed-interval intersection: touching endpoints count."""
        return self.start_date <= end and self.end_date >= start
