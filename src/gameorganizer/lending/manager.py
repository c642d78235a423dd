"""Lending record manager.

Owns the loan lifecycle once a borrow request is approved:

    ACTIVE --(end date passes / borrower reports return)--> OVERDUE
    OVERDUE --(owner confirms return)--> CLOSED
    ACTIVE --(owner confirms return)--> CLOSED

CLOSED is terminal. Every transition is written to the status change audit
trail.

Mutating methods take an optional ``caller``. When one is given the guard
is consulted; without one the call is trusted (the approval flow and the
overdue sweep).
"""

import logging
from datetime import datetime
from typing import Optional, Union

from sqlalchemy import func, or_, select
from sqlalchemy.orm import Session

from ..auth.guard import AuthorizationGuard
from ..auth.identity import Identity
from ..borrowing.models import BorrowRequest
from ..borrowing.schemas import BorrowRequestStatus
from ..db.models import Account, to_utc, utcnow
from ..db.sqlite import Database, get_db
from ..errors import (
    ConflictError,
    ForbiddenError,
    NotFoundError,
    StateError,
    UnauthenticatedError,
    ValidationError,
)
from .models import LendingRecord, LendingStatusChange
from .schemas import (
    MAX_DAMAGE_SEVERITY,
    MIN_DAMAGE_SEVERITY,
    LendingStats,
    LendingStatus,
)

logger = logging.getLogger(__name__)


def _parse_status(value: Union[str, LendingStatus, None]) -> LendingStatus:
    if isinstance(value, LendingStatus):
        return value
    if not value:
        raise ValidationError("Status is required")
    try:
        return LendingStatus(str(value).strip().upper())
    except ValueError:
        raise ValidationError(f"Invalid lending status: {value}") from None


class LendingRecordManager:
    """Manages lending records and their state machine."""

    def __init__(
        self,
        db: Optional[Database] = None,
        guard: Optional[AuthorizationGuard] = None,
    ):
        """Initialize lending record manager.

        Args:
            db: Database instance
            guard: Authorization guard
        """
        self.db = db or get_db()
        self.guard = guard or AuthorizationGuard(self.db)

    # -------------------------------------------------------------------------
    # Internal helpers
    # -------------------------------------------------------------------------

    def _get_record(
        self, session: Session, record_id: str, lock: bool = False
    ) -> LendingRecord:
        stmt = select(LendingRecord).where(LendingRecord.id == record_id)
        if lock:
            stmt = stmt.with_for_update()
        record = session.execute(stmt).scalar_one_or_none()
        if not record:
            raise NotFoundError(f"No lending record found with ID {record_id}")
        return record

    def _require_owner(
        self, session: Session, record_id: str, caller: Optional[Identity]
    ) -> None:
        if caller is None:
            return
        if not self.guard.is_record_owner(record_id, caller, session=session):
            logger.warning("Denied %s modifying lending record %s", caller.id, record_id)
            raise ForbiddenError("Only the record owner can modify this lending record")

    def _transition(
        self,
        session: Session,
        record: LendingRecord,
        target: LendingStatus,
        actor_id: Optional[str],
        reason: Optional[str],
    ) -> None:
        current = LendingStatus(record.status)
        if current is LendingStatus.CLOSED:
            raise StateError("Cannot update a closed record")
        if not current.can_advance_to(target):
            raise StateError(
                f"Cannot move a lending record from {current.value} to {target.value}"
            )

        now = utcnow()
        record.status = target.value
        record.last_modified_by_id = actor_id
        record.last_modified_reason = reason
        record.updated_at = now
        if target is LendingStatus.CLOSED:
            record.closed_at = now

        session.add(
            LendingStatusChange(
                record_id=record.id,
                from_status=current.value,
                to_status=target.value,
                actor_id=actor_id,
                reason=reason,
                changed_at=now,
            )
        )
        session.flush()
        logger.info(
            "Lending record %s %s -> %s (actor=%s)",
            record.id,
            current.value,
            target.value,
            actor_id or "system",
        )

    # -------------------------------------------------------------------------
    # Record Management
    # -------------------------------------------------------------------------

    def create_record(
        self,
        start_date: Optional[datetime],
        end_date: Optional[datetime],
        request: Optional[BorrowRequest],
        owner: Optional[Account],
        session: Optional[Session] = None,
    ) -> LendingRecord:
        """Create an ACTIVE lending record for an approved request.

        Args:
            start_date: Start of the loan, not in the past
            end_date: End of the loan, not before start_date
            request: The approved borrow request
            owner: The game owner
            session: Session of an enclosing unit of work

        Returns:
            Created record
        """
        if start_date is None or end_date is None or request is None or owner is None:
            raise ValidationError("Start date, end date, request and owner are required")

        start, end = to_utc(start_date), to_utc(end_date)
        if end < start:
            raise ValidationError("End date cannot be before start date")
        if start < utcnow():
            raise ValidationError("Start date cannot be in the past")
        if owner.id != request.owner_id:
            raise ValidationError("Record owner must own the game")

        def _create(s: Session) -> LendingRecord:
            db_request = s.get(BorrowRequest, request.id)
            if not db_request:
                raise NotFoundError(f"No borrow request found with ID {request.id}")
            if db_request.status != BorrowRequestStatus.APPROVED.value:
                raise ValidationError("Lending records are only created for approved requests")

            existing = s.execute(
                select(LendingRecord.id).where(LendingRecord.request_id == db_request.id)
            ).scalar_one_or_none()
            if existing:
                raise ConflictError("Borrow request already has a lending record")

            record = LendingRecord(
                request_id=db_request.id,
                record_owner_id=owner.id,
                start_date=start,
                end_date=end,
                status=LendingStatus.ACTIVE.value,
                is_damaged=False,
            )
            record.request = db_request
            s.add(record)
            s.flush()

            logger.info(
                "Lending record %s opened for request %s (owner=%s)",
                record.id,
                db_request.id,
                owner.id,
            )
            return record

        if session:
            return _create(session)
        else:
            with self.db.get_session() as s:
                return _create(s)

    def get_record(
        self, record_id: str, caller: Optional[Identity] = None
    ) -> LendingRecord:
        """Get a lending record.

        Args:
            record_id: Record ID
            caller: When given, must be the owner, the borrower or an admin

        Returns:
            The record
        """
        with self.db.get_session() as session:
            record = self._get_record(session, record_id)
            if caller is not None and not (
                self.guard.is_admin(caller)
                or self.guard.is_record_party(record_id, caller, session=session)
            ):
                logger.warning("Denied %s access to lending record %s", caller.id, record_id)
                raise ForbiddenError("Not allowed to view this lending record")
            return record

    def list_records(
        self,
        caller: Optional[Identity],
        status: Optional[LendingStatus] = None,
    ) -> list[LendingRecord]:
        """List records visible to the caller.

        Args:
            caller: Admins see all records, others those they own or borrow
            status: Optional status filter

        Returns:
            Records ordered by start date
        """
        if caller is None:
            raise UnauthenticatedError("Authentication required")

        with self.db.get_session() as session:
            stmt = select(LendingRecord).join(
                BorrowRequest, LendingRecord.request_id == BorrowRequest.id
            )
            if not self.guard.is_admin(caller):
                stmt = stmt.where(
                    or_(
                        LendingRecord.record_owner_id == caller.id,
                        BorrowRequest.requester_id == caller.id,
                    )
                )
            if status:
                stmt = stmt.where(LendingRecord.status == _parse_status(status).value)

            stmt = stmt.order_by(LendingRecord.start_date)
            return list(session.execute(stmt).scalars().all())

    def update_status(
        self,
        record_id: str,
        new_status: Union[str, LendingStatus],
        actor_id: Optional[str] = None,
        reason: Optional[str] = None,
        caller: Optional[Identity] = None,
    ) -> LendingRecord:
        """Move a record forward in its lifecycle.

        Args:
            record_id: Record ID
            new_status: Target status, strictly after the current one
            actor_id: Account making the change, kept for audit
            reason: Free text reason, kept for audit
            caller: When given, must be the record owner

        Returns:
            Updated record

        Raises:
            StateError: Record is CLOSED or the target is not forward
        """
        target = _parse_status(new_status)
        with self.db.get_session() as session:
            record = self._get_record(session, record_id, lock=True)
            self._require_owner(session, record_id, caller)
            self._transition(
                session,
                record,
                target,
                actor_id or (caller.id if caller else None),
                reason,
            )
            return record

    def close_with_damage_assessment(
        self,
        record_id: str,
        is_damaged: bool,
        damage_notes: Optional[str] = None,
        damage_severity: Optional[int] = None,
        actor_id: Optional[str] = None,
        reason: Optional[str] = None,
        caller: Optional[Identity] = None,
    ) -> LendingRecord:
        """Close a record and record the condition of the returned game.

        Args:
            record_id: Record ID
            is_damaged: Whether the game came back damaged
            damage_notes: Description of the damage
            damage_severity: Severity on the 0-5 scale
            actor_id: Account closing the record
            reason: Free text reason
            caller: When given, must be the record owner

        Returns:
            Closed record
        """
        if damage_severity is not None:
            if isinstance(damage_severity, bool) or not isinstance(damage_severity, int):
                raise ValidationError("Damage severity must be an integer")
            if not MIN_DAMAGE_SEVERITY <= damage_severity <= MAX_DAMAGE_SEVERITY:
                raise ValidationError(
                    f"Damage severity must be between {MIN_DAMAGE_SEVERITY} "
                    f"and {MAX_DAMAGE_SEVERITY}"
                )

        with self.db.get_session() as session:
            record = self._get_record(session, record_id, lock=True)
            self._require_owner(session, record_id, caller)
            self._transition(
                session,
                record,
                LendingStatus.CLOSED,
                actor_id or (caller.id if caller else None),
                reason,
            )
            record.is_damaged = bool(is_damaged)
            record.damage_notes = damage_notes
            record.damage_severity = damage_severity
            session.flush()
            return record

    def update_end_date(
        self,
        record_id: str,
        new_end_date: Optional[datetime],
        caller: Optional[Identity] = None,
    ) -> LendingRecord:
        """Change the due date of an open loan.

        Args:
            record_id: Record ID
            new_end_date: New end date, not before the start date
            caller: When given, must be the record owner

        Returns:
            Updated record
        """
        if new_end_date is None:
            raise ValidationError("New end date is required")
        new_end = to_utc(new_end_date)

        with self.db.get_session() as session:
            record = self._get_record(session, record_id, lock=True)
            self._require_owner(session, record_id, caller)

            if record.status == LendingStatus.CLOSED.value:
                raise StateError("Cannot update a closed record")
            if new_end < record.start_date:
                raise ValidationError("New end date cannot be before the start date")

            old_end = record.end_date
            record.end_date = new_end
            record.updated_at = utcnow()
            session.flush()
            logger.info(
                "Lending record %s end date %s -> %s",
                record.id,
                old_end.isoformat(),
                new_end.isoformat(),
            )
            return record

    def delete_record(self, record_id: str, caller: Optional[Identity] = None) -> bool:
        """Delete a lending record that is no longer active.

        Args:
            record_id: Record ID
            caller: When given, must be the record owner

        Returns:
            True if deleted
        """
        with self.db.get_session() as session:
            record = self._get_record(session, record_id, lock=True)
            self._require_owner(session, record_id, caller)

            if record.status == LendingStatus.ACTIVE.value:
                raise StateError("Cannot delete an active record")

            session.delete(record)
            logger.info("Lending record %s deleted", record_id)
            return True

    # -------------------------------------------------------------------------
    # Return flow
    # -------------------------------------------------------------------------

    def mark_overdue(
        self,
        record_id: str,
        actor_id: Optional[str] = None,
        reason: Optional[str] = None,
    ) -> bool:
        """Move an ACTIVE record to OVERDUE.

        Idempotent: a record that is already OVERDUE is left alone.

        Returns:
            True if the status changed

        Raises:
            StateError: The record is CLOSED
        """
        with self.db.get_session() as session:
            record = self._get_record(session, record_id, lock=True)
            if record.status == LendingStatus.OVERDUE.value:
                return False
            self._transition(session, record, LendingStatus.OVERDUE, actor_id, reason)
            return True

    def mark_returned(self, record_id: str, caller: Optional[Identity]) -> LendingRecord:
        """Borrower reports the game as returned.

        The record goes to OVERDUE until the owner confirms the return.
        Reporting twice has no further effect.

        Args:
            record_id: Record ID
            caller: Must be the borrower

        Returns:
            The record
        """
        if caller is None:
            raise UnauthenticatedError("Authentication required")

        with self.db.get_session() as session:
            record = self._get_record(session, record_id, lock=True)
            if not self.guard.is_record_borrower(record_id, caller, session=session):
                logger.warning("Denied %s marking lending record %s returned", caller.id, record_id)
                raise ForbiddenError("Only the borrower can mark this game as returned")

            if record.status == LendingStatus.OVERDUE.value:
                return record
            self._transition(
                session,
                record,
                LendingStatus.OVERDUE,
                caller.id,
                "Borrower marked the game as returned",
            )
            return record

    def confirm_return(
        self,
        record_id: str,
        caller: Optional[Identity],
        is_damaged: bool = False,
        damage_notes: Optional[str] = None,
        damage_severity: Optional[int] = None,
        reason: Optional[str] = None,
    ) -> LendingRecord:
        """Owner confirms the game came back, closing the record."""
        if caller is None:
            raise UnauthenticatedError("Authentication required")
        return self.close_with_damage_assessment(
            record_id,
            is_damaged,
            damage_notes,
            damage_severity,
            reason=reason or "Owner confirmed return",
            caller=caller,
        )

    # -------------------------------------------------------------------------
    # Queries
    # -------------------------------------------------------------------------

    def find_overdue(self, now: Optional[datetime] = None) -> list[LendingRecord]:
        """Get ACTIVE records whose end date has passed.

        A pure read; statuses only change through explicit transitions.

        Args:
            now: Reference instant (default: current time)

        Returns:
            Overdue records, most overdue first
        """
        now = to_utc(now) if now else utcnow()
        with self.db.get_session() as session:
            stmt = (
                select(LendingRecord)
                .where(
                    LendingRecord.status == LendingStatus.ACTIVE.value,
                    LendingRecord.end_date < now,
                )
                .order_by(LendingRecord.end_date)
            )
            return list(session.execute(stmt).scalars().all())

    def list_by_owner(
        self,
        owner_id: str,
        status: Optional[LendingStatus] = None,
        start: Optional[datetime] = None,
        end: Optional[datetime] = None,
    ) -> list[LendingRecord]:
        """Get the lending history of a game owner.

        Args:
            owner_id: Owner account ID
            status: Optional status filter
            start: Only records starting at or after this instant
            end: Only records starting at or before this instant

        Returns:
            Records ordered by start date
        """
        if start and end and to_utc(end) < to_utc(start):
            raise ValidationError("End of range cannot be before its start")

        with self.db.get_session() as session:
            stmt = select(LendingRecord).where(LendingRecord.record_owner_id == owner_id)
            if status:
                stmt = stmt.where(LendingRecord.status == _parse_status(status).value)
            if start:
                stmt = stmt.where(LendingRecord.start_date >= to_utc(start))
            if end:
                stmt = stmt.where(LendingRecord.start_date <= to_utc(end))
            stmt = stmt.order_by(LendingRecord.start_date)
            return list(session.execute(stmt).scalars().all())

    def list_by_borrower(
        self, borrower_id: str, active_only: bool = False
    ) -> list[LendingRecord]:
        """Get records where an account is the borrower."""
        with self.db.get_session() as session:
            stmt = (
                select(LendingRecord)
                .join(BorrowRequest, LendingRecord.request_id == BorrowRequest.id)
                .where(BorrowRequest.requester_id == borrower_id)
            )
            if active_only:
                stmt = stmt.where(LendingRecord.status == LendingStatus.ACTIVE.value)
            stmt = stmt.order_by(LendingRecord.start_date)
            return list(session.execute(stmt).scalars().all())

    def list_by_date_range(self, start: datetime, end: datetime) -> list[LendingRecord]:
        """Get records starting within [start, end]."""
        start, end = to_utc(start), to_utc(end)
        if end < start:
            raise ValidationError("End of range cannot be before its start")

        with self.db.get_session() as session:
            stmt = (
                select(LendingRecord)
                .where(LendingRecord.start_date.between(start, end))
                .order_by(LendingRecord.start_date)
            )
            return list(session.execute(stmt).scalars().all())

    def get_status_history(
        self, record_id: str, caller: Optional[Identity] = None
    ) -> list[LendingStatusChange]:
        """Get the audit trail of a record, oldest first."""
        with self.db.get_session() as session:
            self._get_record(session, record_id)
            if caller is not None and not (
                self.guard.is_admin(caller)
                or self.guard.is_record_party(record_id, caller, session=session)
            ):
                raise ForbiddenError("Not allowed to view this lending record")

            stmt = (
                select(LendingStatusChange)
                .where(LendingStatusChange.record_id == record_id)
                .order_by(LendingStatusChange.changed_at, LendingStatusChange.id)
            )
            return list(session.execute(stmt).scalars().all())

    def get_stats(self, owner_id: Optional[str] = None) -> LendingStats:
        """Get lending statistics.

        Args:
            owner_id: Restrict to one owner's records

        Returns:
            LendingStats with counts
        """
        with self.db.get_session() as session:
            stmt = select(LendingRecord.status, func.count()).group_by(LendingRecord.status)
            damaged = select(func.count()).select_from(LendingRecord).where(
                LendingRecord.is_damaged.is_(True)
            )
            if owner_id:
                stmt = stmt.where(LendingRecord.record_owner_id == owner_id)
                damaged = damaged.where(LendingRecord.record_owner_id == owner_id)

            counts = {status: count for status, count in session.execute(stmt).all()}
            return LendingStats(
                total=sum(counts.values()),
                active=counts.get(LendingStatus.ACTIVE.value, 0),
                overdue=counts.get(LendingStatus.OVERDUE.value, 0),
                closed=counts.get(LendingStatus.CLOSED.value, 0),
                damaged_returns=session.execute(damaged).scalar() or 0,
            )
