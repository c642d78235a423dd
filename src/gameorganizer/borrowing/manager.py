"""Borrow request manager.

Validates and persists borrow requests, checks them against already approved
periods and resolves them. Approving a request creates its lending record in
the same unit of work, so either both writes land or neither does.
"""

import logging
from datetime import datetime
from typing import TYPE_CHECKING, Optional, Union

from sqlalchemy import or_, select
from sqlalchemy.orm import Session

from ..auth.guard import AuthorizationGuard
from ..auth.identity import Identity
from ..db.models import Account, Game, to_utc, utcnow
from ..db.schemas import Role
from ..db.sqlite import Database, get_db
from ..errors import (
    ConflictError,
    ForbiddenError,
    NotFoundError,
    StateError,
    UnauthenticatedError,
    ValidationError,
)
from ..lending.schemas import LendingStatus
from .models import BorrowRequest
from .schemas import BorrowRequestStatus

if TYPE_CHECKING:
    from ..lending.manager import LendingRecordManager

logger = logging.getLogger(__name__)

_DECISIONS = (BorrowRequestStatus.APPROVED, BorrowRequestStatus.DECLINED)


def _require_caller(caller: Optional[Identity]) -> Identity:
    if caller is None:
        raise UnauthenticatedError("Authentication required")
    return caller


def _parse_status(value: Union[str, BorrowRequestStatus, None]) -> BorrowRequestStatus:
    if isinstance(value, BorrowRequestStatus):
        return value
    if not value:
        raise ValidationError("Status is required")
    try:
        return BorrowRequestStatus(str(value).strip().upper())
    except ValueError:
        raise ValidationError(f"Invalid borrow request status: {value}") from None


def _parse_decision(value: Union[str, BorrowRequestStatus, None]) -> BorrowRequestStatus:
    """Accept APPROVED or DECLINED, as enum or case-insensitive string."""
    value = _parse_status(value)
    if value not in _DECISIONS:
        raise ValidationError(f"Invalid status: {value}. Use APPROVED or DECLINED")
    return value


class BorrowRequestManager:
    """Manages the borrow request lifecycle."""

    def __init__(
        self,
        db: Optional[Database] = None,
        lending: Optional["LendingRecordManager"] = None,
        guard: Optional[AuthorizationGuard] = None,
    ):
        """Initialize borrow request manager.

        Args:
            db: Database instance
            lending: Lending record manager used on approval
            guard: Authorization guard
        """
        self.db = db or get_db()
        self.guard = guard or AuthorizationGuard(self.db)
        if lending is None:
            from ..lending.manager import LendingRecordManager

            lending = LendingRecordManager(self.db, guard=self.guard)
        self.lending = lending

    # -------------------------------------------------------------------------
    # Internal helpers
    # -------------------------------------------------------------------------

    def _get_request(
        self, session: Session, request_id: str, lock: bool = False
    ) -> BorrowRequest:
        stmt = select(BorrowRequest).where(BorrowRequest.id == request_id)
        if lock:
            stmt = stmt.with_for_update()
        request = session.execute(stmt).scalar_one_or_none()
        if not request:
            raise NotFoundError(f"No borrow request found with ID {request_id}")
        return request

    def _find_overlapping(
        self,
        session: Session,
        game_id: str,
        start_date: datetime,
        end_date: datetime,
        exclude_request_id: Optional[str] = None,
    ) -> list[BorrowRequest]:
        """Approved requests for the game whose closed interval meets [start, end]."""
        stmt = (
            select(BorrowRequest)
            .where(
                BorrowRequest.game_id == game_id,
                BorrowRequest.status == BorrowRequestStatus.APPROVED.value,
                BorrowRequest.start_date <= end_date,
                BorrowRequest.end_date >= start_date,
            )
            .with_for_update()
        )
        if exclude_request_id:
            stmt = stmt.where(BorrowRequest.id != exclude_request_id)
        return list(session.execute(stmt).scalars().all())

    # -------------------------------------------------------------------------
    # Request Management
    # -------------------------------------------------------------------------

    def create_request(
        self,
        caller: Optional[Identity],
        game_id: str,
        start_date: Optional[datetime],
        end_date: Optional[datetime],
    ) -> BorrowRequest:
        """Create a pending borrow request.

        Args:
            caller: Requesting identity
            game_id: Game to borrow
            start_date: Start of the borrowing period
            end_date: End of the borrowing period

        Returns:
            Created request with status PENDING

        Raises:
            UnauthenticatedError: No caller
            ValidationError: Missing or inverted dates, or the caller owns the game
            NotFoundError: Unknown game or requester
            ConflictError: The period overlaps an approved request
        """
        caller = _require_caller(caller)
        if not game_id:
            raise ValidationError("Game ID is required")
        if start_date is None or end_date is None:
            raise ValidationError("Start date and end date are required")

        start, end = to_utc(start_date), to_utc(end_date)
        if end <= start:
            raise ValidationError("End date must be after start date")

        with self.db.get_session() as session:
            game = session.execute(
                select(Game).where(Game.id == game_id).with_for_update()
            ).scalar_one_or_none()
            if not game:
                raise NotFoundError(f"No game found with ID {game_id}")

            requester = session.get(Account, caller.id)
            if not requester:
                raise NotFoundError(f"No account found with ID {caller.id}")

            if requester.id == game.owner_id:
                raise ValidationError("Owners cannot request their own game")

            if self._find_overlapping(session, game.id, start, end):
                raise ConflictError("Game is unavailable for the requested period")

            request = BorrowRequest(
                game_id=game.id,
                requester_id=requester.id,
                start_date=start,
                end_date=end,
                request_date=utcnow(),
                status=BorrowRequestStatus.PENDING.value,
            )
            request.requested_game = game
            request.requester = requester
            session.add(request)
            session.flush()

            logger.info(
                "Borrow request %s created by %s for game %s (%s - %s)",
                request.id,
                requester.id,
                game.id,
                start.isoformat(),
                end.isoformat(),
            )
            return request

    def get_request(self, request_id: str, caller: Optional[Identity]) -> BorrowRequest:
        """Get a borrow request visible to the caller.

        Args:
            request_id: Request ID
            caller: Requester, game owner or admin

        Returns:
            The request
        """
        caller = _require_caller(caller)
        with self.db.get_session() as session:
            request = self._get_request(session, request_id)
            if not (
                self.guard.is_admin(caller)
                or self.guard.is_owner_or_requester(request_id, caller, session=session)
            ):
                logger.warning("Denied %s access to borrow request %s", caller.id, request_id)
                raise ForbiddenError("Not allowed to view this borrow request")
            return request

    def list_requests(
        self,
        caller: Optional[Identity],
        status: Union[str, BorrowRequestStatus, None] = None,
    ) -> list[BorrowRequest]:
        """List borrow requests visible to the caller.

        Admins see every request, everyone else sees requests they made or
        that target games they own.

        Args:
            caller: Calling identity
            status: Optional status filter

        Returns:
            Requests, newest first
        """
        caller = _require_caller(caller)
        with self.db.get_session() as session:
            stmt = select(BorrowRequest).join(Game, BorrowRequest.game_id == Game.id)

            if not self.guard.is_admin(caller):
                stmt = stmt.where(
                    or_(
                        BorrowRequest.requester_id == caller.id,
                        Game.owner_id == caller.id,
                    )
                )
            if status:
                stmt = stmt.where(BorrowRequest.status == _parse_status(status).value)

            stmt = stmt.order_by(BorrowRequest.request_date.desc())
            return list(session.execute(stmt).scalars().all())

    def update_status(
        self,
        request_id: str,
        new_status: Union[str, BorrowRequestStatus],
        caller: Optional[Identity],
    ) -> BorrowRequest:
        """Approve or decline a pending request.

        Approval re-checks the overlap rule under the write lock and creates
        the lending record on the same session; any failure rolls back the
        status change too.

        Args:
            request_id: Request ID
            new_status: APPROVED or DECLINED
            caller: Must own the requested game

        Returns:
            Updated request
        """
        caller = _require_caller(caller)
        decision = _parse_decision(new_status)

        with self.db.get_session() as session:
            request = self._get_request(session, request_id, lock=True)

            if not self.guard.is_game_owner(request_id, caller, session=session):
                logger.warning(
                    "Denied %s deciding borrow request %s", caller.id, request_id
                )
                raise ForbiddenError("Only the game owner can approve or decline this request")

            if request.status != BorrowRequestStatus.PENDING.value:
                raise StateError(f"Request is already {request.status}")

            owner = session.get(Account, request.owner_id)
            if not owner:
                raise NotFoundError(f"No account found with ID {request.owner_id}")

            if decision is BorrowRequestStatus.APPROVED:
                if self._find_overlapping(
                    session,
                    request.game_id,
                    request.start_date,
                    request.end_date,
                    exclude_request_id=request.id,
                ):
                    raise ConflictError("Game is unavailable for the requested period")

            request.status = decision.value
            request.responder_id = owner.id
            session.flush()

            if decision is BorrowRequestStatus.APPROVED:
                self.lending.create_record(
                    request.start_date,
                    request.end_date,
                    request,
                    owner,
                    session=session,
                )

            logger.info("Borrow request %s %s by %s", request.id, decision.value, owner.id)
            return request

    def approve(self, request_id: str, caller: Optional[Identity]) -> BorrowRequest:
        """Approve a request and open its lending record."""
        return self.update_status(request_id, BorrowRequestStatus.APPROVED, caller)

    def decline(self, request_id: str, caller: Optional[Identity]) -> BorrowRequest:
        """Decline a request."""
        return self.update_status(request_id, BorrowRequestStatus.DECLINED, caller)

    def delete_request(self, request_id: str, caller: Optional[Identity]) -> bool:
        """Delete a borrow request.

        A request whose lending record is still ACTIVE cannot be deleted; any
        other record goes with it.

        Args:
            request_id: Request ID
            caller: Requester or game owner

        Returns:
            True if deleted
        """
        caller = _require_caller(caller)
        with self.db.get_session() as session:
            request = self._get_request(session, request_id, lock=True)

            if not self.guard.is_owner_or_requester(request_id, caller, session=session):
                logger.warning("Denied %s deleting borrow request %s", caller.id, request_id)
                raise ForbiddenError("Not allowed to delete this borrow request")

            record = request.lending_record
            if record is not None and record.status == LendingStatus.ACTIVE.value:
                raise StateError("Cannot delete a request with an active lending record")

            session.delete(request)
            logger.info("Borrow request %s deleted by %s", request_id, caller.id)
            return True

    # -------------------------------------------------------------------------
    # Queries
    # -------------------------------------------------------------------------

    def check_for_overlaps(
        self,
        game_id: str,
        start_date: datetime,
        end_date: datetime,
        exclude_request_id: Optional[str] = None,
    ) -> bool:
        """Check whether a period is free of approved requests.

        Args:
            game_id: Game ID
            start_date: Period start
            end_date: Period end
            exclude_request_id: Request to leave out of the check

        Returns:
            True if no approved request overlaps the period
        """
        with self.db.get_session() as session:
            return not self._find_overlapping(
                session,
                game_id,
                to_utc(start_date),
                to_utc(end_date),
                exclude_request_id=exclude_request_id,
            )

    def _require_self_or_admin(self, account_id: str, caller: Optional[Identity]) -> Identity:
        caller = _require_caller(caller)
        if not (self.guard.is_admin(caller) or caller.id == account_id):
            logger.warning("Denied %s listing requests of %s", caller.id, account_id)
            raise ForbiddenError("Not allowed to list another account's borrow requests")
        return caller

    def list_pending_for_owner(
        self, owner_id: str, caller: Optional[Identity]
    ) -> list[BorrowRequest]:
        """Get pending requests for every game an owner lists.

        Args:
            owner_id: Game owner account ID
            caller: The owner or an admin

        Returns:
            Pending requests, oldest first
        """
        self._require_self_or_admin(owner_id, caller)
        with self.db.get_session() as session:
            owner = session.get(Account, owner_id)
            if not owner or not owner.has_role(Role.GAME_OWNER):
                raise NotFoundError(f"No game owner found with ID {owner_id}")

            stmt = (
                select(BorrowRequest)
                .join(Game, BorrowRequest.game_id == Game.id)
                .where(
                    Game.owner_id == owner_id,
                    BorrowRequest.status == BorrowRequestStatus.PENDING.value,
                )
                .order_by(BorrowRequest.request_date)
            )
            return list(session.execute(stmt).scalars().all())

    def list_by_requester(
        self, requester_id: str, caller: Optional[Identity]
    ) -> list[BorrowRequest]:
        """Get all requests made by one account, for that account or an admin."""
        self._require_self_or_admin(requester_id, caller)
        with self.db.get_session() as session:
            if not session.get(Account, requester_id):
                raise NotFoundError(f"No account found with ID {requester_id}")

            stmt = (
                select(BorrowRequest)
                .where(BorrowRequest.requester_id == requester_id)
                .order_by(BorrowRequest.request_date.desc())
            )
            return list(session.execute(stmt).scalars().all())
