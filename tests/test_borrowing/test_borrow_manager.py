"""Tests for BorrowRequestManager."""

import threading
from datetime import timedelta, timezone
from unittest.mock import patch

import pytest

from gameorganizer.auth.identity import IdentityProvider
from gameorganizer.borrowing.manager import BorrowRequestManager
from gameorganizer.borrowing.schemas import BorrowRequestResponse, BorrowRequestStatus
from gameorganizer.db.schemas import AccountCreate, GameCreate
from gameorganizer.db.sqlite import Database
from gameorganizer.errors import (
    ConflictError,
    ForbiddenError,
    NotFoundError,
    StateError,
    UnauthenticatedError,
    ValidationError,
)
from gameorganizer.lending.schemas import LendingStatus


class TestCreateRequest:
    """Tests for creating borrow requests."""

    def test_create_request(self, borrowing, borrower, game, later):
        start, end = later(1), later(3)
        request = borrowing.create_request(borrower, game.id, start, end)

        assert request.id is not None
        assert request.status == BorrowRequestStatus.PENDING.value
        assert request.requester_id == borrower.id
        assert request.game_id == game.id
        assert request.responder_id is None
        assert request.start_date == start
        assert request.end_date == end
        assert request.request_date is not None

    def test_create_does_not_open_record(self, borrowing, lending, borrower, game, later):
        borrowing.create_request(borrower, game.id, later(1), later(3))
        assert lending.get_stats().total == 0

    def test_response_schema(self, pending_request):
        response = BorrowRequestResponse.model_validate(pending_request)
        assert response.status == BorrowRequestStatus.PENDING

    def test_requires_caller(self, borrowing, game, later):
        with pytest.raises(UnauthenticatedError):
            borrowing.create_request(None, game.id, later(1), later(2))

    def test_unknown_game(self, borrowing, borrower, later):
        with pytest.raises(NotFoundError):
            borrowing.create_request(borrower, "missing", later(1), later(2))

    @pytest.mark.parametrize("missing", ["start", "end"])
    def test_missing_dates(self, borrowing, borrower, game, later, missing):
        start = None if missing == "start" else later(1)
        end = None if missing == "end" else later(2)
        with pytest.raises(ValidationError):
            borrowing.create_request(borrower, game.id, start, end)

    def test_end_before_start(self, borrowing, borrower, game, later):
        with pytest.raises(ValidationError, match="End date must be after start date"):
            borrowing.create_request(borrower, game.id, later(3), later(1))

    def test_end_equal_start(self, borrowing, borrower, game, later):
        start = later(2)
        with pytest.raises(ValidationError):
            borrowing.create_request(borrower, game.id, start, start)

    def test_owner_cannot_request_own_game(self, borrowing, owner, game, later):
        with pytest.raises(ValidationError, match="Owners cannot request their own game"):
            borrowing.create_request(owner, game.id, later(1), later(2))

    def test_aware_datetimes_are_normalized(self, borrowing, borrower, game, later):
        start = later(1).replace(tzinfo=timezone.utc).astimezone(timezone(timedelta(hours=5)))
        end = start + timedelta(days=1)
        request = borrowing.create_request(borrower, game.id, start, end)

        assert request.start_date.tzinfo is None
        assert request.start_date == start.astimezone(timezone.utc).replace(tzinfo=None)

    def test_pending_requests_do_not_block(self, borrowing, borrower, stranger, game, later):
        """Only approved periods make a game unavailable."""
        borrowing.create_request(borrower, game.id, later(1), later(3))
        other = borrowing.create_request(stranger, game.id, later(1), later(3))
        assert other.status == BorrowRequestStatus.PENDING.value


class TestOverlap:
    """Tests for the overlap rule against approved requests."""

    def test_overlapping_request_conflicts(
        self, borrowing, owner, borrower, stranger, game, later
    ):
        """R1 approved, then a shifted R2 from another user is rejected."""
        r1 = borrowing.create_request(borrower, game.id, later(1), later(2))
        borrowing.approve(r1.id, owner)

        hour = timedelta(hours=1)
        with pytest.raises(ConflictError, match="unavailable"):
            borrowing.create_request(stranger, game.id, later(1) + hour, later(2) + hour)

    def test_contained_period_conflicts(self, borrowing, owner, borrower, stranger, game, later):
        r1 = borrowing.create_request(borrower, game.id, later(1), later(5))
        borrowing.approve(r1.id, owner)

        with pytest.raises(ConflictError):
            borrowing.create_request(stranger, game.id, later(2), later(3))

    def test_touching_periods_overlap(self, borrowing, owner, borrower, stranger, game, later):
        """A period starting exactly when an approved one ends is taken."""
        r1 = borrowing.create_request(borrower, game.id, later(1), later(2))
        borrowing.approve(r1.id, owner)
        approved_end = borrowing.get_request(r1.id, owner).end_date

        with pytest.raises(ConflictError):
            borrowing.create_request(stranger, game.id, approved_end, later(4))

    def test_disjoint_period_allowed(self, borrowing, owner, borrower, stranger, game, later):
        r1 = borrowing.create_request(borrower, game.id, later(1), later(2))
        borrowing.approve(r1.id, owner)

        r2 = borrowing.create_request(stranger, game.id, later(3), later(4))
        assert r2.status == BorrowRequestStatus.PENDING.value

    def test_other_game_not_affected(
        self, db, borrowing, owner, owner_account, borrower, stranger, game, later
    ):
        other_game = db.create_game(GameCreate(name="Azul", owner_id=owner_account.id))
        r1 = borrowing.create_request(borrower, game.id, later(1), later(2))
        borrowing.approve(r1.id, owner)

        r2 = borrowing.create_request(stranger, other_game.id, later(1), later(2))
        assert r2.game_id == other_game.id

    def test_declined_requests_do_not_block(
        self, borrowing, owner, borrower, stranger, game, later
    ):
        r1 = borrowing.create_request(borrower, game.id, later(1), later(2))
        borrowing.decline(r1.id, owner)

        r2 = borrowing.create_request(stranger, game.id, later(1), later(2))
        assert r2.status == BorrowRequestStatus.PENDING.value

    def test_approve_rechecks_overlap(self, borrowing, owner, borrower, stranger, game, later):
        """Two pending overlapping requests: only the first approval succeeds."""
        r1 = borrowing.create_request(borrower, game.id, later(1), later(3))
        r2 = borrowing.create_request(stranger, game.id, later(2), later(4))

        borrowing.approve(r1.id, owner)
        with pytest.raises(ConflictError):
            borrowing.approve(r2.id, owner)

        assert borrowing.get_request(r2.id, owner).status == BorrowRequestStatus.PENDING.value

    def test_approved_intervals_never_intersect(
        self, borrowing, owner, borrower, stranger, game, later
    ):
        callers = [borrower, stranger]
        windows = [(1, 3), (2, 4), (3.5, 5), (4.5, 6), (7, 8), (7.5, 9)]
        for i, (start, end) in enumerate(windows):
            try:
                request = borrowing.create_request(
                    callers[i % 2], game.id, later(start), later(end)
                )
                borrowing.approve(request.id, owner)
            except ConflictError:
                pass

        approved = borrowing.list_requests(owner, status=BorrowRequestStatus.APPROVED)
        assert len(approved) >= 2
        for a in approved:
            for b in approved:
                if a.id != b.id:
                    assert not (a.start_date <= b.end_date and a.end_date >= b.start_date)

    def test_check_for_overlaps(self, borrowing, owner, pending_request, game, later):
        assert borrowing.check_for_overlaps(game.id, later(1), later(3))

        borrowing.approve(pending_request.id, owner)
        assert not borrowing.check_for_overlaps(game.id, later(2), later(4))
        assert borrowing.check_for_overlaps(
            game.id, later(2), later(4), exclude_request_id=pending_request.id
        )


class TestGetAndList:
    """Tests for reading requests."""

    def test_get_as_requester_and_owner(self, borrowing, pending_request, owner, borrower):
        assert borrowing.get_request(pending_request.id, borrower).id == pending_request.id
        assert borrowing.get_request(pending_request.id, owner).id == pending_request.id

    def test_get_as_stranger_forbidden(self, borrowing, pending_request, stranger):
        with pytest.raises(ForbiddenError):
            borrowing.get_request(pending_request.id, stranger)

    def test_get_as_admin(self, borrowing, pending_request, admin):
        assert borrowing.get_request(pending_request.id, admin).id == pending_request.id

    def test_get_missing(self, borrowing, owner):
        with pytest.raises(NotFoundError):
            borrowing.get_request("missing", owner)

    def test_get_requires_caller(self, borrowing, pending_request):
        with pytest.raises(UnauthenticatedError):
            borrowing.get_request(pending_request.id, None)

    def test_list_scoped_to_caller(self, borrowing, pending_request, owner, borrower, stranger):
        assert [r.id for r in borrowing.list_requests(borrower)] == [pending_request.id]
        assert [r.id for r in borrowing.list_requests(owner)] == [pending_request.id]
        assert borrowing.list_requests(stranger) == []

    def test_list_admin_sees_all(self, borrowing, pending_request, stranger, game, later, admin):
        borrowing.create_request(stranger, game.id, later(5), later(6))
        assert len(borrowing.list_requests(admin)) == 2

    def test_list_status_filter(self, borrowing, pending_request, owner):
        assert borrowing.list_requests(owner, status=BorrowRequestStatus.APPROVED) == []
        assert len(borrowing.list_requests(owner, status=BorrowRequestStatus.PENDING)) == 1

    def test_list_status_filter_accepts_strings(self, borrowing, pending_request, owner):
        assert len(borrowing.list_requests(owner, status="pending")) == 1

    @pytest.mark.parametrize("status", ["BOGUS", "closed"])
    def test_list_status_filter_invalid(self, borrowing, pending_request, owner, status):
        with pytest.raises(ValidationError):
            borrowing.list_requests(owner, status=status)

    def test_list_pending_for_owner(self, borrowing, pending_request, owner, owner_account):
        pending = borrowing.list_pending_for_owner(owner_account.id, owner)
        assert [r.id for r in pending] == [pending_request.id]

        borrowing.decline(pending_request.id, owner)
        assert borrowing.list_pending_for_owner(owner_account.id, owner) == []

    def test_list_pending_for_non_owner(self, borrowing, borrower_account, borrower):
        with pytest.raises(NotFoundError):
            borrowing.list_pending_for_owner(borrower_account.id, borrower)

    def test_list_pending_as_admin(self, borrowing, pending_request, owner_account, admin):
        assert len(borrowing.list_pending_for_owner(owner_account.id, admin)) == 1

    @pytest.mark.parametrize("who", ["borrower", "stranger"])
    def test_list_pending_of_someone_else(
        self, borrowing, pending_request, owner_account, identities, who
    ):
        with pytest.raises(ForbiddenError):
            borrowing.list_pending_for_owner(owner_account.id, identities[who])

    def test_list_pending_requires_caller(self, borrowing, owner_account):
        with pytest.raises(UnauthenticatedError):
            borrowing.list_pending_for_owner(owner_account.id, None)

    def test_list_by_requester(self, borrowing, pending_request, borrower_account, borrower):
        assert [r.id for r in borrowing.list_by_requester(borrower_account.id, borrower)] == [
            pending_request.id
        ]

    @pytest.mark.parametrize("who", ["owner", "stranger"])
    def test_list_by_requester_of_someone_else(
        self, borrowing, pending_request, borrower_account, identities, who
    ):
        with pytest.raises(ForbiddenError):
            borrowing.list_by_requester(borrower_account.id, identities[who])

    def test_list_by_unknown_requester(self, borrowing, admin):
        with pytest.raises(NotFoundError):
            borrowing.list_by_requester("missing", admin)


class TestUpdateStatus:
    """Tests for approving and declining."""

    def test_approve_creates_active_record(
        self, borrowing, lending, pending_request, owner, owner_account
    ):
        approved = borrowing.update_status(pending_request.id, "APPROVED", owner)

        assert approved.status == BorrowRequestStatus.APPROVED.value
        assert approved.responder_id == owner_account.id

        record = lending.get_record(approved.lending_record.id)
        assert record.status == LendingStatus.ACTIVE.value
        assert record.record_owner_id == owner_account.id
        assert record.request_id == pending_request.id
        assert record.start_date == pending_request.start_date
        assert record.end_date == pending_request.end_date
        assert lending.get_stats().total == 1

    def test_status_string_case_insensitive(self, borrowing, pending_request, owner):
        declined = borrowing.update_status(pending_request.id, "declined", owner)
        assert declined.status == BorrowRequestStatus.DECLINED.value

    def test_decline_creates_no_record(self, borrowing, lending, pending_request, owner):
        borrowing.decline(pending_request.id, owner)
        assert lending.get_stats().total == 0

    @pytest.mark.parametrize("status", ["PENDING", "CLOSED", "", None, BorrowRequestStatus.PENDING])
    def test_invalid_status(self, borrowing, pending_request, owner, status):
        with pytest.raises(ValidationError):
            borrowing.update_status(pending_request.id, status, owner)

    @pytest.mark.parametrize("who", ["borrower", "stranger", "admin"])
    def test_only_owner_may_decide(self, borrowing, pending_request, identities, who):
        with pytest.raises(ForbiddenError):
            borrowing.update_status(pending_request.id, "APPROVED", identities[who])

    def test_missing_request(self, borrowing, owner):
        with pytest.raises(NotFoundError):
            borrowing.approve("missing", owner)

    def test_decided_only_once(self, borrowing, pending_request, owner):
        borrowing.decline(pending_request.id, owner)
        with pytest.raises(StateError):
            borrowing.approve(pending_request.id, owner)

    def test_approve_is_atomic(self, borrowing, lending, pending_request, owner):
        """A failure while opening the record leaves the request PENDING."""
        with patch.object(lending, "create_record", side_effect=ValidationError("boom")):
            with pytest.raises(ValidationError):
                borrowing.approve(pending_request.id, owner)

        request = borrowing.get_request(pending_request.id, owner)
        assert request.status == BorrowRequestStatus.PENDING.value
        assert request.responder_id is None
        assert lending.get_stats().total == 0

    def test_approve_past_start_fails_atomically(
        self, db, borrowing, lending, borrower, owner, game, later
    ):
        """A request whose start has passed cannot become a loan."""
        request = borrowing.create_request(borrower, game.id, later(-2), later(2))
        with pytest.raises(ValidationError, match="past"):
            borrowing.approve(request.id, owner)

        assert borrowing.get_request(request.id, owner).status == BorrowRequestStatus.PENDING.value
        assert lending.get_stats().total == 0


class TestDeleteRequest:
    """Tests for deleting requests."""

    def test_requester_deletes(self, borrowing, pending_request, borrower, owner):
        assert borrowing.delete_request(pending_request.id, borrower)
        with pytest.raises(NotFoundError):
            borrowing.get_request(pending_request.id, owner)

    def test_owner_deletes(self, borrowing, pending_request, owner):
        assert borrowing.delete_request(pending_request.id, owner)

    def test_stranger_forbidden(self, borrowing, pending_request, stranger):
        with pytest.raises(ForbiddenError):
            borrowing.delete_request(pending_request.id, stranger)

    def test_delete_missing(self, borrowing, owner):
        with pytest.raises(NotFoundError):
            borrowing.delete_request("missing", owner)

    def test_active_record_blocks_delete(self, borrowing, active_record, owner):
        with pytest.raises(StateError):
            borrowing.delete_request(active_record.request_id, owner)

    def test_delete_removes_closed_record(self, borrowing, lending, active_record, owner):
        lending.update_status(active_record.id, LendingStatus.CLOSED, caller=owner)

        assert borrowing.delete_request(active_record.request_id, owner)
        with pytest.raises(NotFoundError):
            lending.get_record(active_record.id)


class TestCrossUser:
    def test_new_member_can_borrow(self, db, borrowing, owner, game, later):
        from gameorganizer.auth.identity import IdentityProvider

        db.create_account(AccountCreate(email="new@example.com", name="New"))
        newcomer = IdentityProvider(db).resolve_caller("new@example.com")

        request = borrowing.create_request(newcomer, game.id, later(1), later(2))
        approved = borrowing.approve(request.id, owner)
        assert approved.lending_record is not None


class TestConcurrentApproval:
    """Approvals of overlapping requests racing on a file database."""

    @pytest.fixture
    def file_db(self, tmp_path):
        database = Database(str(tmp_path / "race.db"))
        database.create_tables()
        yield database
        database.engine.dispose()

    def test_only_one_overlapping_approval_wins(self, file_db, later):
        owner_account = file_db.create_account(AccountCreate(email="olive@example.com", name="O"))
        file_db.create_account(AccountCreate(email="bo@example.com", name="B"))
        file_db.create_account(AccountCreate(email="sam@example.com", name="S"))
        game = file_db.create_game(GameCreate(name="Catan", owner_id=owner_account.id))

        provider = IdentityProvider(file_db)
        owner = provider.resolve_caller("olive@example.com")
        borrowing = BorrowRequestManager(file_db)

        r1 = borrowing.create_request(
            provider.resolve_caller("bo@example.com"), game.id, later(1), later(3)
        )
        r2 = borrowing.create_request(
            provider.resolve_caller("sam@example.com"), game.id, later(2), later(4)
        )

        barrier = threading.Barrier(2)
        approved, conflicts, other = [], [], []

        def approve(request_id):
            barrier.wait()
            try:
                approved.append(borrowing.approve(request_id, owner).id)
            except ConflictError:
                conflicts.append(request_id)
            except Exception as exc:
                other.append(exc)

        threads = [threading.Thread(target=approve, args=(r.id,)) for r in (r1, r2)]
        for thread in threads:
            thread.start()
        for thread in threads:
            thread.join(timeout=60)

        assert other == []
        assert len(approved) == 1
        assert len(conflicts) == 1
        assert borrowing.lending.get_stats().total == 1
        assert [r.id for r in borrowing.list_requests(owner, status="APPROVED")] == approved
