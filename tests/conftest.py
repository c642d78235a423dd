"""Pytest configuration and shared fixtures.

This module provides an in-memory database with a game owner, a borrower,
an unrelated member, an admin and one listed game.
"""

from datetime import datetime, timedelta

import pytest

from gameorganizer.auth.guard import AuthorizationGuard
from gameorganizer.auth.identity import Identity, IdentityProvider
from gameorganizer.borrowing.manager import BorrowRequestManager
from gameorganizer.db.models import utcnow
from gameorganizer.db.schemas import AccountCreate, GameCreate, Role
from gameorganizer.db.sqlite import Database
from gameorganizer.lending.manager import LendingRecordManager


def days_from_now(days: float) -> datetime:
    """Naive UTC instant ``days`` from now."""
    return utcnow() + timedelta(days=days)


# ============================================================================
# Database Fixtures
# ============================================================================


@pytest.fixture
def db():
    """Create an in-memory database for testing."""
    database = Database(":memory:")
    database.create_tables()
    return database


@pytest.fixture
def guard(db):
    return AuthorizationGuard(db)


@pytest.fixture
def lending(db, guard):
    """Create a LendingRecordManager with test database."""
    return LendingRecordManager(db, guard=guard)


@pytest.fixture
def borrowing(db, lending, guard):
    """Create a BorrowRequestManager wired to the lending manager."""
    return BorrowRequestManager(db, lending=lending, guard=guard)


# ============================================================================
# Sample Data Fixtures
# ============================================================================


@pytest.fixture
def owner_account(db):
    return db.create_account(AccountCreate(email="olive@example.com", name="Olive Owner"))


@pytest.fixture
def borrower_account(db):
    return db.create_account(AccountCreate(email="bo@example.com", name="Bo Rower"))


@pytest.fixture
def stranger_account(db):
    return db.create_account(AccountCreate(email="sam@example.com", name="Sam Stranger"))


@pytest.fixture
def admin_account(db):
    return db.create_account(
        AccountCreate(email="ada@example.com", name="Ada Admin", roles={Role.USER, Role.ADMIN})
    )


@pytest.fixture
def game(db, owner_account):
    """A game listed by the owner."""
    return db.create_game(
        GameCreate(name="Catan", owner_id=owner_account.id, min_players=3, max_players=4)
    )


@pytest.fixture
def identities(db, game, owner_account, borrower_account, stranger_account, admin_account):
    """Resolved callers; resolved after the game exists so the owner holds game_owner."""
    provider = IdentityProvider(db)
    return {
        "owner": provider.resolve_caller(owner_account.email),
        "borrower": provider.resolve_caller(borrower_account.email),
        "stranger": provider.resolve_caller(stranger_account.email),
        "admin": provider.resolve_caller(admin_account.email),
    }


@pytest.fixture
def owner(identities) -> Identity:
    return identities["owner"]


@pytest.fixture
def borrower(identities) -> Identity:
    return identities["borrower"]


@pytest.fixture
def stranger(identities) -> Identity:
    return identities["stranger"]


@pytest.fixture
def admin(identities) -> Identity:
    return identities["admin"]


@pytest.fixture
def pending_request(borrowing, borrower, game):
    """A pending request for days 1-3 from now."""
    return borrowing.create_request(borrower, game.id, days_from_now(1), days_from_now(3))


@pytest.fixture
def active_record(borrowing, lending, owner, pending_request):
    """The lending record created by approving the pending request."""
    approved = borrowing.approve(pending_request.id, owner)
    return lending.get_record(approved.lending_record.id)


@pytest.fixture
def later():
    """Helper returning a naive UTC instant N days from now."""
    return days_from_now
