"""SQLite database operations.

Handles database connection, session management, and the account and game
directory the lending engine reads from.
"""

import logging
import os
from contextlib import contextmanager
from pathlib import Path
from typing import Generator, Optional

from sqlalchemy import create_engine, event, select
from sqlalchemy.orm import Session, sessionmaker
from sqlalchemy.pool import StaticPool

from ..errors import NotFoundError, ValidationError
from .models import Account, Base, Game
from .schemas import AccountCreate, GameCreate, Role

logger = logging.getLogger(__name__)


def _configure_sqlite(engine) -> None:
    """Start every transaction with BEGIN IMMEDIATE.

    pysqlite defers BEGIN until the first write, which lets two transactions
    read the same rows before either writes. Taking the write lock up front
    serializes check-then-write sequences such as the overlap check.
    """

    @event.listens_for(engine, "connect")
    def _on_connect(dbapi_connection, connection_record):
        dbapi_connection.isolation_level = None
        cursor = dbapi_connection.cursor()
        cursor.execute("PRAGMA foreign_keys=ON")
        cursor.close()

    @event.listens_for(engine, "begin")
    def _on_begin(conn):
        conn.exec_driver_sql("BEGIN IMMEDIATE")


class Database:
    """Database connection and operations manager."""

    def __init__(self, db_path: Optional[str] = None):
        """Initialize database connection.

        Args:
            db_path: Path to SQLite database file. If None, uses
                     GAMEORGANIZER_DB_PATH env var or default location.
        """
        if db_path is None:
            db_path = os.environ.get(
                "GAMEORGANIZER_DB_PATH",
                str(Path.home() / ".gameorganizer" / "gameorganizer.db"),
            )

        self.db_path = Path(db_path)
        self._is_memory = str(db_path) == ":memory:"

        if not self._is_memory:
            self._ensure_directory()

        # For in-memory databases, use StaticPool to reuse the same connection
        # This ensures all sessions share the same in-memory database
        if self._is_memory:
            self.engine = create_engine(
                "sqlite:///:memory:",
                echo=False,
                connect_args={"check_same_thread": False},
                poolclass=StaticPool,
            )
        else:
            self.engine = create_engine(
                f"sqlite:///{self.db_path}",
                echo=False,
                connect_args={"check_same_thread": False, "timeout": 30},
            )
        _configure_sqlite(self.engine)
        self.SessionLocal = sessionmaker(
            bind=self.engine, autocommit=False, autoflush=False, expire_on_commit=False
        )

    def _ensure_directory(self) -> None:
        """Ensure the database directory exists."""
        self.db_path.parent.mkdir(parents=True, exist_ok=True)

    def create_tables(self) -> None:
        """Create all database tables."""
        # Import engine models to register them with Base
        from ..borrowing.models import BorrowRequest  # noqa: F401
        from ..lending.models import LendingRecord, LendingStatusChange  # noqa: F401

        Base.metadata.create_all(self.engine)

    def drop_tables(self) -> None:
        """Drop all database tables. Use with caution!"""
        Base.metadata.drop_all(self.engine)

    @contextmanager
    def get_session(self) -> Generator[Session, None, None]:
        """Get a database session context manager.

        The session is one unit of work: committed when the block exits
        normally, rolled back when it raises.
        """
        session = self.SessionLocal()
        try:
            yield session
            session.commit()
        except Exception:
            session.rollback()
            raise
        finally:
            session.close()

    # ========================================================================
    # Account Operations
    # ========================================================================

    def create_account(
        self, data: AccountCreate, session: Optional[Session] = None
    ) -> Account:
        """Create a new account."""

        def _create(s: Session) -> Account:
            existing = s.execute(
                select(Account).where(Account.email == data.email.lower())
            ).scalar_one_or_none()
            if existing:
                raise ValidationError(f"Account already exists: {data.email}")

            account = Account(email=data.email.lower(), name=data.name)
            account.set_roles(data.roles or {Role.USER})
            s.add(account)
            s.flush()
            logger.info("Created account %s (%s)", account.id, account.email)
            return account

        if session:
            return _create(session)
        else:
            with self.get_session() as s:
                return _create(s)

    def get_account(
        self, account_id: str, session: Optional[Session] = None
    ) -> Optional[Account]:
        """Get an account by ID."""

        def _get(s: Session) -> Optional[Account]:
            return s.get(Account, account_id)

        if session:
            return _get(session)
        else:
            with self.get_session() as s:
                return _get(s)

    def get_account_by_email(
        self, email: str, session: Optional[Session] = None
    ) -> Optional[Account]:
        """Get an account by email (case-insensitive)."""

        def _get(s: Session) -> Optional[Account]:
            stmt = select(Account).where(Account.email == email.strip().lower())
            return s.execute(stmt).scalar_one_or_none()

        if session:
            return _get(session)
        else:
            with self.get_session() as s:
                return _get(s)

    def list_accounts(self, session: Optional[Session] = None) -> list[Account]:
        """List all accounts ordered by email."""

        def _get(s: Session) -> list[Account]:
            return list(s.execute(select(Account).order_by(Account.email)).scalars().all())

        if session:
            return _get(session)
        else:
            with self.get_session() as s:
                return _get(s)

    # ========================================================================
    # Game Operations
    # ========================================================================

    def create_game(self, data: GameCreate, session: Optional[Session] = None) -> Game:
        """List a new game. The owner gains the game_owner role."""

        def _create(s: Session) -> Game:
            owner = s.get(Account, data.owner_id)
            if not owner:
                raise NotFoundError("Owner account not found")
            if not owner.has_role(Role.GAME_OWNER):
                owner.grant_role(Role.GAME_OWNER)

            game = Game(
                name=data.name,
                owner_id=owner.id,
                min_players=data.min_players,
                max_players=data.max_players,
            )
            game.owner = owner
            s.add(game)
            s.flush()
            logger.info("Created game %s owned by %s", game.id, owner.id)
            return game

        if session:
            return _create(session)
        else:
            with self.get_session() as s:
                return _create(s)

    def get_game(self, game_id: str, session: Optional[Session] = None) -> Optional[Game]:
        """Get a game by ID."""

        def _get(s: Session) -> Optional[Game]:
            return s.get(Game, game_id)

        if session:
            return _get(session)
        else:
            with self.get_session() as s:
                return _get(s)

    def get_games_by_owner(
        self, owner_id: str, session: Optional[Session] = None
    ) -> list[Game]:
        """Get all games listed by an owner."""

        def _get(s: Session) -> list[Game]:
            stmt = select(Game).where(Game.owner_id == owner_id).order_by(Game.name)
            return list(s.execute(stmt).scalars().all())

        if session:
            return _get(session)
        else:
            with self.get_session() as s:
                return _get(s)


# Global database instance
_db: Optional[Database] = None


def get_db(db_path: Optional[str] = None) -> Database:
    """Get or create the global database instance."""
    global _db
    if _db is None:
        _db = Database(db_path)
        _db.create_tables()
    return _db


def reset_db() -> None:
    """Reset the global database instance. Used for testing."""
    global _db
    _db = None
