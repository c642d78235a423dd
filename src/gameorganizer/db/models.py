"""SQLAlchemy ORM models shared by the lending engine.

Tables:
- accounts: Community members (borrowers, game owners, admins)
- games: Games listed by their owners
"""

from datetime import datetime, timezone
from typing import Optional
from uuid import uuid4

from sqlalchemy import DateTime, ForeignKey, Integer, String
from sqlalchemy.orm import DeclarativeBase, Mapped, mapped_column, relationship

from .schemas import Role


class Base(DeclarativeBase):
    """Base class for all ORM models."""

    pass


def generate_uuid() -> str:
    """Generate a UUID string for primary keys."""
    return str(uuid4())


def utcnow() -> datetime:
    """Current instant as a naive UTC datetime (the storage convention)."""
    return datetime.now(timezone.utc).replace(tzinfo=None)


def to_utc(value: Optional[datetime]) -> Optional[datetime]:
    """Normalize an instant to naive UTC.

    Aware datetimes are converted; naive ones are assumed to be UTC already.
    """
    if value is None:
        return None
    if value.tzinfo is not None:
        return value.astimezone(timezone.utc).replace(tzinfo=None)
    return value


class Account(Base):
    """Account model - a community member."""

    __tablename__ = "accounts"

    id: Mapped[str] = mapped_column(String(36), primary_key=True, default=generate_uuid)
    email: Mapped[str] = mapped_column(String(200), nullable=False, unique=True, index=True)
    name: Mapped[str] = mapped_column(String(200), nullable=False)

    # Comma separated role names, see Role
    roles: Mapped[str] = mapped_column(String(100), default=Role.USER.value, nullable=False)

    created_at: Mapped[datetime] = mapped_column(DateTime, default=utcnow)

    games: Mapped[list["Game"]] = relationship("Game", back_populates="owner")

    def __repr__(self) -> str:
        return f"<Account(id={self.id}, email='{self.email}')>"

    def get_roles(self) -> frozenset[Role]:
        """Parse the stored role set."""
        if not self.roles:
            return frozenset()
        return frozenset(Role(r) for r in self.roles.split(",") if r)

    def set_roles(self, roles) -> None:
        """Store a role set."""
        self.roles = ",".join(sorted(Role(r).value for r in roles))

    def has_role(self, role: Role) -> bool:
        return role in self.get_roles()

    def grant_role(self, role: Role) -> None:
        self.set_roles(self.get_roles() | {role})


class Game(Base):
    """Game model - a physical game listed by its owner."""

    __tablename__ = "games"

    id: Mapped[str] = mapped_column(String(36), primary_key=True, default=generate_uuid)
    name: Mapped[str] = mapped_column(String(200), nullable=False, index=True)
    owner_id: Mapped[str] = mapped_column(
        String(36),
        ForeignKey("accounts.id", ondelete="CASCADE"),
        nullable=False,
        index=True,
    )

    # Capacity bounds
    min_players: Mapped[int] = mapped_column(Integer, default=1)
    max_players: Mapped[int] = mapped_column(Integer, default=4)

    created_at: Mapped[datetime] = mapped_column(DateTime, default=utcnow)

    owner: Mapped["Account"] = relationship("Account", back_populates="games", lazy="joined")

    def __repr__(self) -> str:
        return f"<Game(id={self.id}, name='{self.name}', owner_id={self.owner_id})>"
