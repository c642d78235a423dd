"""Caller identity resolution.

Every manager call takes the caller explicitly as an ``Identity``; nothing
is read from ambient thread-local state.
"""

import logging
from dataclasses import dataclass, field
from typing import Optional

from ..db.models import Account
from ..db.schemas import Role
from ..db.sqlite import Database, get_db
from ..errors import UnauthenticatedError

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class Identity:
    """A resolved caller."""

    id: str
    email: str
    roles: frozenset[Role] = field(default_factory=frozenset)

    @property
    def is_admin(self) -> bool:
        return Role.ADMIN in self.roles

    def has_role(self, role: Role) -> bool:
        return role in self.roles

    @classmethod
    def from_account(cls, account: Account) -> "Identity":
        return cls(id=account.id, email=account.email, roles=account.get_roles())


class IdentityProvider:
    """Resolves callers against the account directory."""

    def __init__(self, db: Optional[Database] = None):
        """Initialize identity provider.

        Args:
            db: Database instance
        """
        self.db = db or get_db()

    def resolve_caller(self, email: Optional[str]) -> Identity:
        """Resolve a caller by email.

        Args:
            email: Caller email, usually from config or a CLI option

        Returns:
            The caller identity

        Raises:
            UnauthenticatedError: If no email is given or it matches no account
        """
        if not email or not email.strip():
            raise UnauthenticatedError("Authentication required")

        account = self.db.get_account_by_email(email)
        if not account:
            logger.warning("Unknown caller %s", email)
            raise UnauthenticatedError("Authentication required")
        return Identity.from_account(account)
