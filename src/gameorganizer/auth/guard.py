"""Authorization guard.

The single place ownership and role logic lives. Every predicate answers
``False`` instead of raising: missing identities, missing entities and
lookup failures all deny. Callers turn a ``False`` into ``ForbiddenError``.
"""

import logging
from typing import Callable, Optional, TypeVar

from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.orm import Session

from ..db.schemas import Role
from ..db.sqlite import Database, get_db
from .identity import Identity

logger = logging.getLogger(__name__)

T = TypeVar("T")


class AuthorizationGuard:
    """Ownership and role predicates consulted by both managers."""

    def __init__(self, db: Optional[Database] = None):
        self.db = db or get_db()

    def _load(
        self,
        model: type[T],
        entity_id: str,
        session: Optional[Session],
    ) -> Optional[T]:
        def _get(s: Session) -> Optional[T]:
            return s.get(model, entity_id)

        try:
            if session:
                return _get(session)
            with self.db.get_session() as s:
                return _get(s)
        except SQLAlchemyError:
            logger.exception("Lookup of %s %s failed, denying", model.__name__, entity_id)
            return None

    def _check(
        self,
        model: type[T],
        entity_id: str,
        identity: Optional[Identity],
        predicate: Callable[[T, Identity], bool],
        session: Optional[Session],
    ) -> bool:
        if identity is None or not entity_id:
            return False
        entity = self._load(model, entity_id, session)
        if entity is None:
            return False
        return predicate(entity, identity)

    @staticmethod
    def is_admin(identity: Optional[Identity]) -> bool:
        return identity is not None and identity.is_admin

    # ------------------------------------------------------------------
    # Borrow requests
    # ------------------------------------------------------------------

    def is_owner_or_requester(
        self,
        request_id: str,
        identity: Optional[Identity],
        session: Optional[Session] = None,
    ) -> bool:
        """True if the caller made the request or owns the requested game."""
        # Imported here: the engine packages import this module at load time
        from ..borrowing.models import BorrowRequest

        return self._check(
            BorrowRequest,
            request_id,
            identity,
            lambda r, i: i.id in (r.requester_id, r.owner_id),
            session,
        )

    def is_game_owner(
        self,
        request_id: str,
        identity: Optional[Identity],
        session: Optional[Session] = None,
    ) -> bool:
        """True if the caller owns the requested game and holds the game_owner role."""
        from ..borrowing.models import BorrowRequest

        return self._check(
            BorrowRequest,
            request_id,
            identity,
            lambda r, i: i.has_role(Role.GAME_OWNER) and i.id == r.owner_id,
            session,
        )

    # ------------------------------------------------------------------
    # Lending records
    # ------------------------------------------------------------------

    def is_record_owner(
        self,
        record_id: str,
        identity: Optional[Identity],
        session: Optional[Session] = None,
    ) -> bool:
        from ..lending.models import LendingRecord

        return self._check(
            LendingRecord,
            record_id,
            identity,
            lambda rec, i: i.id == rec.record_owner_id,
            session,
        )

    def is_record_borrower(
        self,
        record_id: str,
        identity: Optional[Identity],
        session: Optional[Session] = None,
    ) -> bool:
        from ..lending.models import LendingRecord

        return self._check(
            LendingRecord,
            record_id,
            identity,
            lambda rec, i: i.id == rec.borrower_id,
            session,
        )

    def is_record_party(
        self,
        record_id: str,
        identity: Optional[Identity],
        session: Optional[Session] = None,
    ) -> bool:
        """True for the record owner or the borrower."""
        from ..lending.models import LendingRecord

        return self._check(
            LendingRecord,
            record_id,
            identity,
            lambda rec, i: i.id in (rec.record_owner_id, rec.borrower_id),
            session,
        )
