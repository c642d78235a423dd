"""Database module for local SQLite storage."""

from .models import Account, Game
from .schemas import AccountCreate, AccountResponse, GameCreate, GameResponse, Role
from .sqlite import Database, get_db, reset_db

__all__ = [
    "Account",
    "Game",
    "AccountCreate",
    "AccountResponse",
    "GameCreate",
    "GameResponse",
    "Role",
    "Database",
    "get_db",
    "reset_db",
]
