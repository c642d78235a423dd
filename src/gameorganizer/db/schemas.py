"""Pydantic schemas for accounts and games."""

from datetime import datetime
from enum import Enum
from typing import Optional

from pydantic import BaseModel, Field, model_validator


class Role(str, Enum):
    """Capabilities an account can hold."""

    USER = "user"
    GAME_OWNER = "game_owner"
    ADMIN = "admin"


class AccountCreate(BaseModel):
    """Schema for creating an account."""

    email: str = Field(..., min_length=3, max_length=200)
    name: str = Field(..., min_length=1, max_length=200)
    roles: set[Role] = Field(default_factory=lambda: {Role.USER})


class AccountResponse(BaseModel):
    """Schema for account responses."""

    id: str
    email: str
    name: str
    roles: str
    created_at: datetime

    model_config = {"from_attributes": True}


class GameCreate(BaseModel):
    """Schema for listing a game."""

    name: str = Field(..., min_length=1, max_length=200)
    owner_id: str
    min_players: int = Field(1, ge=1)
    max_players: int = Field(4, ge=1)

    @model_validator(mode="after")
    def check_capacity(self) -> "GameCreate":
        """Validate the capacity bounds."""
        if self.max_players < self.min_players:
            raise ValueError("max_players must be >= min_players")
        return self


class GameResponse(BaseModel):
    """Schema for game responses."""

    id: str
    name: str
    owner_id: str
    min_players: int
    max_players: int
    created_at: Optional[datetime] = None

    model_config = {"from_attributes": True}
