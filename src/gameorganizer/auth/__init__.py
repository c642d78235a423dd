"""Caller identity and authorization."""

from .guard import AuthorizationGuard
from .identity import Identity, IdentityProvider

__all__ = ["AuthorizationGuard", "Identity", "IdentityProvider"]
