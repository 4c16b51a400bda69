from __future__ import annotations

from .users import ADMIN_ROLE_ID, PreservedIdentity, UserService

__all__ = ["UserService", "PreservedIdentity", "ADMIN_ROLE_ID"]
