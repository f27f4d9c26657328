from __future__ import annotations

from typing import Any, Dict, Optional

MEMBER_UNIQUE = "chat_member_pkey"
INVITE_UNIQUE = "chat_invite_pkey"


class ConstraintViolation(Exception):
    """A uniqueness constraint rejected a member or invite row.

    ``constraint`` names the violated constraint so services can map it to
    the right conflict reason without parsing messages.
    """

    def __init__(
        self,
        message: str,
        detail: Optional[Dict[str, Any]] = None,
        *,
        constraint: Optional[str] = None,
    ):
        super().__init__(message)
        self.message = message
        self.detail = detail or {}
        self.constraint = constraint


__all__ = ["ConstraintViolation", "MEMBER_UNIQUE", "INVITE_UNIQUE"]
