from __future__ import annotations

import uuid
from dataclasses import dataclass, field
from datetime import datetime, timedelta, timezone
from enum import Enum
from typing import Optional


def utcnow() -> datetime:
    """Timezone-aware UTC helper to avoid naive datetime usage."""

    return datetime.now(timezone.utc)


class MemberRole(str, Enum):
    """Per-chat role. Stored lower-case; see ``service.roles`` for ordering."""

    OWNER = "owner"
    ADMIN = "admin"
    MEMBER = "member"


class InviteStatus(str, Enum):
    PENDING = "pending"
    ACCEPTED = "accepted"
    DECLINED = "declined"
    EXPIRED = "expired"
    CANCELLED = "cancelled"

    @property
    def is_terminal(self) -> bool:
        return self is not InviteStatus.PENDING


@dataclass
class User:
    """Directory view of an account; the user store itself is external."""

    id: int
    public_id: str
    email: str
    email_verified: bool = False
    created_at: datetime = field(default_factory=utcnow)


@dataclass
class Member:
    chat_id: str
    user_id: int
    role: MemberRole
    joined_at: datetime = field(default_factory=utcnow)


@dataclass
class Invite:
    id: str
    chat_id: str
    inviter_id: int
    status: InviteStatus
    created_at: datetime
    expires_at: datetime
    invitee_user_id: Optional[int] = None
    invitee_email: Optional[str] = None
    message: Optional[str] = None
    responded_at: Optional[datetime] = None

    @classmethod
    def new(
        cls,
        chat_id: str,
        inviter_id: int,
        *,
        ttl_hours: int,
        now: datetime,
        invitee_user_id: Optional[int] = None,
        invitee_email: Optional[str] = None,
        message: Optional[str] = None,
    ) -> "Invite":
        return cls(
            id=str(uuid.uuid4()),
            chat_id=chat_id,
            inviter_id=inviter_id,
            status=InviteStatus.PENDING,
            created_at=now,
            expires_at=now + timedelta(hours=ttl_hours),
            invitee_user_id=invitee_user_id,
            invitee_email=invitee_email.strip().lower() if invitee_email else None,
            message=message,
        )

    def is_past_expiry(self, now: datetime) -> bool:
        return now > self.expires_at

    def is_addressed_to(self, user: User) -> bool:
        """Whether ``user`` is the invitee, by id or by verified email."""
        if self.invitee_user_id is not None:
            return self.invitee_user_id == user.id
        if self.invitee_email is not None:
            return user.email_verified and user.email.lower() == self.invitee_email
        return False
