from __future__ import annotations

from dataclasses import dataclass
from enum import Enum
from typing import Optional

from switchboard.logging import get_logger
from switchboard.service import roles
from switchboard.service.errors import ForbiddenError, InvalidStateError
from switchboard.service.roles import Capability
from switchboard.storage.models import Member, MemberRole

logger = get_logger(__name__)


class MemberAction(str, Enum):
    UPDATE_ROLE = "update_role"
    REMOVE = "remove"


# Stable reason ids and their human-readable messages
SELF_ACTION = "self_action"
OWNER_REQUIRED = "owner_required"
INSUFFICIENT_PERMISSIONS = "insufficient_permissions"
CANNOT_REMOVE_OWNER = "cannot_remove_owner"
ADMIN_PEER_REMOVAL = "admin_peer_removal"
NOT_A_MEMBER = "not_a_member"

REASON_MESSAGES = {
    SELF_ACTION: "cannot act on yourself",
    OWNER_REQUIRED: "only owners manage admins/owners",
    INSUFFICIENT_PERMISSIONS: "insufficient permissions",
    CANNOT_REMOVE_OWNER: "cannot remove chat owner",
    ADMIN_PEER_REMOVAL: "admins cannot remove other admins",
    NOT_A_MEMBER: "not a member of this chat",
}

_CAPABILITY_DENIALS = {
    Capability.MANAGE_MEMBERS: ("cannot_manage_members", "insufficient permissions to manage members"),
    Capability.DELETE_CHAT: ("cannot_delete_chat", "only chat owners can delete chats"),
    Capability.INVITE_MEMBERS: ("cannot_invite_members", "insufficient permissions to invite members"),
    Capability.UPDATE_CHAT: ("cannot_update_chat", "only owners and admins can update chat settings"),
}


@dataclass(frozen=True)
class Decision:
    allowed: bool
    reason: Optional[str] = None

    @property
    def message(self) -> Optional[str]:
        return REASON_MESSAGES.get(self.reason) if self.reason else None

    def as_tuple(self) -> tuple[bool, Optional[str]]:
        return self.allowed, self.reason


_ALLOW = Decision(True)


def _deny(reason: str) -> Decision:
    return Decision(False, reason)


class AuthorizationGate:
    """Decides whether one chat member may act on another.

    Pure: no storage access and no side effects. Callers load both members
    inside the transaction that performs the mutation and ask the gate
    before writing.
    """

    def check(self, requester: Member, target: Member, action: MemberAction) -> Decision:
        if requester.user_id == target.user_id:
            return _deny(SELF_ACTION)

        if action == MemberAction.UPDATE_ROLE:
            if target.role in (MemberRole.OWNER, MemberRole.ADMIN):
                if requester.role != MemberRole.OWNER:
                    return _deny(OWNER_REQUIRED)
            elif not roles.can_manage_members(requester.role):
                return _deny(INSUFFICIENT_PERMISSIONS)
            return _ALLOW

        if action == MemberAction.REMOVE:
            if target.role == MemberRole.OWNER:
                return _deny(CANNOT_REMOVE_OWNER)
            if target.role == MemberRole.ADMIN and requester.role == MemberRole.ADMIN:
                return _deny(ADMIN_PEER_REMOVAL)
            if not roles.can_manage_members(requester.role):
                return _deny(INSUFFICIENT_PERMISSIONS)
            return _ALLOW

        raise ValueError(f"unknown member action: {action!r}")

    def authorize(self, requester: Member, target: Member, action: MemberAction) -> None:
        """Like ``check`` but raises the rejection as a typed service error."""
        decision = self.check(requester, target, action)
        if decision.allowed:
            return
        logger.warning(
            "member_action_denied",
            chat_id=target.chat_id,
            requester_id=requester.user_id,
            target_id=target.user_id,
            action=action.value,
            reason=decision.reason,
        )
        detail = {"action": action.value, "target_user_id": target.user_id}
        if decision.reason == SELF_ACTION:
            raise InvalidStateError(decision.message, reason=decision.reason, detail=detail)
        raise ForbiddenError(decision.message, reason=decision.reason, detail=detail)

    def require_capability(self, member: Optional[Member], capability: Capability) -> Member:
        """Return ``member`` if it holds ``capability``; raise ``ForbiddenError`` otherwise."""
        if member is None:
            raise ForbiddenError(REASON_MESSAGES[NOT_A_MEMBER], reason=NOT_A_MEMBER)
        if not roles.has_capability(member.role, capability):
            reason, message = _CAPABILITY_DENIALS[capability]
            logger.warning(
                "chat_capability_denied",
                chat_id=member.chat_id,
                user_id=member.user_id,
                capability=capability.value,
            )
            raise ForbiddenError(message, reason=reason, detail={"capability": capability.value})
        return member
