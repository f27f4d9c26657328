"""Role ordering and capability predicates for chat membership.

Roles form a total order ``owner > admin > member``. Every permission
question about a single role is answered here; decisions that involve two
members live in ``service.permissions``.
"""

from __future__ import annotations

from enum import Enum
from typing import Union

from switchboard.service.errors import ValidationError
from switchboard.storage.models import MemberRole

_RANKS = {
    MemberRole.MEMBER: 0,
    MemberRole.ADMIN: 1,
    MemberRole.OWNER: 2,
}


class Capability(str, Enum):
    MANAGE_MEMBERS = "manage_members"
    DELETE_CHAT = "delete_chat"
    INVITE_MEMBERS = "invite_members"
    UPDATE_CHAT = "update_chat"


def parse_role(value: Union[str, MemberRole]) -> MemberRole:
    """Parse a role name, failing on anything unrecognized.

    Unknown input is never mapped to a fallback role.
    """
    if isinstance(value, MemberRole):
        return value
    if isinstance(value, str):
        try:
            return MemberRole(value.strip().lower())
        except ValueError:
            pass
    raise ValidationError(
        f"unknown role: {value!r}",
        reason="invalid_role",
        detail={"allowed": [role.value for role in MemberRole]},
    )


def rank(role: MemberRole) -> int:
    return _RANKS[role]


def has_role_or_higher(role: MemberRole, required: MemberRole) -> bool:
    return rank(role) >= rank(required)


def can_manage_members(role: MemberRole) -> bool:
    return has_role_or_higher(role, MemberRole.ADMIN)


def can_delete_chat(role: MemberRole) -> bool:
    return role == MemberRole.OWNER


def can_invite_members(role: MemberRole) -> bool:
    return has_role_or_higher(role, MemberRole.ADMIN)


def can_update_chat(role: MemberRole) -> bool:
    return has_role_or_higher(role, MemberRole.ADMIN)


_CAPABILITY_CHECKS = {
    Capability.MANAGE_MEMBERS: can_manage_members,
    Capability.DELETE_CHAT: can_delete_chat,
    Capability.INVITE_MEMBERS: can_invite_members,
    Capability.UPDATE_CHAT: can_update_chat,
}


def has_capability(role: MemberRole, capability: Capability) -> bool:
    return _CAPABILITY_CHECKS[capability](role)
