from __future__ import annotations

import contextlib
from datetime import datetime
from typing import Callable, ContextManager, Iterator, List, Optional, Protocol, Sequence, TypeVar, Union

from switchboard.logging import get_logger
from switchboard.service.errors import ConflictError, ForbiddenError, NotFoundError, ValidationError
from switchboard.service.permissions import (
    NOT_A_MEMBER,
    REASON_MESSAGES,
    AuthorizationGate,
    MemberAction,
)
from switchboard.service.roles import Capability, parse_role
from switchboard.storage.errors import ConstraintViolation
from switchboard.storage.models import (
    Invite,
    InviteStatus,
    Member,
    MemberRole,
    User,
    utcnow,
)

logger = get_logger(__name__)

T = TypeVar("T")


class MembershipTx(Protocol):
    """Queries available inside one storage transaction."""

    def lock_chat(self, chat_id: str) -> None: ...

    def get_user(self, user_id: int) -> Optional[User]: ...

    def get_user_by_email(self, email: str) -> Optional[User]: ...

    def get_member(self, chat_id: str, user_id: int) -> Optional[Member]: ...

    def get_owner(self, chat_id: str) -> Optional[Member]: ...

    def list_members(self, chat_id: str) -> List[Member]: ...

    def insert_member(self, member: Member) -> Member: ...

    def update_member_role(
        self, chat_id: str, user_id: int, role: MemberRole
    ) -> Optional[Member]: ...

    def delete_member(self, chat_id: str, user_id: int) -> bool: ...

    def insert_invite(self, invite: Invite) -> Invite: ...

    def get_invite(self, invite_id: str) -> Optional[Invite]: ...

    def update_invite_status(
        self,
        invite_id: str,
        status: InviteStatus,
        responded_at: Optional[datetime] = None,
    ) -> Optional[Invite]: ...

    def list_invites(
        self,
        *,
        chat_id: Optional[str] = None,
        invitee_user_id: Optional[int] = None,
        invitee_email: Optional[str] = None,
    ) -> List[Invite]: ...


class MembershipStore(Protocol):
    def transaction(self) -> ContextManager[MembershipTx]: ...


def paginate(items: Sequence[T], limit: Optional[int], offset: int) -> List[T]:
    if offset < 0:
        raise ValidationError("offset must be non-negative", reason="invalid_offset")
    if limit is not None and limit < 0:
        raise ValidationError("limit must be non-negative", reason="invalid_limit")
    end = None if limit is None else offset + limit
    return list(items[offset:end])


class MembershipRegistry:
    """Authoritative per-chat membership; the only writer of member rows.

    Every method takes an optional open transaction so a caller can bundle an
    authorization check and the mutation it guards. Without one, the method
    runs in its own transaction.
    """

    def __init__(
        self,
        store: MembershipStore,
        *,
        clock: Optional[Callable[[], datetime]] = None,
    ) -> None:
        self.store = store
        self._clock = clock or utcnow

    @contextlib.contextmanager
    def _scope(self, tx: Optional[MembershipTx]) -> Iterator[MembershipTx]:
        if tx is not None:
            yield tx
            return
        with self.store.transaction() as own:
            yield own

    def list(self, chat_id: str, *, tx: Optional[MembershipTx] = None) -> List[Member]:
        with self._scope(tx) as scope:
            return scope.list_members(chat_id)

    def get(
        self, chat_id: str, user_id: int, *, tx: Optional[MembershipTx] = None
    ) -> Optional[Member]:
        with self._scope(tx) as scope:
            return scope.get_member(chat_id, user_id)

    def add(
        self,
        chat_id: str,
        user_id: int,
        role: Union[str, MemberRole],
        *,
        tx: Optional[MembershipTx] = None,
    ) -> Member:
        role = parse_role(role)
        with self._scope(tx) as scope:
            if role == MemberRole.OWNER:
                scope.lock_chat(chat_id)
            if scope.get_member(chat_id, user_id) is not None:
                raise ConflictError(
                    "member already exists",
                    reason="member_exists",
                    detail={"chat_id": chat_id, "user_id": user_id},
                )
            if role == MemberRole.OWNER and scope.get_owner(chat_id) is not None:
                raise ConflictError("chat already has an owner", reason="owner_exists")
            member = Member(chat_id=chat_id, user_id=user_id, role=role, joined_at=self._clock())
            try:
                scope.insert_member(member)
            except ConstraintViolation as exc:
                # Lost a race with a concurrent insert of the same row
                raise ConflictError(
                    "member already exists", reason="member_exists", detail=exc.detail
                ) from exc
        logger.info("member_added", chat_id=chat_id, user_id=user_id, role=role.value)
        return member

    def update_role(
        self,
        chat_id: str,
        user_id: int,
        new_role: Union[str, MemberRole],
        *,
        tx: Optional[MembershipTx] = None,
    ) -> Member:
        new_role = parse_role(new_role)
        with self._scope(tx) as scope:
            if new_role == MemberRole.OWNER:
                scope.lock_chat(chat_id)
            current = scope.get_member(chat_id, user_id)
            if current is None:
                raise NotFoundError(
                    "member not found",
                    reason="member_not_found",
                    detail={"chat_id": chat_id, "user_id": user_id},
                )
            if current.role == new_role:
                return current
            # Ownership transfer is not supported: the single owner stays put
            if current.role == MemberRole.OWNER:
                raise ConflictError(
                    "a chat must keep its owner", reason="owner_required_for_chat"
                )
            if new_role == MemberRole.OWNER and scope.get_owner(chat_id) is not None:
                raise ConflictError("chat already has an owner", reason="owner_exists")
            updated = scope.update_member_role(chat_id, user_id, new_role)
            if updated is None:
                raise NotFoundError("member not found", reason="member_not_found")
        logger.info(
            "member_role_updated",
            chat_id=chat_id,
            user_id=user_id,
            old_role=current.role.value,
            new_role=new_role.value,
        )
        return updated

    def remove(self, chat_id: str, user_id: int, *, tx: Optional[MembershipTx] = None) -> None:
        with self._scope(tx) as scope:
            if not scope.delete_member(chat_id, user_id):
                raise NotFoundError(
                    "member not found",
                    reason="member_not_found",
                    detail={"chat_id": chat_id, "user_id": user_id},
                )
        logger.info("member_removed", chat_id=chat_id, user_id=user_id)


def require_member(tx: MembershipTx, chat_id: str, user_id: int) -> Member:
    member = tx.get_member(chat_id, user_id)
    if member is None:
        raise ForbiddenError(
            REASON_MESSAGES[NOT_A_MEMBER],
            reason=NOT_A_MEMBER,
            detail={"chat_id": chat_id},
        )
    return member


class MemberService:
    """Member-management operations exposed to the HTTP and WebSocket layers.

    Each operation loads the requester and target, asks the gate and writes
    within a single transaction, so concurrent updates to the same member
    are decided against the latest committed row. Nothing awaits while a
    transaction is open, so a cancelled request either committed fully or
    not at all.
    """

    def __init__(
        self,
        store: MembershipStore,
        registry: MembershipRegistry,
        gate: AuthorizationGate,
    ) -> None:
        self.store = store
        self.registry = registry
        self.gate = gate

    async def create_chat(self, chat_id: str, creator_id: int) -> Member:
        """Register ``creator_id`` as the owner of a new chat."""
        with self.store.transaction() as tx:
            tx.lock_chat(chat_id)
            if tx.list_members(chat_id):
                raise ConflictError(
                    "chat already has members", reason="chat_exists", detail={"chat_id": chat_id}
                )
            return self.registry.add(chat_id, creator_id, MemberRole.OWNER, tx=tx)

    async def list_members(
        self,
        chat_id: str,
        requester_id: int,
        *,
        role: Union[str, MemberRole, None] = None,
        limit: Optional[int] = None,
        offset: int = 0,
    ) -> List[Member]:
        """Members in join order, optionally narrowed to one role and paged."""
        wanted = parse_role(role) if role is not None else None
        with self.store.transaction() as tx:
            require_member(tx, chat_id, requester_id)
            members = self.registry.list(chat_id, tx=tx)
        if wanted is not None:
            members = [m for m in members if m.role == wanted]
        return paginate(members, limit, offset)

    async def leave_chat(self, chat_id: str, user_id: int) -> None:
        """Remove the caller's own membership; the owner cannot leave."""
        with self.store.transaction() as tx:
            member = require_member(tx, chat_id, user_id)
            if member.role == MemberRole.OWNER:
                logger.warning("member_leave_denied", chat_id=chat_id, user_id=user_id)
                raise ConflictError(
                    "the chat owner cannot leave the chat", reason="owner_required_for_chat"
                )
            self.registry.remove(chat_id, user_id, tx=tx)
        logger.info("member_left", chat_id=chat_id, user_id=user_id)

    async def update_member_role(
        self,
        chat_id: str,
        requester_id: int,
        target_user_id: int,
        new_role: Union[str, MemberRole],
    ) -> Member:
        role = parse_role(new_role)
        with self.store.transaction() as tx:
            requester = require_member(tx, chat_id, requester_id)
            target = tx.get_member(chat_id, target_user_id)
            if target is None:
                raise NotFoundError(
                    "member not found",
                    reason="member_not_found",
                    detail={"chat_id": chat_id, "user_id": target_user_id},
                )
            self.gate.authorize(requester, target, MemberAction.UPDATE_ROLE)
            return self.registry.update_role(chat_id, target_user_id, role, tx=tx)

    async def remove_member(
        self, chat_id: str, requester_id: int, target_user_id: int
    ) -> None:
        with self.store.transaction() as tx:
            requester = require_member(tx, chat_id, requester_id)
            target = tx.get_member(chat_id, target_user_id)
            if target is None:
                raise NotFoundError(
                    "member not found",
                    reason="member_not_found",
                    detail={"chat_id": chat_id, "user_id": target_user_id},
                )
            self.gate.authorize(requester, target, MemberAction.REMOVE)
            self.registry.remove(chat_id, target_user_id, tx=tx)

    async def authorize_chat_action(
        self, chat_id: str, user_id: int, capability: Capability
    ) -> Member:
        """Check a chat-level capability (update or delete the chat, invite, manage)."""
        with self.store.transaction() as tx:
            return self.gate.require_capability(tx.get_member(chat_id, user_id), capability)

    def authorize(
        self, requester: Member, target: Member, action: MemberAction
    ) -> tuple[bool, Optional[str]]:
        return self.gate.check(requester, target, action).as_tuple()
