from __future__ import annotations

from datetime import datetime
from enum import Enum
from typing import Callable, List, Optional, Union

from switchboard.config import Settings
from switchboard.logging import get_logger
from switchboard.service.errors import (
    ConflictError,
    ExpiredError,
    ForbiddenError,
    InvalidStateError,
    NotFoundError,
    ValidationError,
)
from switchboard.service.members import (
    MembershipRegistry,
    MembershipStore,
    MembershipTx,
    paginate,
    require_member,
)
from switchboard.service.permissions import AuthorizationGate
from switchboard.service.roles import Capability
from switchboard.storage.models import Invite, InviteStatus, MemberRole, utcnow

logger = get_logger(__name__)

MAX_INVITE_MESSAGE_LENGTH = 1000


class InviteDecision(str, Enum):
    ACCEPT = "accept"
    DECLINE = "decline"


def _parse_decision(value: Union[str, InviteDecision]) -> InviteDecision:
    if isinstance(value, InviteDecision):
        return value
    try:
        return InviteDecision(str(value).strip().lower())
    except ValueError as exc:
        raise ValidationError(
            f"unknown invite decision: {value!r}",
            reason="invalid_decision",
            detail={"allowed": [d.value for d in InviteDecision]},
        ) from exc


def _parse_status(value: Union[str, InviteStatus, None]) -> Optional[InviteStatus]:
    if value is None or isinstance(value, InviteStatus):
        return value
    try:
        return InviteStatus(str(value).strip().lower())
    except ValueError as exc:
        raise ValidationError(
            f"unknown invite status: {value!r}",
            reason="invalid_status",
            detail={"allowed": [s.value for s in InviteStatus]},
        ) from exc


class InviteLifecycle:
    """Invitation state machine for chats.

    An invite starts ``pending`` and moves exactly once to ``accepted``,
    ``declined``, ``cancelled`` or ``expired``. Expiry is lazy: any read that
    observes a pending invite past ``expires_at`` records it as ``expired``
    before acting, and that write is committed even when the caller is then
    rejected. Accepting an invite and adding the membership row happen in
    one transaction.
    """

    def __init__(
        self,
        store: MembershipStore,
        registry: MembershipRegistry,
        gate: AuthorizationGate,
        settings: Settings,
        *,
        clock: Optional[Callable[[], datetime]] = None,
    ) -> None:
        self.store = store
        self.registry = registry
        self.gate = gate
        self.settings = settings
        self._clock = clock or utcnow

    def _expire_if_due(self, tx: MembershipTx, invite: Invite, now: datetime) -> Invite:
        if invite.status != InviteStatus.PENDING or not invite.is_past_expiry(now):
            return invite
        updated = tx.update_invite_status(invite.id, InviteStatus.EXPIRED, now)
        logger.info("invite_expired", invite_id=invite.id, chat_id=invite.chat_id)
        return updated or invite

    def _resolve_ttl(self, ttl_hours: Optional[int]) -> int:
        if ttl_hours is None:
            return self.settings.invite_default_ttl_hours
        max_ttl = self.settings.invite_max_ttl_hours
        if isinstance(ttl_hours, bool) or not isinstance(ttl_hours, int) or not 1 <= ttl_hours <= max_ttl:
            raise ValidationError(
                f"ttl_hours must be between 1 and {max_ttl}",
                reason="invalid_ttl",
                detail={"ttl_hours": ttl_hours, "max_ttl_hours": max_ttl},
            )
        return ttl_hours

    async def create(
        self,
        chat_id: str,
        inviter_id: int,
        *,
        invitee_user_id: Optional[int] = None,
        invitee_email: Optional[str] = None,
        ttl_hours: Optional[int] = None,
        message: Optional[str] = None,
    ) -> Invite:
        if invitee_email is not None:
            invitee_email = invitee_email.strip().lower()
            if "@" not in invitee_email:
                raise ValidationError("invalid invitee email", reason="invalid_email")
        if (invitee_user_id is None) == (invitee_email is None):
            raise ValidationError(
                "exactly one of invitee_user_id or invitee_email is required",
                reason="invalid_invitee",
            )
        if message is not None and len(message) > MAX_INVITE_MESSAGE_LENGTH:
            raise ValidationError(
                f"invite message exceeds {MAX_INVITE_MESSAGE_LENGTH} characters",
                reason="message_too_long",
                detail={"max_length": MAX_INVITE_MESSAGE_LENGTH},
            )
        ttl = self._resolve_ttl(ttl_hours)
        now = self._clock()

        with self.store.transaction() as tx:
            tx.lock_chat(chat_id)
            inviter = require_member(tx, chat_id, inviter_id)
            self.gate.require_capability(inviter, Capability.INVITE_MEMBERS)

            if invitee_user_id is not None:
                invitee = tx.get_user(invitee_user_id)
                if invitee is None:
                    raise NotFoundError(
                        "invitee not found",
                        reason="user_not_found",
                        detail={"user_id": invitee_user_id},
                    )
            else:
                invitee = tx.get_user_by_email(invitee_email)
            if invitee is not None and tx.get_member(chat_id, invitee.id) is not None:
                raise ConflictError(
                    "invitee is already a member",
                    reason="already_member",
                    detail={"chat_id": chat_id, "user_id": invitee.id},
                )

            # A known account may hold invites under either its id or its email
            existing = tx.list_invites(
                chat_id=chat_id,
                invitee_user_id=invitee.id if invitee is not None else invitee_user_id,
                invitee_email=invitee.email if invitee is not None else invitee_email,
            )
            for prior in existing:
                prior = self._expire_if_due(tx, prior, now)
                if prior.status == InviteStatus.PENDING:
                    raise ConflictError(
                        "a pending invite already exists for this invitee",
                        reason="invite_pending",
                        detail={"invite_id": prior.id},
                    )

            invite = Invite.new(
                chat_id,
                inviter_id,
                ttl_hours=ttl,
                now=now,
                invitee_user_id=invitee_user_id,
                invitee_email=invitee_email,
                message=message,
            )
            tx.insert_invite(invite)
        logger.info(
            "invite_created",
            invite_id=invite.id,
            chat_id=chat_id,
            inviter_id=inviter_id,
            invitee_user_id=invitee_user_id,
            ttl_hours=ttl,
        )
        return invite

    async def respond(
        self,
        invite_id: str,
        responder_id: int,
        decision: Union[str, InviteDecision],
    ) -> Invite:
        decision = _parse_decision(decision)
        now = self._clock()
        expired: Optional[Invite] = None

        with self.store.transaction() as tx:
            invite = tx.get_invite(invite_id)
            if invite is None:
                raise NotFoundError(
                    "invite not found", reason="invite_not_found", detail={"invite_id": invite_id}
                )
            if invite.status == InviteStatus.EXPIRED:
                raise ExpiredError("invite has expired", reason="invite_expired")
            if invite.status.is_terminal:
                raise ConflictError(
                    "invite already responded",
                    reason="invite_already_responded",
                    detail={"status": invite.status.value},
                )
            if invite.is_past_expiry(now):
                # Leave the block normally so the expiry is committed
                expired = self._expire_if_due(tx, invite, now)
            else:
                responder = tx.get_user(responder_id)
                if responder is None:
                    raise NotFoundError(
                        "responder not found",
                        reason="user_not_found",
                        detail={"user_id": responder_id},
                    )
                if not invite.is_addressed_to(responder):
                    if (
                        invite.invitee_email is not None
                        and responder.email.lower() == invite.invitee_email
                    ):
                        raise InvalidStateError(
                            "email must be verified to respond to this invite",
                            reason="email_not_verified",
                        )
                    logger.warning(
                        "invite_response_denied",
                        invite_id=invite.id,
                        responder_id=responder_id,
                    )
                    raise ForbiddenError(
                        "invite is not addressed to this user", reason="invite_not_for_user"
                    )

                if decision == InviteDecision.ACCEPT:
                    updated = tx.update_invite_status(invite.id, InviteStatus.ACCEPTED, now)
                    self.registry.add(invite.chat_id, responder.id, MemberRole.MEMBER, tx=tx)
                else:
                    updated = tx.update_invite_status(invite.id, InviteStatus.DECLINED, now)

        if expired is not None:
            raise ExpiredError(
                "invite has expired",
                reason="invite_expired",
                detail={"expires_at": expired.expires_at.isoformat()},
            )
        logger.info(
            "invite_responded",
            invite_id=invite_id,
            chat_id=updated.chat_id,
            responder_id=responder_id,
            status=updated.status.value,
        )
        return updated

    async def cancel(self, invite_id: str, requester_id: int) -> Invite:
        now = self._clock()
        with self.store.transaction() as tx:
            invite = tx.get_invite(invite_id)
            if invite is None:
                raise NotFoundError(
                    "invite not found", reason="invite_not_found", detail={"invite_id": invite_id}
                )
            invite = self._expire_if_due(tx, invite, now)
            if invite.status != InviteStatus.PENDING:
                rejected = invite
            else:
                rejected = None
                if invite.inviter_id != requester_id:
                    requester = require_member(tx, invite.chat_id, requester_id)
                    self.gate.require_capability(requester, Capability.INVITE_MEMBERS)
                cancelled = tx.update_invite_status(invite.id, InviteStatus.CANCELLED, now)
        if rejected is not None:
            raise ConflictError(
                "only pending invites can be cancelled",
                reason="invite_not_pending",
                detail={"status": rejected.status.value},
            )
        logger.info(
            "invite_cancelled",
            invite_id=invite_id,
            chat_id=cancelled.chat_id,
            requester_id=requester_id,
        )
        return cancelled

    async def get(self, invite_id: str) -> Invite:
        with self.store.transaction() as tx:
            invite = tx.get_invite(invite_id)
            if invite is None:
                raise NotFoundError(
                    "invite not found", reason="invite_not_found", detail={"invite_id": invite_id}
                )
            return self._expire_if_due(tx, invite, self._clock())

    async def list_for_chat(
        self,
        chat_id: str,
        requester_id: int,
        *,
        status: Union[str, InviteStatus, None] = None,
        limit: Optional[int] = None,
        offset: int = 0,
    ) -> List[Invite]:
        wanted = _parse_status(status)
        now = self._clock()
        with self.store.transaction() as tx:
            require_member(tx, chat_id, requester_id)
            invites = [self._expire_if_due(tx, i, now) for i in tx.list_invites(chat_id=chat_id)]
        if wanted is not None:
            invites = [i for i in invites if i.status == wanted]
        return paginate(invites, limit, offset)

    async def list_for_user(
        self,
        user_id: int,
        *,
        status: Union[str, InviteStatus, None] = None,
        limit: Optional[int] = None,
        offset: int = 0,
    ) -> List[Invite]:
        """Invites addressed to ``user_id`` directly or to their verified email."""
        wanted = _parse_status(status)
        now = self._clock()
        with self.store.transaction() as tx:
            user = tx.get_user(user_id)
            if user is None:
                raise NotFoundError(
                    "user not found", reason="user_not_found", detail={"user_id": user_id}
                )
            found = tx.list_invites(
                invitee_user_id=user.id,
                invitee_email=user.email if user.email_verified else None,
            )
            invites = [self._expire_if_due(tx, i, now) for i in found]
        if wanted is not None:
            invites = [i for i in invites if i.status == wanted]
        return paginate(invites, limit, offset)
