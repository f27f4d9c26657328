from __future__ import annotations

import contextlib
import json
import threading
import uuid
from dataclasses import replace
from datetime import datetime
from pathlib import Path
from typing import Dict, Iterator, List, Optional, Tuple

from switchboard.logging import get_logger
from switchboard.storage.errors import INVITE_UNIQUE, MEMBER_UNIQUE, ConstraintViolation
from switchboard.storage.models import (
    Invite,
    InviteStatus,
    Member,
    MemberRole,
    User,
    utcnow,
)


class MemoryStore:
    """In-process membership store with the same transactional surface as Postgres.

    All data access happens under one re-entrant lock. ``transaction()`` holds
    that lock for the whole block, snapshots the tables on entry and restores
    them if the block raises, so a transaction is serializable and all-or-nothing.
    Rows are never mutated in place; updates swap in a new dataclass so a
    shallow snapshot is enough to roll back.
    """

    def __init__(self, fs_root: Optional[str] = None) -> None:
        self.logger = get_logger(__name__)
        self.users: Dict[int, User] = {}
        self.members: Dict[Tuple[str, int], Member] = {}
        self.invites: Dict[str, Invite] = {}
        self._user_id_seq: int = 1
        self._data_lock = threading.RLock()
        self._tx_depth = 0
        self.fs_root = Path(fs_root) if fs_root else None
        if self.fs_root is not None:
            self.fs_root.mkdir(parents=True, exist_ok=True)
            self._load_state()

    @contextlib.contextmanager
    def transaction(self) -> Iterator["MemoryStore"]:
        with self._data_lock:
            snapshot = (dict(self.users), dict(self.members), dict(self.invites), self._user_id_seq)
            self._tx_depth += 1
            try:
                yield self
            except BaseException:
                self.users, self.members, self.invites, self._user_id_seq = snapshot
                self.logger.debug("memory_transaction_rolled_back")
                raise
            finally:
                self._tx_depth -= 1
            if self._tx_depth == 0:
                self._persist_state()

    def lock_chat(self, chat_id: str) -> None:
        # Transactions already hold the store-wide lock
        return None

    def _changed(self) -> None:
        # Inside a transaction, persistence waits for the outermost commit
        if self._tx_depth == 0:
            self._persist_state()

    # user directory
    def create_user(
        self,
        email: str,
        *,
        email_verified: bool = False,
        public_id: Optional[str] = None,
    ) -> User:
        with self._data_lock:
            normalized = email.strip().lower()
            if any(existing.email.lower() == normalized for existing in self.users.values()):
                raise ConstraintViolation("email already exists", {"field": "email"})
            user = User(
                id=self._user_id_seq,
                public_id=public_id or str(uuid.uuid4()),
                email=email,
                email_verified=email_verified,
            )
            self._user_id_seq += 1
            self.users[user.id] = user
            self._changed()
            return user

    def mark_email_verified(self, user_id: int) -> Optional[User]:
        with self._data_lock:
            user = self.users.get(user_id)
            if not user:
                return None
            user = replace(user, email_verified=True)
            self.users[user_id] = user
            self._changed()
            return user

    def get_user(self, user_id: int) -> Optional[User]:
        with self._data_lock:
            return self.users.get(user_id)

    def get_user_by_email(self, email: str) -> Optional[User]:
        normalized = email.strip().lower()
        with self._data_lock:
            return next(
                (u for u in self.users.values() if u.email.lower() == normalized), None
            )

    # members
    def get_member(self, chat_id: str, user_id: int) -> Optional[Member]:
        with self._data_lock:
            return self.members.get((chat_id, user_id))

    def get_owner(self, chat_id: str) -> Optional[Member]:
        with self._data_lock:
            return next(
                (
                    m
                    for m in self.members.values()
                    if m.chat_id == chat_id and m.role == MemberRole.OWNER
                ),
                None,
            )

    def list_members(self, chat_id: str) -> List[Member]:
        with self._data_lock:
            results = [m for m in self.members.values() if m.chat_id == chat_id]
            return sorted(results, key=lambda m: m.joined_at)

    def insert_member(self, member: Member) -> Member:
        key = (member.chat_id, member.user_id)
        with self._data_lock:
            if key in self.members:
                raise ConstraintViolation(
                    "member already exists",
                    {"chat_id": member.chat_id, "user_id": member.user_id},
                    constraint=MEMBER_UNIQUE,
                )
            self.members[key] = member
            self._changed()
            return member

    def update_member_role(
        self, chat_id: str, user_id: int, role: MemberRole
    ) -> Optional[Member]:
        key = (chat_id, user_id)
        with self._data_lock:
            existing = self.members.get(key)
            if not existing:
                return None
            updated = replace(existing, role=role)
            self.members[key] = updated
            self._changed()
            return updated

    def delete_member(self, chat_id: str, user_id: int) -> bool:
        with self._data_lock:
            if self.members.pop((chat_id, user_id), None) is None:
                return False
            self._changed()
            return True

    # invites
    def insert_invite(self, invite: Invite) -> Invite:
        with self._data_lock:
            if invite.id in self.invites:
                raise ConstraintViolation(
                    "invite already exists", {"invite_id": invite.id}, constraint=INVITE_UNIQUE
                )
            self.invites[invite.id] = invite
            self._changed()
            return invite

    def get_invite(self, invite_id: str) -> Optional[Invite]:
        with self._data_lock:
            return self.invites.get(invite_id)

    def update_invite_status(
        self,
        invite_id: str,
        status: InviteStatus,
        responded_at: Optional[datetime] = None,
    ) -> Optional[Invite]:
        with self._data_lock:
            existing = self.invites.get(invite_id)
            if not existing:
                return None
            updated = replace(existing, status=status, responded_at=responded_at)
            self.invites[invite_id] = updated
            self._changed()
            return updated

    def list_invites(
        self,
        *,
        chat_id: Optional[str] = None,
        invitee_user_id: Optional[int] = None,
        invitee_email: Optional[str] = None,
    ) -> List[Invite]:
        """Invites matching ``chat_id`` and, if given, either invitee field."""
        email = invitee_email.strip().lower() if invitee_email else None
        with self._data_lock:
            results = []
            for invite in self.invites.values():
                if chat_id is not None and invite.chat_id != chat_id:
                    continue
                if invitee_user_id is not None or email is not None:
                    by_id = invitee_user_id is not None and invite.invitee_user_id == invitee_user_id
                    by_email = email is not None and invite.invitee_email == email
                    if not (by_id or by_email):
                        continue
                results.append(invite)
            return sorted(results, key=lambda i: i.created_at, reverse=True)

    # persistence
    def _state_path(self) -> Path:
        state_dir = self.fs_root / "state"
        state_dir.mkdir(parents=True, exist_ok=True)
        return state_dir / "membership_store.json"

    def _persist_state(self) -> None:
        if self.fs_root is None:
            return
        state = {
            "user_id_seq": self._user_id_seq,
            "users": [self._serialize_user(u) for u in self.users.values()],
            "members": [self._serialize_member(m) for m in self.members.values()],
            "invites": [self._serialize_invite(i) for i in self.invites.values()],
        }
        path = self._state_path()
        try:
            path.write_text(json.dumps(state, indent=2))
        except OSError as exc:
            raise RuntimeError(f"failed to persist in-memory state: {exc}") from exc

    def _load_state(self) -> bool:
        path = self._state_path()
        try:
            data = json.loads(path.read_text())
        except FileNotFoundError:
            return False
        self.users = {u["id"]: self._deserialize_user(u) for u in data.get("users", [])}
        self.members = {}
        for raw in data.get("members", []):
            member = self._deserialize_member(raw)
            self.members[(member.chat_id, member.user_id)] = member
        self.invites = {
            i["id"]: self._deserialize_invite(i) for i in data.get("invites", [])
        }
        self._user_id_seq = data.get(
            "user_id_seq", max(self.users.keys(), default=0) + 1
        )
        self.logger.info(
            "memory_store_loaded",
            users=len(self.users),
            members=len(self.members),
            invites=len(self.invites),
        )
        return True

    @staticmethod
    def _serialize_datetime(dt: Optional[datetime]) -> Optional[str]:
        return dt.isoformat() if dt else None

    @staticmethod
    def _deserialize_datetime(raw: Optional[str]) -> Optional[datetime]:
        return datetime.fromisoformat(raw) if raw else None

    def _serialize_user(self, user: User) -> dict:
        return {
            "id": user.id,
            "public_id": user.public_id,
            "email": user.email,
            "email_verified": user.email_verified,
            "created_at": self._serialize_datetime(user.created_at),
        }

    def _deserialize_user(self, data: dict) -> User:
        return User(
            id=int(data["id"]),
            public_id=data["public_id"],
            email=data["email"],
            email_verified=bool(data.get("email_verified", False)),
            created_at=self._deserialize_datetime(data.get("created_at")) or utcnow(),
        )

    def _serialize_member(self, member: Member) -> dict:
        return {
            "chat_id": member.chat_id,
            "user_id": member.user_id,
            "role": member.role.value,
            "joined_at": self._serialize_datetime(member.joined_at),
        }

    def _deserialize_member(self, data: dict) -> Member:
        return Member(
            chat_id=data["chat_id"],
            user_id=int(data["user_id"]),
            # Unknown roles in a snapshot are corrupt data, not a default
            role=MemberRole(data["role"]),
            joined_at=self._deserialize_datetime(data["joined_at"]),
        )

    def _serialize_invite(self, invite: Invite) -> dict:
        return {
            "id": invite.id,
            "chat_id": invite.chat_id,
            "inviter_id": invite.inviter_id,
            "invitee_user_id": invite.invitee_user_id,
            "invitee_email": invite.invitee_email,
            "status": invite.status.value,
            "message": invite.message,
            "created_at": self._serialize_datetime(invite.created_at),
            "expires_at": self._serialize_datetime(invite.expires_at),
            "responded_at": self._serialize_datetime(invite.responded_at),
        }

    def _deserialize_invite(self, data: dict) -> Invite:
        return Invite(
            id=data["id"],
            chat_id=data["chat_id"],
            inviter_id=int(data["inviter_id"]),
            invitee_user_id=data.get("invitee_user_id"),
            invitee_email=data.get("invitee_email"),
            status=InviteStatus(data["status"]),
            message=data.get("message"),
            created_at=self._deserialize_datetime(data["created_at"]),
            expires_at=self._deserialize_datetime(data["expires_at"]),
            responded_at=self._deserialize_datetime(data.get("responded_at")),
        )
