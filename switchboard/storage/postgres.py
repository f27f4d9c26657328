from __future__ import annotations

import contextlib
from datetime import datetime
from typing import Any, Iterator, List, Optional

from psycopg import errors
from psycopg.rows import dict_row
from psycopg_pool import ConnectionPool

from switchboard.logging import get_logger
from switchboard.storage.errors import INVITE_UNIQUE, MEMBER_UNIQUE, ConstraintViolation
from switchboard.storage.models import (
    Invite,
    InviteStatus,
    Member,
    MemberRole,
    User,
)

_MEMBER_COLUMNS = "chat_id, user_id, role, joined_at"
_INVITE_COLUMNS = (
    "id, chat_id, inviter_id, invitee_user_id, invitee_email, status, message, "
    "created_at, expires_at, responded_at"
)


def _member_from_row(row: dict) -> Member:
    return Member(
        chat_id=str(row["chat_id"]),
        user_id=int(row["user_id"]),
        role=MemberRole(row["role"]),
        joined_at=row["joined_at"],
    )


def _invite_from_row(row: dict) -> Invite:
    return Invite(
        id=str(row["id"]),
        chat_id=str(row["chat_id"]),
        inviter_id=int(row["inviter_id"]),
        invitee_user_id=row.get("invitee_user_id"),
        invitee_email=row.get("invitee_email"),
        status=InviteStatus(row["status"]),
        message=row.get("message"),
        created_at=row["created_at"],
        expires_at=row["expires_at"],
        responded_at=row.get("responded_at"),
    )


def _user_from_row(row: dict) -> User:
    return User(
        id=int(row["id"]),
        public_id=str(row["public_id"]),
        email=row["email"],
        email_verified=bool(row.get("email_verified", False)),
        created_at=row["created_at"],
    )


class PostgresTransaction:
    """Membership queries bound to one open connection and transaction.

    Single-row reads lock the row (``FOR UPDATE``) so the authorization
    decision and the write that follows it see the same state.
    """

    def __init__(self, conn: Any) -> None:
        self.conn = conn

    def lock_chat(self, chat_id: str) -> None:
        """Serialize writers of one chat until this transaction ends.

        Row locks cannot guard rows that do not exist yet (the first owner,
        a first pending invite), so those checks take an advisory lock.
        """
        self.conn.execute("SELECT pg_advisory_xact_lock(hashtext(%s))", (chat_id,))

    # user directory
    def get_user(self, user_id: int) -> Optional[User]:
        row = self.conn.execute(
            "SELECT id, public_id, email, email_verified, created_at FROM app_user WHERE id = %s",
            (user_id,),
        ).fetchone()
        return _user_from_row(row) if row else None

    def get_user_by_email(self, email: str) -> Optional[User]:
        row = self.conn.execute(
            "SELECT id, public_id, email, email_verified, created_at FROM app_user WHERE lower(email) = lower(%s)",
            (email.strip(),),
        ).fetchone()
        return _user_from_row(row) if row else None

    # members
    def get_member(self, chat_id: str, user_id: int) -> Optional[Member]:
        row = self.conn.execute(
            f"SELECT {_MEMBER_COLUMNS} FROM chat_member WHERE chat_id = %s AND user_id = %s FOR UPDATE",
            (chat_id, user_id),
        ).fetchone()
        return _member_from_row(row) if row else None

    def get_owner(self, chat_id: str) -> Optional[Member]:
        row = self.conn.execute(
            f"SELECT {_MEMBER_COLUMNS} FROM chat_member WHERE chat_id = %s AND role = 'owner' FOR UPDATE",
            (chat_id,),
        ).fetchone()
        return _member_from_row(row) if row else None

    def list_members(self, chat_id: str) -> List[Member]:
        rows = self.conn.execute(
            f"SELECT {_MEMBER_COLUMNS} FROM chat_member WHERE chat_id = %s ORDER BY joined_at ASC",
            (chat_id,),
        ).fetchall()
        return [_member_from_row(row) for row in rows]

    def insert_member(self, member: Member) -> Member:
        try:
            self.conn.execute(
                f"INSERT INTO chat_member ({_MEMBER_COLUMNS}) VALUES (%s, %s, %s, %s)",
                (member.chat_id, member.user_id, member.role.value, member.joined_at),
            )
        except errors.UniqueViolation:
            raise ConstraintViolation(
                "member already exists",
                {"chat_id": member.chat_id, "user_id": member.user_id},
                constraint=MEMBER_UNIQUE,
            )
        return member

    def update_member_role(
        self, chat_id: str, user_id: int, role: MemberRole
    ) -> Optional[Member]:
        row = self.conn.execute(
            f"UPDATE chat_member SET role = %s WHERE chat_id = %s AND user_id = %s RETURNING {_MEMBER_COLUMNS}",
            (role.value, chat_id, user_id),
        ).fetchone()
        return _member_from_row(row) if row else None

    def delete_member(self, chat_id: str, user_id: int) -> bool:
        cur = self.conn.execute(
            "DELETE FROM chat_member WHERE chat_id = %s AND user_id = %s",
            (chat_id, user_id),
        )
        return cur.rowcount > 0

    # invites
    def insert_invite(self, invite: Invite) -> Invite:
        try:
            self.conn.execute(
                f"INSERT INTO chat_invite ({_INVITE_COLUMNS}) VALUES (%s, %s, %s, %s, %s, %s, %s, %s, %s, %s)",
                (
                    invite.id,
                    invite.chat_id,
                    invite.inviter_id,
                    invite.invitee_user_id,
                    invite.invitee_email,
                    invite.status.value,
                    invite.message,
                    invite.created_at,
                    invite.expires_at,
                    invite.responded_at,
                ),
            )
        except errors.UniqueViolation:
            raise ConstraintViolation(
                "invite already exists", {"invite_id": invite.id}, constraint=INVITE_UNIQUE
            )
        return invite

    def get_invite(self, invite_id: str) -> Optional[Invite]:
        row = self.conn.execute(
            f"SELECT {_INVITE_COLUMNS} FROM chat_invite WHERE id = %s FOR UPDATE",
            (invite_id,),
        ).fetchone()
        return _invite_from_row(row) if row else None

    def update_invite_status(
        self,
        invite_id: str,
        status: InviteStatus,
        responded_at: Optional[datetime] = None,
    ) -> Optional[Invite]:
        row = self.conn.execute(
            f"UPDATE chat_invite SET status = %s, responded_at = %s WHERE id = %s RETURNING {_INVITE_COLUMNS}",
            (status.value, responded_at, invite_id),
        ).fetchone()
        return _invite_from_row(row) if row else None

    def list_invites(
        self,
        *,
        chat_id: Optional[str] = None,
        invitee_user_id: Optional[int] = None,
        invitee_email: Optional[str] = None,
    ) -> List[Invite]:
        clauses: list[str] = []
        params: list[Any] = []
        if chat_id is not None:
            clauses.append("chat_id = %s")
            params.append(chat_id)
        invitee_clauses: list[str] = []
        if invitee_user_id is not None:
            invitee_clauses.append("invitee_user_id = %s")
            params.append(invitee_user_id)
        if invitee_email:
            invitee_clauses.append("invitee_email = lower(%s)")
            params.append(invitee_email.strip())
        if invitee_clauses:
            clauses.append("(" + " OR ".join(invitee_clauses) + ")")
        where = f"WHERE {' AND '.join(clauses)}" if clauses else ""
        rows = self.conn.execute(
            f"SELECT {_INVITE_COLUMNS} FROM chat_invite {where} ORDER BY created_at DESC FOR UPDATE",
            tuple(params),
        ).fetchall()
        return [_invite_from_row(row) for row in rows]


class PostgresStore:
    """Postgres-backed membership store; schema and migrations are managed externally."""

    def __init__(self, dsn: str) -> None:
        self.dsn = dsn
        self.logger = get_logger(__name__)
        self.pool = ConnectionPool(
            self.dsn,
            min_size=2,
            max_size=10,
            kwargs={"row_factory": dict_row, "autocommit": False},
        )
        self._verify_required_schema()

    def _connect(self):
        return self.pool.connection()

    def _verify_required_schema(self) -> None:
        """Ensure membership tables exist before serving requests."""

        required_tables = ["app_user", "chat_member", "chat_invite"]
        with self._connect() as conn:
            missing_tables = []
            for table in required_tables:
                row = conn.execute(
                    "SELECT to_regclass(%s) AS oid", (f"public.{table}",)
                ).fetchone()
                if not row or not row.get("oid"):
                    missing_tables.append(table)
            if missing_tables:
                raise RuntimeError(
                    "Missing required Postgres tables: {}. Apply the membership migrations first.".format(
                        ", ".join(sorted(missing_tables))
                    )
                )

    @contextlib.contextmanager
    def transaction(self) -> Iterator[PostgresTransaction]:
        with self._connect() as conn, conn.transaction():
            yield PostgresTransaction(conn)

    def close(self) -> None:
        self.pool.close()

    # Single-statement helpers, each in its own transaction
    def get_user(self, user_id: int) -> Optional[User]:
        with self.transaction() as tx:
            return tx.get_user(user_id)

    def get_user_by_email(self, email: str) -> Optional[User]:
        with self.transaction() as tx:
            return tx.get_user_by_email(email)

    def get_member(self, chat_id: str, user_id: int) -> Optional[Member]:
        with self.transaction() as tx:
            return tx.get_member(chat_id, user_id)

    def list_members(self, chat_id: str) -> List[Member]:
        with self.transaction() as tx:
            return tx.list_members(chat_id)

    def get_invite(self, invite_id: str) -> Optional[Invite]:
        with self.transaction() as tx:
            return tx.get_invite(invite_id)
