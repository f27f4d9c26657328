#!/usr/bin/env python3
"""Register the owner of a chat for testing and initial setup.

Usage:
    # Seed an owner by email (memory store creates the user if missing):
    python scripts/bootstrap_chat.py --chat-id general --owner-email owner@example.com

    # Against Postgres, with an existing directory user:
    DATABASE_URL=postgresql://... python scripts/bootstrap_chat.py --chat-id general --owner-id 42

Environment Variables:
    DATABASE_URL: PostgreSQL connection string (optional, uses memory store if not set)
    MEMORY_STORE_ROOT: Directory for the memory store snapshot
"""
from __future__ import annotations

import argparse
import asyncio
import os
import sys
from pathlib import Path
from typing import Optional

# Add project root to path for imports
ROOT = Path(__file__).resolve().parent.parent
sys.path.insert(0, str(ROOT))


async def bootstrap_chat(
    chat_id: str,
    owner_id: Optional[int] = None,
    owner_email: Optional[str] = None,
    dry_run: bool = False,
) -> dict:
    """Make the given user the owner of ``chat_id``.

    Returns:
        dict with chat_id, user_id, and status ('created', 'already_owner' or 'dry_run')
    """
    # Import here to avoid loading config before env vars are set
    from switchboard.service.runtime import get_runtime
    from switchboard.storage.memory import MemoryStore
    from switchboard.storage.models import MemberRole

    runtime = get_runtime()
    store = runtime.store

    user = store.get_user(owner_id) if owner_id is not None else store.get_user_by_email(owner_email)
    if user is None:
        if owner_email and isinstance(store, MemoryStore):
            if dry_run:
                print(f"[DRY RUN] Would create user {owner_email} and make them owner of {chat_id}")
                return {"chat_id": chat_id, "user_id": None, "status": "dry_run"}
            user = store.create_user(owner_email, email_verified=True)
            print(f"Created user {owner_email} (id: {user.id})")
        else:
            raise LookupError(f"user {owner_id or owner_email} not found in the directory")

    owner = runtime.registry.get(chat_id, user.id)
    if owner is not None and owner.role == MemberRole.OWNER:
        print(f"User {user.id} already owns chat {chat_id}")
        return {"chat_id": chat_id, "user_id": user.id, "status": "already_owner"}

    if dry_run:
        print(f"[DRY RUN] Would make user {user.id} owner of chat {chat_id}")
        return {"chat_id": chat_id, "user_id": user.id, "status": "dry_run"}

    await runtime.members.create_chat(chat_id, user.id)
    print(f"Registered user {user.id} as owner of chat {chat_id}")
    return {"chat_id": chat_id, "user_id": user.id, "status": "created"}


def main():
    parser = argparse.ArgumentParser(
        description="Register a chat owner for Switchboard",
        formatter_class=argparse.RawDescriptionHelpFormatter,
        epilog=__doc__,
    )
    parser.add_argument("--chat-id", required=True, help="Chat identifier")
    owner = parser.add_mutually_exclusive_group(required=True)
    owner.add_argument("--owner-id", type=int, help="Directory id of the owner")
    owner.add_argument("--owner-email", help="Owner email; seeded in memory mode if missing")
    parser.add_argument(
        "--dry-run",
        action="store_true",
        help="Show what would be done without making changes",
    )

    args = parser.parse_args()

    if not os.environ.get("DATABASE_URL"):
        os.environ["USE_MEMORY_STORE"] = "true"
        os.environ.setdefault("MEMORY_STORE_ROOT", "/tmp/switchboard-bootstrap")
        print("Note: Using in-memory store (set DATABASE_URL for persistence)")

    try:
        result = asyncio.run(
            bootstrap_chat(args.chat_id, args.owner_id, args.owner_email, args.dry_run)
        )
        if result["status"] == "created":
            print("\nChat owner registered successfully!")
            print(f"  Chat: {result['chat_id']}")
            print(f"  User ID: {result['user_id']}")
        elif result["status"] == "already_owner":
            print("\nNo changes needed - user already owns the chat.")
    except Exception as e:
        print(f"Error: {e}")
        sys.exit(1)


if __name__ == "__main__":
    main()
