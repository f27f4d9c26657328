from __future__ import annotations

import threading
from typing import Optional, Union
from urllib.parse import urlparse, urlunparse

from switchboard.config import get_settings, reset_settings_cache
from switchboard.logging import get_logger
from switchboard.service.auth import LoginService
from switchboard.service.invites import InviteLifecycle
from switchboard.service.members import MemberService, MembershipRegistry
from switchboard.service.permissions import AuthorizationGate
from switchboard.service.tokens import EphemeralTokenStore
from switchboard.storage.memory import MemoryStore
from switchboard.storage.postgres import PostgresStore

logger = get_logger(__name__)


def _mask_dsn_password(dsn: Optional[str]) -> Optional[str]:
    """Hide the password component of a connection URL before logging it.

    ``postgresql://app:secret@db:5432/chat`` -> ``postgresql://app:***@db:5432/chat``
    """
    if not dsn:
        return dsn
    parsed = urlparse(dsn)
    if not parsed.password:
        return dsn
    netloc = parsed.hostname or ""
    if parsed.port:
        netloc = f"{netloc}:{parsed.port}"
    netloc = f"{parsed.username or ''}:***@{netloc}"
    return urlunparse(parsed._replace(netloc=netloc))


class Runtime:
    """Holds the singleton store and service instances for the process."""

    def __init__(self):
        self.settings = get_settings()
        logger.info(
            "runtime_init_started",
            use_memory_store=self.settings.use_memory_store,
            test_mode=self.settings.test_mode,
        )

        store_type = "memory" if self.settings.use_memory_store else "postgres"
        try:
            self.store: Union[MemoryStore, PostgresStore] = (
                MemoryStore(fs_root=self.settings.memory_store_root)
                if self.settings.use_memory_store
                else PostgresStore(self.settings.database_url)
            )
        except Exception as exc:
            logger.error(
                "runtime_store_init_failed",
                store_type=store_type,
                database_url=None
                if self.settings.use_memory_store
                else _mask_dsn_password(self.settings.database_url),
                error_type=type(exc).__name__,
                error=str(exc),
            )
            raise
        logger.info("runtime_store_initialized", store_type=store_type)

        # Tokens are process-local; a restart simply invalidates in-flight logins
        self.tokens = EphemeralTokenStore(ttl_seconds=self.settings.oauth_state_ttl_seconds)
        self.login = LoginService(self.tokens, self.settings)
        self.gate = AuthorizationGate()
        self.registry = MembershipRegistry(self.store)
        self.members = MemberService(self.store, self.registry, self.gate)
        self.invites = InviteLifecycle(self.store, self.registry, self.gate, self.settings)

        logger.info(
            "runtime_initialized",
            store_type=store_type,
            oauth_state_ttl_seconds=self.settings.oauth_state_ttl_seconds,
            invite_default_ttl_hours=self.settings.invite_default_ttl_hours,
        )

    def close(self) -> None:
        if isinstance(self.store, PostgresStore):
            self.store.close()


runtime: Runtime | None = None
_runtime_lock = threading.Lock()


def get_runtime() -> Runtime:
    """Get or create the Runtime singleton in a thread-safe manner.

    Double-checked locking: the unlocked read is the fast path once the
    runtime exists; the locked re-check prevents two threads building it.
    """
    global runtime
    if runtime is not None:
        return runtime
    with _runtime_lock:
        if runtime is None:
            runtime = Runtime()
        return runtime


def reset_runtime_for_tests() -> Runtime:
    """Reinitialize the runtime singleton for isolated test runs."""
    global runtime

    with _runtime_lock:
        reset_settings_cache()
        settings = get_settings()
        if not settings.test_mode:
            raise RuntimeError("runtime reset is only allowed in TEST_MODE")
        if runtime is not None:
            runtime.close()
        runtime = Runtime()
        return runtime
