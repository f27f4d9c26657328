from __future__ import annotations

import secrets
import string
import threading
import time
from typing import Callable, Dict, Optional, Tuple

from switchboard.config import DEFAULT_OAUTH_STATE_TTL_SECONDS
from switchboard.logging import get_logger
from switchboard.service.errors import ValidationError

logger = get_logger(__name__)

TOKEN_LENGTH = 32
_TOKEN_ALPHABET = string.ascii_letters + string.digits


def generate_token(length: int = TOKEN_LENGTH) -> str:
    """Random alphanumeric token; 32 characters carry ~190 bits of entropy."""
    return "".join(secrets.choice(_TOKEN_ALPHABET) for _ in range(length))


class EphemeralTokenStore:
    """Single-use anti-forgery tokens for the OAuth redirect cycle.

    Each token maps to the clock reading at which it was stored. ``consume``
    succeeds at most once per token and only within ``ttl_seconds`` of
    storage. Expired entries are pruned on every access, so the map never
    holds more than one TTL window of tokens and no background timer is
    needed.

    One lock covers the whole read-prune-write of every operation, which
    makes ``issue``, ``store`` and ``consume`` linearizable across threads
    and event-loop tasks alike. The store is process-local by design.
    """

    def __init__(
        self,
        ttl_seconds: float = DEFAULT_OAUTH_STATE_TTL_SECONDS,
        *,
        clock: Optional[Callable[[], float]] = None,
    ) -> None:
        if ttl_seconds <= 0:
            raise ValueError("ttl_seconds must be positive")
        self.ttl_seconds = float(ttl_seconds)
        self._clock = clock or time.monotonic
        # token -> (stored_at, bound_to)
        self._tokens: Dict[str, Tuple[float, Optional[str]]] = {}
        self._lock = threading.Lock()

    def __len__(self) -> int:
        with self._lock:
            self._prune(self._clock())
            return len(self._tokens)

    def issue(self, bound_to: Optional[str] = None) -> str:
        token = generate_token()
        self.store(token, bound_to)
        return token

    def store(self, token: str, bound_to: Optional[str] = None) -> None:
        if not token:
            raise ValidationError("login token must be a non-empty string", reason="invalid_token")
        with self._lock:
            now = self._clock()
            self._prune(now)
            self._tokens[token] = (now, bound_to)

    def consume(self, token: str, bound_to: Optional[str] = None) -> bool:
        """Remove ``token`` and report whether it was live.

        Unknown, already-consumed and expired tokens all yield ``False``, as
        does a token stored with a different ``bound_to`` value. A mismatched
        token is still removed, so it cannot be retried.
        """
        if not token:
            return False
        with self._lock:
            self._prune(self._clock())
            entry = self._tokens.pop(token, None)
        found = entry is not None and entry[1] == bound_to
        if not found:
            logger.warning("login_token_rejected")
        return found

    def _prune(self, now: float) -> int:
        # Caller holds self._lock
        expired = [
            token
            for token, (created, _) in self._tokens.items()
            if now - created > self.ttl_seconds
        ]
        for token in expired:
            del self._tokens[token]
        if expired:
            logger.debug("login_tokens_pruned", pruned=len(expired), live=len(self._tokens))
        return len(expired)
