"""Tests for the single-use OAuth state token store."""

import string
import threading

import pytest

from switchboard.service.errors import ValidationError
from switchboard.service.tokens import TOKEN_LENGTH, EphemeralTokenStore, generate_token


class ManualClock:
    def __init__(self, start: float = 1000.0):
        self.now = start

    def __call__(self) -> float:
        return self.now


class TestTokenGeneration:
    def test_generated_tokens_are_alphanumeric(self):
        token = generate_token()
        assert len(token) == TOKEN_LENGTH == 32
        assert set(token) <= set(string.ascii_letters + string.digits)

    def test_generated_tokens_do_not_repeat(self):
        assert len({generate_token() for _ in range(200)}) == 200


class TestConsume:
    def test_token_is_consumed_exactly_once(self):
        tokens = EphemeralTokenStore(ttl_seconds=600, clock=ManualClock())
        token = tokens.issue()

        assert tokens.consume(token) is True
        assert tokens.consume(token) is False

    def test_unknown_and_empty_tokens_are_rejected(self):
        tokens = EphemeralTokenStore(clock=ManualClock())
        assert tokens.consume("never-issued") is False
        assert tokens.consume("") is False

    def test_stored_token_can_be_consumed(self):
        tokens = EphemeralTokenStore(clock=ManualClock())
        tokens.store("caller-chosen-state")
        assert tokens.consume("caller-chosen-state") is True

    def test_storing_empty_token_is_rejected(self):
        tokens = EphemeralTokenStore(clock=ManualClock())
        with pytest.raises(ValidationError) as exc:
            tokens.store("")
        assert exc.value.reason == "invalid_token"


class TestBinding:
    def test_bound_token_requires_matching_binding(self):
        tokens = EphemeralTokenStore(clock=ManualClock())
        token = tokens.issue(bound_to="github")
        assert tokens.consume(token, bound_to="github") is True

    def test_mismatched_binding_rejects_and_spends_token(self):
        tokens = EphemeralTokenStore(clock=ManualClock())
        token = tokens.issue(bound_to="github")
        assert tokens.consume(token, bound_to="google") is False
        assert tokens.consume(token, bound_to="github") is False

    def test_bound_token_is_not_redeemable_unbound(self):
        tokens = EphemeralTokenStore(clock=ManualClock())
        tokens.store("state-1", bound_to="google")
        assert tokens.consume("state-1") is False

        unbound = tokens.issue()
        assert tokens.consume(unbound, bound_to="google") is False


class TestExpiry:
    def test_token_expires_after_ttl(self):
        """A token consumed 700s after issue with a 600s TTL is rejected."""
        clock = ManualClock()
        tokens = EphemeralTokenStore(ttl_seconds=600, clock=clock)
        token = tokens.issue()

        clock.now += 700
        assert tokens.consume(token) is False

    def test_token_at_exact_ttl_is_still_live(self):
        clock = ManualClock()
        tokens = EphemeralTokenStore(ttl_seconds=600, clock=clock)
        token = tokens.issue()

        clock.now += 600
        assert tokens.consume(token) is True

    def test_expired_entries_are_pruned_on_issue(self):
        clock = ManualClock()
        tokens = EphemeralTokenStore(ttl_seconds=10, clock=clock)
        for _ in range(5):
            tokens.issue()
        assert len(tokens) == 5

        clock.now += 11
        tokens.issue()
        assert len(tokens._tokens) == 1

    def test_non_positive_ttl_is_rejected(self):
        with pytest.raises(ValueError):
            EphemeralTokenStore(ttl_seconds=0)


class TestConcurrency:
    def test_concurrent_consumes_succeed_exactly_once(self):
        tokens = EphemeralTokenStore()
        token = tokens.issue()
        results = []
        results_lock = threading.Lock()
        barrier = threading.Barrier(16)

        def worker():
            barrier.wait()
            ok = tokens.consume(token)
            with results_lock:
                results.append(ok)

        threads = [threading.Thread(target=worker) for _ in range(16)]
        for t in threads:
            t.start()
        for t in threads:
            t.join()

        assert results.count(True) == 1
        assert results.count(False) == 15

    def test_concurrent_issue_keeps_every_token(self):
        tokens = EphemeralTokenStore()
        issued = []
        issued_lock = threading.Lock()

        def worker():
            for _ in range(50):
                token = tokens.issue()
                with issued_lock:
                    issued.append(token)

        threads = [threading.Thread(target=worker) for _ in range(8)]
        for t in threads:
            t.start()
        for t in threads:
            t.join()

        assert len(tokens) == 400
        assert all(tokens.consume(t) for t in issued)
        assert len(tokens) == 0
