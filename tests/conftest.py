import asyncio
import inspect
import os
import sys
import tempfile
import threading
from datetime import datetime, timedelta, timezone
from pathlib import Path

# Create temp directory for tests before any imports that might initialize runtime
_test_tmp_dir = tempfile.mkdtemp(prefix="switchboard_test_")
os.environ.setdefault("MEMORY_STORE_ROOT", _test_tmp_dir)
os.environ.setdefault("TEST_MODE", "true")
os.environ.setdefault("USE_MEMORY_STORE", "true")
os.environ.setdefault("OAUTH_GITHUB_CLIENT_ID", "test-github-client")
os.environ.setdefault("OAUTH_REDIRECT_URI", "http://localhost:8000/auth/callback")

import pytest  # noqa: E402

ROOT = Path(__file__).resolve().parent.parent
if str(ROOT) not in sys.path:
    sys.path.insert(0, str(ROOT))


from switchboard.config import get_settings  # noqa: E402
from switchboard.service.invites import InviteLifecycle  # noqa: E402
from switchboard.service.members import MemberService, MembershipRegistry  # noqa: E402
from switchboard.service.permissions import AuthorizationGate  # noqa: E402
from switchboard.service.runtime import reset_runtime_for_tests  # noqa: E402
from switchboard.storage.memory import MemoryStore  # noqa: E402


class FakeClock:
    """Manually advanced UTC clock for expiry tests."""

    def __init__(self, start: datetime | None = None):
        self.now = start or datetime(2024, 1, 1, 12, 0, tzinfo=timezone.utc)

    def __call__(self) -> datetime:
        return self.now

    def advance(self, **kwargs) -> None:
        self.now = self.now + timedelta(**kwargs)


@pytest.fixture(autouse=True)
def reset_runtime_state():
    reset_runtime_for_tests()
    yield
    reset_runtime_for_tests()


@pytest.fixture
def clock():
    return FakeClock()


@pytest.fixture
def store():
    return MemoryStore()


@pytest.fixture
def gate():
    return AuthorizationGate()


@pytest.fixture
def registry(store, clock):
    return MembershipRegistry(store, clock=clock)


@pytest.fixture
def members(store, registry, gate):
    return MemberService(store, registry, gate)


@pytest.fixture
def invites(store, registry, gate, clock):
    return InviteLifecycle(store, registry, gate, get_settings(), clock=clock)


@pytest.fixture
def run_concurrently():
    """Run coroutine factories on separate threads released together.

    Returns each call's result, or the exception it raised.
    """

    def run(*calls):
        barrier = threading.Barrier(len(calls))
        results = [None] * len(calls)

        def worker(index, call):
            barrier.wait()
            try:
                results[index] = asyncio.run(call())
            except Exception as exc:
                results[index] = exc

        threads = [threading.Thread(target=worker, args=(i, c)) for i, c in enumerate(calls)]
        for thread in threads:
            thread.start()
        for thread in threads:
            thread.join()
        return results

    return run


def pytest_pyfunc_call(pyfuncitem):
    if inspect.iscoroutinefunction(pyfuncitem.obj):
        call_kwargs = {
            name: pyfuncitem.funcargs[name]
            for name in pyfuncitem._fixtureinfo.argnames
            if name in pyfuncitem.funcargs
        }
        asyncio.run(pyfuncitem.obj(**call_kwargs))
        return True
    return None


def pytest_configure(config):
    config.addinivalue_line("markers", "asyncio: mark test as async")
