import asyncio
import inspect
import os
import sys
import tempfile
from datetime import datetime, timedelta, timezone
from pathlib import Path

# Create temp directory for tests before any imports that might initialize runtime
_test_tmp_dir = tempfile.mkdtemp(prefix="arkeep_test_")
os.environ.setdefault("SHARED_FS_ROOT", _test_tmp_dir)
os.environ.setdefault("TEST_MODE", "true")
os.environ.setdefault("USE_MEMORY_STORE", "true")
os.environ.setdefault("ALLOW_REDIS_FALLBACK_DEV", "true")
os.environ.setdefault("JWT_SECRET", "test-secret-key-for-testing-only-do-not-use-in-production")
os.environ.setdefault("GOOGLE_CLIENT_IDS", "test-client-id")
# No Redis in unit tests; rate limits use the in-process bucket
os.environ["REDIS_URL"] = ""

import pytest  # noqa: E402

ROOT = Path(__file__).resolve().parent.parent
if str(ROOT) not in sys.path:
    sys.path.insert(0, str(ROOT))


from arkeep.service.errors import IdentityVerificationError  # noqa: E402
from arkeep.service.identity import IdentityClaim  # noqa: E402
from arkeep.service.runtime import get_runtime, reset_runtime_for_tests  # noqa: E402


class FakeClock:
    """Manually advanced UTC clock."""

    def __init__(self, start: datetime | None = None):
        self.now = start or datetime(2024, 1, 1, 12, 0, tzinfo=timezone.utc)

    def __call__(self) -> datetime:
        return self.now

    def advance(self, **kwargs) -> datetime:
        self.now = self.now + timedelta(**kwargs)
        return self.now


class FakeIdentityVerifier:
    """Maps assertion strings to claims; anything else is rejected."""

    provider = "google"

    def __init__(self):
        self.claims: dict[str, IdentityClaim] = {}
        self.calls: list[str] = []

    def add(self, assertion: str, claim: IdentityClaim) -> None:
        self.claims[assertion] = claim

    async def verify(self, assertion: str) -> IdentityClaim:
        self.calls.append(assertion)
        claim = self.claims.get(assertion)
        if claim is None:
            raise IdentityVerificationError(
                "identity verification failed", detail={"reason": "rejected_by_provider"}
            )
        return claim


@pytest.fixture(autouse=True)
def reset_runtime_state(tmp_path_factory, monkeypatch):
    monkeypatch.setenv("SHARED_FS_ROOT", str(tmp_path_factory.mktemp("runtime_fs")))
    reset_runtime_for_tests()
    yield
    reset_runtime_for_tests()


@pytest.fixture
def clock():
    return FakeClock()


@pytest.fixture
def fake_verifier():
    """Install a fake identity verifier on the live runtime."""
    verifier = FakeIdentityVerifier()
    verifier.add("assertion-u1", IdentityClaim(subject="u1", email="u1@example.com"))
    get_runtime().auth.verifier = verifier
    return verifier


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
