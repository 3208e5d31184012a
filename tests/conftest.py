import asyncio
import inspect
import os
import sys
import tempfile
from pathlib import Path
from unittest.mock import AsyncMock

# Create temp directory for tests before any imports that might initialize runtime
_test_tmp_dir = tempfile.mkdtemp(prefix="authgate_test_")
os.environ.setdefault("SHARED_FS_ROOT", _test_tmp_dir)
os.environ.setdefault("APP_ENV", "test")
os.environ.setdefault("TEST_MODE", "true")
os.environ.setdefault("ALLOW_REDIS_FALLBACK_DEV", "true")
# No Redis in tests; the runtime falls back to the in-memory store
os.environ.setdefault("REDIS_URL", "")
os.environ.setdefault("AUTH_ACCESS_SECRET", "test-access-secret-for-automation-only-0123456789")
os.environ.setdefault("AUTH_REFRESH_SECRET", "test-refresh-secret-for-automation-only-0123456789")
os.environ.setdefault("SET_PWD_JWT_SECRET", "test-ticket-secret-for-automation-only-0123456789")
os.environ.setdefault("FRONTEND_URL", "http://localhost:3000")
os.environ.setdefault("LOG_LEVEL", "WARNING")

import pytest  # noqa: E402

ROOT = Path(__file__).resolve().parent.parent
if str(ROOT) not in sys.path:
    sys.path.insert(0, str(ROOT))


from authgate.config import Settings  # noqa: E402
from authgate.service.otp import OtpChannel, OtpService  # noqa: E402
from authgate.service.password import PasswordService  # noqa: E402
from authgate.service.rate_limit import (  # noqa: E402
    FixedWindowRateLimiter,
    OtpRateLimiter,
    RefreshRateLimiter,
)
from authgate.service.refresh import RefreshService  # noqa: E402
from authgate.service.runtime import reset_runtime_for_tests, set_runtime  # noqa: E402
from authgate.service.sessions import SessionRegistry  # noqa: E402
from authgate.service.tokens import TokenCodec  # noqa: E402
from authgate.storage.memory import MemoryKeyValueStore, MemoryStore  # noqa: E402

ALLOWED_ORIGIN = "http://localhost:3000"


class FakeClock:
    """Controllable wall clock shared by the store and the services."""

    def __init__(self, start: float = 1_700_000_000.0) -> None:
        self.now = start

    def __call__(self) -> float:
        return self.now

    def advance(self, seconds: float) -> None:
        self.now += seconds


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


def _build_settings(tmp_path, **overrides) -> Settings:
    values = dict(
        app_env="test",
        test_mode=True,
        redis_url="",
        shared_fs_root=str(tmp_path),
        access_secret="unit-access-secret-0123456789-0123456789",
        refresh_secret="unit-refresh-secret-0123456789-0123456789",
        ticket_secret="unit-ticket-secret-0123456789-0123456789",
        frontend_url=ALLOWED_ORIGIN,
    )
    values.update(overrides)
    return Settings(**values)


@pytest.fixture
def clock():
    return FakeClock()


@pytest.fixture
def settings(tmp_path):
    """Create test settings."""
    return _build_settings(tmp_path)


@pytest.fixture
def make_settings(tmp_path):
    """Build Settings with overrides, e.g. ``make_settings(otp_max_attempts=2)``."""

    def _make(**overrides) -> Settings:
        return _build_settings(tmp_path, **overrides)

    return _make


@pytest.fixture
def kv(clock):
    return MemoryKeyValueStore(clock=clock)


@pytest.fixture
def user_store(tmp_path):
    return MemoryStore(fs_root=str(tmp_path / "users"))


@pytest.fixture
def codec(settings, kv, clock):
    return TokenCodec(settings, kv, clock=clock)


@pytest.fixture
def limiter(kv):
    return FixedWindowRateLimiter(kv)


@pytest.fixture
def otp_limiter(limiter, settings):
    return OtpRateLimiter(limiter, settings)


@pytest.fixture
def refresh_limiter(limiter, settings):
    return RefreshRateLimiter(limiter, settings)


@pytest.fixture
def sessions(settings, kv, clock):
    return SessionRegistry(settings, kv, clock=clock)


@pytest.fixture
def senders():
    """Mock delivery for both channels; the code is the second call argument."""
    return {OtpChannel.SMS: AsyncMock(), OtpChannel.EMAIL: AsyncMock()}


@pytest.fixture
def otp_service(settings, kv, otp_limiter, codec, senders, clock):
    return OtpService(settings, kv, otp_limiter, codec, senders, clock=clock)


@pytest.fixture
def refresh_service(settings, kv, codec, sessions, user_store):
    return RefreshService(settings, kv, codec, sessions, user_store)


@pytest.fixture
def password_service(settings, user_store, otp_service, refresh_service):
    return PasswordService(settings, user_store, otp_service, refresh_service)


@pytest.fixture
def sent_code():
    """Return the code passed to a sender's most recent ``send_otp`` call."""

    def _last(sender: AsyncMock) -> str:
        return sender.send_otp.call_args.args[1]

    return _last


@pytest.fixture
def runtime(tmp_path, clock):
    """Fresh runtime on the in-memory store with mocked OTP delivery."""
    settings = _build_settings(tmp_path)
    rt = reset_runtime_for_tests(
        settings=settings,
        kv=MemoryKeyValueStore(clock=clock),
        users=MemoryStore(fs_root=str(tmp_path / "users")),
        clock=clock,
    )
    rt.otp.senders = {OtpChannel.SMS: AsyncMock(), OtpChannel.EMAIL: AsyncMock()}
    yield rt
    set_runtime(None)


@pytest.fixture
def client(runtime):
    from fastapi.testclient import TestClient

    from authgate.app import app

    return TestClient(app)
