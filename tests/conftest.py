import asyncio
import inspect
import os
import sys
import tempfile
from datetime import datetime, timedelta, timezone
from pathlib import Path

# Set test environment before any imports that read settings
_test_tmp_dir = tempfile.mkdtemp(prefix="tessera_test_")
os.environ.setdefault("TESSERA_STATE_DIR", _test_tmp_dir)
os.environ.setdefault("TEST_MODE", "true")
os.environ.setdefault("JWT_SECRET", "test-access-secret-for-testing-only-do-not-use")
os.environ.setdefault("JWT_REFRESH_SECRET", "test-refresh-secret-for-testing-only-do-not-use")
os.environ.pop("REDIS_URL", None)

import pytest  # noqa: E402
from argon2 import PasswordHasher, Type  # noqa: E402

ROOT = Path(__file__).resolve().parent.parent
if str(ROOT) not in sys.path:
    sys.path.insert(0, str(ROOT))

from tessera.config import Settings  # noqa: E402
from tessera.service.auth import AuthService  # noqa: E402
from tessera.service.credentials import PasswordService  # noqa: E402
from tessera.service.runtime import reset_runtime_for_tests  # noqa: E402
from tessera.storage.memory import MemoryStore  # noqa: E402
from tessera.storage.models import ClientInfo, Role  # noqa: E402


class FakeClock:
    """Manually advanced UTC clock."""

    def __init__(self, start: datetime | None = None):
        self.now = start or datetime(2024, 1, 15, 9, 0, 0, tzinfo=timezone.utc)

    def __call__(self) -> datetime:
        return self.now

    def advance(self, **kwargs) -> datetime:
        self.now = self.now + timedelta(**kwargs)
        return self.now


class RecordingNotifier:
    """Captures sent codes instead of delivering them."""

    def __init__(self, result: bool = True):
        self.result = result
        self.sent: list[tuple[str, str]] = []
        self.resets: list[tuple[str, str]] = []

    async def send_code(self, email: str, code: str) -> bool:
        self.sent.append((email, code))
        return self.result

    async def send_password_reset(self, email: str, token: str) -> bool:
        self.resets.append((email, token))
        return self.result

    def last_code(self, email: str | None = None) -> str:
        for recipient, code in reversed(self.sent):
            if email is None or recipient == email:
                return code
        raise AssertionError("no code was sent")

    def last_reset_token(self, email: str | None = None) -> str:
        for recipient, token in reversed(self.resets):
            if email is None or recipient == email:
                return token
        raise AssertionError("no reset link was sent")


@pytest.fixture(autouse=True)
def reset_runtime_state():
    reset_runtime_for_tests()
    yield
    reset_runtime_for_tests()


@pytest.fixture
def settings():
    """Create test settings."""
    return Settings(
        test_mode=True,
        access_token_secret="Access-Secret-Key_for-Automation-Only-123456789!",
        refresh_token_secret="Refresh-Secret-Key_for-Automation-Only-987654321!",
    )


@pytest.fixture
def clock():
    return FakeClock()


@pytest.fixture
def notifier():
    return RecordingNotifier()


@pytest.fixture
def memory_store():
    return MemoryStore(mfa_encryption_key="test-mfa-key-material")


@pytest.fixture
def passwords():
    """Cheap argon2 parameters keep the suite fast."""
    return PasswordService(
        PasswordHasher(time_cost=1, memory_cost=8, parallelism=1, type=Type.ID)
    )


@pytest.fixture
def auth_service(memory_store, settings, notifier, passwords, clock):
    return AuthService(
        memory_store, settings, notifier=notifier, passwords=passwords, clock=clock
    )


@pytest.fixture
def client():
    return ClientInfo(ip_address="203.0.113.7", user_agent="pytest")


@pytest.fixture
def test_user(memory_store, passwords):
    """A StandardUser without MFA whose password is Passw0rd!."""
    return memory_store.create_user(
        "alice@example.com", passwords.hash("Passw0rd!"), role=Role.STANDARD_USER
    )


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
