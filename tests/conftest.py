import asyncio
import inspect
import os
import tempfile
from datetime import datetime, timedelta, timezone

# Environment must be in place before any keyward import builds Settings.
_test_tmp_dir = tempfile.mkdtemp(prefix="keyward_test_")
os.environ.setdefault("SHARED_FS_ROOT", _test_tmp_dir)
os.environ.setdefault("TEST_MODE", "true")
os.environ.setdefault("USE_MEMORY_STORE", "true")
os.environ.setdefault("ALLOW_REDIS_FALLBACK_DEV", "true")
os.environ.setdefault("SECRET_ENCRYPTION_KEY", "test-secret-key-for-testing-only-do-not-use-in-production")
os.environ.setdefault("MAINTENANCE_INTERVAL_SECONDS", "0")
os.environ.setdefault("ARGON2_TIME_COST", "1")
os.environ.setdefault("ARGON2_MEMORY_COST", "8")
os.environ.setdefault("ARGON2_PARALLELISM", "1")
os.environ.pop("REDIS_URL", None)
os.environ.pop("SMTP_HOST", None)

import pytest  # noqa: E402

from keyward.config import Settings  # noqa: E402
from keyward.service.crypto import FernetSecretCipher  # noqa: E402
from keyward.service.hashing import Argon2SecretHasher  # noqa: E402
from keyward.service.runtime import reset_runtime_for_tests  # noqa: E402
from keyward.storage.memory import MemoryStore  # noqa: E402


class FakeClock:
    """Mutable clock handed to services as ``now_fn``."""

    def __init__(self, start: datetime | None = None):
        self.now = start or datetime(2024, 1, 1, 12, 0, 0, tzinfo=timezone.utc)

    def __call__(self) -> datetime:
        return self.now

    def advance(self, **kwargs) -> datetime:
        self.now = self.now + timedelta(**kwargs)
        return self.now


class RecordingNotifier:
    def __init__(self):
        self.resets: list[tuple[str, str]] = []
        self.verifications: list[tuple[str, str]] = []
        self.changed: list[tuple[str, bool]] = []

    def send_password_reset(self, to_email: str, token: str) -> bool:
        self.resets.append((to_email, token))
        return True

    def send_email_verification(self, to_email: str, token: str) -> bool:
        self.verifications.append((to_email, token))
        return True

    def send_password_changed(self, to_email: str, *, sessions_revoked: bool = False) -> bool:
        self.changed.append((to_email, sessions_revoked))
        return True


@pytest.fixture(autouse=True)
def reset_runtime_state(tmp_path, monkeypatch):
    # A fresh state directory per test keeps the file-backed store isolated.
    monkeypatch.setenv("SHARED_FS_ROOT", str(tmp_path / "shared"))
    reset_runtime_for_tests()
    yield
    reset_runtime_for_tests()


@pytest.fixture
def settings() -> Settings:
    return Settings(
        test_mode=True,
        use_memory_store=True,
        secret_encryption_key="unit-test-key",
        argon2_time_cost=1,
        argon2_memory_cost=8,
        argon2_parallelism=1,
    )


@pytest.fixture
def store() -> MemoryStore:
    return MemoryStore()


@pytest.fixture
def clock() -> FakeClock:
    return FakeClock()


@pytest.fixture
def cipher() -> FernetSecretCipher:
    return FernetSecretCipher("unit-test-key")


@pytest.fixture
def hasher() -> Argon2SecretHasher:
    return Argon2SecretHasher(time_cost=1, memory_cost=8, parallelism=1)


@pytest.fixture
def notifier() -> RecordingNotifier:
    return RecordingNotifier()


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
