import asyncio
import inspect
import os
import random
import sys
from datetime import datetime, timedelta, timezone
from pathlib import Path

# Environment must be in place before any fruitables import reads settings
os.environ.setdefault("TEST_MODE", "true")
os.environ.setdefault("USE_MEMORY_STORE", "true")
os.environ.setdefault("JWT_SECRET", "test-secret-key-for-testing-only-do-not-use-in-production")
os.environ.setdefault("PASSWORD_RESET_URL", "http://shop.test/reset-password")
os.environ.setdefault("SWEEPER_ENABLED", "false")

import pytest  # noqa: E402
from argon2 import PasswordHasher, Type  # noqa: E402

ROOT = Path(__file__).resolve().parent.parent
if str(ROOT) not in sys.path:
    sys.path.insert(0, str(ROOT))

from fruitables.config import Settings  # noqa: E402
from fruitables.service.auth import TokenLifecycleManager  # noqa: E402
from fruitables.service.email import EmailService  # noqa: E402
from fruitables.service.errors import EmailDeliveryError  # noqa: E402
from fruitables.service.runtime import reset_runtime_for_tests  # noqa: E402
from fruitables.service.tokens import TokenIssuer  # noqa: E402
from fruitables.storage.memory import MemoryStore  # noqa: E402


@pytest.fixture(autouse=True)
def reset_runtime_state():
    reset_runtime_for_tests()
    yield
    reset_runtime_for_tests()


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


class FakeClock:
    """Settable clock returning timezone-aware datetimes."""

    def __init__(self, now: datetime):
        self.now = now

    def __call__(self) -> datetime:
        return self.now

    def advance(self, **delta) -> datetime:
        self.now = self.now + timedelta(**delta)
        return self.now


class RecordingMailer(EmailService):
    """Email collaborator that records messages instead of sending them."""

    def __init__(self):
        super().__init__()
        self.reset_emails: list[tuple[str, str, str]] = []
        self.otp_emails: list[tuple[str, str, int]] = []
        self.fail = False

    async def send_password_reset_email(self, to_email, name, callback_url):
        if self.fail:
            raise EmailDeliveryError("smtp transport failed")
        self.reset_emails.append((to_email, name, callback_url))

    async def send_otp_email(self, to_email, name, otp):
        if self.fail:
            raise EmailDeliveryError("smtp transport failed")
        self.otp_emails.append((to_email, name, otp))


@pytest.fixture
def settings():
    return Settings(
        jwt_secret="unit-test-secret",
        use_memory_store=True,
        test_mode=True,
        password_reset_url="http://shop.test/reset-password",
    )


@pytest.fixture
def clock():
    return FakeClock(datetime(2024, 3, 1, 12, 0, tzinfo=timezone.utc))


@pytest.fixture
def memory_store():
    return MemoryStore()


@pytest.fixture
def mailer():
    return RecordingMailer()


@pytest.fixture
def issuer(settings, clock):
    return TokenIssuer(settings, clock=clock)


@pytest.fixture
def fast_hasher():
    return PasswordHasher(time_cost=1, memory_cost=1024, parallelism=1, type=Type.ID)


@pytest.fixture
def manager(memory_store, issuer, mailer, settings, clock, fast_hasher):
    return TokenLifecycleManager(
        memory_store,
        issuer,
        mailer,
        settings,
        clock=clock,
        rng=random.Random(1234),
        hasher=fast_hasher,
    )
