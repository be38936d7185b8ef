import asyncio
import inspect
import os
import sys
from datetime import datetime, timedelta, timezone
from pathlib import Path

# Environment must be in place before anything imports the runtime
os.environ.setdefault("TEST_MODE", "true")
os.environ.setdefault("USE_MEMORY_STORE", "true")
os.environ.setdefault(
    "SERVICE_TOKEN_SECRET", "test-service-token-secret-do-not-use-in-production"
)
os.environ.setdefault(
    "SECRET_ENCRYPTION_KEY", "test-encryption-key-material-do-not-use-in-production"
)
# Cheap argon2 parameters; production defaults make the suite crawl.
os.environ.setdefault("ARGON2_TIME_COST", "1")
os.environ.setdefault("ARGON2_MEMORY_COST", "64")
os.environ.setdefault("ARGON2_PARALLELISM", "1")

import pytest  # noqa: E402

ROOT = Path(__file__).resolve().parent.parent
if str(ROOT) not in sys.path:
    sys.path.insert(0, str(ROOT))


from trustcore.service.passwords import PasswordHasher  # noqa: E402
from trustcore.service.runtime import reset_runtime_for_tests  # noqa: E402
from trustcore.storage.memory import MemoryStore  # noqa: E402
from trustcore.storage.models import Role  # noqa: E402

TEST_PASSWORD = "correct-horse-battery"


class FakeClock:
    """Manually advanced clock injected wherever components read the time."""

    def __init__(self, start: datetime | None = None) -> None:
        self.now = start or datetime(2025, 3, 1, 12, 0, 0, tzinfo=timezone.utc)

    def __call__(self) -> datetime:
        return self.now

    def advance(self, **kwargs) -> datetime:
        self.now = self.now + timedelta(**kwargs)
        return self.now

    def set(self, moment: datetime) -> None:
        self.now = moment


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
    return MemoryStore(encryption_key="unit-test-encryption-key-material-0123456789")


@pytest.fixture
def hasher():
    return PasswordHasher(time_cost=1, memory_cost=64, parallelism=1)


@pytest.fixture
def organization(store):
    return store.create_organization("Acme")


@pytest.fixture
def admin(store, hasher, organization):
    account = store.create_account(
        "admin@acme.test",
        organization_id=organization.id,
        role=Role.ADMIN,
        first_name="Ada",
        last_name="Admin",
    )
    store.save_password(account.id, *hasher.hash_with_algo(TEST_PASSWORD))
    return account


class RecordingEmail:
    """Stand-in for EmailService that records sends and can be told to fail."""

    def __init__(self, succeed: bool = True) -> None:
        self.succeed = succeed
        self.sent = []

    def send(self, template, recipient, data):
        self.sent.append((template, recipient, dict(data)))
        return self.succeed


@pytest.fixture
def email():
    return RecordingEmail()


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
