import os
import sys
from datetime import datetime, timedelta, timezone
from pathlib import Path

os.environ.setdefault("TEST_MODE", "true")
# Cheap hashing keeps the suite fast; production defaults stay untouched
os.environ.setdefault("ARGON2_TIME_COST", "1")
os.environ.setdefault("ARGON2_MEMORY_COST", "8")
os.environ.setdefault("ARGON2_PARALLELISM", "1")

import pytest  # noqa: E402

ROOT = Path(__file__).resolve().parent.parent
if str(ROOT) not in sys.path:
    sys.path.insert(0, str(ROOT))


from bastion.config import Settings  # noqa: E402
from bastion.service.auth import AuthService  # noqa: E402
from bastion.service.runtime import reset_runtime_for_tests  # noqa: E402
from bastion.storage.memory import MemoryStore  # noqa: E402

ALICE_EMAIL = "alice@example.com"
ALICE_PASSWORD = "Password123!"


class FakeClock:
    """Deterministic clock; ``sleep`` advances time instead of blocking."""

    def __init__(self, start: datetime | None = None) -> None:
        self._now = start or datetime(2026, 1, 1, 12, 0, tzinfo=timezone.utc)
        self._monotonic = 1000.0
        self.sleeps: list[float] = []

    def now(self) -> datetime:
        return self._now

    def monotonic(self) -> float:
        return self._monotonic

    def sleep(self, seconds: float) -> None:
        self.sleeps.append(seconds)
        self.advance(seconds=seconds)

    def advance(self, **delta) -> None:
        step = timedelta(**delta)
        self._now += step
        self._monotonic += step.total_seconds()


@pytest.fixture(autouse=True)
def reset_runtime_state():
    reset_runtime_for_tests()
    yield
    reset_runtime_for_tests()


@pytest.fixture
def clock():
    return FakeClock()


@pytest.fixture
def settings():
    """Settings with cheap argon2 parameters."""
    return Settings(
        test_mode=True,
        argon2_time_cost=1,
        argon2_memory_cost=8,
        argon2_parallelism=1,
    )


@pytest.fixture
def store(clock):
    return MemoryStore(clock=clock)


@pytest.fixture
def auth(store, settings, clock):
    return AuthService(store, settings, clock=clock)


@pytest.fixture
def alice(auth):
    """A registered identity with a verified email."""
    identity, code = auth.register("Alice", "Doe", ALICE_EMAIL, ALICE_PASSWORD)
    return auth.verify_email(identity.id, code)
