from __future__ import annotations

import threading
from typing import Optional

from bastion.config import Settings, get_settings, reset_settings_cache
from bastion.logging import get_logger
from bastion.service.auth import AuthService
from bastion.service.primitives import (
    Argon2CredentialHasher,
    Clock,
    CredentialHasher,
    HumanVerifier,
    IdGenerator,
    SecretsIdGenerator,
    SystemClock,
    TokenPresenceVerifier,
)
from bastion.storage.memory import MemoryStore

logger = get_logger(__name__)


class Runtime:
    """Object graph of the authentication core, built from ``Settings``.

    Collaborators may be injected; anything left out gets its production
    default.
    """

    def __init__(
        self,
        settings: Optional[Settings] = None,
        *,
        clock: Optional[Clock] = None,
        hasher: Optional[CredentialHasher] = None,
        id_generator: Optional[IdGenerator] = None,
        human_verifier: Optional[HumanVerifier] = None,
    ) -> None:
        self.settings = settings or get_settings()
        logger.info("runtime_init_started", test_mode=self.settings.test_mode)

        self.clock = clock or SystemClock()
        self.ids = id_generator or SecretsIdGenerator()
        self.hasher = hasher or Argon2CredentialHasher(
            time_cost=self.settings.argon2_time_cost,
            memory_cost=self.settings.argon2_memory_cost,
            parallelism=self.settings.argon2_parallelism,
        )
        self.human_verifier = human_verifier or TokenPresenceVerifier()

        try:
            self.store = MemoryStore(
                clock=self.clock,
                id_factory=self.ids.identifier,
                encryption_key=self.settings.two_factor_encryption_key,
            )
        except RuntimeError as exc:
            logger.error(
                "runtime_store_init_failed", error_type=type(exc).__name__, error=str(exc)
            )
            raise

        self.auth = AuthService(
            self.store,
            self.settings,
            clock=self.clock,
            hasher=self.hasher,
            id_generator=self.ids,
            human_verifier=self.human_verifier,
        )
        self.rate_limiter = self.auth.rate_limiter
        self.lockout = self.auth.lockout
        self.sessions = self.auth.sessions
        self.tokens = self.auth.tokens
        self.two_factor = self.auth.two_factor
        self.api_keys = self.auth.api_keys
        logger.info("runtime_init_completed")


runtime: Runtime | None = None
_runtime_lock = threading.Lock()


def get_runtime() -> Runtime:
    """Get or create the Runtime singleton in a thread-safe manner.

    Uses double-checked locking: the unlocked read is the fast path once the
    runtime exists, the locked re-check prevents two threads building it.
    """
    global runtime
    if runtime is not None:
        return runtime
    with _runtime_lock:
        if runtime is None:
            runtime = Runtime()
        return runtime


def reset_runtime_for_tests() -> Runtime:
    """Rebuild the runtime singleton from freshly read settings."""
    global runtime

    with _runtime_lock:
        reset_settings_cache()
        settings = get_settings()
        if not settings.test_mode:
            raise RuntimeError("runtime reset is only allowed in TEST_MODE")
        runtime = Runtime(settings)
        return runtime
