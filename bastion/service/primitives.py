"""Pluggable collaborators injected into the authentication core.

The core never reads the wall clock, draws randomness or hashes a password
directly; it goes through these protocols so hosts can swap implementations
and tests can run against deterministic fakes.
"""

from __future__ import annotations

import base64
import os
import secrets
import time
import uuid
from datetime import datetime, timezone
from typing import Optional, Protocol

from argon2 import PasswordHasher, Type
from argon2.exceptions import InvalidHash, VerificationError, VerifyMismatchError

from bastion.logging import get_logger

logger = get_logger(__name__)


class Clock(Protocol):
    def now(self) -> datetime: ...

    def monotonic(self) -> float: ...

    def sleep(self, seconds: float) -> None: ...


class SystemClock:
    def now(self) -> datetime:
        """Timezone-aware UTC helper to avoid naive datetime usage."""

        return datetime.now(timezone.utc)

    def monotonic(self) -> float:
        return time.monotonic()

    def sleep(self, seconds: float) -> None:
        if seconds > 0:
            time.sleep(seconds)


class CredentialHasher(Protocol):
    def hash(self, plaintext: str) -> str: ...

    def verify(self, plaintext: str, digest: str) -> bool: ...


class Argon2CredentialHasher:
    """argon2id hashing with mismatches reported as ``False`` rather than raised."""

    def __init__(
        self,
        *,
        time_cost: int = 2,
        memory_cost: int = 19456,
        parallelism: int = 1,
    ) -> None:
        self._hasher = PasswordHasher(
            time_cost=time_cost,
            memory_cost=memory_cost,
            parallelism=parallelism,
            type=Type.ID,
        )

    def hash(self, plaintext: str) -> str:
        return self._hasher.hash(plaintext)

    def verify(self, plaintext: str, digest: str) -> bool:
        try:
            return self._hasher.verify(digest, plaintext)
        except VerifyMismatchError:
            return False
        except (InvalidHash, VerificationError):
            logger.warning("credential_hash_unusable")
            return False


class IdGenerator(Protocol):
    def identifier(self) -> str: ...

    def token(self, nbytes: int = 32) -> str: ...

    def numeric_code(self, digits: int = 6) -> str: ...

    def two_factor_secret(self) -> str: ...


class SecretsIdGenerator:
    """Identifiers and secrets drawn from the OS CSPRNG."""

    def identifier(self) -> str:
        return str(uuid.uuid4())

    def token(self, nbytes: int = 32) -> str:
        return secrets.token_urlsafe(nbytes)

    def numeric_code(self, digits: int = 6) -> str:
        # Leading digit is never zero so codes keep their length when parsed as ints
        low = 10 ** (digits - 1)
        return str(low + secrets.randbelow(9 * low))

    def two_factor_secret(self) -> str:
        return base64.b32encode(os.urandom(10)).decode("utf-8").rstrip("=")


class HumanVerifier(Protocol):
    def verify(self, token: Optional[str]) -> bool: ...


class TokenPresenceVerifier:
    """Accepts any non-empty challenge token.

    Stand-in until a host wires a real CAPTCHA provider.
    """

    def verify(self, token: Optional[str]) -> bool:
        return bool(token)
