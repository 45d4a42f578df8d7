from __future__ import annotations

import math
from datetime import timedelta
from typing import Dict, Optional

from bastion.config import Settings
from bastion.logging import get_logger, hash_email
from bastion.service.primitives import Clock, SystemClock
from bastion.storage.locks import KeyedLocks
from bastion.storage.models import LockoutState

logger = get_logger(__name__)


class LockoutTracker:
    """Per-email failed-attempt counter with progressive delay and hard lockout.

    Failures 2..(max-1) set an advisory delay of ``base * 2^(attempts-2)``
    seconds; reaching ``max_failed_attempts`` sets a hard lockout. Neither
    needs an unlock call: an elapsed ``locked_until`` simply reads as unlocked.
    """

    def __init__(
        self,
        *,
        max_failed_attempts: int = 5,
        lockout_minutes: int = 30,
        soft_delay_base_seconds: int = 1,
        clock: Optional[Clock] = None,
    ) -> None:
        self.max_failed_attempts = max_failed_attempts
        self.lockout = timedelta(minutes=lockout_minutes)
        self.soft_delay_base_seconds = soft_delay_base_seconds
        self.clock = clock or SystemClock()
        self._states: Dict[str, LockoutState] = {}
        self._locks = KeyedLocks()

    @classmethod
    def from_settings(cls, settings: Settings, *, clock: Optional[Clock] = None) -> "LockoutTracker":
        return cls(
            max_failed_attempts=settings.max_failed_attempts,
            lockout_minutes=settings.lockout_minutes,
            soft_delay_base_seconds=settings.soft_delay_base_seconds,
            clock=clock,
        )

    def state(self, email: str) -> LockoutState:
        with self._locks.hold(email):
            current = self._states.get(email)
            if not current:
                return LockoutState(email=email)
            return LockoutState(
                email=email,
                failed_attempts=current.failed_attempts,
                locked_until=current.locked_until,
            )

    def failed_attempts(self, email: str) -> int:
        return self.state(email).failed_attempts

    def record_failure(self, email: str) -> LockoutState:
        with self._locks.hold(email):
            current = self._states.setdefault(email, LockoutState(email=email))
            current.failed_attempts += 1
            attempts = current.failed_attempts
            now = self.clock.now()
            if attempts >= self.max_failed_attempts:
                current.locked_until = now + self.lockout
                logger.warning(
                    "lockout_triggered",
                    email_hash=hash_email(email),
                    attempts=attempts,
                    locked_until=current.locked_until.isoformat(),
                )
            elif attempts > 1:
                delay = self.soft_delay_base_seconds * 2 ** (attempts - 2)
                current.locked_until = now + timedelta(seconds=delay)
                logger.info(
                    "soft_delay_set",
                    email_hash=hash_email(email),
                    attempts=attempts,
                    delay_seconds=delay,
                )
            return LockoutState(
                email=email, failed_attempts=attempts, locked_until=current.locked_until
            )

    def record_success(self, email: str) -> int:
        """Clear the counter and any delay; returns the count that was cleared."""

        with self._locks.hold(email):
            previous = self._states.pop(email, None)
        return previous.failed_attempts if previous else 0

    def is_locked(self, email: str) -> bool:
        locked_until = self.state(email).locked_until
        return locked_until is not None and locked_until > self.clock.now()

    def is_hard_locked(self, email: str) -> bool:
        current = self.state(email)
        return current.failed_attempts >= self.max_failed_attempts and self.is_locked(email)

    def remaining_minutes(self, email: str) -> int:
        locked_until = self.state(email).locked_until
        if not locked_until:
            return 0
        remaining = (locked_until - self.clock.now()).total_seconds()
        if remaining <= 0:
            return 0
        return math.ceil(remaining / 60)
