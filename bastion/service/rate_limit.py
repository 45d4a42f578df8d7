from __future__ import annotations

from collections import deque
from dataclasses import dataclass
from datetime import datetime, timedelta
from typing import Deque, Dict, Optional

from bastion.config import Settings
from bastion.logging import get_logger
from bastion.service.errors import RateLimitedError
from bastion.service.primitives import Clock, SystemClock
from bastion.storage.locks import KeyedLocks

logger = get_logger(__name__)

GLOBAL_SCOPE = "global"
IP_SCOPE = "ip"
LOGIN_ROUTE = "login"
PASSWORD_RESET_ROUTE = "password_reset"


@dataclass(frozen=True)
class RateScope:
    limit: int
    window_seconds: int

    @property
    def window(self) -> timedelta:
        return timedelta(seconds=self.window_seconds)


def route_scope(route: str) -> str:
    return f"route:{route}"


class RateLimiter:
    """Sliding-window attempt counters for the global, per-IP and per-route scopes.

    Each (scope, key) pair keeps an ordered deque of attempt timestamps.
    Entries older than the scope's window are dropped whenever the window is
    read or written, so no background sweeper is needed.
    """

    def __init__(self, scopes: Dict[str, RateScope], *, clock: Optional[Clock] = None) -> None:
        self.clock = clock or SystemClock()
        self._scopes: Dict[str, RateScope] = {}
        for name, scope in scopes.items():
            self.configure(name, scope.limit, scope.window_seconds)
        self._windows: Dict[str, Deque[datetime]] = {}
        self._locks = KeyedLocks()

    @classmethod
    def from_settings(cls, settings: Settings, *, clock: Optional[Clock] = None) -> "RateLimiter":
        return cls(
            {
                GLOBAL_SCOPE: RateScope(
                    settings.global_rate_limit, settings.global_rate_window_seconds
                ),
                IP_SCOPE: RateScope(settings.ip_rate_limit, settings.ip_rate_window_seconds),
                route_scope(LOGIN_ROUTE): RateScope(
                    settings.login_rate_limit, settings.login_rate_window_seconds
                ),
                route_scope(PASSWORD_RESET_ROUTE): RateScope(
                    settings.password_reset_rate_limit,
                    settings.password_reset_rate_window_seconds,
                ),
            },
            clock=clock,
        )

    def configure(self, scope: str, limit: int, window_seconds: int) -> None:
        if window_seconds <= 0:
            logger.warning(
                "rate_limit_invalid_window",
                scope=scope,
                window_seconds=window_seconds,
                message="Invalid rate limit window_seconds; defaulting to 60 seconds",
            )
            window_seconds = 60
        self._scopes[scope] = RateScope(limit, window_seconds)

    def configure_route(self, route: str, limit: int, window_seconds: int) -> None:
        self.configure(route_scope(route), limit, window_seconds)

    def scope(self, scope: str) -> Optional[RateScope]:
        return self._scopes.get(scope)

    @staticmethod
    def _window_key(scope: str, key: str) -> str:
        return f"{scope}|{key}"

    def _prune(self, window: Deque[datetime], cutoff: datetime) -> None:
        while window and window[0] <= cutoff:
            window.popleft()

    def record(self, scope: str, key: str = "") -> None:
        """Append an attempt timestamp to the (scope, key) window."""

        config = self._scopes.get(scope)
        wkey = self._window_key(scope, key)
        now = self.clock.now()
        with self._locks.hold(wkey):
            window = self._windows.setdefault(wkey, deque())
            if config:
                self._prune(window, now - config.window)
            window.append(now)

    def count(self, scope: str, key: str = "") -> int:
        config = self._scopes.get(scope)
        if not config:
            return 0
        wkey = self._window_key(scope, key)
        with self._locks.hold(wkey):
            window = self._windows.get(wkey)
            if not window:
                return 0
            self._prune(window, self.clock.now() - config.window)
            if not window:
                self._windows.pop(wkey, None)
                return 0
            return len(window)

    def is_limited(self, scope: str, key: str = "") -> bool:
        """True once the live window already holds ``limit`` attempts.

        Unknown scopes and non-positive limits never limit.
        """

        config = self._scopes.get(scope)
        if not config or config.limit <= 0:
            return False
        return self.count(scope, key) >= config.limit

    def retry_after_seconds(self, scope: str, key: str = "") -> int:
        config = self._scopes.get(scope)
        if not config:
            return 0
        wkey = self._window_key(scope, key)
        with self._locks.hold(wkey):
            window = self._windows.get(wkey)
            if not window:
                return 0
            remaining = (window[0] + config.window) - self.clock.now()
            return max(0, int(remaining.total_seconds()) + 1)

    def hit(self, scope: str, key: str = "") -> None:
        """Check then record one attempt, raising ``RateLimitedError`` on breach.

        The rejected attempt is still recorded so sustained hammering keeps the
        window full.
        """

        with self._locks.hold(self._window_key(scope, key)):
            limited = self.is_limited(scope, key)
            self.record(scope, key)
            retry_after = self.retry_after_seconds(scope, key) if limited else 0
        if limited:
            logger.warning("rate_limited", scope=scope, retry_after_seconds=retry_after)
            raise RateLimitedError(
                _RATE_LIMIT_MESSAGES.get(scope.split(":", 1)[0], _DEFAULT_MESSAGE),
                detail={"scope": scope, "retry_after_seconds": retry_after},
            )

    def check_request(self, route: str, ip_addr: str) -> None:
        """Gate one request: global, then per-IP, then per-route."""

        self.hit(GLOBAL_SCOPE)
        self.hit(IP_SCOPE, ip_addr)
        self.hit(route_scope(route), ip_addr)


_DEFAULT_MESSAGE = "Too many attempts. Please try again later."
_RATE_LIMIT_MESSAGES = {
    GLOBAL_SCOPE: "Too many login attempts. Please try again later.",
    IP_SCOPE: "Too many attempts from your IP address. Please try again later.",
    "route": "Rate limit exceeded for this action. Please try again later.",
}
