from __future__ import annotations

import base64
import binascii
import hashlib
import hmac
from datetime import timedelta
from typing import Optional
from urllib.parse import quote

from bastion.config import Settings
from bastion.logging import get_logger
from bastion.service.errors import (
    ExpiredError,
    InactiveError,
    InvalidCodeError,
    NotFoundError,
    ValidationError,
)
from bastion.service.primitives import Clock, IdGenerator, SecretsIdGenerator, SystemClock
from bastion.service.sessions import SessionManager
from bastion.storage.interfaces import AuthStore
from bastion.storage.locks import KeyedLocks
from bastion.storage.models import LoginResult, PendingTwoFactorChallenge

logger = get_logger(__name__)


class TwoFactorEngine:
    """Per-identity second factor: unset, pending verification, enabled.

    A code is accepted when it equals the shared secret itself or, with
    ``accept_totp``, when it is the RFC 6238 code derived from that secret for
    the current 30 second step (one adjacent step of skew allowed).
    """

    def __init__(
        self,
        store: AuthStore,
        sessions: SessionManager,
        *,
        clock: Optional[Clock] = None,
        id_generator: Optional[IdGenerator] = None,
        issuer: str = "Bastion",
        challenge_ttl_minutes: int = 5,
        accept_totp: bool = True,
    ) -> None:
        self.store = store
        self.sessions = sessions
        self.clock = clock or SystemClock()
        self.ids = id_generator or SecretsIdGenerator()
        self.issuer = issuer
        self.challenge_ttl = timedelta(minutes=challenge_ttl_minutes)
        self.accept_totp = accept_totp
        self._locks = KeyedLocks()

    @classmethod
    def from_settings(
        cls,
        store: AuthStore,
        sessions: SessionManager,
        settings: Settings,
        *,
        clock: Optional[Clock] = None,
        id_generator: Optional[IdGenerator] = None,
    ) -> "TwoFactorEngine":
        return cls(
            store,
            sessions,
            clock=clock,
            id_generator=id_generator,
            issuer=settings.two_factor_issuer,
            challenge_ttl_minutes=settings.two_factor_challenge_ttl_minutes,
            accept_totp=settings.two_factor_accept_totp,
        )

    def is_enabled(self, identity_id: str) -> bool:
        record = self.store.get_two_factor_secret(identity_id)
        return bool(record and record.enabled)

    def provisioning_uri(self, email: str, secret: str) -> str:
        label = quote(f"{self.issuer}:{email}")
        return f"otpauth://totp/{label}?secret={secret}&issuer={quote(self.issuer)}"

    def begin_setup(self, identity_id: str) -> dict:
        identity = self.store.get_identity(identity_id)
        if not identity:
            raise NotFoundError("User not found")
        with self._locks.hold(identity_id):
            if self.is_enabled(identity_id):
                raise ValidationError("Two-factor authentication is already enabled")
            secret = self.ids.two_factor_secret()
            self.store.set_two_factor_secret(identity_id, secret, enabled=False)
        logger.info("two_factor_setup_started", identity_id=identity_id)
        return {
            "secret": secret,
            "otpauth_uri": self.provisioning_uri(identity.email, secret),
        }

    def confirm_setup(self, identity_id: str, code: str) -> None:
        with self._locks.hold(identity_id):
            record = self.store.get_two_factor_secret(identity_id)
            if not record:
                raise ValidationError("Two-factor authentication setup not initiated")
            if record.enabled:
                raise ValidationError("Two-factor authentication is already enabled")
            if not self.code_matches(record.secret, code):
                logger.warning("two_factor_setup_code_invalid", identity_id=identity_id)
                raise InvalidCodeError()
            self.store.set_two_factor_secret(identity_id, record.secret, enabled=True)
        logger.info("two_factor_enabled", identity_id=identity_id)

    def disable(self, identity_id: str, code: str) -> None:
        with self._locks.hold(identity_id):
            record = self.store.get_two_factor_secret(identity_id)
            if not record or not record.enabled:
                raise ValidationError("Two-factor authentication is not enabled")
            if not self.code_matches(record.secret, code):
                logger.warning("two_factor_disable_code_invalid", identity_id=identity_id)
                raise InvalidCodeError()
            self.store.delete_two_factor_secret(identity_id)
        logger.info("two_factor_disabled", identity_id=identity_id)

    def start_challenge(self, identity_id: str) -> PendingTwoFactorChallenge:
        now = self.clock.now()
        challenge = PendingTwoFactorChallenge(
            token=self.ids.token(),
            identity_id=identity_id,
            expires_at=now + self.challenge_ttl,
        )
        with self._locks.hold(identity_id):
            swept = self.store.delete_identity_challenges(identity_id, expired_before=now)
            self.store.put_challenge(challenge)
        logger.info("two_factor_challenge_issued", identity_id=identity_id, swept=swept)
        return challenge

    def cancel_challenges(self, identity_id: str) -> int:
        with self._locks.hold(identity_id):
            removed = self.store.delete_identity_challenges(identity_id)
        if removed:
            logger.info("two_factor_challenges_cancelled", identity_id=identity_id, count=removed)
        return removed

    def challenge(
        self,
        temp_token: str,
        code: str,
        *,
        ip_addr: Optional[str] = None,
        user_agent: Optional[str] = None,
    ) -> LoginResult:
        """Complete a pending login; the temp token is spent only on success."""

        pending = self.store.get_challenge(temp_token or "")
        if not pending:
            raise NotFoundError("Invalid or expired two-factor token")
        with self._locks.hold(pending.identity_id):
            # A concurrent attempt may have spent the token while we waited
            if self.store.get_challenge(temp_token) is None:
                raise NotFoundError("Invalid or expired two-factor token")
            if self.clock.now() > pending.expires_at:
                self.store.delete_challenge(temp_token)
                raise ExpiredError("Two-factor token has expired. Please log in again.")
            record = self.store.get_two_factor_secret(pending.identity_id)
            if not record or not record.enabled:
                raise InvalidCodeError("Invalid two-factor code")
            if not self.code_matches(record.secret, code):
                logger.warning(
                    "two_factor_challenge_failed", identity_id=pending.identity_id
                )
                raise InvalidCodeError("Invalid two-factor code")
            identity = self.store.get_identity(pending.identity_id)
            if not identity:
                raise NotFoundError("User not found")
            if not identity.is_active:
                self.store.delete_challenge(temp_token)
                raise InactiveError("Account is inactive")
            self.store.delete_challenge(temp_token)
        session = self.sessions.create(identity, ip_addr=ip_addr, user_agent=user_agent)
        logger.info("two_factor_challenge_passed", identity_id=identity.id)
        return LoginResult(identity=identity, session_id=session.id, token=session.token)

    def code_matches(self, secret: str, code: Optional[str]) -> bool:
        if not code:
            return False
        if hmac.compare_digest(secret.encode(), code.encode()):
            return True
        return self.accept_totp and self.verify_totp(secret, code)

    def verify_totp(self, secret: str, code: str, *, interval: int = 30) -> bool:
        now = self.clock.now().timestamp()
        for offset in (-1, 0, 1):
            generated = self.generate_totp(secret, now + offset * interval, interval=interval)
            if generated and hmac.compare_digest(generated.encode(), code.encode()):
                return True
        return False

    def generate_totp(
        self, secret: str, timestamp: float, *, interval: int = 30, digits: int = 6
    ) -> str:
        padded = secret + "=" * ((8 - len(secret) % 8) % 8)
        try:
            key = base64.b32decode(padded, True)
        except (binascii.Error, ValueError):
            logger.warning("totp_secret_invalid")
            return ""
        counter = int(timestamp // interval).to_bytes(8, "big")
        digest = hmac.new(key, counter, hashlib.sha1).digest()
        offset = digest[-1] & 0x0F
        code_int = (int.from_bytes(digest[offset : offset + 4], "big") & 0x7FFFFFFF) % (
            10**digits
        )
        return str(code_int).zfill(digits)
