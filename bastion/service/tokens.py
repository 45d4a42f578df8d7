from __future__ import annotations

import hmac
from datetime import timedelta
from enum import Enum
from typing import Dict, Optional

from bastion.config import Settings
from bastion.logging import get_logger
from bastion.service.errors import ExpiredError, InvalidCodeError, NotFoundError
from bastion.service.primitives import Clock, IdGenerator, SecretsIdGenerator, SystemClock
from bastion.storage.interfaces import TokenStore
from bastion.storage.locks import KeyedLocks
from bastion.storage.models import VerificationToken

logger = get_logger(__name__)


class TokenPurpose(str, Enum):
    PASSWORD_RESET = "password_reset"
    EMAIL_VERIFICATION = "email_verification"
    PHONE_VERIFICATION = "phone_verification"


class TokenVault:
    """Short-lived single-use tokens, one live record per identity and purpose.

    Password-reset tokens are opaque URL-safe strings looked up by value;
    email and phone codes are numeric and looked up by identity.
    """

    def __init__(
        self,
        store: TokenStore,
        *,
        ttl_minutes: Dict[TokenPurpose, int],
        code_digits: int = 6,
        clock: Optional[Clock] = None,
        id_generator: Optional[IdGenerator] = None,
    ) -> None:
        self.store = store
        self.ttl_minutes = dict(ttl_minutes)
        self.code_digits = code_digits
        self.clock = clock or SystemClock()
        self.ids = id_generator or SecretsIdGenerator()
        self._locks = KeyedLocks()

    @classmethod
    def from_settings(
        cls,
        store: TokenStore,
        settings: Settings,
        *,
        clock: Optional[Clock] = None,
        id_generator: Optional[IdGenerator] = None,
    ) -> "TokenVault":
        return cls(
            store,
            ttl_minutes={
                TokenPurpose.PASSWORD_RESET: settings.password_reset_ttl_minutes,
                TokenPurpose.EMAIL_VERIFICATION: settings.email_code_ttl_minutes,
                TokenPurpose.PHONE_VERIFICATION: settings.phone_code_ttl_minutes,
            },
            code_digits=settings.verification_code_digits,
            clock=clock,
            id_generator=id_generator,
        )

    @staticmethod
    def _lock_key(identity_id: str, purpose: TokenPurpose) -> str:
        return f"{purpose.value}:{identity_id}"

    def _new_value(self, purpose: TokenPurpose) -> str:
        if purpose is TokenPurpose.PASSWORD_RESET:
            return self.ids.token()
        return self.ids.numeric_code(self.code_digits)

    def issue(self, purpose: TokenPurpose, identity_id: str) -> VerificationToken:
        """Mint a token, replacing any live one for the same identity and purpose."""

        token = VerificationToken(
            identity_id=identity_id,
            purpose=purpose.value,
            value=self._new_value(purpose),
            expires_at=self.clock.now() + timedelta(minutes=self.ttl_minutes[purpose]),
        )
        with self._locks.hold(self._lock_key(identity_id, purpose)):
            self.store.put_token(token)
        logger.info("token_issued", purpose=purpose.value, identity_id=identity_id)
        return token

    def peek(self, purpose: TokenPurpose, identity_id: str) -> Optional[VerificationToken]:
        return self.store.get_token(identity_id, purpose.value)

    def consume(self, purpose: TokenPurpose, identity_id: str, value: str) -> VerificationToken:
        """Single-use check of a code issued to ``identity_id``.

        A wrong value leaves the record in place so the owner can retry until
        it expires; an expired record is pruned.
        """

        with self._locks.hold(self._lock_key(identity_id, purpose)):
            record = self.store.get_token(identity_id, purpose.value)
            if not record:
                raise NotFoundError(
                    "No verification code found. Please request a new one."
                )
            if self.clock.now() > record.expires_at:
                self.store.delete_token(identity_id, purpose.value)
                logger.info("token_expired", purpose=purpose.value, identity_id=identity_id)
                raise ExpiredError(
                    "Verification code has expired. Please request a new one."
                )
            if not hmac.compare_digest(record.value.encode(), (value or "").encode()):
                logger.warning(
                    "token_mismatch", purpose=purpose.value, identity_id=identity_id
                )
                raise InvalidCodeError()
            self.store.delete_token(identity_id, purpose.value)
        logger.info("token_consumed", purpose=purpose.value, identity_id=identity_id)
        return record

    def consume_value(self, purpose: TokenPurpose, value: str) -> VerificationToken:
        """Single-use check of a bearer token presented without an identity."""

        record = self.store.find_token(purpose.value, value or "")
        if not record:
            logger.warning(
                "token_not_found", purpose=purpose.value, token_prefix=(value or "")[:8]
            )
            raise NotFoundError("Invalid or expired token")
        return self.consume(purpose, record.identity_id, value)
