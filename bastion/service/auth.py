from __future__ import annotations

import re
from typing import Dict, Iterable, List, Mapping, Optional, Tuple

from bastion.config import Settings
from bastion.logging import get_logger, hash_email
from bastion.service.api_keys import ApiKeyAuthority
from bastion.service.errors import (
    ConflictError,
    InactiveError,
    InvalidCredentialsError,
    LockedError,
    NotFoundError,
    NotVerifiedError,
    ServiceError,
    ValidationError,
)
from bastion.service.lockout import LockoutTracker
from bastion.service.passwords import enforce_password_policy
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
from bastion.service.rate_limit import LOGIN_ROUTE, PASSWORD_RESET_ROUTE, RateLimiter
from bastion.service.sessions import SessionManager
from bastion.service.tokens import TokenPurpose, TokenVault
from bastion.service.two_factor import TwoFactorEngine
from bastion.storage.errors import ConstraintViolation
from bastion.storage.interfaces import AuthStore
from bastion.storage.models import (
    Identity,
    LoginHistoryEntry,
    LoginResult,
    SecurityQuestion,
)

EMAIL_PATTERN = re.compile(r"^[^\s@]+@[^\s@]+\.[^\s@]+$")
PHONE_PATTERN = re.compile(r"^\+?[1-9]\d{9,14}$")
MIN_SECURITY_QUESTIONS = 2
PASSWORD_RESET_MESSAGE = (
    "If your email exists in our system, you will receive a password reset link"
)
UNKNOWN_CLIENT = "unknown"


def is_valid_email(email: Optional[str]) -> bool:
    return bool(email) and bool(EMAIL_PATTERN.match(email))


class AuthService:
    """Registration, the login state machine and the account recovery flows.

    Login runs its gates in a fixed order: rate limits, email syntax, lockout,
    identity lookup, password, then account status. Every failing login is
    padded to ``min_failure_response_ms`` measured from entry, and an unknown
    email still pays for one hash verification against a dummy digest, so
    callers cannot tell which gate rejected them from timing alone.
    """

    def __init__(
        self,
        store: AuthStore,
        settings: Settings,
        *,
        clock: Optional[Clock] = None,
        hasher: Optional[CredentialHasher] = None,
        id_generator: Optional[IdGenerator] = None,
        human_verifier: Optional[HumanVerifier] = None,
        rate_limiter: Optional[RateLimiter] = None,
        lockout: Optional[LockoutTracker] = None,
        sessions: Optional[SessionManager] = None,
        tokens: Optional[TokenVault] = None,
        two_factor: Optional[TwoFactorEngine] = None,
        api_keys: Optional[ApiKeyAuthority] = None,
    ) -> None:
        self.store = store
        self.settings = settings
        self.logger = get_logger(__name__)
        self.clock = clock or SystemClock()
        self.hasher = hasher or Argon2CredentialHasher(
            time_cost=settings.argon2_time_cost,
            memory_cost=settings.argon2_memory_cost,
            parallelism=settings.argon2_parallelism,
        )
        self.ids = id_generator or SecretsIdGenerator()
        self.human_verifier = human_verifier or TokenPresenceVerifier()
        self.rate_limiter = rate_limiter or RateLimiter.from_settings(settings, clock=self.clock)
        self.lockout = lockout or LockoutTracker.from_settings(settings, clock=self.clock)
        self.sessions = sessions or SessionManager.from_settings(
            store, settings, clock=self.clock, id_generator=self.ids
        )
        self.tokens = tokens or TokenVault.from_settings(
            store, settings, clock=self.clock, id_generator=self.ids
        )
        self.two_factor = two_factor or TwoFactorEngine.from_settings(
            store, self.sessions, settings, clock=self.clock, id_generator=self.ids
        )
        self.api_keys = api_keys or ApiKeyAuthority.from_settings(
            store, settings, clock=self.clock, id_generator=self.ids
        )
        self._dummy_hash = self.hasher.hash(self.ids.token())

    def _require_identity(self, identity_id: str) -> Identity:
        identity = self.store.get_identity(identity_id)
        if not identity:
            raise NotFoundError("User not found")
        return identity

    def _hash_password(self, password: str) -> str:
        enforce_password_policy(password, self.settings)
        return self.hasher.hash(password)

    # registration
    def register(
        self, first_name: str, last_name: str, email: str, password: str
    ) -> Tuple[Identity, str]:
        """Create an unverified identity.

        Returns the identity and the email verification code for the host to
        deliver.
        """

        if not all([first_name, last_name, email, password]):
            raise ValidationError("All fields are required")
        if not is_valid_email(email):
            raise ValidationError("Invalid email format")
        if self.store.get_identity_by_email(email):
            raise ConflictError("Email already exists")
        password_hash = self._hash_password(password)
        try:
            identity = self.store.create_identity(
                email,
                first_name,
                last_name,
                session_timeout_minutes=self.settings.default_session_timeout_minutes,
                extend_on_activity=self.settings.default_extend_on_activity,
            )
        except ConstraintViolation as exc:
            raise ConflictError("Email already exists") from exc
        self.store.save_password(identity.id, password_hash)
        code = self.tokens.issue(TokenPurpose.EMAIL_VERIFICATION, identity.id)
        self.logger.info(
            "identity_registered", identity_id=identity.id, email_hash=hash_email(email)
        )
        return identity, code.value

    # login
    def login(
        self,
        email: str,
        password: str,
        *,
        ip_addr: Optional[str] = None,
        user_agent: Optional[str] = None,
        captcha_token: Optional[str] = None,
    ) -> LoginResult:
        started = self.clock.monotonic()
        try:
            return self._login(
                email,
                password,
                ip_addr=ip_addr or UNKNOWN_CLIENT,
                user_agent=user_agent,
                captcha_token=captcha_token,
            )
        except ServiceError:
            self._pad_failure(started)
            raise

    def _pad_failure(self, started: float) -> None:
        floor = self.settings.min_failure_response_ms / 1000.0
        remaining = floor - (self.clock.monotonic() - started)
        if remaining > 0:
            self.clock.sleep(remaining)

    def _login(
        self,
        email: str,
        password: str,
        *,
        ip_addr: str,
        user_agent: Optional[str],
        captcha_token: Optional[str],
    ) -> LoginResult:
        self.rate_limiter.check_request(LOGIN_ROUTE, ip_addr)

        if not is_valid_email(email):
            raise ValidationError("Invalid email format")

        self._check_lockout(email, captcha_token)

        identity = self.store.get_identity_by_email(email)
        stored_hash = self.store.get_password_hash(identity.id) if identity else None
        # Unknown emails still pay for one verification
        password_ok = self.hasher.verify(password or "", stored_hash or self._dummy_hash)
        if not identity or not stored_hash or not password_ok:
            state = self.lockout.record_failure(email)
            self.logger.warning(
                "login_failed",
                email_hash=hash_email(email),
                reason="invalid_credentials",
                attempts=state.failed_attempts,
            )
            raise InvalidCredentialsError()

        if not identity.email_verified:
            raise NotVerifiedError("Email not verified")
        if not identity.is_active:
            raise InactiveError("Account is inactive")

        previous_failures = self.lockout.record_success(email)
        self.store.append_login_history(
            LoginHistoryEntry(
                id=self.ids.identifier(),
                identity_id=identity.id,
                timestamp=self.clock.now(),
                ip_addr=ip_addr,
                user_agent=user_agent or "Unknown",
            )
        )

        if self.two_factor.is_enabled(identity.id):
            challenge = self.two_factor.start_challenge(identity.id)
            self.logger.info("login_two_factor_required", identity_id=identity.id)
            return LoginResult(
                requires_two_factor=True,
                temp_token=challenge.token,
                previous_failed_attempts=previous_failures,
            )

        session = self.sessions.create(identity, ip_addr=ip_addr, user_agent=user_agent)
        self.logger.info("login_succeeded", identity_id=identity.id, session_id=session.id)
        return LoginResult(
            identity=identity,
            session_id=session.id,
            token=session.token,
            previous_failed_attempts=previous_failures,
        )

    def _check_lockout(self, email: str, captcha_token: Optional[str]) -> None:
        if not self.lockout.is_locked(email):
            return
        # Soft delays below the hard threshold are advisory only
        if not self.lockout.is_hard_locked(email):
            return
        challenge_passed = bool(captcha_token) and self.human_verifier.verify(captcha_token)
        remaining = self.lockout.remaining_minutes(email)
        self.logger.warning(
            "login_locked",
            email_hash=hash_email(email),
            remaining_minutes=remaining,
            challenge_passed=challenge_passed,
        )
        raise LockedError(
            "Account locked due to too many failed attempts. "
            f"Try again in {remaining} minutes.",
            detail={
                "remaining_minutes": remaining,
                "challenge_required": not challenge_passed,
            },
        )

    def complete_two_factor(
        self,
        temp_token: str,
        code: str,
        *,
        ip_addr: Optional[str] = None,
        user_agent: Optional[str] = None,
    ) -> LoginResult:
        return self.two_factor.challenge(
            temp_token, code, ip_addr=ip_addr, user_agent=user_agent
        )

    # passwords
    def change_password(
        self, identity_id: str, current_password: str, new_password: str
    ) -> int:
        """Replace the password and end every session; returns the number ended."""

        if not current_password or not new_password:
            raise ValidationError("Current and new passwords are required")
        self._require_identity(identity_id)
        stored_hash = self.store.get_password_hash(identity_id)
        if not stored_hash or not self.hasher.verify(current_password, stored_hash):
            raise InvalidCredentialsError("Current password is incorrect")
        new_hash = self._hash_password(new_password)
        self.store.save_password(identity_id, new_hash)
        self.store.update_identity(identity_id, password_changed_at=self.clock.now())
        terminated = self.sessions.terminate_all(identity_id)
        self.logger.info(
            "password_changed", identity_id=identity_id, sessions_terminated=terminated
        )
        return terminated

    def request_password_reset(
        self, email: str, *, ip_addr: Optional[str] = None
    ) -> Dict[str, str]:
        """Start a reset; the response is identical whether or not the email exists.

        When it exists the result also carries the reset token for delivery.
        """

        self.rate_limiter.check_request(PASSWORD_RESET_ROUTE, ip_addr or UNKNOWN_CLIENT)
        if not is_valid_email(email):
            raise ValidationError("Invalid email format")
        result = {"message": PASSWORD_RESET_MESSAGE}
        identity = self.store.get_identity_by_email(email)
        if not identity:
            self.logger.info("password_reset_unknown_email", email_hash=hash_email(email))
            return result
        token = self.tokens.issue(TokenPurpose.PASSWORD_RESET, identity.id)
        result["token"] = token.value
        return result

    def reset_password(self, token: str, new_password: str) -> None:
        new_hash = self._hash_password(new_password)
        record = self.tokens.consume_value(TokenPurpose.PASSWORD_RESET, token)
        self._require_identity(record.identity_id)
        self.store.save_password(record.identity_id, new_hash)
        self.store.update_identity(record.identity_id, password_changed_at=self.clock.now())
        self.sessions.terminate_all(record.identity_id)
        self.logger.info("password_reset_completed", identity_id=record.identity_id)

    # email and phone verification
    def request_email_verification(self, identity_id: str) -> str:
        identity = self._require_identity(identity_id)
        if identity.email_verified:
            raise ValidationError("Email is already verified")
        return self.tokens.issue(TokenPurpose.EMAIL_VERIFICATION, identity_id).value

    def verify_email(self, identity_id: str, code: str) -> Identity:
        identity = self._require_identity(identity_id)
        if identity.email_verified:
            raise ValidationError("Email is already verified")
        self.tokens.consume(TokenPurpose.EMAIL_VERIFICATION, identity_id, code)
        self.logger.info("email_verified", identity_id=identity_id)
        return self.store.update_identity(identity_id, email_verified=True)

    def add_phone_number(self, identity_id: str, phone_number: str) -> str:
        """Attach an unverified phone number and return its verification code."""

        self._require_identity(identity_id)
        if not phone_number or not PHONE_PATTERN.match(phone_number):
            raise ValidationError("Invalid phone number format")
        owner = self.store.get_identity_by_phone(phone_number)
        if owner and owner.id != identity_id:
            raise ConflictError("Phone number is already in use")
        try:
            self.store.update_identity(
                identity_id, phone_number=phone_number, phone_verified=False
            )
        except ConstraintViolation as exc:
            raise ConflictError("Phone number is already in use") from exc
        return self.tokens.issue(TokenPurpose.PHONE_VERIFICATION, identity_id).value

    def request_phone_verification(self, identity_id: str) -> str:
        identity = self._require_identity(identity_id)
        if not identity.phone_number:
            raise ValidationError("No phone number associated with this account")
        if identity.phone_verified:
            raise ValidationError("Phone number is already verified")
        return self.tokens.issue(TokenPurpose.PHONE_VERIFICATION, identity_id).value

    def verify_phone(self, identity_id: str, code: str) -> Identity:
        identity = self._require_identity(identity_id)
        if not identity.phone_number:
            raise ValidationError("No phone number associated with this account")
        if identity.phone_verified:
            raise ValidationError("Phone number is already verified")
        self.tokens.consume(TokenPurpose.PHONE_VERIFICATION, identity_id, code)
        self.logger.info("phone_verified", identity_id=identity_id)
        return self.store.update_identity(identity_id, phone_verified=True)

    # security questions
    def set_security_questions(
        self, identity_id: str, questions: Iterable[Mapping[str, str]]
    ) -> None:
        if questions is None:
            raise ValidationError("Security questions are required")
        questions = list(questions)
        if len(questions) < MIN_SECURITY_QUESTIONS:
            raise ValidationError(
                f"At least {MIN_SECURITY_QUESTIONS} security questions are required"
            )
        for item in questions:
            if not item.get("question") or not item.get("answer"):
                raise ValidationError("Each security question needs a question and an answer")
        self._require_identity(identity_id)
        hashed = [
            SecurityQuestion(question=q["question"], answer_hash=self.hasher.hash(q["answer"]))
            for q in questions
        ]
        self.store.set_security_questions(identity_id, hashed)
        self.logger.info(
            "security_questions_set", identity_id=identity_id, count=len(hashed)
        )

    def verify_security_answers(self, identity_id: str, answers: Mapping[str, str]) -> bool:
        self._require_identity(identity_id)
        stored = self.store.get_security_questions(identity_id)
        if not stored:
            return False
        for question in stored:
            answer = answers.get(question.question)
            if not answer or not self.hasher.verify(answer, question.answer_hash):
                return False
        return True

    # account
    def get_login_history(
        self, identity_id: str, limit: Optional[int] = None
    ) -> List[LoginHistoryEntry]:
        self._require_identity(identity_id)
        history = sorted(
            self.store.list_login_history(identity_id),
            key=lambda entry: entry.timestamp,
            reverse=True,
        )
        if limit and limit > 0:
            history = history[:limit]
        return history

    def set_active(self, identity_id: str, active: bool) -> Identity:
        self._require_identity(identity_id)
        identity = self.store.update_identity(identity_id, is_active=bool(active))
        if not active:
            self.sessions.terminate_all(identity_id)
            self.two_factor.cancel_challenges(identity_id)
        self.logger.info("identity_active_changed", identity_id=identity_id, active=bool(active))
        return identity
