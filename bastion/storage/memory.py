from __future__ import annotations

import base64
import hashlib
import secrets
import threading
import uuid
from dataclasses import replace
from datetime import datetime
from typing import Callable, Dict, List, Optional

from cryptography.fernet import Fernet, InvalidToken

from bastion.logging import get_logger
from bastion.service.primitives import Clock, SystemClock
from bastion.storage.errors import ConstraintViolation
from bastion.storage.locks import KeyedLocks
from bastion.storage.models import (
    ApiKey,
    Identity,
    LoginHistoryEntry,
    PendingTwoFactorChallenge,
    SecurityQuestion,
    SessionRecord,
    TwoFactorSecret,
    VerificationToken,
)

_UPDATABLE_IDENTITY_FIELDS = frozenset(
    {
        "first_name",
        "last_name",
        "email_verified",
        "phone_number",
        "phone_verified",
        "is_active",
        "session_timeout_minutes",
        "extend_on_activity",
        "password_changed_at",
    }
)


class MemoryStore:
    """In-memory backing store keyed by identity, session, token and key ids.

    Uniqueness checks (email, phone, token values) hold a per-value lock;
    everything else relies on single dict operations.
    """

    def __init__(
        self,
        *,
        clock: Optional[Clock] = None,
        id_factory: Optional[Callable[[], str]] = None,
        encryption_key: str | None = None,
    ) -> None:
        self.logger = get_logger(__name__)
        self.clock = clock or SystemClock()
        self._new_id = id_factory or (lambda: str(uuid.uuid4()))
        self._locks = KeyedLocks()
        self._index_lock = threading.Lock()
        self.identities: Dict[str, Identity] = {}
        self._email_index: Dict[str, str] = {}
        self._phone_index: Dict[str, str] = {}
        self.credentials: Dict[str, str] = {}
        self.security_questions: Dict[str, List[SecurityQuestion]] = {}
        self.login_history: Dict[str, List[LoginHistoryEntry]] = {}
        self.sessions: Dict[str, SessionRecord] = {}
        self._session_tokens: Dict[str, str] = {}
        self.tokens: Dict[tuple[str, str], VerificationToken] = {}
        self.challenges: Dict[str, PendingTwoFactorChallenge] = {}
        self.two_factor_secrets: Dict[str, TwoFactorSecret] = {}
        self.api_keys: Dict[str, ApiKey] = {}
        self._api_key_values: Dict[str, str] = {}
        self._cipher = self._build_cipher(encryption_key)

    @staticmethod
    def _derive_cipher_key(key_material: str) -> bytes:
        return base64.urlsafe_b64encode(hashlib.sha256(key_material.encode()).digest())

    def _build_cipher(self, key_material: str | None) -> Fernet:
        material = key_material
        if not material:
            # Secrets written under a per-process key do not outlive the process,
            # which matches the lifetime of this store.
            material = secrets.token_urlsafe(64)
        try:
            return Fernet(self._derive_cipher_key(material))
        except Exception as exc:
            raise RuntimeError("Unable to initialize two-factor cipher") from exc

    # identities
    def create_identity(
        self,
        email: str,
        first_name: str,
        last_name: str,
        *,
        session_timeout_minutes: int = 30,
        extend_on_activity: bool = True,
    ) -> Identity:
        with self._locks.hold(f"email:{email}"):
            if email in self._email_index:
                raise ConstraintViolation("email already exists", {"field": "email"})
            identity = Identity(
                id=self._new_id(),
                email=email,
                first_name=first_name,
                last_name=last_name,
                created_at=self.clock.now(),
                session_timeout_minutes=session_timeout_minutes,
                extend_on_activity=extend_on_activity,
            )
            self.identities[identity.id] = identity
            self._email_index[email] = identity.id
            return identity

    def get_identity(self, identity_id: str) -> Optional[Identity]:
        return self.identities.get(identity_id)

    def get_identity_by_email(self, email: str) -> Optional[Identity]:
        # Exact match: emails are case-sensitive as stored
        identity_id = self._email_index.get(email)
        return self.identities.get(identity_id) if identity_id else None

    def get_identity_by_phone(self, phone_number: str) -> Optional[Identity]:
        identity_id = self._phone_index.get(phone_number)
        return self.identities.get(identity_id) if identity_id else None

    def update_identity(self, identity_id: str, **fields) -> Identity:
        unknown = set(fields) - _UPDATABLE_IDENTITY_FIELDS
        if unknown:
            raise ValueError(f"cannot update identity fields: {sorted(unknown)}")
        with self._locks.hold(f"identity:{identity_id}"):
            identity = self.identities.get(identity_id)
            if not identity:
                raise ConstraintViolation("identity not found", {"identity_id": identity_id})
            if "phone_number" in fields:
                self._reindex_phone(identity, fields["phone_number"])
            updated = replace(identity, **fields)
            self.identities[identity_id] = updated
            return updated

    def _reindex_phone(self, identity: Identity, phone_number: Optional[str]) -> None:
        if phone_number == identity.phone_number:
            return
        if phone_number:
            with self._locks.hold(f"phone:{phone_number}"):
                owner = self._phone_index.get(phone_number)
                if owner and owner != identity.id:
                    raise ConstraintViolation(
                        "phone number already in use", {"field": "phone_number"}
                    )
                self._phone_index[phone_number] = identity.id
        if identity.phone_number:
            self._phone_index.pop(identity.phone_number, None)

    def save_password(self, identity_id: str, password_hash: str) -> None:
        if identity_id not in self.identities:
            raise ConstraintViolation(
                "identity not found for credentials", {"identity_id": identity_id}
            )
        self.credentials[identity_id] = password_hash

    def get_password_hash(self, identity_id: str) -> Optional[str]:
        return self.credentials.get(identity_id)

    def set_security_questions(
        self, identity_id: str, questions: List[SecurityQuestion]
    ) -> None:
        if identity_id not in self.identities:
            raise ConstraintViolation("identity not found", {"identity_id": identity_id})
        self.security_questions[identity_id] = list(questions)

    def get_security_questions(self, identity_id: str) -> List[SecurityQuestion]:
        return list(self.security_questions.get(identity_id, []))

    def append_login_history(self, entry: LoginHistoryEntry) -> None:
        with self._locks.hold(f"history:{entry.identity_id}"):
            self.login_history.setdefault(entry.identity_id, []).append(entry)

    def list_login_history(self, identity_id: str) -> List[LoginHistoryEntry]:
        with self._locks.hold(f"history:{identity_id}"):
            return list(self.login_history.get(identity_id, []))

    # sessions
    def add_session(self, record: SessionRecord) -> SessionRecord:
        if record.identity_id not in self.identities:
            raise ConstraintViolation(
                "identity does not exist", {"identity_id": record.identity_id}
            )
        with self._index_lock:
            if record.token in self._session_tokens:
                raise ConstraintViolation("session token collision", {"field": "token"})
            self.sessions[record.id] = record
            self._session_tokens[record.token] = record.id
        return record

    def save_session(self, record: SessionRecord) -> None:
        with self._index_lock:
            if record.id in self.sessions:
                self.sessions[record.id] = record

    def get_session(self, session_id: str) -> Optional[SessionRecord]:
        return self.sessions.get(session_id)

    def get_session_by_token(self, token: str) -> Optional[SessionRecord]:
        session_id = self._session_tokens.get(token)
        return self.sessions.get(session_id) if session_id else None

    def list_sessions(self, identity_id: str) -> List[SessionRecord]:
        with self._index_lock:
            return [s for s in self.sessions.values() if s.identity_id == identity_id]

    def delete_session(self, session_id: str) -> bool:
        with self._index_lock:
            record = self.sessions.pop(session_id, None)
            if not record:
                return False
            self._session_tokens.pop(record.token, None)
            return True

    def delete_identity_sessions(self, identity_id: str) -> int:
        with self._index_lock:
            stale = [sid for sid, s in self.sessions.items() if s.identity_id == identity_id]
            for sid in stale:
                record = self.sessions.pop(sid)
                self._session_tokens.pop(record.token, None)
            return len(stale)

    # reset tokens, verification codes, two-factor challenges
    def put_token(self, token: VerificationToken) -> None:
        self.tokens[(token.identity_id, token.purpose)] = token

    def get_token(self, identity_id: str, purpose: str) -> Optional[VerificationToken]:
        return self.tokens.get((identity_id, purpose))

    def find_token(self, purpose: str, value: str) -> Optional[VerificationToken]:
        with self._index_lock:
            return next(
                (
                    t
                    for t in self.tokens.values()
                    if t.purpose == purpose
                    and secrets.compare_digest(t.value.encode(), value.encode())
                ),
                None,
            )

    def delete_token(self, identity_id: str, purpose: str) -> None:
        self.tokens.pop((identity_id, purpose), None)

    def put_challenge(self, challenge: PendingTwoFactorChallenge) -> None:
        with self._index_lock:
            self.challenges[challenge.token] = challenge

    def get_challenge(self, token: str) -> Optional[PendingTwoFactorChallenge]:
        with self._index_lock:
            return self.challenges.get(token)

    def delete_challenge(self, token: str) -> bool:
        with self._index_lock:
            return self.challenges.pop(token, None) is not None

    def delete_identity_challenges(
        self, identity_id: str, *, expired_before: Optional[datetime] = None
    ) -> int:
        """Drop an identity's pending challenges, or only those expired before a cutoff."""

        with self._index_lock:
            stale = [
                token
                for token, c in self.challenges.items()
                if c.identity_id == identity_id
                and (expired_before is None or c.expires_at < expired_before)
            ]
            for token in stale:
                del self.challenges[token]
            return len(stale)

    # two-factor secrets
    def _encrypt_secret(self, secret: str) -> str:
        if not secret:
            return secret
        return self._cipher.encrypt(secret.encode()).decode()

    def _decrypt_secret(self, secret: str) -> str:
        if not secret:
            return secret
        try:
            return self._cipher.decrypt(secret.encode()).decode()
        except InvalidToken:
            self.logger.warning("two_factor_secret_decrypt_failed")
            raise

    def set_two_factor_secret(
        self, identity_id: str, secret: str, enabled: bool = False
    ) -> TwoFactorSecret:
        if identity_id not in self.identities:
            raise ConstraintViolation(
                "identity not found for two-factor", {"identity_id": identity_id}
            )
        record = TwoFactorSecret(
            identity_id=identity_id,
            secret=self._encrypt_secret(secret),
            enabled=enabled,
            created_at=self.clock.now(),
        )
        self.two_factor_secrets[identity_id] = record
        return replace(record, secret=secret)

    def get_two_factor_secret(self, identity_id: str) -> Optional[TwoFactorSecret]:
        record = self.two_factor_secrets.get(identity_id)
        if not record:
            return None
        return replace(record, secret=self._decrypt_secret(record.secret))

    def delete_two_factor_secret(self, identity_id: str) -> None:
        self.two_factor_secrets.pop(identity_id, None)

    # api keys
    def add_api_key(self, api_key: ApiKey) -> ApiKey:
        with self._index_lock:
            if api_key.key in self._api_key_values:
                raise ConstraintViolation("api key collision", {"field": "key"})
            self.api_keys[api_key.id] = api_key
            self._api_key_values[api_key.key] = api_key.id
        return api_key

    def save_api_key(self, api_key: ApiKey) -> None:
        with self._index_lock:
            if api_key.id in self.api_keys:
                self.api_keys[api_key.id] = api_key

    def get_api_key(self, key_id: str) -> Optional[ApiKey]:
        return self.api_keys.get(key_id)

    def get_api_key_by_value(self, key: str) -> Optional[ApiKey]:
        key_id = self._api_key_values.get(key)
        return self.api_keys.get(key_id) if key_id else None

    def list_api_keys(self, identity_id: str) -> List[ApiKey]:
        with self._index_lock:
            keys = [k for k in self.api_keys.values() if k.identity_id == identity_id]
        return sorted(keys, key=lambda k: k.created_at)
