from __future__ import annotations

from datetime import datetime
from typing import List, Optional, Protocol

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


class IdentityStore(Protocol):
    def create_identity(
        self,
        email: str,
        first_name: str,
        last_name: str,
        *,
        session_timeout_minutes: int = 30,
        extend_on_activity: bool = True,
    ) -> Identity: ...

    def get_identity(self, identity_id: str) -> Optional[Identity]: ...

    def get_identity_by_email(self, email: str) -> Optional[Identity]: ...

    def get_identity_by_phone(self, phone_number: str) -> Optional[Identity]: ...

    def update_identity(self, identity_id: str, **fields) -> Identity: ...

    def save_password(self, identity_id: str, password_hash: str) -> None: ...

    def get_password_hash(self, identity_id: str) -> Optional[str]: ...

    def set_security_questions(
        self, identity_id: str, questions: List[SecurityQuestion]
    ) -> None: ...

    def get_security_questions(self, identity_id: str) -> List[SecurityQuestion]: ...

    def append_login_history(self, entry: LoginHistoryEntry) -> None: ...

    def list_login_history(self, identity_id: str) -> List[LoginHistoryEntry]: ...


class SessionStore(Protocol):
    def add_session(self, record: SessionRecord) -> SessionRecord: ...

    def save_session(self, record: SessionRecord) -> None: ...

    def get_session(self, session_id: str) -> Optional[SessionRecord]: ...

    def get_session_by_token(self, token: str) -> Optional[SessionRecord]: ...

    def list_sessions(self, identity_id: str) -> List[SessionRecord]: ...

    def delete_session(self, session_id: str) -> bool: ...

    def delete_identity_sessions(self, identity_id: str) -> int: ...


class TokenStore(Protocol):
    def put_token(self, token: VerificationToken) -> None: ...

    def get_token(self, identity_id: str, purpose: str) -> Optional[VerificationToken]: ...

    def find_token(self, purpose: str, value: str) -> Optional[VerificationToken]: ...

    def delete_token(self, identity_id: str, purpose: str) -> None: ...

    def put_challenge(self, challenge: PendingTwoFactorChallenge) -> None: ...

    def get_challenge(self, token: str) -> Optional[PendingTwoFactorChallenge]: ...

    def delete_challenge(self, token: str) -> bool: ...

    def delete_identity_challenges(
        self, identity_id: str, *, expired_before: Optional[datetime] = None
    ) -> int: ...


class TwoFactorStore(Protocol):
    def set_two_factor_secret(
        self, identity_id: str, secret: str, enabled: bool = False
    ) -> TwoFactorSecret: ...

    def get_two_factor_secret(self, identity_id: str) -> Optional[TwoFactorSecret]: ...

    def delete_two_factor_secret(self, identity_id: str) -> None: ...


class ApiKeyStore(Protocol):
    def add_api_key(self, api_key: ApiKey) -> ApiKey: ...

    def save_api_key(self, api_key: ApiKey) -> None: ...

    def get_api_key(self, key_id: str) -> Optional[ApiKey]: ...

    def get_api_key_by_value(self, key: str) -> Optional[ApiKey]: ...

    def list_api_keys(self, identity_id: str) -> List[ApiKey]: ...


class AuthStore(IdentityStore, SessionStore, TokenStore, TwoFactorStore, ApiKeyStore, Protocol):
    """Everything the authentication core persists."""
