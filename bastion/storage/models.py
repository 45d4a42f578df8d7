from __future__ import annotations

from dataclasses import dataclass
from datetime import datetime, timedelta
from enum import Enum
from typing import List, Optional


class ApiKeyPermission(str, Enum):
    """Closed set of scopes an API key can carry."""

    READ = "read"
    WRITE = "write"
    ADMIN = "admin"
    DELETE = "delete"


@dataclass
class Identity:
    id: str
    email: str
    first_name: str
    last_name: str
    created_at: datetime
    email_verified: bool = False
    phone_number: Optional[str] = None
    phone_verified: bool = False
    is_active: bool = True
    session_timeout_minutes: int = 30
    extend_on_activity: bool = True
    password_changed_at: Optional[datetime] = None


@dataclass
class SecurityQuestion:
    question: str
    answer_hash: str


@dataclass
class LoginHistoryEntry:
    id: str
    identity_id: str
    timestamp: datetime
    ip_addr: str
    user_agent: str = "Unknown"
    location: str = "Unknown"


@dataclass
class LockoutState:
    email: str
    failed_attempts: int = 0
    locked_until: Optional[datetime] = None


@dataclass
class SessionRecord:
    id: str
    identity_id: str
    token: str
    created_at: datetime
    last_active_at: datetime
    timeout_minutes: int = 30
    extend_on_activity: bool = True
    ip_addr: Optional[str] = None
    user_agent: Optional[str] = None

    @property
    def expires_at(self) -> datetime:
        # Without extension the window is anchored at creation
        anchor = self.last_active_at if self.extend_on_activity else self.created_at
        return anchor + timedelta(minutes=self.timeout_minutes)

    def is_live(self, now: datetime) -> bool:
        return now < self.expires_at


@dataclass
class TwoFactorSecret:
    identity_id: str
    secret: str
    enabled: bool = False
    created_at: Optional[datetime] = None


@dataclass
class PendingTwoFactorChallenge:
    token: str
    identity_id: str
    expires_at: datetime


@dataclass
class VerificationToken:
    """Reset token or verification code; one live record per identity and purpose."""

    identity_id: str
    purpose: str
    value: str
    expires_at: datetime


@dataclass
class ApiKey:
    id: str
    identity_id: str
    name: str
    key: str
    permissions: List[ApiKeyPermission]
    created_at: datetime
    description: str = ""
    last_used_at: Optional[datetime] = None
    is_active: bool = True

    @property
    def masked_key(self) -> str:
        return f"{self.key[:6]}...{self.key[-4:]}"


@dataclass
class ApiKeyView:
    """Listing form of an API key; never carries the full key value."""

    id: str
    name: str
    key: str
    permissions: List[ApiKeyPermission]
    description: str
    created_at: datetime
    last_used_at: Optional[datetime] = None

    @classmethod
    def from_key(cls, api_key: ApiKey) -> "ApiKeyView":
        return cls(
            id=api_key.id,
            name=api_key.name,
            key=api_key.masked_key,
            permissions=list(api_key.permissions),
            description=api_key.description,
            created_at=api_key.created_at,
            last_used_at=api_key.last_used_at,
        )


@dataclass
class LoginResult:
    """Outcome of a password login or a completed two-factor challenge."""

    identity: Optional[Identity] = None
    session_id: Optional[str] = None
    token: Optional[str] = None
    requires_two_factor: bool = False
    temp_token: Optional[str] = None
    previous_failed_attempts: int = 0
