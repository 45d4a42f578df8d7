from __future__ import annotations

from typing import List, Optional

from bastion.config import MAX_SESSION_TIMEOUT_MINUTES, MIN_SESSION_TIMEOUT_MINUTES, Settings
from bastion.logging import get_logger
from bastion.service.errors import AuthenticationError, NotFoundError, ValidationError
from bastion.service.primitives import Clock, IdGenerator, SecretsIdGenerator, SystemClock
from bastion.storage.interfaces import AuthStore
from bastion.storage.locks import KeyedLocks
from bastion.storage.models import Identity, SessionRecord

logger = get_logger(__name__)


class SessionManager:
    """Creates, refreshes and terminates login sessions.

    A session expires ``timeout_minutes`` after its anchor: the last activity
    when the owner extends on activity, otherwise the creation time. Expired
    records are dropped whenever they are read.
    """

    def __init__(
        self,
        store: AuthStore,
        *,
        clock: Optional[Clock] = None,
        id_generator: Optional[IdGenerator] = None,
        max_concurrent_sessions: int = 0,
    ) -> None:
        self.store = store
        self.clock = clock or SystemClock()
        self.ids = id_generator or SecretsIdGenerator()
        self.max_concurrent_sessions = max_concurrent_sessions
        self._locks = KeyedLocks()

    @classmethod
    def from_settings(
        cls,
        store: AuthStore,
        settings: Settings,
        *,
        clock: Optional[Clock] = None,
        id_generator: Optional[IdGenerator] = None,
    ) -> "SessionManager":
        return cls(
            store,
            clock=clock,
            id_generator=id_generator,
            max_concurrent_sessions=settings.max_concurrent_sessions,
        )

    def create(
        self,
        identity: Identity,
        *,
        ip_addr: Optional[str] = None,
        user_agent: Optional[str] = None,
    ) -> SessionRecord:
        now = self.clock.now()
        record = SessionRecord(
            id=self.ids.identifier(),
            identity_id=identity.id,
            token=self.ids.token(),
            created_at=now,
            last_active_at=now,
            timeout_minutes=identity.session_timeout_minutes,
            extend_on_activity=identity.extend_on_activity,
            ip_addr=ip_addr,
            user_agent=user_agent,
        )
        with self._locks.hold(identity.id):
            live = self._live_sessions(identity.id)
            if self.max_concurrent_sessions > 0:
                live.sort(key=lambda s: s.created_at)
                while len(live) >= self.max_concurrent_sessions:
                    evicted = live.pop(0)
                    self.store.delete_session(evicted.id)
                    logger.info(
                        "session_evicted",
                        identity_id=identity.id,
                        session_id=evicted.id,
                        limit=self.max_concurrent_sessions,
                    )
            self.store.add_session(record)
        logger.info("session_created", identity_id=identity.id, session_id=record.id)
        return record

    def _live_sessions(self, identity_id: str) -> List[SessionRecord]:
        now = self.clock.now()
        live: List[SessionRecord] = []
        for record in self.store.list_sessions(identity_id):
            if record.is_live(now):
                live.append(record)
            else:
                self.store.delete_session(record.id)
        return live

    def _get_live(self, session_id: str) -> Optional[SessionRecord]:
        record = self.store.get_session(session_id)
        if not record:
            return None
        if not record.is_live(self.clock.now()):
            self.store.delete_session(session_id)
            logger.info(
                "session_expired", identity_id=record.identity_id, session_id=session_id
            )
            return None
        return record

    def is_valid(self, session_id: str) -> bool:
        return self._get_live(session_id) is not None

    def touch(self, session_id: str) -> SessionRecord:
        """Record activity on a live session.

        ``last_active_at`` always moves; the expiry only moves with it when the
        session extends on activity.
        """

        with self._locks.hold(session_id):
            record = self._get_live(session_id)
            if not record:
                raise NotFoundError("Session not found or expired")
            record.last_active_at = self.clock.now()
            self.store.save_session(record)
            return record

    def authenticate(self, token: str) -> SessionRecord:
        record = self.store.get_session_by_token(token or "")
        if not record or not self.is_valid(record.id):
            raise AuthenticationError("Invalid or expired session")
        try:
            return self.touch(record.id)
        except NotFoundError as exc:
            raise AuthenticationError("Invalid or expired session") from exc

    def list_active(self, identity_id: str) -> List[SessionRecord]:
        with self._locks.hold(identity_id):
            live = self._live_sessions(identity_id)
        return sorted(live, key=lambda s: s.last_active_at, reverse=True)

    def terminate(self, identity_id: str, session_id: str) -> None:
        with self._locks.hold(identity_id):
            record = self.store.get_session(session_id)
            # Sessions owned by someone else are reported as missing
            if not record or record.identity_id != identity_id:
                raise NotFoundError("Session not found")
            self.store.delete_session(session_id)
        logger.info("session_terminated", identity_id=identity_id, session_id=session_id)

    def terminate_all(self, identity_id: str) -> int:
        if not self.store.get_identity(identity_id):
            raise NotFoundError("User not found")
        with self._locks.hold(identity_id):
            removed = self.store.delete_identity_sessions(identity_id)
        logger.info("sessions_terminated", identity_id=identity_id, count=removed)
        return removed

    def configure_timeout(
        self,
        identity_id: str,
        minutes: Optional[int] = None,
        extend_on_activity: Optional[bool] = None,
    ) -> Identity:
        """Change an identity's session policy for existing and future sessions."""

        if minutes is not None:
            if (
                isinstance(minutes, bool)
                or not isinstance(minutes, int)
                or not MIN_SESSION_TIMEOUT_MINUTES <= minutes <= MAX_SESSION_TIMEOUT_MINUTES
            ):
                raise ValidationError(
                    f"Session timeout must be between {MIN_SESSION_TIMEOUT_MINUTES} "
                    f"and {MAX_SESSION_TIMEOUT_MINUTES} minutes"
                )
        with self._locks.hold(identity_id):
            identity = self.store.get_identity(identity_id)
            if not identity:
                raise NotFoundError("User not found")
            changes = {}
            if minutes is not None:
                changes["session_timeout_minutes"] = minutes
            if extend_on_activity is not None:
                changes["extend_on_activity"] = bool(extend_on_activity)
            if changes:
                identity = self.store.update_identity(identity_id, **changes)
            for record in self.store.list_sessions(identity_id):
                record.timeout_minutes = identity.session_timeout_minutes
                record.extend_on_activity = identity.extend_on_activity
                self.store.save_session(record)
        logger.info(
            "session_timeout_configured",
            identity_id=identity_id,
            timeout_minutes=identity.session_timeout_minutes,
            extend_on_activity=identity.extend_on_activity,
        )
        return identity
