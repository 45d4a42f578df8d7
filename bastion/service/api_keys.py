from __future__ import annotations

from typing import Iterable, List, Optional, Tuple

from bastion.config import Settings
from bastion.logging import get_logger
from bastion.service.errors import (
    InvalidKeyError,
    InvalidOwnerError,
    MissingPermissionError,
    NotFoundError,
    ValidationError,
)
from bastion.service.primitives import Clock, IdGenerator, SecretsIdGenerator, SystemClock
from bastion.storage.interfaces import AuthStore
from bastion.storage.locks import KeyedLocks
from bastion.storage.models import ApiKey, ApiKeyPermission, ApiKeyView

logger = get_logger(__name__)

_UNSET = object()


def parse_permissions(permissions: Iterable) -> List[ApiKeyPermission]:
    if permissions is None or isinstance(permissions, (str, bytes)):
        raise ValidationError("Permissions must be a list")
    parsed: List[ApiKeyPermission] = []
    for permission in permissions:
        try:
            value = ApiKeyPermission(permission)
        except ValueError:
            raise ValidationError(
                f"Invalid permission: {permission}", detail={"permission": str(permission)}
            ) from None
        if value not in parsed:
            parsed.append(value)
    return parsed


class ApiKeyAuthority:
    """Issues and checks long-lived API keys for external callers."""

    def __init__(
        self,
        store: AuthStore,
        *,
        clock: Optional[Clock] = None,
        id_generator: Optional[IdGenerator] = None,
        prefix: str = "apk_",
    ) -> None:
        self.store = store
        self.clock = clock or SystemClock()
        self.ids = id_generator or SecretsIdGenerator()
        self.prefix = prefix
        self._locks = KeyedLocks()

    @classmethod
    def from_settings(
        cls,
        store: AuthStore,
        settings: Settings,
        *,
        clock: Optional[Clock] = None,
        id_generator: Optional[IdGenerator] = None,
    ) -> "ApiKeyAuthority":
        return cls(store, clock=clock, id_generator=id_generator, prefix=settings.api_key_prefix)

    def _require_identity(self, identity_id: str) -> None:
        if not self.store.get_identity(identity_id):
            raise NotFoundError("User not found")

    def _owned_key(self, identity_id: str, key_id: str) -> Optional[ApiKey]:
        api_key = self.store.get_api_key(key_id)
        if not api_key or api_key.identity_id != identity_id:
            return None
        return api_key

    def issue(
        self,
        identity_id: str,
        name: str,
        permissions: Iterable,
        description: str = "",
    ) -> ApiKey:
        """Create a key; the returned record is the only time the full value is shown."""

        self._require_identity(identity_id)
        if not name or not str(name).strip():
            raise ValidationError("API key name is required")
        parsed = parse_permissions(permissions)
        api_key = ApiKey(
            id=self.ids.identifier(),
            identity_id=identity_id,
            name=str(name).strip(),
            key=f"{self.prefix}{self.ids.token()}",
            permissions=parsed,
            created_at=self.clock.now(),
            description=description or "",
        )
        self.store.add_api_key(api_key)
        logger.info(
            "api_key_issued",
            identity_id=identity_id,
            key_id=api_key.id,
            permissions=[p.value for p in parsed],
        )
        return api_key

    def list(self, identity_id: str) -> List[ApiKeyView]:
        self._require_identity(identity_id)
        return [
            ApiKeyView.from_key(k)
            for k in self.store.list_api_keys(identity_id)
            if k.is_active
        ]

    def revoke(self, identity_id: str, key_id: str) -> None:
        self._require_identity(identity_id)
        with self._locks.hold(key_id):
            api_key = self._owned_key(identity_id, key_id)
            if not api_key:
                raise NotFoundError("API key not found")
            api_key.is_active = False
            self.store.save_api_key(api_key)
        logger.info("api_key_revoked", identity_id=identity_id, key_id=key_id)

    def update(
        self,
        identity_id: str,
        key_id: str,
        *,
        name=_UNSET,
        description=_UNSET,
        permissions=_UNSET,
    ) -> ApiKeyView:
        self._require_identity(identity_id)
        parsed = None if permissions is _UNSET else parse_permissions(permissions)
        if name is not _UNSET and (not name or not str(name).strip()):
            raise ValidationError("API key name is required")
        with self._locks.hold(key_id):
            api_key = self._owned_key(identity_id, key_id)
            if not api_key or not api_key.is_active:
                raise NotFoundError("API key not found or already revoked")
            if name is not _UNSET:
                api_key.name = str(name).strip()
            if description is not _UNSET:
                api_key.description = description or ""
            if parsed is not None:
                api_key.permissions = parsed
            self.store.save_api_key(api_key)
        logger.info("api_key_updated", identity_id=identity_id, key_id=key_id)
        return ApiKeyView.from_key(api_key)

    def validate(
        self, key: str, required_permissions: Iterable = ()
    ) -> Tuple[str, List[ApiKeyPermission]]:
        """Authorize a request made with ``key``.

        Returns the owning identity id and the key's full permission set.
        """

        required = parse_permissions(required_permissions)
        api_key = self.store.get_api_key_by_value(key or "")
        if not api_key or not api_key.is_active:
            logger.warning("api_key_invalid", token_prefix=(key or "")[:6])
            raise InvalidKeyError("Invalid API key")
        owner = self.store.get_identity(api_key.identity_id)
        if not owner:
            raise InvalidOwnerError("User not found")
        if not owner.is_active:
            raise InvalidOwnerError("User account is inactive")
        for permission in required:
            if permission not in api_key.permissions:
                logger.warning(
                    "api_key_missing_permission",
                    key_id=api_key.id,
                    permission=permission.value,
                )
                raise MissingPermissionError(
                    f"API key does not have required permission: {permission.value}",
                    detail={"permission": permission.value},
                )
        with self._locks.hold(api_key.id):
            api_key.last_used_at = self.clock.now()
            self.store.save_api_key(api_key)
        return api_key.identity_id, list(api_key.permissions)

    def info(self, key: str) -> dict:
        api_key = self.store.get_api_key_by_value(key or "")
        if not api_key or not api_key.is_active:
            raise InvalidKeyError("Invalid API key")
        tier = "premium" if ApiKeyPermission.ADMIN in api_key.permissions else "standard"
        return {
            "id": api_key.id,
            "identity_id": api_key.identity_id,
            "name": api_key.name,
            "permissions": [p.value for p in api_key.permissions],
            "tier": tier,
            "created_at": api_key.created_at,
            "last_used_at": api_key.last_used_at,
        }
