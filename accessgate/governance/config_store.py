"""
Operator-editable runtime configuration.

Typed key/value entries that can be switched on and off individually.
Inactive entries behave as if absent.  Grouped read projections (auth
policy, gateway connection) are built on :meth:`ConfigStore.get_multiple`.
"""

import copy
import logging
import threading
from datetime import datetime
from typing import Any, Dict, Iterable, Optional

from pydantic import BaseModel, Field

from accessgate.exceptions import NotFoundError, ValidationError
from accessgate.governance.clock import utcnow

logger = logging.getLogger(__name__)

_MAX_KEY_LENGTH = 100

AUTH_CONFIG_KEYS = (
    "require_email_verification",
    "require_admin_approval",
    "require_2fa",
    "max_login_attempts",
    "account_lockout_time",
    "session_timeout",
    "password_policy",
)

GATEWAY_CONFIG_KEYS = (
    "gateway_url",
    "gateway_secret",
    "default_rate_limits",
    "certificate_expiry_warning_days",
)


class ConfigEntry(BaseModel):
    """One configuration entry.

    Attributes:
        key: Unique key.
        value: JSON-compatible value.
        description: Human-readable description.
        is_active: Inactive entries are ignored by reads.
        created_by: User who created the entry.
        updated_by: User who last wrote the value.
    """

    key: str = Field(min_length=1, max_length=_MAX_KEY_LENGTH)
    value: Any = None
    description: Optional[str] = None
    is_active: bool = True
    created_by: Optional[str] = None
    updated_by: Optional[str] = None
    created_at: datetime = Field(default_factory=utcnow)
    updated_at: datetime = Field(default_factory=utcnow)


class ConfigStore:
    """In-process key/value configuration store."""

    def __init__(self) -> None:
        self._lock = threading.Lock()
        self._entries: Dict[str, ConfigEntry] = {}
        logger.info("ConfigStore initialised", extra={})

    def get_value(self, key: str, default: Any = None) -> Any:
        """Return a copy of the stored value if an active entry exists, else *default*."""
        with self._lock:
            entry = self._entries.get(key)
            if entry is None or not entry.is_active:
                return default
            return copy.deepcopy(entry.value)

    def set_value(
        self,
        key: str,
        value: Any,
        updated_by: Optional[str] = None,
        description: Optional[str] = None,
    ) -> ConfigEntry:
        """Create or update an entry.

        On update, ``updated_by`` is always replaced and ``description``
        only when given.

        Raises:
            ValidationError: If the key is empty or too long.
        """
        if not key or len(key) > _MAX_KEY_LENGTH:
            raise ValidationError(
                f"Config key must be 1-{_MAX_KEY_LENGTH} characters"
            )
        now = utcnow()
        value = copy.deepcopy(value)
        with self._lock:
            entry = self._entries.get(key)
            if entry is None:
                entry = ConfigEntry(
                    key=key,
                    value=value,
                    description=description,
                    created_by=updated_by,
                    updated_by=updated_by,
                    created_at=now,
                    updated_at=now,
                )
                self._entries[key] = entry
            else:
                entry.value = value
                entry.updated_by = updated_by
                if description:
                    entry.description = description
                entry.updated_at = now
            snapshot = entry.model_copy(deep=True)
        logger.info("Config value set", extra={"key": key, "updated_by": updated_by})
        return snapshot

    def set_active(self, key: str, is_active: bool) -> ConfigEntry:
        """Enable or disable an entry without touching its value.

        Raises:
            NotFoundError: If the key does not exist.
        """
        with self._lock:
            entry = self._entries.get(key)
            if entry is None:
                raise NotFoundError(f"Config key '{key}' not found")
            entry.is_active = is_active
            entry.updated_at = utcnow()
            return entry.model_copy(deep=True)

    def get_multiple(self, keys: Iterable[str]) -> Dict[str, Any]:
        """Mapping of the active entries found among *keys*."""
        with self._lock:
            result = {}
            for key in keys:
                entry = self._entries.get(key)
                if entry is not None and entry.is_active:
                    result[key] = copy.deepcopy(entry.value)
            return result

    def get_auth_config(self) -> Dict[str, Any]:
        return self.get_multiple(AUTH_CONFIG_KEYS)

    def get_gateway_config(self) -> Dict[str, Any]:
        return self.get_multiple(GATEWAY_CONFIG_KEYS)
