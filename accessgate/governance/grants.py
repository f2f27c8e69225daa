"""
Per-(user, API) access grants.

A grant authorises one user to reach one API under an organisation,
bounded by a validity window, version and path restrictions.  Grants are
only ever mutated through revocation (terminal) and usage recording
(monotonic); they are never deleted.
"""

import logging
import threading
from datetime import datetime, timedelta
from typing import Any, Dict, List, Literal, Optional
from uuid import uuid4

from pydantic import BaseModel, ConfigDict, Field, model_validator

from accessgate.config import get_settings
from accessgate.exceptions import ConflictError, NotFoundError, ValidationError
from accessgate.governance.audit import AuditLogger
from accessgate.governance.clock import as_utc, utcnow
from accessgate.governance.limits import QuotaOverride, RateLimitOverride
from accessgate.governance.paths import matches_any

logger = logging.getLogger(__name__)


# ── Data Models ────────────────────────────────────────


class Revocation(BaseModel):
    """Terminal revocation stamp.  Present only once a grant is revoked.

    Attributes:
        revoked_at: When the grant was revoked.
        revoked_by: User who revoked it.
        reason: Optional free-text reason.
    """

    model_config = ConfigDict(frozen=True)

    revoked_at: datetime
    revoked_by: str
    reason: Optional[str] = None


class GrantMetadata(BaseModel):
    """Operator annotations attached to a grant."""

    notes: Optional[str] = None
    tags: List[str] = Field(default_factory=list)


class AccessGrant(BaseModel):
    """Access grant for one user on one API.

    Attributes:
        grant_id: Unique identifier.
        user_id: Grantee.
        api_id: API the grant covers.
        org_id: Organisation scoping the grant.
        access_level: Coarse access tier.
        granted_by: User who created the grant.
        custom_rate_limits: Optional rate window override.
        custom_quota: Optional quota override.
        allowed_versions: Reachable API versions; empty means all.
        allowed_paths: Ordered allow globs; empty means all.
        restricted_paths: Ordered deny globs; these win over allows.
        valid_from: Start of validity (inclusive), if bounded.
        valid_until: End of validity (inclusive), if bounded.
        is_active: False once deactivated or revoked.
        revocation: Terminal revocation stamp.
        first_used: First recorded use.
        last_used: Most recent recorded use.
        usage_count: Number of recorded uses.
        metadata: Operator annotations.
    """

    grant_id: str = Field(default_factory=lambda: uuid4().hex)
    user_id: str
    api_id: str
    org_id: str
    access_level: Literal["read", "write", "admin"] = "read"
    granted_by: str
    custom_rate_limits: Optional[RateLimitOverride] = None
    custom_quota: Optional[QuotaOverride] = None
    allowed_versions: List[str] = Field(
        default_factory=lambda: list(get_settings().grants.default_allowed_versions)
    )
    allowed_paths: List[str] = Field(default_factory=list)
    restricted_paths: List[str] = Field(default_factory=list)
    valid_from: Optional[datetime] = None
    valid_until: Optional[datetime] = None
    is_active: bool = True
    revocation: Optional[Revocation] = None
    first_used: Optional[datetime] = None
    last_used: Optional[datetime] = None
    usage_count: int = Field(default=0, ge=0)
    metadata: GrantMetadata = Field(default_factory=GrantMetadata)
    created_at: datetime = Field(default_factory=utcnow)
    updated_at: datetime = Field(default_factory=utcnow)

    @model_validator(mode="after")
    def _revoked_is_inactive(self) -> "AccessGrant":
        if self.revocation is not None:
            self.is_active = False
        return self

    @property
    def is_revoked(self) -> bool:
        return self.revocation is not None

    # ------------------------------------------------------------------
    # Validity
    # ------------------------------------------------------------------

    def is_valid(self, now: Optional[datetime] = None) -> bool:
        """Active, unrevoked and inside the (inclusive) validity window."""
        if not self.is_active or self.revocation is not None:
            return False
        now = as_utc(now) or utcnow()
        if self.valid_from is not None and now < as_utc(self.valid_from):
            return False
        if self.valid_until is not None and now > as_utc(self.valid_until):
            return False
        return True

    def is_expired(self, now: Optional[datetime] = None) -> bool:
        if self.valid_until is None:
            return False
        return (as_utc(now) or utcnow()) > as_utc(self.valid_until)

    def is_expiring_soon(self, days: int = 7, now: Optional[datetime] = None) -> bool:
        """True if ``valid_until`` falls in ``(now, now + days]``."""
        if self.valid_until is None:
            return False
        now = as_utc(now) or utcnow()
        valid_until = as_utc(self.valid_until)
        return now < valid_until <= now + timedelta(days=days)

    # ------------------------------------------------------------------
    # Path / version restrictions
    # ------------------------------------------------------------------

    def can_access_path(self, path: str) -> bool:
        """Apply the allow-list, then the restrict-list.

        Restrictions always win: ``/v1/admin/users`` is denied under
        ``allowed_paths=["/v1/*"]`` with ``restricted_paths=["/v1/admin*"]``.
        """
        if self.allowed_paths and not matches_any(self.allowed_paths, path):
            return False
        if self.restricted_paths and matches_any(self.restricted_paths, path):
            return False
        return True

    def can_access_version(self, version: str) -> bool:
        if not self.allowed_versions:
            return True
        return version in self.allowed_versions

    def to_safe_object(self, now: Optional[datetime] = None) -> Dict[str, Any]:
        """JSON-safe view with derived validity flags."""
        now = as_utc(now) or utcnow()
        data = self.model_dump(mode="json")
        data.update(
            is_revoked=self.is_revoked,
            is_valid=self.is_valid(now),
            is_expired=self.is_expired(now),
            is_expiring_soon=self.is_expiring_soon(now=now),
        )
        return data


# ── Registry ───────────────────────────────────────────


class GrantRegistry:
    """Owns access grants keyed by ``grant_id`` and unique per (user, API).

    Args:
        audit: Optional audit trail for lifecycle events.
    """

    def __init__(self, audit: Optional[AuditLogger] = None) -> None:
        self._audit = audit
        self._lock = threading.Lock()
        self._grants: Dict[str, AccessGrant] = {}  # grant_id -> grant
        self._by_user_api: Dict[tuple, str] = {}  # (user_id, api_id) -> grant_id
        logger.info("GrantRegistry initialised", extra={})

    # ------------------------------------------------------------------
    # Creation
    # ------------------------------------------------------------------

    def create_grant(self, grant: AccessGrant) -> AccessGrant:
        """Register a new grant.

        Args:
            grant: Grant to store.

        Returns:
            The stored grant.

        Raises:
            ValidationError: If ``valid_from`` is after ``valid_until``.
            ConflictError: If the user already holds a grant for the API.
        """
        if (
            grant.valid_from is not None
            and grant.valid_until is not None
            and as_utc(grant.valid_from) > as_utc(grant.valid_until)
        ):
            raise ValidationError(
                f"valid_from {grant.valid_from.isoformat()} is after "
                f"valid_until {grant.valid_until.isoformat()}"
            )
        key = (grant.user_id, grant.api_id)
        with self._lock:
            if key in self._by_user_api:
                raise ConflictError(
                    f"User '{grant.user_id}' already has a grant for API '{grant.api_id}'"
                )
            if grant.grant_id in self._grants:
                raise ConflictError(f"Grant '{grant.grant_id}' already exists")
            self._grants[grant.grant_id] = grant.model_copy(deep=True)
            self._by_user_api[key] = grant.grant_id
        logger.info(
            "Grant created",
            extra={
                "grant_id": grant.grant_id,
                "user_id": grant.user_id,
                "api_id": grant.api_id,
                "org_id": grant.org_id,
            },
        )
        if self._audit is not None:
            self._audit.record(
                grant.org_id,
                grant.granted_by,
                "grant_created",
                f"grant/{grant.grant_id}",
                user_id=grant.user_id,
                api_id=grant.api_id,
                access_level=grant.access_level,
            )
        return grant

    # ------------------------------------------------------------------
    # Mutation
    # ------------------------------------------------------------------

    def revoke(
        self,
        grant_id: str,
        revoked_by: str,
        reason: Optional[str] = None,
        now: Optional[datetime] = None,
    ) -> bool:
        """Revoke a grant, preserving the first revocation stamp.

        Args:
            grant_id: Grant to revoke.
            revoked_by: User performing the revocation.
            reason: Optional reason.
            now: Revocation time (defaults to now).

        Returns:
            True if this call revoked the grant, False if it was already
            revoked (the first stamp is kept).

        Raises:
            NotFoundError: If the grant does not exist.
        """
        now = as_utc(now) or utcnow()
        with self._lock:
            grant = self._require(grant_id)
            if grant.revocation is not None:
                already = True
            else:
                already = False
                grant.revocation = Revocation(
                    revoked_at=now, revoked_by=revoked_by, reason=reason
                )
                grant.is_active = False
                grant.updated_at = now
        if already:
            logger.info(
                "Grant already revoked; keeping first revocation",
                extra={"grant_id": grant_id, "revoked_by": revoked_by},
            )
            return False
        logger.info(
            "Grant revoked",
            extra={"grant_id": grant_id, "revoked_by": revoked_by},
        )
        if self._audit is not None:
            self._audit.record(
                grant.org_id,
                revoked_by,
                "grant_revoked",
                f"grant/{grant_id}",
                reason=reason,
            )
        return True

    def record_usage(self, grant_id: str, now: Optional[datetime] = None) -> AccessGrant:
        """Count one use of a grant.

        ``first_used`` is set on the first call only.

        Raises:
            NotFoundError: If the grant does not exist.
        """
        now = as_utc(now) or utcnow()
        with self._lock:
            grant = self._require(grant_id)
            grant.usage_count += 1
            grant.last_used = now
            if grant.first_used is None:
                grant.first_used = now
            grant.updated_at = now
            snapshot = grant.model_copy(deep=True)
        return snapshot

    # ------------------------------------------------------------------
    # Queries
    # ------------------------------------------------------------------

    def get(self, grant_id: str) -> AccessGrant:
        """Return a grant by id.

        Raises:
            NotFoundError: If the grant does not exist.
        """
        with self._lock:
            return self._require(grant_id).model_copy(deep=True)

    def find_user_api_access(self, user_id: str, api_id: str) -> Optional[AccessGrant]:
        with self._lock:
            grant_id = self._by_user_api.get((user_id, api_id))
            return self._grants[grant_id].model_copy(deep=True) if grant_id else None

    def find_by_user(self, user_id: str) -> List[AccessGrant]:
        return self._newest_first(lambda g: g.user_id == user_id)

    def find_by_api(self, api_id: str) -> List[AccessGrant]:
        return self._newest_first(lambda g: g.api_id == api_id)

    def find_by_organization(self, org_id: str) -> List[AccessGrant]:
        return self._newest_first(lambda g: g.org_id == org_id)

    def active_grants(self, now: Optional[datetime] = None) -> List[AccessGrant]:
        """Grants that are valid at *now* under both validity bounds."""
        now = as_utc(now) or utcnow()
        return self._newest_first(lambda g: g.is_valid(now))

    def expiring_grants(
        self, days: Optional[int] = None, now: Optional[datetime] = None
    ) -> List[AccessGrant]:
        """Active grants whose ``valid_until`` falls in the next *days*.

        Returns:
            Grants sorted by ``valid_until`` ascending.
        """
        if days is None:
            days = get_settings().grants.expiring_window_days
        now = as_utc(now) or utcnow()
        with self._lock:
            expiring = [
                g.model_copy(deep=True) for g in self._grants.values()
                if g.is_active and g.is_expiring_soon(days, now)
            ]
        return sorted(expiring, key=lambda g: as_utc(g.valid_until))

    # ------------------------------------------------------------------
    # Internal helpers
    # ------------------------------------------------------------------

    def _require(self, grant_id: str) -> AccessGrant:
        grant = self._grants.get(grant_id)
        if grant is None:
            raise NotFoundError(f"Grant '{grant_id}' not found")
        return grant

    def _newest_first(self, predicate) -> List[AccessGrant]:
        with self._lock:
            matched = [
                g.model_copy(deep=True) for g in self._grants.values() if predicate(g)
            ]
        return sorted(matched, key=lambda g: as_utc(g.created_at), reverse=True)
