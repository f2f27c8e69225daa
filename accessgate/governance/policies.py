"""
Reusable access policies and their availability to organisations.

A policy bundles API access with rate/quota settings.  The availability
index records which organisations may issue credentials under a policy,
which is how one organisation's policy is shared with others while
keeping an auditable assignment trail.
"""

import logging
import threading
from datetime import datetime
from typing import Dict, List, Optional, Tuple
from uuid import uuid4

from pydantic import BaseModel, Field

from accessgate.exceptions import ConflictError, NotFoundError
from accessgate.governance.audit import AuditLogger
from accessgate.governance.clock import as_utc, utcnow
from accessgate.governance.credentials import AccessRight
from accessgate.governance.limits import RateLimits

logger = logging.getLogger(__name__)


# ── Data Models ────────────────────────────────────────


class PolicyAvailability(BaseModel):
    """One (organisation, policy) availability row.

    Attributes:
        org_id: Organisation allowed to use the policy.
        policy_id: Policy made available.
        assigned_by: User who (re)assigned it most recently.
        is_active: False once soft-disabled.
        assigned_at: Time of the most recent assignment.
    """

    org_id: str
    policy_id: str
    assigned_by: str
    is_active: bool = True
    assigned_at: datetime = Field(default_factory=utcnow)


class PolicyApiAccess(BaseModel):
    api_id: str
    api_name: Optional[str] = None
    versions: List[str] = Field(default_factory=lambda: ["Default"])
    allowed_urls: List[str] = Field(default_factory=list)


class Policy(BaseModel):
    """Reusable access policy.

    Attributes:
        policy_id: Unique identifier.
        name: Name, unique within the owner organisation.
        description: Optional description.
        owner_org_id: Organisation that owns and manages the policy.
        target_org_id: Organisation the policy is built for; None = owner.
        created_by: User who created the policy.
        gateway_policy_id: Policy identifier in the gateway.
        is_active: Whether credentials may be issued under the policy.
        rate_limit: Requests per ``rate_per`` seconds.
        rate_per: Rate window in seconds.
        quota_max: Quota per renewal period; ``-1`` is unlimited.
        quota_renewal_rate: Quota period in seconds.
        api_accesses: APIs the policy grants.
        tags: Free-form categorisation.
    """

    policy_id: str = Field(default_factory=lambda: uuid4().hex)
    name: str = Field(min_length=1, max_length=255)
    description: str = ""
    owner_org_id: str
    target_org_id: Optional[str] = None
    created_by: str
    gateway_policy_id: Optional[str] = None
    is_active: bool = True
    rate_limit: int = Field(default=1000, ge=1)
    rate_per: int = Field(default=60, ge=1)
    quota_max: int = Field(default=-1, ge=-1)
    quota_renewal_rate: int = Field(default=3600, ge=1)
    api_accesses: List[PolicyApiAccess] = Field(default_factory=list)
    tags: List[str] = Field(default_factory=list)
    created_at: datetime = Field(default_factory=utcnow)

    @property
    def is_cross_org(self) -> bool:
        return self.target_org_id is not None and self.target_org_id != self.owner_org_id

    @property
    def limits(self) -> RateLimits:
        return RateLimits(
            allowance=self.rate_limit,
            rate=self.rate_limit,
            per=self.rate_per,
            quota_max=self.quota_max,
            quota_renewal_rate=self.quota_renewal_rate,
        )

    def access_rights(self) -> Dict[str, AccessRight]:
        """Gateway access-rights mapping built from ``api_accesses``."""
        return {
            access.api_id: AccessRight(
                api_id=access.api_id,
                api_name=access.api_name or access.api_id,
                versions=list(access.versions),
                allowed_urls=list(access.allowed_urls),
            )
            for access in self.api_accesses
        }


# ── Availability index ─────────────────────────────────


class PolicyAvailabilityIndex:
    """Which policies each organisation may apply when issuing credentials.

    Args:
        audit: Optional audit trail for assignment events.
    """

    def __init__(self, audit: Optional[AuditLogger] = None) -> None:
        self._audit = audit
        self._lock = threading.Lock()
        # (org_id, policy_id) -> row
        self._rows: Dict[Tuple[str, str], PolicyAvailability] = {}
        logger.info("PolicyAvailabilityIndex initialised", extra={})

    def assign(
        self,
        policy_id: str,
        org_id: str,
        assigned_by: str,
        now: Optional[datetime] = None,
    ) -> PolicyAvailability:
        """Create or reactivate the (org, policy) row.

        Repeated assignment never duplicates the row; it refreshes
        ``assigned_by`` and ``assigned_at`` and sets ``is_active``.
        """
        now = as_utc(now) or utcnow()
        row = PolicyAvailability(
            org_id=org_id,
            policy_id=policy_id,
            assigned_by=assigned_by,
            is_active=True,
            assigned_at=now,
        )
        with self._lock:
            self._rows[(org_id, policy_id)] = row
        logger.info(
            "Policy assigned to organisation",
            extra={"policy_id": policy_id, "org_id": org_id, "assigned_by": assigned_by},
        )
        self._record(org_id, assigned_by, "policy_assigned", policy_id)
        return row

    def insert(
        self,
        policy_id: str,
        org_id: str,
        assigned_by: str,
        now: Optional[datetime] = None,
    ) -> PolicyAvailability:
        """Fresh insert of a row.

        Raises:
            ConflictError: If the (org, policy) pair already exists.
        """
        now = as_utc(now) or utcnow()
        with self._lock:
            if (org_id, policy_id) in self._rows:
                raise ConflictError(
                    f"Policy '{policy_id}' is already assigned to org '{org_id}'"
                )
            row = PolicyAvailability(
                org_id=org_id,
                policy_id=policy_id,
                assigned_by=assigned_by,
                assigned_at=now,
            )
            self._rows[(org_id, policy_id)] = row
        self._record(org_id, assigned_by, "policy_assigned", policy_id)
        return row

    def remove(self, policy_id: str, org_id: str, actor_id: Optional[str] = None) -> bool:
        """Hard-delete the row.  Returns True if a row was removed."""
        with self._lock:
            removed = self._rows.pop((org_id, policy_id), None) is not None
        if removed:
            logger.info(
                "Policy removed from organisation",
                extra={"policy_id": policy_id, "org_id": org_id},
            )
            self._record(org_id, actor_id, "policy_removed", policy_id)
        return removed

    def deactivate(
        self, policy_id: str, org_id: str, actor_id: Optional[str] = None
    ) -> bool:
        """Soft-disable the row, keeping it for audit.  Returns True if found."""
        with self._lock:
            row = self._rows.get((org_id, policy_id))
            if row is None:
                return False
            row.is_active = False
        logger.info(
            "Policy deactivated for organisation",
            extra={"policy_id": policy_id, "org_id": org_id},
        )
        self._record(org_id, actor_id, "policy_deactivated", policy_id)
        return True

    def is_available(self, policy_id: str, org_id: str) -> bool:
        with self._lock:
            row = self._rows.get((org_id, policy_id))
            return row is not None and row.is_active

    def find_by_organization(
        self, org_id: str, active_only: bool = True
    ) -> List[PolicyAvailability]:
        return self._newest_first(
            lambda r: r.org_id == org_id and (r.is_active or not active_only)
        )

    def find_by_policy(
        self, policy_id: str, active_only: bool = True
    ) -> List[PolicyAvailability]:
        return self._newest_first(
            lambda r: r.policy_id == policy_id and (r.is_active or not active_only)
        )

    def _newest_first(self, predicate) -> List[PolicyAvailability]:
        with self._lock:
            matched = [r.model_copy() for r in self._rows.values() if predicate(r)]
        return sorted(matched, key=lambda r: as_utc(r.assigned_at), reverse=True)

    def _record(
        self, org_id: str, actor_id: Optional[str], action: str, policy_id: str
    ) -> None:
        if self._audit is not None:
            self._audit.record(org_id, actor_id, action, f"policy/{policy_id}")


# ── Policy registry ────────────────────────────────────


class PolicyRegistry:
    """Policy definitions, made available through a PolicyAvailabilityIndex.

    Args:
        availability: Index that records which organisations may use a policy.
    """

    def __init__(self, availability: PolicyAvailabilityIndex) -> None:
        self._availability = availability
        self._lock = threading.Lock()
        self._policies: Dict[str, Policy] = {}
        logger.info("PolicyRegistry initialised", extra={})

    @property
    def availability(self) -> PolicyAvailabilityIndex:
        return self._availability

    def create_policy(
        self,
        policy: Policy,
        available_to: Optional[List[str]] = None,
    ) -> Policy:
        """Store a policy and make it available to its organisations.

        The policy becomes available to its owner, to its target
        organisation, and to every organisation in *available_to*.

        Raises:
            ConflictError: If the owner already has a policy with this name.
        """
        with self._lock:
            for existing in self._policies.values():
                if (
                    existing.owner_org_id == policy.owner_org_id
                    and existing.name == policy.name
                ):
                    raise ConflictError(
                        f"Policy name '{policy.name}' already used in org "
                        f"'{policy.owner_org_id}'"
                    )
            self._policies[policy.policy_id] = policy

        org_ids = [policy.owner_org_id]
        if policy.target_org_id:
            org_ids.append(policy.target_org_id)
        org_ids.extend(available_to or [])
        for org_id in dict.fromkeys(org_ids):
            self._availability.assign(policy.policy_id, org_id, policy.created_by)

        logger.info(
            "Policy created",
            extra={
                "policy_id": policy.policy_id,
                "owner_org_id": policy.owner_org_id,
                "cross_org": policy.is_cross_org,
            },
        )
        return policy

    def get_policy(self, policy_id: str) -> Policy:
        """Return a policy by id.

        Raises:
            NotFoundError: If the policy does not exist.
        """
        with self._lock:
            policy = self._policies.get(policy_id)
        if policy is None:
            raise NotFoundError(f"Policy '{policy_id}' not found")
        return policy

    def find_policy(self, policy_id: str) -> Optional[Policy]:
        with self._lock:
            return self._policies.get(policy_id)

    def find_by_owner(self, org_id: str) -> List[Policy]:
        with self._lock:
            owned = [p for p in self._policies.values() if p.owner_org_id == org_id]
        return sorted(owned, key=lambda p: as_utc(p.created_at), reverse=True)

    def available_for_organization(self, org_id: str) -> List[Policy]:
        """Active policies with an active availability row for *org_id*."""
        rows = self._availability.find_by_organization(org_id, active_only=True)
        policies = []
        for row in rows:
            policy = self.find_policy(row.policy_id)
            if policy is not None and policy.is_active:
                policies.append(policy)
        return policies

    def build_access_rights(self, policy_id: str) -> Dict[str, AccessRight]:
        return self.get_policy(policy_id).access_rights()
