"""
Authorization decisions for grants and credentials.

Given a grant or credential and a requested (API, path, version, time),
the evaluator returns ALLOW with the effective rate/quota limits, or DENY
with a reason code.  It never writes: callers record usage separately
(``GrantRegistry.record_usage`` / ``CredentialStore.update_usage_stats``)
once a request is allowed.
"""

import logging
from datetime import datetime
from enum import Enum
from typing import Optional, Union

from pydantic import BaseModel, ValidationError as PydanticValidationError

from accessgate.governance.clock import as_utc, utcnow
from accessgate.governance.config_store import ConfigStore
from accessgate.governance.credentials import AccessRight, Credential
from accessgate.governance.grants import AccessGrant
from accessgate.governance.limits import RateLimits, resolve_effective_limits
from accessgate.governance.paths import matches_any
from accessgate.governance.policies import (
    Policy,
    PolicyAvailabilityIndex,
    PolicyRegistry,
)

logger = logging.getLogger(__name__)

DEFAULT_RATE_LIMITS_KEY = "default_rate_limits"


class DenyReason(str, Enum):
    INACTIVE = "inactive"
    REVOKED = "revoked"
    API_NOT_GRANTED = "api_not_granted"
    POLICY_UNAVAILABLE = "policy_unavailable"
    NOT_YET_VALID = "not_yet_valid"
    EXPIRED = "expired"
    VERSION_NOT_ALLOWED = "version_not_allowed"
    PATH_NOT_ALLOWED = "path_not_allowed"
    PATH_RESTRICTED = "path_restricted"


class Decision(BaseModel):
    """Outcome of an authorization check.

    Attributes:
        allowed: Whether the request may proceed.
        reason: Why it was denied; None when allowed.
        limits: Effective limits; set only when allowed.
        subject_id: Grant or credential the decision was made for.
    """

    allowed: bool
    reason: Optional[DenyReason] = None
    limits: Optional[RateLimits] = None
    subject_id: str

    @classmethod
    def allow(cls, subject_id: str, limits: RateLimits) -> "Decision":
        return cls(allowed=True, limits=limits, subject_id=subject_id)

    @classmethod
    def deny(cls, subject_id: str, reason: DenyReason) -> "Decision":
        return cls(allowed=False, reason=reason, subject_id=subject_id)


class AuthorizationEvaluator:
    """Pure decision function over grants and credentials.

    Args:
        config_store: Source of the organisation-wide ``default_rate_limits``.
        policies: Policy definitions, for credentials issued under a policy.
        availability: Availability index; defaults to the registry's index.
    """

    def __init__(
        self,
        config_store: ConfigStore,
        policies: Optional[PolicyRegistry] = None,
        availability: Optional[PolicyAvailabilityIndex] = None,
    ) -> None:
        self._config_store = config_store
        self._policies = policies
        if availability is None and policies is not None:
            availability = policies.availability
        self._availability = availability

    def evaluate(
        self,
        subject: Union[AccessGrant, Credential],
        api_id: str,
        path: str,
        version: str = "Default",
        now: Optional[datetime] = None,
    ) -> Decision:
        if isinstance(subject, AccessGrant):
            return self.evaluate_grant(subject, api_id, path, version, now)
        return self.evaluate_credential(subject, api_id, path, version, now)

    # ------------------------------------------------------------------
    # Grants
    # ------------------------------------------------------------------

    def evaluate_grant(
        self,
        grant: AccessGrant,
        api_id: str,
        path: str,
        version: str = "Default",
        now: Optional[datetime] = None,
    ) -> Decision:
        now = as_utc(now) or utcnow()
        subject_id = grant.grant_id

        if grant.is_revoked:
            return self._deny(subject_id, DenyReason.REVOKED)
        if not grant.is_active:
            return self._deny(subject_id, DenyReason.INACTIVE)
        if grant.valid_from is not None and now < as_utc(grant.valid_from):
            return self._deny(subject_id, DenyReason.NOT_YET_VALID)
        if grant.is_expired(now):
            return self._deny(subject_id, DenyReason.EXPIRED)
        if grant.api_id != api_id:
            return self._deny(subject_id, DenyReason.API_NOT_GRANTED)
        if not grant.can_access_version(version):
            return self._deny(subject_id, DenyReason.VERSION_NOT_ALLOWED)
        if grant.allowed_paths and not matches_any(grant.allowed_paths, path):
            return self._deny(subject_id, DenyReason.PATH_NOT_ALLOWED)
        if grant.restricted_paths and matches_any(grant.restricted_paths, path):
            return self._deny(subject_id, DenyReason.PATH_RESTRICTED)

        limits = resolve_effective_limits(
            self._default_limits(),
            rate_override=grant.custom_rate_limits,
            quota_override=grant.custom_quota,
        )
        return Decision.allow(subject_id, limits)

    # ------------------------------------------------------------------
    # Credentials
    # ------------------------------------------------------------------

    def evaluate_credential(
        self,
        credential: Credential,
        api_id: str,
        path: str,
        version: str = "Default",
        now: Optional[datetime] = None,
    ) -> Decision:
        now = as_utc(now) or utcnow()
        subject_id = credential.credential_id

        if not credential.is_active:
            return self._deny(subject_id, DenyReason.INACTIVE)
        if credential.is_expired(now) or credential.is_certificate_expired(now):
            return self._deny(subject_id, DenyReason.EXPIRED)

        policy = self._policy_for(credential)
        if credential.policy_id is not None and not self._policy_usable(
            credential, policy
        ):
            return self._deny(subject_id, DenyReason.POLICY_UNAVAILABLE)

        right = self._access_right(credential, policy, api_id)
        if right is None:
            return self._deny(subject_id, DenyReason.API_NOT_GRANTED)
        if right.versions and version not in right.versions:
            return self._deny(subject_id, DenyReason.VERSION_NOT_ALLOWED)
        if right.allowed_urls and not matches_any(right.allowed_urls, path):
            return self._deny(subject_id, DenyReason.PATH_NOT_ALLOWED)

        limits = resolve_effective_limits(
            right.limit,
            credential.rate_limits,
            policy.limits if policy is not None else None,
            self._default_limits(),
        )
        return Decision.allow(subject_id, limits)

    # ------------------------------------------------------------------
    # Internal helpers
    # ------------------------------------------------------------------

    def _policy_for(self, credential: Credential) -> Optional[Policy]:
        if credential.policy_id is None or self._policies is None:
            return None
        return self._policies.find_policy(credential.policy_id)

    def _policy_usable(self, credential: Credential, policy: Optional[Policy]) -> bool:
        if self._policies is not None and (policy is None or not policy.is_active):
            return False
        if self._availability is not None:
            return self._availability.is_available(
                credential.policy_id, credential.org_id
            )
        return True

    @staticmethod
    def _access_right(
        credential: Credential, policy: Optional[Policy], api_id: str
    ) -> Optional[AccessRight]:
        right = credential.access_rights.get(api_id)
        if right is None and policy is not None:
            right = policy.access_rights().get(api_id)
        return right

    def _default_limits(self) -> Optional[RateLimits]:
        raw = self._config_store.get_value(DEFAULT_RATE_LIMITS_KEY)
        if raw is None:
            return None
        try:
            return RateLimits.model_validate(raw)
        except PydanticValidationError:
            logger.warning(
                "Ignoring malformed config value",
                extra={"key": DEFAULT_RATE_LIMITS_KEY},
            )
            return None

    @staticmethod
    def _deny(subject_id: str, reason: DenyReason) -> Decision:
        logger.debug(
            "Access denied",
            extra={"subject_id": subject_id, "reason": reason.value},
        )
        return Decision.deny(subject_id, reason)
