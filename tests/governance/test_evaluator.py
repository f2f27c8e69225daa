"""Tests for AuthorizationEvaluator decisions."""

from datetime import datetime, timedelta, timezone

import pytest

from accessgate.governance.config_store import ConfigStore
from accessgate.governance.credentials import (
    AccessRight,
    ApiKeyPayload,
    CertificatePayload,
    Credential,
)
from accessgate.governance.evaluator import AuthorizationEvaluator, DenyReason
from accessgate.governance.grants import AccessGrant, GrantRegistry
from accessgate.governance.limits import QuotaOverride, RateLimitOverride, RateLimits
from accessgate.governance.policies import (
    Policy,
    PolicyApiAccess,
    PolicyAvailabilityIndex,
    PolicyRegistry,
)

NOW = datetime(2025, 6, 1, 12, 0, tzinfo=timezone.utc)
ORG_DEFAULT = RateLimits(allowance=300, rate=300, per=60, quota_max=5000)


@pytest.fixture
def config_store() -> ConfigStore:
    store = ConfigStore()
    store.set_value("default_rate_limits", ORG_DEFAULT.model_dump(), updated_by="admin")
    return store


@pytest.fixture
def policies() -> PolicyRegistry:
    return PolicyRegistry(PolicyAvailabilityIndex())


@pytest.fixture
def evaluator(config_store: ConfigStore, policies: PolicyRegistry) -> AuthorizationEvaluator:
    return AuthorizationEvaluator(config_store, policies=policies)


def _grant(**overrides) -> AccessGrant:
    fields = dict(
        user_id="user-1",
        api_id="payments",
        org_id="org-1",
        granted_by="admin-1",
        allowed_paths=["/v1/*", "/health"],
        restricted_paths=["/v1/admin*"],
    )
    fields.update(overrides)
    return AccessGrant(**fields)


def _api_key_credential(**overrides) -> Credential:
    fields = dict(
        user_id="user-1",
        org_id="org-1",
        name="key",
        payload=ApiKeyPayload(key_display_prefix="agk_org-_abc", key_hash="x"),
        access_rights={
            "payments": AccessRight(api_id="payments", allowed_urls=["/v1/*"])
        },
    )
    fields.update(overrides)
    return Credential(**fields)


# ── Grants ─────────────────────────────────────────────


class TestGrantDecisions:
    def test_allow_with_org_default_limits(self, evaluator: AuthorizationEvaluator) -> None:
        decision = evaluator.evaluate(_grant(), "payments", "/v1/users", now=NOW)
        assert decision.allowed is True
        assert decision.reason is None
        assert decision.limits == ORG_DEFAULT

    def test_path_rules(self, evaluator: AuthorizationEvaluator) -> None:
        grant = _grant()
        restricted = evaluator.evaluate(grant, "payments", "/v1/admin/users", now=NOW)
        outside = evaluator.evaluate(grant, "payments", "/other", now=NOW)
        assert restricted.reason == DenyReason.PATH_RESTRICTED
        assert outside.reason == DenyReason.PATH_NOT_ALLOWED
        assert evaluator.evaluate(grant, "payments", "/health", now=NOW).allowed

    def test_inactive_and_revoked(self, evaluator: AuthorizationEvaluator) -> None:
        inactive = _grant(is_active=False)
        assert evaluator.evaluate(inactive, "payments", "/v1/x", now=NOW).reason == (
            DenyReason.INACTIVE
        )

        registry = GrantRegistry()
        grant = registry.create_grant(_grant())
        registry.revoke(grant.grant_id, "admin-1")
        revoked = registry.get(grant.grant_id)
        decision = evaluator.evaluate(revoked, "payments", "/v1/x", now=NOW)
        assert decision.allowed is False
        assert decision.reason == DenyReason.REVOKED

    def test_time_bounds(self, evaluator: AuthorizationEvaluator) -> None:
        future = _grant(valid_from=NOW + timedelta(days=1))
        expired = _grant(valid_until=NOW - timedelta(seconds=1))
        edge = _grant(valid_until=NOW)
        assert evaluator.evaluate(future, "payments", "/v1/x", now=NOW).reason == (
            DenyReason.NOT_YET_VALID
        )
        assert evaluator.evaluate(expired, "payments", "/v1/x", now=NOW).reason == (
            DenyReason.EXPIRED
        )
        assert evaluator.evaluate(edge, "payments", "/v1/x", now=NOW).allowed is True

    def test_wrong_api(self, evaluator: AuthorizationEvaluator) -> None:
        decision = evaluator.evaluate(_grant(), "ledger", "/v1/x", now=NOW)
        assert decision.reason == DenyReason.API_NOT_GRANTED

    def test_version(self, evaluator: AuthorizationEvaluator) -> None:
        decision = evaluator.evaluate(_grant(), "payments", "/v1/x", version="v2", now=NOW)
        assert decision.reason == DenyReason.VERSION_NOT_ALLOWED

    def test_overrides_applied(self, evaluator: AuthorizationEvaluator) -> None:
        grant = _grant(
            custom_rate_limits=RateLimitOverride(rate=10, per=1),
            custom_quota=QuotaOverride(quota_max=100, quota_renewal_rate=86400),
        )
        limits = evaluator.evaluate(grant, "payments", "/v1/x", now=NOW).limits
        assert (limits.rate, limits.per, limits.allowance) == (10, 1, 10)
        assert (limits.quota_max, limits.quota_renewal_rate) == (100, 86400)

    def test_evaluation_does_not_mutate(self, evaluator: AuthorizationEvaluator) -> None:
        grant = _grant()
        evaluator.evaluate(grant, "payments", "/v1/x", now=NOW)
        assert grant.usage_count == 0
        assert grant.last_used is None


# ── Credentials ────────────────────────────────────────


class TestCredentialDecisions:
    def test_allow_api_key(self, evaluator: AuthorizationEvaluator) -> None:
        decision = evaluator.evaluate(_api_key_credential(), "payments", "/v1/users", now=NOW)
        assert decision.allowed is True
        assert decision.limits == ORG_DEFAULT

    def test_expired_certificate_denied_even_when_active(
        self, evaluator: AuthorizationEvaluator
    ) -> None:
        credential = _api_key_credential(
            payload=CertificatePayload(
                certificate_id="cert-1",
                fingerprint="ff",
                expires_at=NOW - timedelta(days=1),
            ),
        )
        assert credential.is_active is True
        assert credential.is_certificate_expired(NOW) is True
        decision = evaluator.evaluate(credential, "payments", "/v1/users", now=NOW)
        assert decision.allowed is False
        assert decision.reason == DenyReason.EXPIRED

    def test_expired_key(self, evaluator: AuthorizationEvaluator) -> None:
        credential = _api_key_credential(expires_at=NOW - timedelta(minutes=1))
        decision = evaluator.evaluate(credential, "payments", "/v1/users", now=NOW)
        assert decision.reason == DenyReason.EXPIRED

    def test_inactive(self, evaluator: AuthorizationEvaluator) -> None:
        credential = _api_key_credential(is_active=False)
        decision = evaluator.evaluate(credential, "payments", "/v1/users", now=NOW)
        assert decision.reason == DenyReason.INACTIVE

    def test_api_version_and_url(self, evaluator: AuthorizationEvaluator) -> None:
        credential = _api_key_credential()
        assert evaluator.evaluate(credential, "ledger", "/v1/x", now=NOW).reason == (
            DenyReason.API_NOT_GRANTED
        )
        assert evaluator.evaluate(
            credential, "payments", "/v1/x", version="v3", now=NOW
        ).reason == DenyReason.VERSION_NOT_ALLOWED
        assert evaluator.evaluate(credential, "payments", "/v2/x", now=NOW).reason == (
            DenyReason.PATH_NOT_ALLOWED
        )

    def test_limit_precedence(self, evaluator: AuthorizationEvaluator) -> None:
        credential_limits = RateLimits(allowance=20, rate=20, per=1, quota_max=-1)
        right_limits = RateLimits(allowance=5, rate=5, per=1, quota_max=50)
        credential = _api_key_credential(rate_limits=credential_limits)
        assert evaluator.evaluate(credential, "payments", "/v1/x", now=NOW).limits == (
            credential_limits
        )

        credential.access_rights["payments"].limit = right_limits
        assert evaluator.evaluate(credential, "payments", "/v1/x", now=NOW).limits == (
            right_limits
        )


class TestPolicyCredentials:
    def _shared_policy(self, policies: PolicyRegistry) -> Policy:
        return policies.create_policy(
            Policy(
                name="gold",
                owner_org_id="org-owner",
                created_by="admin-1",
                rate_limit=42,
                rate_per=10,
                api_accesses=[PolicyApiAccess(api_id="ledger", versions=["Default"])],
            ),
            available_to=["org-1"],
        )

    def test_policy_rights_and_limits(
        self, evaluator: AuthorizationEvaluator, policies: PolicyRegistry
    ) -> None:
        policy = self._shared_policy(policies)
        credential = _api_key_credential(policy_id=policy.policy_id, access_rights={})
        decision = evaluator.evaluate(credential, "ledger", "/anything", now=NOW)
        assert decision.allowed is True
        assert decision.limits == policy.limits

    def test_policy_no_longer_available(
        self, evaluator: AuthorizationEvaluator, policies: PolicyRegistry
    ) -> None:
        policy = self._shared_policy(policies)
        policies.availability.deactivate(policy.policy_id, "org-1")
        credential = _api_key_credential(policy_id=policy.policy_id)
        decision = evaluator.evaluate(credential, "ledger", "/x", now=NOW)
        assert decision.reason == DenyReason.POLICY_UNAVAILABLE

    def test_unknown_policy(self, evaluator: AuthorizationEvaluator) -> None:
        credential = _api_key_credential(policy_id="missing")
        decision = evaluator.evaluate(credential, "payments", "/v1/x", now=NOW)
        assert decision.reason == DenyReason.POLICY_UNAVAILABLE


class TestDefaultLimits:
    def test_settings_fallback_without_config(self) -> None:
        evaluator = AuthorizationEvaluator(ConfigStore())
        limits = evaluator.evaluate(_grant(), "payments", "/v1/x", now=NOW).limits
        assert limits == RateLimits(
            allowance=1000, rate=100, per=60, quota_max=10000, quota_renewal_rate=3600
        )

    def test_malformed_config_value_ignored(self) -> None:
        store = ConfigStore()
        store.set_value("default_rate_limits", {"rate": "fast"})
        evaluator = AuthorizationEvaluator(store)
        decision = evaluator.evaluate(_grant(), "payments", "/v1/x", now=NOW)
        assert decision.allowed is True
        assert decision.limits.rate == 100

    def test_inactive_config_entry_ignored(self, config_store: ConfigStore) -> None:
        config_store.set_active("default_rate_limits", False)
        evaluator = AuthorizationEvaluator(config_store)
        limits = evaluator.evaluate(_grant(), "payments", "/v1/x", now=NOW).limits
        assert limits.rate == 100
