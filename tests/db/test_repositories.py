"""Tests for the SQLAlchemy repositories against in-memory SQLite."""

import threading
from datetime import datetime, timedelta, timezone

import pytest

from accessgate.db import (
    ConfigRepository,
    CredentialRepository,
    EmailPatternRepository,
    GrantRepository,
    PolicyAvailabilityRepository,
    get_engine,
    get_session_factory,
    init_db,
)
from accessgate.exceptions import ConflictError, NotFoundError, ValidationError
from accessgate.governance.credentials import (
    ApiKeyPayload,
    CertificatePayload,
    Credential,
    CredentialStore,
    HmacPayload,
)
from accessgate.governance.grants import AccessGrant
from accessgate.governance.limits import QuotaOverride, RateLimitOverride, RateLimits

NOW = datetime(2025, 6, 1, 12, 0, tzinfo=timezone.utc)


@pytest.fixture
def session_factory():
    engine = get_engine("sqlite://")
    init_db(engine)
    yield get_session_factory(engine)
    engine.dispose()


@pytest.fixture
def file_session_factory(tmp_path):
    """File-backed SQLite so each thread gets its own connection."""
    engine = get_engine(f"sqlite:///{tmp_path / 'concurrency.db'}")
    init_db(engine)
    yield get_session_factory(engine)
    engine.dispose()


def _run_concurrently(target, workers: int = 8) -> None:
    """Start *workers* threads together and re-raise the first failure."""
    barrier = threading.Barrier(workers)
    errors = []

    def run() -> None:
        barrier.wait()
        try:
            target()
        except Exception as e:  # re-raised below
            errors.append(e)

    threads = [threading.Thread(target=run) for _ in range(workers)]
    for t in threads:
        t.start()
    for t in threads:
        t.join()
    if errors:
        raise errors[0]


def _grant(**overrides) -> AccessGrant:
    fields = dict(
        user_id="user-1",
        api_id="payments",
        org_id="org-1",
        granted_by="admin-1",
        allowed_paths=["/v1/*"],
        restricted_paths=["/v1/admin*"],
    )
    fields.update(overrides)
    return AccessGrant(**fields)


def _certificate(expires_at: datetime, **overrides) -> Credential:
    fields = dict(
        user_id="user-1",
        org_id="org-1",
        name="mtls",
        payload=CertificatePayload(
            certificate_id="cert-1", fingerprint="ab" * 32, expires_at=expires_at
        ),
    )
    fields.update(overrides)
    return Credential(**fields)


# ── Grants ─────────────────────────────────────────────


class TestGrantRepository:
    @pytest.fixture
    def repo(self, session_factory) -> GrantRepository:
        return GrantRepository(session_factory)

    def test_round_trip_preserves_fields(self, repo: GrantRepository) -> None:
        grant = _grant(
            valid_from=NOW,
            valid_until=NOW + timedelta(days=30),
            custom_rate_limits=RateLimitOverride(rate=10, per=1),
            custom_quota=QuotaOverride(quota_max=100),
        )
        grant.metadata.tags.append("pilot")
        stored = repo.create(grant)

        assert stored.grant_id == grant.grant_id
        assert stored.valid_from == NOW
        assert stored.valid_until.tzinfo is not None
        assert stored.custom_rate_limits == RateLimitOverride(rate=10, per=1)
        assert stored.custom_quota.quota_max == 100
        assert stored.restricted_paths == ["/v1/admin*"]
        assert stored.metadata.tags == ["pilot"]
        assert stored.can_access_path("/v1/admin/users") is False

    def test_duplicate_user_api_conflicts(self, repo: GrantRepository) -> None:
        repo.create(_grant())
        with pytest.raises(ConflictError):
            repo.create(_grant())

    def test_inverted_bounds_rejected(self, repo: GrantRepository) -> None:
        with pytest.raises(ValidationError):
            repo.create(_grant(valid_from=NOW, valid_until=NOW - timedelta(days=1)))

    def test_record_usage_increments_in_sql(self, repo: GrantRepository) -> None:
        grant = repo.create(_grant())
        for i in range(3):
            repo.record_usage(grant.grant_id, now=NOW + timedelta(minutes=i))

        stored = repo.get(grant.grant_id)
        assert stored.usage_count == 3
        assert stored.first_used == NOW
        assert stored.last_used == NOW + timedelta(minutes=2)

    def test_record_usage_missing(self, repo: GrantRepository) -> None:
        with pytest.raises(NotFoundError):
            repo.record_usage("missing")

    def test_offset_datetimes_stored_as_utc(self, repo: GrantRepository) -> None:
        plus_two = timezone(timedelta(hours=2))
        grant = repo.create(
            _grant(valid_until=datetime(2025, 6, 1, 13, 0, tzinfo=plus_two))
        )

        assert repo.get(grant.grant_id).valid_until == datetime(
            2025, 6, 1, 11, 0, tzinfo=timezone.utc
        )
        assert repo.active_grants(NOW) == []
        assert repo.active_grants(NOW - timedelta(hours=1))[0].grant_id == grant.grant_id

        repo.record_usage(grant.grant_id, now=datetime(2025, 6, 1, 14, 0, tzinfo=plus_two))
        assert repo.get(grant.grant_id).last_used == NOW

    def test_concurrent_record_usage(self, file_session_factory) -> None:
        repo = GrantRepository(file_session_factory)
        grant = repo.create(_grant())

        def hammer() -> None:
            for _ in range(25):
                repo.record_usage(grant.grant_id)

        _run_concurrently(hammer)
        assert repo.get(grant.grant_id).usage_count == 200

    def test_revoke_preserves_first(self, repo: GrantRepository) -> None:
        grant = repo.create(_grant())
        assert repo.revoke(grant.grant_id, "admin-2", "first", now=NOW) is True
        assert repo.revoke(grant.grant_id, "admin-3", "second") is False

        stored = repo.get(grant.grant_id)
        assert stored.is_active is False
        assert stored.revocation.revoked_by == "admin-2"
        assert stored.revocation.reason == "first"
        assert stored.revocation.revoked_at == NOW

    def test_revoke_missing(self, repo: GrantRepository) -> None:
        with pytest.raises(NotFoundError):
            repo.revoke("missing", "admin-1")

    def test_active_and_expiring(self, repo: GrantRepository) -> None:
        soon = repo.create(_grant(user_id="u1", valid_until=NOW + timedelta(days=2)))
        later = repo.create(_grant(user_id="u2", valid_until=NOW + timedelta(days=5)))
        repo.create(_grant(user_id="u3", valid_until=NOW - timedelta(days=1)))
        repo.create(_grant(user_id="u4", valid_from=NOW + timedelta(days=1)))
        boundary = repo.create(_grant(user_id="u5", valid_from=NOW, valid_until=NOW))

        active_ids = {g.grant_id for g in repo.active_grants(NOW)}
        assert active_ids == {soon.grant_id, later.grant_id, boundary.grant_id}

        expiring = repo.expiring_grants(days=7, now=NOW)
        assert [g.grant_id for g in expiring] == [soon.grant_id, later.grant_id]

    def test_finders(self, repo: GrantRepository) -> None:
        grant = repo.create(_grant())
        repo.create(_grant(user_id="user-2", org_id="org-2"))
        assert repo.find_user_api_access("user-1", "payments").grant_id == grant.grant_id
        assert repo.find_user_api_access("user-1", "ledger") is None
        assert len(repo.find_by_api("payments")) == 2
        assert len(repo.find_by_user("user-2")) == 1
        assert len(repo.find_by_organization("org-1")) == 1


# ── Credentials ────────────────────────────────────────


class TestCredentialRepository:
    @pytest.fixture
    def repo(self, session_factory) -> CredentialRepository:
        return CredentialRepository(session_factory)

    def test_hmac_secret_survives_storage(self, repo: CredentialRepository) -> None:
        credential, secret = CredentialStore().issue_hmac("user-1", "org-1", "signer")
        stored = repo.store(credential)
        assert isinstance(stored.payload, HmacPayload)
        assert stored.payload.secret.get_secret_value() == secret
        assert secret not in str(stored.to_safe_object())

    def test_api_key_payload(self, repo: CredentialRepository) -> None:
        credential, _ = CredentialStore().issue_api_key(
            "user-1", "org-1", "key", rate_limits=RateLimits(rate=5, allowance=5)
        )
        stored = repo.store(credential)
        assert isinstance(stored.payload, ApiKeyPayload)
        assert stored.payload.key_hash == credential.payload.key_hash
        assert stored.rate_limits.rate == 5

    def test_usage_and_errors(self, repo: CredentialRepository) -> None:
        credential = repo.store(_certificate(NOW + timedelta(days=90)))
        repo.update_usage_stats(credential.credential_id, now=NOW)
        repo.update_usage_stats(credential.credential_id, now=NOW + timedelta(seconds=5))
        stored = repo.record_error(credential.credential_id)

        assert stored.usage_stats.total_requests == 2
        assert stored.usage_stats.error_count == 1
        assert stored.usage_stats.last_request_date == NOW + timedelta(seconds=5)
        assert stored.last_used == NOW + timedelta(seconds=5)

    def test_concurrent_usage_stats(self, file_session_factory) -> None:
        repo = CredentialRepository(file_session_factory)
        credential = repo.store(_certificate(NOW + timedelta(days=90)))

        def hammer() -> None:
            for _ in range(25):
                repo.update_usage_stats(credential.credential_id)
                repo.record_error(credential.credential_id)

        _run_concurrently(hammer)
        stats = repo.get(credential.credential_id).usage_stats
        assert stats.total_requests == 200
        assert stats.error_count == 200

    def test_access_rights(self, repo: CredentialRepository) -> None:
        credential = repo.store(_certificate(NOW + timedelta(days=90)))
        repo.add_api_access(credential.credential_id, "payments", "Payments", ["v1"])
        stored = repo.add_api_access(credential.credential_id, "payments", None, ["v2"])
        assert stored.access_rights["payments"].versions == ["v2"]

        stored = repo.remove_api_access(credential.credential_id, "payments")
        assert stored.access_rights == {}
        stored = repo.remove_api_access(credential.credential_id, "payments")
        assert stored.access_rights == {}

    def test_lookups(self, repo: CredentialRepository) -> None:
        credential = repo.store(_certificate(NOW + timedelta(days=10)))
        repo.attach_gateway_identifiers(credential.credential_id, "gw-1", "hash")

        assert repo.find_by_gateway_key_id("gw-1").credential_id == credential.credential_id
        assert repo.find_by_certificate_id("cert-1").credential_id == credential.credential_id
        assert repo.find_by_certificate_id("other") is None
        assert len(repo.find_by_user("user-1")) == 1
        assert len(repo.find_by_organization("org-1")) == 1

    def test_expiring_certificates_and_deactivate(self, repo: CredentialRepository) -> None:
        soon = repo.store(_certificate(NOW + timedelta(days=3)))
        repo.store(_certificate(NOW + timedelta(days=300), name="later"))
        repo.store(_certificate(NOW - timedelta(days=1), name="expired"))

        expiring = repo.expiring_certificates(days=30, now=NOW)
        assert [c.credential_id for c in expiring] == [soon.credential_id]
        assert expiring[0].is_certificate_expiring_soon(30, NOW) is True

        repo.deactivate(soon.credential_id)
        assert repo.expiring_certificates(days=30, now=NOW) == []
        assert len(repo.active_credentials()) == 2

    def test_missing_credential(self, repo: CredentialRepository) -> None:
        with pytest.raises(NotFoundError):
            repo.update_usage_stats("missing")
        with pytest.raises(NotFoundError):
            repo.add_api_access("missing", "payments")


# ── Policy availability ────────────────────────────────


class TestPolicyAvailabilityRepository:
    @pytest.fixture
    def repo(self, session_factory) -> PolicyAvailabilityRepository:
        return PolicyAvailabilityRepository(session_factory)

    def test_assign_upserts_single_row(self, repo: PolicyAvailabilityRepository) -> None:
        repo.assign("pol-1", "org-a", "admin-1", now=NOW)
        repo.deactivate("pol-1", "org-a")
        row = repo.assign("pol-1", "org-a", "admin-2", now=NOW + timedelta(hours=1))

        assert row.is_active is True
        assert row.assigned_by == "admin-2"
        assert row.assigned_at == NOW + timedelta(hours=1)
        assert len(repo.find_by_organization("org-a", active_only=False)) == 1

    def test_racing_assigns_leave_one_row(self, file_session_factory) -> None:
        repo = PolicyAvailabilityRepository(file_session_factory)
        repo.assign("pol-1", "org-a", "admin-0", now=NOW)
        repo.deactivate("pol-1", "org-a")

        def assign() -> None:
            for _ in range(10):
                repo.assign("pol-1", "org-a", "admin-1")
                repo.assign("pol-2", "org-a", "admin-1")

        _run_concurrently(assign)
        rows = repo.find_by_organization("org-a", active_only=False)
        assert sorted(r.policy_id for r in rows) == ["pol-1", "pol-2"]
        assert all(r.is_active for r in rows)
        assert repo.is_available("pol-1", "org-a") is True

    def test_insert_conflict(self, repo: PolicyAvailabilityRepository) -> None:
        repo.insert("pol-1", "org-a", "admin-1")
        with pytest.raises(ConflictError):
            repo.insert("pol-1", "org-a", "admin-1")

    def test_deactivate_and_remove(self, repo: PolicyAvailabilityRepository) -> None:
        repo.assign("pol-1", "org-a", "admin-1")
        repo.assign("pol-1", "org-b", "admin-1")

        assert repo.deactivate("pol-1", "org-a") is True
        assert repo.is_available("pol-1", "org-a") is False
        assert [r.org_id for r in repo.find_by_policy("pol-1")] == ["org-b"]
        assert len(repo.find_by_policy("pol-1", active_only=False)) == 2

        assert repo.remove("pol-1", "org-b") is True
        assert repo.remove("pol-1", "org-b") is False
        assert repo.is_available("pol-1", "org-b") is False


# ── Email patterns and config ──────────────────────────


class TestEmailPatternRepository:
    @pytest.fixture
    def repo(self, session_factory) -> EmailPatternRepository:
        return EmailPatternRepository(session_factory)

    def test_allowlist(self, repo: EmailPatternRepository) -> None:
        assert repo.is_email_allowed("a@example.com") is False
        repo.add_pattern("@Example.com")
        assert repo.is_email_allowed("A@EXAMPLE.COM") is True

        repo.set_active("@example.com", False)
        assert repo.is_email_allowed("a@example.com") is False

    def test_duplicate_and_remove(self, repo: EmailPatternRepository) -> None:
        repo.add_pattern("*@corp.io")
        with pytest.raises(ConflictError):
            repo.add_pattern("*@CORP.io")
        assert repo.remove_pattern("*@corp.io") is True
        assert repo.active_patterns() == []

    def test_too_short(self, repo: EmailPatternRepository) -> None:
        with pytest.raises(ValidationError):
            repo.add_pattern("@a")


class TestConfigRepository:
    @pytest.fixture
    def repo(self, session_factory) -> ConfigRepository:
        return ConfigRepository(session_factory)

    def test_upsert(self, repo: ConfigRepository) -> None:
        repo.set_value("gateway_url", "https://gw", updated_by="alice", description="gw")
        entry = repo.set_value("gateway_url", "https://gw2", updated_by="bob")

        assert entry.value == "https://gw2"
        assert entry.created_by == "alice"
        assert entry.updated_by == "bob"
        assert entry.description == "gw"
        assert repo.get_gateway_config() == {"gateway_url": "https://gw2"}

    def test_structured_value_and_activation(self, repo: ConfigRepository) -> None:
        repo.set_value("default_rate_limits", {"rate": 10, "per": 1})
        assert repo.get_value("default_rate_limits") == {"rate": 10, "per": 1}

        repo.set_active("default_rate_limits", False)
        assert repo.get_value("default_rate_limits", "none") == "none"
        assert repo.get_multiple(["default_rate_limits"]) == {}

    def test_set_active_missing(self, repo: ConfigRepository) -> None:
        with pytest.raises(NotFoundError):
            repo.set_active("missing", True)
