"""
Repositories for grants, credentials, policy availability, email patterns
and runtime configuration (PostgreSQL or SQLite).

Each method opens its own session and closes it before returning.  Writes
that can race are done as single statements: counters are incremented in
SQL, revocation is a compare-and-set on ``revoked_at IS NULL``, and
availability/config upserts use ``INSERT ... ON CONFLICT DO UPDATE``.
Rows are returned as the governance models, never as ORM instances.
"""

from __future__ import annotations

import logging
from datetime import datetime, timedelta
from typing import Any, Callable, Dict, Iterable, List, Optional, Sequence

from sqlalchemy import delete, func, select, update
from sqlalchemy.dialects.postgresql import insert as pg_insert
from sqlalchemy.dialects.sqlite import insert as sqlite_insert
from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import Session

from accessgate.config import get_settings
from accessgate.db.models import (
    ConfigEntryModel,
    CredentialModel,
    EmailPatternModel,
    GrantModel,
    PolicyAvailabilityModel,
)
from accessgate.exceptions import ConflictError, NotFoundError, ValidationError
from accessgate.governance.clock import as_utc, utcnow
from accessgate.governance.config_store import (
    AUTH_CONFIG_KEYS,
    GATEWAY_CONFIG_KEYS,
    ConfigEntry,
)
from accessgate.governance.credentials import (
    AccessRight,
    CertificatePayload,
    Credential,
    HmacPayload,
    UsageStats,
)
from accessgate.governance.email_gate import EmailPattern, normalize_pattern
from accessgate.governance.grants import AccessGrant, Revocation
from accessgate.governance.policies import PolicyAvailability

logger = logging.getLogger(__name__)

SessionFactory = Callable[[], Session]


def _upsert(
    session: Session,
    model: type,
    values: Dict[str, Any],
    index_elements: Sequence[str],
    update_fields: Sequence[str],
) -> None:
    """Dialect-specific ``INSERT ... ON CONFLICT (...) DO UPDATE``."""
    dialect = session.get_bind().dialect.name
    if dialect == "postgresql":
        stmt = pg_insert(model).values(**values)
    elif dialect == "sqlite":
        stmt = sqlite_insert(model).values(**values)
    else:
        raise NotImplementedError(f"Upsert not supported for dialect '{dialect}'")
    stmt = stmt.on_conflict_do_update(
        index_elements=list(index_elements),
        set_={field: stmt.excluded[field] for field in update_fields},
    )
    session.execute(stmt)


def _commit(session: Session, conflict_message: str) -> None:
    try:
        session.commit()
    except IntegrityError as e:
        session.rollback()
        raise ConflictError(conflict_message) from e


# ── Grants ─────────────────────────────────────────────


def _grant_from_row(row: GrantModel) -> AccessGrant:
    revocation = None
    if row.revoked_at is not None:
        revocation = Revocation(
            revoked_at=as_utc(row.revoked_at),
            revoked_by=row.revoked_by,
            reason=row.revocation_reason,
        )
    return AccessGrant(
        grant_id=row.id,
        user_id=row.user_id,
        api_id=row.api_id,
        org_id=row.org_id,
        access_level=row.access_level,
        granted_by=row.granted_by,
        custom_rate_limits=row.custom_rate_limits,
        custom_quota=row.custom_quota,
        allowed_versions=list(row.allowed_versions or []),
        allowed_paths=list(row.allowed_paths or []),
        restricted_paths=list(row.restricted_paths or []),
        valid_from=as_utc(row.valid_from),
        valid_until=as_utc(row.valid_until),
        is_active=row.is_active,
        revocation=revocation,
        first_used=as_utc(row.first_used),
        last_used=as_utc(row.last_used),
        usage_count=row.usage_count,
        metadata=row.grant_metadata or {},
        created_at=as_utc(row.created_at),
        updated_at=as_utc(row.updated_at),
    )


class GrantRepository:
    """Repository for the access_grants table.

    Args:
        session_factory: Callable that returns a new Session (e.g. from get_session_factory).
    """

    def __init__(self, session_factory: SessionFactory) -> None:
        self._session_factory = session_factory

    def create(self, grant: AccessGrant) -> AccessGrant:
        """Insert a new grant.

        Raises:
            ValidationError: If ``valid_from`` is after ``valid_until``.
            ConflictError: If the user already holds a grant for the API.
        """
        valid_from = as_utc(grant.valid_from)
        valid_until = as_utc(grant.valid_until)
        if valid_from is not None and valid_until is not None and valid_from > valid_until:
            raise ValidationError(
                f"valid_from {valid_from.isoformat()} is after "
                f"valid_until {valid_until.isoformat()}"
            )
        session: Session = self._session_factory()
        try:
            row = GrantModel(
                id=grant.grant_id,
                user_id=grant.user_id,
                api_id=grant.api_id,
                org_id=grant.org_id,
                access_level=grant.access_level,
                granted_by=grant.granted_by,
                custom_rate_limits=(
                    grant.custom_rate_limits.model_dump()
                    if grant.custom_rate_limits else None
                ),
                custom_quota=grant.custom_quota.model_dump() if grant.custom_quota else None,
                allowed_versions=list(grant.allowed_versions),
                allowed_paths=list(grant.allowed_paths),
                restricted_paths=list(grant.restricted_paths),
                valid_from=valid_from,
                valid_until=valid_until,
                is_active=grant.is_active,
                revoked_at=as_utc(grant.revocation.revoked_at) if grant.revocation else None,
                revoked_by=grant.revocation.revoked_by if grant.revocation else None,
                revocation_reason=grant.revocation.reason if grant.revocation else None,
                first_used=as_utc(grant.first_used),
                last_used=as_utc(grant.last_used),
                usage_count=grant.usage_count,
                grant_metadata=grant.metadata.model_dump(),
                created_at=as_utc(grant.created_at),
                updated_at=as_utc(grant.updated_at),
            )
            session.add(row)
            _commit(
                session,
                f"User '{grant.user_id}' already has a grant for API '{grant.api_id}'",
            )
            logger.info(
                "Grant stored",
                extra={"grant_id": grant.grant_id, "org_id": grant.org_id},
            )
            return self._get(session, grant.grant_id)
        finally:
            session.close()

    def revoke(
        self,
        grant_id: str,
        revoked_by: str,
        reason: Optional[str] = None,
        now: Optional[datetime] = None,
    ) -> bool:
        """Compare-and-set revocation; the first revocation wins.

        Returns:
            True if this call revoked the grant, False if already revoked.

        Raises:
            NotFoundError: If the grant does not exist.
        """
        now = as_utc(now) or utcnow()
        session: Session = self._session_factory()
        try:
            stmt = (
                update(GrantModel)
                .where(GrantModel.id == grant_id, GrantModel.revoked_at.is_(None))
                .values(
                    revoked_at=now,
                    revoked_by=revoked_by,
                    revocation_reason=reason,
                    is_active=False,
                    updated_at=now,
                )
            )
            result = session.execute(stmt)
            session.commit()
            if result.rowcount:
                logger.info(
                    "Grant revoked",
                    extra={"grant_id": grant_id, "revoked_by": revoked_by},
                )
                return True
            self._get(session, grant_id)
            return False
        finally:
            session.close()

    def record_usage(self, grant_id: str, now: Optional[datetime] = None) -> AccessGrant:
        """Increment ``usage_count`` in a single UPDATE.

        Raises:
            NotFoundError: If the grant does not exist.
        """
        now = as_utc(now) or utcnow()
        session: Session = self._session_factory()
        try:
            stmt = (
                update(GrantModel)
                .where(GrantModel.id == grant_id)
                .values(
                    usage_count=GrantModel.usage_count + 1,
                    last_used=now,
                    first_used=func.coalesce(GrantModel.first_used, now),
                    updated_at=now,
                )
            )
            result = session.execute(stmt)
            session.commit()
            if not result.rowcount:
                raise NotFoundError(f"Grant '{grant_id}' not found")
            return self._get(session, grant_id)
        finally:
            session.close()

    def get(self, grant_id: str) -> AccessGrant:
        """Return a grant by id.

        Raises:
            NotFoundError: If the grant does not exist.
        """
        session: Session = self._session_factory()
        try:
            return self._get(session, grant_id)
        finally:
            session.close()

    def find_user_api_access(self, user_id: str, api_id: str) -> Optional[AccessGrant]:
        rows = self._select(
            GrantModel.user_id == user_id, GrantModel.api_id == api_id
        )
        return rows[0] if rows else None

    def find_by_user(self, user_id: str) -> List[AccessGrant]:
        return self._select(GrantModel.user_id == user_id)

    def find_by_api(self, api_id: str) -> List[AccessGrant]:
        return self._select(GrantModel.api_id == api_id)

    def find_by_organization(self, org_id: str) -> List[AccessGrant]:
        return self._select(GrantModel.org_id == org_id)

    def active_grants(self, now: Optional[datetime] = None) -> List[AccessGrant]:
        """Active grants inside both (inclusive) validity bounds at *now*."""
        now = as_utc(now) or utcnow()
        return self._select(
            GrantModel.is_active.is_(True),
            (GrantModel.valid_from.is_(None)) | (GrantModel.valid_from <= now),
            (GrantModel.valid_until.is_(None)) | (GrantModel.valid_until >= now),
        )

    def expiring_grants(
        self, days: Optional[int] = None, now: Optional[datetime] = None
    ) -> List[AccessGrant]:
        """Active grants with ``valid_until`` in ``(now, now + days]``, soonest first."""
        if days is None:
            days = get_settings().grants.expiring_window_days
        now = as_utc(now) or utcnow()
        return self._select(
            GrantModel.is_active.is_(True),
            GrantModel.valid_until > now,
            GrantModel.valid_until <= now + timedelta(days=days),
            order_by=GrantModel.valid_until.asc(),
        )

    def _select(self, *criteria, order_by=None) -> List[AccessGrant]:
        session: Session = self._session_factory()
        try:
            stmt = select(GrantModel).where(*criteria).order_by(
                order_by if order_by is not None else GrantModel.created_at.desc()
            )
            return [_grant_from_row(r) for r in session.execute(stmt).scalars()]
        finally:
            session.close()

    @staticmethod
    def _get(session: Session, grant_id: str) -> AccessGrant:
        row = session.get(GrantModel, grant_id)
        if row is None:
            raise NotFoundError(f"Grant '{grant_id}' not found")
        return _grant_from_row(row)


# ── Credentials ────────────────────────────────────────


def _payload_to_json(credential: Credential) -> Dict[str, Any]:
    payload = credential.payload.model_dump(mode="json")
    if isinstance(credential.payload, HmacPayload):
        # model_dump masks SecretStr.
        payload["secret"] = credential.payload.secret.get_secret_value()
    return payload


def _rights_to_json(rights: Dict[str, AccessRight]) -> Dict[str, Any]:
    return {api_id: right.model_dump(mode="json") for api_id, right in rights.items()}


def _credential_from_row(row: CredentialModel) -> Credential:
    return Credential(
        credential_id=row.id,
        user_id=row.user_id,
        org_id=row.org_id,
        name=row.name,
        description=row.description,
        payload=row.payload,
        gateway_key_id=row.gateway_key_id,
        gateway_key_hash=row.gateway_key_hash,
        policy_id=row.policy_id,
        rate_limits=row.rate_limits,
        access_rights=row.access_rights or {},
        is_active=row.is_active,
        last_used=as_utc(row.last_used),
        usage_stats=UsageStats(
            total_requests=row.total_requests,
            last_request_date=as_utc(row.last_request_date),
            error_count=row.error_count,
        ),
        expires_at=as_utc(row.expires_at),
        created_at=as_utc(row.created_at),
        updated_at=as_utc(row.updated_at),
    )


class CredentialRepository:
    """Repository for the credentials table."""

    def __init__(self, session_factory: SessionFactory) -> None:
        self._session_factory = session_factory

    def store(self, credential: Credential) -> Credential:
        """Insert a credential issued by :class:`CredentialStore`."""
        certificate_id = None
        if isinstance(credential.payload, CertificatePayload):
            certificate_id = credential.payload.certificate_id
        session: Session = self._session_factory()
        try:
            row = CredentialModel(
                id=credential.credential_id,
                user_id=credential.user_id,
                org_id=credential.org_id,
                credential_type=credential.credential_type,
                name=credential.name,
                description=credential.description,
                payload=_payload_to_json(credential),
                gateway_key_id=credential.gateway_key_id,
                gateway_key_hash=credential.gateway_key_hash,
                certificate_id=certificate_id,
                certificate_expires_at=credential.certificate_expires_at,
                policy_id=credential.policy_id,
                rate_limits=(
                    credential.rate_limits.model_dump() if credential.rate_limits else None
                ),
                access_rights=_rights_to_json(credential.access_rights),
                is_active=credential.is_active,
                total_requests=credential.usage_stats.total_requests,
                error_count=credential.usage_stats.error_count,
                expires_at=as_utc(credential.expires_at),
                created_at=as_utc(credential.created_at),
                updated_at=as_utc(credential.updated_at),
            )
            session.add(row)
            _commit(session, f"Credential '{credential.credential_id}' already exists")
            logger.info(
                "Credential stored",
                extra={
                    "credential_id": credential.credential_id,
                    "credential_type": credential.credential_type,
                },
            )
            return self._get(session, credential.credential_id)
        finally:
            session.close()

    def update_usage_stats(
        self, credential_id: str, now: Optional[datetime] = None
    ) -> Credential:
        now = as_utc(now) or utcnow()
        return self._update(
            credential_id,
            total_requests=CredentialModel.total_requests + 1,
            last_request_date=now,
            last_used=now,
            updated_at=now,
        )

    def record_error(self, credential_id: str) -> Credential:
        return self._update(
            credential_id, error_count=CredentialModel.error_count + 1
        )

    def attach_gateway_identifiers(
        self,
        credential_id: str,
        gateway_key_id: str,
        gateway_key_hash: Optional[str] = None,
    ) -> Credential:
        return self._update(
            credential_id,
            gateway_key_id=gateway_key_id,
            gateway_key_hash=gateway_key_hash,
            updated_at=utcnow(),
        )

    def deactivate(self, credential_id: str) -> Credential:
        credential = self._update(credential_id, is_active=False, updated_at=utcnow())
        logger.info("Credential deactivated", extra={"credential_id": credential_id})
        return credential

    def add_api_access(
        self,
        credential_id: str,
        api_id: str,
        api_name: Optional[str] = None,
        versions: Optional[List[str]] = None,
    ) -> Credential:
        """Insert or overwrite the access right for *api_id*."""
        right = AccessRight(
            api_id=api_id,
            api_name=api_name,
            versions=list(versions) if versions is not None else ["Default"],
        )

        def mutate(rights: Dict[str, Any]) -> bool:
            rights[api_id] = right.model_dump(mode="json")
            return True

        return self._mutate_rights(credential_id, mutate)

    def remove_api_access(self, credential_id: str, api_id: str) -> Credential:
        """Drop the access right for *api_id*; no-op if absent."""
        return self._mutate_rights(
            credential_id, lambda rights: rights.pop(api_id, None) is not None
        )

    def get(self, credential_id: str) -> Credential:
        """Return a credential by id.

        Raises:
            NotFoundError: If the credential does not exist.
        """
        session: Session = self._session_factory()
        try:
            return self._get(session, credential_id)
        finally:
            session.close()

    def find_by_user(self, user_id: str) -> List[Credential]:
        return self._select(CredentialModel.user_id == user_id)

    def find_by_organization(self, org_id: str) -> List[Credential]:
        return self._select(CredentialModel.org_id == org_id)

    def find_by_gateway_key_id(self, gateway_key_id: str) -> Optional[Credential]:
        rows = self._select(CredentialModel.gateway_key_id == gateway_key_id)
        return rows[0] if rows else None

    def find_by_certificate_id(self, certificate_id: str) -> Optional[Credential]:
        rows = self._select(CredentialModel.certificate_id == certificate_id)
        return rows[0] if rows else None

    def active_credentials(self) -> List[Credential]:
        return self._select(CredentialModel.is_active.is_(True))

    def expiring_certificates(
        self, days: Optional[int] = None, now: Optional[datetime] = None
    ) -> List[Credential]:
        """Active certificates expiring within ``[now, now + days]``, soonest first."""
        if days is None:
            days = get_settings().credentials.certificate_expiry_warning_days
        now = as_utc(now) or utcnow()
        return self._select(
            CredentialModel.is_active.is_(True),
            CredentialModel.certificate_expires_at >= now,
            CredentialModel.certificate_expires_at <= now + timedelta(days=days),
            order_by=CredentialModel.certificate_expires_at.asc(),
        )

    def _update(self, credential_id: str, **values: Any) -> Credential:
        session: Session = self._session_factory()
        try:
            result = session.execute(
                update(CredentialModel)
                .where(CredentialModel.id == credential_id)
                .values(**values)
            )
            session.commit()
            if not result.rowcount:
                raise NotFoundError(f"Credential '{credential_id}' not found")
            return self._get(session, credential_id)
        finally:
            session.close()

    def _mutate_rights(
        self, credential_id: str, mutate: Callable[[Dict[str, Any]], bool]
    ) -> Credential:
        session: Session = self._session_factory()
        try:
            row = session.execute(
                select(CredentialModel)
                .where(CredentialModel.id == credential_id)
                .with_for_update()
            ).scalar_one_or_none()
            if row is None:
                raise NotFoundError(f"Credential '{credential_id}' not found")
            rights = dict(row.access_rights or {})
            if mutate(rights):
                row.access_rights = rights
                row.updated_at = utcnow()
                session.commit()
                logger.info(
                    "API access updated",
                    extra={"credential_id": credential_id, "apis": sorted(rights)},
                )
            return _credential_from_row(row)
        finally:
            session.close()

    def _select(self, *criteria, order_by=None) -> List[Credential]:
        session: Session = self._session_factory()
        try:
            stmt = select(CredentialModel).where(*criteria).order_by(
                order_by if order_by is not None else CredentialModel.created_at.desc()
            )
            return [_credential_from_row(r) for r in session.execute(stmt).scalars()]
        finally:
            session.close()

    @staticmethod
    def _get(session: Session, credential_id: str) -> Credential:
        row = session.get(CredentialModel, credential_id)
        if row is None:
            raise NotFoundError(f"Credential '{credential_id}' not found")
        return _credential_from_row(row)


# ── Policy availability ────────────────────────────────


def _availability_from_row(row: PolicyAvailabilityModel) -> PolicyAvailability:
    return PolicyAvailability(
        org_id=row.org_id,
        policy_id=row.policy_id,
        assigned_by=row.assigned_by,
        is_active=row.is_active,
        assigned_at=as_utc(row.assigned_at),
    )


class PolicyAvailabilityRepository:
    """Repository for the organization_available_policies table."""

    def __init__(self, session_factory: SessionFactory) -> None:
        self._session_factory = session_factory

    def assign(
        self,
        policy_id: str,
        org_id: str,
        assigned_by: str,
        now: Optional[datetime] = None,
    ) -> PolicyAvailability:
        """Upsert the (org, policy) row and mark it active."""
        now = as_utc(now) or utcnow()
        session: Session = self._session_factory()
        try:
            _upsert(
                session,
                PolicyAvailabilityModel,
                {
                    "org_id": org_id,
                    "policy_id": policy_id,
                    "assigned_by": assigned_by,
                    "is_active": True,
                    "assigned_at": now,
                },
                index_elements=("org_id", "policy_id"),
                update_fields=("assigned_by", "is_active", "assigned_at"),
            )
            session.commit()
            logger.info(
                "Policy assigned to organisation",
                extra={"policy_id": policy_id, "org_id": org_id},
            )
            return self._get(session, policy_id, org_id)
        finally:
            session.close()

    def insert(
        self,
        policy_id: str,
        org_id: str,
        assigned_by: str,
        now: Optional[datetime] = None,
    ) -> PolicyAvailability:
        """Fresh insert.

        Raises:
            ConflictError: If the (org, policy) pair already exists.
        """
        now = as_utc(now) or utcnow()
        session: Session = self._session_factory()
        try:
            session.add(
                PolicyAvailabilityModel(
                    org_id=org_id,
                    policy_id=policy_id,
                    assigned_by=assigned_by,
                    is_active=True,
                    assigned_at=now,
                )
            )
            _commit(
                session, f"Policy '{policy_id}' is already assigned to org '{org_id}'"
            )
            return self._get(session, policy_id, org_id)
        finally:
            session.close()

    def remove(self, policy_id: str, org_id: str) -> bool:
        session: Session = self._session_factory()
        try:
            result = session.execute(
                delete(PolicyAvailabilityModel).where(
                    PolicyAvailabilityModel.org_id == org_id,
                    PolicyAvailabilityModel.policy_id == policy_id,
                )
            )
            session.commit()
            return bool(result.rowcount)
        finally:
            session.close()

    def deactivate(self, policy_id: str, org_id: str) -> bool:
        session: Session = self._session_factory()
        try:
            result = session.execute(
                update(PolicyAvailabilityModel)
                .where(
                    PolicyAvailabilityModel.org_id == org_id,
                    PolicyAvailabilityModel.policy_id == policy_id,
                )
                .values(is_active=False)
            )
            session.commit()
            return bool(result.rowcount)
        finally:
            session.close()

    def is_available(self, policy_id: str, org_id: str) -> bool:
        session: Session = self._session_factory()
        try:
            row = self._row(session, policy_id, org_id)
            return row is not None and row.is_active
        finally:
            session.close()

    def find_by_organization(
        self, org_id: str, active_only: bool = True
    ) -> List[PolicyAvailability]:
        return self._select(PolicyAvailabilityModel.org_id == org_id, active_only)

    def find_by_policy(
        self, policy_id: str, active_only: bool = True
    ) -> List[PolicyAvailability]:
        return self._select(PolicyAvailabilityModel.policy_id == policy_id, active_only)

    def _select(self, criterion, active_only: bool) -> List[PolicyAvailability]:
        session: Session = self._session_factory()
        try:
            stmt = select(PolicyAvailabilityModel).where(criterion)
            if active_only:
                stmt = stmt.where(PolicyAvailabilityModel.is_active.is_(True))
            stmt = stmt.order_by(PolicyAvailabilityModel.assigned_at.desc())
            return [_availability_from_row(r) for r in session.execute(stmt).scalars()]
        finally:
            session.close()

    @staticmethod
    def _row(
        session: Session, policy_id: str, org_id: str
    ) -> Optional[PolicyAvailabilityModel]:
        return session.execute(
            select(PolicyAvailabilityModel).where(
                PolicyAvailabilityModel.org_id == org_id,
                PolicyAvailabilityModel.policy_id == policy_id,
            )
        ).scalar_one_or_none()

    def _get(self, session: Session, policy_id: str, org_id: str) -> PolicyAvailability:
        row = self._row(session, policy_id, org_id)
        if row is None:
            raise NotFoundError(
                f"Policy '{policy_id}' is not assigned to org '{org_id}'"
            )
        return _availability_from_row(row)


# ── Email allowlist ────────────────────────────────────


def _pattern_from_row(row: EmailPatternModel) -> EmailPattern:
    return EmailPattern(
        pattern_id=row.id,
        pattern=row.pattern,
        description=row.description,
        is_active=row.is_active,
        created_by=row.created_by,
        created_at=as_utc(row.created_at),
    )


class EmailPatternRepository:
    """Repository for the email_patterns table."""

    def __init__(self, session_factory: SessionFactory) -> None:
        self._session_factory = session_factory

    def add_pattern(
        self,
        pattern: str,
        description: Optional[str] = None,
        created_by: Optional[str] = None,
    ) -> EmailPattern:
        """Insert a pattern.

        Raises:
            ValidationError: If the pattern length is out of bounds.
            ConflictError: If the pattern already exists.
        """
        _s = get_settings().email
        normalized = normalize_pattern(pattern)
        if not _s.pattern_min_length <= len(normalized) <= _s.pattern_max_length:
            raise ValidationError(
                f"Email pattern must be {_s.pattern_min_length}-"
                f"{_s.pattern_max_length} characters, got {len(normalized)}"
            )
        entry = EmailPattern(
            pattern=normalized, description=description, created_by=created_by
        )
        session: Session = self._session_factory()
        try:
            session.add(
                EmailPatternModel(
                    id=entry.pattern_id,
                    pattern=entry.pattern,
                    description=entry.description,
                    is_active=entry.is_active,
                    created_by=entry.created_by,
                    created_at=entry.created_at,
                )
            )
            _commit(session, f"Email pattern '{normalized}' already exists")
            logger.info("Email pattern added", extra={"pattern": normalized})
            return entry
        finally:
            session.close()

    def set_active(self, pattern: str, is_active: bool) -> EmailPattern:
        normalized = normalize_pattern(pattern)
        session: Session = self._session_factory()
        try:
            row = session.execute(
                select(EmailPatternModel).where(EmailPatternModel.pattern == normalized)
            ).scalar_one_or_none()
            if row is None:
                raise NotFoundError(f"Email pattern '{normalized}' not found")
            row.is_active = is_active
            session.commit()
            return _pattern_from_row(row)
        finally:
            session.close()

    def remove_pattern(self, pattern: str) -> bool:
        session: Session = self._session_factory()
        try:
            result = session.execute(
                delete(EmailPatternModel).where(
                    EmailPatternModel.pattern == normalize_pattern(pattern)
                )
            )
            session.commit()
            return bool(result.rowcount)
        finally:
            session.close()

    def active_patterns(self) -> List[EmailPattern]:
        session: Session = self._session_factory()
        try:
            stmt = (
                select(EmailPatternModel)
                .where(EmailPatternModel.is_active.is_(True))
                .order_by(EmailPatternModel.created_at.asc())
            )
            return [_pattern_from_row(r) for r in session.execute(stmt).scalars()]
        finally:
            session.close()

    def is_email_allowed(self, email: str) -> bool:
        return any(p.matches(email) for p in self.active_patterns())


# ── Runtime configuration ──────────────────────────────


def _config_from_row(row: ConfigEntryModel) -> ConfigEntry:
    return ConfigEntry(
        key=row.key,
        value=row.value,
        description=row.description,
        is_active=row.is_active,
        created_by=row.created_by,
        updated_by=row.updated_by,
        created_at=as_utc(row.created_at),
        updated_at=as_utc(row.updated_at),
    )


class ConfigRepository:
    """Repository for the system_config table."""

    def __init__(self, session_factory: SessionFactory) -> None:
        self._session_factory = session_factory

    def get_value(self, key: str, default: Any = None) -> Any:
        session: Session = self._session_factory()
        try:
            row = self._row(session, key)
            if row is None or not row.is_active:
                return default
            return row.value
        finally:
            session.close()

    def set_value(
        self,
        key: str,
        value: Any,
        updated_by: Optional[str] = None,
        description: Optional[str] = None,
    ) -> ConfigEntry:
        """Upsert an entry; ``description`` is only replaced when given.

        Raises:
            ValidationError: If the key is empty or too long.
        """
        if not key or len(key) > 100:
            raise ValidationError("Config key must be 1-100 characters")
        now = utcnow()
        update_fields = ["value", "updated_by", "updated_at"]
        if description:
            update_fields.append("description")
        session: Session = self._session_factory()
        try:
            _upsert(
                session,
                ConfigEntryModel,
                {
                    "key": key,
                    "value": value,
                    "description": description,
                    "is_active": True,
                    "created_by": updated_by,
                    "updated_by": updated_by,
                    "created_at": now,
                    "updated_at": now,
                },
                index_elements=("key",),
                update_fields=update_fields,
            )
            session.commit()
            logger.info("Config value set", extra={"key": key, "updated_by": updated_by})
            return _config_from_row(self._row(session, key))
        finally:
            session.close()

    def set_active(self, key: str, is_active: bool) -> ConfigEntry:
        """Raises NotFoundError for an unknown key."""
        session: Session = self._session_factory()
        try:
            row = self._row(session, key)
            if row is None:
                raise NotFoundError(f"Config key '{key}' not found")
            row.is_active = is_active
            row.updated_at = utcnow()
            session.commit()
            return _config_from_row(row)
        finally:
            session.close()

    def get_multiple(self, keys: Iterable[str]) -> Dict[str, Any]:
        session: Session = self._session_factory()
        try:
            stmt = select(ConfigEntryModel).where(
                ConfigEntryModel.key.in_(list(keys)),
                ConfigEntryModel.is_active.is_(True),
            )
            return {row.key: row.value for row in session.execute(stmt).scalars()}
        finally:
            session.close()

    def get_auth_config(self) -> Dict[str, Any]:
        return self.get_multiple(AUTH_CONFIG_KEYS)

    def get_gateway_config(self) -> Dict[str, Any]:
        return self.get_multiple(GATEWAY_CONFIG_KEYS)

    @staticmethod
    def _row(session: Session, key: str) -> Optional[ConfigEntryModel]:
        return session.execute(
            select(ConfigEntryModel).where(ConfigEntryModel.key == key)
        ).scalar_one_or_none()
