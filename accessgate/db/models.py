"""
SQLAlchemy models for grants, credentials, policy availability, the
email allowlist and runtime configuration.

Identifiers of users, organisations and APIs are external references
stored as strings; no foreign keys into those catalogs.
"""

from datetime import datetime
from typing import Any, Dict, List, Optional

from sqlalchemy import (
    JSON,
    BigInteger,
    Boolean,
    CheckConstraint,
    DateTime,
    Integer,
    String,
    Text,
    UniqueConstraint,
)
from sqlalchemy.dialects.postgresql import JSONB
from sqlalchemy.orm import Mapped, mapped_column

from accessgate.db.engine import Base
from accessgate.governance.clock import utcnow

JSONType = JSON().with_variant(JSONB(), "postgresql")


class GrantModel(Base):
    """Stored access grant.

    Revocation columns are all set or all null, and a revoked row is inactive.
    """

    __tablename__ = "access_grants"
    __table_args__ = (
        UniqueConstraint("user_id", "api_id", name="uq_access_grants_user_api"),
        CheckConstraint(
            "(revoked_at IS NULL AND revoked_by IS NULL)"
            " OR (revoked_at IS NOT NULL AND revoked_by IS NOT NULL)",
            name="ck_access_grants_revocation_complete",
        ),
        CheckConstraint(
            "revoked_at IS NULL OR NOT is_active",
            name="ck_access_grants_revoked_inactive",
        ),
    )

    id: Mapped[str] = mapped_column(String(32), primary_key=True)
    user_id: Mapped[str] = mapped_column(String(255), nullable=False, index=True)
    api_id: Mapped[str] = mapped_column(String(255), nullable=False, index=True)
    org_id: Mapped[str] = mapped_column(String(255), nullable=False, index=True)
    access_level: Mapped[str] = mapped_column(String(16), nullable=False, default="read")
    granted_by: Mapped[str] = mapped_column(String(255), nullable=False)
    custom_rate_limits: Mapped[Optional[Dict[str, Any]]] = mapped_column(JSONType, nullable=True)
    custom_quota: Mapped[Optional[Dict[str, Any]]] = mapped_column(JSONType, nullable=True)
    allowed_versions: Mapped[List[Any]] = mapped_column(JSONType, nullable=False, default=list)
    allowed_paths: Mapped[List[Any]] = mapped_column(JSONType, nullable=False, default=list)
    restricted_paths: Mapped[List[Any]] = mapped_column(JSONType, nullable=False, default=list)
    valid_from: Mapped[Optional[datetime]] = mapped_column(DateTime(timezone=True), nullable=True)
    valid_until: Mapped[Optional[datetime]] = mapped_column(
        DateTime(timezone=True), nullable=True, index=True
    )
    is_active: Mapped[bool] = mapped_column(Boolean, nullable=False, default=True, index=True)
    revoked_at: Mapped[Optional[datetime]] = mapped_column(DateTime(timezone=True), nullable=True)
    revoked_by: Mapped[Optional[str]] = mapped_column(String(255), nullable=True)
    revocation_reason: Mapped[Optional[str]] = mapped_column(Text, nullable=True)
    first_used: Mapped[Optional[datetime]] = mapped_column(DateTime(timezone=True), nullable=True)
    last_used: Mapped[Optional[datetime]] = mapped_column(DateTime(timezone=True), nullable=True)
    usage_count: Mapped[int] = mapped_column(BigInteger, nullable=False, default=0)
    # ``metadata`` is reserved on declarative classes.
    grant_metadata: Mapped[Dict[str, Any]] = mapped_column(
        "metadata", JSONType, nullable=False, default=dict
    )
    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), nullable=False, default=utcnow
    )
    updated_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), nullable=False, default=utcnow
    )


class CredentialModel(Base):
    """Stored credential.

    ``payload`` holds the type-specific record (including the HMAC secret);
    certificate id and expiry are copied out for indexed lookups.
    """

    __tablename__ = "credentials"

    id: Mapped[str] = mapped_column(String(32), primary_key=True)
    user_id: Mapped[str] = mapped_column(String(255), nullable=False, index=True)
    org_id: Mapped[str] = mapped_column(String(255), nullable=False, index=True)
    credential_type: Mapped[str] = mapped_column(String(32), nullable=False)
    name: Mapped[str] = mapped_column(String(100), nullable=False)
    description: Mapped[Optional[str]] = mapped_column(Text, nullable=True)
    payload: Mapped[Dict[str, Any]] = mapped_column(JSONType, nullable=False)
    gateway_key_id: Mapped[Optional[str]] = mapped_column(String(255), nullable=True, index=True)
    gateway_key_hash: Mapped[Optional[str]] = mapped_column(String(255), nullable=True)
    certificate_id: Mapped[Optional[str]] = mapped_column(String(255), nullable=True, index=True)
    certificate_expires_at: Mapped[Optional[datetime]] = mapped_column(
        DateTime(timezone=True), nullable=True
    )
    policy_id: Mapped[Optional[str]] = mapped_column(String(64), nullable=True, index=True)
    rate_limits: Mapped[Optional[Dict[str, Any]]] = mapped_column(JSONType, nullable=True)
    access_rights: Mapped[Dict[str, Any]] = mapped_column(JSONType, nullable=False, default=dict)
    is_active: Mapped[bool] = mapped_column(Boolean, nullable=False, default=True)
    last_used: Mapped[Optional[datetime]] = mapped_column(DateTime(timezone=True), nullable=True)
    total_requests: Mapped[int] = mapped_column(BigInteger, nullable=False, default=0)
    last_request_date: Mapped[Optional[datetime]] = mapped_column(
        DateTime(timezone=True), nullable=True
    )
    error_count: Mapped[int] = mapped_column(BigInteger, nullable=False, default=0)
    expires_at: Mapped[Optional[datetime]] = mapped_column(DateTime(timezone=True), nullable=True)
    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), nullable=False, default=utcnow
    )
    updated_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), nullable=False, default=utcnow
    )


class PolicyAvailabilityModel(Base):
    """Which organisations may use which policies."""

    __tablename__ = "organization_available_policies"
    __table_args__ = (
        UniqueConstraint("org_id", "policy_id", name="uq_org_available_policies_pair"),
    )

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    org_id: Mapped[str] = mapped_column(String(255), nullable=False, index=True)
    policy_id: Mapped[str] = mapped_column(String(64), nullable=False, index=True)
    assigned_by: Mapped[str] = mapped_column(String(255), nullable=False)
    is_active: Mapped[bool] = mapped_column(Boolean, nullable=False, default=True)
    assigned_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), nullable=False, default=utcnow
    )


class EmailPatternModel(Base):
    __tablename__ = "email_patterns"

    id: Mapped[str] = mapped_column(String(32), primary_key=True)
    pattern: Mapped[str] = mapped_column(String(255), nullable=False, unique=True)
    description: Mapped[Optional[str]] = mapped_column(String(255), nullable=True)
    is_active: Mapped[bool] = mapped_column(Boolean, nullable=False, default=True)
    created_by: Mapped[Optional[str]] = mapped_column(String(255), nullable=True)
    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), nullable=False, default=utcnow
    )


class ConfigEntryModel(Base):
    __tablename__ = "system_config"

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    key: Mapped[str] = mapped_column(String(100), nullable=False, unique=True)
    value: Mapped[Optional[Any]] = mapped_column(JSONType, nullable=True)
    description: Mapped[Optional[str]] = mapped_column(Text, nullable=True)
    is_active: Mapped[bool] = mapped_column(Boolean, nullable=False, default=True)
    created_by: Mapped[Optional[str]] = mapped_column(String(255), nullable=True)
    updated_by: Mapped[Optional[str]] = mapped_column(String(255), nullable=True)
    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), nullable=False, default=utcnow
    )
    updated_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), nullable=False, default=utcnow
    )
