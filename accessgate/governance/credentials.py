"""
Request-authenticating credentials: API keys, mTLS certificates and
HMAC signatures.

Handles issuance, expiry tracking and usage accounting.  API keys follow
the format ``{prefix}_{org_prefix}_{random_hex}`` and only their bcrypt
hash is kept; HMAC secrets are held as ``SecretStr`` and certificates are
reduced to identifiers, fingerprint and expiry.  None of that material is
ever part of :meth:`Credential.to_safe_object`.
"""

import logging
import secrets
import threading
from datetime import datetime, timedelta
from typing import Annotated, Any, Dict, List, Literal, Optional, Tuple, Union, get_args
from uuid import uuid4

import bcrypt
from cryptography import x509
from cryptography.hazmat.primitives import hashes
from pydantic import BaseModel, Field, SecretStr

from accessgate.config import get_settings
from accessgate.exceptions import NotFoundError, ValidationError
from accessgate.governance.audit import AuditLogger
from accessgate.governance.clock import as_utc, utcnow
from accessgate.governance.limits import RateLimits

logger = logging.getLogger(__name__)

_DISPLAY_PREFIX_LENGTH = 12

HmacAlgorithm = Literal["hmac-sha1", "hmac-sha256", "hmac-sha384", "hmac-sha512"]


# ── Data Models ────────────────────────────────────────


class CredentialConfig(BaseModel):
    """Configuration for CredentialStore.

    Attributes:
        key_prefix: Prefix for generated API keys.
        key_expiry_days: Default API key lifetime in days.
        certificate_expiry_warning_days: Window for expiring-soon checks.
        hmac_algorithm: Default HMAC algorithm.
        hmac_secret_bytes: Entropy of generated HMAC secrets.
    """

    key_prefix: str = "agk"
    key_expiry_days: int = Field(default=365, ge=1)
    certificate_expiry_warning_days: int = Field(default=30, ge=1)
    hmac_algorithm: str = "hmac-sha256"
    hmac_secret_bytes: int = Field(default=32, ge=16)


class ApiKeyPayload(BaseModel):
    type: Literal["api_key"] = "api_key"
    key_display_prefix: str
    key_hash: str


class CertificatePayload(BaseModel):
    type: Literal["mtls_certificate"] = "mtls_certificate"
    certificate_id: str
    fingerprint: str
    subject: Optional[str] = None
    expires_at: Optional[datetime] = None


class HmacPayload(BaseModel):
    type: Literal["hmac_signature"] = "hmac_signature"
    secret: SecretStr
    algorithm: HmacAlgorithm = "hmac-sha256"


CredentialPayload = Annotated[
    Union[ApiKeyPayload, CertificatePayload, HmacPayload],
    Field(discriminator="type"),
]


class AccessRight(BaseModel):
    """Per-API entry in a credential's access rights.

    Attributes:
        api_id: API identifier.
        api_name: Display name.
        versions: Reachable versions; empty means all.
        allowed_urls: Path globs; empty means all.
        limit: Per-API limits overriding the credential's.
        allowance_scope: Gateway allowance scope.
    """

    api_id: str
    api_name: Optional[str] = None
    versions: List[str] = Field(default_factory=lambda: ["Default"])
    allowed_urls: List[str] = Field(default_factory=list)
    limit: Optional[RateLimits] = None
    allowance_scope: str = ""


class UsageStats(BaseModel):
    total_requests: int = Field(default=0, ge=0)
    last_request_date: Optional[datetime] = None
    error_count: int = Field(default=0, ge=0)


class Credential(BaseModel):
    """A credential issued to a user within an organisation.

    Attributes:
        credential_id: Unique identifier.
        user_id: Owner user ID.
        org_id: Owner organisation ID.
        name: Display name.
        description: Optional description.
        payload: Type-specific material; its ``type`` is the credential type.
        gateway_key_id: Key identifier assigned by the gateway.
        gateway_key_hash: Hashed key used for gateway operations.
        policy_id: Policy the credential was issued under, if any.
        rate_limits: Limits override; None inherits the policy/default.
        access_rights: API id -> access right.
        is_active: Whether the credential may be used.
        last_used: Most recent use.
        usage_stats: Request counters.
        expires_at: Credential expiry, if bounded.
    """

    credential_id: str = Field(default_factory=lambda: uuid4().hex)
    user_id: str
    org_id: str
    name: str = Field(min_length=1, max_length=100)
    description: Optional[str] = None
    payload: CredentialPayload
    gateway_key_id: Optional[str] = None
    gateway_key_hash: Optional[str] = None
    policy_id: Optional[str] = None
    rate_limits: Optional[RateLimits] = None
    access_rights: Dict[str, AccessRight] = Field(default_factory=dict)
    is_active: bool = True
    last_used: Optional[datetime] = None
    usage_stats: UsageStats = Field(default_factory=UsageStats)
    expires_at: Optional[datetime] = None
    created_at: datetime = Field(default_factory=utcnow)
    updated_at: datetime = Field(default_factory=utcnow)

    @property
    def credential_type(self) -> str:
        return self.payload.type

    @property
    def certificate_expires_at(self) -> Optional[datetime]:
        if isinstance(self.payload, CertificatePayload):
            return as_utc(self.payload.expires_at)
        return None

    def is_expired(self, now: Optional[datetime] = None) -> bool:
        if self.expires_at is None:
            return False
        return (as_utc(now) or utcnow()) > as_utc(self.expires_at)

    def is_certificate_expired(self, now: Optional[datetime] = None) -> bool:
        expires_at = self.certificate_expires_at
        if expires_at is None:
            return False
        return (as_utc(now) or utcnow()) > expires_at

    def is_certificate_expiring_soon(
        self, days: int = 30, now: Optional[datetime] = None
    ) -> bool:
        """True iff the certificate expires within ``[now, now + days]``."""
        expires_at = self.certificate_expires_at
        if expires_at is None:
            return False
        now = as_utc(now) or utcnow()
        return now <= expires_at <= now + timedelta(days=days)

    def to_safe_object(self, now: Optional[datetime] = None) -> Dict[str, Any]:
        """External projection without secrets or key/certificate material."""
        now = as_utc(now) or utcnow()
        payload = self.payload
        return {
            "credential_id": self.credential_id,
            "user_id": self.user_id,
            "org_id": self.org_id,
            "credential_type": self.credential_type,
            "name": self.name,
            "description": self.description,
            "gateway_key_id": self.gateway_key_id,
            "policy_id": self.policy_id,
            "key_display_prefix": getattr(payload, "key_display_prefix", None),
            "certificate_id": getattr(payload, "certificate_id", None),
            "certificate_fingerprint": getattr(payload, "fingerprint", None),
            "certificate_expires_at": _iso(self.certificate_expires_at),
            "hmac_algorithm": getattr(payload, "algorithm", None),
            "rate_limits": (
                self.rate_limits.model_dump() if self.rate_limits else None
            ),
            "access_rights": {
                api_id: right.model_dump(mode="json")
                for api_id, right in self.access_rights.items()
            },
            "is_active": self.is_active,
            "last_used": _iso(self.last_used),
            "usage_stats": self.usage_stats.model_dump(mode="json"),
            "expires_at": _iso(self.expires_at),
            "is_expired": self.is_expired(now),
            "is_certificate_expired": self.is_certificate_expired(now),
            "is_certificate_expiring_soon": self.is_certificate_expiring_soon(now=now),
            "created_at": _iso(self.created_at),
            "updated_at": _iso(self.updated_at),
        }


def _iso(value: Optional[datetime]) -> Optional[str]:
    return as_utc(value).isoformat() if value is not None else None


# ── Store ──────────────────────────────────────────────


class CredentialStore:
    """Credential issuance and accounting.

    Args:
        config: Credential configuration.
        audit: Optional audit trail for lifecycle events.
    """

    def __init__(
        self,
        config: Optional[CredentialConfig] = None,
        audit: Optional[AuditLogger] = None,
    ) -> None:
        if config is None:
            _s = get_settings().credentials
            config = CredentialConfig(
                key_prefix=_s.api_key_prefix,
                key_expiry_days=_s.key_expiry_days,
                certificate_expiry_warning_days=_s.certificate_expiry_warning_days,
                hmac_algorithm=_s.hmac_algorithm,
                hmac_secret_bytes=_s.hmac_secret_bytes,
            )
        self._config = config
        self._audit = audit
        self._lock = threading.Lock()
        self._credentials: Dict[str, Credential] = {}  # credential_id -> credential
        logger.info("CredentialStore initialised", extra={})

    @property
    def config(self) -> CredentialConfig:
        return self._config

    # ------------------------------------------------------------------
    # Issuance
    # ------------------------------------------------------------------

    def issue_api_key(
        self,
        user_id: str,
        org_id: str,
        name: str,
        policy_id: Optional[str] = None,
        rate_limits: Optional[RateLimits] = None,
        expires_at: Optional[datetime] = None,
        description: Optional[str] = None,
    ) -> Tuple[Credential, str]:
        """Issue a new API key.

        Returns:
            The stored credential and the full key string (only shown once).
        """
        org_prefix = org_id[:4].lower()
        random_part = secrets.token_hex(16)
        full_key = f"{self._config.key_prefix}_{org_prefix}_{random_part}"
        key_hash = bcrypt.hashpw(
            full_key.encode("utf-8"), bcrypt.gensalt()
        ).decode("utf-8")

        if expires_at is None:
            expires_at = utcnow() + timedelta(days=self._config.key_expiry_days)

        credential = Credential(
            user_id=user_id,
            org_id=org_id,
            name=name,
            description=description,
            payload=ApiKeyPayload(
                key_display_prefix=full_key[:_DISPLAY_PREFIX_LENGTH],
                key_hash=key_hash,
            ),
            policy_id=policy_id,
            rate_limits=rate_limits,
            expires_at=expires_at,
        )
        self._store(credential)
        return credential, full_key

    def issue_certificate(
        self,
        user_id: str,
        org_id: str,
        name: str,
        certificate_pem: Union[str, bytes],
        certificate_id: Optional[str] = None,
        policy_id: Optional[str] = None,
        rate_limits: Optional[RateLimits] = None,
        description: Optional[str] = None,
    ) -> Credential:
        """Register an mTLS client certificate.

        The PEM is parsed for its SHA-256 fingerprint, subject and expiry;
        the certificate itself is not retained.

        Raises:
            ValidationError: If the PEM cannot be parsed.
        """
        if isinstance(certificate_pem, str):
            certificate_pem = certificate_pem.encode("utf-8")
        try:
            cert = x509.load_pem_x509_certificate(certificate_pem)
        except ValueError as e:
            raise ValidationError(f"Invalid PEM certificate: {e}") from e

        fingerprint = cert.fingerprint(hashes.SHA256()).hex()
        credential = Credential(
            user_id=user_id,
            org_id=org_id,
            name=name,
            description=description,
            payload=CertificatePayload(
                certificate_id=certificate_id or fingerprint,
                fingerprint=fingerprint,
                subject=cert.subject.rfc4514_string(),
                expires_at=cert.not_valid_after_utc,
            ),
            policy_id=policy_id,
            rate_limits=rate_limits,
        )
        self._store(credential)
        return credential

    def issue_hmac(
        self,
        user_id: str,
        org_id: str,
        name: str,
        algorithm: Optional[str] = None,
        policy_id: Optional[str] = None,
        rate_limits: Optional[RateLimits] = None,
        expires_at: Optional[datetime] = None,
        description: Optional[str] = None,
    ) -> Tuple[Credential, str]:
        """Issue an HMAC signing credential.

        Returns:
            The stored credential and the generated secret (only shown once).

        Raises:
            ValidationError: If *algorithm* is not a supported HMAC algorithm.
        """
        algorithm = algorithm or self._config.hmac_algorithm
        if algorithm not in get_args(HmacAlgorithm):
            raise ValidationError(
                f"Unsupported HMAC algorithm '{algorithm}'; "
                f"expected one of {', '.join(get_args(HmacAlgorithm))}"
            )
        secret = secrets.token_urlsafe(self._config.hmac_secret_bytes)
        credential = Credential(
            user_id=user_id,
            org_id=org_id,
            name=name,
            description=description,
            payload=HmacPayload(
                secret=SecretStr(secret),
                algorithm=algorithm,
            ),
            policy_id=policy_id,
            rate_limits=rate_limits,
            expires_at=expires_at,
        )
        self._store(credential)
        return credential, secret

    # ------------------------------------------------------------------
    # Verification
    # ------------------------------------------------------------------

    def verify_api_key(
        self, key: str, now: Optional[datetime] = None
    ) -> Optional[Credential]:
        """Return the active, unexpired credential matching a full API key."""
        if not key:
            return None
        display_prefix = key[:_DISPLAY_PREFIX_LENGTH]
        with self._lock:
            candidates = [
                c.model_copy(deep=True) for c in self._credentials.values()
                if isinstance(c.payload, ApiKeyPayload)
                and c.payload.key_display_prefix == display_prefix
            ]
        for credential in candidates:
            if not bcrypt.checkpw(
                key.encode("utf-8"), credential.payload.key_hash.encode("utf-8")
            ):
                continue
            if not credential.is_active:
                logger.warning(
                    "Inactive API key used",
                    extra={"prefix": display_prefix},
                )
                return None
            if credential.is_expired(now):
                logger.warning(
                    "Expired API key used",
                    extra={"prefix": display_prefix},
                )
                return None
            return credential
        logger.warning("API key not found", extra={"prefix": display_prefix})
        return None

    # ------------------------------------------------------------------
    # Mutation
    # ------------------------------------------------------------------

    def update_usage_stats(
        self, credential_id: str, now: Optional[datetime] = None
    ) -> Credential:
        """Count one request made with a credential."""
        now = as_utc(now) or utcnow()
        with self._lock:
            credential = self._require(credential_id)
            credential.usage_stats.total_requests += 1
            credential.usage_stats.last_request_date = now
            credential.last_used = now
            credential.updated_at = now
            snapshot = credential.model_copy(deep=True)
        return snapshot

    def record_error(self, credential_id: str) -> Credential:
        with self._lock:
            credential = self._require(credential_id)
            credential.usage_stats.error_count += 1
            snapshot = credential.model_copy(deep=True)
        return snapshot

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
        with self._lock:
            credential = self._require(credential_id)
            credential.access_rights[api_id] = right
            credential.updated_at = utcnow()
            snapshot = credential.model_copy(deep=True)
        logger.info(
            "API access added",
            extra={"credential_id": credential_id, "api_id": api_id},
        )
        return snapshot

    def remove_api_access(self, credential_id: str, api_id: str) -> Credential:
        """Drop the access right for *api_id*; no-op if absent."""
        with self._lock:
            credential = self._require(credential_id)
            if credential.access_rights.pop(api_id, None) is not None:
                credential.updated_at = utcnow()
                logger.info(
                    "API access removed",
                    extra={"credential_id": credential_id, "api_id": api_id},
                )
            snapshot = credential.model_copy(deep=True)
        return snapshot

    def attach_gateway_identifiers(
        self,
        credential_id: str,
        gateway_key_id: str,
        gateway_key_hash: Optional[str] = None,
    ) -> Credential:
        """Record the identifiers the gateway assigned to a credential."""
        with self._lock:
            credential = self._require(credential_id)
            credential.gateway_key_id = gateway_key_id
            credential.gateway_key_hash = gateway_key_hash
            credential.updated_at = utcnow()
            snapshot = credential.model_copy(deep=True)
        return snapshot

    def deactivate(self, credential_id: str, actor_id: Optional[str] = None) -> Credential:
        with self._lock:
            credential = self._require(credential_id)
            credential.is_active = False
            credential.updated_at = utcnow()
            snapshot = credential.model_copy(deep=True)
        logger.info("Credential deactivated", extra={"credential_id": credential_id})
        if self._audit is not None:
            self._audit.record(
                credential.org_id,
                actor_id,
                "credential_deactivated",
                f"credential/{credential_id}",
            )
        return snapshot

    # ------------------------------------------------------------------
    # Queries
    # ------------------------------------------------------------------

    def get(self, credential_id: str) -> Credential:
        """Return a credential by id.

        Raises:
            NotFoundError: If the credential does not exist.
        """
        with self._lock:
            return self._require(credential_id).model_copy(deep=True)

    def find_by_user(self, user_id: str) -> List[Credential]:
        return self._newest_first(lambda c: c.user_id == user_id)

    def find_by_organization(self, org_id: str) -> List[Credential]:
        return self._newest_first(lambda c: c.org_id == org_id)

    def find_by_gateway_key_id(self, gateway_key_id: str) -> Optional[Credential]:
        matches = self._newest_first(lambda c: c.gateway_key_id == gateway_key_id)
        return matches[0] if matches else None

    def find_by_certificate_id(self, certificate_id: str) -> Optional[Credential]:
        matches = self._newest_first(
            lambda c: getattr(c.payload, "certificate_id", None) == certificate_id
        )
        return matches[0] if matches else None

    def active_credentials(self) -> List[Credential]:
        return self._newest_first(lambda c: c.is_active)

    def expiring_certificates(
        self, days: Optional[int] = None, now: Optional[datetime] = None
    ) -> List[Credential]:
        """Active certificates expiring within the warning window."""
        if days is None:
            days = self._config.certificate_expiry_warning_days
        now = as_utc(now) or utcnow()
        matches = self._newest_first(
            lambda c: c.is_active and c.is_certificate_expiring_soon(days, now)
        )
        return sorted(matches, key=lambda c: c.certificate_expires_at)

    # ------------------------------------------------------------------
    # Internal helpers
    # ------------------------------------------------------------------

    def _store(self, credential: Credential) -> None:
        with self._lock:
            self._credentials[credential.credential_id] = credential.model_copy(deep=True)
        logger.info(
            "Credential issued",
            extra={
                "credential_id": credential.credential_id,
                "credential_type": credential.credential_type,
                "user_id": credential.user_id,
                "org_id": credential.org_id,
            },
        )
        if self._audit is not None:
            self._audit.record(
                credential.org_id,
                credential.user_id,
                "credential_issued",
                f"credential/{credential.credential_id}",
                credential_type=credential.credential_type,
                policy_id=credential.policy_id,
            )

    def _require(self, credential_id: str) -> Credential:
        credential = self._credentials.get(credential_id)
        if credential is None:
            raise NotFoundError(f"Credential '{credential_id}' not found")
        return credential

    def _newest_first(self, predicate) -> List[Credential]:
        with self._lock:
            matched = [
                c.model_copy(deep=True)
                for c in self._credentials.values()
                if predicate(c)
            ]
        return sorted(matched, key=lambda c: as_utc(c.created_at), reverse=True)
