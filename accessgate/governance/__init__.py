"""Authorization engine components: stores, registries and the evaluator."""

from accessgate.governance.audit import AuditConfig, AuditEvent, AuditLogger
from accessgate.governance.config_store import ConfigEntry, ConfigStore
from accessgate.governance.credentials import (
    AccessRight,
    Credential,
    CredentialConfig,
    CredentialStore,
)
from accessgate.governance.email_gate import EmailGate, EmailPattern, matches_email
from accessgate.governance.evaluator import AuthorizationEvaluator, Decision, DenyReason
from accessgate.governance.grants import AccessGrant, GrantRegistry, Revocation
from accessgate.governance.limits import (
    QuotaOverride,
    RateLimitOverride,
    RateLimits,
    resolve_effective_limits,
)
from accessgate.governance.policies import (
    Policy,
    PolicyApiAccess,
    PolicyAvailability,
    PolicyAvailabilityIndex,
    PolicyRegistry,
)

__all__ = [
    "AccessGrant",
    "AccessRight",
    "AuditConfig",
    "AuditEvent",
    "AuditLogger",
    "AuthorizationEvaluator",
    "ConfigEntry",
    "ConfigStore",
    "Credential",
    "CredentialConfig",
    "CredentialStore",
    "Decision",
    "DenyReason",
    "EmailGate",
    "EmailPattern",
    "GrantRegistry",
    "Policy",
    "PolicyApiAccess",
    "PolicyAvailability",
    "PolicyAvailabilityIndex",
    "PolicyRegistry",
    "QuotaOverride",
    "RateLimitOverride",
    "RateLimits",
    "Revocation",
    "matches_email",
    "resolve_effective_limits",
]
