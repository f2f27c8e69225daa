"""
Rate and quota limit records and effective-limit resolution.

Every authorization subject may carry an optional override; the
effective limits are the first override present, layered over the
policy or organisation default.
"""

from dataclasses import asdict
from typing import Optional

from pydantic import BaseModel, Field

from accessgate.config import get_settings


class RateLimits(BaseModel):
    """Gateway rate/quota settings.

    Attributes:
        allowance: Requests left in the current rate window.
        rate: Requests allowed per ``per`` seconds.
        per: Rate window length in seconds.
        quota_max: Requests allowed per quota period; ``-1`` is unlimited.
        quota_renewal_rate: Quota period length in seconds.
    """

    allowance: int = Field(default=1000, ge=0)
    rate: int = Field(default=100, ge=1)
    per: int = Field(default=60, ge=1)
    quota_max: int = Field(default=10_000, ge=-1)
    quota_renewal_rate: int = Field(default=3600, ge=1)


class RateLimitOverride(BaseModel):
    """Per-grant override of the rate window."""

    rate: int = Field(ge=1)
    per: int = Field(ge=1)


class QuotaOverride(BaseModel):
    """Per-grant override of the quota."""

    quota_max: int = Field(ge=-1)
    quota_renewal_rate: int = Field(default=3600, ge=1)


def settings_rate_limits() -> RateLimits:
    """Return the process-wide default limits from settings."""
    return RateLimits(**asdict(get_settings().credentials.default_rate_limits))


def resolve_effective_limits(
    *candidates: Optional[RateLimits],
    rate_override: Optional[RateLimitOverride] = None,
    quota_override: Optional[QuotaOverride] = None,
) -> RateLimits:
    """Resolve the limits a subject is actually held to.

    Args:
        candidates: Limits in precedence order; the first non-None wins.
            Falls back to :func:`settings_rate_limits` when all are None.
        rate_override: Replaces the rate window of the resolved limits.
        quota_override: Replaces the quota of the resolved limits.

    Returns:
        A new RateLimits instance.
    """
    base = next((c for c in candidates if c is not None), None)
    if base is None:
        base = settings_rate_limits()
    updates = {}
    if rate_override is not None:
        # Gateway allowance tracks the rate.
        updates.update(
            rate=rate_override.rate,
            per=rate_override.per,
            allowance=rate_override.rate,
        )
    if quota_override is not None:
        updates.update(
            quota_max=quota_override.quota_max,
            quota_renewal_rate=quota_override.quota_renewal_rate,
        )
    return base.model_copy(update=updates)
