"""Tests for effective-limit resolution and path globs."""

from accessgate.governance.limits import (
    QuotaOverride,
    RateLimitOverride,
    RateLimits,
    resolve_effective_limits,
    settings_rate_limits,
)
from accessgate.governance.paths import matches_any, path_matches


class TestResolveEffectiveLimits:
    def test_first_candidate_wins(self) -> None:
        a = RateLimits(rate=1, allowance=1)
        b = RateLimits(rate=2, allowance=2)
        assert resolve_effective_limits(None, a, b) == a

    def test_falls_back_to_settings(self) -> None:
        assert resolve_effective_limits(None, None) == settings_rate_limits()

    def test_overrides_return_new_instance(self) -> None:
        base = RateLimits()
        limits = resolve_effective_limits(
            base,
            rate_override=RateLimitOverride(rate=7, per=2),
            quota_override=QuotaOverride(quota_max=-1),
        )
        assert (limits.rate, limits.per, limits.allowance, limits.quota_max) == (7, 2, 7, -1)
        assert base == RateLimits()


class TestPathGlobs:
    def test_trailing_star_is_prefix(self) -> None:
        assert path_matches("/v1/*", "/v1/users") is True
        assert path_matches("/v1/*", "/v1/") is True
        assert path_matches("/v1/*", "/v2/users") is False

    def test_without_star_is_exact(self) -> None:
        assert path_matches("/health", "/health") is True
        assert path_matches("/health", "/healthz") is False

    def test_inner_star_is_literal(self) -> None:
        assert path_matches("/v1/*/items", "/v1/a/items") is False

    def test_matches_any(self) -> None:
        assert matches_any(["/a", "/b*"], "/bcd") is True
        assert matches_any([], "/a") is False
