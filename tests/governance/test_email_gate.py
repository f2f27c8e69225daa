"""Tests for email allowlist matching and EmailGate."""

import pytest

from accessgate.exceptions import ConflictError, NotFoundError, ValidationError
from accessgate.governance.email_gate import EmailGate, EmailPattern, matches_email


@pytest.fixture
def gate() -> EmailGate:
    return EmailGate()


class TestMatchesEmail:
    def test_domain_suffix_is_case_insensitive(self) -> None:
        assert matches_email("@example.com", "User@Example.COM") is True

    def test_wildcard(self) -> None:
        assert matches_email("*@example.com", "a@example.com") is True
        assert matches_email("admin-*@corp.io", "admin-ops@corp.io") is True
        assert matches_email("admin-*@corp.io", "ops@corp.io") is False

    def test_exact(self) -> None:
        assert matches_email("bob@example.com", "bob@example.com") is True
        assert matches_email("bob@example.com", "bobby@example.com") is False

    def test_dot_is_literal_in_wildcards(self) -> None:
        assert matches_email("*@example.com", "a@exampleXcom") is False

    def test_wildcard_is_anchored(self) -> None:
        assert matches_email("*@example.com", "a@example.com.evil.net") is False

    def test_domain_pattern_needs_suffix(self) -> None:
        assert matches_email("@example.com", "a@example.org") is False

    def test_surrounding_whitespace_ignored(self) -> None:
        assert matches_email("  @Example.com ", " a@example.com") is True

    def test_plain_string_without_markers_is_exact_only(self) -> None:
        assert matches_email("example.com", "a@example.com") is False


class TestEmailGate:
    def test_no_patterns_denies(self, gate: EmailGate) -> None:
        assert gate.is_email_allowed("anyone@example.com") is False

    def test_any_active_pattern_allows(self, gate: EmailGate) -> None:
        gate.add_pattern("@example.com")
        gate.add_pattern("ceo@other.org")
        assert gate.is_email_allowed("dev@example.com") is True
        assert gate.is_email_allowed("ceo@other.org") is True
        assert gate.is_email_allowed("cfo@other.org") is False

    def test_inactive_patterns_ignored(self, gate: EmailGate) -> None:
        gate.add_pattern("@example.com")
        gate.set_active("@EXAMPLE.com", False)
        assert gate.is_email_allowed("dev@example.com") is False
        assert gate.active_patterns() == []

    def test_pattern_normalised_on_add(self, gate: EmailGate) -> None:
        entry = gate.add_pattern("  *@Example.COM ", description="staff", created_by="admin")
        assert entry.pattern == "*@example.com"
        assert entry.created_by == "admin"

    def test_duplicate_pattern_conflicts(self, gate: EmailGate) -> None:
        gate.add_pattern("@example.com")
        with pytest.raises(ConflictError):
            gate.add_pattern("@EXAMPLE.COM")

    def test_length_bounds(self, gate: EmailGate) -> None:
        with pytest.raises(ValidationError):
            gate.add_pattern("@a")
        with pytest.raises(ValidationError):
            gate.add_pattern("@" + "a" * 300)

    def test_remove_pattern(self, gate: EmailGate) -> None:
        gate.add_pattern("@example.com")
        assert gate.remove_pattern("@example.com") is True
        assert gate.remove_pattern("@example.com") is False

    def test_set_active_missing(self, gate: EmailGate) -> None:
        with pytest.raises(NotFoundError):
            gate.set_active("@nope.com", True)

    def test_active_patterns_oldest_first(self, gate: EmailGate) -> None:
        first = gate.add_pattern("@one.com")
        second = gate.add_pattern("@two.com")
        ids = [p.pattern_id for p in gate.active_patterns()]
        assert ids == [first.pattern_id, second.pattern_id]


class TestEmailPattern:
    def test_model_normalises(self) -> None:
        assert EmailPattern(pattern=" @Foo.IO ").pattern == "@foo.io"

    def test_matches(self) -> None:
        assert EmailPattern(pattern="@foo.io").matches("x@FOO.io") is True
