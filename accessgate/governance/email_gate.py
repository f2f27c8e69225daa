"""
Email allowlist gating for self-service sign-up.

Patterns come in three forms, all normalised to lowercase and trimmed:

* exact: ``bob@example.com``
* wildcard: ``*@example.com``, ``admin-*@corp.io`` (``*`` = any sequence)
* domain: ``@example.com`` (suffix match)

An email is allowed when any active pattern matches it.  With no active
patterns nothing is allowed.
"""

import logging
import re
import threading
from datetime import datetime
from typing import Dict, List, Optional
from uuid import uuid4

from pydantic import BaseModel, Field, field_validator

from accessgate.config import get_settings
from accessgate.exceptions import ConflictError, NotFoundError, ValidationError
from accessgate.governance.clock import utcnow

logger = logging.getLogger(__name__)


def normalize_pattern(value: str) -> str:
    return value.strip().lower()


def matches_email(pattern: str, email: str) -> bool:
    """Return True if *email* matches an allowlist *pattern*."""
    pattern = normalize_pattern(pattern)
    email = normalize_pattern(email)

    if pattern == email:
        return True

    if "*" in pattern:
        regex = ".*".join(re.escape(part) for part in pattern.split("*"))
        return re.fullmatch(regex, email) is not None

    if pattern.startswith("@"):
        return email.endswith(pattern)

    return False


class EmailPattern(BaseModel):
    """Allowlist entry.

    Attributes:
        pattern_id: Unique identifier.
        pattern: Normalised pattern string.
        description: Optional description.
        is_active: Whether the pattern takes part in matching.
        created_by: User who added the pattern.
        created_at: Creation timestamp.
    """

    pattern_id: str = Field(default_factory=lambda: uuid4().hex)
    pattern: str
    description: Optional[str] = None
    is_active: bool = True
    created_by: Optional[str] = None
    created_at: datetime = Field(default_factory=utcnow)

    @field_validator("pattern")
    @classmethod
    def _normalize(cls, value: str) -> str:
        return normalize_pattern(value)

    def matches(self, email: str) -> bool:
        return matches_email(self.pattern, email)


class EmailGate:
    """Allowlist of email patterns."""

    def __init__(self) -> None:
        _s = get_settings().email
        self._min_length = _s.pattern_min_length
        self._max_length = _s.pattern_max_length
        self._lock = threading.Lock()
        self._patterns: Dict[str, EmailPattern] = {}  # normalised pattern -> entry
        logger.info("EmailGate initialised", extra={})

    def add_pattern(
        self,
        pattern: str,
        description: Optional[str] = None,
        created_by: Optional[str] = None,
    ) -> EmailPattern:
        """Add a pattern to the allowlist.

        Raises:
            ValidationError: If the pattern length is out of bounds.
            ConflictError: If the pattern already exists.
        """
        normalized = normalize_pattern(pattern)
        if not self._min_length <= len(normalized) <= self._max_length:
            raise ValidationError(
                f"Email pattern must be {self._min_length}-{self._max_length} "
                f"characters, got {len(normalized)}"
            )
        entry = EmailPattern(
            pattern=normalized, description=description, created_by=created_by
        )
        with self._lock:
            if normalized in self._patterns:
                raise ConflictError(f"Email pattern '{normalized}' already exists")
            self._patterns[normalized] = entry
        logger.info("Email pattern added", extra={"pattern": normalized})
        return entry

    def set_active(self, pattern: str, is_active: bool) -> EmailPattern:
        """Enable or disable a pattern.

        Raises:
            NotFoundError: If the pattern does not exist.
        """
        normalized = normalize_pattern(pattern)
        with self._lock:
            entry = self._patterns.get(normalized)
            if entry is None:
                raise NotFoundError(f"Email pattern '{normalized}' not found")
            entry.is_active = is_active
        return entry

    def remove_pattern(self, pattern: str) -> bool:
        with self._lock:
            return self._patterns.pop(normalize_pattern(pattern), None) is not None

    def active_patterns(self) -> List[EmailPattern]:
        """Active patterns, oldest first."""
        with self._lock:
            active = [p for p in self._patterns.values() if p.is_active]
        return sorted(active, key=lambda p: p.created_at)

    def is_email_allowed(self, email: str) -> bool:
        allowed = any(p.matches(email) for p in self.active_patterns())
        if not allowed:
            logger.info("Email not on allowlist", extra={"domain": email.rpartition("@")[2]})
        return allowed
