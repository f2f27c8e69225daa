"""
AccessGate exception hierarchy.

All custom exceptions inherit from AccessGateException so callers can
catch a single base type when they want a broad safety net.  Denied
authorization is not an exception: the evaluator returns a Decision.
"""


class AccessGateException(Exception):
    """Base exception for all AccessGate errors."""


class ConfigurationError(AccessGateException, ValueError):
    """Raised when configuration is invalid or cannot be loaded."""


class ValidationError(AccessGateException, ValueError):
    """Raised when a record field is malformed (e.g. a pattern too short)."""


class ConflictError(AccessGateException):
    """Raised when a write collides with an existing unique record."""


class NotFoundError(AccessGateException, KeyError):
    """Raised when a lookup by identifier finds nothing."""
