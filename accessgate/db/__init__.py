"""Database layer for the authorization engine (PostgreSQL or SQLite).

Provides engine, session, models, and repositories mirroring the
in-memory governance stores.
"""

from accessgate.db.engine import Base, get_engine, get_session_factory, init_db
from accessgate.db.models import (
    ConfigEntryModel,
    CredentialModel,
    EmailPatternModel,
    GrantModel,
    PolicyAvailabilityModel,
)
from accessgate.db.repositories import (
    ConfigRepository,
    CredentialRepository,
    EmailPatternRepository,
    GrantRepository,
    PolicyAvailabilityRepository,
)

__all__ = [
    "Base",
    "get_engine",
    "get_session_factory",
    "init_db",
    "ConfigEntryModel",
    "CredentialModel",
    "EmailPatternModel",
    "GrantModel",
    "PolicyAvailabilityModel",
    "ConfigRepository",
    "CredentialRepository",
    "EmailPatternRepository",
    "GrantRepository",
    "PolicyAvailabilityRepository",
]
