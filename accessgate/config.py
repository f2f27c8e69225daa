"""
Central configuration loader for the AccessGate authorization engine.

Reads ``config/config.yaml`` and ``.env``, merges environment-variable
overrides (``ACCESSGATE_`` prefix), and exposes a typed :class:`Settings`
singleton via :func:`get_settings`.

These are process settings (defaults, storage, logging).  Operator-editable
runtime values live in :class:`accessgate.governance.config_store.ConfigStore`.
"""

import logging
import os
import threading
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any, Dict, List, Optional

import yaml
from dotenv import load_dotenv

logger = logging.getLogger(__name__)

# ---------------------------------------------------------------------------
# Resolve project root (directory containing ``config/``)
# ---------------------------------------------------------------------------

_THIS_DIR = Path(__file__).resolve().parent          # accessgate/
_PROJECT_ROOT = _THIS_DIR.parent                     # repo root


def _project_path(*parts: str) -> Path:
    """Build an absolute path relative to the project root."""
    return _PROJECT_ROOT.joinpath(*parts)


# ---------------------------------------------------------------------------
# Nested settings dataclasses
# ---------------------------------------------------------------------------


@dataclass
class GrantSettings:
    default_allowed_versions: List[str] = field(default_factory=lambda: ["Default"])
    expiring_window_days: int = 7


@dataclass
class RateLimitDefaults:
    allowance: int = 1000
    rate: int = 100
    per: int = 60
    quota_max: int = 10000
    quota_renewal_rate: int = 3600


@dataclass
class CredentialSettings:
    api_key_prefix: str = "agk"
    key_expiry_days: int = 365
    certificate_expiry_warning_days: int = 30
    hmac_algorithm: str = "hmac-sha256"
    hmac_secret_bytes: int = 32
    default_rate_limits: RateLimitDefaults = field(default_factory=RateLimitDefaults)


@dataclass
class EmailSettings:
    pattern_min_length: int = 3
    pattern_max_length: int = 255


@dataclass
class AuditSettings:
    max_entries: int = 10000
    enable_hash_chain: bool = True


@dataclass
class DatabaseSettings:
    url: str = "sqlite:///accessgate.db"
    pool_size: int = 10


@dataclass
class LoggingSettings:
    level: str = "INFO"
    format: str = "%(asctime)s %(levelname)s %(name)s %(message)s"


@dataclass
class Settings:
    """Top-level settings container."""
    grants: GrantSettings = field(default_factory=GrantSettings)
    credentials: CredentialSettings = field(default_factory=CredentialSettings)
    email: EmailSettings = field(default_factory=EmailSettings)
    audit: AuditSettings = field(default_factory=AuditSettings)
    database: DatabaseSettings = field(default_factory=DatabaseSettings)
    logging: LoggingSettings = field(default_factory=LoggingSettings)


# ---------------------------------------------------------------------------
# YAML loader
# ---------------------------------------------------------------------------

def _load_yaml(path: Path) -> Dict[str, Any]:
    """Read and parse a YAML file.  Returns ``{}`` if the file is missing."""
    if not path.exists():
        logger.warning("Config file not found: %s", path)
        return {}
    with open(path, "r", encoding="utf-8") as fh:
        data = yaml.safe_load(fh)
    return data if isinstance(data, dict) else {}


def _apply_dict(target: object, data: Dict[str, Any]) -> None:
    """Recursively apply *data* values onto a dataclass instance."""
    for key, value in data.items():
        if not hasattr(target, key):
            continue
        current = getattr(target, key)
        if isinstance(current, RateLimitDefaults) and isinstance(value, dict):
            _apply_dict(current, value)
        else:
            setattr(target, key, value)


# ---------------------------------------------------------------------------
# Env-var overrides  (ACCESSGATE_SECTION_KEY  e.g. ACCESSGATE_DATABASE_URL)
# ---------------------------------------------------------------------------

_FLAT_SECTIONS = [
    "grants", "credentials", "email", "audit", "database", "logging",
]

_TYPE_MAP = {
    int: int,
    float: float,
    bool: lambda v: v.lower() in ("1", "true", "yes"),
    str: str,
}


def _apply_env_overrides(settings: Settings) -> None:
    """Override flat scalar fields via ``ACCESSGATE_<SECTION>_<KEY>`` env vars."""
    for section_name in _FLAT_SECTIONS:
        section = getattr(settings, section_name, None)
        if section is None:
            continue
        prefix = f"ACCESSGATE_{section_name.upper()}_"
        for key in list(vars(section)):
            env_key = prefix + key.upper()
            env_val = os.environ.get(env_key)
            if env_val is None:
                continue
            current = getattr(section, key)
            if not isinstance(current, (int, float, bool, str)):
                logger.warning("Env override ignored for nested field %s", env_key)
                continue
            cast = _TYPE_MAP.get(type(current), str)
            try:
                setattr(section, key, cast(env_val))
                logger.debug("Env override applied: %s", env_key)
            except (ValueError, TypeError):
                logger.warning("Invalid env override %s", env_key)


# ---------------------------------------------------------------------------
# Singleton
# ---------------------------------------------------------------------------

_settings: Optional[Settings] = None
_lock = threading.Lock()


def get_settings(
    *,
    yaml_path: Optional[Path] = None,
    env_path: Optional[Path] = None,
    _force_reload: bool = False,
) -> Settings:
    """Return the application-wide :class:`Settings` singleton.

    On first call (or when ``_force_reload=True``) the function:

    1. Calls ``load_dotenv()`` to populate env vars from ``.env``.
    2. Reads ``config/config.yaml``.
    3. Applies ``ACCESSGATE_*`` environment-variable overrides.

    Args:
        yaml_path: Override the YAML config file path (testing).
        env_path: Override the ``.env`` file path (testing).
        _force_reload: Re-read everything even if already loaded.

    Returns:
        The global ``Settings`` instance.
    """
    global _settings

    if _settings is not None and not _force_reload:
        return _settings

    with _lock:
        # Double-check after acquiring lock
        if _settings is not None and not _force_reload:
            return _settings

        # 1. Load .env
        dotenv_path = env_path or _project_path(".env")
        load_dotenv(dotenv_path, override=True)

        # 2. Read YAML
        config_path = yaml_path or _project_path("config", "config.yaml")
        raw = _load_yaml(config_path)

        # 3. Build Settings with defaults, then overlay YAML values
        settings = Settings()

        for section_name in _FLAT_SECTIONS:
            section_data = raw.get(section_name)
            if isinstance(section_data, dict):
                section_obj = getattr(settings, section_name)
                _apply_dict(section_obj, section_data)

        # 4. Apply ACCESSGATE_* env-var overrides
        _apply_env_overrides(settings)

        _settings = settings
        logger.info("Settings loaded from %s", config_path)
        return _settings


def reset_settings() -> None:
    """Clear the cached singleton (for testing)."""
    global _settings
    with _lock:
        _settings = None
