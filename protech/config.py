"""Configuration for protech sync.

Settings are resolved in this order (later wins):

1. ``<home>/config.json`` for tuning values (timeouts, retry policy, batch size)
2. ``<home>/credentials.json`` for backend URL, keys and session identity
3. ``PROTECH_*`` environment variables
4. Explicit keyword overrides passed to :func:`load_settings`

``<home>`` is ``$PROTECH_DATA_DIR`` when set, otherwise ``~/.protech``.
"""

import json
import logging
import os
from dataclasses import dataclass, fields
from pathlib import Path
from typing import Any, Dict, Optional
from urllib.parse import urlparse

logger = logging.getLogger(__name__)

DEFAULT_MAX_RETRIES = 3
DEFAULT_RETRY_BASE_DELAY = 5.0  # seconds
DEFAULT_RETRY_MAX_DELAY = 300.0
DEFAULT_BATCH_SIZE = 50
DEFAULT_REQUEST_TIMEOUT = 10.0
DEFAULT_POLL_INTERVAL = 30.0
DEFAULT_CONNECTIVITY_TTL = 30.0
DEFAULT_TOMBSTONE_RETENTION_DAYS = 30

ENV_PREFIX = "PROTECH_"

# credential/identity keys read from credentials.json and the environment
_CREDENTIAL_KEYS = ("backend_url", "api_key", "access_token", "shop_id", "role", "user_id")


def get_protech_home() -> Path:
    """Return the protech data directory."""
    override = os.environ.get("PROTECH_DATA_DIR")
    if override:
        return Path(override).expanduser()
    return Path.home() / ".protech"


def validate_backend_url(url: Optional[str], *, allow_localhost_http: bool = True) -> Optional[str]:
    """Validate a backend URL for safe credential transmission.

    Only https is accepted, except plain http to localhost/127.0.0.1 when
    ``allow_localhost_http`` is set.

    Returns:
        The URL without a trailing slash, or None if rejected.
    """
    if not url:
        return None

    parsed = urlparse(url)
    if parsed.scheme not in {"https", "http"}:
        logger.warning("Invalid backend_url scheme; only http/https allowed.")
        return None
    if not parsed.netloc:
        logger.warning("Invalid backend_url; missing host.")
        return None
    if parsed.scheme == "http":
        if not allow_localhost_http:
            logger.warning("HTTP not allowed in this context.")
            return None
        host = parsed.hostname or ""
        if host not in {"localhost", "127.0.0.1"}:
            logger.warning("Refusing non-local http backend_url for security.")
            return None
    return url.rstrip("/")


@dataclass
class Settings:
    """Resolved runtime settings."""

    backend_url: Optional[str] = None
    api_key: Optional[str] = None
    access_token: Optional[str] = None
    shop_id: Optional[str] = None
    role: Optional[str] = None
    user_id: Optional[str] = None
    db_path: Optional[Path] = None
    request_timeout: float = DEFAULT_REQUEST_TIMEOUT
    max_retries: int = DEFAULT_MAX_RETRIES
    retry_base_delay: float = DEFAULT_RETRY_BASE_DELAY
    retry_max_delay: float = DEFAULT_RETRY_MAX_DELAY
    batch_size: int = DEFAULT_BATCH_SIZE
    poll_interval: float = DEFAULT_POLL_INTERVAL
    connectivity_ttl: float = DEFAULT_CONNECTIVITY_TTL
    tombstone_retention_days: int = DEFAULT_TOMBSTONE_RETENTION_DAYS

    @property
    def has_backend(self) -> bool:
        return bool(self.backend_url and (self.api_key or self.access_token))

    def resolved_db_path(self) -> Path:
        if self.db_path is not None:
            return Path(self.db_path)
        return get_protech_home() / "protech.db"

    def redacted(self) -> Dict[str, Any]:
        """Settings as a dict with secrets masked, for status output."""
        data = {f.name: getattr(self, f.name) for f in fields(self)}
        for secret in ("api_key", "access_token"):
            if data.get(secret):
                data[secret] = data[secret][:4] + "..."
        if data.get("db_path") is not None:
            data["db_path"] = str(data["db_path"])
        return data


def _read_json(path: Path) -> Dict[str, Any]:
    if not path.exists():
        return {}
    try:
        with open(path) as f:
            data = json.load(f)
    except (json.JSONDecodeError, OSError) as e:
        logger.debug(f"Failed to read {path.name}: {e}")
        return {}
    if not isinstance(data, dict):
        logger.warning(f"Ignoring {path.name}: expected a JSON object")
        return {}
    return data


def _coerce(name: str, value: Any) -> Any:
    """Convert a raw config value to the type of the matching Settings field."""
    if value is None:
        return None
    if name == "db_path":
        return Path(value).expanduser()
    if name in ("max_retries", "batch_size", "tombstone_retention_days"):
        return int(value)
    if name in (
        "request_timeout",
        "retry_base_delay",
        "retry_max_delay",
        "poll_interval",
        "connectivity_ttl",
    ):
        return float(value)
    return str(value)


def load_settings(**overrides: Any) -> Settings:
    """Load settings from the data home, the environment and overrides."""
    home = get_protech_home()
    known = {f.name for f in fields(Settings)}
    values: Dict[str, Any] = {}

    for key, value in _read_json(home / "config.json").items():
        if key in known:
            values[key] = value
        else:
            logger.debug(f"Ignoring unknown config key: {key}")

    creds = _read_json(home / "credentials.json")
    for key in _CREDENTIAL_KEYS:
        if creds.get(key):
            values[key] = creds[key]
    # Accept "token" as an alias for the access token
    if not values.get("access_token") and creds.get("token"):
        values["access_token"] = creds["token"]

    for name in known:
        env_value = os.environ.get(ENV_PREFIX + name.upper())
        if env_value:
            values[name] = env_value

    for key, value in overrides.items():
        if key not in known:
            raise ValueError(f"Unknown setting: {key}")
        if value is not None:
            values[key] = value

    try:
        settings = Settings(**{k: _coerce(k, v) for k, v in values.items()})
    except (TypeError, ValueError) as e:
        raise ValueError(f"Invalid protech configuration: {e}") from e

    if settings.backend_url:
        settings.backend_url = validate_backend_url(settings.backend_url)
    if settings.max_retries < 0:
        raise ValueError("max_retries must be >= 0")
    if settings.batch_size < 1:
        raise ValueError("batch_size must be >= 1")
    return settings
