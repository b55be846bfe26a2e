"""Configuration for redep.

Settings resolve in this order:
1. Environment variable named in CONFIG_SCHEMA (a .env file counts)
2. Value persisted in the SQLite config store (~/.redep/config.db)
3. Schema default
"""

import json
import logging
import os
import sqlite3
from dataclasses import dataclass
from datetime import datetime, timezone
from pathlib import Path
from typing import Any, Optional

from pydantic import BaseModel, Field, ValidationError

from .exceptions import ConfigurationError

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class ConfigKey:
    """Schema entry for a known configuration key."""
    default: Any
    security: str
    env: str | None
    description: str


CONFIG_SCHEMA: dict[str, ConfigKey] = {
    "server_port": ConfigKey(3000, "low", "SERVER_PORT", "Server Port"),
    "server_host": ConfigKey("0.0.0.0", "low", "SERVER_HOST", "Server Bind Address"),
    "secret_key": ConfigKey(None, "critical", "SECRET_KEY", "Authentication Secret"),
    "working_dir": ConfigKey(None, "medium", "WORKING_DIR", "Working Directory"),
    "deployment_command": ConfigKey(None, "high", "DEPLOYMENT_COMMAND", "Deployment Command"),
    "command_timeout": ConfigKey(None, "low", "COMMAND_TIMEOUT", "Deployment Command Timeout (s)"),
    "server_url": ConfigKey(None, "low", "SERVER_URL", "Default Server URL"),
    "deploy_timeout": ConfigKey(600, "low", "DEPLOY_TIMEOUT", "Client Round-Trip Timeout (s)"),
    "servers": ConfigKey({}, "medium", None, "Server Profiles"),
    "server_pid": ConfigKey(None, "low", None, "Server Process ID"),
    "server_managed_by": ConfigKey(None, "low", None, "Server Process Manager"),
    "server_started_at": ConfigKey(None, "low", None, "Server Start Time"),
}

MANDATORY_SERVER_KEYS = ("secret_key", "working_dir", "deployment_command")

SERVER_KEYS = (
    "server_port", "server_host", "secret_key", "working_dir",
    "deployment_command", "command_timeout", "server_pid",
)

SECURITY_ORDER = {"critical": 0, "high": 1, "medium": 2, "low": 3, "unknown": 4}

MASK = "********"


def get_redep_home() -> Path:
    """Directory holding redep's config database and server log."""
    return Path(os.getenv("REDEP_HOME", str(Path.home() / ".redep"))).expanduser()


def _now_iso() -> str:
    return datetime.now(timezone.utc).isoformat()


class ConfigStore:
    """SQLite-backed key-value store for redep settings.

    Values are stored as JSON so profiles (dicts) and ports (ints) keep
    their types. Every write records an `updated_at` timestamp.
    """

    def __init__(self, db_path: Path | str | None = None):
        """Initialize the config store.

        Args:
            db_path: Path to SQLite database. Defaults to ~/.redep/config.db
        """
        if db_path is None:
            db_path = get_redep_home() / "config.db"
        self.db_path = Path(db_path)
        self.db_path.parent.mkdir(parents=True, exist_ok=True)
        self._conn: Optional[sqlite3.Connection] = None
        self._init_db()

    def _init_db(self):
        """Initialize the database schema."""
        conn = self._get_conn()
        conn.execute("""
            CREATE TABLE IF NOT EXISTS config (
                key TEXT PRIMARY KEY,
                value TEXT NOT NULL,
                updated_at TEXT NOT NULL
            )
        """)
        conn.commit()
        try:
            # The store holds the shared secret
            os.chmod(self.db_path, 0o600)
        except OSError as e:
            logger.debug(f"Could not restrict permissions on {self.db_path}: {e}")

    def _get_conn(self) -> sqlite3.Connection:
        """Get or create database connection."""
        if self._conn is None:
            self._conn = sqlite3.connect(str(self.db_path))
        return self._conn

    def get_stored(self, key: str) -> tuple[bool, Any]:
        """Look up the persisted value only.

        Returns:
            Tuple of (found, value)
        """
        cursor = self._get_conn().execute(
            "SELECT value FROM config WHERE key = ?",
            (key,)
        )
        row = cursor.fetchone()
        if row is None:
            return False, None
        return True, json.loads(row[0])

    def get(self, key: str) -> Any:
        """Resolve a setting: environment, then stored value, then default."""
        schema = CONFIG_SCHEMA.get(key)
        if schema and schema.env:
            env_value = os.environ.get(schema.env)
            if env_value is not None:
                return env_value

        found, value = self.get_stored(key)
        if found:
            return value
        return schema.default if schema else None

    def set(self, key: str, value: Any) -> None:
        """Persist a value and stamp its modification time."""
        conn = self._get_conn()
        conn.execute(
            "INSERT OR REPLACE INTO config (key, value, updated_at) VALUES (?, ?, ?)",
            (key, json.dumps(value), _now_iso())
        )
        conn.commit()

    def delete(self, key: str) -> bool:
        """Remove a persisted value.

        Returns:
            True if deleted, False if key not found.
        """
        conn = self._get_conn()
        cursor = conn.execute("DELETE FROM config WHERE key = ?", (key,))
        conn.commit()
        return cursor.rowcount > 0

    def clear(self) -> None:
        """Remove every persisted value."""
        conn = self._get_conn()
        conn.execute("DELETE FROM config")
        conn.commit()

    def items(self) -> dict[str, tuple[Any, str]]:
        """All persisted values as {key: (value, updated_at)}."""
        cursor = self._get_conn().execute(
            "SELECT key, value, updated_at FROM config ORDER BY key"
        )
        return {key: (json.loads(value), updated) for key, value, updated in cursor.fetchall()}

    def close(self):
        """Close the database connection."""
        if self._conn:
            self._conn.close()
            self._conn = None


# Module-level singleton
_config_store: Optional[ConfigStore] = None


def get_config_store() -> ConfigStore:
    """Get or create the config store singleton."""
    global _config_store
    if _config_store is None:
        _config_store = ConfigStore()
    return _config_store


# ============================================================================
# Listings
# ============================================================================

@dataclass
class ConfigEntry:
    """One row of `redep config list`."""
    key: str
    value: Any
    default: Any
    source: str          # "Environment", "File" or "Default"
    security: str
    updated_at: str | None
    description: str

    @property
    def is_modified(self) -> bool:
        return self.source == "File"

    def display_value(self) -> Any:
        if self.security == "critical" and self.value:
            return MASK
        return self.value

    def to_dict(self) -> dict[str, Any]:
        return {
            "key": self.key,
            "value": self.display_value(),
            "default": self.default,
            "source": self.source,
            "security": self.security,
            "updated_at": self.updated_at,
            "description": self.description,
        }


def get_detailed_config(store: ConfigStore) -> list[ConfigEntry]:
    """Describe every schema key plus any custom keys that were set."""
    stored = store.items()
    result = []

    for key, schema in CONFIG_SCHEMA.items():
        env_value = os.environ.get(schema.env) if schema.env else None
        if env_value is not None:
            value, source = env_value, "Environment"
        elif key in stored:
            value, source = stored[key][0], "File"
        else:
            value, source = schema.default, "Default"

        result.append(ConfigEntry(
            key=key,
            value=value,
            default=schema.default,
            source=source,
            security=schema.security,
            updated_at=stored[key][1] if key in stored else None,
            description=schema.description,
        ))

    for key, (value, updated_at) in stored.items():
        if key not in CONFIG_SCHEMA:
            result.append(ConfigEntry(
                key=key,
                value=value,
                default=None,
                source="File",
                security="unknown",
                updated_at=updated_at,
                description="Custom Configuration",
            ))

    return result


def sort_config_entries(entries: list[ConfigEntry], sort_by: str = "key") -> list[ConfigEntry]:
    """Order listing rows by key, modification time, source or security."""
    if sort_by == "modified":
        return sorted(entries, key=lambda e: e.updated_at or "", reverse=True)
    if sort_by == "source":
        return sorted(entries, key=lambda e: e.source)
    if sort_by == "security":
        return sorted(entries, key=lambda e: SECURITY_ORDER.get(e.security, 4))
    return sorted(entries, key=lambda e: e.key)


def get_server_config(store: ConfigStore) -> list[ConfigEntry]:
    """Listing rows for the server-side keys only."""
    return [entry for entry in get_detailed_config(store) if entry.key in SERVER_KEYS]


def get_server_security_level(url: str | None) -> str:
    if not url:
        return "unknown"
    if url.startswith("https://") or url.startswith("wss://"):
        return "high"
    if url.startswith(("http://localhost", "http://127.0.0.1", "ws://localhost", "ws://127.0.0.1")):
        return "low"
    if url.startswith("http://") or url.startswith("ws://"):
        return "medium"
    return "unknown"


SERVER_DESCRIPTIONS = {
    "prod": "Production environment with high security",
    "staging": "Staging environment for testing",
    "uat": "User Acceptance Testing environment",
    "dev": "Development environment",
    "test": "Testing environment",
}


def get_server_description(server_name: str) -> str:
    return SERVER_DESCRIPTIONS.get(server_name.lower(), "Custom environment")


def get_client_config(store: ConfigStore) -> list[dict[str, str]]:
    """Listing rows for configured server profiles, secrets masked."""
    return [
        {
            "server": name,
            "host": profile.url or "Not configured",
            "secret_key": MASK if profile.secret else "Not set",
            "security": get_server_security_level(profile.url),
            "description": get_server_description(name),
        }
        for name, profile in get_server_profiles(store).items()
    ]


# ============================================================================
# Server profiles (client side)
# ============================================================================

class ServerProfile(BaseModel):
    """A named deploy target."""
    name: str = Field(..., min_length=1)
    url: str = Field(..., min_length=1)
    secret: str = Field(..., min_length=1)


def get_server_profiles(store: ConfigStore) -> dict[str, ServerProfile]:
    servers = store.get("servers") or {}
    profiles = {}
    for name, entry in servers.items():
        try:
            profiles[name] = ServerProfile(name=name, url=entry.get("url", ""), secret=entry.get("secret", ""))
        except ValidationError as e:
            logger.warning(f"Ignoring incomplete server profile {name!r}: {e.error_count()} error(s)")
    return profiles


def save_server_profile(store: ConfigStore, profile: ServerProfile) -> None:
    servers = dict(store.get("servers") or {})
    servers[profile.name] = {"url": profile.url, "secret": profile.secret}
    store.set("servers", servers)


def resolve_deploy_target(store: ConfigStore, server_name: str) -> ServerProfile:
    """Find the URL and secret to use for `redep deploy <server_name>`.

    Falls back to the global `server_url` / `secret_key` settings when no
    profile with that name exists.

    Raises:
        ConfigurationError: If neither a profile nor the global settings are usable
    """
    servers = store.get("servers") or {}
    if server_name in servers:
        entry = servers[server_name] or {}
        url, secret = entry.get("url"), entry.get("secret")
    else:
        url, secret = store.get("server_url"), store.get("secret_key")

    if not url:
        raise ConfigurationError(
            f'Server "{server_name}" not found in config, and global "server_url" is not set.\n'
            '  - Run "redep init client" to configure a server.',
            missing_keys=["server_url"]
        )
    if not secret:
        raise ConfigurationError(
            '"secret_key" is not set. Set SECRET_KEY env var or run '
            '"redep config set secret_key <your-secret>"',
            missing_keys=["secret_key"]
        )
    return ServerProfile(name=server_name, url=str(url), secret=str(secret))


# ============================================================================
# Server settings
# ============================================================================

def validate_mandatory_config(store: ConfigStore) -> list[str]:
    """Names of mandatory server keys that have no usable value."""
    return [key for key in MANDATORY_SERVER_KEYS if not store.get(key)]


def missing_config_message(missing: list[str]) -> str | None:
    """Itemized remediation text for missing keys."""
    if not missing:
        return None

    param_list = ", ".join(f"'{param}'" for param in missing)
    lines = [f"Required configuration parameter(s) {param_list} are not set."]
    for param in missing:
        schema = CONFIG_SCHEMA.get(param)
        if schema and schema.env:
            lines.append(
                f"  - Set '{param}' using 'redep config set {param} <value>' "
                f"or add '{schema.env}=<value>' to your .env file"
            )
        else:
            lines.append(f"  - Set '{param}' using 'redep config set {param} <value>'")
    return "\n".join(lines)


def require_server_config(store: ConfigStore) -> None:
    """Fail fast, naming every missing mandatory key.

    Raises:
        ConfigurationError: If any of MANDATORY_SERVER_KEYS is unset
    """
    missing = validate_mandatory_config(store)
    if missing:
        raise ConfigurationError(missing_config_message(missing), missing_keys=missing)


class ServerSettings(BaseModel):
    """Validated settings for the listening server."""
    port: int = Field(default=3000, ge=1, le=65535)
    host: str = Field(default="0.0.0.0", min_length=1)
    secret_key: str = Field(..., min_length=1)
    working_dir: str = Field(..., min_length=1)
    deployment_command: str = Field(..., min_length=1)
    command_timeout: Optional[float] = Field(default=None, gt=0)
    handshake_timeout: float = Field(default=10.0, gt=0)
    max_output_bytes: int = Field(default=1024 * 1024, ge=1)


def load_server_settings(store: ConfigStore, port: int | str | None = None) -> ServerSettings:
    """Build ServerSettings from the store, with an optional port override.

    Raises:
        ConfigurationError: If mandatory keys are missing or values are invalid
    """
    require_server_config(store)

    try:
        return ServerSettings(
            port=port or store.get("server_port"),
            host=store.get("server_host"),
            secret_key=store.get("secret_key"),
            working_dir=store.get("working_dir"),
            deployment_command=store.get("deployment_command"),
            command_timeout=store.get("command_timeout") or None,
        )
    except ValidationError as e:
        problems = "; ".join(
            f"{'.'.join(str(p) for p in err['loc'])}: {err['msg']}" for err in e.errors()
        )
        raise ConfigurationError(f"Invalid server configuration: {problems}") from e
