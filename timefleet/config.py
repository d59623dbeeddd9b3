"""Configuration management for the fleet reconciliation service."""
from __future__ import annotations

import os
from dataclasses import dataclass, field
from pathlib import Path
from typing import Dict, Iterable, Optional

import yaml

DEFAULT_REMOTE_USERNAME = "timekpr-remote"
DEFAULT_TOOL_VERSION = "timekpr-next"
DEFAULT_RECONCILE_INTERVAL = 10.0
DEFAULT_WORKERS = 4

_DEFAULT_KEY_CANDIDATES = (
    Path("ssh/timekpr_ui_key"),
    Path("/app/ssh/timekpr_ui_key"),
    Path("~/.ssh/id_ed25519"),
    Path("~/.ssh/id_rsa"),
)

_LOG_LEVELS = {"DEBUG", "INFO", "WARNING", "ERROR", "CRITICAL"}


class ConfigError(ValueError):
    """Raised when the configuration file contains invalid values."""


def _resolve_path(raw: object, base_path: Path | None) -> Path:
    candidate = Path(str(raw)).expanduser()
    if candidate.is_absolute():
        return candidate.resolve(strict=False)
    if base_path is not None:
        return (base_path / candidate).resolve(strict=False)
    return candidate.resolve(strict=False)


def _positive_float(data: Dict[str, object], key: str, default: float) -> float:
    raw = data.get(key, default)
    try:
        value = float(raw)  # type: ignore[arg-type]
    except (TypeError, ValueError) as exc:
        raise ConfigError(f"'{key}' must be a number") from exc
    if value <= 0:
        raise ConfigError(f"'{key}' must be greater than zero")
    return value


def _positive_int(data: Dict[str, object], key: str, default: int) -> int:
    raw = data.get(key, default)
    try:
        value = int(raw)  # type: ignore[arg-type]
    except (TypeError, ValueError) as exc:
        raise ConfigError(f"'{key}' must be a whole number") from exc
    if value <= 0:
        raise ConfigError(f"'{key}' must be greater than zero")
    return value


def find_default_private_key(candidates: Iterable[Path] = _DEFAULT_KEY_CANDIDATES) -> Optional[Path]:
    """Return the first existing key among the well-known locations."""

    for candidate in candidates:
        expanded = candidate.expanduser()
        if expanded.exists():
            return expanded.resolve(strict=False)
    return None


@dataclass(frozen=True)
class AgentAccessConfig:
    """How to reach the enforcement tool on managed hosts."""

    username: str = DEFAULT_REMOTE_USERNAME
    private_key_path: Optional[Path] = None
    passphrase: Optional[str] = None
    port: int = 22
    allow_unknown_hosts: bool = False
    known_hosts_file: Optional[Path] = None
    connect_timeout: float = 10.0
    command_timeout: float = 30.0
    tool_version: str = DEFAULT_TOOL_VERSION
    sudo: bool = False

    @staticmethod
    def from_dict(data: Dict[str, object], base_path: Path | None = None) -> "AgentAccessConfig":
        """Create a :class:`AgentAccessConfig` from raw dictionary data."""

        username = str(data.get("username") or DEFAULT_REMOTE_USERNAME).strip()
        if not username:
            raise ConfigError("'remote.username' must not be empty")

        key_path = data.get("private_key_path")
        known_hosts = data.get("known_hosts_file")

        try:
            port = int(data.get("port", 22))  # type: ignore[arg-type]
        except (TypeError, ValueError) as exc:
            raise ConfigError("'remote.port' must be a whole number") from exc
        if not 0 < port < 65536:
            raise ConfigError("'remote.port' must be between 1 and 65535")

        return AgentAccessConfig(
            username=username,
            private_key_path=_resolve_path(key_path, base_path) if key_path else None,
            passphrase=str(data["passphrase"]) if data.get("passphrase") is not None else None,
            port=port,
            allow_unknown_hosts=bool(data.get("allow_unknown_hosts", False)),
            known_hosts_file=_resolve_path(known_hosts, base_path) if known_hosts else None,
            connect_timeout=_positive_float(data, "connect_timeout", 10.0),
            command_timeout=_positive_float(data, "command_timeout", 30.0),
            tool_version=str(data.get("tool_version") or DEFAULT_TOOL_VERSION),
            sudo=bool(data.get("sudo", False)),
        )

    def resolve_private_key(self) -> Path:
        """Return the configured key or fall back to the well-known locations."""

        if self.private_key_path is not None:
            return self.private_key_path
        found = find_default_private_key()
        if found is None:
            raise ConfigError(
                "No SSH private key configured and none found in the default locations "
                "(ssh/timekpr_ui_key, ~/.ssh/id_ed25519, ~/.ssh/id_rsa)"
            )
        return found


@dataclass(frozen=True)
class FleetConfig:
    """Top-level settings for the reconciliation service."""

    database_path: Optional[Path] = None
    reconcile_interval: float = DEFAULT_RECONCILE_INTERVAL
    workers: int = DEFAULT_WORKERS
    repair_drift: bool = False
    log_level: str = "INFO"
    remote: AgentAccessConfig = field(default_factory=AgentAccessConfig)

    @staticmethod
    def from_dict(data: Dict[str, object], base_path: Path | None = None) -> "FleetConfig":
        remote_raw = data.get("remote") or {}
        if not isinstance(remote_raw, dict):
            raise ConfigError("'remote' must be a mapping")

        log_level = str(data.get("log_level") or "INFO").upper()
        if log_level not in _LOG_LEVELS:
            raise ConfigError(f"Unknown log level '{log_level}'")

        database_path = data.get("database_path")
        return FleetConfig(
            database_path=_resolve_path(database_path, base_path) if database_path else None,
            reconcile_interval=_positive_float(data, "reconcile_interval", DEFAULT_RECONCILE_INTERVAL),
            workers=_positive_int(data, "workers", DEFAULT_WORKERS),
            repair_drift=bool(data.get("repair_drift", False)),
            log_level=log_level,
            remote=AgentAccessConfig.from_dict(remote_raw, base_path=base_path),
        )


def load_fleet_config(config_path: Path) -> FleetConfig:
    """Load settings from a YAML file; a missing file yields the defaults."""

    if not config_path.exists():
        return FleetConfig()

    with config_path.open("r", encoding="utf-8") as handle:
        try:
            raw = yaml.safe_load(handle) or {}
        except yaml.YAMLError as exc:
            raise ConfigError(f"Unable to parse {config_path}: {exc}") from exc

    if not isinstance(raw, dict):
        raise ConfigError("Configuration file must contain a mapping at the top level")

    return FleetConfig.from_dict(raw, base_path=config_path.parent)


def resolve_config_path(env_value: Optional[str]) -> Path:
    """Resolve the path to the configuration file."""
    if env_value:
        candidate = Path(env_value).expanduser().resolve(strict=False)
    else:
        candidate = (Path(__file__).resolve().parent.parent / "config" / "fleet.yaml").resolve(strict=False)
    return candidate


def resolve_database_location(config: FleetConfig) -> Optional[str]:
    """Return the database location, letting ``TIMEFLEET_DB_PATH`` win over the file."""

    env_value = os.getenv("TIMEFLEET_DB_PATH")
    if env_value:
        return env_value
    if config.database_path is not None:
        return str(config.database_path)
    return None


__all__ = [
    "ConfigError",
    "AgentAccessConfig",
    "FleetConfig",
    "find_default_private_key",
    "load_fleet_config",
    "resolve_config_path",
    "resolve_database_location",
]
