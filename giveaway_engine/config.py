from __future__ import annotations

from dataclasses import dataclass, field
from pathlib import Path
from typing import Any, Dict, List, Optional

import os
import yaml


class ConfigError(RuntimeError):
    """Raised when the configuration file is invalid."""


@dataclass(slots=True)
class LoggingConfig:
    level: str = "INFO"
    logger_channel_id: Optional[int] = None


@dataclass(slots=True)
class StorageConfig:
    path: Path = Path("data") / "giveaways.sqlite"


@dataclass(slots=True)
class GiveawayDefaults:
    claim_timeout_seconds: int = 300
    max_reroll_count: int = 5


@dataclass(slots=True)
class SchedulerConfig:
    workers: int = 2
    poll_interval_seconds: float = 1.0
    lease_seconds: float = 30.0
    max_retries: int = 3
    base_delay_seconds: float = 1.0
    batch_size: int = 20


@dataclass(slots=True)
class PermissionsConfig:
    admin_roles: List[int] = field(default_factory=list)
    development_guild_id: Optional[int] = None


@dataclass(slots=True)
class Config:
    token: str
    application_id: int
    logging: LoggingConfig
    storage: StorageConfig
    defaults: GiveawayDefaults
    scheduler: SchedulerConfig
    permissions: PermissionsConfig


def _expand_env(value: str, key: str) -> str:
    """Replace a whole-value ``${NAME}`` reference with the environment variable."""
    stripped = value.strip()
    if not (stripped.startswith("${") and stripped.endswith("}")):
        return value
    name = stripped[2:-1].strip()
    if not name:
        raise ConfigError(f"{key} has an empty environment reference.")
    resolved = os.getenv(name)
    if resolved is None:
        raise ConfigError(f"{key} refers to environment variable '{name}', which is not set.")
    return resolved


def _section(data: Dict[str, Any], key: str) -> Dict[str, Any]:
    value = data.get(key)
    if value is None:
        return {}
    if not isinstance(value, dict):
        raise ConfigError(f"{key} must be a mapping.")
    return value


def _snowflake(value: Any, key: str, *, optional: bool = False) -> Optional[int]:
    if optional and value in (None, "", 0):
        return None
    if isinstance(value, bool):
        raise ConfigError(f"{key} must be a Discord ID.")
    try:
        parsed = int(value)
    except (TypeError, ValueError) as exc:
        raise ConfigError(f"{key} must be a Discord ID, got {value!r}.") from exc
    if parsed <= 0:
        raise ConfigError(f"{key} must be a positive Discord ID.")
    return parsed


def _int(data: Dict[str, Any], key: str, default: int, *, section: str, minimum: int) -> int:
    value = data.get(key, default)
    if isinstance(value, bool) or not isinstance(value, int) or value < minimum:
        raise ConfigError(f"{section}.{key} must be an integer >= {minimum}.")
    return value


def _positive_number(data: Dict[str, Any], key: str, default: float, *, section: str) -> float:
    value = data.get(key, default)
    if isinstance(value, bool) or not isinstance(value, (int, float)) or value <= 0:
        raise ConfigError(f"{section}.{key} must be a positive number.")
    return float(value)


def _parse_logging(data: Dict[str, Any]) -> LoggingConfig:
    return LoggingConfig(
        level=str(data.get("level", "INFO")),
        logger_channel_id=_snowflake(
            data.get("logger_channel_id"), "logging.logger_channel_id", optional=True
        ),
    )


def _parse_storage(data: Dict[str, Any]) -> StorageConfig:
    raw_path = data.get("path")
    if raw_path in (None, ""):
        return StorageConfig()
    return StorageConfig(path=Path(_expand_env(str(raw_path), "storage.path")))


def _parse_defaults(data: Dict[str, Any]) -> GiveawayDefaults:
    return GiveawayDefaults(
        claim_timeout_seconds=_int(
            data, "claim_timeout_seconds", 300, section="defaults", minimum=1
        ),
        max_reroll_count=_int(data, "max_reroll_count", 5, section="defaults", minimum=0),
    )


def _parse_scheduler(data: Dict[str, Any]) -> SchedulerConfig:
    return SchedulerConfig(
        workers=_int(data, "workers", 2, section="scheduler", minimum=1),
        poll_interval_seconds=_positive_number(
            data, "poll_interval_seconds", 1.0, section="scheduler"
        ),
        lease_seconds=_positive_number(data, "lease_seconds", 30.0, section="scheduler"),
        max_retries=_int(data, "max_retries", 3, section="scheduler", minimum=0),
        base_delay_seconds=_positive_number(
            data, "base_delay_seconds", 1.0, section="scheduler"
        ),
        batch_size=_int(data, "batch_size", 20, section="scheduler", minimum=1),
    )


def _parse_permissions(data: Dict[str, Any]) -> PermissionsConfig:
    roles = data.get("admin_roles") or []
    if not isinstance(roles, list):
        raise ConfigError("permissions.admin_roles must be a list of role IDs.")
    return PermissionsConfig(
        admin_roles=[_snowflake(role, "permissions.admin_roles") for role in roles],
        development_guild_id=_snowflake(
            data.get("development_guild_id"),
            "permissions.development_guild_id",
            optional=True,
        ),
    )


def load_config(path: Path) -> Config:
    if not path.exists():
        raise ConfigError(f"Config file {path} does not exist.")

    data = yaml.safe_load(path.read_text(encoding="utf-8"))
    if not isinstance(data, dict):
        raise ConfigError("Configuration file must contain a mapping at the root.")

    if "token" not in data:
        raise ConfigError("Missing required config key: token")
    token = _expand_env(str(data["token"]), "token").strip()
    if not token:
        raise ConfigError("token must not be empty.")
    if "application_id" not in data:
        raise ConfigError("Missing required config key: application_id")

    return Config(
        token=token,
        application_id=_snowflake(data["application_id"], "application_id"),
        logging=_parse_logging(_section(data, "logging")),
        storage=_parse_storage(_section(data, "storage")),
        defaults=_parse_defaults(_section(data, "defaults")),
        scheduler=_parse_scheduler(_section(data, "scheduler")),
        permissions=_parse_permissions(_section(data, "permissions")),
    )
