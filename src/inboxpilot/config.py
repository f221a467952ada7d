"""Config file loading for InboxPilot.

``config/config.yaml`` (or the file named by ``INBOXPILOT_CONFIG_PATH``) is
parsed with PyYAML, overlaid with environment variables, and validated into
an ``AppConfig``. The web process keeps one loaded copy and swaps it for a
fresh one when the file's mtime moves forward; a broken edit is logged and
the previous copy stays in use.

Secrets (queue token, callback secret, client secrets) normally arrive via
the environment, see ``ENV_OVERRIDES``.

Usage:
    from inboxpilot.config import get_config, reload_config_if_changed

    config = get_config()
    if reload_config_if_changed():
        config = get_config()
"""

import os
import threading
from dataclasses import dataclass
from pathlib import Path
from typing import Any

import yaml
from pydantic import ValidationError

from inboxpilot.config_schema import CURRENT_SCHEMA_VERSION, AppConfig
from inboxpilot.core.errors import ConfigLoadError, ConfigValidationError
from inboxpilot.core.logging import get_logger

logger = get_logger(__name__)

CONFIG_PATH_ENV = "INBOXPILOT_CONFIG_PATH"
DEFAULT_CONFIG_PATH = Path("config/config.yaml")

# env var -> (section, key)
ENV_OVERRIDES: dict[str, tuple[str, str]] = {
    "DATABASE_PATH": ("database", "path"),
    "REDIS_URL": ("redis", "url"),
    "QSTASH_URL": ("queue", "base_url"),
    "QSTASH_TOKEN": ("queue", "token"),
    "SCHEDULED_ACTIONS_CALLBACK_URL": ("queue", "callback_url"),
    "CRON_SECRET": ("queue", "callback_secret"),
    "GOOGLE_CLIENT_ID": ("google", "client_id"),
    "GOOGLE_CLIENT_SECRET": ("google", "client_secret"),
    "GOOGLE_PUBSUB_VERIFICATION_TOKEN": ("google", "pubsub_verification_token"),
    "MICROSOFT_CLIENT_ID": ("microsoft", "client_id"),
    "MICROSOFT_CLIENT_SECRET": ("microsoft", "client_secret"),
    "MICROSOFT_WEBHOOK_CLIENT_STATE": ("microsoft", "webhook_client_state"),
}


@dataclass
class _LoadedConfig:
    config: AppConfig
    path: Path
    mtime: float


_lock = threading.Lock()
_loaded: _LoadedConfig | None = None


def _config_path() -> Path:
    return Path(os.environ.get(CONFIG_PATH_ENV) or DEFAULT_CONFIG_PATH)


def _apply_env_overrides(data: dict[str, Any]) -> dict[str, Any]:
    """Overlay non-empty environment variables onto the parsed YAML."""
    merged = dict(data)
    for env_name, (section, key) in ENV_OVERRIDES.items():
        value = os.environ.get(env_name)
        if not value:
            continue
        current = merged.get(section)
        merged[section] = {**(current if isinstance(current, dict) else {}), key: value}
    return merged


def _describe_errors(error: ValidationError) -> str:
    lines = []
    for err in error.errors():
        location = ".".join(str(part) for part in err["loc"])
        if err["type"] == "missing":
            lines.append(f"  - {location}: required")
        else:
            lines.append(f"  - {location}: {err['msg']}")
    return "\n".join(lines)


def _read_yaml(path: Path) -> dict[str, Any]:
    """Parse the config file into a mapping.

    Raises:
        ConfigLoadError: Missing file, bad YAML, or a non-mapping document
    """
    if not path.exists():
        raise ConfigLoadError(
            f"Configuration file not found: {path}\n"
            f"Copy config/config.yaml.example to {path} and fill it in."
        )
    try:
        data = yaml.safe_load(path.read_text(encoding="utf-8"))
    except yaml.YAMLError as e:
        raise ConfigLoadError(f"Invalid YAML in {path}:\n{e}") from e

    if data is None:
        return {}
    if not isinstance(data, dict):
        raise ConfigLoadError(f"{path} must contain a YAML mapping, got {type(data).__name__}")
    return data


def load_config(path: Path | None = None) -> AppConfig:
    """Read, overlay and validate a config file, bypassing the cached copy.

    Raises:
        ConfigLoadError: If the file cannot be read or parsed
        ConfigValidationError: If the values fail validation
    """
    config_path = path or _config_path()
    data = _apply_env_overrides(_read_yaml(config_path))

    try:
        config = AppConfig(**data)
    except ValidationError as e:
        raise ConfigValidationError(
            f"Invalid configuration in {config_path}:\n{_describe_errors(e)}"
        ) from e

    if config.schema_version > CURRENT_SCHEMA_VERSION:
        raise ConfigValidationError(
            f"Config schema version {config.schema_version} is newer than supported "
            f"version {CURRENT_SCHEMA_VERSION}; upgrade InboxPilot."
        )

    logger.info(
        "config_loaded",
        path=str(config_path),
        schema_version=config.schema_version,
        queue_enabled=config.queue.enabled,
    )
    return config


def get_config() -> AppConfig:
    """The process-wide config, loaded from disk on first use.

    Raises:
        ConfigLoadError: If the file cannot be read or parsed
        ConfigValidationError: If the values fail validation
    """
    global _loaded

    with _lock:
        if _loaded is None:
            path = _config_path()
            config = load_config(path)
            _loaded = _LoadedConfig(config=config, path=path, mtime=path.stat().st_mtime)
        return _loaded.config


def reload_config_if_changed() -> bool:
    """Reload the config when its file was modified since the last load.

    Returns:
        True only when a changed file loaded cleanly and replaced the cached
        config. An invalid edit keeps the previous config and is not retried
        until the file changes again.
    """
    global _loaded

    with _lock:
        if _loaded is None:
            return False

        try:
            mtime = _loaded.path.stat().st_mtime
        except OSError as e:
            logger.warning("config_stat_failed", path=str(_loaded.path), error=str(e))
            return False

        if mtime <= _loaded.mtime:
            return False

        try:
            config = load_config(_loaded.path)
        except (ConfigLoadError, ConfigValidationError) as e:
            logger.warning("config_reload_failed", path=str(_loaded.path), error=str(e))
            _loaded.mtime = mtime
            return False

        _loaded = _LoadedConfig(config=config, path=_loaded.path, mtime=mtime)
        logger.info("config_reloaded", path=str(_loaded.path))
        return True


def validate_config_file(path: Path | None = None) -> tuple[bool, str]:
    """Check a config file without touching the cached config.

    Returns:
        (is_valid, human-readable summary or error)
    """
    try:
        config = load_config(path or _config_path())
    except ConfigLoadError as e:
        return False, f"Load error: {e}"
    except ConfigValidationError as e:
        return False, f"Validation error: {e}"

    return True, (
        f"Configuration valid (schema version {config.schema_version})\n"
        f"  - database: {config.database.path}\n"
        f"  - redis: {config.redis.url}\n"
        f"  - delayed actions: {'enabled' if config.queue.enabled else 'disabled'}\n"
        f"  - rule model: {config.llm.choose_rule_model}"
    )


def reset_config() -> None:
    """Forget the cached config (tests)."""
    global _loaded
    with _lock:
        _loaded = None
