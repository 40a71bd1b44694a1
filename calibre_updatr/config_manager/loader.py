"""Configuration loading utilities."""
from __future__ import annotations

import tomllib
from pathlib import Path
from typing import Any, Dict, Mapping, Optional

from pydantic import ValidationError

from .. import logging_manager
from .constants import DEFAULT_CONFIG_PATH
from .settings import EnvironmentOverrides, UpdatrSettings

logger = logging_manager.get_logger().getChild("config")


class ConfigError(RuntimeError):
    """Raised when the configuration file is unreadable or contains invalid values."""


def _read_config_toml(path: Path) -> Dict[str, Any]:
    try:
        with path.open("rb") as handle:
            data = tomllib.load(handle)
    except FileNotFoundError:
        logger.info("No configuration found at %s; using defaults.", path)
        return {}
    except tomllib.TOMLDecodeError as exc:
        raise ConfigError(f"Failed to parse config {path}: {exc}") from exc
    except OSError as exc:
        raise ConfigError(f"Failed to read config file {path}: {exc}") from exc
    logger.debug("Loaded configuration from %s", path)
    return data


def _deep_merge_dict(base: Dict[str, Any], override: Mapping[str, Any]) -> Dict[str, Any]:
    result = dict(base)
    for key, value in override.items():
        if isinstance(value, Mapping) and isinstance(result.get(key), Mapping):
            result[key] = _deep_merge_dict(dict(result[key]), value)
        else:
            result[key] = value
    return result


def build_override_payload(
    *,
    library: Optional[str] = None,
    library_url: Optional[str] = None,
    username: Optional[str] = None,
    password: Optional[str] = None,
    state_path: Optional[str] = None,
    log_level: Optional[str] = None,
    dry_run: Optional[bool] = None,
) -> Dict[str, Any]:
    """Translate flat overrides into the nested layout of ``config.toml``.

    A local ``library`` replaces any configured Content Server URL unless a
    ``library_url`` is given alongside it.
    """

    payload: Dict[str, Any] = {}
    if library:
        payload["library"] = {"path": library, "url": None}
    if library_url:
        payload.setdefault("library", {})["url"] = library_url
    if username:
        payload.setdefault("content_server", {})["username"] = username
    if password:
        payload.setdefault("content_server", {})["password"] = password
    if state_path:
        payload["state"] = {"path": state_path}
    if log_level:
        payload["logging"] = {"level": log_level}
    if dry_run:
        payload["policy"] = {"dry_run": True}
    return payload


def _environment_payload() -> Dict[str, Any]:
    try:
        env = EnvironmentOverrides()
    except ValidationError as exc:
        raise ConfigError(f"Invalid environment override: {exc}") from exc
    return build_override_payload(
        library=env.library,
        library_url=env.library_url,
        username=env.username,
        password=env.password.get_secret_value() if env.password else None,
        state_path=env.state_path,
        log_level=env.log_level,
        dry_run=env.dry_run,
    )


def load_settings(
    config_path: Optional[Path | str] = None,
    *,
    overrides: Optional[Mapping[str, Any]] = None,
    use_environment: bool = True,
) -> UpdatrSettings:
    """Return validated settings: defaults < file < environment < ``overrides``."""

    path = Path(config_path) if config_path else DEFAULT_CONFIG_PATH
    payload = _read_config_toml(path)
    if use_environment:
        payload = _deep_merge_dict(payload, _environment_payload())
    if overrides:
        payload = _deep_merge_dict(payload, overrides)
    try:
        return UpdatrSettings.model_validate(payload)
    except ValidationError as exc:
        raise ConfigError(f"Invalid configuration in {path}: {exc}") from exc


__all__ = ["ConfigError", "build_override_payload", "load_settings"]
