"""Settings loader for mcpforge.

This module centralises the logic for reading mcpforge's own settings from
multiple sources, lowest precedence first:

1. Built-in defaults (OS-specific paths come from :mod:`mcpforge.paths`).
2. ``settings.yml`` in the user config directory (or an override path).
3. Environment variables prefixed with ``MCPFORGE_``.
4. Explicit overrides supplied programmatically (reserved for CLI flags).

Environment keys use double underscores to express nesting, e.g.::

    export MCPFORGE_TEMPLATES__BRANCH=develop
    export MCPFORGE_BACKUPS__AUTO_BACKUP=false

Values are coerced via PyYAML's ``safe_load`` so that booleans and numbers are
parsed naturally. The resulting settings are exposed as immutable
``dataclasses``.
"""
from __future__ import annotations

import os
from collections.abc import Mapping, MutableMapping
from dataclasses import dataclass
from pathlib import Path
from typing import cast

import yaml

from .backups import parse_duration
from .errors import ValidationError
from .paths import (
    client_config_dir,
    default_cache_dir,
    default_config_file,
    default_logs_dir,
    default_settings_file,
)

ENV_PREFIX = "MCPFORGE_"
SETTINGS_ENV_VAR = f"{ENV_PREFIX}SETTINGS_FILE"
RESERVED_ENV_KEYS = {SETTINGS_ENV_VAR}


class ConfigError(ValidationError):
    """Raised when settings parsing fails."""


@dataclass(frozen=True)
class TemplateSourceConfig:
    """Location of the remote template repository and cache policy."""

    owner: str = "mcp-forge"
    repo: str = "templates"
    branch: str = "main"
    api_url: str = "https://api.github.com"
    cache_ttl_days: int = 30
    timeout: float = 30.0
    offline: bool = False

    def to_dict(self) -> dict[str, object]:
        """Return a serialisable representation."""
        return {
            "owner": self.owner,
            "repo": self.repo,
            "branch": self.branch,
            "api_url": self.api_url,
            "cache_ttl_days": self.cache_ttl_days,
            "timeout": self.timeout,
            "offline": self.offline,
        }


@dataclass(frozen=True)
class BackupPolicy:
    """Automatic backup behaviour for mutating commands."""

    auto_backup: bool = True
    default_retention: str = "30d"

    def to_dict(self) -> dict[str, object]:
        """Return a serialisable representation."""
        return {
            "auto_backup": self.auto_backup,
            "default_retention": self.default_retention,
        }


@dataclass(frozen=True)
class AppConfig:
    """Resolved settings for mcpforge."""

    settings_file: Path
    config_file: Path
    state_dir: Path
    backups_dir: Path
    cache_dir: Path
    logs_dir: Path
    templates_dir: Path
    server_key: str
    templates: TemplateSourceConfig
    backups: BackupPolicy

    def to_dict(self) -> dict[str, object]:
        """Return a JSON-serialisable representation of the settings."""
        return {
            "settings_file": str(self.settings_file),
            "config_file": str(self.config_file),
            "state_dir": str(self.state_dir),
            "backups_dir": str(self.backups_dir),
            "cache_dir": str(self.cache_dir),
            "logs_dir": str(self.logs_dir),
            "templates_dir": str(self.templates_dir),
            "server_key": self.server_key,
            "templates": self.templates.to_dict(),
            "backups": self.backups.to_dict(),
        }


# ``None`` marks values derived from the host at load time.
DEFAULTS: dict[str, object] = {
    "settings_file": None,
    "config_file": None,
    "state_dir": None,
    "backups_dir": None,
    "cache_dir": None,
    "logs_dir": None,
    "templates_dir": None,
    "server_key": "mcpServers",
    "templates": {
        "owner": "mcp-forge",
        "repo": "templates",
        "branch": "main",
        "api_url": "https://api.github.com",
        "cache_ttl_days": 30,
        "timeout": 30.0,
        "offline": False,
    },
    "backups": {
        "auto_backup": True,
        "default_retention": "30d",
    },
}

ALLOWED_TOP_LEVEL_KEYS = set(DEFAULTS.keys())
ALLOWED_TEMPLATE_KEYS = {
    "owner",
    "repo",
    "branch",
    "api_url",
    "cache_ttl_days",
    "timeout",
    "offline",
}
ALLOWED_BACKUP_KEYS = {"auto_backup", "default_retention"}


def load_config(
    config_file: str | os.PathLike[str] | None = None,
    *,
    env: Mapping[str, str] | None = None,
    overrides: Mapping[str, object] | None = None,
) -> AppConfig:
    """Load and merge settings sources into an :class:`AppConfig`.

    *config_file* points at the YAML settings file, not at the canonical
    client document (that one is the ``config_file`` setting itself).
    """
    merged: dict[str, object] = _deep_copy(DEFAULTS)
    resolved_env = dict(os.environ if env is None else env)

    settings_path = _determine_settings_path(config_file, resolved_env)

    file_values = _load_yaml_file(settings_path)
    if file_values:
        _deep_merge(merged, file_values)

    env_values = _build_env_overrides(resolved_env)
    if env_values:
        _deep_merge(merged, env_values)

    if overrides:
        _deep_merge(merged, dict(overrides))

    merged["settings_file"] = str(settings_path)

    _validate_structure(merged)

    return _build_app_config(merged)


def _determine_settings_path(
    cli_override: str | os.PathLike[str] | None,
    env: Mapping[str, str],
) -> Path:
    if cli_override:
        return Path(cli_override).expanduser()
    if env.get(SETTINGS_ENV_VAR):
        return Path(env[SETTINGS_ENV_VAR]).expanduser()
    return default_settings_file()


def _load_yaml_file(path: Path) -> dict[str, object]:
    if not path.exists():
        return {}
    try:
        data = yaml.safe_load(path.read_text(encoding="utf-8")) or {}
    except yaml.YAMLError as exc:
        raise ConfigError(f"Failed to parse settings file {path}: {exc}") from exc
    except OSError as exc:
        raise ConfigError(f"Failed to read settings file {path}: {exc}") from exc
    if not isinstance(data, Mapping):
        raise ConfigError(f"Settings file {path} must contain a mapping at the top level.")
    return _as_dict(data, f"file:{path}")


def _validate_structure(raw: Mapping[str, object]) -> None:
    unknown_keys = set(raw.keys()) - ALLOWED_TOP_LEVEL_KEYS
    if unknown_keys:
        joined = ", ".join(sorted(unknown_keys))
        raise ConfigError(f"Unknown configuration keys: {joined}.")

    server_key = raw.get("server_key")
    if not isinstance(server_key, str) or not server_key.strip():
        raise ConfigError("server_key must be a non-empty string.")

    templates = raw.get("templates")
    if templates is not None:
        templates_map = _as_dict(templates, "templates")
        unknown = set(templates_map.keys()) - ALLOWED_TEMPLATE_KEYS
        if unknown:
            joined = ", ".join(sorted(unknown))
            raise ConfigError(f"Unknown templates configuration keys: {joined}.")
        for key in ("owner", "repo", "branch", "api_url"):
            value = templates_map.get(key)
            if value is not None and (not isinstance(value, str) or not value.strip()):
                raise ConfigError(f"templates.{key} must be a non-empty string.")

    backups = raw.get("backups")
    if backups is not None:
        backups_map = _as_dict(backups, "backups")
        unknown = set(backups_map.keys()) - ALLOWED_BACKUP_KEYS
        if unknown:
            joined = ", ".join(sorted(unknown))
            raise ConfigError(f"Unknown backups configuration keys: {joined}.")
        auto_backup = backups_map.get("auto_backup")
        if auto_backup is not None and not isinstance(auto_backup, bool):
            raise ConfigError("backups.auto_backup must be a boolean.")


def _build_app_config(raw: Mapping[str, object]) -> AppConfig:
    client_dir = client_config_dir()

    settings_file = _to_path(raw.get("settings_file"))
    config_file = _path_or_default(raw.get("config_file"), default_config_file())
    state_dir = _path_or_default(raw.get("state_dir"), client_dir / "profiles")
    backups_dir = _path_or_default(raw.get("backups_dir"), client_dir / "backups")
    cache_dir = _path_or_default(raw.get("cache_dir"), default_cache_dir())
    logs_dir = _path_or_default(raw.get("logs_dir"), default_logs_dir())
    templates_dir = _path_or_default(
        raw.get("templates_dir"), settings_file.parent / "templates"
    )

    templates_mapping = _as_dict(raw.get("templates"), "templates")
    defaults = TemplateSourceConfig()
    cache_ttl_days = _expect_int(
        templates_mapping.get("cache_ttl_days"),
        "templates.cache_ttl_days",
        default=defaults.cache_ttl_days,
    )
    if cache_ttl_days <= 0:
        raise ConfigError("templates.cache_ttl_days must be greater than zero.")
    templates = TemplateSourceConfig(
        owner=str(templates_mapping.get("owner", defaults.owner)),
        repo=str(templates_mapping.get("repo", defaults.repo)),
        branch=str(templates_mapping.get("branch", defaults.branch)),
        api_url=str(templates_mapping.get("api_url", defaults.api_url)).rstrip("/"),
        cache_ttl_days=cache_ttl_days,
        timeout=_expect_positive_float(
            templates_mapping.get("timeout"), "templates.timeout", default=defaults.timeout
        ),
        offline=bool(templates_mapping.get("offline", False)),
    )

    backups_mapping = _as_dict(raw.get("backups"), "backups")
    retention = str(backups_mapping.get("default_retention", "30d"))
    try:
        parse_duration(retention)
    except ValidationError as exc:
        raise ConfigError(f"backups.default_retention is invalid: {exc}") from exc
    backups = BackupPolicy(
        auto_backup=bool(backups_mapping.get("auto_backup", True)),
        default_retention=retention,
    )

    return AppConfig(
        settings_file=settings_file,
        config_file=config_file,
        state_dir=state_dir,
        backups_dir=backups_dir,
        cache_dir=cache_dir,
        logs_dir=logs_dir,
        templates_dir=templates_dir,
        server_key=str(raw.get("server_key", "mcpServers")).strip(),
        templates=templates,
        backups=backups,
    )


def _build_env_overrides(env: Mapping[str, str]) -> dict[str, object]:
    overrides: dict[str, object] = {}
    for key, value in env.items():
        if key in RESERVED_ENV_KEYS:
            continue
        if not key.startswith(ENV_PREFIX):
            continue
        suffix = key[len(ENV_PREFIX) :]
        path_segments = [segment.lower() for segment in suffix.split("__") if segment]
        if not path_segments:
            continue
        _assign_nested(overrides, path_segments, _coerce_value(value))
    return overrides


def _assign_nested(tree: MutableMapping[str, object], path: list[str], value: object) -> None:
    current: MutableMapping[str, object] = tree
    for segment in path[:-1]:
        existing = current.get(segment)
        if existing is None:
            new_child: MutableMapping[str, object] = {}
            current[segment] = new_child
            current = new_child
            continue
        if isinstance(existing, MutableMapping):
            current = cast(MutableMapping[str, object], existing)
            continue
        raise ConfigError(
            "Environment overrides conflict with existing scalar value at "
            f"{'.'.join(path)}"
        )
    current[path[-1]] = value


def _deep_merge(target: MutableMapping[str, object], overrides: Mapping[str, object]) -> None:
    for key, value in overrides.items():
        existing = target.get(key)
        if isinstance(existing, MutableMapping) and isinstance(value, Mapping):
            _deep_merge(existing, _as_dict(value, f"merge.{key}"))
            continue
        target[key] = value


def _deep_copy(source: Mapping[str, object]) -> dict[str, object]:
    result: dict[str, object] = {}
    for key, value in source.items():
        if isinstance(value, Mapping):
            result[key] = _deep_copy(_as_dict(value, f"copy.{key}"))
        else:
            result[key] = value
    return result


def _coerce_value(raw: str) -> object:
    raw = raw.strip()
    try:
        parsed = yaml.safe_load(raw)
    except yaml.YAMLError:
        return raw
    return parsed


def _to_path(value: object) -> Path:
    if value is None:
        raise ConfigError("Expected a filesystem path, received None.")
    if isinstance(value, Path):
        return value.expanduser()
    if isinstance(value, str):
        return Path(value).expanduser()
    raise ConfigError(f"Cannot convert value {value!r} to Path.")


def _path_or_default(value: object, default: Path) -> Path:
    if value is None or (isinstance(value, str) and not value.strip()):
        return default
    return _to_path(value)


def _expect_int(value: object | None, label: str, *, default: int) -> int:
    if value is None:
        return default
    if isinstance(value, bool):
        raise ConfigError(f"Expected {label} to be an integer. Got boolean {value!r}.")
    if isinstance(value, int):
        return value
    if isinstance(value, str):
        try:
            return int(value, 0)
        except ValueError as exc:
            raise ConfigError(f"Invalid integer for {label}: {value!r}.") from exc
    raise ConfigError(f"Expected {label} to be an integer. Got {type(value).__name__}.")


def _expect_positive_float(value: object | None, label: str, *, default: float) -> float:
    if value is None:
        return default
    if isinstance(value, bool):
        raise ConfigError(f"Expected {label} to be a number. Got boolean {value!r}.")
    if isinstance(value, (int, float)):
        number = float(value)
    elif isinstance(value, str):
        try:
            number = float(value)
        except ValueError as exc:
            raise ConfigError(f"Invalid number for {label}: {value!r}.") from exc
    else:
        raise ConfigError(f"Expected {label} to be a number. Got {type(value).__name__}.")
    if number <= 0:
        raise ConfigError(f"{label} must be greater than zero.")
    return number


def _as_dict(value: object | None, label: str) -> dict[str, object]:
    if value is None:
        return {}
    if not isinstance(value, Mapping):
        raise ConfigError(f"Expected {label} to be a mapping. Got {type(value).__name__}.")
    return {str(key): item for key, item in value.items()}


__all__ = [
    "AppConfig",
    "BackupPolicy",
    "ConfigError",
    "DEFAULTS",
    "ENV_PREFIX",
    "SETTINGS_ENV_VAR",
    "TemplateSourceConfig",
    "load_config",
]
