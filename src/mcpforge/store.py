"""Canonical configuration document access.

:class:`ConfigStore` only knows how to load and save the single canonical
document. The helpers below operate on :class:`Configuration` values and
never touch the filesystem; callers sequence load, mutate and save.
"""
from __future__ import annotations

import json
import logging
from collections.abc import Mapping, Sequence
from dataclasses import replace
from pathlib import Path

import yaml

from .errors import NotFoundError, ParseError, StorageError, ValidationError
from .models import DEFAULT_SERVER_KEY, CommandServer, Configuration, ServerDiff, ServerEntry
from .state.registry import read_json, write_json

LOGGER = logging.getLogger(__name__)

EXPORT_FORMATS = ("json", "yaml")


class ConfigStore:
    """Load and save the canonical configuration document."""

    def __init__(self, path: Path, *, server_key: str = DEFAULT_SERVER_KEY) -> None:
        self.path = path.expanduser()
        self.server_key = server_key

    def exists(self) -> bool:
        return self.path.exists()

    def load(self) -> Configuration:
        """Return the stored configuration.

        An absent file yields an empty configuration; a file that exists but
        does not parse is an error.
        """
        data = read_json(self.path)
        if data is None:
            LOGGER.debug("Configuration file %s absent; starting empty.", self.path)
            return Configuration()
        try:
            return Configuration.from_dict(data, server_key=self.server_key)
        except ValidationError as exc:
            raise ValidationError(f"Invalid configuration in {self.path}: {exc}") from exc

    def save(self, config: Configuration) -> Path:
        """Overwrite the canonical document with *config*."""
        write_json(self.path, config.to_dict(server_key=self.server_key))
        return self.path

    def load_snapshot(self, path: Path) -> Configuration:
        """Load a configuration-shaped document stored elsewhere (snapshots)."""
        data = read_json(path)
        if data is None:
            return Configuration()
        try:
            return Configuration.from_dict(data, server_key=self.server_key)
        except ValidationError as exc:
            raise ParseError(f"Invalid configuration snapshot {path}: {exc}") from exc

    def save_snapshot(self, path: Path, config: Configuration) -> Path:
        write_json(path, config.to_dict(server_key=self.server_key))
        return path

    def canonical_dumps(self, config: Configuration) -> str:
        return canonical_dumps(config, server_key=self.server_key)


def canonical_dumps(config: Configuration, *, server_key: str = DEFAULT_SERVER_KEY) -> str:
    """Serialise *config* with sorted keys and no insignificant whitespace."""
    return json.dumps(
        config.to_dict(server_key=server_key),
        sort_keys=True,
        separators=(",", ":"),
        ensure_ascii=False,
    )


def configurations_equal(left: Configuration, right: Configuration) -> bool:
    """Compare two documents by their canonical serialisation."""
    return canonical_dumps(left) == canonical_dumps(right)


def diff_servers(source: Configuration, target: Configuration) -> ServerDiff:
    """Classify server names when *source* replaces *target*."""
    source_names = set(source.servers)
    target_names = set(target.servers)
    return ServerDiff(
        added=tuple(sorted(source_names - target_names)),
        overwritten=tuple(sorted(source_names & target_names)),
        removed=tuple(sorted(target_names - source_names)),
    )


def get_server(config: Configuration, name: str) -> ServerEntry:
    try:
        return config.servers[name]
    except KeyError:
        raise NotFoundError("server", name) from None


def upsert_server(config: Configuration, name: str, entry: ServerEntry) -> Configuration:
    """Return a copy of *config* with *entry* stored under *name*."""
    normalized = name.strip()
    if not normalized:
        raise ValidationError("Server name must be a non-empty string.")
    servers = dict(config.servers)
    servers[normalized] = entry
    return config.with_servers(servers)


def remove_server(config: Configuration, name: str) -> Configuration:
    if name not in config.servers:
        raise NotFoundError("server", name)
    return config.with_servers(
        {key: value for key, value in config.servers.items() if key != name}
    )


def update_server(
    config: Configuration,
    name: str,
    *,
    args: Sequence[str] | None = None,
    env: Mapping[str, str | None] | None = None,
) -> Configuration:
    """Return a copy of *config* with the arguments or environment of *name* changed.

    *args* replaces the argument list outright. Each *env* item sets a
    variable, or removes it when the value is ``None`` or empty.
    """
    entry = get_server(config, name)
    if args is not None and not isinstance(entry, CommandServer):
        raise ValidationError(f"Server '{name}' is URL-based and has no arguments.")

    updated_env = entry.env
    if env:
        merged = dict(entry.env or {})
        for key, value in env.items():
            if not key.strip():
                raise ValidationError("Environment variable names cannot be empty.")
            if value:
                merged[key.strip()] = value
            else:
                merged.pop(key.strip(), None)
        updated_env = merged or None

    if isinstance(entry, CommandServer):
        changed: ServerEntry = replace(
            entry,
            args=tuple(args) if args is not None else entry.args,
            env=updated_env,
        )
    else:
        changed = replace(entry, env=updated_env)
    return upsert_server(config, name, changed)


def merge_configurations(base: Configuration, incoming: Configuration) -> Configuration:
    """Overlay *incoming* onto *base*; incoming servers and fields win."""
    servers = dict(base.servers)
    servers.update(incoming.servers)
    other = dict(base.other)
    other.update(incoming.other)
    return Configuration(servers=servers, other=other)


def load_external(path: Path, *, server_key: str = DEFAULT_SERVER_KEY) -> Configuration:
    """Load a JSON or YAML configuration file supplied by the user."""
    try:
        text = path.expanduser().read_text(encoding="utf-8")
    except FileNotFoundError:
        raise NotFoundError("file", str(path)) from None
    except OSError as exc:
        raise StorageError(f"Failed to read {path}: {exc}") from exc

    if path.suffix.lower() in {".yml", ".yaml"}:
        try:
            data = yaml.safe_load(text)
        except yaml.YAMLError as exc:
            raise ParseError(f"Failed to parse {path}: {exc}") from exc
    else:
        try:
            data = json.loads(text)
        except json.JSONDecodeError as exc:
            raise ParseError(f"Failed to parse {path}: {exc}") from exc

    if not isinstance(data, Mapping):
        raise ParseError(f"{path} must contain a JSON/YAML object at the top level.")
    return Configuration.from_dict(data, server_key=server_key)


def dump_document(
    config: Configuration, fmt: str = "json", *, server_key: str = DEFAULT_SERVER_KEY
) -> str:
    """Render *config* for export in the requested format."""
    payload = config.to_dict(server_key=server_key)
    if fmt == "json":
        return json.dumps(payload, indent=2, ensure_ascii=False) + "\n"
    if fmt == "yaml":
        return yaml.safe_dump(payload, sort_keys=False, allow_unicode=True)
    allowed = ", ".join(EXPORT_FORMATS)
    raise ValidationError(f"Unsupported export format '{fmt}'. Allowed: {allowed}.")


__all__ = [
    "ConfigStore",
    "EXPORT_FORMATS",
    "canonical_dumps",
    "configurations_equal",
    "diff_servers",
    "dump_document",
    "get_server",
    "load_external",
    "merge_configurations",
    "remove_server",
    "update_server",
    "upsert_server",
]
