"""Data model shared by the store, template engine, backups and profiles.

Every persisted document is plain JSON; the classes in this module convert
between that representation and typed values via ``from_dict``/``to_dict``.
Unknown fields on server entries and at the top level of the canonical
configuration are carried through untouched.
"""
from __future__ import annotations

from collections.abc import Iterable, Mapping
from copy import deepcopy
from dataclasses import dataclass, field, replace
from datetime import UTC, datetime
from pathlib import Path
from typing import Any

from .errors import ParseError, ValidationError

DEFAULT_SERVER_KEY = "mcpServers"
VARIABLE_TYPES = ("string", "boolean", "number", "array", "select")


def utc_now() -> datetime:
    """Return the current UTC time without sub-second noise."""
    return datetime.now(tz=UTC).replace(microsecond=0)


def format_timestamp(value: datetime) -> str:
    return value.astimezone(UTC).isoformat(timespec="seconds").replace("+00:00", "Z")


def parse_timestamp(value: object, *, label: str) -> datetime:
    """Parse an ISO-8601 timestamp, assuming UTC when no offset is present."""
    if isinstance(value, datetime):
        parsed = value
    elif isinstance(value, str) and value.strip():
        text = value.strip()
        if text.endswith("Z"):
            text = text[:-1] + "+00:00"
        try:
            parsed = datetime.fromisoformat(text)
        except ValueError as exc:
            raise ParseError(f"Invalid timestamp for {label}: {value!r}.") from exc
    else:
        raise ParseError(f"Missing or invalid timestamp for {label}.")
    if parsed.tzinfo is None:
        parsed = parsed.replace(tzinfo=UTC)
    return parsed


def _optional_str(value: object, label: str) -> str | None:
    if value is None:
        return None
    if not isinstance(value, str):
        raise ValidationError(f"{label} must be a string.")
    return value


def _string_list(value: object, label: str) -> list[str]:
    if value is None:
        return []
    if isinstance(value, (str, bytes)) or not isinstance(value, Iterable):
        raise ValidationError(f"{label} must be a list of strings.")
    items = list(value)
    if not all(isinstance(item, str) for item in items):
        raise ValidationError(f"{label} must be a list of strings.")
    return items


def _string_map(value: object, label: str) -> dict[str, str] | None:
    if value is None:
        return None
    if not isinstance(value, Mapping):
        raise ValidationError(f"{label} must be a mapping of strings.")
    result: dict[str, str] = {}
    for key, item in value.items():
        if not isinstance(key, str) or not isinstance(item, str):
            raise ValidationError(f"{label} must be a mapping of strings.")
        result[key] = item
    return result


def _unique(values: Iterable[str]) -> tuple[str, ...]:
    return tuple(dict.fromkeys(values))


# ----------------------------------------------------------------------
# Server entries
# ----------------------------------------------------------------------
@dataclass(frozen=True)
class CommandServer:
    """A server launched as a local process."""

    command: str
    args: tuple[str, ...] = ()
    env: dict[str, str] | None = None
    extra: dict[str, Any] = field(default_factory=dict)

    def to_dict(self) -> dict[str, Any]:
        """Return the JSON representation, extra fields last."""
        payload: dict[str, Any] = {"command": self.command, "args": list(self.args)}
        if self.env is not None:
            payload["env"] = dict(self.env)
        payload.update(deepcopy(self.extra))
        return payload


@dataclass(frozen=True)
class UrlServer:
    """A server reached over the network."""

    url: str
    env: dict[str, str] | None = None
    extra: dict[str, Any] = field(default_factory=dict)

    def to_dict(self) -> dict[str, Any]:
        """Return the JSON representation, extra fields last."""
        payload: dict[str, Any] = {"url": self.url}
        if self.env is not None:
            payload["env"] = dict(self.env)
        payload.update(deepcopy(self.extra))
        return payload


ServerEntry = CommandServer | UrlServer

_SERVER_FIELDS = {"command", "args", "url", "env"}


def server_from_dict(data: object, *, name: str = "server") -> ServerEntry:
    """Build a :data:`ServerEntry` from JSON, enforcing command/url exclusivity."""
    if not isinstance(data, Mapping):
        raise ValidationError(f"Server '{name}' must be a JSON object.")
    has_command = data.get("command") is not None
    has_url = data.get("url") is not None
    if has_command and has_url:
        raise ValidationError(f"Server '{name}' sets both 'command' and 'url'.")
    if not has_command and not has_url:
        raise ValidationError(f"Server '{name}' must set either 'command' or 'url'.")

    env = _string_map(data.get("env"), f"Server '{name}' env")
    extra = {
        str(key): deepcopy(value) for key, value in data.items() if key not in _SERVER_FIELDS
    }
    if has_command:
        command = data["command"]
        if not isinstance(command, str):
            raise ValidationError(f"Server '{name}' command must be a string.")
        args = _string_list(data.get("args"), f"Server '{name}' args")
        return CommandServer(command=command, args=tuple(args), env=env, extra=extra)

    if data.get("args"):
        raise ValidationError(f"Server '{name}' is URL-based and cannot carry 'args'.")
    url = data["url"]
    if not isinstance(url, str):
        raise ValidationError(f"Server '{name}' url must be a string.")
    return UrlServer(url=url, env=env, extra=extra)


def server_to_dict(entry: ServerEntry) -> dict[str, Any]:
    if isinstance(entry, (CommandServer, UrlServer)):
        return entry.to_dict()
    raise TypeError(f"Unsupported server entry type: {type(entry).__name__}")


def describe_server(entry: ServerEntry) -> str:
    """Return a one-line human description (command line or URL)."""
    if isinstance(entry, CommandServer):
        return " ".join([entry.command, *entry.args])
    return entry.url


@dataclass(frozen=True)
class Configuration:
    """The canonical configuration document."""

    servers: dict[str, ServerEntry] = field(default_factory=dict)
    other: dict[str, Any] = field(default_factory=dict)

    @classmethod
    def from_dict(
        cls, data: object, *, server_key: str = DEFAULT_SERVER_KEY
    ) -> Configuration:
        if not isinstance(data, Mapping):
            raise ValidationError("Configuration document must be a JSON object.")
        raw_servers = data.get(server_key) or {}
        if not isinstance(raw_servers, Mapping):
            raise ValidationError(f"'{server_key}' must be a JSON object.")
        servers = {
            str(name): server_from_dict(entry, name=str(name))
            for name, entry in raw_servers.items()
        }
        other = {str(key): deepcopy(value) for key, value in data.items() if key != server_key}
        return cls(servers=servers, other=other)

    def to_dict(self, *, server_key: str = DEFAULT_SERVER_KEY) -> dict[str, Any]:
        payload: dict[str, Any] = {
            server_key: {name: server_to_dict(entry) for name, entry in self.servers.items()}
        }
        payload.update(deepcopy(self.other))
        return payload

    def with_servers(self, servers: Mapping[str, ServerEntry]) -> Configuration:
        """Return a copy of this document with *servers* replacing the server map."""
        return replace(self, servers=dict(servers), other=deepcopy(self.other))


@dataclass(frozen=True)
class ServerDiff:
    """Three-way comparison of two server maps."""

    added: tuple[str, ...] = ()
    overwritten: tuple[str, ...] = ()
    removed: tuple[str, ...] = ()

    def to_dict(self) -> dict[str, list[str]]:
        return {
            "added": list(self.added),
            "overwritten": list(self.overwritten),
            "removed": list(self.removed),
        }


# ----------------------------------------------------------------------
# Templates
# ----------------------------------------------------------------------
@dataclass(frozen=True)
class TemplateVariable:
    """Contract for a single template variable."""

    type: str
    description: str = ""
    default: Any = None
    required: bool = False
    options: tuple[str, ...] | None = None
    validation: str | None = None

    def __post_init__(self) -> None:
        """Enforce the variable type and select option invariants."""
        if self.type not in VARIABLE_TYPES:
            allowed = ", ".join(VARIABLE_TYPES)
            raise ValidationError(f"Unsupported variable type '{self.type}'. Allowed: {allowed}.")
        if self.type == "select" and not self.options:
            raise ValidationError("Select variables must define a non-empty options list.")

    @classmethod
    def from_dict(cls, data: object, *, name: str) -> TemplateVariable:
        if not isinstance(data, Mapping):
            raise ValidationError(f"Variable '{name}' must be a JSON object.")
        var_type = data.get("type")
        if not isinstance(var_type, str):
            raise ValidationError(f"Variable '{name}' is missing a type.")
        raw_options = data.get("options")
        options = (
            tuple(str(option) for option in _string_list(raw_options, f"Variable '{name}' options"))
            if raw_options is not None
            else None
        )
        try:
            return cls(
                type=var_type,
                description=str(data.get("description") or ""),
                default=deepcopy(data.get("default")),
                required=bool(data.get("required", False)),
                options=options,
                validation=_optional_str(data.get("validation"), f"Variable '{name}' validation"),
            )
        except ValidationError as exc:
            raise ValidationError(f"Variable '{name}': {exc}") from exc

    def to_dict(self) -> dict[str, Any]:
        payload: dict[str, Any] = {
            "type": self.type,
            "description": self.description,
            "required": self.required,
        }
        if self.default is not None:
            payload["default"] = deepcopy(self.default)
        if self.options is not None:
            payload["options"] = list(self.options)
        if self.validation is not None:
            payload["validation"] = self.validation
        return payload


@dataclass(frozen=True)
class TemplateBody:
    """Server entry shape whose string fields may contain placeholders.

    Both ``command`` and ``url`` are optional here; the engine rejects bodies
    that set both or neither.
    """

    command: str | None = None
    args: tuple[str, ...] = ()
    url: str | None = None
    env: dict[str, str] | None = None

    @classmethod
    def from_dict(cls, data: object) -> TemplateBody:
        if not isinstance(data, Mapping):
            raise ValidationError("Template config must be a JSON object.")
        return cls(
            command=_optional_str(data.get("command"), "Template config command"),
            args=tuple(_string_list(data.get("args"), "Template config args")),
            url=_optional_str(data.get("url"), "Template config url"),
            env=_string_map(data.get("env"), "Template config env"),
        )

    def to_dict(self) -> dict[str, Any]:
        payload: dict[str, Any] = {}
        if self.command is not None:
            payload["command"] = self.command
        if self.args:
            payload["args"] = list(self.args)
        if self.url is not None:
            payload["url"] = self.url
        if self.env is not None:
            payload["env"] = dict(self.env)
        return payload


@dataclass(frozen=True)
class Template:
    """An immutable, fetched template definition."""

    name: str
    version: str
    description: str
    author: str
    config: TemplateBody
    tags: tuple[str, ...] = ()
    platforms: tuple[str, ...] = ()
    variables: dict[str, TemplateVariable] = field(default_factory=dict)
    requirements: dict[str, str] | None = None
    setup_instructions: str | None = None

    @classmethod
    def from_dict(cls, data: object) -> Template:
        if not isinstance(data, Mapping):
            raise ValidationError("Template document must be a JSON object.")
        name = data.get("name")
        if not isinstance(name, str) or not name.strip():
            raise ValidationError("Template document is missing a name.")
        raw_variables = data.get("variables") or {}
        if not isinstance(raw_variables, Mapping):
            raise ValidationError(f"Template '{name}' variables must be a JSON object.")
        return cls(
            name=name.strip(),
            version=str(data.get("version") or "0.0.0"),
            description=str(data.get("description") or ""),
            author=str(data.get("author") or ""),
            config=TemplateBody.from_dict(data.get("config")),
            tags=_unique(_string_list(data.get("tags"), f"Template '{name}' tags")),
            platforms=_unique(_string_list(data.get("platforms"), f"Template '{name}' platforms")),
            variables={
                str(var_name): TemplateVariable.from_dict(spec, name=str(var_name))
                for var_name, spec in raw_variables.items()
            },
            requirements=_string_map(data.get("requirements"), f"Template '{name}' requirements"),
            setup_instructions=_optional_str(
                data.get("setup_instructions"), f"Template '{name}' setup_instructions"
            ),
        )

    def to_dict(self) -> dict[str, Any]:
        payload: dict[str, Any] = {
            "name": self.name,
            "version": self.version,
            "description": self.description,
            "author": self.author,
            "tags": list(self.tags),
            "platforms": list(self.platforms),
            "variables": {name: var.to_dict() for name, var in self.variables.items()},
            "config": self.config.to_dict(),
        }
        if self.requirements is not None:
            payload["requirements"] = dict(self.requirements)
        if self.setup_instructions is not None:
            payload["setup_instructions"] = self.setup_instructions
        return payload


@dataclass(frozen=True)
class TemplateMetadata:
    """Catalog summary of a template."""

    name: str
    version: str = "0.0.0"
    description: str = ""
    author: str = ""
    tags: tuple[str, ...] = ()
    platforms: tuple[str, ...] = ()
    category: str = "general"
    path: str = ""

    @classmethod
    def from_dict(cls, data: object, *, name: str) -> TemplateMetadata:
        if not isinstance(data, Mapping):
            raise ValidationError(f"Catalog entry '{name}' must be a JSON object.")
        return cls(
            name=str(data.get("name") or name),
            version=str(data.get("version") or "0.0.0"),
            description=str(data.get("description") or ""),
            author=str(data.get("author") or ""),
            tags=_unique(_string_list(data.get("tags"), f"Catalog entry '{name}' tags")),
            platforms=_unique(
                _string_list(data.get("platforms"), f"Catalog entry '{name}' platforms")
            ),
            category=str(data.get("category") or "general"),
            path=str(data.get("path") or f"templates/{name}.json"),
        )

    @classmethod
    def from_template(cls, template: Template, *, category: str = "general") -> TemplateMetadata:
        return cls(
            name=template.name,
            version=template.version,
            description=template.description,
            author=template.author,
            tags=template.tags,
            platforms=template.platforms,
            category=category,
            path=f"templates/{template.name}.json",
        )

    def to_dict(self) -> dict[str, Any]:
        return {
            "name": self.name,
            "version": self.version,
            "description": self.description,
            "author": self.author,
            "tags": list(self.tags),
            "platforms": list(self.platforms),
            "category": self.category,
            "path": self.path,
        }


@dataclass(frozen=True)
class TemplateCatalog:
    """Index of the templates available from a source."""

    version: str
    last_updated: str
    templates: dict[str, TemplateMetadata] = field(default_factory=dict)

    @classmethod
    def from_dict(cls, data: object) -> TemplateCatalog:
        if not isinstance(data, Mapping):
            raise ValidationError("Template catalog must be a JSON object.")
        raw_templates = data.get("templates") or {}
        if not isinstance(raw_templates, Mapping):
            raise ValidationError("Template catalog 'templates' must be a JSON object.")
        return cls(
            version=str(data.get("version") or "1.0.0"),
            last_updated=str(data.get("last_updated") or ""),
            templates={
                str(name): TemplateMetadata.from_dict(entry, name=str(name))
                for name, entry in raw_templates.items()
            },
        )

    def to_dict(self) -> dict[str, Any]:
        return {
            "version": self.version,
            "last_updated": self.last_updated,
            "templates": {name: meta.to_dict() for name, meta in self.templates.items()},
        }


@dataclass(frozen=True)
class CacheMetadata:
    """Bookkeeping for the on-disk template cache."""

    last_refresh: datetime
    expires_at: datetime
    etag: str | None = None
    catalog_etag: str | None = None

    def is_expired(self, now: datetime | None = None) -> bool:
        return (now or utc_now()) >= self.expires_at

    @classmethod
    def from_dict(cls, data: object) -> CacheMetadata:
        if not isinstance(data, Mapping):
            raise ParseError("Cache metadata must be a JSON object.")
        return cls(
            last_refresh=parse_timestamp(data.get("last_refresh"), label="last_refresh"),
            expires_at=parse_timestamp(data.get("expires_at"), label="expires_at"),
            etag=_optional_str(data.get("etag"), "etag"),
            catalog_etag=_optional_str(data.get("catalog_etag"), "catalog_etag"),
        )

    def to_dict(self) -> dict[str, Any]:
        return {
            "last_refresh": format_timestamp(self.last_refresh),
            "etag": self.etag,
            "catalog_etag": self.catalog_etag,
            "expires_at": format_timestamp(self.expires_at),
        }


# ----------------------------------------------------------------------
# Profiles
# ----------------------------------------------------------------------
@dataclass(frozen=True)
class ProfileInfo:
    """Registry metadata for a single profile."""

    name: str
    created_at: datetime
    description: str | None = None
    last_used: datetime | None = None
    server_count: int = 0

    @classmethod
    def from_dict(cls, data: object, *, name: str) -> ProfileInfo:
        if not isinstance(data, Mapping):
            raise ParseError(f"Profile entry '{name}' must be a JSON object.")
        last_used = data.get("last_used")
        count = data.get("server_count", 0)
        if isinstance(count, bool) or not isinstance(count, int):
            raise ParseError(f"Profile entry '{name}' server_count must be an integer.")
        return cls(
            name=str(data.get("name") or name),
            created_at=parse_timestamp(data.get("created_at"), label=f"profile {name} created_at"),
            description=_maybe_str(data.get("description")),
            last_used=(
                parse_timestamp(last_used, label=f"profile {name} last_used")
                if last_used is not None
                else None
            ),
            server_count=count,
        )

    def to_dict(self) -> dict[str, Any]:
        return {
            "name": self.name,
            "description": self.description,
            "created_at": format_timestamp(self.created_at),
            "last_used": format_timestamp(self.last_used) if self.last_used else None,
            "server_count": self.server_count,
        }


@dataclass(frozen=True)
class ProfileRegistry:
    """Profile metadata plus the ``current_profile`` pointer.

    Registry values are never mutated in place; the ``with_*`` helpers return
    new registries.
    """

    current_profile: str | None = None
    profiles: dict[str, ProfileInfo] = field(default_factory=dict)

    def __post_init__(self) -> None:
        """Ensure the current profile refers to a registered profile."""
        if self.current_profile is not None and self.current_profile not in self.profiles:
            raise ValidationError(
                f"Current profile '{self.current_profile}' is not a registered profile."
            )

    def with_profile(self, info: ProfileInfo) -> ProfileRegistry:
        profiles = dict(self.profiles)
        profiles[info.name] = info
        return ProfileRegistry(current_profile=self.current_profile, profiles=profiles)

    def without_profile(self, name: str) -> ProfileRegistry:
        profiles = {key: value for key, value in self.profiles.items() if key != name}
        current = None if self.current_profile == name else self.current_profile
        return ProfileRegistry(current_profile=current, profiles=profiles)

    def with_current(self, name: str | None) -> ProfileRegistry:
        return ProfileRegistry(current_profile=name, profiles=dict(self.profiles))

    @classmethod
    def from_dict(cls, data: object) -> ProfileRegistry:
        if not isinstance(data, Mapping):
            raise ParseError("Profile registry must be a JSON object.")
        raw_profiles = data.get("profiles") or {}
        if not isinstance(raw_profiles, Mapping):
            raise ParseError("Profile registry 'profiles' must be a JSON object.")
        current = data.get("current_profile")
        if current is not None and not isinstance(current, str):
            raise ParseError("Profile registry 'current_profile' must be a string or null.")
        profiles = {
            str(name): ProfileInfo.from_dict(entry, name=str(name))
            for name, entry in raw_profiles.items()
        }
        try:
            return cls(current_profile=current, profiles=profiles)
        except ValidationError as exc:
            raise ParseError(f"Profile registry is inconsistent: {exc}") from exc

    def to_dict(self) -> dict[str, Any]:
        return {
            "current_profile": self.current_profile,
            "profiles": {name: info.to_dict() for name, info in self.profiles.items()},
        }


# ----------------------------------------------------------------------
# Backups
# ----------------------------------------------------------------------
@dataclass(frozen=True)
class BackupMetadata:
    """Descriptive metadata stored alongside a backed-up configuration."""

    name: str
    created_at: datetime
    servers_count: int
    description: str | None = None
    vcs_branch: str | None = None
    vcs_commit: str | None = None

    @classmethod
    def from_dict(cls, data: object) -> BackupMetadata:
        if not isinstance(data, Mapping):
            raise ParseError("Backup metadata must be a JSON object.")
        name = data.get("name")
        if not isinstance(name, str) or not name:
            raise ParseError("Backup metadata is missing a name.")
        count = data.get("servers_count", 0)
        if isinstance(count, bool) or not isinstance(count, int):
            raise ParseError(f"Backup '{name}' servers_count must be an integer.")
        return cls(
            name=name,
            created_at=parse_timestamp(data.get("created_at"), label=f"backup {name} created_at"),
            servers_count=count,
            description=_maybe_str(data.get("description")),
            vcs_branch=_maybe_str(data.get("vcs_branch", data.get("git_branch"))),
            vcs_commit=_maybe_str(data.get("vcs_commit", data.get("git_commit"))),
        )

    def to_dict(self) -> dict[str, Any]:
        return {
            "name": self.name,
            "created_at": format_timestamp(self.created_at),
            "servers_count": self.servers_count,
            "description": self.description,
            "vcs_branch": self.vcs_branch,
            "vcs_commit": self.vcs_commit,
        }


def _maybe_str(value: object) -> str | None:
    return value if isinstance(value, str) else None


@dataclass(frozen=True)
class BackupRecord:
    """A backup file: metadata plus the full configuration snapshot."""

    metadata: BackupMetadata
    config: Configuration
    path: Path | None = None

    @property
    def name(self) -> str:
        return self.metadata.name

    @classmethod
    def from_dict(
        cls,
        data: object,
        *,
        server_key: str = DEFAULT_SERVER_KEY,
        path: Path | None = None,
    ) -> BackupRecord:
        if not isinstance(data, Mapping):
            raise ParseError("Backup file must be a JSON object.")
        try:
            config = Configuration.from_dict(data.get("config"), server_key=server_key)
        except ValidationError as exc:
            raise ParseError(f"Backup configuration is invalid: {exc}") from exc
        return cls(metadata=BackupMetadata.from_dict(data.get("metadata")), config=config, path=path)

    def to_dict(self, *, server_key: str = DEFAULT_SERVER_KEY) -> dict[str, Any]:
        return {
            "metadata": self.metadata.to_dict(),
            "config": self.config.to_dict(server_key=server_key),
        }


__all__ = [
    "BackupMetadata",
    "BackupRecord",
    "CacheMetadata",
    "CommandServer",
    "Configuration",
    "DEFAULT_SERVER_KEY",
    "ProfileInfo",
    "ProfileRegistry",
    "ServerDiff",
    "ServerEntry",
    "Template",
    "TemplateBody",
    "TemplateCatalog",
    "TemplateMetadata",
    "TemplateVariable",
    "UrlServer",
    "VARIABLE_TYPES",
    "describe_server",
    "format_timestamp",
    "parse_timestamp",
    "server_from_dict",
    "server_to_dict",
    "utc_now",
]
