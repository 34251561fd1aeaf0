"""Template sources, the on-disk template cache and resolution order.

Templates are resolved from, in order: the local override directory, the
unexpired cache, the remote repository (results are cached), and finally the
templates bundled with the package.
"""
from __future__ import annotations

import base64
import binascii
import json
import logging
import re
import urllib.error
import urllib.parse
import urllib.request
from collections.abc import Callable, Iterable
from dataclasses import dataclass
from datetime import datetime, timedelta
from importlib import resources
from pathlib import Path
from typing import Any, Protocol

from . import __version__
from .config import TemplateSourceConfig
from .errors import ForgeError, NotFoundError, ParseError, StorageError, ValidationError
from .models import (
    CacheMetadata,
    Template,
    TemplateCatalog,
    TemplateMetadata,
    format_timestamp,
    utc_now,
)
from .state.registry import JsonDocumentStore, read_json

LOGGER = logging.getLogger(__name__)

BUILTIN_PACKAGE = "mcpforge.builtin_templates"
CATALOG_FILE = "catalog.json"
METADATA_FILE = "metadata.json"
TEMPLATES_SUBDIR = "templates"

_TEMPLATE_NAME = re.compile(r"[A-Za-z0-9][A-Za-z0-9._-]*")


def validate_template_name(name: str) -> str:
    """Return *name* stripped, rejecting values unsafe as filenames."""
    normalized = name.strip()
    if not _TEMPLATE_NAME.fullmatch(normalized):
        raise ValidationError(
            f"Invalid template name '{name}'. Use letters, digits, '.', '-' or '_'."
        )
    return normalized


def _template_from_json(data: object, *, origin: str) -> Template:
    try:
        return Template.from_dict(data)
    except ValidationError as exc:
        raise ParseError(f"Invalid template document from {origin}: {exc}") from exc


class TemplateSource(Protocol):
    """Anything able to list and return templates."""

    def fetch_catalog(self) -> TemplateCatalog:
        ...

    def fetch_template(self, name: str) -> Template:
        ...


class BuiltinTemplateSource:
    """Templates shipped inside the package."""

    def __init__(self, package: str = BUILTIN_PACKAGE) -> None:
        self._package = package
        self._templates: dict[str, Template] | None = None

    def _load(self) -> dict[str, Template]:
        if self._templates is None:
            templates: dict[str, Template] = {}
            for entry in sorted(resources.files(self._package).iterdir(), key=lambda e: e.name):
                if not entry.name.endswith(".json"):
                    continue
                data = json.loads(entry.read_text(encoding="utf-8"))
                template = _template_from_json(data, origin=f"builtin {entry.name}")
                templates[template.name] = template
            self._templates = templates
        return self._templates

    def names(self) -> list[str]:
        return sorted(self._load())

    def fetch_catalog(self) -> TemplateCatalog:
        return TemplateCatalog(
            version="1.0.0",
            last_updated="",
            templates={
                name: TemplateMetadata.from_template(template, category="builtin")
                for name, template in sorted(self._load().items())
            },
        )

    def fetch_template(self, name: str) -> Template:
        try:
            return self._load()[name]
        except KeyError:
            raise NotFoundError("template", name) from None


class LocalTemplateSource:
    """User supplied ``<name>.json`` templates that shadow every other source."""

    def __init__(self, root: Path) -> None:
        self.root = root.expanduser()

    def _paths(self) -> list[Path]:
        if not self.root.is_dir():
            return []
        return sorted(path for path in self.root.glob("*.json") if path.is_file())

    def fetch_catalog(self) -> TemplateCatalog:
        templates: dict[str, TemplateMetadata] = {}
        for path in self._paths():
            try:
                template = self._read(path)
            except ForgeError as exc:
                LOGGER.warning("Skipping unreadable template override %s: %s", path, exc)
                continue
            templates[template.name] = TemplateMetadata.from_template(template, category="local")
        return TemplateCatalog(version="1.0.0", last_updated="", templates=templates)

    def fetch_template(self, name: str) -> Template:
        path = self.root / f"{validate_template_name(name)}.json"
        if not path.is_file():
            raise NotFoundError("template", name)
        return self._read(path)

    def _read(self, path: Path) -> Template:
        return _template_from_json(read_json(path), origin=str(path))


Opener = Callable[..., Any]


class GitHubTemplateSource:
    """Fetch templates through the GitHub contents API."""

    def __init__(
        self,
        settings: TemplateSourceConfig,
        *,
        opener: Opener | None = None,
    ) -> None:
        self.settings = settings
        self._opener = opener or urllib.request.urlopen
        self.catalog_etag: str | None = None

    @property
    def base_url(self) -> str:
        return f"{self.settings.api_url}/repos/{self.settings.owner}/{self.settings.repo}"

    def fetch_catalog(self) -> TemplateCatalog:
        content, etag = self._get_contents(CATALOG_FILE, kind="catalog", identifier=CATALOG_FILE)
        self.catalog_etag = etag
        try:
            return TemplateCatalog.from_dict(self._decode_json(content, CATALOG_FILE))
        except ValidationError as exc:
            raise ParseError(f"Invalid template catalog: {exc}") from exc

    def fetch_template(self, name: str) -> Template:
        catalog = self.fetch_catalog()
        metadata = catalog.templates.get(name)
        if metadata is None:
            raise NotFoundError("template", name)
        content, _ = self._get_contents(metadata.path, kind="template", identifier=name)
        return _template_from_json(
            self._decode_json(content, metadata.path), origin=f"template '{name}'"
        )

    def _get_contents(self, path: str, *, kind: str, identifier: str) -> tuple[str, str | None]:
        query = urllib.parse.urlencode({"ref": self.settings.branch})
        url = f"{self.base_url}/contents/{urllib.parse.quote(path)}?{query}"
        request = urllib.request.Request(
            url,
            headers={
                "User-Agent": f"mcp-forge/{__version__}",
                "Accept": "application/vnd.github.v3+json",
            },
        )
        LOGGER.debug("Fetching %s", url)
        try:
            with self._opener(request, timeout=self.settings.timeout) as response:
                raw = response.read()
                etag = response.headers.get("ETag") if response.headers else None
        except urllib.error.HTTPError as exc:
            if exc.code == 404:
                raise NotFoundError(kind, identifier) from exc
            if exc.code == 403:
                raise StorageError(
                    "GitHub API rate limit exceeded. Try again later or use cached templates."
                ) from exc
            raise StorageError(f"GitHub API error {exc.code} fetching {path}.") from exc
        except urllib.error.URLError as exc:
            raise StorageError(f"Failed to reach {self.settings.api_url}: {exc.reason}") from exc
        except OSError as exc:
            raise StorageError(f"Failed to fetch {path}: {exc}") from exc

        envelope = self._decode_json(raw, path)
        if not isinstance(envelope, dict) or not isinstance(envelope.get("content"), str):
            raise ParseError(f"Unexpected GitHub API response for {path}.")
        content = envelope["content"]
        if envelope.get("encoding") == "base64":
            try:
                content = base64.b64decode(content.replace("\n", "")).decode("utf-8")
            except (binascii.Error, UnicodeDecodeError) as exc:
                raise ParseError(f"Failed to decode {path}: {exc}") from exc
        return content, etag

    @staticmethod
    def _decode_json(raw: str | bytes, label: str) -> Any:
        try:
            return json.loads(raw)
        except (json.JSONDecodeError, UnicodeDecodeError) as exc:
            raise ParseError(f"Failed to parse {label}: {exc}") from exc


@dataclass(slots=True)
class TemplateCache:
    """Disposable on-disk cache of the catalog and individual templates.

    Anything missing, expired or unreadable is reported as a miss.
    """

    root: Path
    ttl_days: int = 30

    def __post_init__(self) -> None:
        """Normalise the cache root after initialisation."""
        self.root = self.root.expanduser()

    @property
    def _store(self) -> JsonDocumentStore:
        return JsonDocumentStore(self.root)

    @property
    def _templates(self) -> JsonDocumentStore:
        return JsonDocumentStore(self.root / TEMPLATES_SUBDIR)

    def read_metadata(self) -> CacheMetadata | None:
        try:
            data = self._store.read(METADATA_FILE)
            return CacheMetadata.from_dict(data) if data is not None else None
        except ForgeError as exc:
            LOGGER.debug("Ignoring unreadable cache metadata: %s", exc)
            return None

    def is_fresh(self, now: datetime | None = None) -> bool:
        metadata = self.read_metadata()
        return metadata is not None and not metadata.is_expired(now)

    def get_catalog(self, now: datetime | None = None) -> TemplateCatalog | None:
        if not self.is_fresh(now):
            return None
        try:
            data = self._store.read(CATALOG_FILE)
            return TemplateCatalog.from_dict(data) if data is not None else None
        except ForgeError as exc:
            LOGGER.debug("Ignoring unreadable cached catalog: %s", exc)
            return None

    def put_catalog(self, catalog: TemplateCatalog, *, etag: str | None = None) -> None:
        self._drop_if_expired()
        self._store.write(CATALOG_FILE, catalog.to_dict())
        self._write_metadata(catalog_etag=etag)

    def get_template(self, name: str, now: datetime | None = None) -> Template | None:
        if not self.is_fresh(now):
            return None
        try:
            data = self._templates.read(f"{validate_template_name(name)}.json")
            return Template.from_dict(data) if data is not None else None
        except ForgeError as exc:
            LOGGER.debug("Ignoring unreadable cached template %s: %s", name, exc)
            return None

    def put_template(self, template: Template) -> None:
        """Store *template*, starting a new expiry window if the cache had expired."""
        self._drop_if_expired()
        self._templates.write(f"{validate_template_name(template.name)}.json", template.to_dict())
        if self.read_metadata() is None:
            self._write_metadata()

    def template_count(self) -> int:
        return len(self._templates.list_documents())

    def clear(self) -> int:
        """Delete every cached document, returning how many were removed."""
        removed = 0
        for path in self._templates.list_documents():
            path.unlink(missing_ok=True)
            removed += 1
        for name in (CATALOG_FILE, METADATA_FILE):
            if self._store.delete(name):
                removed += 1
        return removed

    def _drop_if_expired(self) -> None:
        if not self.is_fresh():
            # stale entries must not inherit the next expiry window
            removed = self.clear()
            if removed:
                LOGGER.debug("Template cache expired; discarded %d entries.", removed)

    def _write_metadata(self, *, catalog_etag: str | None = None) -> None:
        now = utc_now()
        previous = self.read_metadata()
        metadata = CacheMetadata(
            last_refresh=now,
            expires_at=now + timedelta(days=self.ttl_days),
            etag=previous.etag if previous else None,
            catalog_etag=catalog_etag or (previous.catalog_etag if previous else None),
        )
        self._store.write(METADATA_FILE, metadata.to_dict())


@dataclass(frozen=True)
class ResolvedTemplate:
    """A template together with where it was found."""

    template: Template
    origin: str


class TemplateRepository:
    """Resolve templates across overrides, cache, remote and builtin sources."""

    def __init__(
        self,
        *,
        cache: TemplateCache,
        remote: TemplateSource | None = None,
        builtin: BuiltinTemplateSource | None = None,
        overrides: LocalTemplateSource | None = None,
    ) -> None:
        self.cache = cache
        self.remote = remote
        self.builtin = builtin or BuiltinTemplateSource()
        self.overrides = overrides

    def load_template(self, name: str) -> ResolvedTemplate:
        normalized = validate_template_name(name)
        if self.overrides is not None:
            try:
                return ResolvedTemplate(self.overrides.fetch_template(normalized), "local")
            except NotFoundError:
                pass

        cached = self.cache.get_template(normalized)
        if cached is not None:
            return ResolvedTemplate(cached, "cache")

        if self.remote is not None:
            try:
                template = self.remote.fetch_template(normalized)
            except NotFoundError:
                return ResolvedTemplate(self.builtin.fetch_template(normalized), "builtin")
            except ForgeError as exc:
                LOGGER.warning("Remote template fetch failed (%s); using bundled templates.", exc)
                try:
                    return ResolvedTemplate(self.builtin.fetch_template(normalized), "builtin")
                except NotFoundError:
                    raise exc from None
            self.cache.put_template(template)
            return ResolvedTemplate(template, "remote")

        return ResolvedTemplate(self.builtin.fetch_template(normalized), "builtin")

    def load_catalog(self) -> tuple[TemplateCatalog, str]:
        """Return the merged catalog and the origin of its base entries."""
        catalog = self.cache.get_catalog()
        origin = "cache"
        if catalog is None and self.remote is not None:
            try:
                catalog = self._fetch_remote_catalog(self.remote)
                origin = "remote"
            except ForgeError as exc:
                LOGGER.warning("Remote catalog fetch failed (%s); using bundled templates.", exc)
        if catalog is None:
            catalog = self.builtin.fetch_catalog()
            origin = "builtin"

        if self.overrides is not None:
            local = self.overrides.fetch_catalog()
            if local.templates:
                merged = dict(catalog.templates)
                merged.update(local.templates)
                catalog = TemplateCatalog(
                    version=catalog.version,
                    last_updated=catalog.last_updated,
                    templates=merged,
                )
        return catalog, origin

    def refresh(self) -> TemplateCatalog:
        """Refetch the remote catalog, discarding cached templates."""
        if self.remote is None:
            raise StorageError("No remote template source is configured (offline mode).")
        catalog = self.remote.fetch_catalog()
        self.cache.clear()
        self.cache.put_catalog(catalog, etag=getattr(self.remote, "catalog_etag", None))
        return catalog

    def _fetch_remote_catalog(self, remote: TemplateSource) -> TemplateCatalog:
        catalog = remote.fetch_catalog()
        self.cache.put_catalog(catalog, etag=getattr(remote, "catalog_etag", None))
        return catalog


def filter_templates(
    entries: Iterable[TemplateMetadata],
    *,
    tag: str | None = None,
    platform: str | None = None,
    text: str | None = None,
) -> list[TemplateMetadata]:
    """Return the *entries* matching every given criterion, sorted by name.

    Matching is case-insensitive. *text* is looked for in the name, the
    description and the tags. An entry that lists no platforms matches any
    *platform*.
    """
    wanted_tag = tag.strip().lower() if tag else None
    wanted_platform = platform.strip().lower() if platform else None
    needle = text.strip().lower() if text else None
    matches: list[TemplateMetadata] = []
    for entry in entries:
        tags = {item.lower() for item in entry.tags}
        if wanted_tag and wanted_tag not in tags:
            continue
        platforms = {item.lower() for item in entry.platforms}
        if wanted_platform and platforms and wanted_platform not in platforms:
            continue
        if needle and not any(
            needle in haystack
            for haystack in (entry.name.lower(), entry.description.lower(), *tags)
        ):
            continue
        matches.append(entry)
    return sorted(matches, key=lambda entry: entry.name)


def describe_cache(cache: TemplateCache) -> dict[str, object]:
    """Summarise cache state for display."""
    metadata = cache.read_metadata()
    return {
        "path": str(cache.root),
        "fresh": cache.is_fresh(),
        "last_refresh": format_timestamp(metadata.last_refresh) if metadata else None,
        "expires_at": format_timestamp(metadata.expires_at) if metadata else None,
        "templates": cache.template_count(),
    }


__all__ = [
    "BuiltinTemplateSource",
    "GitHubTemplateSource",
    "LocalTemplateSource",
    "ResolvedTemplate",
    "TemplateCache",
    "TemplateRepository",
    "TemplateSource",
    "describe_cache",
    "filter_templates",
    "validate_template_name",
]
