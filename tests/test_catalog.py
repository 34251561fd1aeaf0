"""Tests for template sources, the cache and resolution order."""
from __future__ import annotations

import base64
import json
import urllib.error
from datetime import timedelta
from email.message import Message
from pathlib import Path

import pytest

from mcpforge.catalog import (
    BuiltinTemplateSource,
    GitHubTemplateSource,
    LocalTemplateSource,
    TemplateCache,
    TemplateRepository,
    describe_cache,
    filter_templates,
    validate_template_name,
)
from mcpforge.config import TemplateSourceConfig
from mcpforge.errors import NotFoundError, StorageError, ValidationError
from mcpforge.models import (
    CacheMetadata,
    Template,
    TemplateCatalog,
    TemplateMetadata,
    utc_now,
)


def _template(name: str, command: str = "run") -> Template:
    return Template.from_dict(
        {"name": name, "version": "2.0.0", "config": {"command": command}}
    )


class FakeRemote:
    """In-memory remote source that counts fetches."""

    def __init__(self, templates: dict[str, Template], *, error: Exception | None = None) -> None:
        self.templates = templates
        self.error = error
        self.catalog_etag = '"etag-1"'
        self.template_calls = 0
        self.catalog_calls = 0

    def fetch_catalog(self) -> TemplateCatalog:
        self.catalog_calls += 1
        if self.error is not None:
            raise self.error
        return TemplateCatalog(
            version="1.0.0",
            last_updated="2024-01-01",
            templates={
                name: TemplateMetadata.from_template(template, category="remote")
                for name, template in self.templates.items()
            },
        )

    def fetch_template(self, name: str) -> Template:
        self.template_calls += 1
        if self.error is not None:
            raise self.error
        try:
            return self.templates[name]
        except KeyError:
            raise NotFoundError("template", name) from None


@pytest.fixture
def cache(tmp_path: Path) -> TemplateCache:
    return TemplateCache(tmp_path / "cache", ttl_days=30)


def test_validate_template_name() -> None:
    assert validate_template_name(" brave-search ") == "brave-search"
    with pytest.raises(ValidationError):
        validate_template_name("../etc/passwd")


def test_builtin_source_lists_bundled_templates() -> None:
    source = BuiltinTemplateSource()

    assert {"filesystem", "brave-search", "sqlite", "postgres", "remote-http"} <= set(
        source.names()
    )
    assert source.fetch_catalog().templates["sqlite"].category == "builtin"
    with pytest.raises(NotFoundError):
        source.fetch_template("does-not-exist")


def test_offline_repository_falls_back_to_builtin(cache: TemplateCache) -> None:
    repository = TemplateRepository(cache=cache)

    resolved = repository.load_template("sqlite")

    assert resolved.origin == "builtin"
    assert resolved.template.name == "sqlite"


def test_remote_template_is_cached(cache: TemplateCache) -> None:
    """A remote fetch is stored so the next lookup is served from the cache."""
    remote = FakeRemote({"custom": _template("custom")})
    repository = TemplateRepository(cache=cache, remote=remote)

    first = repository.load_template("custom")
    second = repository.load_template("custom")

    assert first.origin == "remote"
    assert second.origin == "cache"
    assert second.template == first.template
    assert remote.template_calls == 1


def test_remote_not_found_falls_back_to_builtin(cache: TemplateCache) -> None:
    repository = TemplateRepository(cache=cache, remote=FakeRemote({}))

    assert repository.load_template("filesystem").origin == "builtin"
    with pytest.raises(NotFoundError):
        repository.load_template("nowhere")


def test_remote_failure_falls_back_or_reraises(cache: TemplateCache) -> None:
    remote = FakeRemote({}, error=StorageError("offline"))
    repository = TemplateRepository(cache=cache, remote=remote)

    assert repository.load_template("filesystem").origin == "builtin"
    with pytest.raises(StorageError):
        repository.load_template("custom")


def test_local_override_wins(tmp_path: Path, cache: TemplateCache) -> None:
    overrides = tmp_path / "templates"
    overrides.mkdir()
    (overrides / "sqlite.json").write_text(
        json.dumps(_template("sqlite", command="my-sqlite").to_dict()), encoding="utf-8"
    )
    repository = TemplateRepository(cache=cache, overrides=LocalTemplateSource(overrides))

    resolved = repository.load_template("sqlite")

    assert resolved.origin == "local"
    assert resolved.template.config.command == "my-sqlite"


def test_corrupt_cache_entry_is_a_miss(cache: TemplateCache) -> None:
    cache.put_template(_template("custom"))
    (cache.root / "templates" / "custom.json").write_text("{ broken", encoding="utf-8")

    assert cache.get_template("custom") is None


def test_expired_cache_is_a_miss(cache: TemplateCache) -> None:
    cache.put_template(_template("custom"))
    later = utc_now() + timedelta(days=31)

    assert cache.get_template("custom") is not None
    assert cache.is_fresh(later) is False
    assert cache.get_template("custom", later) is None


def test_corrupt_metadata_is_a_miss(cache: TemplateCache) -> None:
    cache.put_template(_template("custom"))
    (cache.root / "metadata.json").write_text("[]", encoding="utf-8")

    assert cache.read_metadata() is None
    assert cache.get_template("custom") is None


def _expire(cache: TemplateCache) -> None:
    past = utc_now() - timedelta(days=60)
    metadata = CacheMetadata(last_refresh=past, expires_at=past + timedelta(days=30))
    (cache.root / "metadata.json").write_text(json.dumps(metadata.to_dict()), encoding="utf-8")


def test_expired_cache_is_renewed_by_the_next_fetch(cache: TemplateCache) -> None:
    """After expiry a fresh fetch is cached again and stale entries are discarded."""
    cache.put_catalog(BuiltinTemplateSource().fetch_catalog())
    cache.put_template(_template("stale"))
    _expire(cache)
    remote = FakeRemote({"custom": _template("custom")})
    repository = TemplateRepository(cache=cache, remote=remote)

    first = repository.load_template("custom")
    second = repository.load_template("custom")

    assert (first.origin, second.origin) == ("remote", "cache")
    assert remote.template_calls == 1
    assert cache.is_fresh()
    assert cache.template_count() == 1
    assert cache.get_template("stale") is None
    assert cache.get_catalog() is None


def test_expired_catalog_is_replaced_without_stale_templates(cache: TemplateCache) -> None:
    """Storing a catalog into an expired cache drops templates from the old window."""
    cache.put_template(_template("stale"))
    _expire(cache)

    cache.put_catalog(BuiltinTemplateSource().fetch_catalog())

    assert cache.get_catalog() is not None
    assert cache.template_count() == 0


def _entry(
    name: str, *, tags: list[str], platforms: list[str], description: str = ""
) -> TemplateMetadata:
    template = Template.from_dict(
        {
            "name": name,
            "version": "1.0.0",
            "description": description,
            "tags": tags,
            "platforms": platforms,
            "config": {"command": "run"},
        }
    )
    return TemplateMetadata.from_template(template, category="remote")


def _names(found: list[TemplateMetadata]) -> list[str]:
    return [entry.name for entry in found]


def test_filter_templates_by_tag_platform_and_text() -> None:
    """Filters are case-insensitive and platform-less entries match any platform."""
    entries = [
        _entry("zeta", tags=["Database"], platforms=["linux"], description="Query rows"),
        _entry("alpha", tags=["search"], platforms=[], description="Web lookups"),
        _entry("mid", tags=["database", "web"], platforms=["windows"]),
    ]

    assert _names(filter_templates(entries)) == ["alpha", "mid", "zeta"]
    assert _names(filter_templates(entries, tag="DATABASE")) == ["mid", "zeta"]
    assert _names(filter_templates(entries, platform="Linux")) == ["alpha", "zeta"]
    assert _names(filter_templates(entries, text="web")) == ["alpha", "mid"]
    assert _names(filter_templates(entries, text="rows", tag="database")) == ["zeta"]
    assert filter_templates(entries, tag="missing") == []


def test_cache_clear_counts_documents(cache: TemplateCache) -> None:
    cache.put_catalog(BuiltinTemplateSource().fetch_catalog())
    cache.put_template(_template("one"))
    cache.put_template(_template("two"))

    assert cache.template_count() == 2
    assert cache.clear() == 4
    assert cache.template_count() == 0
    assert describe_cache(cache)["fresh"] is False


def test_catalog_from_remote_is_cached(cache: TemplateCache) -> None:
    remote = FakeRemote({"custom": _template("custom")})
    repository = TemplateRepository(cache=cache, remote=remote)

    catalog, origin = repository.load_catalog()
    again, again_origin = repository.load_catalog()

    assert origin == "remote"
    assert again_origin == "cache"
    assert set(again.templates) == set(catalog.templates) == {"custom"}
    assert cache.read_metadata().catalog_etag == '"etag-1"'
    assert remote.catalog_calls == 1


def test_catalog_falls_back_and_merges_overrides(tmp_path: Path, cache: TemplateCache) -> None:
    overrides = tmp_path / "templates"
    overrides.mkdir()
    (overrides / "mine.json").write_text(
        json.dumps(_template("mine").to_dict()), encoding="utf-8"
    )
    (overrides / "broken.json").write_text("not json", encoding="utf-8")
    repository = TemplateRepository(
        cache=cache,
        remote=FakeRemote({}, error=StorageError("offline")),
        overrides=LocalTemplateSource(overrides),
    )

    catalog, origin = repository.load_catalog()

    assert origin == "builtin"
    assert catalog.templates["mine"].category == "local"
    assert "filesystem" in catalog.templates


def test_refresh_requires_remote(cache: TemplateCache) -> None:
    with pytest.raises(StorageError):
        TemplateRepository(cache=cache).refresh()


def test_refresh_replaces_cached_templates(cache: TemplateCache) -> None:
    cache.put_template(_template("stale"))
    repository = TemplateRepository(cache=cache, remote=FakeRemote({"fresh": _template("fresh")}))

    catalog = repository.refresh()

    assert set(catalog.templates) == {"fresh"}
    assert cache.get_template("stale") is None
    assert cache.get_catalog() is not None


class _Response:
    def __init__(self, payload: object, etag: str | None = None) -> None:
        self._body = json.dumps(payload).encode("utf-8")
        self.headers = {"ETag": etag} if etag else {}

    def __enter__(self) -> _Response:
        return self

    def __exit__(self, *exc_info: object) -> bool:
        return False

    def read(self) -> bytes:
        return self._body


def _contents(document: object) -> dict[str, str]:
    encoded = base64.b64encode(json.dumps(document).encode("utf-8")).decode("ascii")
    return {"encoding": "base64", "content": encoded[:20] + "\n" + encoded[20:]}


def test_github_source_decodes_contents_api() -> None:
    catalog = {
        "version": "1.0.0",
        "templates": {"custom": {"name": "custom", "path": "templates/custom.json"}},
    }
    requested: list[str] = []

    def opener(request: object, timeout: float) -> _Response:
        url = request.full_url  # type: ignore[attr-defined]
        requested.append(url)
        if "catalog.json" in url:
            return _Response(_contents(catalog), etag='"abc"')
        return _Response(_contents(_template("custom").to_dict()))

    source = GitHubTemplateSource(TemplateSourceConfig(owner="me", repo="tpl"), opener=opener)

    template = source.fetch_template("custom")

    assert template.name == "custom"
    assert source.catalog_etag == '"abc"'
    assert requested[0].startswith("https://api.github.com/repos/me/tpl/contents/catalog.json")
    assert requested[1].endswith("templates/custom.json?ref=main")


@pytest.mark.parametrize(
    ("code", "expected"),
    [(404, NotFoundError), (403, StorageError), (500, StorageError)],
)
def test_github_source_maps_http_errors(code: int, expected: type[Exception]) -> None:
    def opener(request: object, timeout: float) -> _Response:
        raise urllib.error.HTTPError(
            request.full_url, code, "error", Message(), None  # type: ignore[attr-defined]
        )

    source = GitHubTemplateSource(TemplateSourceConfig(), opener=opener)

    with pytest.raises(expected):
        source.fetch_catalog()


def test_github_source_maps_connection_errors() -> None:
    def opener(request: object, timeout: float) -> _Response:
        raise urllib.error.URLError("no route")

    source = GitHubTemplateSource(TemplateSourceConfig(), opener=opener)

    with pytest.raises(StorageError):
        source.fetch_catalog()
