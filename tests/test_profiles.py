"""Tests for profile snapshots and the profile registry."""
from __future__ import annotations

from datetime import UTC, datetime
from pathlib import Path

import pytest

from mcpforge.errors import NotFoundError, ParseError, ValidationError
from mcpforge.models import CommandServer, Configuration, ProfileRegistry
from mcpforge.profiles import ProfileStateManager, validate_profile_name
from mcpforge.store import ConfigStore

FIXED_NOW = datetime(2024, 6, 1, 12, 0, 0, tzinfo=UTC)


def _config(*names: str) -> Configuration:
    return Configuration(servers={name: CommandServer(command=name) for name in names})


@pytest.fixture
def manager(tmp_path: Path, store: ConfigStore) -> ProfileStateManager:
    return ProfileStateManager(tmp_path / "profiles", store, clock=lambda: FIXED_NOW)


def _with_profiles(manager: ProfileStateManager, *names: str) -> ProfileRegistry:
    registry = manager.load_registry()
    for name in names:
        registry = manager.create(registry, name)
    return registry


@pytest.mark.parametrize("name", ["work", "home-2", "client_a", "X" * 50])
def test_valid_profile_names(name: str) -> None:
    assert validate_profile_name(name) == name


@pytest.mark.parametrize(
    "name",
    ["", "   ", "X" * 51, "has space", "dots.not.allowed", "default", "Main", "GLOBAL", "work\n"],
)
def test_invalid_profile_names(name: str) -> None:
    with pytest.raises(ValidationError):
        validate_profile_name(name)


def test_create_persists_registry_and_empty_snapshot(
    tmp_path: Path, manager: ProfileStateManager, store: ConfigStore
) -> None:
    registry = manager.create(manager.load_registry(), "work", "Day job")

    assert manager.snapshot_path("work").exists()
    assert manager.load_snapshot("work") == Configuration()
    reloaded = ProfileStateManager(tmp_path / "profiles", store).load_registry()
    assert reloaded == registry
    assert reloaded.profiles["work"].description == "Day job"
    assert reloaded.profiles["work"].created_at == FIXED_NOW
    assert reloaded.current_profile is None


def test_create_rejects_duplicates(manager: ProfileStateManager) -> None:
    registry = _with_profiles(manager, "work")

    with pytest.raises(ValidationError):
        manager.create(registry, "work")


def test_corrupt_registry_is_a_parse_error(manager: ProfileStateManager) -> None:
    manager.state_dir.mkdir(parents=True)
    (manager.state_dir / "profiles.json").write_text("{ nope", encoding="utf-8")

    with pytest.raises(ParseError):
        manager.load_registry()


def test_save_requires_a_target(manager: ProfileStateManager) -> None:
    registry = _with_profiles(manager, "work")

    with pytest.raises(ValidationError):
        manager.save(registry)
    with pytest.raises(NotFoundError):
        manager.save(registry, "ghost")


def test_save_captures_canonical_document(
    manager: ProfileStateManager, store: ConfigStore
) -> None:
    registry = _with_profiles(manager, "work")
    store.save(_config("a", "b"))

    registry = manager.save(registry, "work")

    assert manager.load_snapshot("work") == _config("a", "b")
    assert registry.profiles["work"].server_count == 2
    assert registry.profiles["work"].last_used == FIXED_NOW


def test_switch_copies_snapshot_into_canonical(
    manager: ProfileStateManager, store: ConfigStore
) -> None:
    registry = _with_profiles(manager, "work")
    store.save(_config("a"))
    registry = manager.save(registry, "work")
    store.save(_config("scratch"))

    result = manager.switch(registry, "work")

    assert store.load() == _config("a")
    assert result.registry.current_profile == "work"
    assert result.previous is None
    assert result.had_unsaved_changes is False
    assert manager.load_registry().current_profile == "work"


def _switched_to_work(manager: ProfileStateManager, store: ConfigStore) -> ProfileRegistry:
    registry = _with_profiles(manager, "work", "home")
    store.save(_config("a"))
    registry = manager.save(registry, "work")
    registry = manager.switch(registry, "work").registry
    store.save(_config("a", "b"))
    return registry


def test_switch_saves_unsaved_changes_when_accepted(
    manager: ProfileStateManager, store: ConfigStore
) -> None:
    """Accepting the prompt stores the drift in the previous profile first."""
    registry = _switched_to_work(manager, store)
    asked: list[str] = []

    def accept(current: str) -> bool:
        asked.append(current)
        return True

    assert manager.has_unsaved_changes(registry) is True
    result = manager.switch(registry, "home", save_current=accept)

    assert asked == ["work"]
    assert result.had_unsaved_changes is True
    assert result.saved_previous is True
    assert manager.load_snapshot("work") == _config("a", "b")
    assert store.load() == Configuration()
    assert result.registry.current_profile == "home"


def test_switch_discards_unsaved_changes_when_declined(
    manager: ProfileStateManager, store: ConfigStore
) -> None:
    registry = _switched_to_work(manager, store)

    result = manager.switch(registry, "home", save_current=False)

    assert result.had_unsaved_changes is True
    assert result.saved_previous is False
    assert manager.load_snapshot("work") == _config("a")


def test_switch_unknown_profile(manager: ProfileStateManager) -> None:
    with pytest.raises(NotFoundError):
        manager.switch(manager.load_registry(), "ghost")


def test_require_rejects_unknown_profile(manager: ProfileStateManager) -> None:
    """require() raises NotFoundError without touching any file."""
    registry = _with_profiles(manager, "work")

    manager.require(registry, "work")
    with pytest.raises(NotFoundError):
        manager.require(registry, "ghost")
    assert not manager.snapshot_path("ghost").exists()


def test_store_snapshot_refreshes_server_count(manager: ProfileStateManager) -> None:
    """Writing a snapshot updates the persisted server count."""
    registry = _with_profiles(manager, "work")

    updated = manager.store_snapshot(registry, "work", _config("a", "b"))

    assert updated.profiles["work"].server_count == 2
    assert manager.load_registry().profiles["work"].server_count == 2
    assert set(manager.load_snapshot("work").servers) == {"a", "b"}
    with pytest.raises(NotFoundError):
        manager.store_snapshot(updated, "ghost", _config("a"))


def test_sync_dry_run_reports_difference(
    manager: ProfileStateManager, store: ConfigStore
) -> None:
    """Source {a, b} into target {b, c}: a added, b overwritten, c removed."""
    registry = _with_profiles(manager, "src", "dst")
    store.save(_config("a", "b"))
    registry = manager.save(registry, "src")
    store.save(_config("b", "c"))
    registry = manager.save(registry, "dst")

    unchanged, plan = manager.sync(registry, "src", "dst", dry_run=True)

    assert unchanged == registry
    assert plan.applied is False
    assert plan.to_dict() == {
        "source": "src",
        "target": "dst",
        "applied": False,
        "added": ["a"],
        "overwritten": ["b"],
        "removed": ["c"],
    }
    assert manager.load_snapshot("dst") == _config("b", "c")

    updated, plan = manager.sync(registry, "src", "dst")

    assert plan.applied is True
    assert manager.load_snapshot("dst") == _config("a", "b")
    assert updated.profiles["dst"].server_count == 2


def test_sync_from_canonical_document(
    manager: ProfileStateManager, store: ConfigStore
) -> None:
    registry = _with_profiles(manager, "work")
    store.save(_config("live"))

    updated, _ = manager.sync(registry, "default", "work")

    assert manager.load_snapshot("work") == _config("live")
    assert updated.profiles["work"].server_count == 1


def test_sync_rejects_same_or_unknown_profiles(manager: ProfileStateManager) -> None:
    registry = _with_profiles(manager, "work")

    with pytest.raises(ValidationError):
        manager.sync(registry, "work", "work")
    with pytest.raises(NotFoundError):
        manager.sync(registry, "ghost", "work")
    with pytest.raises(NotFoundError):
        manager.sync(registry, "work", "ghost")


def test_delete_requires_confirmation(manager: ProfileStateManager) -> None:
    registry = _with_profiles(manager, "work")

    with pytest.raises(ValidationError):
        manager.delete(registry, "work")

    updated = manager.delete(registry, "work", confirmed=True)

    assert "work" not in updated.profiles
    assert not manager.snapshot_path("work").exists()


def test_delete_current_profile_requires_force(
    manager: ProfileStateManager, store: ConfigStore
) -> None:
    """Deleting the active profile needs force and leaves the canonical file alone."""
    registry = _with_profiles(manager, "work")
    store.save(_config("a"))
    registry = manager.save(registry, "work")
    registry = manager.switch(registry, "work").registry

    with pytest.raises(ValidationError):
        manager.delete(registry, "work", confirmed=True)

    updated = manager.delete(registry, "work", force=True)

    assert updated.current_profile is None
    assert manager.load_registry().profiles == {}
    assert store.load() == _config("a")
