"""Named, switchable profiles of the canonical configuration.

Each profile owns a snapshot document (``profile_<name>.json``) stored next to
the registry file (``profiles.json``). The canonical document is only touched
by :meth:`ProfileStateManager.switch`; every other operation works on the
snapshots.

Operations take the current :class:`ProfileRegistry` and return the updated
one. Snapshot files are written first and the registry is persisted as the
final step of every mutating call.
"""
from __future__ import annotations

import logging
import re
from collections.abc import Callable
from dataclasses import dataclass, replace
from datetime import datetime
from pathlib import Path

from .errors import NotFoundError, ValidationError
from .models import Configuration, ProfileInfo, ProfileRegistry, ServerDiff, utc_now
from .state.registry import JsonDocumentStore
from .store import ConfigStore, configurations_equal, diff_servers

LOGGER = logging.getLogger(__name__)

REGISTRY_FILE = "profiles.json"
DEFAULT_SOURCE = "default"
MAX_NAME_LENGTH = 50
RESERVED_NAMES = frozenset({"default", "main", "config", "global"})
_NAME_PATTERN = re.compile(r"[A-Za-z0-9_-]+")

SaveDecision = bool | Callable[[str], bool]


def validate_profile_name(name: str) -> str:
    """Return *name* if it is an acceptable profile name."""
    if not name or not name.strip():
        raise ValidationError("Profile name cannot be empty.")
    if len(name) > MAX_NAME_LENGTH:
        raise ValidationError(
            f"Profile name '{name}' is too long (max {MAX_NAME_LENGTH} characters)."
        )
    if not _NAME_PATTERN.fullmatch(name):
        raise ValidationError(
            f"Profile name '{name}' may only contain letters, digits, hyphens and underscores."
        )
    if name.lower() in RESERVED_NAMES:
        raise ValidationError(f"Profile name '{name}' is reserved.")
    return name


@dataclass(frozen=True)
class SwitchResult:
    """Outcome of a profile switch."""

    registry: ProfileRegistry
    previous: str | None
    had_unsaved_changes: bool
    saved_previous: bool


@dataclass(frozen=True)
class SyncPlan:
    """Servers affected when *source* replaces the snapshot of *target*."""

    source: str
    target: str
    diff: ServerDiff
    applied: bool

    def to_dict(self) -> dict[str, object]:
        return {
            "source": self.source,
            "target": self.target,
            "applied": self.applied,
            **self.diff.to_dict(),
        }


class ProfileStateManager:
    """Create, switch, save, sync and delete profiles."""

    def __init__(
        self,
        state_dir: Path,
        store: ConfigStore,
        *,
        clock: Callable[[], datetime] = utc_now,
    ) -> None:
        self.state_dir = state_dir.expanduser()
        self.store = store
        self._documents = JsonDocumentStore(self.state_dir)
        self._clock = clock

    # ------------------------------------------------------------------
    # Registry and snapshot persistence
    # ------------------------------------------------------------------
    def load_registry(self) -> ProfileRegistry:
        data = self._documents.read(REGISTRY_FILE)
        if data is None:
            return ProfileRegistry()
        return ProfileRegistry.from_dict(data)

    def save_registry(self, registry: ProfileRegistry) -> None:
        self._documents.write(REGISTRY_FILE, registry.to_dict())

    def snapshot_path(self, name: str) -> Path:
        return self._documents.path_for(f"profile_{name}.json")

    def load_snapshot(self, name: str) -> Configuration:
        return self.store.load_snapshot(self.snapshot_path(name))

    def _write_snapshot(self, name: str, config: Configuration) -> None:
        self.store.save_snapshot(self.snapshot_path(name), config)

    # ------------------------------------------------------------------
    # Queries
    # ------------------------------------------------------------------
    def list_profiles(self, registry: ProfileRegistry) -> list[ProfileInfo]:
        return [registry.profiles[name] for name in sorted(registry.profiles)]

    def current(self, registry: ProfileRegistry) -> ProfileInfo | None:
        if registry.current_profile is None:
            return None
        return registry.profiles[registry.current_profile]

    def has_unsaved_changes(self, registry: ProfileRegistry) -> bool:
        """Compare the canonical document with the current profile's snapshot."""
        if registry.current_profile is None:
            return False
        canonical = self.store.load()
        snapshot = self.load_snapshot(registry.current_profile)
        return not configurations_equal(canonical, snapshot)

    # ------------------------------------------------------------------
    # Mutations
    # ------------------------------------------------------------------
    def create(
        self,
        registry: ProfileRegistry,
        name: str,
        description: str | None = None,
    ) -> ProfileRegistry:
        """Register a new profile with an empty snapshot."""
        validate_profile_name(name)
        if name in registry.profiles:
            raise ValidationError(f"Profile '{name}' already exists.")

        self._write_snapshot(name, Configuration())
        info = ProfileInfo(
            name=name,
            created_at=self._clock(),
            description=description,
            server_count=0,
        )
        updated = registry.with_profile(info)
        self.save_registry(updated)
        return updated

    def switch(
        self,
        registry: ProfileRegistry,
        name: str,
        *,
        save_current: SaveDecision = False,
    ) -> SwitchResult:
        """Make *name* the active profile.

        When the canonical document differs from the current profile's
        snapshot, *save_current* decides whether that difference is saved to
        the current profile first; it may be a flag or a callback receiving
        the current profile's name. Declining discards the difference.
        """
        self.require(registry, name)
        previous = registry.current_profile
        unsaved = self.has_unsaved_changes(registry)
        saved = False

        if unsaved and previous is not None:
            decide = save_current(previous) if callable(save_current) else save_current
            if decide:
                registry = self._capture_canonical(registry, previous)
                saved = True
            else:
                LOGGER.info("Discarding unsaved changes to profile '%s'.", previous)

        target = self.load_snapshot(name)
        self.store.save(target)

        info = replace(
            registry.profiles[name],
            last_used=self._clock(),
            server_count=len(target.servers),
        )
        updated = registry.with_profile(info).with_current(name)
        self.save_registry(updated)
        return SwitchResult(
            registry=updated,
            previous=previous,
            had_unsaved_changes=unsaved,
            saved_previous=saved,
        )

    def save(self, registry: ProfileRegistry, name: str | None = None) -> ProfileRegistry:
        """Persist the canonical document as the snapshot of *name* (or the current profile)."""
        target = name if name is not None else registry.current_profile
        if target is None:
            raise ValidationError("No profile is active; specify which profile to save.")
        self.require(registry, target)
        updated = self._capture_canonical(registry, target)
        self.save_registry(updated)
        return updated

    def store_snapshot(
        self, registry: ProfileRegistry, name: str, config: Configuration
    ) -> ProfileRegistry:
        """Replace *name*'s snapshot with *config* and refresh its server count."""
        self.require(registry, name)
        self._write_snapshot(name, config)
        info = replace(registry.profiles[name], server_count=len(config.servers))
        updated = registry.with_profile(info)
        self.save_registry(updated)
        return updated

    def sync(
        self,
        registry: ProfileRegistry,
        source: str,
        target: str,
        *,
        dry_run: bool = False,
    ) -> tuple[ProfileRegistry, SyncPlan]:
        """Replace *target*'s snapshot with *source*.

        *source* may be ``default``, meaning the canonical document. In
        dry-run mode only the three-way difference is computed.
        """
        if source != DEFAULT_SOURCE:
            self.require(registry, source)
        self.require(registry, target)
        if source == target:
            raise ValidationError("Source and target profiles must differ.")

        source_config = self.store.load() if source == DEFAULT_SOURCE else self.load_snapshot(source)
        target_config = self.load_snapshot(target)
        diff = diff_servers(source_config, target_config)

        if dry_run:
            return registry, SyncPlan(source=source, target=target, diff=diff, applied=False)

        updated = self.store_snapshot(registry, target, source_config)
        return updated, SyncPlan(source=source, target=target, diff=diff, applied=True)

    def delete(
        self,
        registry: ProfileRegistry,
        name: str,
        *,
        force: bool = False,
        confirmed: bool = False,
    ) -> ProfileRegistry:
        """Remove a profile and its snapshot; the canonical document is untouched."""
        self.require(registry, name)
        if registry.current_profile == name and not force:
            raise ValidationError(
                f"Profile '{name}' is the current profile; use force to delete it."
            )
        if not force and not confirmed:
            raise ValidationError(f"Deleting profile '{name}' requires confirmation.")

        self._documents.delete(self.snapshot_path(name).name)
        updated = registry.without_profile(name)
        self.save_registry(updated)
        return updated

    # ------------------------------------------------------------------
    def require(self, registry: ProfileRegistry, name: str) -> None:
        """Raise :class:`NotFoundError` unless *name* is a registered profile."""
        if name not in registry.profiles:
            raise NotFoundError("profile", name)

    def _capture_canonical(self, registry: ProfileRegistry, name: str) -> ProfileRegistry:
        canonical = self.store.load()
        self._write_snapshot(name, canonical)
        info = replace(
            registry.profiles[name],
            last_used=self._clock(),
            server_count=len(canonical.servers),
        )
        return registry.with_profile(info)


__all__ = [
    "DEFAULT_SOURCE",
    "MAX_NAME_LENGTH",
    "ProfileStateManager",
    "RESERVED_NAMES",
    "SwitchResult",
    "SyncPlan",
    "validate_profile_name",
]
