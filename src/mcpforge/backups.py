"""Helpers for creating, listing, restoring and pruning configuration backups."""
from __future__ import annotations

import logging
import re
import subprocess
from collections.abc import Callable
from dataclasses import dataclass, field
from datetime import datetime, timedelta
from pathlib import Path

from .errors import ForgeError, NotFoundError, StorageError, ValidationError
from .models import BackupMetadata, BackupRecord, Configuration, utc_now
from .state.registry import JsonDocumentStore, read_json, write_json
from .store import ConfigStore, upsert_server

LOGGER = logging.getLogger(__name__)

_UNSAFE_FILENAME_CHARS = re.compile(r'[/\\:*?"<>|]')
_DURATION = re.compile(r"(\d+)([dwhm]?)")
_DURATION_UNITS = {
    "d": "days",
    "w": "weeks",
    "h": "hours",
    "m": "minutes",
    "": "days",
}

STATUS_NEW = "NEW"
STATUS_OVERWRITE = "OVERWRITE"
STATUS_KEEP = "KEEP"
STATUS_REMOVE = "REMOVE"


def sanitize_filename(name: str) -> str:
    """Replace characters that are unsafe in filenames with ``_``."""
    return _UNSAFE_FILENAME_CHARS.sub("_", name.strip())


def parse_duration(text: str) -> timedelta:
    """Parse ``30d``, ``2w``, ``24h``, ``60m`` or a bare day count."""
    value = text.strip().lower()
    match = _DURATION.fullmatch(value)
    if not match:
        raise ValidationError(
            f"Invalid duration '{text}'. Use a number with an optional d, w, h or m suffix."
        )
    amount, unit = match.groups()
    try:
        return timedelta(**{_DURATION_UNITS[unit]: int(amount)})
    except OverflowError:
        raise ValidationError(f"Duration '{text}' is out of range.") from None


def _run_git(args: list[str], cwd: Path | None) -> str | None:
    try:
        result = subprocess.run(
            ["git", *args],
            cwd=str(cwd) if cwd else None,
            capture_output=True,
            text=True,
            check=False,
            timeout=5,
        )
    except (OSError, subprocess.SubprocessError):
        return None
    if result.returncode != 0:
        return None
    output = result.stdout.strip()
    return output or None


def git_info(cwd: Path | None = None) -> tuple[str | None, str | None]:
    """Return the current git branch and short commit, when available."""
    branch = _run_git(["branch", "--show-current"], cwd)
    commit = _run_git(["rev-parse", "--short", "HEAD"], cwd)
    return branch, commit


@dataclass(slots=True)
class CleanResult:
    """Outcome of a cleanup run."""

    candidates: list[BackupRecord] = field(default_factory=list)
    deleted: list[str] = field(default_factory=list)
    failures: list[tuple[str, str]] = field(default_factory=list)

    @property
    def count(self) -> int:
        return len(self.deleted)


class BackupManager:
    """Manage backup files in a single directory."""

    def __init__(
        self,
        root: Path,
        store: ConfigStore,
        *,
        vcs_probe: Callable[[], tuple[str | None, str | None]] | None = None,
        clock: Callable[[], datetime] = utc_now,
    ) -> None:
        self.root = root.expanduser()
        self.store = store
        self._documents = JsonDocumentStore(self.root)
        self._vcs_probe = vcs_probe or git_info
        self._clock = clock

    # ------------------------------------------------------------------
    # Creation
    # ------------------------------------------------------------------
    def create(
        self,
        config: Configuration,
        name: str | None = None,
        *,
        description: str | None = None,
        prefix: str | None = None,
    ) -> Path:
        """Write *config* as a new backup and return the file path.

        Without *name* a ``YYYYMMDD_HHMMSS`` timestamp (optionally prefixed)
        is used, with a numeric suffix when that name is already taken.
        """
        created_at = self._clock()
        if name is not None and name.strip():
            backup_name = sanitize_filename(name)
            if self._documents.exists(f"{backup_name}.json"):
                raise ValidationError(f"Backup '{backup_name}' already exists.")
        else:
            stamp = created_at.strftime("%Y%m%d_%H%M%S")
            base = f"{prefix}_{stamp}" if prefix else stamp
            backup_name = base
            counter = 1
            while self._documents.exists(f"{backup_name}.json"):
                backup_name = f"{base}_{counter}"
                counter += 1

        branch, commit = self._vcs_probe()
        record = BackupRecord(
            metadata=BackupMetadata(
                name=backup_name,
                created_at=created_at,
                servers_count=len(config.servers),
                description=description,
                vcs_branch=branch,
                vcs_commit=commit,
            ),
            config=config,
        )
        path = self._documents.path_for(f"{backup_name}.json")
        write_json(path, record.to_dict(server_key=self.store.server_key))
        LOGGER.debug("Created backup %s", path)
        return path

    def create_from_current(
        self, name: str | None = None, *, description: str | None = None, prefix: str | None = None
    ) -> Path:
        return self.create(self.store.load(), name, description=description, prefix=prefix)

    # ------------------------------------------------------------------
    # Lookup
    # ------------------------------------------------------------------
    def list_backups(self) -> list[BackupRecord]:
        """Return every readable backup, newest first.

        Unparsable backups are skipped.
        """
        records: list[BackupRecord] = []
        for path in self._documents.list_documents():
            try:
                records.append(self._read(path))
            except ForgeError as exc:
                LOGGER.debug("Skipping unreadable backup %s: %s", path, exc)
        records.sort(key=lambda record: (record.metadata.created_at, record.name), reverse=True)
        return records

    def find(self, query: str) -> BackupRecord | None:
        """Locate a backup by exact name, then by substring.

        Several substring matches resolve to the lexicographically smallest
        file name.
        """
        needle = query.strip()
        if not needle:
            raise ValidationError("Backup name must be a non-empty string.")
        records = sorted(self.list_backups(), key=lambda record: self._filename(record))
        for record in records:
            if record.name == needle or self._filename(record) == f"{needle}.json":
                return record
        for record in records:
            if needle in record.name:
                return record
        return None

    def load(self, query: str) -> BackupRecord:
        record = self.find(query)
        if record is None:
            raise NotFoundError("backup", query)
        return record

    # ------------------------------------------------------------------
    # Restore
    # ------------------------------------------------------------------
    def preview_restore(
        self,
        current: Configuration,
        record: BackupRecord,
        server: str | None = None,
    ) -> list[tuple[str, str]]:
        """Describe what a restore would do to each server name."""
        if server is not None:
            if server not in record.config.servers:
                raise NotFoundError("server", server)
            plan = [(server, STATUS_OVERWRITE if server in current.servers else STATUS_NEW)]
            plan.extend((name, STATUS_KEEP) for name in sorted(current.servers) if name != server)
            return plan

        plan = [
            (name, STATUS_OVERWRITE if name in current.servers else STATUS_NEW)
            for name in sorted(record.config.servers)
        ]
        plan.extend(
            (name, STATUS_REMOVE)
            for name in sorted(current.servers)
            if name not in record.config.servers
        )
        return plan

    def restore(self, record: BackupRecord, server: str | None = None) -> Configuration:
        """Write the backup (or one server from it) into the canonical document."""
        if server is None:
            restored = record.config
        else:
            entry = record.config.servers.get(server)
            if entry is None:
                raise NotFoundError("server", server)
            restored = upsert_server(self.store.load(), server, entry)
        self.store.save(restored)
        return restored

    # ------------------------------------------------------------------
    # Cleanup
    # ------------------------------------------------------------------
    def older_than(self, age: str | timedelta, now: datetime | None = None) -> list[BackupRecord]:
        delta = parse_duration(age) if isinstance(age, str) else age
        try:
            cutoff = (now or self._clock()) - delta
        except OverflowError:
            raise ValidationError(f"Duration '{age}' reaches before the earliest date.") from None
        return [record for record in self.list_backups() if record.metadata.created_at < cutoff]

    def clean(
        self,
        older_than: str | timedelta,
        confirmed: bool,
        *,
        now: datetime | None = None,
    ) -> CleanResult:
        """Delete backups created before ``now - older_than``.

        Nothing is deleted unless *confirmed*. A failure to delete one file
        is recorded and the remaining files are still processed.
        """
        result = CleanResult(candidates=self.older_than(older_than, now))
        if not confirmed:
            return result
        for record in result.candidates:
            try:
                self.delete(record)
            except StorageError as exc:
                LOGGER.warning("Failed to delete backup %s: %s", record.name, exc)
                result.failures.append((record.name, str(exc)))
                continue
            result.deleted.append(record.name)
        return result

    def delete(self, record: BackupRecord) -> None:
        path = record.path or self._documents.path_for(self._filename(record))
        try:
            path.unlink()
        except FileNotFoundError:
            raise NotFoundError("backup", record.name) from None
        except OSError as exc:
            raise StorageError(f"Failed to delete {path}: {exc}") from exc

    # ------------------------------------------------------------------
    def _read(self, path: Path) -> BackupRecord:
        return BackupRecord.from_dict(read_json(path), server_key=self.store.server_key, path=path)

    @staticmethod
    def _filename(record: BackupRecord) -> str:
        return record.path.name if record.path else f"{record.name}.json"


__all__ = [
    "BackupManager",
    "CleanResult",
    "STATUS_KEEP",
    "STATUS_NEW",
    "STATUS_OVERWRITE",
    "STATUS_REMOVE",
    "git_info",
    "parse_duration",
    "sanitize_filename",
]
