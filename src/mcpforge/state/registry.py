"""Atomic JSON document storage.

The canonical configuration, profile registry, profile snapshots, backups
and the template cache are all single JSON files. This module reads and
writes them with a tempfile + ``os.replace`` sequence so a crash mid-write
never leaves a truncated document behind.
"""
from __future__ import annotations

import json
import os
import tempfile
from collections.abc import Mapping
from copy import deepcopy
from dataclasses import dataclass
from pathlib import Path

from ..errors import ParseError, StorageError


@dataclass(frozen=True)
class JsonDocumentStore:
    """Read and write JSON documents below *root*."""

    root: Path
    mode: int | None = None

    def __post_init__(self) -> None:
        """Normalise the root path after initialisation."""
        object.__setattr__(self, "root", self.root.expanduser())

    def ensure_root(self) -> None:
        """Create the store directory if it does not yet exist."""
        try:
            self.root.mkdir(parents=True, exist_ok=True)
        except OSError as exc:
            raise StorageError(f"Failed to create directory {self.root}: {exc}") from exc

    def path_for(self, name: str) -> Path:
        """Return the filesystem path for a named document."""
        return self.root / name

    def exists(self, name: str) -> bool:
        return self.path_for(name).exists()

    def read(self, name: str, *, default: object | None = None) -> object | None:
        """Read a document, returning *default* when the file is absent.

        A file that exists but cannot be parsed raises :class:`ParseError`.
        """
        return read_json(self.path_for(name), default=default)

    def write(self, name: str, payload: Mapping[str, object]) -> Path:
        """Atomically write *payload* to the named document."""
        path = self.path_for(name)
        write_json(path, payload, mode=self.mode)
        return path

    def delete(self, name: str) -> bool:
        """Remove the named document, returning ``False`` when it was absent."""
        path = self.path_for(name)
        try:
            path.unlink()
        except FileNotFoundError:
            return False
        except OSError as exc:
            raise StorageError(f"Failed to delete {path}: {exc}") from exc
        return True

    def list_documents(self, pattern: str = "*.json") -> list[Path]:
        """Return document paths matching *pattern*, sorted by filename."""
        if not self.root.is_dir():
            return []
        return sorted(path for path in self.root.glob(pattern) if path.is_file())


def read_json(path: Path, *, default: object | None = None) -> object | None:
    """Parse the JSON document at *path* (``default`` when missing)."""
    try:
        text = path.read_text(encoding="utf-8")
    except FileNotFoundError:
        return deepcopy(default)
    except OSError as exc:
        raise StorageError(f"Failed to read {path}: {exc}") from exc
    try:
        return json.loads(text)
    except json.JSONDecodeError as exc:
        raise ParseError(f"Failed to parse {path}: {exc}") from exc


def write_json(path: Path, payload: Mapping[str, object], *, mode: int | None = None) -> None:
    """Atomically persist *payload* as pretty-printed JSON at *path*."""
    try:
        path.parent.mkdir(parents=True, exist_ok=True)
        tmp_fd, tmp_name = tempfile.mkstemp(dir=str(path.parent), prefix=f".{path.name}.")
    except OSError as exc:
        raise StorageError(f"Failed to prepare {path.parent}: {exc}") from exc
    tmp_path = Path(tmp_name)
    try:
        with os.fdopen(tmp_fd, "w", encoding="utf-8") as handle:
            json.dump(payload, handle, indent=2, ensure_ascii=False)
            handle.write("\n")
        os.replace(tmp_path, path)
        if mode is not None:
            os.chmod(path, mode)
    except OSError as exc:
        raise StorageError(f"Failed to write {path}: {exc}") from exc
    finally:
        tmp_path.unlink(missing_ok=True)


__all__ = ["JsonDocumentStore", "read_json", "write_json"]
