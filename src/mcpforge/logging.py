"""Structured operation logging.

Every CLI command runs inside :meth:`StructuredLogger.operation`, which
appends one JSON line to ``operations.jsonl`` describing what was requested,
the steps taken and the result. Logging is best effort: when the log
directory cannot be created or written the logger disables itself and
commands carry on.
"""
from __future__ import annotations

import getpass
import json
import time
from collections.abc import Iterable, Iterator, Mapping
from contextlib import contextmanager
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any

from .models import format_timestamp, utc_now

OPERATIONS_LOG = "operations.jsonl"


def _sanitise(value: object) -> Any:
    if value is None or isinstance(value, (bool, int, float, str)):
        return value
    if isinstance(value, Path):
        return str(value)
    if isinstance(value, Mapping):
        return {str(key): _sanitise(item) for key, item in value.items()}
    if isinstance(value, (list, tuple)):
        return [_sanitise(item) for item in value]
    return str(value)


def _actor() -> str:
    try:
        return getpass.getuser()
    except (KeyError, OSError):
        return "unknown"


@dataclass(slots=True)
class OperationScope:
    """Collects the outcome of a single logged operation."""

    name: str
    args: dict[str, Any]
    target: dict[str, Any]
    actor: str = field(default_factory=_actor)
    steps: list[dict[str, Any]] = field(default_factory=list)
    result: dict[str, Any] | None = None

    def add_step(self, name: str, *, status: str = "ok", detail: object = None) -> None:
        step: dict[str, Any] = {"name": name, "status": status}
        if detail is not None:
            step["detail"] = _sanitise(detail)
        self.steps.append(step)

    def success(
        self,
        message: str,
        *,
        changed: int = 0,
        backups: Iterable[str] | None = None,
        context: Mapping[str, object] | None = None,
    ) -> None:
        self._record("success", message, changed=changed, backups=backups, context=context)

    def warning(
        self,
        message: str,
        *,
        warnings: Iterable[str] | None = None,
        errors: Iterable[str] | None = None,
        changed: int = 0,
        backups: Iterable[str] | None = None,
        context: Mapping[str, object] | None = None,
    ) -> None:
        self._record(
            "warning",
            message,
            warnings=warnings if warnings is not None else [message],
            errors=errors,
            changed=changed,
            backups=backups,
            context=context,
        )

    def error(
        self,
        message: str,
        *,
        errors: Iterable[str] | None = None,
        rc: int = 1,
        context: Mapping[str, object] | None = None,
    ) -> None:
        self._record(
            "error",
            message,
            errors=errors if errors is not None else [message],
            rc=rc,
            context=context,
        )

    def _record(
        self,
        status: str,
        message: str,
        *,
        warnings: Iterable[str] | None = None,
        errors: Iterable[str] | None = None,
        changed: int = 0,
        backups: Iterable[str] | None = None,
        rc: int = 0,
        context: Mapping[str, object] | None = None,
    ) -> None:
        self.result = {
            "status": status,
            "message": message,
            "changed": changed,
            "warnings": [str(item) for item in warnings or ()],
            "errors": [str(item) for item in errors or ()],
            "backups": [str(item) for item in backups or ()],
            "rc": rc,
            "context": _sanitise(dict(context or {})),
        }


class StructuredLogger:
    """Append-only JSON lines log of CLI operations."""

    def __init__(self, log_dir: Path) -> None:
        self._log_dir = log_dir.expanduser()
        self._operations_log_path = self._log_dir / OPERATIONS_LOG
        self._enabled = True
        try:
            self._log_dir.mkdir(parents=True, exist_ok=True)
        except OSError:
            self._enabled = False

    @property
    def path(self) -> Path:
        return self._operations_log_path

    @contextmanager
    def operation(
        self,
        name: str,
        *,
        args: Mapping[str, object] | None = None,
        target: Mapping[str, object] | None = None,
    ) -> Iterator[OperationScope]:
        """Run a block as a logged operation.

        An exception escaping the block is recorded as an error and re-raised.
        """
        scope = OperationScope(
            name=name,
            args=_sanitise(dict(args or {})),
            target=_sanitise(dict(target or {})),
        )
        started = time.monotonic()
        timestamp = utc_now()
        try:
            yield scope
        except BaseException as exc:
            if scope.result is None:
                code = getattr(exc, "exit_code", None)
                if code == 0:
                    scope.success("Completed.")
                else:
                    scope.error(str(exc) or type(exc).__name__, rc=code or 1)
            raise
        finally:
            if scope.result is None:
                scope.success("Completed.")
            self._write(
                {
                    "timestamp": format_timestamp(timestamp),
                    "operation": scope.name,
                    "args": scope.args,
                    "target": scope.target,
                    "actor": scope.actor,
                    "duration_ms": int((time.monotonic() - started) * 1000),
                    "steps": scope.steps,
                    "result": scope.result,
                }
            )

    def _write(self, record: Mapping[str, object]) -> None:
        if not self._enabled:
            return
        try:
            with self._operations_log_path.open("a", encoding="utf-8") as handle:
                handle.write(json.dumps(record, sort_keys=False) + "\n")
        except OSError:
            self._enabled = False


__all__ = ["OperationScope", "StructuredLogger"]
