"""Error hierarchy shared by the mcpforge components.

Lower layers raise these exceptions; only the CLI translates them into exit
codes (see :func:`exit_code_for`).
"""
from __future__ import annotations

from .exit_codes import ExitCode


class ForgeError(RuntimeError):
    """Base class for every mcpforge failure."""


class NotFoundError(ForgeError):
    """Raised when a server, profile, template or backup does not exist."""

    def __init__(self, kind: str, identifier: str) -> None:
        self.kind = kind
        self.identifier = identifier
        super().__init__(f"{kind.capitalize()} '{identifier}' not found.")


class ValidationError(ForgeError):
    """Raised when user supplied input violates a contract."""


class VariableError(ValidationError):
    """Raised when a template variable value is missing or invalid."""

    def __init__(self, variable: str, message: str) -> None:
        self.variable = variable
        super().__init__(message)


class ParseError(ForgeError):
    """Raised when a persisted JSON document cannot be parsed."""


class StorageError(ForgeError):
    """Raised when filesystem or network I/O fails."""


class RenderError(ForgeError):
    """Raised when a template cannot be rendered into a server entry."""


def exit_code_for(exc: ForgeError) -> ExitCode:
    """Map an error instance to the CLI exit code it should produce."""
    if isinstance(exc, NotFoundError):
        return ExitCode.NOT_FOUND
    if isinstance(exc, StorageError):
        return ExitCode.ENVIRONMENT
    return ExitCode.VALIDATION


__all__ = [
    "ForgeError",
    "NotFoundError",
    "ParseError",
    "RenderError",
    "StorageError",
    "ValidationError",
    "VariableError",
    "exit_code_for",
]
