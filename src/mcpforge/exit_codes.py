"""Process exit codes returned by ``mcp-forge``."""
from __future__ import annotations

from enum import IntEnum


class ExitCode(IntEnum):
    """Exit codes shared by every command.

    ``errors.exit_code_for`` maps each error kind onto one of these.
    """

    OK = 0
    # validation, parse and render failures
    VALIDATION = 2
    # filesystem and network failures
    ENVIRONMENT = 3
    NOT_FOUND = 4
