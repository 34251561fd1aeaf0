"""mcpforge: templated MCP server entries, backups and switchable profiles.

Only the version lives here; the command line entry point is
:func:`mcpforge.cli.main`.
"""
from __future__ import annotations

__all__ = ["__version__"]

# NOTE: Hatch reads the package version from this assignment.
__version__ = "0.1.0"
