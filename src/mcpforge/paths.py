"""Filesystem path resolution and host information helpers.

The canonical client configuration lives in an OS-specific directory owned
by the desktop client; everything mcpforge owns (cache, logs) is placed in
the directories suggested by :mod:`platformdirs`.
"""
from __future__ import annotations

import platform
import sys
from dataclasses import dataclass
from pathlib import Path

from platformdirs import user_cache_dir, user_config_dir, user_log_dir

APP_NAME = "mcp-forge"
CONFIG_FILENAME = "claude_desktop_config.json"
SETTINGS_FILENAME = "settings.yml"

OS_NAMES = ("windows", "macos", "linux", "unknown")
ARCH_NAMES = ("x64", "arm64", "unknown")


def detect_os(system: str | None = None) -> str:
    """Return the host operating system as one of :data:`OS_NAMES`."""
    value = (system if system is not None else sys.platform).lower()
    if value.startswith("win"):
        return "windows"
    if value == "darwin":
        return "macos"
    if value.startswith("linux"):
        return "linux"
    return "unknown"


def detect_arch(machine: str | None = None) -> str:
    """Return the host CPU architecture as one of :data:`ARCH_NAMES`."""
    value = (machine if machine is not None else platform.machine()).lower()
    if value in {"x86_64", "amd64", "x64"}:
        return "x64"
    if value in {"arm64", "aarch64"}:
        return "arm64"
    return "unknown"


def home_dir() -> Path:
    """Return the current user's home directory (``~`` when unresolvable)."""
    try:
        return Path.home()
    except RuntimeError:
        return Path("~")


def client_config_dir(os_name: str | None = None, home: Path | None = None) -> Path:
    """Return the directory holding the desktop client's configuration."""
    resolved_os = os_name or detect_os()
    base = home if home is not None else home_dir()
    if resolved_os == "macos":
        return base / "Library" / "Application Support" / "Claude"
    if resolved_os == "windows":
        return base / "AppData" / "Roaming" / "Claude"
    return base / ".config" / "claude"


def default_config_file() -> Path:
    """Return the default canonical configuration document path."""
    return client_config_dir() / CONFIG_FILENAME


def default_settings_file() -> Path:
    """Return the default location of mcpforge's own YAML settings."""
    return Path(user_config_dir(APP_NAME, appauthor=False)) / SETTINGS_FILENAME


def default_cache_dir() -> Path:
    return Path(user_cache_dir(APP_NAME, appauthor=False))


def default_logs_dir() -> Path:
    return Path(user_log_dir(APP_NAME, appauthor=False))


@dataclass(frozen=True)
class HostInfo:
    """Host facts exposed to templates as helper values."""

    os: str
    arch: str
    home_dir: str
    config_dir: str

    @classmethod
    def detect(cls) -> HostInfo:
        """Collect host information for the running interpreter."""
        os_name = detect_os()
        home = home_dir()
        return cls(
            os=os_name,
            arch=detect_arch(),
            home_dir=str(home),
            config_dir=str(client_config_dir(os_name, home)),
        )

    def as_context(self) -> dict[str, str]:
        """Return the helper mapping injected into template rendering."""
        return {
            "os": self.os,
            "arch": self.arch,
            "home_dir": self.home_dir,
            "config_dir": self.config_dir,
        }


HELPER_NAMES = frozenset({"os", "arch", "home_dir", "config_dir"})


__all__ = [
    "APP_NAME",
    "ARCH_NAMES",
    "CONFIG_FILENAME",
    "HELPER_NAMES",
    "HostInfo",
    "OS_NAMES",
    "client_config_dir",
    "default_cache_dir",
    "default_config_file",
    "default_logs_dir",
    "default_settings_file",
    "detect_arch",
    "detect_os",
    "home_dir",
]
