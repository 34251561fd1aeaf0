"""Pytest configuration helpers for the test suite."""

from __future__ import annotations

import os
from pathlib import Path

import pytest

from mcpforge.paths import HostInfo
from mcpforge.store import ConfigStore
from mcpforge.templates import TemplateEngine


def pytest_collection_modifyitems(config: pytest.Config, items: list[pytest.Item]) -> None:
    """Skip expensive tests during mutation runs."""
    if not os.environ.get("MUTANT_UNDER_TEST"):
        return
    skip_marker = pytest.mark.skip(reason="Skipped during mutation run to avoid timeouts.")
    for item in items:
        if "mutation_timeout" in item.keywords:
            item.add_marker(skip_marker)


@pytest.fixture
def host() -> HostInfo:
    """Deterministic host helpers for template rendering."""
    return HostInfo(
        os="linux",
        arch="x64",
        home_dir="/home/tester",
        config_dir="/home/tester/.config/claude",
    )


@pytest.fixture
def engine(host: HostInfo) -> TemplateEngine:
    return TemplateEngine(host)


@pytest.fixture
def store(tmp_path: Path) -> ConfigStore:
    """A canonical configuration store rooted in the test's temp directory."""
    return ConfigStore(tmp_path / "client" / "claude_desktop_config.json")


@pytest.fixture
def cli_env(tmp_path: Path) -> dict[str, str]:
    """Environment pointing every mcp-forge path at the temp directory."""
    return {
        "MCPFORGE_SETTINGS_FILE": str(tmp_path / "settings.yml"),
        "MCPFORGE_CONFIG_FILE": str(tmp_path / "client" / "claude_desktop_config.json"),
        "MCPFORGE_STATE_DIR": str(tmp_path / "profiles"),
        "MCPFORGE_BACKUPS_DIR": str(tmp_path / "backups"),
        "MCPFORGE_CACHE_DIR": str(tmp_path / "cache"),
        "MCPFORGE_LOGS_DIR": str(tmp_path / "logs"),
        "MCPFORGE_TEMPLATES_DIR": str(tmp_path / "templates"),
        "MCPFORGE_TEMPLATES__OFFLINE": "true",
    }
