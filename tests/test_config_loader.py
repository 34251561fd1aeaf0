"""Settings loader tests."""
from __future__ import annotations

from pathlib import Path

import pytest

from mcpforge.config import AppConfig, ConfigError, load_config
from mcpforge.errors import ValidationError
from mcpforge.paths import CONFIG_FILENAME, client_config_dir


def test_load_config_defaults_when_file_missing(tmp_path: Path) -> None:
    """Defaults apply when no settings file is present."""
    settings = tmp_path / "settings.yml"

    config = load_config(config_file=settings, env={})

    assert isinstance(config, AppConfig)
    assert config.settings_file == settings
    assert config.config_file == client_config_dir() / CONFIG_FILENAME
    assert config.state_dir == client_config_dir() / "profiles"
    assert config.backups_dir == client_config_dir() / "backups"
    assert config.templates_dir == tmp_path / "templates"
    assert config.server_key == "mcpServers"
    assert config.templates.owner == "mcp-forge"
    assert config.templates.cache_ttl_days == 30
    assert config.templates.offline is False
    assert config.backups.auto_backup is True
    assert config.backups.default_retention == "30d"


def test_load_config_reads_yaml_file(tmp_path: Path) -> None:
    """Values are loaded from the YAML settings file."""
    settings = tmp_path / "settings.yml"
    settings.write_text(
        "config_file: {client}\n"
        "server_key: servers\n"
        "templates:\n"
        "  owner: acme\n"
        "  branch: develop\n"
        "  api_url: https://github.example/api/\n"
        "  cache_ttl_days: 7\n"
        "backups:\n"
        "  auto_backup: false\n"
        "  default_retention: 2w\n".format(client=tmp_path / "client.json"),
        encoding="utf-8",
    )

    config = load_config(config_file=settings, env={})

    assert config.config_file == tmp_path / "client.json"
    assert config.server_key == "servers"
    assert config.templates.owner == "acme"
    assert config.templates.repo == "templates"
    assert config.templates.branch == "develop"
    assert config.templates.api_url == "https://github.example/api"
    assert config.templates.cache_ttl_days == 7
    assert config.backups.auto_backup is False
    assert config.backups.default_retention == "2w"


def test_env_overrides_take_precedence(tmp_path: Path) -> None:
    """Environment variables override defaults and file settings."""
    settings = tmp_path / "custom.yml"
    settings.write_text("templates:\n  branch: develop\n", encoding="utf-8")
    env = {
        "MCPFORGE_SETTINGS_FILE": str(settings),
        "MCPFORGE_TEMPLATES__BRANCH": "release",
        "MCPFORGE_TEMPLATES__OFFLINE": "true",
        "MCPFORGE_TEMPLATES__TIMEOUT": "2.5",
        "MCPFORGE_BACKUPS__AUTO_BACKUP": "false",
        "MCPFORGE_STATE_DIR": str(tmp_path / "state"),
        "UNRELATED": "ignored",
    }

    config = load_config(env=env)

    assert config.settings_file == settings
    assert config.templates.branch == "release"
    assert config.templates.offline is True
    assert config.templates.timeout == 2.5
    assert config.backups.auto_backup is False
    assert config.state_dir == tmp_path / "state"


def test_explicit_overrides_win(tmp_path: Path) -> None:
    config = load_config(
        config_file=tmp_path / "settings.yml",
        env={"MCPFORGE_TEMPLATES__OFFLINE": "false"},
        overrides={"templates": {"offline": True}},
    )

    assert config.templates.offline is True


def test_to_dict_is_serialisable(tmp_path: Path) -> None:
    config = load_config(config_file=tmp_path / "settings.yml", env={})

    data = config.to_dict()

    assert data["settings_file"] == str(tmp_path / "settings.yml")
    assert data["templates"]["owner"] == "mcp-forge"
    assert data["backups"] == {"auto_backup": True, "default_retention": "30d"}


@pytest.mark.parametrize(
    "content",
    [
        "unknown_key: 1\n",
        "templates:\n  colour: blue\n",
        "backups:\n  keep_forever: true\n",
        "templates:\n  cache_ttl_days: 0\n",
        "templates:\n  timeout: -1\n",
        "templates:\n  owner: ''\n",
        "backups:\n  auto_backup: maybe\n",
        "backups:\n  default_retention: forever\n",
        "server_key: ''\n",
        "- just\n- a list\n",
        "templates: [unclosed\n",
    ],
)
def test_invalid_settings_rejected(tmp_path: Path, content: str) -> None:
    settings = tmp_path / "settings.yml"
    settings.write_text(content, encoding="utf-8")

    with pytest.raises(ConfigError):
        load_config(config_file=settings, env={})


def test_config_error_is_a_validation_error() -> None:
    assert issubclass(ConfigError, ValidationError)
