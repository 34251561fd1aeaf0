"""Tests for template validation, coercion and rendering."""
from __future__ import annotations

import pytest

from mcpforge.catalog import BuiltinTemplateSource
from mcpforge.errors import RenderError, ValidationError, VariableError
from mcpforge.models import CommandServer, Template, UrlServer
from mcpforge.templates import TemplateEngine, format_value, parse_assignments


def _template(config: dict[str, object], variables: dict[str, object] | None = None) -> Template:
    return Template.from_dict(
        {"name": "demo", "version": "1.0.0", "config": config, "variables": variables or {}}
    )


@pytest.fixture
def filesystem() -> Template:
    return BuiltinTemplateSource().fetch_template("filesystem")


def test_validate_reports_missing_required_variable(engine: TemplateEngine) -> None:
    """The first missing required variable is named in the error."""
    template = BuiltinTemplateSource().fetch_template("brave-search")

    with pytest.raises(VariableError) as excinfo:
        engine.validate(template, {})

    assert excinfo.value.variable == "api_key"


def test_validate_rejects_blank_required_string(engine: TemplateEngine) -> None:
    """A whitespace-only value does not satisfy a required string."""
    template = BuiltinTemplateSource().fetch_template("brave-search")

    with pytest.raises(VariableError):
        engine.validate(template, {"api_key": "   "})


def test_validate_accepts_non_empty_required_string(engine: TemplateEngine) -> None:
    """Surrounding whitespace is fine as long as some text remains."""
    template = BuiltinTemplateSource().fetch_template("brave-search")

    engine.validate(template, {"api_key": "  abc123 "})


def test_defaults_render_host_helpers(engine: TemplateEngine, filesystem: Template) -> None:
    values = engine.apply_defaults(filesystem, {})

    assert values["paths"] == ["/home/tester/Desktop", "/home/tester/Downloads"]
    assert values["readonly"] is False


def test_supplied_values_win_over_defaults(engine: TemplateEngine, filesystem: Template) -> None:
    values = engine.apply_defaults(filesystem, {"paths": ["/srv"]})

    assert values["paths"] == ["/srv"]


def test_for_loop_argument_expands_per_item(engine: TemplateEngine, filesystem: Template) -> None:
    """An argument that is only a loop becomes one argument per item."""
    entry = engine.render(filesystem, {"paths": ["/a", "/b"], "readonly": True})

    assert isinstance(entry, CommandServer)
    assert entry.command == "npx"
    assert entry.args == ("-y", "@modelcontextprotocol/server-filesystem", "/a", "/b")
    assert entry.env == {"READONLY": "true"}


def test_env_entry_with_blank_key_is_dropped(
    engine: TemplateEngine, filesystem: Template
) -> None:
    entry = engine.render(filesystem, {"paths": ["/a"], "readonly": False})

    assert entry.env is None
    assert "env" not in entry.to_dict()


def test_render_is_deterministic(engine: TemplateEngine, filesystem: Template) -> None:
    values = {"paths": ["/a", "/b"], "readonly": True}

    assert engine.render(filesystem, values) == engine.render(filesystem, values)


def test_render_url_variant(engine: TemplateEngine) -> None:
    template = BuiltinTemplateSource().fetch_template("remote-http")

    entry = engine.render(template, {"url": "https://example.test/mcp", "token": "s3cret"})

    assert entry == UrlServer(url="https://example.test/mcp", env={"AUTH_TOKEN": "s3cret"})


def test_render_url_variant_drops_empty_token(engine: TemplateEngine) -> None:
    template = BuiltinTemplateSource().fetch_template("remote-http")

    entry = engine.render(template, {"url": "https://example.test/mcp"})

    assert isinstance(entry, UrlServer)
    assert entry.env is None


def test_numbers_and_selects_render_as_text(engine: TemplateEngine) -> None:
    template = BuiltinTemplateSource().fetch_template("postgres")
    values = engine.apply_defaults(
        template, {"database": "app", "username": "me", "password": "pw"}
    )

    entry = engine.render(template, values)

    assert entry.env is not None
    assert entry.env["POSTGRES_PORT"] == "5432"
    assert entry.env["POSTGRES_HOST"] == "localhost"
    assert entry.env["POSTGRES_SSL_MODE"] == "prefer"


def test_conditional_argument_dropped_when_empty(engine: TemplateEngine) -> None:
    template = _template(
        {"command": "run", "args": ["{% if verbose %}--verbose{% endif %}", "serve"]},
        {"verbose": {"type": "boolean"}},
    )

    assert engine.render(template, {"verbose": False}).args == ("serve",)
    assert engine.render(template, {"verbose": True}).args == ("--verbose", "serve")


def test_host_helpers_available_in_body(engine: TemplateEngine) -> None:
    template = _template({"command": "{{ config_dir }}/bin/tool", "args": ["{{ os }}-{{ arch }}"]})

    entry = engine.render(template, {})

    assert entry.command == "/home/tester/.config/claude/bin/tool"
    assert entry.args == ("linux-x64",)


def test_undefined_placeholder_is_a_render_error(engine: TemplateEngine) -> None:
    """Undeclared placeholders fail instead of rendering as empty text."""
    template = _template({"command": "run", "args": ["{{ missing }}"]})

    with pytest.raises(RenderError, match="missing"):
        engine.render(template, {})
    with pytest.raises(ValidationError, match="missing"):
        engine.check_template(template)


@pytest.mark.parametrize(
    "source",
    [
        "{{ name | upper }}",
        "{{ name.attr }}",
        "{{ name() }}",
        "{% if name == 'x' %}yes{% endif %}",
        "{% for item in items if item %}{{ item }}{% endfor %}",
        "{% set other = name %}{{ other }}",
        "{{ 'literal' }}",
    ],
)
def test_disallowed_constructs_rejected(engine: TemplateEngine, source: str) -> None:
    template = _template(
        {"command": "run", "args": [source]},
        {"name": {"type": "string"}, "items": {"type": "array"}},
    )

    with pytest.raises(ValidationError):
        engine.check_template(template)
    with pytest.raises(RenderError):
        engine.render(template, {"name": "n", "items": ["a"]})


def test_check_template_rejects_both_command_and_url(engine: TemplateEngine) -> None:
    template = _template({"command": "run", "url": "https://example.test"})

    with pytest.raises(ValidationError):
        engine.check_template(template)
    with pytest.raises(RenderError):
        engine.render(template, {})


def test_body_without_command_or_url_is_rejected(engine: TemplateEngine) -> None:
    """A body with only args is neither a command nor a URL server."""
    template = _template({"args": ["--flag"], "env": {"KEY": "value"}})

    with pytest.raises(ValidationError, match="either 'command' or 'url'"):
        engine.check_template(template)
    with pytest.raises(RenderError):
        engine.render(template, {})


def test_check_template_rejects_defaults_referencing_variables(engine: TemplateEngine) -> None:
    template = _template(
        {"command": "run", "args": ["{{ a }}", "{{ b }}"]},
        {"a": {"type": "string"}, "b": {"type": "string", "default": "{{ a }}/x"}},
    )

    with pytest.raises(ValidationError, match="host helpers"):
        engine.check_template(template)


def test_builtin_templates_pass_checks(engine: TemplateEngine) -> None:
    source = BuiltinTemplateSource()

    for name in source.names():
        engine.check_template(source.fetch_template(name))


def test_coerce_values_by_type(engine: TemplateEngine) -> None:
    template = _template(
        {"command": "run"},
        {
            "flag": {"type": "boolean"},
            "port": {"type": "number"},
            "ratio": {"type": "number"},
            "paths": {"type": "array"},
            "mode": {"type": "select", "options": ["fast", "safe"]},
            "label": {"type": "string"},
        },
    )

    values = engine.coerce_values(
        template,
        {
            "flag": "yes",
            "port": "5432",
            "ratio": "0.5",
            "paths": "/a, /b,",
            "mode": "safe",
            "label": " keep spaces ",
        },
    )

    assert values == {
        "flag": True,
        "port": 5432,
        "ratio": 0.5,
        "paths": ["/a", "/b"],
        "mode": "safe",
        "label": " keep spaces ",
    }


@pytest.mark.parametrize(
    ("name", "raw"),
    [("flag", "maybe"), ("port", "eighty"), ("mode", "turbo"), ("unknown", "x")],
)
def test_coerce_values_rejects_bad_input(engine: TemplateEngine, name: str, raw: str) -> None:
    template = _template(
        {"command": "run"},
        {
            "flag": {"type": "boolean"},
            "port": {"type": "number"},
            "mode": {"type": "select", "options": ["fast", "safe"]},
        },
    )

    with pytest.raises(VariableError) as excinfo:
        engine.coerce_values(template, {name: raw})

    assert excinfo.value.variable == name


def test_parse_assignments_continues_comma_values() -> None:
    assert parse_assignments("paths=/a,/b,readonly=true") == {
        "paths": "/a,/b",
        "readonly": "true",
    }
    assert parse_assignments("token=a=b") == {"token": "a=b"}
    assert parse_assignments("") == {}


@pytest.mark.parametrize("text", ["oops", "=value"])
def test_parse_assignments_rejects_malformed(text: str) -> None:
    with pytest.raises(ValidationError):
        parse_assignments(text)


def test_format_value() -> None:
    assert format_value(True) == "true"
    assert format_value(None) == ""
    assert format_value(["a", "b"]) == "a,b"
    assert format_value(3) == "3"
