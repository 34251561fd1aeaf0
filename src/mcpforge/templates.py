"""Template validation and rendering.

Templates are rendered with a Jinja2 :class:`SandboxedEnvironment`, but only
a small subset of the language is accepted: variable output
(``{{ name }}``), conditionals on a variable (``{% if name %}`` or
``{% if not name %}``, with ``else``/``elif``) and iteration over a variable
(``{% for item in items %}``). Filters, calls, attribute access, literals,
tests, macros, imports and every other construct are rejected before any
rendering happens.

An element of ``args`` that consists solely of a ``for`` loop is expanded
into one argument per item, so ``"{% for p in paths %}{{ p }}{% endfor %}"``
yields one argument per path.
"""
from __future__ import annotations

import logging
from collections.abc import Iterator, Mapping
from typing import Any

from jinja2 import StrictUndefined, TemplateError, TemplateSyntaxError, meta, nodes
from jinja2.sandbox import SandboxedEnvironment

from .errors import RenderError, ValidationError, VariableError
from .models import CommandServer, ServerEntry, Template, TemplateBody, UrlServer
from .paths import HELPER_NAMES, HostInfo

LOGGER = logging.getLogger(__name__)

TRUE_WORDS = {"true", "yes", "y", "1", "on"}
FALSE_WORDS = {"false", "no", "n", "0", "off"}


def _finalize(value: object) -> object:
    if value is None:
        return ""
    if isinstance(value, bool):
        return "true" if value else "false"
    if isinstance(value, (list, tuple)):
        return ",".join(str(_finalize(item)) for item in value)
    return value


def _walk(node: nodes.Node) -> Iterator[nodes.Node]:
    yield node
    for child in node.iter_child_nodes():
        yield from _walk(child)


def _is_variable_test(node: nodes.Node) -> bool:
    if isinstance(node, nodes.Name):
        return True
    return isinstance(node, nodes.Not) and isinstance(node.node, nodes.Name)


class TemplateEngine:
    """Validate supplied values and render templates into server entries."""

    def __init__(self, host: HostInfo | None = None) -> None:
        self.host = host or HostInfo.detect()
        self._env = SandboxedEnvironment(
            undefined=StrictUndefined,
            autoescape=False,
            keep_trailing_newline=True,
            finalize=_finalize,
        )

    # ------------------------------------------------------------------
    # Values
    # ------------------------------------------------------------------
    def validate(self, template: Template, values: Mapping[str, object]) -> None:
        """Ensure every required variable has a usable value.

        Fails on the first offending variable in declaration order.
        """
        for name, variable in template.variables.items():
            if not variable.required:
                continue
            value = values.get(name)
            if name not in values or value is None:
                raise VariableError(
                    name, f"Required variable '{name}' is missing for template '{template.name}'."
                )
            if variable.type == "string" and isinstance(value, str) and not value.strip():
                raise VariableError(
                    name, f"Required variable '{name}' must not be empty."
                )

    def apply_defaults(
        self, template: Template, values: Mapping[str, object]
    ) -> dict[str, object]:
        """Return *values* completed with the template's declared defaults.

        String defaults may reference the host helpers, e.g.
        ``{{ home_dir }}/Desktop``; they are rendered before being applied.
        """
        resolved = dict(values)
        helpers = self.host.as_context()
        for name, variable in template.variables.items():
            if name in resolved or variable.default is None:
                continue
            label = f"variables.{name}.default"
            default = variable.default
            if isinstance(default, str):
                resolved[name] = self._render_text(default, helpers, field=label)
            elif isinstance(default, list):
                resolved[name] = [
                    self._render_text(item, helpers, field=f"{label}[{index}]")
                    if isinstance(item, str)
                    else item
                    for index, item in enumerate(default)
                ]
            else:
                resolved[name] = default
        return resolved

    def coerce_values(
        self, template: Template, raw: Mapping[str, str]
    ) -> dict[str, object]:
        """Convert command-line strings into values matching each variable type."""
        coerced: dict[str, object] = {}
        for name, text in raw.items():
            variable = template.variables.get(name)
            if variable is None:
                declared = ", ".join(template.variables) or "none"
                raise VariableError(
                    name,
                    f"Unknown variable '{name}' for template '{template.name}'. "
                    f"Declared: {declared}.",
                )
            value = text.strip()
            if variable.type == "boolean":
                lowered = value.lower()
                if lowered in TRUE_WORDS:
                    coerced[name] = True
                elif lowered in FALSE_WORDS:
                    coerced[name] = False
                else:
                    raise VariableError(name, f"Variable '{name}' expects a boolean, got {text!r}.")
            elif variable.type == "number":
                try:
                    coerced[name] = int(value)
                except ValueError:
                    try:
                        coerced[name] = float(value)
                    except ValueError:
                        raise VariableError(
                            name, f"Variable '{name}' expects a number, got {text!r}."
                        ) from None
            elif variable.type == "array":
                coerced[name] = [item.strip() for item in value.split(",") if item.strip()]
            elif variable.type == "select":
                options = variable.options or ()
                if value not in options:
                    allowed = ", ".join(options)
                    raise VariableError(
                        name, f"Variable '{name}' must be one of: {allowed}. Got {text!r}."
                    )
                coerced[name] = value
            else:
                coerced[name] = text
        return coerced

    # ------------------------------------------------------------------
    # Template checks
    # ------------------------------------------------------------------
    def check_template(self, template: Template) -> None:
        """Reject templates that could not be rendered safely.

        Raises :class:`ValidationError` for a body that sets both or neither
        of ``command``/``url``, for disallowed syntax, and for placeholders
        that reference neither a declared variable nor a host helper.
        """
        try:
            self._variant(template.config)
        except RenderError as exc:
            raise ValidationError(f"Template '{template.name}': {exc}") from exc

        known = set(template.variables) | HELPER_NAMES
        for field, source in self._fields(template.config):
            try:
                parsed = self._parse(source, field=field)
            except RenderError as exc:
                raise ValidationError(f"Template '{template.name}': {exc}") from exc
            unknown = sorted(meta.find_undeclared_variables(parsed) - known)
            if unknown:
                raise ValidationError(
                    f"Template '{template.name}': placeholder '{unknown[0]}' in {field} "
                    "is not a declared variable."
                )

        for name, variable in template.variables.items():
            defaults = variable.default if isinstance(variable.default, list) else [variable.default]
            for item in defaults:
                if not isinstance(item, str):
                    continue
                field = f"variables.{name}.default"
                try:
                    parsed = self._parse(item, field=field)
                except RenderError as exc:
                    raise ValidationError(f"Template '{template.name}': {exc}") from exc
                unknown = sorted(meta.find_undeclared_variables(parsed) - HELPER_NAMES)
                if unknown:
                    raise ValidationError(
                        f"Template '{template.name}': default for '{name}' may only use "
                        f"host helpers, found '{unknown[0]}'."
                    )

    # ------------------------------------------------------------------
    # Rendering
    # ------------------------------------------------------------------
    def render(self, template: Template, values: Mapping[str, object]) -> ServerEntry:
        """Render *template* with *values* into a concrete server entry."""
        body = template.config
        self._variant(body)
        context = self._build_context(template, values)

        env = self._render_env(body.env, context)
        if body.url is not None:
            return UrlServer(url=self._render_text(body.url, context, field="url"), env=env)

        command = self._render_text(body.command or "", context, field="command")
        if not command.strip():
            raise RenderError(f"Template '{template.name}' rendered an empty command.")
        args: list[str] = []
        for index, source in enumerate(body.args):
            args.extend(self._render_arg(source, context, field=f"args[{index}]"))
        return CommandServer(command=command, args=tuple(args), env=env)

    def _build_context(
        self, template: Template, values: Mapping[str, object]
    ) -> dict[str, object]:
        context: dict[str, object] = {}
        for name, variable in template.variables.items():
            context[name] = [] if variable.type == "array" else None
        context.update(values)
        context.update(self.host.as_context())
        return context

    def _render_env(
        self, env: Mapping[str, str] | None, context: Mapping[str, object]
    ) -> dict[str, str] | None:
        if env is None:
            return None
        rendered: dict[str, str] = {}
        for key_source, value_source in env.items():
            key = self._render_text(key_source, context, field=f"env key {key_source!r}")
            value = self._render_text(value_source, context, field=f"env.{key_source}")
            if not key.strip() or not value.strip():
                LOGGER.debug("Dropping empty environment entry from %r.", key_source)
                continue
            rendered[key.strip()] = value
        return rendered or None

    def _render_arg(
        self, source: str, context: Mapping[str, object], *, field: str
    ) -> list[str]:
        parsed = self._parse(source, field=field)
        loop = _sole_loop(parsed)
        if loop is None:
            rendered = self._render_parsed(source, parsed, context, field=field)
            return [rendered] if rendered.strip() else []

        iter_name = loop.iter.name  # type: ignore[attr-defined]
        items = context.get(iter_name)
        if items is None:
            items = []
        if not isinstance(items, (list, tuple)):
            raise RenderError(f"Placeholder '{iter_name}' in {field} must be an array.")
        expanded: list[str] = []
        for item in items:
            scoped = dict(context)
            scoped[iter_name] = [item]
            rendered = self._render_parsed(source, parsed, scoped, field=field)
            if rendered.strip():
                expanded.append(rendered)
        return expanded

    def _render_text(self, source: str, context: Mapping[str, object], *, field: str) -> str:
        parsed = self._parse(source, field=field)
        return self._render_parsed(source, parsed, context, field=field)

    def _render_parsed(
        self,
        source: str,
        parsed: nodes.Template,
        context: Mapping[str, object],
        *,
        field: str,
    ) -> str:
        missing = sorted(meta.find_undeclared_variables(parsed) - set(context))
        if missing:
            raise RenderError(f"Undefined placeholder '{missing[0]}' in {field}.")
        try:
            return self._env.from_string(source).render(dict(context))
        except TemplateError as exc:
            raise RenderError(f"Failed to render {field}: {exc}") from exc
        except TypeError as exc:
            raise RenderError(f"Failed to render {field}: {exc}") from exc

    def _parse(self, source: str, *, field: str) -> nodes.Template:
        try:
            parsed = self._env.parse(source)
        except TemplateSyntaxError as exc:
            raise RenderError(f"Invalid placeholder syntax in {field}: {exc.message}") from exc
        for node in _walk(parsed):
            self._check_node(node, field=field)
        return parsed

    @staticmethod
    def _check_node(node: nodes.Node, *, field: str) -> None:
        if isinstance(node, (nodes.Template, nodes.Output, nodes.TemplateData, nodes.Name)):
            return
        if isinstance(node, nodes.If):
            if not _is_variable_test(node.test):
                raise RenderError(f"Conditions in {field} may only test a variable.")
            return
        if isinstance(node, nodes.Not) and isinstance(node.node, nodes.Name):
            return
        if isinstance(node, nodes.For):
            if not isinstance(node.target, nodes.Name) or not isinstance(node.iter, nodes.Name):
                raise RenderError(f"Loops in {field} must iterate a variable into a name.")
            if node.else_ or node.test is not None or node.recursive:
                raise RenderError(f"Loops in {field} may not use else, filters or recursion.")
            return
        raise RenderError(f"Unsupported template construct '{type(node).__name__}' in {field}.")

    @staticmethod
    def _variant(body: TemplateBody) -> str:
        if body.url is not None and body.command is not None:
            raise RenderError("Template config sets both 'command' and 'url'.")
        if body.url is None and body.command is None:
            raise RenderError("Template config must set either 'command' or 'url'.")
        return "url" if body.url is not None else "command"

    @staticmethod
    def _fields(body: TemplateBody) -> Iterator[tuple[str, str]]:
        if body.command is not None:
            yield "command", body.command
        for index, arg in enumerate(body.args):
            yield f"args[{index}]", arg
        if body.url is not None:
            yield "url", body.url
        for key, value in (body.env or {}).items():
            yield f"env key {key!r}", key
            yield f"env.{key}", value


def _sole_loop(parsed: nodes.Template) -> nodes.For | None:
    """Return the loop when *parsed* is nothing but one ``for`` block."""
    body = [
        node
        for node in parsed.body
        if not (
            isinstance(node, nodes.Output)
            and all(
                isinstance(child, nodes.TemplateData) and not child.data.strip()
                for child in node.nodes
            )
        )
    ]
    if len(body) == 1 and isinstance(body[0], nodes.For):
        return body[0]
    return None


def parse_assignments(text: str) -> dict[str, str]:
    """Parse ``KEY=VALUE,KEY2=VALUE2`` into a mapping.

    A comma-separated segment without ``=`` continues the previous value, so
    ``paths=/a,/b,readonly=true`` assigns ``/a,/b`` to ``paths``.
    """
    result: dict[str, str] = {}
    current: str | None = None
    for segment in text.split(","):
        if "=" in segment:
            key, _, value = segment.partition("=")
            key = key.strip()
            if not key:
                raise ValidationError(f"Invalid variable assignment {segment!r}: empty name.")
            result[key] = value.strip()
            current = key
        elif current is not None:
            if segment.strip():
                result[current] = f"{result[current]},{segment.strip()}"
        elif segment.strip():
            raise ValidationError(
                f"Invalid variable assignment {segment!r}: expected KEY=VALUE."
            )
    return result


def format_value(value: Any) -> str:
    """Render a variable value for display."""
    return str(_finalize(value))


__all__ = ["TemplateEngine", "format_value", "parse_assignments"]
