"""Typer-powered command line interface for ``mcp-forge``.

Commands are grouped by the entity they manage: ``server`` entries in the
canonical client configuration, ``template`` definitions, the ``config``
document itself, ``backup`` files and ``profile`` snapshots. Every command
runs inside a structured operation log scope and maps library errors onto
the exit codes in :class:`mcpforge.exit_codes.ExitCode`.
"""
from __future__ import annotations

import json
import logging
import shlex
from collections.abc import Mapping, Sequence
from dataclasses import dataclass
from pathlib import Path
from typing import NoReturn

import typer
from rich.console import Console
from rich.table import Table

from . import __version__
from .backups import STATUS_KEEP, STATUS_NEW, STATUS_OVERWRITE, STATUS_REMOVE, BackupManager
from .catalog import (
    GitHubTemplateSource,
    LocalTemplateSource,
    TemplateCache,
    TemplateRepository,
    describe_cache,
    filter_templates,
)
from .config import AppConfig, load_config
from .errors import ForgeError, ParseError, ValidationError, exit_code_for
from .exit_codes import ExitCode
from .logging import OperationScope, StructuredLogger
from .models import (
    BackupRecord,
    CommandServer,
    Configuration,
    ProfileInfo,
    ServerDiff,
    ServerEntry,
    Template,
    describe_server,
    format_timestamp,
    server_to_dict,
)
from .paths import HostInfo
from .profiles import DEFAULT_SOURCE, ProfileStateManager
from .prompts import Prompter, StaticPrompter, TyperPrompter
from .state.registry import read_json
from .store import (
    EXPORT_FORMATS,
    ConfigStore,
    diff_servers,
    dump_document,
    get_server,
    load_external,
    merge_configurations,
    remove_server,
    update_server,
    upsert_server,
)
from .templates import TemplateEngine, format_value, parse_assignments

console = Console()
err_console = Console(stderr=True)

SETTINGS_FILE_OPTION = typer.Option(
    None,
    "--settings-file",
    dir_okay=False,
    help="Override the path to mcp-forge's YAML settings file.",
)

JSON_OPTION = typer.Option(False, "--json", help="Emit machine-readable JSON.")
DRY_RUN_OPTION = typer.Option(False, "--dry-run", help="Preview changes without writing.")
NO_BACKUP_OPTION = typer.Option(
    False,
    "--no-backup",
    help="Skip the automatic backup taken before changing the configuration.",
)

STATUS_STYLES = {
    STATUS_NEW: "green",
    STATUS_OVERWRITE: "yellow",
    STATUS_KEEP: "dim",
    STATUS_REMOVE: "red",
}

app = typer.Typer(
    help="Manage MCP server entries, templates, backups and profiles.",
    no_args_is_help=False,
)


@dataclass
class RuntimeContext:
    """Aggregated runtime objects shared by commands."""

    config: AppConfig
    store: ConfigStore
    engine: TemplateEngine
    templates: TemplateRepository
    cache: TemplateCache
    backups: BackupManager
    profiles: ProfileStateManager
    logger: StructuredLogger
    prompter: Prompter
    profile: str | None = None


def _ensure_runtime(
    ctx: typer.Context,
    settings_file: Path | None,
    *,
    offline: bool = False,
    assume_yes: bool = False,
    profile: str | None = None,
) -> RuntimeContext:
    runtime = ctx.obj
    if isinstance(runtime, RuntimeContext):
        return runtime

    overrides: dict[str, object] = {}
    if offline:
        overrides["templates"] = {"offline": True}

    try:
        config = load_config(config_file=settings_file, overrides=overrides)
    except ForgeError as exc:
        err_console.print(f"[red]{exc}[/red]")
        raise typer.Exit(code=int(exit_code_for(exc))) from exc

    store = ConfigStore(config.config_file, server_key=config.server_key)
    cache = TemplateCache(config.cache_dir, ttl_days=config.templates.cache_ttl_days)
    remote = None if config.templates.offline else GitHubTemplateSource(config.templates)
    repository = TemplateRepository(
        cache=cache,
        remote=remote,
        overrides=LocalTemplateSource(config.templates_dir),
    )
    runtime = RuntimeContext(
        config=config,
        store=store,
        engine=TemplateEngine(HostInfo.detect()),
        templates=repository,
        cache=cache,
        backups=BackupManager(config.backups_dir, store),
        profiles=ProfileStateManager(config.state_dir, store),
        logger=StructuredLogger(config.logs_dir),
        prompter=StaticPrompter(confirm=True) if assume_yes else TyperPrompter(),
        profile=profile.strip() if profile and profile.strip() else None,
    )
    ctx.obj = runtime
    return runtime


def _get_runtime(ctx: typer.Context) -> RuntimeContext:
    runtime = ctx.obj
    if isinstance(runtime, RuntimeContext):
        return runtime
    return _ensure_runtime(ctx, None)


@app.callback(invoke_without_command=True)
def _root(  # noqa: D401 - Typer displays help for us, docstring optional.
    ctx: typer.Context,
    version: bool = typer.Option(
        False,
        "--version",
        "-V",
        help="Show the mcp-forge version and exit.",
    ),
    settings_file: Path | None = SETTINGS_FILE_OPTION,
    offline: bool = typer.Option(
        False,
        "--offline",
        help="Never contact the remote template repository.",
    ),
    assume_yes: bool = typer.Option(
        False,
        "--yes",
        "-y",
        help="Answer yes to every confirmation prompt.",
    ),
    profile: str | None = typer.Option(
        None,
        "--profile",
        help="Run server commands and backup create against this profile's snapshot "
        "instead of the client configuration.",
    ),
    verbose: bool = typer.Option(False, "--verbose", "-v", help="Enable debug logging."),
) -> None:
    """Entry point callback invoked for every CLI execution."""
    if verbose:
        logging.basicConfig(level=logging.DEBUG, format="%(levelname)s %(name)s: %(message)s")

    runtime = _ensure_runtime(
        ctx, settings_file, offline=offline, assume_yes=assume_yes, profile=profile
    )

    if version:
        with runtime.logger.operation(
            "root --version",
            args={"version": True},
            target={"kind": "meta", "scope": "version"},
        ) as op:
            console.print(f"mcp-forge {__version__}")
            op.success("Reported CLI version.", changed=0)
        raise typer.Exit(code=0)

    if ctx.invoked_subcommand is None:
        console.print(ctx.get_help())
        raise typer.Exit(code=0)


# ----------------------------------------------------------------------
# Shared helpers
# ----------------------------------------------------------------------
def _command_error(
    op: OperationScope,
    message: str,
    *,
    rc: int = 2,
    errors: Sequence[str] | None = None,
) -> NoReturn:
    """Emit a structured error and terminate the command."""
    err_console.print(f"[red]{message}[/red]")
    op.error(message, errors=list(errors or [message]), rc=rc)
    raise typer.Exit(code=rc)


def _forge_error(op: OperationScope, exc: ForgeError) -> NoReturn:
    _command_error(op, str(exc), rc=int(exit_code_for(exc)))


def _dry_run_complete(
    op: OperationScope,
    summary: str,
    *,
    context: Mapping[str, object] | None = None,
) -> None:
    """Standardise dry-run completion messaging."""
    console.print(f"[yellow]Dry run[/yellow]: {summary}")
    op.success("Dry run complete.", changed=0, context=dict(context or {}))


def _cancelled(op: OperationScope) -> NoReturn:
    console.print("[yellow]Cancelled.[/yellow] No changes were made.")
    op.success("Cancelled by user.", changed=0)
    raise typer.Exit(code=int(ExitCode.OK))


def _auto_backup(
    runtime: RuntimeContext,
    op: OperationScope,
    config: Configuration,
    *,
    skip: bool,
    prefix: str,
    profile: str | None = None,
) -> list[str]:
    """Back up the document about to change, when enabled.

    With *profile* the document is that profile's snapshot, otherwise the
    client configuration.
    """
    if profile is not None:
        exists = runtime.profiles.snapshot_path(profile).exists()
        description = f"Automatic backup ({op.name}, profile '{profile}')"
    else:
        exists = runtime.store.exists()
        description = f"Automatic backup ({op.name})"
    if skip or not runtime.config.backups.auto_backup or not exists:
        return []
    path = runtime.backups.create(config, prefix=prefix, description=description)
    op.add_step("backup.create", detail={"path": path})
    console.print(f"[dim]Backup saved to {path}[/dim]")
    return [path.stem]


def _load_document(runtime: RuntimeContext) -> Configuration:
    """Load the selected profile's snapshot, or the client configuration."""
    if runtime.profile is None:
        return runtime.store.load()
    runtime.profiles.require(runtime.profiles.load_registry(), runtime.profile)
    return runtime.profiles.load_snapshot(runtime.profile)


def _save_document(runtime: RuntimeContext, config: Configuration) -> None:
    if runtime.profile is None:
        runtime.store.save(config)
        return
    runtime.profiles.store_snapshot(runtime.profiles.load_registry(), runtime.profile, config)


def _document_label(runtime: RuntimeContext) -> str:
    if runtime.profile is None:
        return "the client configuration"
    return f"profile '{runtime.profile}'"


def _plan_table(rows: Sequence[tuple[str, str]], *, title: str | None = None) -> Table:
    table = Table(show_header=True, header_style="bold magenta", title=title)
    table.add_column("Server", style="bold")
    table.add_column("Action")
    if not rows:
        table.add_row("(none)", "")
    for name, status in rows:
        style = STATUS_STYLES.get(status, "")
        table.add_row(name, f"[{style}]{status}[/{style}]" if style else status)
    return table


def _diff_rows(diff: ServerDiff) -> list[tuple[str, str]]:
    rows = [(name, STATUS_NEW) for name in diff.added]
    rows.extend((name, STATUS_OVERWRITE) for name in diff.overwritten)
    rows.extend((name, STATUS_REMOVE) for name in diff.removed)
    return rows


def _servers_table(config: Configuration) -> Table:
    table = Table(show_header=True, header_style="bold magenta")
    table.add_column("Name", style="bold")
    table.add_column("Type")
    table.add_column("Command / URL")
    table.add_column("Env")
    if not config.servers:
        table.add_row("(none)", "", "", "")
    for name in sorted(config.servers):
        entry = config.servers[name]
        kind = "command" if isinstance(entry, CommandServer) else "url"
        env_keys = ", ".join(sorted(entry.env or {}))
        table.add_row(name, kind, describe_server(entry), env_keys)
    return table


def _collect_assignments(raw_values: Sequence[str] | None) -> dict[str, str]:
    assignments: dict[str, str] = {}
    for raw in raw_values or []:
        assignments.update(parse_assignments(raw))
    return assignments


# ----------------------------------------------------------------------
# Sub-command groups
# ----------------------------------------------------------------------
server_app = typer.Typer(help="Add, remove and inspect server entries.")
template_app = typer.Typer(help="Browse, inspect and validate server templates.")
config_app = typer.Typer(help="Inspect, import and export the client configuration.")
backups_app = typer.Typer(help="Create, inspect, restore and prune configuration backups.")
profiles_app = typer.Typer(help="Manage named, switchable configuration profiles.")

app.add_typer(server_app, name="server")
app.add_typer(template_app, name="template")
app.add_typer(config_app, name="config")
app.add_typer(backups_app, name="backup")
app.add_typer(profiles_app, name="profile")


# ----------------------------------------------------------------------
# server
# ----------------------------------------------------------------------
@server_app.command("add")
def server_add(
    ctx: typer.Context,
    template_name: str = typer.Argument(..., metavar="TEMPLATE", help="Template to render."),
    name: str | None = typer.Argument(
        None, help="Server name to store the entry under (defaults to the template name)."
    ),
    variables: list[str] | None = typer.Option(
        None,
        "--vars",
        help="Template variables as KEY=VALUE[,KEY=VALUE]. May be repeated.",
    ),
    prompt_missing: bool = typer.Option(
        False,
        "--prompt",
        help="Prompt for required variables that were not supplied.",
    ),
    force: bool = typer.Option(False, "--force", help="Overwrite an existing server silently."),
    dry_run: bool = DRY_RUN_OPTION,
    no_backup: bool = NO_BACKUP_OPTION,
) -> None:
    """Render TEMPLATE and add the result to the client configuration."""
    runtime = _get_runtime(ctx)
    server_name = (name or template_name).strip()

    with runtime.logger.operation(
        "server add",
        args={
            "template": template_name,
            "dry_run": dry_run,
            "force": force,
            "profile": runtime.profile,
        },
        target={"kind": "server", "name": server_name},
    ) as op:
        try:
            config = _load_document(runtime)
            resolved = runtime.templates.load_template(template_name)
            template = resolved.template
            op.add_step("template.load", detail={"origin": resolved.origin})
            runtime.engine.check_template(template)

            values = runtime.engine.coerce_values(
                template, _collect_assignments(variables)
            )
            if prompt_missing:
                values.update(_prompt_for_missing(runtime, template, values))
            values = runtime.engine.apply_defaults(template, values)
            runtime.engine.validate(template, values)
            entry = runtime.engine.render(template, values)
            op.add_step("template.render")

            status = STATUS_OVERWRITE if server_name in config.servers else STATUS_NEW

            if dry_run:
                console.print(_plan_table([(server_name, status)]))
                console.print_json(data={server_name: server_to_dict(entry)})
                _dry_run_complete(
                    op,
                    f"would {'overwrite' if status == STATUS_OVERWRITE else 'add'} '{server_name}'.",
                    context={"status": status},
                )
                return

            if status == STATUS_OVERWRITE and not force:
                if not runtime.prompter.confirm(
                    f"Server '{server_name}' already exists. Overwrite it?", default=False
                ):
                    _cancelled(op)

            backups = _auto_backup(
                runtime, op, config, skip=no_backup, prefix="auto", profile=runtime.profile
            )
            _save_document(runtime, upsert_server(config, server_name, entry))
        except ForgeError as exc:
            _forge_error(op, exc)

        verb = "Updated" if status == STATUS_OVERWRITE else "Added"
        console.print(
            f"[green]{verb} server '{server_name}'[/green] in {_document_label(runtime)} "
            f"from template '{template.name}' ({resolved.origin})."
        )
        if template.setup_instructions:
            console.print(f"[dim]{template.setup_instructions}[/dim]")
        op.success(
            f"{verb} server.",
            changed=1,
            backups=backups,
            context={"template": template.name, "origin": resolved.origin},
        )


def _prompt_for_missing(
    runtime: RuntimeContext, template: Template, values: Mapping[str, object]
) -> dict[str, object]:
    prompted: dict[str, str] = {}
    for var_name, variable in template.variables.items():
        if var_name in values or not variable.required or variable.default is not None:
            continue
        label = variable.description or var_name
        prompted[var_name] = runtime.prompter.text(f"{label} ({var_name})")
    return runtime.engine.coerce_values(template, prompted) if prompted else {}


@server_app.command("remove")
def server_remove(
    ctx: typer.Context,
    name: str = typer.Argument(..., help="Server to remove."),
    force: bool = typer.Option(False, "--force", help="Remove without confirmation."),
    dry_run: bool = DRY_RUN_OPTION,
    no_backup: bool = NO_BACKUP_OPTION,
) -> None:
    """Remove a server entry from the client configuration."""
    runtime = _get_runtime(ctx)
    with runtime.logger.operation(
        "server remove",
        args={"dry_run": dry_run, "force": force, "profile": runtime.profile},
        target={"kind": "server", "name": name},
    ) as op:
        try:
            config = _load_document(runtime)
            updated = remove_server(config, name)
            if dry_run:
                console.print(_plan_table([(name, STATUS_REMOVE)]))
                _dry_run_complete(op, f"would remove '{name}'.")
                return
            if not force and not runtime.prompter.confirm(
                f"Remove server '{name}'?", default=True
            ):
                _cancelled(op)
            backups = _auto_backup(
                runtime, op, config, skip=no_backup, prefix="auto", profile=runtime.profile
            )
            _save_document(runtime, updated)
        except ForgeError as exc:
            _forge_error(op, exc)

        console.print(f"[green]Removed server '{name}' from {_document_label(runtime)}.[/green]")
        op.success("Removed server.", changed=1, backups=backups)


def _parse_env_assignments(raw_values: Sequence[str] | None) -> dict[str, str | None]:
    assignments: dict[str, str | None] = {}
    for raw in raw_values or []:
        key, separator, value = raw.partition("=")
        if not separator or not key.strip():
            raise ValidationError(f"Invalid environment assignment {raw!r}: expected KEY=VALUE.")
        assignments[key.strip()] = value or None
    return assignments


@server_app.command("update")
def server_update(
    ctx: typer.Context,
    name: str = typer.Argument(..., help="Server to update."),
    args: str | None = typer.Option(
        None,
        "--args",
        help="Replace the argument list (shell-style quoting; an empty string clears it).",
    ),
    env: list[str] | None = typer.Option(
        None,
        "--env",
        help="Set an environment variable as KEY=VALUE; KEY= removes it. May be repeated.",
    ),
    dry_run: bool = DRY_RUN_OPTION,
    no_backup: bool = NO_BACKUP_OPTION,
) -> None:
    """Change the arguments or environment of an existing server."""
    runtime = _get_runtime(ctx)
    with runtime.logger.operation(
        "server update",
        args={"args": args, "env": list(env or []), "dry_run": dry_run, "profile": runtime.profile},
        target={"kind": "server", "name": name},
    ) as op:
        try:
            if args is None and not env:
                raise ValidationError("Nothing to update; pass --args and/or --env.")
            try:
                new_args = shlex.split(args) if args is not None else None
            except ValueError as exc:
                raise ValidationError(f"Invalid --args value: {exc}.") from exc
            config = _load_document(runtime)
            updated = update_server(config, name, args=new_args, env=_parse_env_assignments(env))
            entry = updated.servers[name]
            if dry_run:
                console.print_json(data={name: server_to_dict(entry)})
                _dry_run_complete(op, f"would update '{name}'.")
                return
            backups = _auto_backup(
                runtime, op, config, skip=no_backup, prefix="auto", profile=runtime.profile
            )
            _save_document(runtime, updated)
        except ForgeError as exc:
            _forge_error(op, exc)

        console.print(f"[green]Updated server '{name}' in {_document_label(runtime)}.[/green]")
        console.print(f"[dim]{describe_server(entry)}[/dim]")
        op.success("Updated server.", changed=1, backups=backups)


def _server_matches(name: str, entry: ServerEntry, needle: str) -> bool:
    return needle in name.lower() or needle in describe_server(entry).lower()


@server_app.command("list")
def server_list(
    ctx: typer.Context,
    filter_text: str | None = typer.Option(
        None,
        "--filter",
        "-f",
        help="Only show servers whose name, command, arguments or URL contain this text.",
    ),
    json_output: bool = JSON_OPTION,
) -> None:
    """List the servers in the client configuration."""
    runtime = _get_runtime(ctx)
    with runtime.logger.operation(
        "server list",
        args={"json": json_output, "filter": filter_text, "profile": runtime.profile},
        target={"kind": "server", "scope": "config"},
    ) as op:
        try:
            config = _load_document(runtime)
        except ForgeError as exc:
            _forge_error(op, exc)
        if filter_text and filter_text.strip():
            needle = filter_text.strip().lower()
            config = config.with_servers(
                {
                    name: entry
                    for name, entry in config.servers.items()
                    if _server_matches(name, entry, needle)
                }
            )
        if json_output:
            console.print_json(
                data={name: server_to_dict(entry) for name, entry in sorted(config.servers.items())}
            )
        else:
            console.print(_servers_table(config))
        op.success("Reported server list.", changed=0, context={"count": len(config.servers)})


@server_app.command("show")
def server_show(
    ctx: typer.Context,
    name: str = typer.Argument(..., help="Server to display."),
) -> None:
    """Print a single server entry as JSON."""
    runtime = _get_runtime(ctx)
    with runtime.logger.operation(
        "server show",
        args={"profile": runtime.profile},
        target={"kind": "server", "name": name},
    ) as op:
        try:
            entry = get_server(_load_document(runtime), name)
        except ForgeError as exc:
            _forge_error(op, exc)
        console.print_json(data={name: server_to_dict(entry)})
        op.success("Reported server.", changed=0)


# ----------------------------------------------------------------------
# template
# ----------------------------------------------------------------------
TAG_OPTION = typer.Option(None, "--tag", "-t", help="Only include templates with this tag.")
PLATFORM_OPTION = typer.Option(
    None, "--platform", "-p", help="Only include templates supporting this platform."
)


def _report_templates(
    runtime: RuntimeContext,
    op: OperationScope,
    *,
    tag: str | None,
    platform: str | None,
    text: str | None,
    json_output: bool,
) -> None:
    try:
        catalog, origin = runtime.templates.load_catalog()
    except ForgeError as exc:
        _forge_error(op, exc)
    entries = filter_templates(catalog.templates.values(), tag=tag, platform=platform, text=text)
    if json_output:
        console.print_json(
            data={"origin": origin, "templates": [entry.to_dict() for entry in entries]}
        )
    else:
        table = Table(show_header=True, header_style="bold magenta")
        table.add_column("Name", style="bold")
        table.add_column("Version")
        table.add_column("Category")
        table.add_column("Tags")
        table.add_column("Description")
        if not entries:
            table.add_row("(none)", "", "", "", "")
        for entry in entries:
            table.add_row(
                entry.name,
                entry.version,
                entry.category,
                ", ".join(entry.tags),
                entry.description,
            )
        console.print(table)
        console.print(f"[dim]Catalog source: {origin}[/dim]")
    op.success(
        "Reported template catalog.",
        changed=0,
        context={"origin": origin, "count": len(entries)},
    )


@template_app.command("list")
def template_list(
    ctx: typer.Context,
    tag: str | None = TAG_OPTION,
    platform: str | None = PLATFORM_OPTION,
    search: str | None = typer.Option(
        None, "--search", "-s", help="Only include templates whose name, description or tags match."
    ),
    json_output: bool = JSON_OPTION,
) -> None:
    """List templates available from the catalog."""
    runtime = _get_runtime(ctx)
    with runtime.logger.operation(
        "template list",
        args={"json": json_output, "tag": tag, "platform": platform, "search": search},
        target={"kind": "template", "scope": "catalog"},
    ) as op:
        _report_templates(
            runtime, op, tag=tag, platform=platform, text=search, json_output=json_output
        )


@template_app.command("search")
def template_search(
    ctx: typer.Context,
    term: str = typer.Argument(..., help="Text to look for in names, descriptions and tags."),
    tag: str | None = TAG_OPTION,
    platform: str | None = PLATFORM_OPTION,
    json_output: bool = JSON_OPTION,
) -> None:
    """Search the catalog for templates matching TERM."""
    runtime = _get_runtime(ctx)
    with runtime.logger.operation(
        "template search",
        args={"term": term, "tag": tag, "platform": platform, "json": json_output},
        target={"kind": "template", "scope": "catalog"},
    ) as op:
        if not term.strip():
            _forge_error(op, ValidationError("Search term must be a non-empty string."))
        _report_templates(
            runtime, op, tag=tag, platform=platform, text=term, json_output=json_output
        )


@template_app.command("show")
def template_show(
    ctx: typer.Context,
    name: str = typer.Argument(..., help="Template to display."),
    json_output: bool = JSON_OPTION,
) -> None:
    """Show a template's variables, requirements and body."""
    runtime = _get_runtime(ctx)
    with runtime.logger.operation(
        "template show",
        args={"json": json_output},
        target={"kind": "template", "name": name},
    ) as op:
        try:
            resolved = runtime.templates.load_template(name)
        except ForgeError as exc:
            _forge_error(op, exc)
        template = resolved.template
        if json_output:
            console.print_json(data={"origin": resolved.origin, "template": template.to_dict()})
            op.success("Reported template as JSON.", changed=0)
            return

        console.print(
            f"[bold]{template.name}[/bold] {template.version} by {template.author or 'unknown'}"
            f" [dim]({resolved.origin})[/dim]"
        )
        if template.description:
            console.print(template.description)
        table = Table(show_header=True, header_style="bold magenta", title="Variables")
        table.add_column("Name", style="bold")
        table.add_column("Type")
        table.add_column("Required")
        table.add_column("Default")
        table.add_column("Description")
        if not template.variables:
            table.add_row("(none)", "", "", "", "")
        for var_name, variable in template.variables.items():
            var_type = variable.type
            if variable.options:
                var_type = f"{var_type} ({' | '.join(variable.options)})"
            table.add_row(
                var_name,
                var_type,
                "yes" if variable.required else "no",
                format_value(variable.default) if variable.default is not None else "",
                variable.description,
            )
        console.print(table)
        for tool, constraint in sorted((template.requirements or {}).items()):
            console.print(f"Requires {tool} {constraint}")
        if template.setup_instructions:
            console.print(f"[dim]{template.setup_instructions}[/dim]")
        op.success("Reported template.", changed=0)


@template_app.command("refresh")
def template_refresh(ctx: typer.Context) -> None:
    """Refetch the remote catalog and reset the template cache."""
    runtime = _get_runtime(ctx)
    with runtime.logger.operation(
        "template refresh",
        target={"kind": "template", "scope": "cache"},
    ) as op:
        try:
            catalog = runtime.templates.refresh()
        except ForgeError as exc:
            _forge_error(op, exc)
        info = describe_cache(runtime.cache)
        console.print(
            f"[green]Template catalog refreshed[/green]: {len(catalog.templates)} templates, "
            f"cache valid until {info['expires_at']}."
        )
        op.success("Refreshed template catalog.", changed=1, context=info)


@template_app.command("clear-cache")
def template_clear_cache(ctx: typer.Context) -> None:
    """Delete every cached catalog and template document."""
    runtime = _get_runtime(ctx)
    with runtime.logger.operation(
        "template clear-cache",
        target={"kind": "template", "scope": "cache"},
    ) as op:
        try:
            removed = runtime.cache.clear()
        except ForgeError as exc:
            _forge_error(op, exc)
        console.print(f"Removed {removed} cached document(s) from {runtime.cache.root}.")
        op.success("Cleared template cache.", changed=removed)


@template_app.command("cache-info")
def template_cache_info(ctx: typer.Context, json_output: bool = JSON_OPTION) -> None:
    """Show where the template cache lives and whether it is still valid."""
    runtime = _get_runtime(ctx)
    with runtime.logger.operation(
        "template cache-info",
        args={"json": json_output},
        target={"kind": "template", "scope": "cache"},
    ) as op:
        info = describe_cache(runtime.cache)
        if json_output:
            console.print_json(data=info)
        else:
            for key, value in info.items():
                console.print(f"[bold]{key}[/bold]: {value if value is not None else '-'}")
        op.success("Reported template cache.", changed=0, context=info)


@template_app.command("validate")
def template_validate(
    ctx: typer.Context,
    source: str = typer.Argument(..., help="Template name or path to a template JSON file."),
) -> None:
    """Check a template for structural and placeholder errors."""
    runtime = _get_runtime(ctx)
    with runtime.logger.operation(
        "template validate",
        target={"kind": "template", "source": source},
    ) as op:
        try:
            path = Path(source).expanduser()
            if path.suffix == ".json" and path.is_file():
                try:
                    template = Template.from_dict(read_json(path))
                except ValidationError as exc:
                    raise ParseError(f"Invalid template document {path}: {exc}") from exc
            else:
                template = runtime.templates.load_template(source).template
            runtime.engine.check_template(template)
        except ForgeError as exc:
            _forge_error(op, exc)
        console.print(f"[green]Template '{template.name}' is valid.[/green]")
        op.success("Template is valid.", changed=0, context={"template": template.name})


# ----------------------------------------------------------------------
# config
# ----------------------------------------------------------------------
@config_app.command("show")
def config_show(ctx: typer.Context) -> None:
    """Print the client configuration document."""
    runtime = _get_runtime(ctx)
    with runtime.logger.operation(
        "config show",
        target={"kind": "config", "path": runtime.store.path},
    ) as op:
        try:
            config = runtime.store.load()
        except ForgeError as exc:
            _forge_error(op, exc)
        console.print_json(data=config.to_dict(server_key=runtime.store.server_key))
        op.success("Rendered configuration as JSON.", changed=0)


@config_app.command("settings")
def config_settings(ctx: typer.Context, json_output: bool = JSON_OPTION) -> None:
    """Display mcp-forge's effective settings after merges."""
    runtime = _get_runtime(ctx)
    data = runtime.config.to_dict()

    with runtime.logger.operation(
        "config settings",
        args={"json": json_output},
        target={"kind": "settings"},
    ) as op:
        if json_output:
            console.print_json(data=data)
            op.success("Rendered settings as JSON.", changed=0)
            return

        table = Table(show_header=True, header_style="bold magenta")
        table.add_column("Key", style="bold")
        table.add_column("Value")

        for key, value in data.items():
            if isinstance(value, dict):
                rendered = json.dumps(value, indent=2, sort_keys=True)
            else:
                rendered = str(value)
            table.add_row(key, rendered)

        console.print(table)
        op.success("Rendered settings table.", changed=0)


@config_app.command("path")
def config_path(ctx: typer.Context) -> None:
    """Print the path of the client configuration document."""
    runtime = _get_runtime(ctx)
    with runtime.logger.operation("config path", target={"kind": "config"}) as op:
        console.print(str(runtime.store.path), soft_wrap=True)
        op.success("Reported configuration path.", changed=0)


@config_app.command("init")
def config_init(
    ctx: typer.Context,
    force: bool = typer.Option(False, "--force", help="Replace an existing document."),
) -> None:
    """Create an empty client configuration document."""
    runtime = _get_runtime(ctx)
    with runtime.logger.operation(
        "config init",
        args={"force": force},
        target={"kind": "config", "path": runtime.store.path},
    ) as op:
        if runtime.store.exists() and not force:
            console.print(f"Configuration already exists at {runtime.store.path}.")
            op.success("Configuration already present.", changed=0)
            return
        backups: list[str] = []
        try:
            if force:
                try:
                    current = runtime.store.load()
                except (ParseError, ValidationError) as exc:
                    op.add_step("backup.create", status="skipped", detail=str(exc))
                else:
                    backups = _auto_backup(runtime, op, current, skip=False, prefix="auto")
            runtime.store.save(Configuration())
        except ForgeError as exc:
            _forge_error(op, exc)
        console.print(f"[green]Initialised configuration at {runtime.store.path}.[/green]")
        op.success("Initialised configuration.", changed=1, backups=backups)


@config_app.command("export")
def config_export(
    ctx: typer.Context,
    fmt: str = typer.Option("json", "--format", "-f", help="Export format: json or yaml."),
    output: Path | None = typer.Option(
        None, "--output", "-o", dir_okay=False, help="Write to a file instead of stdout."
    ),
) -> None:
    """Export the client configuration as JSON or YAML."""
    runtime = _get_runtime(ctx)
    with runtime.logger.operation(
        "config export",
        args={"format": fmt, "output": output},
        target={"kind": "config"},
    ) as op:
        if fmt not in EXPORT_FORMATS:
            _command_error(
                op, f"Unsupported export format '{fmt}'. Allowed: {', '.join(EXPORT_FORMATS)}."
            )
        try:
            text = dump_document(
                runtime.store.load(), fmt, server_key=runtime.store.server_key
            )
        except ForgeError as exc:
            _forge_error(op, exc)
        if output is None:
            typer.echo(text, nl=False)
            op.success("Exported configuration to stdout.", changed=0)
            return
        try:
            output.expanduser().write_text(text, encoding="utf-8")
        except OSError as exc:
            _command_error(op, f"Failed to write {output}: {exc}", rc=int(ExitCode.ENVIRONMENT))
        console.print(f"[green]Exported configuration to {output}.[/green]")
        op.success("Exported configuration.", changed=0, context={"output": output})


@config_app.command("import")
def config_import(
    ctx: typer.Context,
    source: Path = typer.Argument(..., dir_okay=False, help="JSON or YAML file to import."),
    replace: bool = typer.Option(
        False,
        "--replace/--merge",
        help="Replace the whole configuration instead of merging servers into it.",
    ),
    force: bool = typer.Option(False, "--force", help="Apply without confirmation."),
    dry_run: bool = DRY_RUN_OPTION,
    no_backup: bool = NO_BACKUP_OPTION,
) -> None:
    """Import servers from another configuration file."""
    runtime = _get_runtime(ctx)
    mode = "replace" if replace else "merge"
    with runtime.logger.operation(
        "config import",
        args={"mode": mode, "dry_run": dry_run},
        target={"kind": "config", "source": source},
    ) as op:
        try:
            incoming = load_external(source, server_key=runtime.store.server_key)
            current = runtime.store.load()
            diff = diff_servers(incoming, current)
            if replace:
                result = incoming
            else:
                result = merge_configurations(current, incoming)
                diff = ServerDiff(added=diff.added, overwritten=diff.overwritten)
            console.print(_plan_table(_diff_rows(diff), title=f"Import ({mode})"))
            if dry_run:
                _dry_run_complete(op, f"{mode} of {source} previewed.", context=diff.to_dict())
                return
            if not force and not runtime.prompter.confirm("Apply this import?", default=True):
                _cancelled(op)
            backups = _auto_backup(runtime, op, current, skip=no_backup, prefix="pre_import")
            runtime.store.save(result)
        except ForgeError as exc:
            _forge_error(op, exc)
        console.print(f"[green]Imported {len(incoming.servers)} server(s) from {source}.[/green]")
        op.success("Imported configuration.", changed=len(incoming.servers), backups=backups)


# ----------------------------------------------------------------------
# backup
# ----------------------------------------------------------------------
def _backup_summary(record: BackupRecord) -> dict[str, object]:
    summary: dict[str, object] = dict(record.metadata.to_dict())
    summary["path"] = str(record.path) if record.path else None
    return summary


@backups_app.command("create")
def backup_create(
    ctx: typer.Context,
    name: str | None = typer.Argument(None, help="Backup name (defaults to a timestamp)."),
    description: str | None = typer.Option(
        None, "--description", "-d", help="Free-text description stored with the backup."
    ),
    auto_name: bool = typer.Option(
        False, "--auto-name", help="Generate an 'auto_<timestamp>' name."
    ),
    json_output: bool = JSON_OPTION,
) -> None:
    """Back up the current client configuration (or the selected profile's snapshot)."""
    runtime = _get_runtime(ctx)
    with runtime.logger.operation(
        "backup create",
        args={"name": name, "auto_name": auto_name, "profile": runtime.profile},
        target={"kind": "backup"},
    ) as op:
        try:
            if runtime.profile is not None and description is None:
                description = f"Snapshot of profile '{runtime.profile}'"
            path = runtime.backups.create(
                _load_document(runtime),
                None if auto_name else name,
                description=description,
                prefix="auto" if auto_name else None,
            )
            record = runtime.backups.load(path.stem)
        except ForgeError as exc:
            _forge_error(op, exc)
        if json_output:
            console.print_json(data=_backup_summary(record))
        else:
            console.print(
                f"[green]Backup '{record.name}' created[/green] "
                f"({record.metadata.servers_count} servers) at {path}."
            )
        op.success("Created backup.", changed=1, backups=[record.name])


@backups_app.command("list")
def backup_list(ctx: typer.Context, json_output: bool = JSON_OPTION) -> None:
    """List readable backups, newest first."""
    runtime = _get_runtime(ctx)
    with runtime.logger.operation(
        "backup list",
        args={"json": json_output},
        target={"kind": "backup", "scope": "directory"},
    ) as op:
        try:
            records = runtime.backups.list_backups()
        except ForgeError as exc:
            _forge_error(op, exc)
        if json_output:
            console.print_json(data={"backups": [_backup_summary(record) for record in records]})
            op.success("Reported backups as JSON.", changed=0)
            return

        table = Table(show_header=True, header_style="bold magenta")
        table.add_column("Name", style="bold")
        table.add_column("Created")
        table.add_column("Servers")
        table.add_column("Git")
        table.add_column("Description")
        if not records:
            table.add_row("(none)", "", "", "", "")
        for record in records:
            meta = record.metadata
            vcs = "@".join(part for part in (meta.vcs_branch, meta.vcs_commit) if part)
            table.add_row(
                meta.name,
                format_timestamp(meta.created_at),
                str(meta.servers_count),
                vcs,
                meta.description or "",
            )
        console.print(table)
        op.success("Reported backups.", changed=0, context={"count": len(records)})


@backups_app.command("show")
def backup_show(
    ctx: typer.Context,
    name: str = typer.Argument(..., help="Backup name or unique part of it."),
    json_output: bool = JSON_OPTION,
) -> None:
    """Show a backup's metadata and servers."""
    runtime = _get_runtime(ctx)
    with runtime.logger.operation(
        "backup show",
        args={"json": json_output},
        target={"kind": "backup", "name": name},
    ) as op:
        try:
            record = runtime.backups.load(name)
        except ForgeError as exc:
            _forge_error(op, exc)
        if json_output:
            payload = _backup_summary(record)
            payload["config"] = record.config.to_dict(server_key=runtime.store.server_key)
            console.print_json(data=payload)
        else:
            for key, value in _backup_summary(record).items():
                console.print(f"[bold]{key}[/bold]: {value if value is not None else '-'}")
            console.print(_servers_table(record.config))
        op.success("Reported backup.", changed=0)


@backups_app.command("restore")
def backup_restore(
    ctx: typer.Context,
    name: str = typer.Argument(..., help="Backup name or unique part of it."),
    server: str | None = typer.Option(
        None, "--server", "-s", help="Restore only this server from the backup."
    ),
    force: bool = typer.Option(False, "--force", help="Restore without confirmation."),
    dry_run: bool = DRY_RUN_OPTION,
    no_backup: bool = NO_BACKUP_OPTION,
) -> None:
    """Restore the client configuration (or a single server) from a backup."""
    runtime = _get_runtime(ctx)
    with runtime.logger.operation(
        "backup restore",
        args={"server": server, "dry_run": dry_run, "force": force},
        target={"kind": "backup", "name": name},
    ) as op:
        try:
            record = runtime.backups.load(name)
            current = runtime.store.load()
            plan = runtime.backups.preview_restore(current, record, server)
            console.print(_plan_table(plan, title=f"Restore from '{record.name}'"))
            if dry_run:
                _dry_run_complete(
                    op, f"restore from '{record.name}' previewed.", context={"plan": plan}
                )
                return
            if not force and not runtime.prompter.confirm(
                f"Restore from backup '{record.name}'?", default=False
            ):
                _cancelled(op)
            backups = _auto_backup(runtime, op, current, skip=no_backup, prefix="pre_restore")
            runtime.backups.restore(record, server)
        except ForgeError as exc:
            _forge_error(op, exc)
        scope = f"server '{server}'" if server else "configuration"
        console.print(f"[green]Restored {scope} from backup '{record.name}'.[/green]")
        op.success("Restored backup.", changed=1, backups=backups, context={"source": record.name})


@backups_app.command("clean")
def backup_clean(
    ctx: typer.Context,
    older_than: str | None = typer.Option(
        None,
        "--older-than",
        help="Delete backups older than this age (e.g. 30d, 2w, 24h, 60m). "
        "Defaults to the backups.default_retention setting.",
    ),
    force: bool = typer.Option(False, "--force", help="Delete without confirmation."),
    dry_run: bool = DRY_RUN_OPTION,
) -> None:
    """Delete backups older than a given age."""
    runtime = _get_runtime(ctx)
    age = older_than or runtime.config.backups.default_retention
    with runtime.logger.operation(
        "backup clean",
        args={"older_than": age, "force": force, "dry_run": dry_run},
        target={"kind": "backup", "scope": "directory"},
    ) as op:
        try:
            candidates = runtime.backups.older_than(age)
            if not candidates:
                console.print(f"No backups older than {age}.")
                op.success("Nothing to clean.", changed=0)
                return
            for record in candidates:
                console.print(f"  {record.name} ({format_timestamp(record.metadata.created_at)})")
            if dry_run:
                _dry_run_complete(
                    op,
                    f"{len(candidates)} backup(s) would be deleted.",
                    context={"candidates": [record.name for record in candidates]},
                )
                return
            confirmed = force or runtime.prompter.confirm(
                f"Delete {len(candidates)} backup(s)?", default=False
            )
            if not confirmed:
                _cancelled(op)
            result = runtime.backups.clean(age, confirmed=True)
        except ForgeError as exc:
            _forge_error(op, exc)

        console.print(f"[green]Deleted {result.count} backup(s).[/green]")
        if result.failures:
            for failed_name, reason in result.failures:
                err_console.print(f"[red]Failed to delete {failed_name}: {reason}[/red]")
            op.warning(
                "Some backups could not be deleted.",
                warnings=[f"{failed}: {reason}" for failed, reason in result.failures],
                changed=result.count,
            )
            raise typer.Exit(code=int(ExitCode.ENVIRONMENT))
        op.success("Cleaned backups.", changed=result.count, context={"deleted": result.deleted})


# ----------------------------------------------------------------------
# profile
# ----------------------------------------------------------------------
def _profile_payload(info: ProfileInfo, current: str | None) -> dict[str, object]:
    payload = dict(info.to_dict())
    payload["current"] = info.name == current
    return payload


@profiles_app.command("create")
def profile_create(
    ctx: typer.Context,
    name: str = typer.Argument(..., help="Profile name."),
    description: str | None = typer.Option(
        None, "--description", "-d", help="Free-text description for the profile."
    ),
) -> None:
    """Create an empty profile."""
    runtime = _get_runtime(ctx)
    with runtime.logger.operation(
        "profile create",
        target={"kind": "profile", "name": name},
    ) as op:
        try:
            registry = runtime.profiles.load_registry()
            runtime.profiles.create(registry, name, description)
        except ForgeError as exc:
            _forge_error(op, exc)
        console.print(f"[green]Created profile '{name}'.[/green]")
        console.print(
            f"[dim]Run 'mcp-forge profile save {name}' to capture the current configuration.[/dim]"
        )
        op.success("Created profile.", changed=1)


@profiles_app.command("list")
def profile_list(ctx: typer.Context, json_output: bool = JSON_OPTION) -> None:
    """List profiles."""
    runtime = _get_runtime(ctx)
    with runtime.logger.operation(
        "profile list",
        args={"json": json_output},
        target={"kind": "profile", "scope": "registry"},
    ) as op:
        try:
            registry = runtime.profiles.load_registry()
        except ForgeError as exc:
            _forge_error(op, exc)
        profiles = runtime.profiles.list_profiles(registry)
        if json_output:
            console.print_json(
                data={
                    "current_profile": registry.current_profile,
                    "profiles": [
                        _profile_payload(info, registry.current_profile) for info in profiles
                    ],
                }
            )
            op.success("Reported profiles as JSON.", changed=0)
            return

        table = Table(show_header=True, header_style="bold magenta")
        table.add_column("", width=1)
        table.add_column("Name", style="bold")
        table.add_column("Servers")
        table.add_column("Last used")
        table.add_column("Description")
        if not profiles:
            table.add_row("", "(none)", "", "", "")
        for info in profiles:
            table.add_row(
                "*" if info.name == registry.current_profile else "",
                info.name,
                str(info.server_count),
                format_timestamp(info.last_used) if info.last_used else "never",
                info.description or "",
            )
        console.print(table)
        op.success("Reported profiles.", changed=0, context={"count": len(profiles)})


@profiles_app.command("current")
def profile_current(ctx: typer.Context, json_output: bool = JSON_OPTION) -> None:
    """Show the active profile and whether the configuration has drifted from it."""
    runtime = _get_runtime(ctx)
    with runtime.logger.operation(
        "profile current",
        args={"json": json_output},
        target={"kind": "profile", "scope": "current"},
    ) as op:
        try:
            registry = runtime.profiles.load_registry()
            info = runtime.profiles.current(registry)
            unsaved = runtime.profiles.has_unsaved_changes(registry)
        except ForgeError as exc:
            _forge_error(op, exc)
        if json_output:
            console.print_json(
                data={
                    "current_profile": info.to_dict() if info else None,
                    "unsaved_changes": unsaved,
                }
            )
        elif info is None:
            console.print("No profile is active.")
        else:
            console.print(f"Current profile: [bold]{info.name}[/bold] ({info.server_count} servers)")
            if unsaved:
                console.print(
                    "[yellow]The configuration has unsaved changes relative to this profile.[/yellow]"
                )
        op.success("Reported current profile.", changed=0)


@profiles_app.command("switch")
def profile_switch(
    ctx: typer.Context,
    name: str = typer.Argument(..., help="Profile to activate."),
    save: bool | None = typer.Option(
        None,
        "--save/--discard",
        help="Save or discard unsaved changes to the current profile without asking.",
    ),
) -> None:
    """Activate a profile, copying its snapshot into the client configuration."""
    runtime = _get_runtime(ctx)

    def _decide(current: str) -> bool:
        if save is not None:
            return save
        return runtime.prompter.confirm(
            f"The configuration has unsaved changes. Save them to profile '{current}' first?",
            default=True,
        )

    with runtime.logger.operation(
        "profile switch",
        args={"save": save},
        target={"kind": "profile", "name": name},
    ) as op:
        try:
            registry = runtime.profiles.load_registry()
            runtime.profiles.require(registry, name)
            backups = _auto_backup(
                runtime, op, runtime.store.load(), skip=False, prefix="pre_switch"
            )
            result = runtime.profiles.switch(registry, name, save_current=_decide)
        except ForgeError as exc:
            _forge_error(op, exc)
        if result.had_unsaved_changes:
            action = "saved to" if result.saved_previous else "discarded from"
            console.print(f"Unsaved changes {action} profile '{result.previous}'.")
        console.print(f"[green]Switched to profile '{name}'.[/green]")
        op.success(
            "Switched profile.",
            changed=1,
            backups=backups,
            context={"previous": result.previous, "saved_previous": result.saved_previous},
        )


@profiles_app.command("save")
def profile_save(
    ctx: typer.Context,
    name: str | None = typer.Argument(None, help="Profile to save into (defaults to current)."),
) -> None:
    """Save the client configuration as a profile's snapshot."""
    runtime = _get_runtime(ctx)
    with runtime.logger.operation(
        "profile save",
        target={"kind": "profile", "name": name},
    ) as op:
        try:
            registry = runtime.profiles.load_registry()
            updated = runtime.profiles.save(registry, name)
        except ForgeError as exc:
            _forge_error(op, exc)
        saved = name or updated.current_profile
        count = updated.profiles[saved].server_count if saved else 0
        console.print(f"[green]Saved configuration to profile '{saved}' ({count} servers).[/green]")
        op.success("Saved profile.", changed=1)


@profiles_app.command("sync")
def profile_sync(
    ctx: typer.Context,
    source: str = typer.Argument(
        ..., help=f"Source profile, or '{DEFAULT_SOURCE}' for the client configuration."
    ),
    target: str = typer.Argument(..., help="Profile whose snapshot is replaced."),
    force: bool = typer.Option(False, "--force", help="Apply without confirmation."),
    dry_run: bool = DRY_RUN_OPTION,
) -> None:
    """Replace TARGET's snapshot with SOURCE."""
    runtime = _get_runtime(ctx)
    with runtime.logger.operation(
        "profile sync",
        args={"dry_run": dry_run, "force": force},
        target={"kind": "profile", "source": source, "name": target},
    ) as op:
        try:
            registry = runtime.profiles.load_registry()
            _, plan = runtime.profiles.sync(registry, source, target, dry_run=True)
            console.print(_plan_table(_diff_rows(plan.diff), title=f"Sync {source} -> {target}"))
            if dry_run:
                _dry_run_complete(op, f"sync {source} -> {target} previewed.", context=plan.to_dict())
                return
            if not force and not runtime.prompter.confirm(
                f"Replace profile '{target}' with '{source}'?", default=True
            ):
                _cancelled(op)
            _, plan = runtime.profiles.sync(registry, source, target, dry_run=False)
        except ForgeError as exc:
            _forge_error(op, exc)
        console.print(f"[green]Synced '{source}' into profile '{target}'.[/green]")
        op.success("Synced profile.", changed=1, context=plan.to_dict())


@profiles_app.command("delete")
def profile_delete(
    ctx: typer.Context,
    name: str = typer.Argument(..., help="Profile to delete."),
    force: bool = typer.Option(
        False,
        "--force",
        help="Delete without confirmation, even when it is the current profile.",
    ),
) -> None:
    """Delete a profile and its snapshot. The client configuration is untouched."""
    runtime = _get_runtime(ctx)
    with runtime.logger.operation(
        "profile delete",
        args={"force": force},
        target={"kind": "profile", "name": name},
    ) as op:
        try:
            registry = runtime.profiles.load_registry()
            confirmed = force
            if not force and name in registry.profiles and registry.current_profile != name:
                confirmed = runtime.prompter.confirm(f"Delete profile '{name}'?", default=False)
                if not confirmed:
                    _cancelled(op)
            runtime.profiles.delete(registry, name, force=force, confirmed=confirmed)
        except ForgeError as exc:
            _forge_error(op, exc)
        console.print(f"[green]Deleted profile '{name}'.[/green]")
        op.success("Deleted profile.", changed=1)


def main() -> None:
    """Console script entry point."""
    app()


__all__ = ["app", "main"]
