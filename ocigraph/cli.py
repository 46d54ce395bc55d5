"""Thin CLI wrapper for ocigraph.

This module provides the command-line interface using Typer.
All business logic is delegated to core modules.
"""

import logging
from pathlib import Path
from typing import TYPE_CHECKING, Annotated

import typer
from rich.console import Console
from rich.table import Table

from ocigraph import __version__
from ocigraph.config import Settings, get_settings, print_settings_json
from ocigraph.errors import ConfigurationError, LoadError

if TYPE_CHECKING:
    from ocigraph.builds.history import BuildHistory
    from ocigraph.builds.scheduler import RunReport

app = typer.Typer(
    name="ocigraph",
    help="Incremental, dependency-ordered container image builds",
    invoke_without_command=True,
)
console = Console()

STATE_STYLES = {
    "built": "green",
    "fresh": "cyan",
    "failed": "red",
    "blocked": "yellow",
    "pending": "dim",
    "building": "blue",
}


def version_callback(value: bool) -> None:
    """Print version and exit."""
    if value:
        console.print(f"ocigraph version {__version__}")
        raise typer.Exit()


def _settings(ctx: typer.Context) -> Settings:
    settings = ctx.obj if isinstance(ctx.obj, Settings) else None
    if settings is None:
        settings = get_settings()
        ctx.obj = settings
    return settings


def _configure_logging(level: str) -> None:
    logging.basicConfig(
        level=getattr(logging, level),
        format="%(levelname)s %(name)s: %(message)s",
        force=True,
    )


@app.callback()
def main(
    ctx: typer.Context,
    workspace: Annotated[
        Path | None,
        typer.Option("--workspace", "-C", help="Workspace root"),
    ] = None,
    packages_file: Annotated[
        Path | None,
        typer.Option("--packages", "-p", help="Package declaration file"),
    ] = None,
    verbose: Annotated[
        bool,
        typer.Option("--verbose", "-v", help="Enable debug logging"),
    ] = False,
    version: Annotated[
        bool | None,
        typer.Option(
            "--version",
            "-V",
            help="Show version and exit",
            callback=version_callback,
            is_eager=True,
        ),
    ] = None,
) -> None:
    """Incremental, dependency-ordered container image builds.

    Without a command, builds the default package set.
    """
    settings = get_settings()
    if workspace is not None:
        settings.workspace = workspace.resolve()
    if packages_file is not None:
        settings.packages_file = packages_file
    if verbose:
        settings.log_level = "DEBUG"
    ctx.obj = settings
    _configure_logging(settings.log_level)

    if ctx.invoked_subcommand is None:
        _run_build(settings, None)


@app.command()
def config(
    ctx: typer.Context,
    json_output: Annotated[
        bool,
        typer.Option("--json", help="Output as JSON"),
    ] = False,
) -> None:
    """Show effective configuration."""
    settings = _settings(ctx)
    if json_output:
        console.print_json(print_settings_json(settings))
        return

    console.print("[bold]Effective Configuration:[/bold]")
    console.print()
    console.print("[bold]Paths:[/bold]")
    console.print(f"  Workspace:           {settings.workspace}")
    console.print(f"  Package file:        {settings.packages_path}")
    console.print(f"  Output directory:    {settings.out_path}")
    console.print(f"  Log directory:       {settings.log_path}")
    console.print(f"  Database URL:        {settings.effective_db_url}")
    console.print()
    console.print("[bold]Images:[/bold]")
    console.print(f"  Registry:            {settings.registry}")
    console.print(f"  Version:             {settings.version}")
    console.print(f"  Default platform:    {settings.default_platform}")
    console.print(f"  Source date epoch:   {settings.source_date_epoch}")
    console.print(f"  No cache:            {settings.no_cache}")
    console.print()
    console.print("[bold]Execution:[/bold]")
    console.print(f"  Backend:             {settings.backend_binary}")
    console.print(f"  Max builds:          {settings.max_concurrent_builds}")
    console.print(f"  Keep going:          {settings.keep_going}")
    console.print(f"  Log level:           {settings.log_level}")


def _open_history(settings: Settings) -> "BuildHistory":
    from ocigraph.builds.history import BuildHistory
    from ocigraph.db import init_history_db

    return BuildHistory(init_history_db(settings.effective_db_url))


def _print_report(report: "RunReport", json_output: bool) -> None:
    if json_output:
        console.print_json(data=report.to_dict())
        return

    for outcome in report.outcomes:
        style = STATE_STYLES.get(outcome.state.value, "white")
        line = f"  [{style}]{outcome.state.value:<8}[/{style}] {outcome.package}"
        if outcome.reasons:
            line += f"  ({'; '.join(outcome.reasons)})"
        if outcome.contexts:
            line += f"  contexts: {', '.join(outcome.contexts)}"
        console.print(line)
        if outcome.error is not None:
            console.print(f"    [red]{outcome.phase}: {outcome.error}[/red]")
            diagnostics = getattr(outcome.error, "diagnostics", None)
            if diagnostics:
                console.print(diagnostics.rstrip(), markup=False, highlight=False)
            if outcome.log_path is not None:
                console.print(f"    Log: {outcome.log_path}")

    if report.success:
        console.print("[green]All packages up to date[/green]")
    else:
        console.print(
            f"[red]{len(report.failed)} failed, {len(report.blocked)} blocked[/red]"
        )


def _run_build(
    settings: Settings,
    names: list[str] | None,
    force: list[str] | None = None,
    record_history: bool = True,
    json_output: bool = False,
) -> None:
    from ocigraph.builds.service import create_runner, load_graph

    try:
        graph = load_graph(settings)
        history = _open_history(settings) if record_history else None
        runner = create_runner(settings, graph, history=history, force=force)
        report = runner.run(names)
    except ConfigurationError as e:
        console.print(f"[red]Configuration error: {e}[/red]")
        raise typer.Exit(code=1) from None

    _print_report(report, json_output)
    if not report.success:
        raise typer.Exit(code=1)


@app.command()
def build(
    ctx: typer.Context,
    names: Annotated[
        list[str] | None,
        typer.Argument(help="Packages to build (default set if omitted)"),
    ] = None,
    force: Annotated[
        list[str] | None,
        typer.Option("--force", "-f", help="Rebuild this package (repeatable)"),
    ] = None,
    no_cache: Annotated[
        bool,
        typer.Option("--no-cache", help="Disable the backend build cache"),
    ] = False,
    jobs: Annotated[
        int | None,
        typer.Option("--jobs", "-j", min=1, max=16, help="Concurrent builds"),
    ] = None,
    keep_going: Annotated[
        bool,
        typer.Option(
            "--keep-going", "-k", help="Keep building independent packages"
        ),
    ] = False,
    no_history: Annotated[
        bool,
        typer.Option("--no-history", help="Do not record the run"),
    ] = False,
    json_output: Annotated[
        bool,
        typer.Option("--json", help="Output as JSON"),
    ] = False,
) -> None:
    """Build packages whose inputs changed, dependencies first."""
    settings = _settings(ctx)
    if no_cache:
        settings.no_cache = True
    if jobs is not None:
        settings.max_concurrent_builds = jobs
    if keep_going:
        settings.keep_going = True
    _run_build(settings, names, force, not no_history, json_output)


@app.command()
def status(
    ctx: typer.Context,
    json_output: Annotated[
        bool,
        typer.Option("--json", help="Output as JSON"),
    ] = False,
) -> None:
    """Show built, stale and loaded state of every package."""
    from ocigraph.builds.service import create_runner, load_graph, package_status

    settings = _settings(ctx)
    try:
        graph = load_graph(settings)
    except ConfigurationError as e:
        console.print(f"[red]Configuration error: {e}[/red]")
        raise typer.Exit(code=1) from None

    statuses = package_status(create_runner(settings, graph))

    if json_output:
        output = [
            {
                "package": s.name,
                "built": s.built,
                "stale": s.stale,
                "loaded": s.loaded,
                "reasons": s.reasons,
                "error": s.error,
            }
            for s in statuses
        ]
        console.print_json(data=output)
        return

    table = Table(title="Packages")
    table.add_column("Package", style="bold")
    table.add_column("Built")
    table.add_column("State")
    table.add_column("Loaded")
    table.add_column("Reasons")
    for s in statuses:
        if s.error:
            state = "[red]unknown[/red]"
            reasons = s.error
        else:
            state = "[yellow]stale[/yellow]" if s.stale else "[green]fresh[/green]"
            reasons = "; ".join(s.reasons)
        table.add_row(
            s.name, "yes" if s.built else "no", state,
            "yes" if s.loaded else "no", reasons,
        )
    console.print(table)


@app.command()
def graph(
    ctx: typer.Context,
    json_output: Annotated[
        bool,
        typer.Option("--json", help="Output as JSON"),
    ] = False,
) -> None:
    """Show evaluation order, dependencies and context candidates."""
    from ocigraph.builds.service import load_graph

    settings = _settings(ctx)
    try:
        target_graph = load_graph(settings, check_descriptors=False)
    except ConfigurationError as e:
        console.print(f"[red]Configuration error: {e}[/red]")
        raise typer.Exit(code=1) from None

    rows = [
        {
            "package": p.name,
            "output": p.output_mode.value,
            "platform": p.platform,
            "inject_context": p.inject_context,
            "default": p.default,
            "depends_on": list(target_graph.dependencies(p.name)),
            "contexts": list(target_graph.context_candidates(p.name)),
        }
        for p in target_graph.order()
    ]
    if json_output:
        console.print_json(data=rows)
        return

    for i, row in enumerate(rows, start=1):
        console.print(
            f"{i}. [bold]{row['package']}[/bold] "
            f"({row['output']}, {row['platform']})"
        )
        if row["depends_on"]:
            console.print(f"     depends on: {', '.join(row['depends_on'])}")
        if row["contexts"]:
            console.print(f"     may receive: {', '.join(row['contexts'])}")


@app.command()
def load(
    ctx: typer.Context,
    name: Annotated[str, typer.Argument(help="Package to load")],
    force: Annotated[
        bool,
        typer.Option("--force", "-f", help="Load even if already loaded"),
    ] = False,
) -> None:
    """Build a package if needed and load it into the local image store."""
    from ocigraph.builds.service import load_graph
    from ocigraph.builds.store import ArtifactStore
    from ocigraph.images.loader import load_image

    settings = _settings(ctx)
    _run_build(settings, [name])

    store = ArtifactStore(settings.out_path, load_graph(settings).all_packages())
    try:
        loaded = load_image(store, name, settings.backend_binary, force=force)
    except LoadError as e:
        console.print(f"[red]{e}[/red]")
        raise typer.Exit(code=1) from None
    if loaded:
        console.print(f"[green]Loaded {settings.registry}/{name}[/green]")
    else:
        console.print(f"{settings.registry}/{name} already loaded")


@app.command()
def shell(
    ctx: typer.Context,
    command: Annotated[
        str | None,
        typer.Option("--command", "-c", help="Command to run instead of a shell"),
    ] = None,
    package: Annotated[
        str | None,
        typer.Option("--package", help="Image to run (defaults to the dev package)"),
    ] = None,
) -> None:
    """Start a shell (or run a command) inside the dev image.

    The workspace is mounted at /home/user and the invoking user's
    identity is kept.
    """
    from ocigraph.builds.service import load_graph
    from ocigraph.builds.store import ArtifactStore
    from ocigraph.images.loader import load_image, run_shell

    settings = _settings(ctx)
    name = package or settings.dev_package
    _run_build(settings, [name])

    store = ArtifactStore(settings.out_path, load_graph(settings).all_packages())
    try:
        load_image(store, name, settings.backend_binary)
        code = run_shell(
            f"{settings.registry}/{name}",
            settings.workspace,
            command,
            settings.backend_binary,
        )
    except LoadError as e:
        console.print(f"[red]{e}[/red]")
        raise typer.Exit(code=1) from None
    raise typer.Exit(code=code)


@app.command()
def history(
    ctx: typer.Context,
    package: Annotated[
        str | None,
        typer.Option("--package", help="Filter by package"),
    ] = None,
    run_id: Annotated[
        str | None,
        typer.Option("--run", help="Show one run"),
    ] = None,
    last: Annotated[
        bool,
        typer.Option("--last", help="Show the most recent run"),
    ] = False,
    limit: Annotated[
        int,
        typer.Option("--limit", "-n", min=1, help="Maximum records"),
    ] = 20,
    json_output: Annotated[
        bool,
        typer.Option("--json", help="Output as JSON"),
    ] = False,
) -> None:
    """Show recorded package outcomes, newest first."""
    from ocigraph.builds.history import get_run, latest_run_id, list_builds
    from ocigraph.db import get_session

    settings = _settings(ctx)
    factory = _open_history(settings).session_factory

    with get_session(factory) as session:
        if last:
            run_id = run_id or latest_run_id(session)
        if run_id:
            records = get_run(session, run_id)
        elif last:
            records = []
        else:
            records = list_builds(session, package=package, limit=limit)

        if json_output:
            output = [
                {
                    "id": r.id,
                    "run_id": r.run_id,
                    "package": r.package,
                    "status": r.status,
                    "reasons": r.reasons or [],
                    "fingerprint": r.fingerprint,
                    "error_type": r.error_type,
                    "error_message": r.error_message,
                    "started_at": r.started_at.isoformat() if r.started_at else None,
                }
                for r in records
            ]
            console.print_json(data=output)
            return

        if not records:
            console.print("[yellow]No builds recorded[/yellow]")
            return

        for r in records:
            style = STATE_STYLES.get(r.status, "white")
            when = r.started_at.isoformat(timespec="seconds") if r.started_at else "-"
            console.print(
                f"  {r.run_id[:8]}  {when}  "
                f"[{style}]{r.status:<8}[/{style}] {r.package}"
            )
            if r.is_failed() and r.error_message:
                console.print(f"    [red]{r.error_message}[/red]")


__all__ = ["app"]
