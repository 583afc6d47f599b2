"""Thin CLI wrapper for fleet_imagegen.

This module provides the command-line interface using Typer.
All business logic is delegated to core modules.
"""

import json
import logging
import time
from typing import Annotated

import typer
from rich.console import Console
from rich.logging import RichHandler

from fleet_imagegen import __version__
from fleet_imagegen.config import get_settings, print_settings_json

app = typer.Typer(
    name="fleet-imagegen",
    help="Fleet image builder - build, release and roll out device images",
    no_args_is_help=True,
)
console = Console()

LOG_FOLLOW_INTERVAL = 1.0


def version_callback(value: bool) -> None:
    """Print version and exit."""
    if value:
        console.print(f"fleet-imagegen version {__version__}")
        raise typer.Exit()


def configure_logging(level: str) -> None:
    """Route log records through Rich at the given level."""
    logging.basicConfig(
        level=level,
        format="%(message)s",
        datefmt="[%X]",
        handlers=[RichHandler(console=console, rich_tracebacks=True)],
    )


@app.callback()
def main(
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
    """Fleet image builder - build, release and roll out device images."""


@app.command()
def config(
    json_output: Annotated[
        bool,
        typer.Option("--json", help="Output as JSON"),
    ] = False,
) -> None:
    """Show effective configuration."""
    settings = get_settings()
    if json_output:
        console.print(print_settings_json(settings))
    else:
        tmp_dir_display = (
            str(settings.tmp_dir) if settings.tmp_dir else "(system default)"
        )
        console.print("[bold]Effective Configuration:[/bold]")
        console.print()
        console.print("[bold]Paths:[/bold]")
        console.print(f"  Source directory:    {settings.source_dir}")
        console.print(f"  Updates directory:   {settings.updates_dir}")
        console.print(f"  Database URL:        {settings.db_url}")
        console.print(f"  Temp directory:      {tmp_dir_display}")
        console.print()
        console.print("[bold]Build:[/bold]")
        console.print(f"  Build command:       {settings.build_command}")
        console.print(f"  Update target:       {settings.update_build_target}")
        console.print(f"  Installer target:    {settings.installer_build_target}")
        console.print(f"  Update base URL:     {settings.update_base_url}")
        console.print()
        console.print("[bold]Operational:[/bold]")
        console.print(f"  Log level:           {settings.log_level}")
        console.print(f"  Listen address:      {settings.host}:{settings.port}")
        console.print(f"  Kernel query timeout: {settings.kernel_query_timeout}s")


@app.command()
def serve(
    host: Annotated[
        str | None,
        typer.Option("--host", help="Listen address (overrides settings)"),
    ] = None,
    port: Annotated[
        int | None,
        typer.Option("--port", "-p", help="Listen port (overrides settings)"),
    ] = None,
) -> None:
    """Run the HTTP API server."""
    import uvicorn

    settings = get_settings()
    configure_logging(settings.log_level)
    uvicorn.run(
        "web.app:app",
        host=host or settings.host,
        port=port or settings.port,
        log_config=None,
    )


@app.command()
def recover() -> None:
    """Fail builds left running by a crashed server.

    The server runs this on startup; use it when the database is shared
    with a server that is not coming back.
    """
    from fleet_imagegen.builds.orchestrator import recover_interrupted_builds
    from fleet_imagegen.builds.store import BuildStore
    from fleet_imagegen.db import create_all_tables, get_engine, get_session_factory

    settings = get_settings()
    configure_logging(settings.log_level)
    engine = get_engine(settings.db_url)
    create_all_tables(engine)
    store = BuildStore(get_session_factory(engine))

    builds, installers = recover_interrupted_builds(store)
    console.print(
        f"[green]Recovered {builds} build(s) and {installers} installer build(s)"
        "[/green]"
    )


kernels_app = typer.Typer(help="Inspect selectable kernels")
app.add_typer(kernels_app, name="kernels")


@kernels_app.command("list")
def kernels_list(
    json_output: Annotated[
        bool,
        typer.Option("--json", help="Output as JSON"),
    ] = False,
) -> None:
    """List kernels that profiles may select."""
    from fleet_imagegen.profiles.kernel import (
        KernelQueryError,
        list_available_kernel_options,
    )

    settings = get_settings()
    try:
        options = list_available_kernel_options(
            settings.kernel_options_flake_ref,
            build_command=settings.build_command,
            timeout=settings.kernel_query_timeout,
        )
    except KernelQueryError as e:
        console.print(f"[red]{e}[/red]")
        raise typer.Exit(code=1) from None

    if json_output:
        output = [{"attr": o.attr, "version": o.version} for o in options]
        console.print(json.dumps(output, indent=2))
        return

    if not options:
        console.print("[yellow]No kernels found[/yellow]")
        return
    for option in options:
        console.print(f"  [green]{option.attr}[/green] {option.version}")


builds_app = typer.Typer(help="Inspect image builds")
app.add_typer(builds_app, name="builds")


@builds_app.command("list")
def builds_list(
    fleet_id: Annotated[
        str | None,
        typer.Option("--fleet", "-f", help="Filter by fleet ID"),
    ] = None,
    status: Annotated[
        str | None,
        typer.Option(
            "--status", "-s", help="Filter by status (queued/running/succeeded/failed)"
        ),
    ] = None,
    limit: Annotated[
        int,
        typer.Option("--limit", "-l", help="Maximum number of records to return"),
    ] = 100,
    json_output: Annotated[
        bool,
        typer.Option("--json", help="Output as JSON"),
    ] = False,
) -> None:
    """List build records."""
    from fleet_imagegen.builds.service import list_builds
    from fleet_imagegen.db import create_all_tables, get_engine, get_session_factory
    from fleet_imagegen.types import BuildStatus

    engine = get_engine()
    create_all_tables(engine)
    factory = get_session_factory(engine)

    status_filter: BuildStatus | None = None
    if status:
        try:
            status_filter = BuildStatus(status)
        except ValueError:
            console.print(f"[red]Invalid status: {status}[/red]")
            console.print("Valid values: queued, running, succeeded, failed")
            raise typer.Exit(code=1) from None

    with factory() as session:
        builds = list_builds(
            session, fleet_id=fleet_id, status=status_filter, limit=limit
        )

        if not builds:
            if json_output:
                console.print("[]")
            else:
                console.print("[yellow]No build records found[/yellow]")
            return

        if json_output:
            output = [
                {
                    "id": b.id,
                    "fleet_id": b.fleet_id,
                    "version": b.version,
                    "status": b.status,
                    "artifact_url": b.artifact_url,
                    "installer_status": b.installer_status,
                    "installer_artifact_url": b.installer_artifact_url,
                    "created_at": b.created_at.isoformat() if b.created_at else None,
                    "started_at": b.started_at.isoformat() if b.started_at else None,
                    "finished_at": b.finished_at.isoformat()
                    if b.finished_at
                    else None,
                }
                for b in builds
            ]
            console.print(json.dumps(output, indent=2))
        else:
            console.print(f"[bold]Found {len(builds)} build(s):[/bold]")
            console.print()
            for b in builds:
                status_color = {
                    "succeeded": "green",
                    "failed": "red",
                    "running": "blue",
                    "queued": "yellow",
                }.get(b.status, "white")
                console.print(f"  [{status_color}]Build {b.id}[/{status_color}]")
                console.print(f"    Fleet: {b.fleet_id}")
                console.print(f"    Version: {b.version}")
                console.print(f"    Status: {b.status}")
                console.print(f"    Installer: {b.installer_status}")
                if b.artifact_url:
                    console.print(f"    Artifact: {b.artifact_url}")
                console.print()


@builds_app.command("logs")
def builds_logs(
    build_id: Annotated[str, typer.Argument(help="Build ID")],
    installer: Annotated[
        bool,
        typer.Option("--installer", help="Show the installer build log"),
    ] = False,
    follow: Annotated[
        bool,
        typer.Option("--follow", "-f", help="Keep polling until the build ends"),
    ] = False,
) -> None:
    """Print the persisted output of a build."""
    from fleet_imagegen.builds.logs import read_log_page
    from fleet_imagegen.builds.service import BuildNotFoundError
    from fleet_imagegen.builds.store import BuildStore
    from fleet_imagegen.db import create_all_tables, get_engine, get_session_factory

    engine = get_engine()
    create_all_tables(engine)
    store = BuildStore(get_session_factory(engine))

    after = 0
    while True:
        try:
            page = read_log_page(store, build_id, after, installer=installer)
        except BuildNotFoundError:
            console.print(f"[red]Build not found: {build_id}[/red]")
            raise typer.Exit(code=1) from None

        if page.chunk:
            console.out(page.chunk, end="", highlight=False)
        if page.done:
            return
        if page.next_after == after:
            if not follow:
                return
            time.sleep(LOG_FOLLOW_INTERVAL)
        after = page.next_after


if __name__ == "__main__":
    app()
