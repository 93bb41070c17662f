# === NAVMAP v1 ===
# {
#   "module": "DocHarbor.ArchiveMirror.cli",
#   "purpose": "Typer command line for refreshing and inspecting mirrored archives",
#   "sections": [
#     {"id": "cli-context", "name": "CliContext", "anchor": "class-clicontext", "kind": "class"},
#     {"id": "refresh", "name": "refresh", "anchor": "function-refresh", "kind": "function"},
#     {"id": "status", "name": "status", "anchor": "function-status", "kind": "function"},
#     {"id": "run", "name": "run", "anchor": "function-run", "kind": "function"}
#   ]
# }
# === /NAVMAP ===

"""Command line interface for the archive mirror.

Usage:
    docharbor --config mirror.yaml refresh
    docharbor --config mirror.yaml refresh --project foo
    docharbor --config mirror.yaml status
    docharbor --config mirror.yaml run
"""

from __future__ import annotations

import threading
from pathlib import Path
from typing import List, Optional

import typer
from rich.console import Console
from rich.markup import escape
from rich.table import Table

from . import __version__, net
from .errors import ConfigurationError
from .logging_utils import setup_logging
from .refresher import ArtifactRefresher, RefreshReport, RefreshStatus
from .service import ArchiveMirrorService
from .settings import MirrorSettings, load_settings
from .storage import ArchiveStorage

_console = Console()

SHUTDOWN_POLL_SEC = 1.0

_STATUS_STYLES = {
    RefreshStatus.UPDATED: "green",
    RefreshStatus.UNCHANGED: "cyan",
    RefreshStatus.SKIPPED: "dim",
    RefreshStatus.FAILED: "red",
}


class CliContext:
    """Shared state for commands: the config path and lazily loaded settings."""

    def __init__(self, config: Optional[Path], log_level: str, json_logs: bool) -> None:
        self.config = config
        self.log_level = log_level
        self.json_logs = json_logs
        self.console = _console
        self._settings: Optional[MirrorSettings] = None

    @property
    def settings(self) -> MirrorSettings:
        if self._settings is None:
            try:
                self._settings = load_settings(self.config)
            except ConfigurationError as exc:
                self.console.print(f"[red]Error loading settings: {escape(str(exc))}[/red]")
                raise typer.Exit(code=2) from exc
            setup_logging(
                level=self.log_level or self._settings.logging.level,
                log_dir=self._settings.logging.log_dir,
                json_console=self.json_logs or self._settings.logging.json_console,
                retention_days=self._settings.logging.retention_days,
                max_log_size_mb=self._settings.logging.max_log_size_mb,
            )
            net.configure_http_client(settings=self._settings.http)
        return self._settings


app = typer.Typer(
    name="docharbor",
    help="DocHarbor archive mirror - refresh and inspect documentation archives",
    no_args_is_help=True,
)


def _version_callback(value: bool) -> None:
    if value:
        _console.print(f"docharbor {__version__}")
        raise typer.Exit()


@app.callback()
def main(
    ctx: typer.Context,
    config: Optional[Path] = typer.Option(
        None,
        "--config",
        "-c",
        help="YAML configuration file (defaults to $DOCHARBOR_CONFIG)",
        exists=True,
        dir_okay=False,
    ),
    log_level: str = typer.Option("", "--log-level", help="Override the configured log level"),
    json_logs: bool = typer.Option(False, "--json-logs", help="Emit JSON logs on the console"),
    version: bool = typer.Option(
        False, "--version", callback=_version_callback, is_eager=True, help="Show version and exit"
    ),
) -> None:
    """Archive mirror command line."""

    ctx.obj = CliContext(config=config, log_level=log_level, json_logs=json_logs)


def _render_report(report: RefreshReport) -> Table:
    table = Table(title="Refresh results")
    table.add_column("Project")
    table.add_column("Version")
    table.add_column("Status")
    table.add_column("Detail", overflow="fold")
    for outcome in report.outcomes:
        style = _STATUS_STYLES[outcome.status]
        detail = escape(outcome.reason or outcome.url or "")
        table.add_row(outcome.project, outcome.version, f"[{style}]{outcome.status.value}[/{style}]", detail)
    return table


@app.command()
def refresh(
    ctx: typer.Context,
    project: Optional[List[str]] = typer.Option(
        None, "--project", "-p", help="Only refresh these projects (repeatable)"
    ),
) -> None:
    """Run one refresh cycle and report the outcome of every version."""

    context: CliContext = ctx.obj
    settings = context.settings
    if project:
        unknown = sorted(set(project) - {endpoint.name for endpoint in settings.endpoints})
        if unknown:
            context.console.print(f"[red]Unknown project(s): {', '.join(unknown)}[/red]")
            raise typer.Exit(code=2)

    refresher = ArtifactRefresher(settings)
    try:
        report = refresher.refresh_all(project or None)
    finally:
        net.close_http_client()

    context.console.print(_render_report(report))
    counts = report.counts()
    context.console.print(", ".join(f"{name}: {count}" for name, count in counts.items()))
    if report.failed:
        raise typer.Exit(code=1)


@app.command()
def status(ctx: typer.Context) -> None:
    """List configured versions with their stored archive and manifest details."""

    context: CliContext = ctx.obj
    settings = context.settings
    storage = ArchiveStorage(settings.storage)

    table = Table(title=f"Archives in {storage.root}")
    for column in ("Project", "Version", "Channel", "Stored", "Build", "Size", "Downloaded"):
        table.add_column(column)
    for endpoint in settings.endpoints:
        for version in endpoint.versions:
            stored = storage.has_artifact(endpoint.name, version.name)
            manifest = storage.read_manifest(endpoint.name, version.name) or {}
            build = ""
            if manifest.get("timestamp"):
                build = f"{manifest['timestamp']}-{manifest.get('build_number')}"
            size = ""
            if stored:
                size = str(storage.artifact_path(endpoint.name, version.name).stat().st_size)
            table.add_row(
                endpoint.name,
                version.name,
                version.type.value.lower(),
                "[green]yes[/green]" if stored else "[red]no[/red]",
                build,
                size,
                str(manifest.get("downloaded_at", "")),
            )
    context.console.print(table)


def _wait_for_shutdown(stop: threading.Event) -> None:
    while not stop.wait(timeout=SHUTDOWN_POLL_SEC):
        pass


@app.command()
def run(ctx: typer.Context) -> None:
    """Start the refresh schedule and keep it running until interrupted."""

    context: CliContext = ctx.obj
    settings = context.settings
    service = ArchiveMirrorService(settings)
    service.start()
    context.console.print(
        f"[cyan]Refreshing {len(settings.endpoints)} endpoint(s) every "
        f"{settings.refresh.interval_sec:g}s; press Ctrl+C to stop[/cyan]"
    )
    try:
        _wait_for_shutdown(threading.Event())
    except KeyboardInterrupt:
        context.console.print("[yellow]Stopping...[/yellow]")
    finally:
        service.stop()


def cli_main() -> None:
    """Console script entry point."""

    app()


if __name__ == "__main__":  # pragma: no cover
    cli_main()
