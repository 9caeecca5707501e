"""Command-line interface for autotrack."""

from __future__ import annotations

import logging
from contextlib import contextmanager
from datetime import datetime
from pathlib import Path
from typing import TYPE_CHECKING, Iterator, Optional

import typer

from .config import ConfigReloader, write_sample_config
from .errors import AutotrackError, ConfigurationError, CycleInProgressError
from .models import AutoRegistered, PendingConfirmation, Skipped, utc_now
from .paths import get_config_path, get_db_path

if TYPE_CHECKING:
    from .service import TrackerService

app = typer.Typer(help="Turns desktop activity into time-tracking entries.")

CONFIG_OPTION = typer.Option(
    None, "--config", "-c", path_type=Path, help="Path to config.toml."
)


@app.callback(no_args_is_help=True)
def main(verbose: bool = typer.Option(False, "--verbose", "-v", help="Enable verbose logs.")) -> None:
    logging.basicConfig(
        level=logging.DEBUG if verbose else logging.INFO,
        format="%(asctime)s %(levelname)s %(name)s %(message)s",
    )
    logging.getLogger("httpx").setLevel(logging.DEBUG if verbose else logging.WARNING)


def _reloader(config_path: Optional[Path]) -> ConfigReloader:
    try:
        return ConfigReloader(config_path or get_config_path())
    except ConfigurationError as exc:
        typer.secho(f"Configuration error: {exc}", fg=typer.colors.RED, err=True)
        raise typer.Exit(code=2) from exc


def _db_path(reloader: ConfigReloader) -> Path:
    return get_db_path(reloader.config.general.data_dir)


def _build_service(config_path: Optional[Path]) -> "TrackerService":
    from .service import TrackerService

    reloader = _reloader(config_path)
    try:
        return TrackerService(reloader, _db_path(reloader))
    except ConfigurationError as exc:
        typer.secho(f"Configuration error: {exc}", fg=typer.colors.RED, err=True)
        raise typer.Exit(code=2) from exc


@contextmanager
def _service(config_path: Optional[Path]) -> Iterator["TrackerService"]:
    service = _build_service(config_path)
    try:
        yield service
    finally:
        service.close()


@app.command("init-config")
def init_config(
    config_path: Optional[Path] = CONFIG_OPTION,
    force: bool = typer.Option(False, "--force", help="Overwrite an existing file."),
) -> None:
    """Write a commented sample configuration."""
    path = config_path or get_config_path()
    try:
        write_sample_config(path, overwrite=force)
    except FileExistsError as exc:
        typer.secho(f"{path} already exists; use --force to replace it.", err=True)
        raise typer.Exit(code=1) from exc
    typer.echo(f"Wrote {path}. Fill in [toggl] before running `autotrack run`.")


@app.command()
def run(
    config_path: Optional[Path] = CONFIG_OPTION,
    sample: bool = typer.Option(
        True, "--sample/--no-sample", help="Sample the active window in this process."
    ),
) -> None:
    """Sample, analyse and register continuously until interrupted."""
    _build_service(config_path).run_forever(sample=sample)


@app.command()
def analyze(config_path: Optional[Path] = CONFIG_OPTION) -> None:
    """Process every finished cycle that has not been analysed yet."""
    with _service(config_path) as service:
        try:
            reports = service.pipeline.run_due_cycles()
        except CycleInProgressError as exc:
            typer.secho(str(exc), err=True)
            raise typer.Exit(code=1) from exc
    if not reports:
        typer.echo("No finished cycles to analyse.")
    for report in reports:
        typer.echo(
            f"{report.window.start.astimezone():%Y-%m-%d %H:%M}"
            f"  registered={report.count(AutoRegistered)}"
            f"  pending={report.count(PendingConfirmation)}"
            f"  skipped={report.count(Skipped)}"
            f"  ({report.classifier})"
        )


@app.command()
def pending(config_path: Optional[Path] = CONFIG_OPTION) -> None:
    """List segments waiting for confirmation."""
    from .ledger import PendingQueue
    from .reporting import print_pending

    reloader = _reloader(config_path)
    queue = PendingQueue(_db_path(reloader))
    try:
        print_pending(queue.items())
    finally:
        queue.close()


@app.command()
def confirm(
    key: str = typer.Argument(..., help="Segment key shown by `autotrack pending`."),
    label: str = typer.Argument(..., help="Description for the time entry."),
    project: Optional[str] = typer.Option(None, "--project", "-p", help="Project name."),
    config_path: Optional[Path] = CONFIG_OPTION,
) -> None:
    """Register a pending segment with the given label."""
    with _service(config_path) as service:
        try:
            outcome = service.pipeline.engine().confirm(key, label, project)
        except KeyError as exc:
            typer.secho(f"No pending segment {key}", err=True)
            raise typer.Exit(code=1) from exc
        except ValueError as exc:
            typer.secho(str(exc), err=True)
            raise typer.Exit(code=1) from exc
    if isinstance(outcome, AutoRegistered):
        typer.echo(f"Registered as entry {outcome.entry_id}.")
    else:
        typer.secho(f"Not registered: {outcome}", fg=typer.colors.RED, err=True)
        raise typer.Exit(code=1)


@app.command()
def dismiss(
    key: str = typer.Argument(..., help="Segment key shown by `autotrack pending`."),
    config_path: Optional[Path] = CONFIG_OPTION,
) -> None:
    """Drop a pending segment without registering it."""
    from .ledger import PendingQueue

    queue = PendingQueue(_db_path(_reloader(config_path)))
    try:
        removed = queue.remove(key)
    finally:
        queue.close()
    if not removed:
        typer.secho(f"No pending segment {key}", err=True)
        raise typer.Exit(code=1)
    typer.echo("Dismissed.")


@app.command()
def summary(
    date: Optional[str] = typer.Option(
        None,
        "--date",
        help="Date (YYYY-MM-DD) to summarize. Defaults to today.",
    ),
    config_path: Optional[Path] = CONFIG_OPTION,
) -> None:
    """Print registered and pending time for a specific day."""
    from .ledger import PendingQueue, RegistrationLedger
    from .reporting import SummaryPrinter

    target = datetime.strptime(date, "%Y-%m-%d") if date else datetime.now()
    db_path = _db_path(_reloader(config_path))
    ledger, queue = RegistrationLedger(db_path), PendingQueue(db_path)
    try:
        SummaryPrinter(ledger, queue).print_daily_summary(target.date())
    finally:
        ledger.close()
        queue.close()


@app.command()
def prune(config_path: Optional[Path] = CONFIG_OPTION) -> None:
    """Delete samples and calendar events past the retention period."""
    with _service(config_path) as service:
        try:
            samples, events = service.pipeline.prune(service.reloader.current(), utc_now())
        except AutotrackError as exc:
            typer.secho(str(exc), err=True)
            raise typer.Exit(code=1) from exc
    typer.echo(f"Pruned {samples} samples and {events} calendar events.")


@app.command()
def web(
    host: str = typer.Option("127.0.0.1", "--host", help="Interface to bind the API."),
    port: int = typer.Option(
        8765, "--port", min=1, max=65535, help="TCP port for the API."
    ),
    open_browser: bool = typer.Option(
        False,
        "--open-browser/--no-open-browser",
        help="Open the interactive API docs in your default browser.",
    ),
    config_path: Optional[Path] = CONFIG_OPTION,
) -> None:
    """Serve the local API with sampling and analysis in the background."""
    from .server_runner import run_dashboard

    run_dashboard(_build_service(config_path), host=host, port=port, open_browser=open_browser)
