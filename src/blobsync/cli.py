"""CLI entry point for the blob change reconciliation pipeline.

Provides commands:
  - init: Create the Record Store schema
  - ingest / process / verify: Run one stage's poll loop
  - run: Run several loops concurrently in one process
  - status: Display row counts by processing status
  - retry-failed: Return FAILED objects to the processing queue
  - config: Manage the query-service token
"""

from __future__ import annotations

import asyncio
import logging
from pathlib import Path
from typing import Annotated

import keyring
import typer
from keyring.errors import KeyringError
from rich.console import Console
from rich.logging import RichHandler
from rich.panel import Panel
from rich.table import Table

from blobsync.config import (
    KEY_NAME,
    SERVICE_NAME,
    STAGES,
    AppConfig,
    load_config,
    validate_config,
)
from blobsync.database import Database
from blobsync.exceptions import ConfigError

logger = logging.getLogger(__name__)

app = typer.Typer(
    help="blobsync - reconcile archived blob changes with their record and time-series counts",
    rich_markup_mode="rich",
)
console = Console()

config_app = typer.Typer(help="Manage configuration (query token)")
app.add_typer(config_app, name="config")


def setup_logging(verbose: bool = False, log_file: Path | None = None) -> None:
    """Send log records to the console via rich, and optionally to a file."""
    handlers: list[logging.Handler] = [
        RichHandler(console=Console(stderr=True), show_path=False)
    ]
    if log_file is not None:
        file_handler = logging.FileHandler(log_file)
        file_handler.setLevel(logging.DEBUG)
        file_handler.setFormatter(
            logging.Formatter("%(asctime)s %(levelname)s %(name)s: %(message)s")
        )
        handlers.append(file_handler)
    logging.basicConfig(
        level=logging.DEBUG if verbose else logging.INFO,
        format="%(message)s",
        handlers=handlers,
        force=True,
    )


@app.callback()
def app_callback(
    ctx: typer.Context,
    config_path: Annotated[
        Path | None,
        typer.Option("--config", "-c", help="Path to blobsync.json"),
    ] = None,
    verbose: Annotated[
        bool,
        typer.Option("--verbose", "-v", help="Enable debug logging"),
    ] = False,
    log_file: Annotated[
        Path | None,
        typer.Option("--log-file", help="Also write debug logs to this file"),
    ] = None,
) -> None:
    """Configure logging and remember the config path for subcommands."""
    setup_logging(verbose, log_file)
    ctx.obj = config_path


def get_config(ctx: typer.Context, stages: tuple[str, ...] = STAGES) -> AppConfig:
    """Load and validate configuration, exiting with code 1 on problems."""
    try:
        config = load_config(ctx.obj)
        validate_config(config, stages)
    except ConfigError as e:
        console.print("[red]Configuration error:[/red]")
        for problem in e.problems:
            console.print(f"  - {problem}")
        raise typer.Exit(code=1)
    return config


def _run_stages(ctx: typer.Context, stages: tuple[str, ...], once: bool) -> None:
    from blobsync.pipeline.runner import PipelineRunner

    config = get_config(ctx, stages)
    runner = PipelineRunner(config, stages)
    asyncio.run(runner.run(once=once))


@app.command()
def init(ctx: typer.Context) -> None:
    """Create the Record Store schema."""
    config = get_config(ctx, stages=())
    with Database(config.database.path) as db:
        count = db.get_record_count()
    console.print(
        f"[green]✓[/green] Record Store ready at [bold]{config.database.path}[/bold] "
        f"({count} change records)"
    )


@app.command()
def ingest(
    ctx: typer.Context,
    once: Annotated[bool, typer.Option("--once", help="Run a single cycle and exit")] = False,
) -> None:
    """Scan the source collection and upsert change records."""
    _run_stages(ctx, ("ingest",), once)


@app.command()
def process(
    ctx: typer.Context,
    once: Annotated[bool, typer.Option("--once", help="Run a single cycle and exit")] = False,
) -> None:
    """Classify and count objects older than the minimum age."""
    _run_stages(ctx, ("process",), once)


@app.command()
def verify(
    ctx: typer.Context,
    once: Annotated[bool, typer.Option("--once", help="Run a single cycle and exit")] = False,
) -> None:
    """Reconcile completed objects against the time-series store."""
    _run_stages(ctx, ("verify",), once)


@app.command()
def run(
    ctx: typer.Context,
    stage: Annotated[
        list[str] | None,
        typer.Option("--stage", "-s", help="Stage to run (ingest, process, verify); repeatable"),
    ] = None,
    once: Annotated[bool, typer.Option("--once", help="Run a single cycle and exit")] = False,
) -> None:
    """Run the selected poll loops (all by default) as concurrent tasks."""
    selected = tuple(stage) if stage else STAGES
    unknown = [s for s in selected if s not in STAGES]
    if unknown:
        console.print(
            f"[red]Error:[/red] Unknown stage(s): {', '.join(unknown)}. "
            f"Choose from: {', '.join(STAGES)}"
        )
        raise typer.Exit(code=1)
    _run_stages(ctx, selected, once)


@app.command()
def status(ctx: typer.Context) -> None:
    """Display change record counts by processing status."""
    config = get_config(ctx, stages=())
    db_path = Path(config.database.path)
    if not db_path.exists():
        console.print(
            f"[yellow]Database not found:[/yellow] {db_path}\n"
            "Run [bold]blobsync init[/bold] or [bold]blobsync ingest[/bold] first."
        )
        raise typer.Exit(code=1)

    with Database(db_path) as db:
        total = db.get_record_count()
        objects = db.get_object_count()
        status_counts = db.get_status_counts()
        last_modified = db.get_last_modified()

    console.print(Panel(f"Database: [bold]{db_path}[/bold]", title="Pipeline Status"))

    table = Table(title="Change Records by Status")
    table.add_column("Status", style="bold")
    table.add_column("Count", justify="right")
    for s, count in sorted(status_counts.items()):
        style = {
            "NEW": "dim",
            "PROCESSING": "blue",
            "COMPLETED": "cyan",
            "FAILED": "red",
            "VERIFYING": "blue",
            "VERIFIED_OK": "green",
            "VERIFIED_FAILED": "red",
        }.get(s, "")
        table.add_row(s, f"[{style}]{count}[/{style}]" if style else str(count))
    console.print(table)

    console.print(f"\n[bold]Total change records:[/bold] {total}")
    console.print(f"[bold]Distinct objects:[/bold] {objects}")
    console.print(f"[bold]Latest modification:[/bold] {last_modified or 'Never'}")


@app.command("retry-failed")
def retry_failed(ctx: typer.Context) -> None:
    """Return FAILED objects to the untouched state so processing reclaims them."""
    config = get_config(ctx, stages=())
    with Database(config.database.path) as db:
        reset = db.reset_failed()
    if reset == 0:
        console.print("[green]No FAILED change records to retry.[/green]")
        return
    console.print(f"[green]✓[/green] Reset {reset} FAILED change records for reprocessing")


@config_app.command("set-token")
def set_token(
    token: Annotated[
        str,
        typer.Argument(help="Query-service token to store in system keyring"),
    ],
) -> None:
    """Store the query-service token in the system keyring (service: blobsync-query)."""
    if not token or token.strip() == "":
        console.print("[red]Error:[/red] Token cannot be empty")
        raise typer.Exit(code=1)

    try:
        keyring.set_password(SERVICE_NAME, KEY_NAME, token)
    except KeyringError as e:
        console.print(f"[red]Error:[/red] Failed to store token: {e}")
        raise typer.Exit(code=1)
    console.print(
        f"[green]✓[/green] Token stored successfully in system keyring (service: {SERVICE_NAME})"
    )


@config_app.command("get-token")
def show_token() -> None:
    """Retrieve and display the stored query-service token (masked)."""
    token = keyring.get_password(SERVICE_NAME, KEY_NAME)
    if not token:
        console.print(
            "[yellow]No token found in keyring.[/yellow]\n"
            "Set it with: [bold]blobsync config set-token YOUR_TOKEN[/bold]"
        )
        raise typer.Exit(code=1)

    # Mask all but first 4 characters
    if len(token) > 4:
        masked = token[:4] + "*" * (len(token) - 4)
    else:
        masked = "*" * len(token)

    console.print(f"[green]Token:[/green] {masked}")
    console.print(f"[dim](stored in service: {SERVICE_NAME})[/dim]")


@config_app.command("remove-token")
def remove_token() -> None:
    """Delete the stored query-service token from the system keyring."""
    if not keyring.get_password(SERVICE_NAME, KEY_NAME):
        console.print("[yellow]Warning:[/yellow] No token found in keyring.\nNothing to remove.")
        return

    try:
        keyring.delete_password(SERVICE_NAME, KEY_NAME)
    except KeyringError as e:
        console.print(f"[red]Error:[/red] Failed to remove token: {e}")
        raise typer.Exit(code=1)
    console.print(f"[green]✓[/green] Token removed from system keyring (service: {SERVICE_NAME})")
