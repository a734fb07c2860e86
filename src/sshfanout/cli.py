"""CLI entry point for ssh-fanout using Typer."""

from __future__ import annotations

import asyncio
import signal
import sys
from importlib.resources import files
from pathlib import Path
from typing import Annotated, Any, NoReturn

import typer
from rich.console import Console
from rich.table import Table

from sshfanout import __version__
from sshfanout.config import Configuration, ConfigurationError
from sshfanout.credentials import CredentialStore, InventoryError, load_host_list, load_inventory
from sshfanout.executor import SessionExecutor, SSHSessionExecutor
from sshfanout.logger import configure_logging, parse_log_level
from sshfanout.models import BatchSummary, CommandResult, ExecutionSettings
from sshfanout.report import ReportFormat, write_report
from sshfanout.scheduler import Dispatcher
from sshfanout.server import run_server
from sshfanout.ui import TerminalUI
from sshfanout.validation import ValidatedRequest, ValidationError, validate_request

EXIT_OK = 0
EXIT_FAILED = 1
EXIT_INVALID = 2

app = typer.Typer(
    name="sshfanout",
    help="Run one shell command across many SSH hosts with bounded concurrency",
    no_args_is_help=True,
)

console = Console()


def _version_callback(value: bool) -> None:
    """Print version and exit if --version flag is provided."""
    if value:
        console.print(f"sshfanout {__version__}")
        raise typer.Exit()


@app.callback()
def main(
    version_flag: Annotated[
        bool,
        typer.Option("--version", "-v", callback=_version_callback, is_eager=True, help="Show version and exit"),
    ] = False,
) -> None:
    """ssh-fanout command dispatcher."""


def _load_config(path: Path | None) -> Configuration:
    try:
        return Configuration.load(path)
    except ConfigurationError as e:
        console.print("[bold red]Configuration error:[/bold red]")
        for error in e.errors:
            console.print(f"  {error.path}: {error.message}")
        raise typer.Exit(EXIT_INVALID) from e


def _inventory_error(e: InventoryError) -> NoReturn:
    console.print("[bold red]Inventory error:[/bold red]")
    for error in e.errors:
        console.print(f"  {error}")
    raise typer.Exit(EXIT_INVALID) from e


def _build_executor(credentials: CredentialStore, settings: ExecutionSettings) -> SessionExecutor:
    return SSHSessionExecutor(credentials, connection_timeout=settings.connection_timeout)


@app.command()
def run(
    inventory: Annotated[Path, typer.Argument(help="Inventory YAML file with hosts and credentials")],
    command: Annotated[
        str | None, typer.Argument(help="Shell command to run (default: the inventory's command)")
    ] = None,
    hosts_file: Annotated[
        Path | None, typer.Option("--hosts-file", help="Extra hosts from a .txt or .csv host list")
    ] = None,
    username: Annotated[
        str, typer.Option("--username", "-u", help="Username for host list entries that name none")
    ] = "root",
    max_concurrent: Annotated[int | None, typer.Option("--max-concurrent", "-j", help="Hosts in flight")] = None,
    retry: Annotated[bool | None, typer.Option("--retry/--no-retry", help="Retry failed sessions")] = None,
    retry_attempts: Annotated[int | None, typer.Option("--retry-attempts", help="Attempts per host")] = None,
    retry_delay: Annotated[float | None, typer.Option("--retry-delay", help="Seconds between attempts")] = None,
    retry_infinite: Annotated[
        bool | None,
        typer.Option("--retry-infinite/--no-retry-infinite", help="Retry until success or cancellation"),
    ] = None,
    command_timeout: Annotated[float | None, typer.Option("--command-timeout", help="Seconds per command")] = None,
    connection_timeout: Annotated[
        float | None, typer.Option("--connection-timeout", help="Seconds per connection attempt")
    ] = None,
    output: Annotated[Path | None, typer.Option("--output", "-o", help="Write results to this file")] = None,
    fmt: Annotated[
        ReportFormat | None, typer.Option("--format", "-f", help="Report format (default: from --output suffix)")
    ] = None,
    include_errors: Annotated[
        bool, typer.Option("--include-errors/--successes-only", help="Keep failed commands in the report")
    ] = True,
    config: Annotated[
        Path | None,
        typer.Option("--config", "-c", help="Path to config file (default: ~/.config/sshfanout/config.yaml)"),
    ] = None,
    log_level: Annotated[str, typer.Option("--log-level", help="Console log level")] = "WARNING",
) -> None:
    """Run a command on every host of an inventory.

    Exits 0 when every host succeeded, 1 otherwise and 2 when the input is invalid.
    """
    cfg = _load_config(config)
    try:
        level = parse_log_level(log_level)
    except ValueError as e:
        console.print(f"[bold red]Error:[/bold red] {e}")
        raise typer.Exit(EXIT_INVALID) from e
    configure_logging(level, cfg.logging.file, cfg.logging.file_level)

    try:
        inv = load_inventory(inventory)
        hosts = list(inv.hosts)
        if hosts_file is not None:
            hosts += load_host_list(hosts_file, username, start=len(hosts) + 1)
    except InventoryError as e:
        _inventory_error(e)

    overrides = {
        "max_concurrent": max_concurrent,
        "retry_enabled": retry,
        "retry_attempts": retry_attempts,
        "retry_delay": retry_delay,
        "retry_infinite": retry_infinite,
        "command_timeout": command_timeout,
        "connection_timeout": connection_timeout,
    }
    raw_settings: dict[str, Any] = {**inv.settings, **{k: v for k, v in overrides.items() if v is not None}}

    try:
        request = validate_request(
            hosts, command or inv.command or "", raw_settings, limits=cfg.limits, defaults=cfg.defaults
        )
    except ValidationError as e:
        console.print(f"[bold red]Invalid request:[/bold red] {e.message}")
        for detail in e.details:
            console.print(f"  {detail}")
        raise typer.Exit(EXIT_INVALID) from e

    summary, results = asyncio.run(_run_batch(request, inv.credentials))
    _print_summary(summary)

    if output is not None:
        path = write_report(results, output, fmt, include_errors=include_errors)
        console.print(f"[green]Results written to[/green] {path}")

    sys.exit(EXIT_OK if summary.success == summary.total else EXIT_FAILED)


async def _run_batch(
    request: ValidatedRequest,
    credentials: CredentialStore,
) -> tuple[BatchSummary, list[CommandResult]]:
    """Run one batch under the live UI.

    Interrupt behavior:
    - First SIGINT: cancel the batch; running commands finish, pending hosts are skipped
    - Second SIGINT: stop the batch outright, closing in-flight sessions
    """
    loop = asyncio.get_running_loop()
    dispatcher = Dispatcher(_build_executor(credentials, request.settings))
    batch = dispatcher.create_batch(request.hosts, request.command, request.settings)
    ui = TerminalUI(console, total=len(request.hosts))
    consumer = asyncio.create_task(ui.consume_events(batch.bus.subscribe()))
    runner = asyncio.create_task(dispatcher.run(batch))
    sigint_count = 0

    def sigint_handler() -> None:
        nonlocal sigint_count
        sigint_count += 1
        if sigint_count == 1:
            console.print("\n[yellow]Interrupt received, cancelling batch...[/yellow]")
            console.print("[dim](Press Ctrl+C again to abort running commands)[/dim]")
            dispatcher.cancel(batch.execution_id, "interrupted by user")
        elif not runner.done():
            console.print("\n[red]Aborting running commands![/red]")
            runner.cancel()

    loop.add_signal_handler(signal.SIGINT, sigint_handler)
    ui.start()
    try:
        try:
            summary = await runner
        except asyncio.CancelledError:
            if not runner.cancelled():
                raise
            summary = batch.tracker.summary()
        await consumer
    finally:
        ui.stop()
        loop.remove_signal_handler(signal.SIGINT)

    return summary, batch.results


def _print_summary(summary: BatchSummary) -> None:
    table = Table(title="Summary", show_header=False)
    table.add_column(style="bold")
    table.add_column(justify="right")
    table.add_row("Hosts", str(summary.total))
    table.add_row("[green]Succeeded[/green]", str(summary.success))
    table.add_row("[red]Failed[/red]", str(summary.error))
    if summary.skipped:
        table.add_row("[magenta]Skipped[/magenta]", str(summary.skipped))
    console.print(table)
    if summary.cancelled:
        console.print("[yellow]Batch was cancelled[/yellow]")


@app.command()
def serve(
    config: Annotated[
        Path | None,
        typer.Option("--config", "-c", help="Path to config file (default: ~/.config/sshfanout/config.yaml)"),
    ] = None,
    inventory: Annotated[
        Path | None, typer.Option("--inventory", "-i", help="Inventory whose credentials submitted hosts use")
    ] = None,
    host: Annotated[str | None, typer.Option("--host", help="Bind address")] = None,
    port: Annotated[int | None, typer.Option("--port", "-p", help="Bind port")] = None,
) -> None:
    """Serve the HTTP API."""
    cfg = _load_config(config)
    if host is not None:
        cfg.server.host = host
    if port is not None:
        cfg.server.port = port
    configure_logging(cfg.logging.level, cfg.logging.file, cfg.logging.file_level)

    credentials = None
    inventory_path = inventory or cfg.server.inventory
    if inventory_path is not None:
        try:
            credentials = load_inventory(inventory_path).credentials
        except InventoryError as e:
            _inventory_error(e)

    run_server(cfg, credentials)


@app.command()
def init(
    force: Annotated[
        bool,
        typer.Option("--force", help="Overwrite existing configuration file"),
    ] = False,
    path: Annotated[
        Path | None,
        typer.Option("--path", help="Where to write (default: ~/.config/sshfanout/config.yaml)"),
    ] = None,
) -> None:
    """Write the default configuration file."""
    config_path = path or Configuration.get_default_config_path()

    if config_path.exists() and not force:
        console.print(f"[yellow]Configuration file already exists:[/yellow] {config_path}")
        console.print("Use --force to overwrite")
        raise typer.Exit(1)

    config_path.parent.mkdir(parents=True, exist_ok=True)
    default_config = files("sshfanout").joinpath("default-config.yaml").read_text()
    config_path.write_text(default_config)

    console.print(f"[green]Created configuration file:[/green] {config_path}")


if __name__ == "__main__":
    app()
