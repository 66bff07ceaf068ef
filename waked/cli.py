"""CLI entry point for waked."""

from __future__ import annotations

import asyncio
import os
import signal
from typing import Optional

import typer
from rich.console import Console
from rich.markup import escape
from rich.table import Table

from waked import __version__
from waked.config import Settings, load_settings
from waked.errors import ConfigError
from waked.logging_config import get_logger, setup_logging

app = typer.Typer(
    help="Executes programs when the machine resumes from sleep.",
    no_args_is_help=True,
)
console = Console(stderr=True)
logger = get_logger(__name__)

FATAL_SIGNALS = (signal.SIGINT, signal.SIGTERM, signal.SIGQUIT)

DIRECTORY_HELP = "Directory of executables to run on wake (default: /usr/local/etc/waked)"


def _load(**overrides) -> Settings:
    try:
        return load_settings(**overrides)
    except ConfigError as exc:
        console.print(f"[bold red]fatal:[/bold red] {escape(str(exc))}", soft_wrap=True)
        raise typer.Exit(1)


def install_fatal_signal_handlers(loop: asyncio.AbstractEventLoop) -> None:
    """Exit immediately on SIGINT/SIGTERM/SIGQUIT without draining children."""

    def _fatal(sig: signal.Signals) -> None:
        logger.critical("received_signal", signal=sig.name)
        os._exit(1)

    for sig in FATAL_SIGNALS:
        loop.add_signal_handler(sig, _fatal, sig)


async def _serve(settings: Settings) -> None:
    from waked.supervisor.dispatcher import WakeDispatcher
    from waked.supervisor.wake_sources import build_wake_source

    loop = asyncio.get_running_loop()
    install_fatal_signal_handlers(loop)

    dispatcher = WakeDispatcher(settings)
    dispatcher.bind_loop(loop)
    source = build_wake_source(settings)

    logger.info(
        "waked_started",
        version=__version__,
        exes_dir=settings.waked_exes_dir,
        wake_source=settings.waked_wake_source,
        unlock_marker=settings.waked_unlock_marker,
    )
    await source.watch(dispatcher.notify_wake)


@app.command()
def run(
    directory: Optional[str] = typer.Argument(None, help=DIRECTORY_HELP),
    wake_source: Optional[str] = typer.Option(
        None, "--wake-source", help="How resume events are detected: 'clock' or 'signal' (SIGUSR1)",
    ),
    log_level: Optional[str] = typer.Option(None, "--log-level", help="DEBUG/INFO/WARNING/ERROR"),
) -> None:
    """Run every program in DIRECTORY each time the machine wakes.

    Programs whose name contains '-on-unlock' only run once the screen is
    unlocked. A program that exits with a non-zero status is re-executed
    until it succeeds, is removed, or the next wake event supersedes it.
    """
    settings = _load(
        waked_exes_dir=directory,
        waked_wake_source=wake_source,
        waked_log_level=log_level,
    )
    setup_logging()
    asyncio.run(_serve(settings))


@app.command("list")
def list_executables(
    directory: Optional[str] = typer.Argument(None, help=DIRECTORY_HELP),
) -> None:
    """Show the programs a wake event would start."""
    from waked.supervisor.dispatcher import WakeDispatcher

    settings = _load(waked_exes_dir=directory)
    dispatcher = WakeDispatcher(settings)
    try:
        descriptors = dispatcher.list_executables()
    except OSError as exc:
        console.print(f"[red]Cannot read {escape(settings.waked_exes_dir)}: {escape(str(exc))}[/red]", soft_wrap=True)
        raise typer.Exit(1)

    if not descriptors:
        console.print(f"[dim]No programs in {escape(settings.waked_exes_dir)}[/dim]", soft_wrap=True)
        return

    table = Table(title=escape(settings.waked_exes_dir))
    table.add_column("Program")
    table.add_column("Waits for unlock")
    for d in descriptors:
        table.add_row(escape(d.name), "[yellow]yes[/yellow]" if d.requires_unlock else "no")
    console.print(table)


@app.command("check-lock")
def check_lock() -> None:
    """Query the screen-lock state once and print it."""
    from waked.supervisor.lock_state import LockState, LockStateOracle

    settings = _load()
    setup_logging()
    state = asyncio.run(LockStateOracle(settings).state())
    color = {
        LockState.LOCKED: "red",
        LockState.UNLOCKED: "green",
        LockState.UNKNOWN: "yellow",
    }[state]
    console.print(f"Screen: [{color}]{state}[/{color}]")
    if state is LockState.UNKNOWN:
        raise typer.Exit(2)


@app.command()
def version() -> None:
    """Print the waked version."""
    console.print(f"waked {__version__}")


if __name__ == "__main__":
    app()
