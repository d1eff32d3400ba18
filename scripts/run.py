#!/usr/bin/env python3
"""
Run the makerfleet pipeline.

generate -> transfer -> transfer_check -> swap -> close -> close -> check,
starting from any of generate, transfer, swap, close, check. With
LOOP_ENABLED the pipeline keeps running until stopped.
"""

import sys
from pathlib import Path

# Add parent directory to path
sys.path.insert(0, str(Path(__file__).parent.parent))

import asyncio
import logging
import signal
from typing import Optional

import typer
from rich.console import Console
from rich.panel import Panel

from makerfleet.app import run_pipeline
from makerfleet.core.config import DEFAULT_CONFIG_PATH, Config
from makerfleet.core.errors import ConfigError, MakerFleetError, UnknownTokenProgramError, WalletStoreError
from makerfleet.core.logs import setup_logging
from makerfleet.stages import StartStage

app = typer.Typer(help="Run the wallet fleet pipeline")
console = Console()
logger = logging.getLogger("run")

STARTUP_FATAL = (ConfigError, WalletStoreError, UnknownTokenProgramError)


@app.command()
def main(
    start_from: Optional[StartStage] = typer.Option(
        None, "--start-from", "-s", help="Stage to start from (default: pipeline.START_FROM)"
    ),
    config_path: str = typer.Option(DEFAULT_CONFIG_PATH, "--config", "-c", help="Path to config.json"),
    verbose: bool = typer.Option(False, "--verbose", "-v", help="Verbose logging"),
):
    """
    Run the pipeline. Exit code 0 on clean completion, 1 on a startup error.
    """
    try:
        config = Config.load(config_path)
    except ConfigError as e:
        console.print(f"[red]ERROR: {e}[/red]")
        raise typer.Exit(1)

    setup_logging(config.log_file, verbose)

    try:
        start = (start_from or StartStage(config.start_from)).value
    except ValueError:
        valid = ", ".join(s.value for s in StartStage)
        console.print(f"[red]ERROR: Invalid START_FROM '{config.start_from}'. Use one of: {valid}[/red]")
        raise typer.Exit(1)

    console.print(Panel(
        f"[bold]makerfleet[/bold]\n\n"
        f"{config.get_summary()}",
        title=f"Starting from {start}",
        border_style="blue",
    ))

    async def run_until_signalled():
        task = asyncio.ensure_future(run_pipeline(config, start))

        loop = asyncio.get_running_loop()
        for sig in (signal.SIGINT, signal.SIGTERM):
            loop.add_signal_handler(sig, task.cancel)

        return await task

    try:
        run = asyncio.run(run_until_signalled())
    except STARTUP_FATAL as e:
        logger.critical(f"Startup failed: {e}")
        raise typer.Exit(1)
    except asyncio.CancelledError:
        console.print("\n[yellow]Stopped by signal[/yellow]")
        return
    except MakerFleetError as e:
        logger.critical(f"Unrecoverable error: {e}")
        raise typer.Exit(1)

    console.print(f"\n[bold]Run complete:[/bold] {run.passes} pass(es)")


if __name__ == "__main__":
    app()
