#!/usr/bin/env python3
"""
Show fleet status: wallets per folder, processed set size, treasury balance.
"""

import sys
from pathlib import Path

# Add parent directory to path
sys.path.insert(0, str(Path(__file__).parent.parent))

import asyncio

import typer
from rich.console import Console
from rich.table import Table

from makerfleet.core.config import DEFAULT_CONFIG_PATH, Config
from makerfleet.core.db import recent_deliveries
from makerfleet.core.errors import ConfigError, MakerFleetError
from makerfleet.core.utils import format_sol
from makerfleet.delivery.ledger import SolanaLedgerClient
from makerfleet.wallets.processed import ProcessedWalletStore
from makerfleet.wallets.store import WalletFolder, WalletStore, load_keypair

app = typer.Typer(help="Show fleet status")
console = Console()


async def _treasury_balance(config: Config) -> int:
    ledger = SolanaLedgerClient(config.rpc_url, config.ws_url)
    try:
        treasury = load_keypair(config.source_keypair_path)
        return await ledger.get_balance(str(treasury.pubkey()))
    finally:
        await ledger.close()


@app.command()
def main(
    config_path: str = typer.Option(DEFAULT_CONFIG_PATH, "--config", "-c", help="Path to config.json"),
    offline: bool = typer.Option(False, "--offline", help="Skip the treasury balance lookup"),
):
    """Print wallet counts and recent delivery outcomes."""
    try:
        config = Config.load(config_path)
    except ConfigError as e:
        console.print(f"[red]ERROR: {e}[/red]")
        raise typer.Exit(1)

    wallets = WalletStore(config.keypairs_dir)
    processed = ProcessedWalletStore(config, config.token_mint)

    table = Table(title="Fleet Status")
    table.add_column("Item", style="cyan")
    table.add_column("Value", justify="right")

    for folder in WalletFolder:
        table.add_row(f"Wallets ({wallets.folders[folder]})", str(wallets.count(folder)))
    table.add_row("Processed for mint", str(len(processed)))

    if not offline:
        try:
            balance = asyncio.run(_treasury_balance(config))
            table.add_row("Treasury balance", format_sol(balance))
        except MakerFleetError as e:
            table.add_row("Treasury balance", f"[red]unavailable ({e})[/red]")

    console.print(table)

    records = recent_deliveries(config)
    if not records:
        return

    recent = Table(title="Recent Deliveries")
    recent.add_column("Time", style="dim")
    recent.add_column("Stage")
    recent.add_column("Wallet")
    recent.add_column("Status")
    recent.add_column("Signature", style="dim")

    for record in records:
        color = "green" if record.status in ("confirmed", "not_found_after_retries") else "red"
        recent.add_row(
            record.created_at.strftime("%Y-%m-%d %H:%M:%S"),
            record.stage,
            record.wallet[:8],
            f"[{color}]{record.status}[/{color}]",
            (record.signature or "-")[:16],
        )

    console.print(recent)


if __name__ == "__main__":
    app()
