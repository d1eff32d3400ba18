"""
Configuration management for makerfleet.

Loads settings from a JSON config file and environment variables.
"""

import json
import os
from dataclasses import dataclass
from pathlib import Path
from typing import Optional, Dict, Any

from dotenv import load_dotenv

from makerfleet.core.errors import ConfigError

DEFAULT_CONFIG_PATH = "config.json"


def _ws_from_http(url: str) -> str:
    """Derive the websocket endpoint that pairs with an HTTP RPC URL."""
    if url.startswith("https://"):
        return "wss://" + url[len("https://"):]
    if url.startswith("http://"):
        return "ws://" + url[len("http://"):]
    return url


def _as_bool(value: Any) -> bool:
    if isinstance(value, str):
        return value.strip().lower() in ("1", "true", "yes", "on")
    return bool(value)


@dataclass
class Config:
    """Application configuration."""

    # General
    rpc_url: str = ""
    ws_url: str = ""
    source_keypair_path: str = ""
    loop_enabled: bool = False

    # Generate
    keypair_qty: int = 100

    # Transfer
    transfer_amount: float = 0.01
    transfer_batch_size: int = 19
    transfer_priority_fee: int = 1000
    transfer_compute_limit: int = 3150

    # Swap
    token_mint: str = ""
    sol_to_swap: float = 0.001
    swap_priority_fee: int = 100000
    slippage_bps: int = 500
    rate_limit_cooldown: float = 140.0
    swap_settle_delay: float = 20.0
    delay_between_swaps: float = 1.2

    # Close
    close_priority_fee: int = 100000
    close_compute_limit: int = 15000
    close_batch_size: int = 10

    # Pipeline
    start_from: str = "generate"
    delay_between_stages: float = 10.0
    stage_retry_delay: float = 10.0
    delay_between_loops: float = 20.0
    restart_delay: float = 10.0
    batch_width: int = 10
    max_retries: int = 3
    retry_delay: float = 1.0
    max_refreshes: int = 3

    # Paths
    keypairs_dir: str = "keypairs"
    database_path: str = "data/makerfleet.db"
    log_file: str = "makers.log"

    # Telegram (optional)
    telegram_bot_token: Optional[str] = None
    telegram_chat_id: Optional[str] = None

    # Source file, kept so loop_enabled can be re-read
    config_path: Optional[str] = None

    @classmethod
    def _load_json(cls, json_path: Path) -> Dict[str, Any]:
        """Load JSON configuration file."""
        if not json_path.exists():
            raise ConfigError(f'Configuration file "{json_path}" not found!')

        try:
            with open(json_path, "r") as f:
                return json.load(f)
        except json.JSONDecodeError as e:
            raise ConfigError(f"Invalid JSON in {json_path}: {e}") from e

    @classmethod
    def load(cls, path: str = DEFAULT_CONFIG_PATH) -> "Config":
        """Load configuration from the JSON file + environment variables."""
        load_dotenv()

        json_path = Path(path)
        data = cls._load_json(json_path)

        general = data.get("general", {})
        generate = data.get("generate", {})
        transfer = data.get("transfer", {})
        swap = data.get("swap", {})
        close = data.get("close", {})
        pipeline = data.get("pipeline", {})
        paths = data.get("paths", {})
        notify = data.get("notify", {})

        rpc_url = os.getenv("RPC_URL") or general.get("RPC_URL", "")
        ws_url = os.getenv("WS_URL") or general.get("WS_URL") or _ws_from_http(rpc_url)

        loop_env = os.getenv("LOOP_ENABLED")
        loop_enabled = _as_bool(loop_env) if loop_env is not None else _as_bool(
            general.get("LOOP_ENABLED", False)
        )

        config = cls(
            rpc_url=rpc_url,
            ws_url=ws_url,
            source_keypair_path=os.getenv("SOURCE_KEYPAIR_PATH") or general.get("SOURCE_KEYPAIR_PATH", ""),
            loop_enabled=loop_enabled,

            keypair_qty=int(generate.get("KEYPAIR_QTY", 100)),

            transfer_amount=float(transfer.get("TRANSFER_AMOUNT", 0.01)),
            transfer_batch_size=int(transfer.get("BATCH_SIZE", 19)),
            transfer_priority_fee=int(transfer.get("PRIORITY_FEE_MICROLAMPORTS", 1000)),
            transfer_compute_limit=int(transfer.get("COMPUTE_UNIT_LIMIT", 3150)),

            token_mint=os.getenv("TOKEN_MINT") or swap.get("TOKEN_MINT", ""),
            sol_to_swap=float(swap.get("SOL_TO_SWAP", 0.001)),
            swap_priority_fee=int(swap.get("PRIORITY_FEE_MICROLAMPORTS", 100000)),
            slippage_bps=int(swap.get("SLIPPAGE_BPS", 500)),
            rate_limit_cooldown=float(swap.get("RATE_LIMIT_COOLDOWN", 140)),
            swap_settle_delay=float(swap.get("SETTLE_DELAY", 20)),
            delay_between_swaps=float(swap.get("DELAY_BETWEEN_SWAPS", 1.2)),

            close_priority_fee=int(close.get("PRIORITY_FEE_MICROLAMPORTS", 100000)),
            close_compute_limit=int(close.get("COMPUTE_UNIT_LIMIT", 15000)),
            close_batch_size=int(close.get("BATCH_SIZE", 10)),

            start_from=str(pipeline.get("START_FROM", "generate")).lower(),
            delay_between_stages=float(pipeline.get("DELAY_BETWEEN_STAGES", 10)),
            stage_retry_delay=float(pipeline.get("STAGE_RETRY_DELAY", 10)),
            delay_between_loops=float(pipeline.get("DELAY_BETWEEN_LOOPS", 20)),
            restart_delay=float(pipeline.get("RESTART_DELAY", 10)),
            batch_width=int(pipeline.get("BATCH_WIDTH", 10)),
            max_retries=int(pipeline.get("MAX_RETRIES", 3)),
            retry_delay=float(pipeline.get("RETRY_DELAY", 1)),
            max_refreshes=int(pipeline.get("MAX_REFRESHES", 3)),

            keypairs_dir=paths.get("KEYPAIRS_DIR", "keypairs"),
            database_path=os.getenv("MAKERFLEET_DB_PATH") or paths.get("DATABASE_PATH", "data/makerfleet.db"),
            log_file=paths.get("LOG_FILE", "makers.log"),

            telegram_bot_token=os.getenv("TELEGRAM_BOT_TOKEN") or notify.get("TELEGRAM_BOT_TOKEN"),
            telegram_chat_id=os.getenv("TELEGRAM_CHAT_ID") or notify.get("TELEGRAM_CHAT_ID"),

            config_path=str(json_path),
        )

        config.validate()
        return config

    def validate(self) -> None:
        """Raise ConfigError if a required option is missing or out of range."""
        missing = [
            name for name, value in (
                ("general.RPC_URL", self.rpc_url),
                ("general.SOURCE_KEYPAIR_PATH", self.source_keypair_path),
                ("swap.TOKEN_MINT", self.token_mint),
            )
            if not value
        ]
        if missing:
            raise ConfigError(f"Missing required config: {', '.join(missing)}")

        if self.transfer_amount <= 0:
            raise ConfigError("transfer.TRANSFER_AMOUNT must be positive")
        if self.batch_width < 1 or self.close_batch_size < 1 or self.transfer_batch_size < 1:
            raise ConfigError("Batch sizes must be at least 1")

    def read_loop_enabled(self) -> bool:
        """
        Re-read LOOP_ENABLED from the config file.

        Called at every loop boundary so the flag can be flipped while
        the process runs. Falls back to the value loaded at startup if
        the file cannot be read.
        """
        loop_env = os.getenv("LOOP_ENABLED")
        if loop_env is not None:
            self.loop_enabled = _as_bool(loop_env)
            return self.loop_enabled

        if not self.config_path:
            return self.loop_enabled

        try:
            data = self._load_json(Path(self.config_path))
        except ConfigError:
            return self.loop_enabled

        self.loop_enabled = _as_bool(data.get("general", {}).get("LOOP_ENABLED", False))
        return self.loop_enabled

    def get_summary(self) -> str:
        """Get a summary of current settings."""
        return f"""RPC: {self.rpc_url}
Token Mint: {self.token_mint}
Start From: {self.start_from}
Loop Enabled: {self.loop_enabled}

Generate: {self.keypair_qty} wallets
Transfer: {self.transfer_amount} SOL per wallet ({self.transfer_batch_size} per tx)
Swap: {self.sol_to_swap} SOL per wallet, slippage {self.slippage_bps} bps
Close: batches of {self.close_batch_size}, priority fee {self.close_priority_fee} µLamports

Retries: {self.max_retries} attempts, {self.retry_delay}s apart
Stage Retry Delay: {self.stage_retry_delay}s
Loop Delay: {self.delay_between_loops}s
"""
