"""
Per-run swap provider selection.
"""

import logging

from makerfleet.core.config import Config
from makerfleet.delivery.ledger import LedgerClient
from makerfleet.swap.base import SwapProvider
from makerfleet.swap.jupiter import JupiterProvider
from makerfleet.swap.raydium import RaydiumProvider
from makerfleet.swap.tokens import TokenProgram

logger = logging.getLogger(__name__)

# Raydium quotes are tight; Jupiter routes need more room
RAYDIUM_SLIPPAGE_BPS = 50


def select_provider(program: TokenProgram, ledger: LedgerClient, config: Config) -> SwapProvider:
    """
    Pick the venue for the mint's token program.

    Token-2022 mints go through Jupiter, SPL Token mints through Raydium.
    """
    if program.is_2022:
        provider: SwapProvider = JupiterProvider(
            ledger,
            slippage_bps=config.slippage_bps,
            priority_fee=config.swap_priority_fee,
        )
    else:
        provider = RaydiumProvider(
            ledger,
            slippage_bps=min(config.slippage_bps, RAYDIUM_SLIPPAGE_BPS),
            priority_fee=config.swap_priority_fee,
        )

    logger.info(f"Swap venue: {provider.name} (slippage {provider.slippage_bps} bps)")
    return provider
