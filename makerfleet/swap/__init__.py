"""
Swap venues and token program helpers for makerfleet.
"""

from makerfleet.swap.base import SwapProvider, SwapQuote
from makerfleet.swap.jupiter import JupiterProvider
from makerfleet.swap.raydium import RaydiumProvider
from makerfleet.swap.selection import select_provider
from makerfleet.swap.tokens import TokenContext, TokenProgram, prepare_token_context

__all__ = [
    "JupiterProvider",
    "RaydiumProvider",
    "SwapProvider",
    "SwapQuote",
    "TokenContext",
    "TokenProgram",
    "prepare_token_context",
    "select_provider",
]
