"""
Swap venue interface.

A SwapProvider quotes SOL -> token and returns a transaction the wallet
has already signed. Venue HTTP calls use requests, run in a worker thread
so they do not block the event loop.
"""

import asyncio
import logging
from abc import ABC, abstractmethod
from dataclasses import dataclass, field
from typing import Any, Dict, Optional

import requests
from solders.keypair import Keypair

from makerfleet.core.errors import LedgerTransportError, RateLimitedError, SwapError
from makerfleet.delivery.envelope import SignedTransactionEnvelope
from makerfleet.delivery.ledger import LedgerClient

logger = logging.getLogger(__name__)


@dataclass
class SwapQuote:
    """Quote from a swap venue."""
    venue: str
    input_mint: str
    output_mint: str
    in_amount: int  # lamports
    out_amount: int  # smallest unit of output token
    slippage_bps: int
    price_impact_pct: float = 0.0
    raw_quote: Dict[str, Any] = field(default_factory=dict)  # Full response for the swap request


class SwapProvider(ABC):
    """
    Venue-specific quote and transaction building.

    Exactly one provider is used per run.
    """

    name = "venue"

    def __init__(
        self,
        ledger: LedgerClient,
        slippage_bps: int,
        priority_fee: int,
        timeout: float = 30.0,
        session: Optional[requests.Session] = None,
    ):
        """
        Initialize swap provider.

        Args:
            ledger: Ledger client (used for validity windows)
            slippage_bps: Slippage tolerance in basis points (100 = 1%)
            priority_fee: Compute unit price in micro-lamports
            timeout: HTTP timeout in seconds
            session: requests session to reuse
        """
        self.ledger = ledger
        self.slippage_bps = slippage_bps
        self.priority_fee = priority_fee
        self.timeout = timeout
        self.session = session or requests.Session()

    @abstractmethod
    async def quote(self, input_mint: str, output_mint: str, amount: int) -> SwapQuote:
        """Quote swapping `amount` (smallest units) of input for output."""

    @abstractmethod
    async def build_signed_transaction(self, quote: SwapQuote, wallet: Keypair) -> SignedTransactionEnvelope:
        """Venue-built swap transaction for `quote`, signed by `wallet`."""

    async def _get_json(self, url: str, params: Dict[str, Any]) -> Dict[str, Any]:
        return await asyncio.to_thread(self._request, "GET", url, params, None)

    async def _post_json(self, url: str, payload: Dict[str, Any]) -> Dict[str, Any]:
        return await asyncio.to_thread(self._request, "POST", url, None, payload)

    def _request(
        self,
        method: str,
        url: str,
        params: Optional[Dict[str, Any]],
        payload: Optional[Dict[str, Any]],
    ) -> Dict[str, Any]:
        try:
            response = self.session.request(method, url, params=params, json=payload, timeout=self.timeout)
        except (requests.ConnectionError, requests.Timeout) as e:
            raise LedgerTransportError(f"{self.name} unreachable: {e}") from e

        if response.status_code == 429:
            raise RateLimitedError(f"{self.name} rate limited (429)")

        try:
            response.raise_for_status()
            data = response.json()
        except (requests.HTTPError, ValueError) as e:
            raise SwapError(f"{self.name} {method} {url} failed: {e}") from e

        if isinstance(data, dict) and data.get("error"):
            raise SwapError(f"{self.name} error: {data['error']}")

        return data
