"""
Raydium trade API swap provider.

Used for SPL Token mints.
"""

import base64
import logging

from solders.keypair import Keypair

from makerfleet.core.errors import SwapError
from makerfleet.delivery.envelope import SignedTransactionEnvelope, sign_versioned
from makerfleet.swap.base import SwapProvider, SwapQuote

logger = logging.getLogger(__name__)

RAYDIUM_SWAP_HOST = "https://transaction-v1.raydium.io"
RAYDIUM_QUOTE_API = f"{RAYDIUM_SWAP_HOST}/compute/swap-base-in"
RAYDIUM_SWAP_API = f"{RAYDIUM_SWAP_HOST}/transaction/swap-base-in"

TX_VERSION = "V0"


class RaydiumProvider(SwapProvider):
    """Raydium compute + transaction endpoints."""

    name = "raydium"

    async def quote(self, input_mint: str, output_mint: str, amount: int) -> SwapQuote:
        params = {
            "inputMint": input_mint,
            "outputMint": output_mint,
            "amount": str(amount),
            "slippageBps": self.slippage_bps,
            "txVersion": TX_VERSION,
        }

        data = await self._get_json(RAYDIUM_QUOTE_API, params)
        if not data.get("success", True):
            raise SwapError(f"Raydium quote failed: {data.get('msg', 'unknown error')}")

        try:
            result = data["data"]
            return SwapQuote(
                venue=self.name,
                input_mint=result["inputMint"],
                output_mint=result["outputMint"],
                in_amount=int(result["inputAmount"]),
                out_amount=int(result["outputAmount"]),
                slippage_bps=self.slippage_bps,
                price_impact_pct=float(result.get("priceImpactPct") or 0),
                raw_quote=data,
            )
        except (KeyError, TypeError, ValueError) as e:
            raise SwapError(f"Unexpected Raydium quote: {e}") from e

    async def build_signed_transaction(self, quote: SwapQuote, wallet: Keypair) -> SignedTransactionEnvelope:
        payload = {
            "swapResponse": quote.raw_quote,
            "txVersion": TX_VERSION,
            "wallet": str(wallet.pubkey()),
            "wrapSol": True,
            "unwrapSol": True,
            "computeUnitPriceMicroLamports": str(self.priority_fee),
        }

        data = await self._post_json(RAYDIUM_SWAP_API, payload)

        transactions = data.get("data") or []
        if not transactions:
            raise SwapError("No transaction data received from Raydium")

        # Raydium does not report an expiry height; take the current window
        window = await self.ledger.get_latest_blockhash()
        tx_bytes = base64.b64decode(transactions[0]["transaction"])
        return sign_versioned(tx_bytes, wallet, window.last_valid_block_height)
