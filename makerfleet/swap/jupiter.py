"""
Jupiter V6 swap provider.

Used for Token-2022 mints.
"""

import base64
import logging

from solders.keypair import Keypair

from makerfleet.core.errors import SwapError
from makerfleet.delivery.envelope import SignedTransactionEnvelope, sign_versioned
from makerfleet.swap.base import SwapProvider, SwapQuote

logger = logging.getLogger(__name__)

# Jupiter API endpoints
JUPITER_QUOTE_API = "https://quote-api.jup.ag/v6/quote"
JUPITER_SWAP_API = "https://quote-api.jup.ag/v6/swap"


class JupiterProvider(SwapProvider):
    """Jupiter V6 aggregator: quote, then a ready-built versioned transaction."""

    name = "jupiter"

    async def quote(self, input_mint: str, output_mint: str, amount: int) -> SwapQuote:
        """
        Get a swap quote from Jupiter.

        Args:
            input_mint: Input token mint address
            output_mint: Output token mint address
            amount: Amount in smallest unit (lamports for SOL)

        Returns:
            SwapQuote
        """
        params = {
            "inputMint": input_mint,
            "outputMint": output_mint,
            "amount": str(amount),
            "slippageBps": self.slippage_bps,
            "restrictIntermediateTokens": "true",
            "onlyDirectRoutes": "true",
        }

        data = await self._get_json(JUPITER_QUOTE_API, params)

        try:
            return SwapQuote(
                venue=self.name,
                input_mint=data["inputMint"],
                output_mint=data["outputMint"],
                in_amount=int(data["inAmount"]),
                out_amount=int(data["outAmount"]),
                slippage_bps=self.slippage_bps,
                price_impact_pct=float(data.get("priceImpactPct") or 0),
                raw_quote=data,
            )
        except (KeyError, TypeError, ValueError) as e:
            raise SwapError(f"Unexpected Jupiter quote: {e}") from e

    async def build_signed_transaction(self, quote: SwapQuote, wallet: Keypair) -> SignedTransactionEnvelope:
        payload = {
            "quoteResponse": quote.raw_quote,
            "userPublicKey": str(wallet.pubkey()),
            "wrapAndUnwrapSol": True,
            "dynamicComputeUnitLimit": True,
            "computeUnitPriceMicroLamports": self.priority_fee,
        }

        data = await self._post_json(JUPITER_SWAP_API, payload)

        swap_tx = data.get("swapTransaction")
        if not swap_tx:
            raise SwapError("Jupiter returned no swap transaction")

        last_valid = data.get("lastValidBlockHeight")
        if not last_valid:
            last_valid = (await self.ledger.get_latest_blockhash()).last_valid_block_height

        return sign_versioned(base64.b64decode(swap_tx), wallet, int(last_valid))
