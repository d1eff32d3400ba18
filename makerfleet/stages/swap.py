"""
Swap stage: buy the target token from every funded wallet.

Each run waits for earlier swaps to settle, then classifies wallets.
Wallets holding the token, or without enough SOL to swap, go into the
processed set and are skipped from then on. The stage is complete only
when a run finds nothing left to swap, so swaps are always re-verified.
"""

import logging

from solders.keypair import Keypair

from makerfleet.core.models import ProcessedReason
from makerfleet.core.utils import format_sol, short_address, sol_to_lamports
from makerfleet.delivery.envelope import SignedTransactionEnvelope
from makerfleet.delivery.submit import submit
from makerfleet.stages.base import StageContext, StageUnit, snapshot
from makerfleet.swap.tokens import SOL_MINT

logger = logging.getLogger(__name__)


class SwapStage(StageUnit):
    name = "swap"

    async def run(self, ctx: StageContext) -> bool:
        logger.info(f"Waiting {ctx.config.swap_settle_delay:g}s for previous transactions to settle...")
        await ctx.clock.sleep(ctx.config.swap_settle_delay)

        swap_lamports = sol_to_lamports(ctx.config.sol_to_swap)
        processed = ctx.processed.scan()
        keypairs = ctx.wallets.load_all()

        to_swap = []
        unchecked = 0

        for keypair in keypairs:
            address = str(keypair.pubkey())
            if address in processed:
                logger.debug(f"Wallet {short_address(address)} already processed, skipping")
                continue

            try:
                snap = await snapshot(ctx, address)
            except Exception as e:
                logger.error(f"Could not read balances of {short_address(address)}: {e}")
                unchecked += 1
                continue

            if snap.has_tokens:
                logger.info(f"Wallet {short_address(address)} holds {snap.token_amount} tokens, marking processed")
                ctx.processed.add(address, ProcessedReason.HAS_TOKENS)
            elif snap.lamports < swap_lamports:
                logger.info(
                    f"Wallet {short_address(address)} has {format_sol(snap.lamports)}, "
                    f"not enough to swap, marking processed"
                )
                ctx.processed.add(address, ProcessedReason.NO_SOL)
            else:
                to_swap.append(keypair)

        if not to_swap and not unchecked:
            logger.info("All wallets verified to hold tokens or lack SOL")
            return True

        logger.info(f"{len(to_swap)} wallets require swaps ({unchecked} could not be checked)")

        for keypair in to_swap:
            address = str(keypair.pubkey())

            result = await submit(
                ctx.engine,
                lambda kp=keypair: self._build(ctx, kp, swap_lamports),
                ctx.policy,
                label=f"{ctx.provider.name} swap {short_address(address)}",
            )
            ctx.record_delivery(self.name, address, result)

            if not result.success:
                logger.error(f"Swap failed for {short_address(address)}: {result.error}")

            await ctx.clock.sleep(ctx.config.delay_between_swaps)

        # Swapped wallets are confirmed by the next classification run
        return False

    async def _build(self, ctx: StageContext, keypair: Keypair, amount: int) -> SignedTransactionEnvelope:
        quote = await ctx.provider.quote(SOL_MINT, ctx.token.mint, amount)
        logger.debug(
            f"Quote {quote.in_amount} lamports -> {quote.out_amount} tokens "
            f"(impact {quote.price_impact_pct}%)"
        )
        return await ctx.provider.build_signed_transaction(quote, keypair)
