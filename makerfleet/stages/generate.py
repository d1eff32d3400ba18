"""
Generate stage: create the wallet fleet.
"""

import logging

from makerfleet.core.utils import format_sol, sol_to_lamports
from makerfleet.stages.base import StageContext, StageUnit

logger = logging.getLogger(__name__)

# Kept in the treasury for fees
MIN_TREASURY_RESERVE = sol_to_lamports(0.02)


class GenerateStage(StageUnit):
    """
    Create up to KEYPAIR_QTY wallets, as many as the treasury can fund.

    Wallets already in the active folder count toward the quantity, so a
    resumed run does not overshoot.
    """

    name = "generate"

    async def run(self, ctx: StageContext) -> bool:
        ctx.wallets.ensure_folders()

        balance = await ctx.ledger.get_balance(ctx.treasury_address)
        per_wallet = sol_to_lamports(ctx.config.transfer_amount)
        logger.info(f"Treasury balance: {format_sol(balance)}")

        if balance < MIN_TREASURY_RESERVE:
            logger.warning("Insufficient balance to generate any wallets while keeping the reserve")
            return True

        affordable = (balance - MIN_TREASURY_RESERVE) // per_wallet
        target = min(ctx.config.keypair_qty, affordable)
        if target < ctx.config.keypair_qty:
            logger.warning(
                f"Insufficient balance for {ctx.config.keypair_qty} wallets, "
                f"generating up to {target} instead"
            )

        existing = ctx.wallets.count()
        needed = max(0, target - existing)
        if needed == 0:
            logger.info(f"{existing} wallets already present, nothing to generate")
            return True

        ctx.wallets.generate(needed)
        logger.info(
            f"Remaining treasury balance after funding: "
            f"{format_sol(balance - (existing + needed) * per_wallet)}"
        )
        return True
