"""
Transfer stages: fund the fleet from the treasury.

TransferStage packs many system transfers into one transaction;
TransferCheckStage tops up wallets that still look empty afterwards.
"""

import logging
from typing import List

from solders.pubkey import Pubkey
from solders.system_program import TransferParams, transfer

from makerfleet.core.utils import chunked, format_sol, short_address, sol_to_lamports
from makerfleet.delivery.submit import instruction_builder, submit
from makerfleet.pipeline.batching import run_in_batches
from makerfleet.stages.base import StageContext, StageUnit
from makerfleet.swap.tokens import compute_budget

logger = logging.getLogger(__name__)

# Balances at or below this are considered unfunded
TOP_UP_THRESHOLD = sol_to_lamports(0.00001)


class TransferStage(StageUnit):
    """Send TRANSFER_AMOUNT to every active wallet that is not yet funded."""

    name = "transfer"

    async def run(self, ctx: StageContext) -> bool:
        amount = sol_to_lamports(ctx.config.transfer_amount)
        addresses = ctx.wallets.addresses()

        if not addresses:
            logger.info("No wallets to fund")
            return True

        pending = []
        for address in addresses:
            balance = await ctx.ledger.get_balance(address)
            if balance >= amount:
                logger.debug(f"{short_address(address)} already funded ({format_sol(balance)})")
                continue
            pending.append(address)

        if not pending:
            logger.info(f"All {len(addresses)} wallets already funded")
            return True

        groups = chunked(pending, ctx.config.transfer_batch_size)
        logger.info(
            f"Funding {len(pending)} wallets with {format_sol(amount)} each "
            f"in {len(groups)} transactions"
        )

        async def fund(group: List[str]) -> bool:
            return await self._fund_group(ctx, group, amount)

        report = await run_in_batches(
            groups,
            ctx.config.batch_width,
            fund,
            label="transfer",
            describe=lambda g: f"group of {len(g)} starting {short_address(g[0])}",
        )
        return report.ok and all(ok for _, ok in report.results)

    async def _fund_group(self, ctx: StageContext, group: List[str], amount: int) -> bool:
        treasury = ctx.treasury.pubkey()

        def instructions():
            ixs = compute_budget(ctx.config.transfer_compute_limit, ctx.config.transfer_priority_fee)
            for address in group:
                ixs.append(transfer(TransferParams(
                    from_pubkey=treasury,
                    to_pubkey=Pubkey.from_string(address),
                    lamports=amount,
                )))
            return ixs

        result = await submit(
            ctx.engine,
            instruction_builder(ctx.ledger, instructions, ctx.treasury),
            ctx.policy,
            label=f"transfer to {len(group)} wallets",
        )

        for address in group:
            ctx.record_delivery(self.name, address, result)

        if not result.success:
            logger.error(f"Funding failed for {len(group)} wallets: {result.error}")
        return result.success


class TransferCheckStage(StageUnit):
    """Top up wallets whose balance is still at or below the threshold."""

    name = "transfer_check"

    # Lets the last funding transactions settle before balances are read
    settle_delay = 5.0

    async def run(self, ctx: StageContext) -> bool:
        await ctx.clock.sleep(self.settle_delay)

        amount = sol_to_lamports(ctx.config.transfer_amount)
        addresses = ctx.wallets.addresses()
        logger.info(f"Checking balances of {len(addresses)} wallets")

        async def check(address: str) -> bool:
            balance = await ctx.ledger.get_balance(address)
            if balance > TOP_UP_THRESHOLD:
                return True

            logger.info(
                f"Wallet {short_address(address)} has {format_sol(balance)}, "
                f"transferring {format_sol(amount)}"
            )
            result = await submit(
                ctx.engine,
                instruction_builder(
                    ctx.ledger,
                    lambda: [transfer(TransferParams(
                        from_pubkey=ctx.treasury.pubkey(),
                        to_pubkey=Pubkey.from_string(address),
                        lamports=amount,
                    ))],
                    ctx.treasury,
                ),
                ctx.policy,
                label=f"top up {short_address(address)}",
            )
            ctx.record_delivery(self.name, address, result)
            return result.success

        report = await run_in_batches(addresses, ctx.config.batch_width, check, label="transfer check")
        complete = report.ok and all(ok for _, ok in report.results)

        logger.info("Balance check and distribution complete" if complete else "Some top-ups failed")
        return complete
