"""
Check stage: audit the fleet after teardown.

Wallets with SOL left or any token account go to keypairs_check/ for a
manual look; empty wallets retire to keypairs_old/. Wallets that cannot be
read get a second pass, then go to keypairs_check/ as well.
"""

import logging
from typing import List

from makerfleet.core.utils import format_sol, short_address
from makerfleet.stages.base import StageContext, StageUnit
from makerfleet.wallets.store import WalletFolder

logger = logging.getLogger(__name__)


class CheckStage(StageUnit):
    name = "check"

    async def run(self, ctx: StageContext) -> bool:
        addresses = ctx.wallets.addresses()
        logger.info(f"Found {len(addresses)} wallets. Starting audit...")

        remaining = await self._audit(ctx, addresses)
        if remaining:
            logger.info(f"{len(remaining)} wallets still unaudited. Retrying...")
            remaining = await self._audit(ctx, remaining)

        if remaining:
            logger.warning(
                f"{len(remaining)} wallets could not be audited, "
                f"moving them to {ctx.wallets.folders[WalletFolder.CHECK]}"
            )
            for address in remaining:
                ctx.wallets.move(address, WalletFolder.CHECK)
        else:
            logger.info("All wallets audited")

        return True

    async def _audit(self, ctx: StageContext, addresses: List[str]) -> List[str]:
        """Classify and move wallets. Returns the ones that failed."""
        failed = []

        for address in addresses:
            try:
                lamports = await ctx.ledger.get_balance(address)
                accounts = await ctx.ledger.get_token_accounts(address, ctx.token.program.value)
            except Exception as e:
                logger.error(f"Error auditing wallet {short_address(address)}: {e}")
                failed.append(address)
                continue

            folder = WalletFolder.CHECK if lamports > 0 or accounts else WalletFolder.OLD
            ctx.wallets.move(address, folder)
            logger.info(
                f"Wallet {short_address(address)}: {format_sol(lamports)}, "
                f"{len(accounts)} token accounts. Moved to {ctx.wallets.folders[folder]}"
            )

        return failed
