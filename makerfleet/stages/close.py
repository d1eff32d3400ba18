"""
Close stage: tear the fleet down and sweep everything to the treasury.

Per wallet, one transaction:
    compute budget
    for each target-token account with a balance:
        transfer_checked -> treasury token account
        harvest withheld fees to mint (Token-2022 only)
        close account (rent -> treasury)
    close every empty token account (rent -> treasury)
    transfer remaining SOL minus the fee -> treasury

Token accounts for other mints that still hold a balance are left alone
and reported; the audit stage routes those wallets to keypairs_check/.
"""

import logging
from dataclasses import dataclass
from typing import List

from solders.instruction import Instruction
from solders.keypair import Keypair
from solders.pubkey import Pubkey
from solders.system_program import TransferParams, transfer
from spl.token.instructions import (
    CloseAccountParams,
    TransferCheckedParams,
    close_account,
    transfer_checked,
)

from makerfleet.core.errors import InsufficientFundsError
from makerfleet.core.utils import chunked, format_sol, short_address
from makerfleet.delivery.ledger import TokenAccount
from makerfleet.delivery.submit import instruction_builder, submit
from makerfleet.pipeline.batching import run_in_batches
from makerfleet.stages.base import StageContext, StageUnit
from makerfleet.swap.tokens import (
    compute_budget,
    harvest_withheld_tokens_to_mint,
    priority_fee_lamports,
)

logger = logging.getLogger(__name__)


@dataclass
class TeardownResult:
    address: str
    had_tokens: bool = False
    closed_accounts: int = 0
    swept: bool = False
    skipped_reason: str = ""


class CloseStage(StageUnit):
    """Recover tokens, account rent and SOL from every active wallet."""

    name = "close"

    async def run(self, ctx: StageContext) -> bool:
        keypairs = ctx.wallets.load_all()
        if not keypairs:
            logger.info("No wallets to close")
            return True

        logger.info(f"Found {len(keypairs)} wallets. Starting teardown...")

        batch_results: List[TeardownResult] = []

        async def teardown(keypair: Keypair) -> TeardownResult:
            result = await self._teardown(ctx, keypair)
            batch_results.append(result)
            return result

        failed = 0
        for number, batch in enumerate(chunked(keypairs, ctx.config.close_batch_size), 1):
            batch_results.clear()
            report = await run_in_batches(
                batch,
                ctx.config.close_batch_size,
                teardown,
                label=f"close batch {number}",
                describe=lambda kp: short_address(str(kp.pubkey())),
            )
            failed += len(report.failures)

            if not any(r.had_tokens for r in batch_results):
                logger.info(f"No tokens found in close batch {number}")

        if failed:
            logger.warning(f"Teardown failed for {failed} wallets")
            return False

        logger.info("Teardown complete")
        return True

    async def _teardown(self, ctx: StageContext, keypair: Keypair) -> TeardownResult:
        owner = keypair.pubkey()
        address = str(owner)
        result = TeardownResult(address=address)

        accounts = await ctx.ledger.get_token_accounts(address, ctx.token.program.value)
        drain = [a for a in accounts if a.amount > 0 and a.mint == ctx.token.mint]
        empty = [a for a in accounts if a.amount == 0]
        foreign = [a for a in accounts if a.amount > 0 and a.mint != ctx.token.mint]

        for account in foreign:
            logger.warning(
                f"Wallet {short_address(address)} holds {account.ui_amount} of unrelated mint "
                f"{short_address(account.mint)}, leaving it for the audit"
            )

        result.had_tokens = bool(drain)
        compute_limit = ctx.config.close_compute_limit * max(1, len(drain) + len(empty))
        fee = priority_fee_lamports(ctx.config.close_priority_fee, compute_limit)

        balance = await ctx.ledger.get_balance(address)
        if not drain and not empty and balance <= fee:
            result.skipped_reason = "nothing to recover"
            logger.debug(f"Wallet {short_address(address)}: nothing to recover")
            return result

        async def instructions() -> List[Instruction]:
            lamports = await ctx.ledger.get_balance(address)
            if lamports <= fee:
                raise InsufficientFundsError(
                    f"{short_address(address)} has {format_sol(lamports)}, needs {format_sol(fee)} for fees"
                )
            return self._instructions(ctx, owner, drain, empty, compute_limit, lamports - fee)

        outcome = await submit(
            ctx.engine,
            instruction_builder(ctx.ledger, instructions, keypair),
            ctx.policy,
            label=f"close {short_address(address)}",
        )
        ctx.record_delivery(self.name, address, outcome)

        if not outcome.success:
            if isinstance(outcome.error, InsufficientFundsError):
                result.skipped_reason = str(outcome.error)
                logger.warning(f"Skipping wallet: {outcome.error}")
                return result
            raise outcome.error

        result.closed_accounts = len(drain) + len(empty)
        result.swept = True
        logger.info(
            f"Wallet {short_address(address)} closed {result.closed_accounts} token accounts "
            f"and swept its SOL: {outcome.value.signature}"
        )
        return result

    def _instructions(
        self,
        ctx: StageContext,
        owner: Pubkey,
        drain: List[TokenAccount],
        empty: List[TokenAccount],
        compute_limit: int,
        sweep_lamports: int,
    ) -> List[Instruction]:
        program = ctx.token.program.pubkey
        treasury = ctx.treasury.pubkey()
        treasury_ata = Pubkey.from_string(ctx.token.treasury_token_account)
        mint = ctx.token.mint_pubkey

        def close(account: Pubkey) -> Instruction:
            return close_account(CloseAccountParams(
                program_id=program,
                account=account,
                dest=treasury,
                owner=owner,
            ))

        ixs = compute_budget(compute_limit, ctx.config.close_priority_fee)

        for account in drain:
            source = Pubkey.from_string(account.address)
            ixs.append(transfer_checked(TransferCheckedParams(
                program_id=program,
                source=source,
                mint=mint,
                dest=treasury_ata,
                owner=owner,
                amount=account.amount,
                decimals=ctx.token.decimals,
            )))
            if ctx.token.program.is_2022:
                ixs.append(harvest_withheld_tokens_to_mint(mint, [source]))
            ixs.append(close(source))

        for account in empty:
            ixs.append(close(Pubkey.from_string(account.address)))

        ixs.append(transfer(TransferParams(from_pubkey=owner, to_pubkey=treasury, lamports=sweep_lamports)))
        return ixs
