"""
Stage unit contract and shared run context.

A stage unit attempts its ledger operations for every wallet, logs and
tolerates per-wallet failures, and returns whether the stage as a whole
is complete. The orchestrator retries incomplete stages in place.
"""

import logging
from abc import ABC, abstractmethod
from dataclasses import dataclass
from typing import Optional

from solders.keypair import Keypair

from makerfleet.core.config import Config
from makerfleet.core.db import session_scope
from makerfleet.core.models import DeliveryRecord
from makerfleet.delivery.engine import DeliveryOutcome, TransactionDeliveryEngine
from makerfleet.delivery.ledger import LedgerClient
from makerfleet.delivery.retry import RetryPolicy, RetryResult
from makerfleet.delivery.timing import Clock
from makerfleet.notify.telegram import TelegramNotifier
from makerfleet.swap.base import SwapProvider
from makerfleet.swap.tokens import TokenContext
from makerfleet.wallets.processed import ProcessedWalletStore
from makerfleet.wallets.store import WalletStore

logger = logging.getLogger(__name__)


@dataclass
class StageContext:
    """Collaborators shared by every stage of a run."""
    config: Config
    ledger: LedgerClient
    engine: TransactionDeliveryEngine
    wallets: WalletStore
    processed: ProcessedWalletStore
    treasury: Keypair
    token: TokenContext
    provider: SwapProvider
    policy: RetryPolicy
    clock: Clock
    notifier: Optional[TelegramNotifier] = None

    @property
    def treasury_address(self) -> str:
        return str(self.treasury.pubkey())

    def record_delivery(self, stage: str, wallet: str, result: RetryResult[DeliveryOutcome]) -> None:
        """Persist the terminal outcome of one submitted transaction."""
        outcome = result.value
        if result.success and outcome is not None:
            status = outcome.status.value
            signature = outcome.signature
            error = None
        else:
            status = "failed"
            signature = getattr(result.error, "signature", None) or None
            error = str(result.error) if result.error else None

        try:
            with session_scope(self.config) as session:
                session.add(DeliveryRecord(
                    stage=stage,
                    wallet=wallet,
                    signature=signature,
                    status=status,
                    error_message=error,
                ))
        except Exception as e:
            logger.error(f"Failed to record {stage} delivery for {wallet}: {e}")


@dataclass(frozen=True)
class WalletSnapshot:
    """Balances of one wallet at a point in time."""
    address: str
    lamports: int
    token_amount: int  # raw units of the target mint

    @property
    def has_tokens(self) -> bool:
        return self.token_amount > 0


async def snapshot(ctx: StageContext, address: str) -> WalletSnapshot:
    """Read SOL and target-token balances for a wallet."""
    lamports = await ctx.ledger.get_balance(address)
    accounts = await ctx.ledger.get_token_accounts(
        address, ctx.token.program.value, mint=ctx.token.mint
    )
    return WalletSnapshot(
        address=address,
        lamports=lamports,
        token_amount=sum(a.amount for a in accounts),
    )


class StageUnit(ABC):
    """One pipeline step."""

    name = "stage"

    @abstractmethod
    async def run(self, ctx: StageContext) -> bool:
        """
        Run the stage over the current wallet set.

        Returns:
            True when the stage is complete
        """
