"""
Processed-wallet repository.

Append-only set of wallets already confirmed to hold the target token, or
found without SOL, for one mint. Read fully into memory at the start of a
swap pass, appended to as wallets are classified.

Assumes a single writer process. Two processes appending for the same
mint can race; the unique constraint turns the second insert into a no-op
rather than a duplicate.
"""

import logging
from typing import Set

from sqlalchemy import delete, select
from sqlalchemy.exc import IntegrityError

from makerfleet.core.config import Config
from makerfleet.core.db import init_db, session_scope
from makerfleet.core.models import ProcessedReason, ProcessedWallet

logger = logging.getLogger(__name__)


class ProcessedWalletStore:
    """SQLite-backed processed set for one mint."""

    def __init__(self, config: Config, mint: str):
        self.config = config
        self.mint = mint
        init_db(config)

    def scan(self) -> Set[str]:
        """All processed addresses for this mint."""
        with session_scope(self.config) as session:
            rows = session.scalars(
                select(ProcessedWallet.address).where(ProcessedWallet.mint == self.mint)
            )
            return set(rows)

    def contains(self, address: str) -> bool:
        with session_scope(self.config) as session:
            found = session.scalar(
                select(ProcessedWallet.id).where(
                    ProcessedWallet.mint == self.mint,
                    ProcessedWallet.address == address,
                )
            )
            return found is not None

    def add(self, address: str, reason: ProcessedReason = ProcessedReason.HAS_TOKENS) -> bool:
        """
        Record a wallet as processed.

        Returns:
            False if it was already recorded
        """
        try:
            with session_scope(self.config) as session:
                session.add(ProcessedWallet(address=address, mint=self.mint, reason=reason))
        except IntegrityError:
            return False
        return True

    def clear(self) -> int:
        """Forget every processed wallet for this mint. Returns rows removed."""
        with session_scope(self.config) as session:
            result = session.execute(delete(ProcessedWallet).where(ProcessedWallet.mint == self.mint))
            removed = result.rowcount or 0

        logger.info(f"Cleared {removed} processed wallets for {self.mint}")
        return removed

    def __len__(self) -> int:
        return len(self.scan())
