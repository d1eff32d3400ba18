"""
Token program helpers.

SPL Token and Token-2022 instructions come from spl-py (shipped with
solana-py); only the Token-2022 fee harvest, which spl-py does not cover,
is encoded here. Also run preparation: which program owns the mint, its
decimals, the treasury's token account.
"""

import logging
from dataclasses import dataclass
from enum import Enum
from typing import List, Optional, Sequence

from solders.compute_budget import set_compute_unit_limit, set_compute_unit_price
from solders.instruction import AccountMeta, Instruction
from solders.keypair import Keypair
from solders.pubkey import Pubkey
from spl.token.constants import TOKEN_2022_PROGRAM_ID, TOKEN_PROGRAM_ID, WRAPPED_SOL_MINT
from spl.token.instructions import (
    create_idempotent_associated_token_account,
    get_associated_token_address,
)

from makerfleet.core.errors import UnknownTokenProgramError
from makerfleet.delivery.engine import TransactionDeliveryEngine
from makerfleet.delivery.ledger import LedgerClient
from makerfleet.delivery.retry import RetryPolicy
from makerfleet.delivery.submit import instruction_builder, submit

logger = logging.getLogger(__name__)

SOL_MINT = str(WRAPPED_SOL_MINT)

# Token-2022 TransferFeeExtension -> HarvestWithheldTokensToMint
TRANSFER_FEE_EXTENSION_IX = 26
HARVEST_WITHHELD_TO_MINT_IX = 4


class TokenProgram(str, Enum):
    """Token programs a mint can belong to."""
    SPL_TOKEN = str(TOKEN_PROGRAM_ID)
    TOKEN_2022 = str(TOKEN_2022_PROGRAM_ID)

    @property
    def pubkey(self) -> Pubkey:
        return Pubkey.from_string(self.value)

    @property
    def is_2022(self) -> bool:
        return self is TokenProgram.TOKEN_2022

    @classmethod
    def from_owner(cls, owner: Optional[str]) -> "TokenProgram":
        for program in cls:
            if program.value == owner:
                return program
        raise UnknownTokenProgramError(f"Mint is owned by {owner}, not a token program")


@dataclass(frozen=True)
class TokenContext:
    """Everything the swap and teardown stages need to know about the mint."""
    mint: str
    program: TokenProgram
    decimals: int
    treasury: str
    treasury_token_account: str

    @property
    def mint_pubkey(self) -> Pubkey:
        return Pubkey.from_string(self.mint)


def harvest_withheld_tokens_to_mint(mint: Pubkey, sources: Sequence[Pubkey]) -> Instruction:
    """Token-2022 only: move withheld transfer fees from `sources` to the mint."""
    accounts = [AccountMeta(pubkey=mint, is_signer=False, is_writable=True)]
    accounts += [AccountMeta(pubkey=s, is_signer=False, is_writable=True) for s in sources]
    return Instruction(
        program_id=TOKEN_2022_PROGRAM_ID,
        accounts=accounts,
        data=bytes([TRANSFER_FEE_EXTENSION_IX, HARVEST_WITHHELD_TO_MINT_IX]),
    )


def compute_budget(unit_limit: int, unit_price: int) -> List[Instruction]:
    """Compute unit limit + priority fee (micro-lamports per unit)."""
    return [set_compute_unit_limit(unit_limit), set_compute_unit_price(unit_price)]


def priority_fee_lamports(unit_price: int, unit_limit: int, base_fee: int = 5000) -> int:
    """
    Total fee estimate for a single-signature transaction.

    Examples:
        priority_fee_lamports(100_000, 15_000) -> 6500
    """
    return round(unit_price * unit_limit / 1_000_000 + base_fee)


async def detect_token_program(ledger: LedgerClient, mint: str) -> TokenProgram:
    """Which token program owns `mint`."""
    owner = await ledger.get_account_owner(mint)
    if owner is None:
        raise UnknownTokenProgramError(f"Mint account {mint} does not exist")
    return TokenProgram.from_owner(owner)


async def prepare_token_context(
    ledger: LedgerClient,
    engine: TransactionDeliveryEngine,
    treasury: Keypair,
    mint: str,
    policy: RetryPolicy,
) -> TokenContext:
    """
    Resolve mint metadata and make sure the treasury can receive the token.

    Creates the treasury's associated token account if it is missing.

    Args:
        ledger: Ledger client
        engine: Delivery engine for the account creation
        treasury: Treasury keypair (pays for the account)
        mint: Target token mint
        policy: Retry policy for the account creation

    Returns:
        TokenContext for the run
    """
    program = await detect_token_program(ledger, mint)
    decimals = await ledger.get_mint_decimals(mint)

    mint_pubkey = Pubkey.from_string(mint)
    treasury_pubkey = treasury.pubkey()
    treasury_ata = get_associated_token_address(treasury_pubkey, mint_pubkey, program.pubkey)

    logger.info(f"Token program: {program.name}, decimals: {decimals}")
    logger.info(f"Treasury token account: {treasury_ata}")

    if await ledger.get_account_owner(str(treasury_ata)) is None:
        logger.info("Treasury token account missing, creating it...")
        result = await submit(
            engine,
            instruction_builder(
                ledger,
                lambda: [create_idempotent_associated_token_account(
                    treasury_pubkey, treasury_pubkey, mint_pubkey, program.pubkey
                )],
                treasury,
            ),
            policy,
            label="create treasury token account",
        )
        result.unwrap()

    return TokenContext(
        mint=mint,
        program=program,
        decimals=decimals,
        treasury=str(treasury_pubkey),
        treasury_token_account=str(treasury_ata),
    )
