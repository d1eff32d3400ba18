"""
Shared fakes for makerfleet tests.

FakeClock advances simulated time and yields to the event loop instead of
sleeping. FakeLedger scripts every ledger answer.
"""

import asyncio
import hashlib
import sys
from pathlib import Path
from typing import Any, Dict, List, Optional

import pytest

# Add parent to path
sys.path.insert(0, str(Path(__file__).parent.parent))

from solders.hash import Hash
from solders.keypair import Keypair

from makerfleet.core.config import Config
from makerfleet.core.errors import BlockhashExpiredError
from makerfleet.delivery.engine import TransactionDeliveryEngine
from makerfleet.delivery.envelope import BlockhashInfo, SignedTransactionEnvelope
from makerfleet.delivery.ledger import LedgerClient, SignatureStatus, TokenAccount
from makerfleet.delivery.submit import delivery_policy
from makerfleet.delivery.timing import CancelToken, Clock
from makerfleet.stages.base import StageContext
from makerfleet.swap.base import SwapProvider, SwapQuote
from makerfleet.swap.tokens import TokenContext, TokenProgram, get_associated_token_address
from makerfleet.wallets.processed import ProcessedWalletStore
from makerfleet.wallets.store import WalletStore

# 32 zero bytes, a valid blockhash string
FAKE_BLOCKHASH = "11111111111111111111111111111111"
TARGET_MINT = "EPjFWdd5AufqSSqeM2qN1xzybapC8G4wEGGkZwyTDt1v"


class FakeClock(Clock):
    """Simulated time: sleeps are recorded and return after one loop tick."""

    def __init__(self):
        self.now = 0.0
        self.sleeps: List[float] = []

    async def sleep(self, seconds: float, cancel: Optional[CancelToken] = None) -> bool:
        self.sleeps.append(seconds)
        if cancel is not None and cancel.cancelled:
            return True
        self.now += max(seconds, 0)
        await asyncio.sleep(0)
        return bool(cancel and cancel.cancelled)


class FakeLedger(LedgerClient):
    """
    Scripted ledger.

    push: "wait" (never pushes, returns None on cancel), "confirm", "expire",
    a SignatureStatus to return, or an exception instance to raise.
    height_step: blocks added on every get_block_height call.
    fresh_blockhashes: hand out a different blockhash on every call.
    """

    def __init__(self):
        self.sent: List[bytes] = []
        self.send_errors: List[Optional[Exception]] = []
        self.statuses: List[Any] = []
        self.push: Any = "wait"
        self.push_ticks = 0
        self.records: List[Any] = []
        self.default_record: Optional[Dict[str, Any]] = {"slot": 1, "meta": {"err": None}}
        self.balances: Dict[str, int] = {}
        self.balance_errors: Dict[str, Exception] = {}
        self.token_accounts: Dict[str, List[TokenAccount]] = {}
        self.owners: Dict[str, str] = {}
        self.decimals = 6
        self.block_height = 100
        self.last_valid_block_height = 400
        self.height_step = 0
        self.fresh_blockhashes = False

        self.cancel_tokens: List[CancelToken] = []
        self.confirm_heights: List[int] = []
        self.sends_after_cancel = 0
        self.status_calls = 0
        self.lookup_calls = 0
        self.blockhash_calls = 0
        self.closed = False

    async def send_raw(self, payload: bytes) -> str:
        if self.cancel_tokens and self.cancel_tokens[-1].cancelled:
            self.sends_after_cancel += 1
        if self.send_errors:
            error = self.send_errors.pop(0)
            if error is not None:
                raise error
        self.sent.append(payload)
        return hashlib.sha256(payload).hexdigest()

    async def get_latest_blockhash(self) -> BlockhashInfo:
        self.blockhash_calls += 1
        if self.fresh_blockhashes:
            blockhash = str(Hash(bytes([self.blockhash_calls]) * 32))
            return BlockhashInfo(blockhash, self.last_valid_block_height)
        return BlockhashInfo(FAKE_BLOCKHASH, self.last_valid_block_height)

    async def get_signature_status(self, signature: str) -> Optional[SignatureStatus]:
        self.status_calls += 1
        item = self.statuses.pop(0) if self.statuses else None
        if isinstance(item, Exception):
            raise item
        return item

    async def confirm(self, signature: str, last_valid_block_height: int, cancel: CancelToken):
        self.cancel_tokens.append(cancel)
        self.confirm_heights.append(last_valid_block_height)
        for _ in range(self.push_ticks):
            await asyncio.sleep(0)

        if self.push == "confirm":
            return SignatureStatus(confirmation_status="confirmed")
        if isinstance(self.push, SignatureStatus):
            return self.push
        if self.push == "expire":
            raise BlockhashExpiredError(signature, last_valid_block_height)
        if isinstance(self.push, Exception):
            raise self.push

        await cancel.wait()
        return None

    async def get_transaction(self, signature: str):
        self.lookup_calls += 1
        if self.records:
            item = self.records.pop(0)
            if isinstance(item, Exception):
                raise item
            return item
        return self.default_record

    async def get_balance(self, address: str) -> int:
        if address in self.balance_errors:
            raise self.balance_errors[address]
        return self.balances.get(address, 0)

    async def get_block_height(self) -> int:
        self.block_height += self.height_step
        return self.block_height

    async def get_account_owner(self, address: str) -> Optional[str]:
        return self.owners.get(address)

    async def get_mint_decimals(self, mint: str) -> int:
        return self.decimals

    async def get_token_accounts(self, owner: str, program_id: str, mint: Optional[str] = None) -> List[TokenAccount]:
        return [
            a for a in self.token_accounts.get(owner, [])
            if a.program_id == program_id and (mint is None or a.mint == mint)
        ]

    async def close(self) -> None:
        self.closed = True


class FakeProvider(SwapProvider):
    """Swap venue returning opaque payloads, one per wallet and call."""

    name = "fake"

    def __init__(self, ledger: LedgerClient):
        super().__init__(ledger, slippage_bps=50, priority_fee=1000, session=object())
        self.quotes: List[int] = []
        self.built: List[str] = []
        self.errors: List[Exception] = []

    async def quote(self, input_mint: str, output_mint: str, amount: int) -> SwapQuote:
        if self.errors:
            raise self.errors.pop(0)
        self.quotes.append(amount)
        return SwapQuote(
            venue=self.name,
            input_mint=input_mint,
            output_mint=output_mint,
            in_amount=amount,
            out_amount=amount * 10,
            slippage_bps=self.slippage_bps,
        )

    async def build_signed_transaction(self, quote: SwapQuote, wallet: Keypair) -> SignedTransactionEnvelope:
        address = str(wallet.pubkey())
        self.built.append(address)
        return SignedTransactionEnvelope(
            payload=f"swap:{address}:{len(self.built)}".encode(),
            blockhash=FAKE_BLOCKHASH,
            last_valid_block_height=400,
        )


def token_account(owner: str, amount: int, mint: str = TARGET_MINT,
                  program: TokenProgram = TokenProgram.SPL_TOKEN) -> TokenAccount:
    """Token account at the owner's associated address."""
    from solders.pubkey import Pubkey

    address = get_associated_token_address(
        Pubkey.from_string(owner), Pubkey.from_string(mint), program.pubkey
    )
    return TokenAccount(
        address=str(address),
        mint=mint,
        owner=owner,
        amount=amount,
        decimals=6,
        program_id=program.value,
    )


@pytest.fixture
def fake_clock() -> FakeClock:
    return FakeClock()


@pytest.fixture
def fake_ledger() -> FakeLedger:
    return FakeLedger()


@pytest.fixture
def treasury() -> Keypair:
    return Keypair()


@pytest.fixture
def config(tmp_path, treasury) -> Config:
    """Config pointing at tmp_path, with fast retries."""
    key_path = tmp_path / "treasury.json"
    key_path.write_text(str(list(bytes(treasury))))

    return Config(
        rpc_url="http://localhost:8899",
        ws_url="ws://localhost:8900",
        source_keypair_path=str(key_path),
        token_mint=TARGET_MINT,
        keypair_qty=5,
        transfer_amount=0.01,
        sol_to_swap=0.001,
        max_retries=3,
        retry_delay=1,
        max_refreshes=2,
        keypairs_dir=str(tmp_path / "keypairs"),
        database_path=str(tmp_path / "makerfleet.db"),
        log_file=str(tmp_path / "makers.log"),
    )


@pytest.fixture
def wallet_store(config) -> WalletStore:
    store = WalletStore(config.keypairs_dir)
    store.ensure_folders()
    return store


@pytest.fixture
def make_context(config, fake_ledger, fake_clock, wallet_store, treasury):
    """Build a StageContext around the fakes."""

    def build(program: TokenProgram = TokenProgram.SPL_TOKEN, ledger: Optional[FakeLedger] = None) -> StageContext:
        from solders.pubkey import Pubkey

        ledger = ledger or fake_ledger
        ledger.push = "confirm"
        ata = get_associated_token_address(treasury.pubkey(), Pubkey.from_string(TARGET_MINT), program.pubkey)
        return StageContext(
            config=config,
            ledger=ledger,
            engine=TransactionDeliveryEngine(ledger, clock=fake_clock),
            wallets=wallet_store,
            processed=ProcessedWalletStore(config, TARGET_MINT),
            treasury=treasury,
            token=TokenContext(
                mint=TARGET_MINT,
                program=program,
                decimals=6,
                treasury=str(treasury.pubkey()),
                treasury_token_account=str(ata),
            ),
            provider=FakeProvider(ledger),
            policy=delivery_policy(config),
            clock=fake_clock,
        )

    return build
