"""
Unit tests for transaction delivery.

Tests:
- Envelope building and signing
- Each terminal outcome of the delivery engine
- Rebroadcast loop cancellation
- submit() refresh, resend and failure handling
"""

import asyncio
import sys
from pathlib import Path

import pytest

# Add parent to path
sys.path.insert(0, str(Path(__file__).parent.parent))

from solders.hash import Hash
from solders.keypair import Keypair
from solders.message import MessageV0
from solders.system_program import TransferParams, transfer
from solders.transaction import VersionedTransaction

from makerfleet.core.errors import (
    BlockhashExpiredError,
    InsufficientFundsError,
    LedgerTransportError,
    TransactionFailedError,
)
from makerfleet.delivery.engine import DeliveryOutcome, DeliveryStatus, TransactionDeliveryEngine
from makerfleet.delivery.envelope import BlockhashInfo, SignedTransactionEnvelope, build_envelope, sign_versioned
from makerfleet.delivery.ledger import SignatureStatus
from makerfleet.delivery.retry import RetryPolicy
from makerfleet.delivery.submit import instruction_builder, submit

from conftest import FAKE_BLOCKHASH, FakeClock, FakeLedger


def make_envelope(payload: bytes = b"signed-tx", last_valid: int = 400) -> SignedTransactionEnvelope:
    return SignedTransactionEnvelope(payload=payload, blockhash=FAKE_BLOCKHASH, last_valid_block_height=last_valid)


def transfer_ix(payer: Keypair, lamports: int = 1000):
    return transfer(TransferParams(from_pubkey=payer.pubkey(), to_pubkey=Keypair().pubkey(), lamports=lamports))


def deliver(ledger: FakeLedger, envelope: SignedTransactionEnvelope, clock: FakeClock = None) -> DeliveryOutcome:
    engine = TransactionDeliveryEngine(ledger, clock=clock or FakeClock())
    return asyncio.run(engine.deliver(envelope))


class TestEnvelope:
    """Test envelope construction."""

    def test_build_envelope_carries_window(self):
        """Envelope keeps the blockhash and expiry it was signed against."""
        payer = Keypair()
        envelope = build_envelope([transfer_ix(payer)], payer, BlockhashInfo(FAKE_BLOCKHASH, 1234))

        assert envelope.blockhash == FAKE_BLOCKHASH
        assert envelope.last_valid_block_height == 1234
        assert envelope.signature is None
        assert len(envelope.payload) > 64

    def test_build_envelope_requires_instructions(self):
        with pytest.raises(ValueError):
            build_envelope([], Keypair(), BlockhashInfo(FAKE_BLOCKHASH, 1))

    def test_with_signature_returns_copy(self):
        """Envelopes are immutable; the signature lands on a copy."""
        envelope = make_envelope()
        sent = envelope.with_signature("abc")

        assert sent.signature == "abc"
        assert envelope.signature is None
        assert sent.payload == envelope.payload

    def test_sign_versioned_uses_message_blockhash(self):
        """Venue transactions keep their own blockhash."""
        wallet = Keypair()
        message = MessageV0.try_compile(wallet.pubkey(), [transfer_ix(wallet)], [], Hash.from_string(FAKE_BLOCKHASH))
        unsigned = bytes(VersionedTransaction(message, [wallet]))

        envelope = sign_versioned(unsigned, wallet, 321)

        assert envelope.blockhash == FAKE_BLOCKHASH
        assert envelope.last_valid_block_height == 321


class TestDeliveryOutcomes:
    """Test that deliver resolves to exactly one terminal status."""

    def test_confirmed_by_push(self):
        """Push confirmation wins, record is fetched."""
        ledger = FakeLedger()
        ledger.push = "confirm"

        outcome = deliver(ledger, make_envelope())

        assert outcome.status == DeliveryStatus.CONFIRMED
        assert outcome.record == {"slot": 1, "meta": {"err": None}}
        assert outcome.succeeded
        assert ledger.lookup_calls == 1

    def test_expiry_height_has_safety_margin(self):
        """Push path stops 150 blocks before the declared expiry."""
        ledger = FakeLedger()
        ledger.push = "confirm"

        deliver(ledger, make_envelope(last_valid=1000))

        assert ledger.confirm_heights == [850]

    def test_confirmed_by_poll(self):
        """Polling confirms when no push arrives; push path is cancelled."""
        ledger = FakeLedger()
        ledger.statuses = [None, SignatureStatus("processed"), SignatureStatus("confirmed")]

        outcome = deliver(ledger, make_envelope())

        assert outcome.status == DeliveryStatus.CONFIRMED
        assert ledger.status_calls == 3
        assert ledger.cancel_tokens[0].cancelled

    def test_finalized_counts_as_confirmed(self):
        ledger = FakeLedger()
        ledger.statuses = [SignatureStatus("finalized")]

        assert deliver(ledger, make_envelope()).status == DeliveryStatus.CONFIRMED

    def test_poll_errors_are_advisory(self):
        """A failed status query is logged and polling continues."""
        ledger = FakeLedger()
        ledger.statuses = [LedgerTransportError("timeout"), SignatureStatus("confirmed")]

        outcome = deliver(ledger, make_envelope())

        assert outcome.status == DeliveryStatus.CONFIRMED

    def test_expired_is_returned_not_raised(self):
        """Height window elapsing yields EXPIRED."""
        ledger = FakeLedger()
        ledger.push = "expire"

        outcome = deliver(ledger, make_envelope())

        assert outcome.status == DeliveryStatus.EXPIRED
        assert not outcome.landed
        assert ledger.lookup_calls == 0
        with pytest.raises(BlockhashExpiredError):
            outcome.raise_for_status()

    def test_not_found_after_lookup_retries(self):
        """Confirmed but never queryable: 5 lookups, then NOT_FOUND."""
        clock = FakeClock()
        ledger = FakeLedger()
        ledger.push = "confirm"
        ledger.default_record = None

        outcome = deliver(ledger, make_envelope(), clock=clock)

        assert outcome.status == DeliveryStatus.NOT_FOUND_AFTER_RETRIES
        assert ledger.lookup_calls == 5
        assert outcome.landed
        outcome.raise_for_status()

    def test_lookup_tolerates_lag(self):
        """Record shows up on the third lookup."""
        ledger = FakeLedger()
        ledger.push = "confirm"
        ledger.records = [None, LedgerTransportError("lag"), {"slot": 9, "meta": {"err": None}}]

        outcome = deliver(ledger, make_envelope())

        assert outcome.status == DeliveryStatus.CONFIRMED
        assert outcome.record["slot"] == 9
        assert ledger.lookup_calls == 3

    def test_send_failure_is_transport_error(self):
        """Initial send failure is not retried by the engine."""
        ledger = FakeLedger()
        ledger.send_errors = [LedgerTransportError("connection refused")]

        outcome = deliver(ledger, make_envelope())

        assert outcome.status == DeliveryStatus.TRANSPORT_ERROR
        assert outcome.signature is None
        assert ledger.cancel_tokens == []
        with pytest.raises(LedgerTransportError):
            outcome.raise_for_status()

    def test_push_failure_falls_back_to_polling(self):
        """A dead websocket leaves the poll path racing."""
        ledger = FakeLedger()
        ledger.push = LedgerTransportError("websocket closed")
        ledger.statuses = [None, SignatureStatus("confirmed")]

        outcome = deliver(ledger, make_envelope())

        assert outcome.status == DeliveryStatus.CONFIRMED
        assert ledger.status_calls == 2

    def test_push_failure_without_confirmation_expires_on_height(self):
        """Polling stops at the window edge; only the original bytes went out."""
        ledger = FakeLedger()
        ledger.push = LedgerTransportError("connection refused")
        ledger.height_step = 50

        outcome = deliver(ledger, make_envelope(b"only-version"))

        assert outcome.status == DeliveryStatus.EXPIRED
        assert set(ledger.sent) == {b"only-version"}
        assert ledger.block_height > 250
        assert ledger.lookup_calls == 0

    def test_height_query_errors_are_advisory(self):
        ledger = FakeLedger()
        ledger.push = OSError("reset")
        ledger.statuses = [None, None, SignatureStatus("finalized")]
        real_height = ledger.get_block_height
        calls = []

        async def flaky_height():
            calls.append(1)
            if len(calls) == 1:
                raise LedgerTransportError("timeout")
            return await real_height()

        ledger.get_block_height = flaky_height

        outcome = deliver(ledger, make_envelope())

        assert outcome.status == DeliveryStatus.CONFIRMED
        assert len(calls) == 2

    def test_onchain_failure_raises_transaction_failed(self):
        """Landed with an execution error: landed but not succeeded."""
        ledger = FakeLedger()
        ledger.push = SignatureStatus("confirmed", err="InstructionError(2, Custom(1))")

        outcome = deliver(ledger, make_envelope())

        assert outcome.status == DeliveryStatus.CONFIRMED
        assert outcome.landed
        assert not outcome.succeeded
        with pytest.raises(TransactionFailedError):
            outcome.raise_for_status()

    def test_transport_error_wraps_foreign_exception(self):
        outcome = DeliveryOutcome(status=DeliveryStatus.TRANSPORT_ERROR, error=OSError("reset"))
        with pytest.raises(LedgerTransportError):
            outcome.raise_for_status()


class TestRebroadcast:
    """Test the rebroadcast loop."""

    def test_rebroadcasts_identical_bytes_until_confirmed(self):
        """Resends are byte-identical and stop once the race is decided."""
        ledger = FakeLedger()
        ledger.push = "confirm"
        ledger.push_ticks = 10
        engine = TransactionDeliveryEngine(ledger, clock=FakeClock())

        async def scenario():
            outcome = await engine.deliver(make_envelope(b"payload"))
            sent_at_return = len(ledger.sent)
            for _ in range(10):
                await asyncio.sleep(0)
            return outcome, sent_at_return

        outcome, sent_at_return = asyncio.run(scenario())

        assert outcome.rebroadcasts >= 1
        assert len(ledger.sent) == 1 + outcome.rebroadcasts
        assert set(ledger.sent) == {b"payload"}
        assert len(ledger.sent) == sent_at_return

    def test_at_most_one_send_after_cancel(self):
        """Cancellation is cooperative with bounded overshoot."""
        ledger = FakeLedger()
        ledger.statuses = [None] * 5 + [SignatureStatus("confirmed")]

        deliver(ledger, make_envelope())

        assert ledger.sends_after_cancel <= 1

    def test_resend_failures_do_not_stop_delivery(self):
        ledger = FakeLedger()
        ledger.push = "confirm"
        ledger.push_ticks = 6
        ledger.send_errors = [None, LedgerTransportError("resend failed")]

        outcome = deliver(ledger, make_envelope())

        assert outcome.status == DeliveryStatus.CONFIRMED

    def test_duplicate_inflight_envelope_rejected(self):
        """Only one rebroadcast loop per envelope at a time."""
        ledger = FakeLedger()
        ledger.statuses = [None] * 3 + [SignatureStatus("confirmed")]
        engine = TransactionDeliveryEngine(ledger, clock=FakeClock())
        envelope = make_envelope()

        async def scenario():
            return await asyncio.gather(
                engine.deliver(envelope),
                engine.deliver(envelope),
                return_exceptions=True,
            )

        first, second = asyncio.run(scenario())

        assert first.status == DeliveryStatus.CONFIRMED
        assert isinstance(second, ValueError)


class TestSubmit:
    """Test build-deliver-retry."""

    def test_expired_envelope_is_rebuilt_with_fresh_blockhash(self):
        """EXPIRED triggers an immediate rebuild, not a delay."""
        ledger = FakeLedger()
        ledger.push = "expire"
        engine = TransactionDeliveryEngine(ledger, clock=FakeClock())
        payer = Keypair()
        expiring_confirm = ledger.confirm

        async def expire_once(signature, last_valid_block_height, cancel):
            try:
                return await expiring_confirm(signature, last_valid_block_height, cancel)
            finally:
                ledger.push = "confirm"

        ledger.confirm = expire_once
        build = instruction_builder(ledger, lambda: [transfer_ix(payer)], payer)

        policy = RetryPolicy(
            max_attempts=1,
            retry_on=(LedgerTransportError,),
            refresh_on=(BlockhashExpiredError,),
            max_refreshes=2,
        )
        result = asyncio.run(submit(engine, build, policy))

        assert result.success
        assert result.refreshes == 1
        assert ledger.blockhash_calls == 2
        assert result.value.status == DeliveryStatus.CONFIRMED

    def test_wallet_fatal_error_not_retried(self):
        """InsufficientFundsError from the builder stops at once."""
        ledger = FakeLedger()
        engine = TransactionDeliveryEngine(ledger, clock=FakeClock())

        async def build():
            raise InsufficientFundsError("no SOL")

        policy = RetryPolicy(max_attempts=3, retry_on=(LedgerTransportError,))
        result = asyncio.run(submit(engine, build, policy))

        assert not result.success
        assert result.attempts == 1
        assert ledger.sent == []

    def test_async_instruction_factory(self):
        """Instruction factories may be coroutines."""
        ledger = FakeLedger()
        ledger.push = "confirm"
        engine = TransactionDeliveryEngine(ledger, clock=FakeClock())
        payer = Keypair()

        async def instructions():
            return [transfer_ix(payer, await ledger.get_balance("x") + 5)]

        result = asyncio.run(submit(engine, instruction_builder(ledger, instructions, payer), RetryPolicy()))

        assert result.success
        assert len(ledger.sent) >= 1

    def test_send_failure_resends_same_envelope(self):
        """A transport error retries the signed bytes instead of rebuilding."""
        ledger = FakeLedger()
        ledger.fresh_blockhashes = True
        ledger.send_errors = [LedgerTransportError("timeout")]
        ledger.push = "confirm"
        engine = TransactionDeliveryEngine(ledger, clock=FakeClock())
        payer = Keypair()
        build = instruction_builder(ledger, lambda: [transfer_ix(payer)], payer)

        policy = RetryPolicy(max_attempts=3, delay=0, retry_on=(LedgerTransportError,))
        result = asyncio.run(submit(engine, build, policy))

        assert result.success
        assert result.attempts == 2
        assert ledger.blockhash_calls == 1
        assert len(set(ledger.sent)) == 1

    def test_dead_websocket_sends_one_transfer(self):
        """Broken push path with fresh blockhashes still yields a single signed transfer."""
        ledger = FakeLedger()
        ledger.fresh_blockhashes = True
        ledger.push = LedgerTransportError("websocket closed")
        ledger.statuses = [None, SignatureStatus("confirmed")]
        engine = TransactionDeliveryEngine(ledger, clock=FakeClock())
        payer = Keypair()
        build = instruction_builder(ledger, lambda: [transfer_ix(payer)], payer)

        policy = RetryPolicy(
            max_attempts=3,
            retry_on=(LedgerTransportError,),
            refresh_on=(BlockhashExpiredError,),
            max_refreshes=2,
        )
        result = asyncio.run(submit(engine, build, policy))

        assert result.success
        assert ledger.blockhash_calls == 1
        assert len(set(ledger.sent)) == 1
