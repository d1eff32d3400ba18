"""
Transaction delivery engine.

Gets one signed transaction confirmed on a network that drops
transactions silently and expires them after a blockhash-bound window:

1. Send once and take the signature.
2. Rebroadcast the identical bytes every couple of seconds.
3. Race a push confirmation (websocket) against a status poll.
4. Stop the loser and the rebroadcast loop, whatever happens.
5. Treat an exceeded block height as an outcome, not an error.
6. Fetch the confirmed record, tolerating read-after-write lag.

Every call resolves to exactly one DeliveryOutcome.
"""

import asyncio
import logging
from dataclasses import dataclass
from enum import Enum
from typing import Any, Dict, Optional, Set

from makerfleet.core.errors import (
    BlockhashExpiredError,
    LedgerTransportError,
    MakerFleetError,
    TransactionFailedError,
    TransactionNotFoundError,
)
from makerfleet.core.utils import short_address
from makerfleet.delivery.envelope import SignedTransactionEnvelope
from makerfleet.delivery.ledger import LedgerClient, SignatureStatus
from makerfleet.delivery.retry import RetryPolicy, execute
from makerfleet.delivery.timing import CancelToken, Clock

logger = logging.getLogger(__name__)

REBROADCAST_INTERVAL = 2.0
POLL_INTERVAL = 2.0

# Stop waiting this many blocks before the ledger's own expiry so a
# "not expired yet" answer cannot race the network's enforcement
EXPIRY_SAFETY_MARGIN = 150

LOOKUP_POLICY = RetryPolicy(
    max_attempts=5,
    delay=1.0,
    retry_on=(TransactionNotFoundError, LedgerTransportError),
)


class DeliveryStatus(str, Enum):
    """Terminal outcome of one delivery call."""
    CONFIRMED = "confirmed"
    EXPIRED = "expired"
    NOT_FOUND_AFTER_RETRIES = "not_found_after_retries"
    TRANSPORT_ERROR = "transport_error"


@dataclass(frozen=True)
class DeliveryOutcome:
    """Result of TransactionDeliveryEngine.deliver."""
    status: DeliveryStatus
    signature: Optional[str] = None
    record: Optional[Dict[str, Any]] = None
    error: Optional[BaseException] = None
    execution_error: Optional[str] = None
    last_valid_block_height: int = 0
    rebroadcasts: int = 0

    @property
    def landed(self) -> bool:
        """Confirmed, or presumed landed with the record not yet queryable."""
        return self.status in (DeliveryStatus.CONFIRMED, DeliveryStatus.NOT_FOUND_AFTER_RETRIES)

    @property
    def succeeded(self) -> bool:
        return self.landed and self.execution_error is None

    def raise_for_status(self) -> None:
        """
        Raise the matching error for anything but a clean landing.

        EXPIRED raises BlockhashExpiredError (rebuild and resend),
        TRANSPORT_ERROR re-raises its cause, and a landed transaction
        that failed on-chain raises TransactionFailedError.
        NOT_FOUND_AFTER_RETRIES does not raise: assume success, audit later.
        """
        if self.status == DeliveryStatus.EXPIRED:
            raise BlockhashExpiredError(self.signature or "", self.last_valid_block_height)

        if self.status == DeliveryStatus.TRANSPORT_ERROR:
            if isinstance(self.error, MakerFleetError):
                raise self.error
            raise LedgerTransportError(str(self.error)) from self.error

        if self.execution_error:
            raise TransactionFailedError(
                f"Transaction {self.signature} failed on-chain: {self.execution_error}"
            )


def _record_error(record: Optional[Dict[str, Any]]) -> Optional[str]:
    if not record:
        return None
    err = (record.get("meta") or {}).get("err")
    return str(err) if err else None


class TransactionDeliveryEngine:
    """
    Submits signed envelopes and waits for a terminal outcome.

    One instance is shared by all stage units; concurrent deliver() calls
    for different envelopes are independent.
    """

    def __init__(
        self,
        ledger: LedgerClient,
        clock: Optional[Clock] = None,
        rebroadcast_interval: float = REBROADCAST_INTERVAL,
        poll_interval: float = POLL_INTERVAL,
        safety_margin: int = EXPIRY_SAFETY_MARGIN,
        lookup_policy: RetryPolicy = LOOKUP_POLICY,
        log: Optional[logging.Logger] = None,
    ):
        """
        Initialize delivery engine.

        Args:
            ledger: Ledger client used for every network call
            clock: Clock for rebroadcast/poll intervals
            rebroadcast_interval: Seconds between resends
            poll_interval: Seconds between status polls
            safety_margin: Blocks subtracted from the declared expiry height
            lookup_policy: Retry policy for the post-confirmation record fetch
            log: Logger to report progress to
        """
        self.ledger = ledger
        self.clock = clock or Clock()
        self.rebroadcast_interval = rebroadcast_interval
        self.poll_interval = poll_interval
        self.safety_margin = safety_margin
        self.lookup_policy = lookup_policy
        self.log = log or logger
        self._inflight: Set[bytes] = set()

    async def deliver(self, envelope: SignedTransactionEnvelope) -> DeliveryOutcome:
        """
        Deliver a signed envelope.

        Args:
            envelope: Signed transaction and its validity window

        Returns:
            DeliveryOutcome with exactly one terminal status
        """
        if envelope.payload in self._inflight:
            raise ValueError("Envelope is already being delivered")

        self._inflight.add(envelope.payload)
        try:
            return await self._deliver(envelope)
        finally:
            self._inflight.discard(envelope.payload)

    async def _deliver(self, envelope: SignedTransactionEnvelope) -> DeliveryOutcome:
        try:
            signature = await self.ledger.send_raw(envelope.payload)
        except Exception as e:
            self.log.error(f"Failed to send transaction: {e}")
            return DeliveryOutcome(
                status=DeliveryStatus.TRANSPORT_ERROR,
                error=e,
                last_valid_block_height=envelope.last_valid_block_height,
            )

        envelope = envelope.with_signature(signature)
        self.log.debug(f"Transaction sent: {signature}")

        cancel = CancelToken()
        resender = asyncio.ensure_future(self._rebroadcast(envelope, cancel))

        try:
            status = await self._race(envelope, cancel)
        except BlockhashExpiredError:
            self.log.warning(
                f"Transaction {short_address(signature, 8)} expired "
                f"(block height passed {envelope.last_valid_block_height - self.safety_margin})"
            )
            return DeliveryOutcome(
                status=DeliveryStatus.EXPIRED,
                signature=signature,
                last_valid_block_height=envelope.last_valid_block_height,
                rebroadcasts=await self._stop(resender, cancel),
            )
        except Exception as e:
            self.log.error(f"Confirmation failed for {short_address(signature, 8)}: {e}")
            return DeliveryOutcome(
                status=DeliveryStatus.TRANSPORT_ERROR,
                signature=signature,
                error=e,
                last_valid_block_height=envelope.last_valid_block_height,
                rebroadcasts=await self._stop(resender, cancel),
            )
        finally:
            cancel.cancel()

        rebroadcasts = await self._stop(resender, cancel)

        lookup = await execute(
            lambda: self._lookup(signature),
            self.lookup_policy,
            clock=self.clock,
            label=f"getTransaction {short_address(signature, 8)}",
            log=self.log,
        )

        if not lookup.success:
            self.log.warning(
                f"Transaction {signature} confirmed but not queryable after "
                f"{lookup.attempts} lookups"
            )
            return DeliveryOutcome(
                status=DeliveryStatus.NOT_FOUND_AFTER_RETRIES,
                signature=signature,
                execution_error=status.err,
                last_valid_block_height=envelope.last_valid_block_height,
                rebroadcasts=rebroadcasts,
            )

        return DeliveryOutcome(
            status=DeliveryStatus.CONFIRMED,
            signature=signature,
            record=lookup.value,
            execution_error=status.err or _record_error(lookup.value),
            last_valid_block_height=envelope.last_valid_block_height,
            rebroadcasts=rebroadcasts,
        )

    async def _race(self, envelope: SignedTransactionEnvelope, cancel: CancelToken) -> SignatureStatus:
        """
        Push confirmation vs. status polling; first settled result wins.

        Only expiry ends the race early. A broken push path is logged and
        the poll keeps going, with its own block-height check bounding it.
        """
        signature = envelope.signature
        expiry_height = envelope.last_valid_block_height - self.safety_margin

        push = asyncio.ensure_future(self.ledger.confirm(signature, expiry_height, cancel))
        poll = asyncio.ensure_future(self._poll(signature, expiry_height, cancel))
        pending = {push, poll}

        try:
            while pending:
                done, pending = await asyncio.wait(pending, return_when=asyncio.FIRST_COMPLETED)

                # A confirmation beats an error that settled in the same tick
                for task in done:
                    if task.exception() is None and task.result() is not None:
                        return task.result()

                for task in done:
                    error = task.exception()
                    if error is None:
                        continue
                    if task is push and not isinstance(error, BlockhashExpiredError):
                        self.log.warning(
                            f"Push confirmation unavailable for {short_address(signature, 8)}, "
                            f"polling only: {error}"
                        )
                        continue
                    raise error

            raise LedgerTransportError(f"No confirmation signal for {signature}")
        finally:
            cancel.cancel()
            for task in (push, poll):
                if not task.done():
                    task.cancel()
            await asyncio.gather(push, poll, return_exceptions=True)

    async def _poll(
        self,
        signature: str,
        expiry_height: int,
        cancel: CancelToken,
    ) -> Optional[SignatureStatus]:
        """
        Poll signature status until confirmed or the window closes.

        Status and height query failures are advisory.
        """
        while not cancel.cancelled:
            if await self.clock.sleep(self.poll_interval, cancel):
                return None

            try:
                status = await self.ledger.get_signature_status(signature)
            except Exception as e:
                self.log.debug(f"Status poll failed for {short_address(signature, 8)}: {e}")
                status = None

            if status is not None and status.is_confirmed:
                return status

            try:
                height = await self.ledger.get_block_height()
            except Exception as e:
                self.log.debug(f"Block height query failed: {e}")
                continue

            if height > expiry_height:
                raise BlockhashExpiredError(signature, expiry_height)

        return None

    async def _rebroadcast(self, envelope: SignedTransactionEnvelope, cancel: CancelToken) -> int:
        """Resend identical bytes until cancelled. Returns the number of resends."""
        count = 0
        while True:
            await self.clock.sleep(self.rebroadcast_interval, cancel)
            if cancel.cancelled:
                return count

            count += 1
            try:
                await self.ledger.send_raw(envelope.payload)
            except Exception as e:
                self.log.warning(f"Failed to resend transaction: {e}")

    @staticmethod
    async def _stop(resender: "asyncio.Future[int]", cancel: CancelToken) -> int:
        cancel.cancel()
        return await resender

    async def _lookup(self, signature: str) -> Dict[str, Any]:
        record = await self.ledger.get_transaction(signature)
        if record is None:
            raise TransactionNotFoundError(f"Transaction not found yet: {signature}")
        return record
