"""
Build-deliver-retry helper used by every stage.

Delivers one signed envelope and turns the outcome into the error
taxonomy so the retry policy can decide: expired windows refresh
immediately, rate limits cool down, transport errors wait the normal
delay, wallet-fatal errors stop at once.

A new envelope (new blockhash) is built only for the first attempt and
after an expiry. Any other retry resends the same signed bytes, so a
payment never has two live versions on the network.
"""

import inspect
import logging
from typing import Awaitable, Callable, Optional, Sequence, Union

from solders.instruction import Instruction
from solders.keypair import Keypair

from makerfleet.core.config import Config
from makerfleet.core.errors import (
    BlockhashExpiredError,
    LedgerTransportError,
    RateLimitedError,
)
from makerfleet.delivery.engine import DeliveryOutcome, DeliveryStatus, TransactionDeliveryEngine
from makerfleet.delivery.envelope import SignedTransactionEnvelope, build_envelope
from makerfleet.delivery.ledger import LedgerClient
from makerfleet.delivery.retry import RetryPolicy, RetryResult, execute

logger = logging.getLogger(__name__)

EnvelopeBuilder = Callable[[], Awaitable[SignedTransactionEnvelope]]


def delivery_policy(config: Config) -> RetryPolicy:
    """Retry policy for one transaction, from config."""
    return RetryPolicy(
        max_attempts=config.max_retries,
        delay=config.retry_delay,
        retry_on=(LedgerTransportError,),
        refresh_on=(BlockhashExpiredError,),
        max_refreshes=config.max_refreshes,
        cooldown_on=(RateLimitedError,),
        cooldown=config.rate_limit_cooldown,
    )


def instruction_builder(
    ledger: LedgerClient,
    instructions: Callable[[], Union[Sequence[Instruction], Awaitable[Sequence[Instruction]]]],
    payer: Keypair,
) -> EnvelopeBuilder:
    """
    Envelope builder for locally assembled instructions.

    `instructions` (plain or coroutine function) is called on every attempt
    so amounts that depend on live balances are recomputed after a refresh.
    """

    async def build() -> SignedTransactionEnvelope:
        window = await ledger.get_latest_blockhash()
        ixs = instructions()
        if inspect.isawaitable(ixs):
            ixs = await ixs
        return build_envelope(list(ixs), payer, window)

    return build


async def submit(
    engine: TransactionDeliveryEngine,
    build: EnvelopeBuilder,
    policy: RetryPolicy,
    label: str = "transaction",
    log: Optional[logging.Logger] = None,
) -> RetryResult[DeliveryOutcome]:
    """
    Build, deliver and retry until a landing or the policy gives up.

    Args:
        engine: Delivery engine
        build: Coroutine factory producing a freshly signed envelope
        policy: Retry policy (see delivery_policy)
        label: Name used in log lines
        log: Logger to write to

    Returns:
        RetryResult whose value is the landed DeliveryOutcome
    """
    log = log or logger

    envelope: Optional[SignedTransactionEnvelope] = None

    async def attempt() -> DeliveryOutcome:
        nonlocal envelope
        if envelope is None:
            envelope = await build()
        else:
            log.info(f"{label}: resending the unexpired transaction")

        outcome = await engine.deliver(envelope)
        if outcome.status == DeliveryStatus.EXPIRED:
            envelope = None
        outcome.raise_for_status()
        return outcome

    result = await execute(attempt, policy, clock=engine.clock, label=label, log=log)
    if result.success:
        log.info(f"{label}: landed ({result.value.status.value}) {result.value.signature}")
    return result
