"""
Transaction delivery for makerfleet.

Handles signed envelopes, retries, and confirmation against the ledger.
"""

from makerfleet.delivery.engine import DeliveryOutcome, DeliveryStatus, TransactionDeliveryEngine
from makerfleet.delivery.envelope import BlockhashInfo, SignedTransactionEnvelope, build_envelope, sign_versioned
from makerfleet.delivery.ledger import LedgerClient, SignatureStatus, SolanaLedgerClient, TokenAccount
from makerfleet.delivery.retry import RetryPolicy, RetryResult, execute
from makerfleet.delivery.timing import CancelToken, Clock

__all__ = [
    "BlockhashInfo",
    "CancelToken",
    "Clock",
    "DeliveryOutcome",
    "DeliveryStatus",
    "LedgerClient",
    "RetryPolicy",
    "RetryResult",
    "SignatureStatus",
    "SignedTransactionEnvelope",
    "SolanaLedgerClient",
    "TokenAccount",
    "TransactionDeliveryEngine",
    "build_envelope",
    "execute",
    "sign_versioned",
]
