"""
Error taxonomy for makerfleet.

Expected outcomes (expired windows, missing records) travel as result
objects; these exceptions cover everything that has to interrupt a call.
"""


class MakerFleetError(Exception):
    """Base class for all makerfleet errors."""


class ConfigError(MakerFleetError):
    """Missing or invalid configuration. Fatal at startup."""


class WalletStoreError(MakerFleetError):
    """Credential store is missing or unreadable. Fatal at startup."""


class LedgerTransportError(MakerFleetError):
    """Transient RPC or network failure talking to the ledger."""


class RateLimitedError(LedgerTransportError):
    """RPC node or swap venue answered HTTP 429."""


class BlockhashExpiredError(MakerFleetError):
    """Transaction validity window elapsed before confirmation was observed."""

    def __init__(self, signature: str = "", last_valid_block_height: int = 0):
        self.signature = signature
        self.last_valid_block_height = last_valid_block_height
        super().__init__(
            f"Block height exceeded for {signature or 'transaction'} "
            f"(last valid height {last_valid_block_height})"
        )


class TransactionNotFoundError(MakerFleetError):
    """Confirmed transaction record not yet queryable."""


class TransactionFailedError(MakerFleetError):
    """Transaction landed but the ledger reports an execution error."""


class InsufficientFundsError(MakerFleetError):
    """Wallet cannot cover the amount plus fees. Fatal for that wallet only."""


class SwapError(MakerFleetError):
    """Swap venue returned an unusable quote or transaction."""


class UnknownTokenProgramError(MakerFleetError):
    """Mint is not owned by SPL Token or Token-2022."""
