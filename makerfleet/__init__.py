"""
makerfleet - Ephemeral wallet fleet operator for Solana.

Funds a fleet of throwaway wallets, swaps them into a target token through
a liquidity venue, and sweeps everything back to a treasury wallet.

Transactions are delivered with rebroadcast + dual confirmation, and the
stage pipeline retries in place until every stage completes.
"""

__version__ = "0.1.0"
