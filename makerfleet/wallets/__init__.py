"""
Wallet storage for makerfleet.
"""

from makerfleet.wallets.processed import ProcessedWalletStore
from makerfleet.wallets.store import WalletFolder, WalletStore, load_keypair

__all__ = ["ProcessedWalletStore", "WalletFolder", "WalletStore", "load_keypair"]
