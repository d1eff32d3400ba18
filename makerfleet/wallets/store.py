"""
Keypair file store.

Wallets live as `<address>.json` files holding the 64-byte secret key as a
JSON integer array (Solana CLI format). Three folders:

- keypairs/        active wallets the pipeline works on
- keypairs_check/  wallets the audit found with leftover SOL or token accounts
- keypairs_old/    retired, empty wallets
"""

import json
import logging
from enum import Enum
from pathlib import Path
from typing import Dict, List, Optional, Union

import base58
from solders.keypair import Keypair

from makerfleet.core.errors import WalletStoreError

logger = logging.getLogger(__name__)


class WalletFolder(str, Enum):
    ACTIVE = "active"
    CHECK = "check"
    OLD = "old"


def load_keypair(source: Union[str, Path]) -> Keypair:
    """
    Load a keypair from a JSON byte-array file or a base58 secret.

    Args:
        source: Path to a keypair file, or the base58-encoded secret itself

    Returns:
        Keypair

    Raises:
        WalletStoreError: If the key cannot be read or decoded
    """
    path = Path(source)
    is_file = path.suffix == ".json" or path.exists()
    try:
        if is_file:
            if not path.exists():
                raise WalletStoreError(f"Keypair file not found: {path}")
            with open(path, "r") as f:
                return Keypair.from_bytes(bytes(json.load(f)))

        key_bytes = base58.b58decode(str(source).strip())
        if len(key_bytes) == 64:
            return Keypair.from_bytes(key_bytes)
        if len(key_bytes) == 32:
            return Keypair.from_seed(key_bytes)
        raise WalletStoreError(f"Invalid key length: {len(key_bytes)} bytes")

    except WalletStoreError:
        raise
    except Exception as e:
        label = path.name if is_file else "base58 secret"
        raise WalletStoreError(f"Could not load keypair from {label}: {e}") from e


def save_keypair(keypair: Keypair, path: Path) -> None:
    with open(path, "w") as f:
        json.dump(list(bytes(keypair)), f)


class WalletStore:
    """
    Enumerable wallet credentials keyed by address.

    Single process only: moves are plain renames.
    """

    def __init__(
        self,
        active_dir: Union[str, Path] = "keypairs",
        check_dir: Optional[Union[str, Path]] = None,
        old_dir: Optional[Union[str, Path]] = None,
    ):
        active = Path(active_dir)
        self.folders: Dict[WalletFolder, Path] = {
            WalletFolder.ACTIVE: active,
            WalletFolder.CHECK: Path(check_dir) if check_dir else active.with_name(f"{active.name}_check"),
            WalletFolder.OLD: Path(old_dir) if old_dir else active.with_name(f"{active.name}_old"),
        }

    def ensure_folders(self) -> None:
        try:
            for folder in self.folders.values():
                folder.mkdir(parents=True, exist_ok=True)
        except OSError as e:
            raise WalletStoreError(f"Cannot create wallet folders: {e}") from e

    def path_for(self, address: str, folder: WalletFolder = WalletFolder.ACTIVE) -> Path:
        return self.folders[folder] / f"{address}.json"

    def addresses(self, folder: WalletFolder = WalletFolder.ACTIVE) -> List[str]:
        """Addresses in a folder, sorted."""
        directory = self.folders[folder]
        if not directory.exists():
            return []
        return sorted(p.stem for p in directory.glob("*.json"))

    def count(self, folder: WalletFolder = WalletFolder.ACTIVE) -> int:
        return len(self.addresses(folder))

    def load(self, address: str, folder: WalletFolder = WalletFolder.ACTIVE) -> Keypair:
        """Signing keypair for one wallet."""
        keypair = load_keypair(self.path_for(address, folder))
        if str(keypair.pubkey()) != address:
            raise WalletStoreError(f"Keypair file {address}.json holds key {keypair.pubkey()}")
        return keypair

    def load_all(self, folder: WalletFolder = WalletFolder.ACTIVE) -> List[Keypair]:
        """
        Load every wallet in a folder.

        Raises:
            WalletStoreError: If any file is unreadable
        """
        return [self.load(address, folder) for address in self.addresses(folder)]

    def generate(self, count: int) -> List[Keypair]:
        """
        Create `count` new wallets in the active folder.

        Returns:
            The new keypairs
        """
        self.ensure_folders()
        created = []
        for _ in range(count):
            keypair = Keypair()
            save_keypair(keypair, self.path_for(str(keypair.pubkey())))
            created.append(keypair)

        logger.info(f"Generated {len(created)} wallets in {self.folders[WalletFolder.ACTIVE]}")
        return created

    def move(
        self,
        address: str,
        to: WalletFolder,
        source: WalletFolder = WalletFolder.ACTIVE,
    ) -> Path:
        """
        Reclassify a wallet by moving its file.

        Returns:
            New path of the keypair file
        """
        src = self.path_for(address, source)
        if not src.exists():
            raise WalletStoreError(f"No wallet {address} in {self.folders[source]}")

        self.folders[to].mkdir(parents=True, exist_ok=True)
        dest = self.path_for(address, to)
        src.rename(dest)
        logger.debug(f"Moved {address} to {self.folders[to]}")
        return dest
