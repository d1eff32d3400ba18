"""
Signed transaction envelopes.

An envelope is the exact byte payload that goes on the wire plus the
validity window it was signed against. Envelopes never change; when the
window expires a new one has to be built.
"""

from dataclasses import dataclass, replace
from typing import Optional, Sequence

from solders.hash import Hash
from solders.instruction import Instruction
from solders.keypair import Keypair
from solders.message import Message
from solders.transaction import Transaction, VersionedTransaction


@dataclass(frozen=True)
class BlockhashInfo:
    """Recent blockhash and the last block height at which it is valid."""
    blockhash: str
    last_valid_block_height: int


@dataclass(frozen=True)
class SignedTransactionEnvelope:
    """Signed payload + validity window + network identifier once sent."""
    payload: bytes
    blockhash: str
    last_valid_block_height: int
    signature: Optional[str] = None

    def with_signature(self, signature: str) -> "SignedTransactionEnvelope":
        """Copy of this envelope carrying the identifier returned by the first send."""
        return replace(self, signature=signature)


def build_envelope(
    instructions: Sequence[Instruction],
    payer: Keypair,
    window: BlockhashInfo,
    extra_signers: Sequence[Keypair] = (),
) -> SignedTransactionEnvelope:
    """
    Compile, sign and serialize a legacy transaction.

    Args:
        instructions: Instructions in execution order
        payer: Fee payer, always the first signer
        window: Blockhash the transaction is bound to
        extra_signers: Any additional required signers

    Returns:
        SignedTransactionEnvelope ready to send
    """
    if not instructions:
        raise ValueError("No instructions to send")

    blockhash = Hash.from_string(window.blockhash)
    message = Message.new_with_blockhash(list(instructions), payer.pubkey(), blockhash)
    tx = Transaction([payer, *extra_signers], message, blockhash)

    return SignedTransactionEnvelope(
        payload=bytes(tx),
        blockhash=window.blockhash,
        last_valid_block_height=window.last_valid_block_height,
    )


def sign_versioned(
    tx_bytes: bytes,
    keypair: Keypair,
    last_valid_block_height: int,
) -> SignedTransactionEnvelope:
    """
    Sign a serialized versioned transaction built by a swap venue.

    The blockhash comes from the venue's message; the caller supplies the
    expiry height that goes with it.
    """
    tx = VersionedTransaction.from_bytes(tx_bytes)
    signed = VersionedTransaction(tx.message, [keypair])

    return SignedTransactionEnvelope(
        payload=bytes(signed),
        blockhash=str(signed.message.recent_blockhash),
        last_valid_block_height=last_valid_block_height,
    )
