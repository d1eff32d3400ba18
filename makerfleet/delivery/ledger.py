"""
Ledger client boundary.

LedgerClient is the capability the delivery engine and the stage units
consume. SolanaLedgerClient implements it on top of solana-py's AsyncClient
for HTTP calls and a raw `signatureSubscribe` websocket for push
confirmation.

The client holds no per-call state and is shared by every concurrent task.
"""

import asyncio
import json
import logging
from abc import ABC, abstractmethod
from dataclasses import dataclass
from typing import Any, Dict, List, Optional

import websockets
from solana.rpc.async_api import AsyncClient
from solana.rpc.commitment import Confirmed
from solana.rpc.types import TokenAccountOpts, TxOpts
from solders.pubkey import Pubkey
from solders.signature import Signature

from makerfleet.core.errors import (
    BlockhashExpiredError,
    InsufficientFundsError,
    LedgerTransportError,
    RateLimitedError,
)
from makerfleet.delivery.envelope import BlockhashInfo
from makerfleet.delivery.timing import CancelToken

logger = logging.getLogger(__name__)

# Byte offset of `decimals` in the SPL mint layout (shared by Token-2022)
MINT_DECIMALS_OFFSET = 44

CONFIRMED_LEVELS = ("confirmed", "finalized")


@dataclass(frozen=True)
class SignatureStatus:
    """Ledger-reported status of a transaction signature."""
    confirmation_status: Optional[str]
    err: Optional[str] = None
    slot: Optional[int] = None

    @property
    def is_confirmed(self) -> bool:
        return self.confirmation_status in CONFIRMED_LEVELS


@dataclass(frozen=True)
class TokenAccount:
    """A token account owned by a wallet."""
    address: str
    mint: str
    owner: str
    amount: int  # raw units
    decimals: int
    program_id: str

    @property
    def ui_amount(self) -> float:
        return self.amount / (10 ** self.decimals)


class LedgerClient(ABC):
    """Everything makerfleet needs from the ledger."""

    @abstractmethod
    async def send_raw(self, payload: bytes) -> str:
        """Submit serialized transaction bytes, return the signature."""

    @abstractmethod
    async def get_latest_blockhash(self) -> BlockhashInfo:
        """Fresh validity window for a new transaction."""

    @abstractmethod
    async def get_signature_status(self, signature: str) -> Optional[SignatureStatus]:
        """Current status of a signature, None if the ledger has not seen it."""

    @abstractmethod
    async def confirm(
        self,
        signature: str,
        last_valid_block_height: int,
        cancel: CancelToken,
    ) -> Optional[SignatureStatus]:
        """
        Wait for a confirmation push for `signature`.

        Raises BlockhashExpiredError once the block height passes
        `last_valid_block_height`. Returns None if cancelled first.
        """

    @abstractmethod
    async def get_transaction(self, signature: str) -> Optional[Dict[str, Any]]:
        """Confirmed transaction record, None if not (yet) queryable."""

    @abstractmethod
    async def get_balance(self, address: str) -> int:
        """SOL balance in lamports."""

    @abstractmethod
    async def get_block_height(self) -> int:
        """Current block height."""

    @abstractmethod
    async def get_account_owner(self, address: str) -> Optional[str]:
        """Owning program of an account, None if the account does not exist."""

    @abstractmethod
    async def get_mint_decimals(self, mint: str) -> int:
        """Decimals of a token mint."""

    @abstractmethod
    async def get_token_accounts(
        self,
        owner: str,
        program_id: str,
        mint: Optional[str] = None,
    ) -> List[TokenAccount]:
        """Token accounts owned by `owner` under a token program."""

    async def close(self) -> None:
        """Release network resources."""


def _is_rate_limited(error: BaseException) -> bool:
    """Walk the exception chain looking for an HTTP 429."""
    seen = error
    for _ in range(5):
        if seen is None:
            return False
        response = getattr(seen, "response", None)
        if getattr(response, "status_code", None) == 429:
            return True
        text = str(seen)
        if "429" in text or "Too Many Requests" in text:
            return True
        seen = seen.__cause__ or seen.__context__
    return False


def _wrap_error(label: str, error: Exception) -> Exception:
    """Map an SDK exception onto the makerfleet error taxonomy."""
    text = str(error)
    lowered = text.lower()

    if _is_rate_limited(error):
        return RateLimitedError(f"{label}: rate limited ({text})")
    if "insufficient funds" in lowered or "insufficient lamports" in lowered:
        return InsufficientFundsError(f"{label}: {text}")
    return LedgerTransportError(f"{label}: {text or type(error).__name__}")


def _normalize_status(raw: Any) -> Optional[str]:
    """solders enum (`TransactionConfirmationStatus.Confirmed`) -> "confirmed"."""
    if raw is None:
        return None
    return str(raw).split(".")[-1].lower()


class SolanaLedgerClient(LedgerClient):
    """
    LedgerClient backed by solana-py.

    HTTP calls go through AsyncClient; push confirmation subscribes over
    the RPC websocket and watches block height for expiry.
    """

    def __init__(
        self,
        rpc_url: str,
        ws_url: Optional[str] = None,
        height_check_interval: float = 2.0,
        timeout: float = 30.0,
    ):
        """
        Initialize ledger client.

        Args:
            rpc_url: Solana HTTP RPC endpoint
            ws_url: Matching websocket endpoint
            height_check_interval: Seconds between block height checks while
                waiting for a push confirmation
            timeout: HTTP timeout in seconds
        """
        self.rpc_url = rpc_url
        self.ws_url = ws_url or rpc_url.replace("https://", "wss://").replace("http://", "ws://")
        self.height_check_interval = height_check_interval
        self.client = AsyncClient(rpc_url, commitment=Confirmed, timeout=timeout)

    async def _call(self, label: str, coro):
        try:
            return await coro
        except Exception as e:
            raise _wrap_error(label, e) from e

    async def send_raw(self, payload: bytes) -> str:
        resp = await self._call(
            "sendTransaction",
            self.client.send_raw_transaction(
                payload,
                opts=TxOpts(skip_preflight=True, skip_confirmation=True),
            ),
        )
        return str(resp.value)

    async def get_latest_blockhash(self) -> BlockhashInfo:
        resp = await self._call("getLatestBlockhash", self.client.get_latest_blockhash(Confirmed))
        return BlockhashInfo(
            blockhash=str(resp.value.blockhash),
            last_valid_block_height=int(resp.value.last_valid_block_height),
        )

    async def get_signature_status(self, signature: str) -> Optional[SignatureStatus]:
        resp = await self._call(
            "getSignatureStatuses",
            self.client.get_signature_statuses([Signature.from_string(signature)]),
        )
        if not resp.value or resp.value[0] is None:
            return None

        status = resp.value[0]
        return SignatureStatus(
            confirmation_status=_normalize_status(status.confirmation_status),
            err=str(status.err) if status.err else None,
            slot=status.slot,
        )

    async def confirm(
        self,
        signature: str,
        last_valid_block_height: int,
        cancel: CancelToken,
    ) -> Optional[SignatureStatus]:
        request = {
            "jsonrpc": "2.0",
            "id": 1,
            "method": "signatureSubscribe",
            "params": [signature, {"commitment": "confirmed"}],
        }

        try:
            async with websockets.connect(
                self.ws_url,
                ping_interval=30,
                ping_timeout=10,
                close_timeout=5,
            ) as ws:
                await ws.send(json.dumps(request))
                listener = asyncio.ensure_future(self._await_notification(ws))

                try:
                    while True:
                        done, _ = await asyncio.wait({listener}, timeout=self.height_check_interval)
                        if listener in done:
                            return listener.result()

                        if cancel.cancelled:
                            return None

                        try:
                            height = await self.get_block_height()
                        except LedgerTransportError as e:
                            logger.debug(f"Block height check failed, still listening: {e}")
                            continue

                        if height > last_valid_block_height:
                            raise BlockhashExpiredError(signature, last_valid_block_height)
                finally:
                    listener.cancel()

        except (BlockhashExpiredError, LedgerTransportError):
            raise
        except Exception as e:
            raise _wrap_error("signatureSubscribe", e) from e

    async def _await_notification(self, ws) -> SignatureStatus:
        """Read websocket messages until the signature notification arrives."""
        async for message in ws:
            data = json.loads(message)

            if "error" in data:
                raise LedgerTransportError(f"signatureSubscribe error: {data['error']}")

            # Subscription confirmations carry an integer result
            if data.get("method") != "signatureNotification":
                continue

            result = data["params"]["result"]
            err = result.get("value", {}).get("err")
            return SignatureStatus(
                confirmation_status="confirmed",
                err=str(err) if err else None,
                slot=result.get("context", {}).get("slot"),
            )

        raise LedgerTransportError("websocket closed before confirmation notification")

    async def get_transaction(self, signature: str) -> Optional[Dict[str, Any]]:
        resp = await self._call(
            "getTransaction",
            self.client.get_transaction(
                Signature.from_string(signature),
                commitment=Confirmed,
                max_supported_transaction_version=0,
            ),
        )
        if resp.value is None:
            return None
        return json.loads(resp.value.to_json())

    async def get_balance(self, address: str) -> int:
        resp = await self._call("getBalance", self.client.get_balance(Pubkey.from_string(address)))
        return int(resp.value)

    async def get_block_height(self) -> int:
        resp = await self._call("getBlockHeight", self.client.get_block_height())
        return int(resp.value)

    async def get_account_owner(self, address: str) -> Optional[str]:
        resp = await self._call("getAccountInfo", self.client.get_account_info(Pubkey.from_string(address)))
        if resp.value is None:
            return None
        return str(resp.value.owner)

    async def get_mint_decimals(self, mint: str) -> int:
        resp = await self._call("getAccountInfo", self.client.get_account_info(Pubkey.from_string(mint)))
        if resp.value is None:
            raise LedgerTransportError(f"Mint account not found: {mint}")

        data = bytes(resp.value.data)
        if len(data) <= MINT_DECIMALS_OFFSET:
            raise LedgerTransportError(f"Account {mint} is not a token mint")
        return data[MINT_DECIMALS_OFFSET]

    async def get_token_accounts(
        self,
        owner: str,
        program_id: str,
        mint: Optional[str] = None,
    ) -> List[TokenAccount]:
        if mint:
            opts = TokenAccountOpts(mint=Pubkey.from_string(mint))
        else:
            opts = TokenAccountOpts(program_id=Pubkey.from_string(program_id))

        resp = await self._call(
            "getTokenAccountsByOwner",
            self.client.get_token_accounts_by_owner_json_parsed(Pubkey.from_string(owner), opts),
        )

        accounts = []
        for keyed in resp.value:
            if str(keyed.account.owner) != program_id:
                continue

            info = keyed.account.data.parsed["info"]
            token_amount = info["tokenAmount"]
            accounts.append(TokenAccount(
                address=str(keyed.pubkey),
                mint=info["mint"],
                owner=info["owner"],
                amount=int(token_amount["amount"]),
                decimals=int(token_amount["decimals"]),
                program_id=program_id,
            ))

        return accounts

    async def close(self) -> None:
        await self.client.close()
