"""
Thin facade over the solana-py RPC client for the calls the checkout core makes.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass
from typing import Any, Optional, Union

from solana.exceptions import SolanaRpcException
from solana.rpc.api import Client
from solana.rpc.commitment import Commitment
from solana.rpc.core import RPCException
from solana.rpc.types import TxOpts
from solders.hash import Hash
from solders.pubkey import Pubkey
from solders.signature import Signature
from solders.transaction_status import TransactionConfirmationStatus

from .errors import LedgerError

__all__ = ["Blockhash", "LedgerClient", "SignatureStatus"]

logger = logging.getLogger(__name__)

_INVALID_PARAMS = -32602
_MISSING_ACCOUNT = "could not find account"

_CONFIRMATION_NAMES = (
    (TransactionConfirmationStatus.Processed, "processed"),
    (TransactionConfirmationStatus.Confirmed, "confirmed"),
    (TransactionConfirmationStatus.Finalized, "finalized"),
)


def _confirmation_name(status: Any) -> Optional[str]:
    if status is None or isinstance(status, str):
        return status
    for value, name in _CONFIRMATION_NAMES:
        if status == value:
            return name
    return None


def _rpc_error_details(exc: RPCException) -> dict:
    error = exc.args[0] if exc.args else None
    return {
        "code": getattr(error, "code", None),
        "message": getattr(error, "message", None) or str(error or exc),
    }


@dataclass(frozen=True)
class Blockhash:
    value: Hash
    last_valid_block_height: int


@dataclass(frozen=True)
class SignatureStatus:
    signature: str
    confirmation_status: Optional[str]
    err: Any
    slot: Optional[int] = None

    @property
    def failed(self) -> bool:
        return self.err is not None

    def reached(self, commitment: str) -> bool:
        order = ("processed", "confirmed", "finalized")
        if self.confirmation_status not in order:
            return False
        return order.index(self.confirmation_status) >= order.index(commitment)

    @classmethod
    def from_response(cls, signature: str, status: Any) -> "SignatureStatus":
        return cls(
            signature=signature,
            confirmation_status=_confirmation_name(status.confirmation_status),
            err=None if status.err is None else str(status.err),
            slot=status.slot,
        )


class LedgerClient:
    """
    The handful of RPC calls the checkout core needs.

    A ``solana.rpc.api.Client`` can be injected so tests control the node.
    Every RPC or transport failure surfaces as :class:`LedgerError`.
    """

    def __init__(
        self,
        rpc_url: str,
        *,
        client: Optional[Client] = None,
        commitment: str = "confirmed",
        timeout: float = 30.0,
    ) -> None:
        self.rpc_url = rpc_url
        self.commitment = commitment
        self.timeout = timeout
        self.client = client or Client(rpc_url, commitment=Commitment(commitment), timeout=timeout)

    def _call(self, method: str, *args: Any, **kwargs: Any) -> Any:
        logger.debug("RPC %s -> %s", method, self.rpc_url)
        try:
            return getattr(self.client, method)(*args, **kwargs)
        except RPCException as exc:
            details = _rpc_error_details(exc)
            raise LedgerError(f"{method} failed: {details['message']}", {"method": method, **details}) from exc
        except SolanaRpcException as exc:
            raise LedgerError(f"Ledger node at {self.rpc_url} is unreachable: {exc}", {"method": method}) from exc

    def get_latest_blockhash(self) -> Blockhash:
        response = self._call("get_latest_blockhash", Commitment(self.commitment))
        try:
            value = response.value
            return Blockhash(value=value.blockhash, last_valid_block_height=int(value.last_valid_block_height))
        except (AttributeError, TypeError, ValueError) as exc:
            raise LedgerError(f"Malformed getLatestBlockhash result: {response}") from exc

    def account_exists(self, address: Pubkey) -> bool:
        response = self._call("get_account_info", address, Commitment(self.commitment))
        return response.value is not None

    def get_token_balance(self, token_account: Pubkey) -> Optional[int]:
        """
        Atomic balance of ``token_account``; ``None`` when the account is missing.
        """
        try:
            response = self._call("get_token_account_balance", token_account, Commitment(self.commitment))
        except LedgerError as exc:
            if exc.details.get("code") == _INVALID_PARAMS or _MISSING_ACCOUNT in str(exc.details.get("message")):
                return None
            raise
        return int(response.value.amount)

    def get_signature_status(self, signature: str) -> Optional[SignatureStatus]:
        try:
            parsed = Signature.from_string(signature)
        except ValueError as exc:
            raise LedgerError(f"Invalid transaction signature {signature!r}") from exc
        response = self._call("get_signature_statuses", [parsed], search_transaction_history=True)
        values = response.value or [None]
        if values[0] is None:
            return None
        return SignatureStatus.from_response(signature, values[0])

    def send_transaction(self, raw: Union[bytes, Any], *, skip_preflight: bool = False) -> str:
        opts = TxOpts(skip_preflight=skip_preflight, preflight_commitment=Commitment(self.commitment))
        response = self._call("send_raw_transaction", bytes(raw), opts=opts)
        signature = str(response.value)
        logger.info("Broadcast transaction %s", signature)
        return signature
