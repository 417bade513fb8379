"""
Fee-delegated ("gasless") payments through a co-signing relay.

The relay publishes a fee payer and a flat per-token fee. The customer pays the
fee in the token itself, signs only their transfer authority, and the relay
adds the fee payer signature and broadcasts.
"""

from __future__ import annotations

import json
import logging
from dataclasses import dataclass, field
from typing import Any, Dict, Optional, Tuple

import requests

from .addresses import AddressLike, parse_address
from .errors import (
    RelayRejected,
    RelayUnavailable,
    TransactionBuildFailed,
    UnsupportedToken,
)
from .payloads import build_relay_request
from .tokens import AmountLike
from .transactions import BuiltTransaction, TransactionBuilder

__all__ = [
    "GaslessBuild",
    "GaslessFeeQuote",
    "GaslessRelayClient",
    "RelaySubmission",
    "TokenFee",
]

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class TokenFee:
    mint: str
    account: str
    decimals: int
    fee: int
    symbol: Optional[str] = None

    @classmethod
    def from_response(cls, payload: Dict[str, Any]) -> "TokenFee":
        return cls(
            mint=str(payload["mint"]),
            account=str(payload["account"]),
            decimals=int(payload["decimals"]),
            fee=int(payload["fee"]),
            symbol=payload.get("symbol"),
        )


@dataclass(frozen=True)
class GaslessFeeQuote:
    """Relay fee schedule; immutable for the lifetime of one build."""

    fee_payer: str
    tokens: Tuple[TokenFee, ...] = ()

    def fee_for_mint(self, mint: str) -> Optional[TokenFee]:
        for token_fee in self.tokens:
            if token_fee.mint == mint:
                return token_fee
        return None

    @classmethod
    def from_response(cls, payload: Dict[str, Any]) -> "GaslessFeeQuote":
        try:
            fee_payer = str(payload["feePayer"])
            raw_tokens = payload.get("endpoints", {}).get("transfer", {}).get("tokens", [])
            tokens = tuple(TokenFee.from_response(item) for item in raw_tokens)
        except (KeyError, TypeError, ValueError, AttributeError) as exc:
            raise RelayUnavailable(f"Relay published a malformed fee quote: {exc}") from exc
        return cls(fee_payer=fee_payer, tokens=tokens)


@dataclass(frozen=True)
class GaslessBuild:
    """
    Outcome of :meth:`GaslessRelayClient.build`.

    ``status`` is one of ``ok``, ``unavailable`` or ``rejected``; callers branch
    on it instead of catching exceptions to decide on the fallback.
    """

    status: str
    transaction: Optional[BuiltTransaction] = None
    quote: Optional[GaslessFeeQuote] = None
    reason: Optional[str] = None

    @classmethod
    def ok(cls, transaction: BuiltTransaction, quote: GaslessFeeQuote) -> "GaslessBuild":
        return cls(status="ok", transaction=transaction, quote=quote)

    @classmethod
    def unavailable(cls, reason: str) -> "GaslessBuild":
        return cls(status="unavailable", reason=reason)

    @classmethod
    def rejected(cls, reason: str) -> "GaslessBuild":
        return cls(status="rejected", reason=reason)

    @property
    def is_ok(self) -> bool:
        return self.status == "ok"

    def unwrap(self) -> BuiltTransaction:
        if self.status == "ok" and self.transaction is not None:
            return self.transaction
        if self.status == "rejected":
            raise RelayRejected(self.reason or "Relay rejected the transaction")
        raise RelayUnavailable(self.reason or "Gasless payment is unavailable")


@dataclass(frozen=True)
class RelaySubmission:
    status: str
    signature: Optional[str] = None
    reason: Optional[str] = None
    raw: Dict[str, Any] = field(default_factory=dict)

    @property
    def is_ok(self) -> bool:
        return self.status == "ok"

    def unwrap(self) -> str:
        if self.status == "ok" and self.signature:
            return self.signature
        if self.status == "rejected":
            raise RelayRejected(self.reason or "Relay refused to co-sign", self.raw)
        raise RelayUnavailable(self.reason or "Relay unavailable", self.raw)


class GaslessRelayClient:
    """
    Builds relay-shaped transactions and hands them to the relay for co-signing.

    Only the instruction shape an honest relay expects is ever produced: the fee
    transfer, an optional recipient account creation funded by the relay, the
    merchant transfer and an optional memo.
    """

    def __init__(
        self,
        relay_url: str,
        builder: TransactionBuilder,
        *,
        session: Optional[requests.Session] = None,
        timeout: float = 30.0,
    ) -> None:
        self.relay_url = relay_url.rstrip("/")
        self.builder = builder
        self.session = session or requests.Session()
        self.timeout = timeout

    def fetch_quote(self) -> GaslessFeeQuote:
        try:
            response = self.session.get(self.relay_url, timeout=self.timeout)
        except requests.RequestException as exc:
            raise RelayUnavailable(f"Relay at {self.relay_url} is unreachable: {exc}") from exc
        if response.status_code >= 400:
            raise RelayUnavailable(
                f"Relay responded with {response.status_code}: {response.text}"
            )
        try:
            payload = response.json()
        except json.JSONDecodeError as exc:
            raise RelayUnavailable(f"Failed to parse relay config: {response.text}") from exc
        return GaslessFeeQuote.from_response(payload)

    def build(
        self,
        *,
        payer: AddressLike,
        recipient: AddressLike,
        amount: AmountLike,
        token: str = "USDC",
        memo: Optional[str] = None,
        quote: Optional[GaslessFeeQuote] = None,
    ) -> GaslessBuild:
        try:
            quote = quote or self.fetch_quote()
        except RelayUnavailable as exc:
            logger.warning("Gasless quote unavailable: %s", exc.message)
            return GaslessBuild.unavailable(exc.message)

        try:
            mint = self.builder.mint(token)
        except UnsupportedToken as exc:
            return GaslessBuild.unavailable(exc.message)

        token_fee = quote.fee_for_mint(str(mint))
        if token_fee is None:
            logger.info("Relay publishes no fee for %s; gasless unavailable", token)
            return GaslessBuild.unavailable(f"Relay does not sponsor {token.upper()}")
        if token_fee.fee < 0:
            return GaslessBuild.rejected(f"Relay quoted a negative fee for {token.upper()}")

        try:
            payer_key = parse_address(payer, "payer")
            fee_payer = parse_address(quote.fee_payer, "feePayer", error=RelayUnavailable)
            fee_account = parse_address(token_fee.account, "fee account", error=RelayUnavailable)
        except RelayUnavailable as exc:
            return GaslessBuild.unavailable(exc.message)

        fee_ix = self.builder.transfer_instruction(payer_key, fee_account, token, token_fee.fee)
        try:
            built = self.builder.build(
                payer=payer_key,
                recipient=recipient,
                amount=amount,
                token=token,
                memo=memo,
                fee_payer=fee_payer,
                leading_instructions=[fee_ix],
                fee_atomic=token_fee.fee,
            )
        except TransactionBuildFailed as exc:
            return GaslessBuild.unavailable(exc.message)
        return GaslessBuild.ok(built, quote)

    def submit(self, built: BuiltTransaction) -> RelaySubmission:
        """
        Send a customer-signed transaction to the relay.

        The relay validates it, adds the fee payer signature and broadcasts it.
        """
        url = f"{self.relay_url}/transfer"
        body = build_relay_request(built)
        try:
            response = self.session.post(url, json=body, timeout=self.timeout)
        except requests.RequestException as exc:
            logger.warning("Relay submit failed: %s", exc)
            return RelaySubmission(status="unavailable", reason=str(exc))

        try:
            payload = response.json()
        except json.JSONDecodeError:
            payload = {"error": response.text}

        if response.status_code >= 500:
            return RelaySubmission(
                status="unavailable",
                reason=f"Relay responded with {response.status_code}",
                raw=payload,
            )
        error = payload.get("error")
        if error is None and response.status_code >= 400:
            error = payload.get("message") or f"Relay responded with {response.status_code}"
        if error or not payload.get("signature"):
            reason = str(error or "Relay returned no signature")
            logger.warning("Relay refused to co-sign: %s", reason)
            return RelaySubmission(status="rejected", reason=reason, raw=payload)

        logger.info("Relay co-signed and broadcast %s", payload["signature"])
        return RelaySubmission(status="ok", signature=str(payload["signature"]), raw=payload)

