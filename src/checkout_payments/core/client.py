"""
Payer-side checkout client: payment links, transaction building and the pay flow.
"""

from __future__ import annotations

import logging
import time
from dataclasses import dataclass
from typing import Any, Callable, Dict, Mapping, Optional, Tuple

import requests
from solders.keypair import Keypair

from .addresses import AddressLike, parse_address
from .config import CheckoutConfig, ConfigError
from .errors import (
    ConfirmationTimeout,
    InsufficientBalance,
    LedgerError,
    RelayRejected,
    RelayUnavailable,
    TransactionBuildFailed,
    UnsupportedToken,
)
from .ledger import LedgerClient
from .models import Payment, PaymentStatus, generate_id
from .payloads import build_checkout_url
from .relay import GaslessFeeQuote, GaslessRelayClient
from .tokens import AmountCodec, AmountLike, TokenRegistry, to_decimal
from .tracker import StatusTracker, TrackingResult
from .transactions import BuiltTransaction, TransactionBuilder

__all__ = [
    "CheckoutClient",
    "PaymentReceipt",
    "send_payment",
]

logger = logging.getLogger(__name__)

Build = Callable[[], BuiltTransaction]


@dataclass(frozen=True)
class PaymentReceipt:
    signature: str
    gasless: bool
    amount_atomic: int
    fee_atomic: int
    created_recipient_account: bool
    result: TrackingResult

    @property
    def confirmed(self) -> bool:
        return self.result.confirmed


def _rebuild_once(build: Build, what: str) -> BuiltTransaction:
    """Run ``build``; on a build failure, try exactly once more with a fresh blockhash."""
    try:
        return build()
    except TransactionBuildFailed as exc:
        logger.warning("Building %s failed (%s); rebuilding once", what, exc.message)
    return build()


class CheckoutClient:
    """
    Convenience wrapper tying the ledger, builder, relay and tracker together.
    """

    def __init__(
        self,
        config: CheckoutConfig,
        *,
        session: Optional[requests.Session] = None,
        ledger: Optional[LedgerClient] = None,
        registry: Optional[TokenRegistry] = None,
    ) -> None:
        self.config = config
        self.session = session or requests.Session()
        self.registry = registry or TokenRegistry()
        self.codec = AmountCodec(self.registry)
        self.ledger = ledger or LedgerClient(
            config.rpc_url,
            commitment=config.commitment,
            timeout=config.request_timeout_seconds,
        )
        self.builder = TransactionBuilder(
            self.ledger,
            network=config.network,
            registry=self.registry,
            codec=self.codec,
        )
        self.relay: Optional[GaslessRelayClient] = None
        if config.relay_url:
            self.relay = GaslessRelayClient(
                config.relay_url,
                self.builder,
                session=self.session,
                timeout=config.request_timeout_seconds,
            )
        self.tracker = StatusTracker(
            self.ledger,
            commitment=config.commitment,
            interval=config.poll_interval_seconds,
            timeout=config.confirmation_timeout_seconds,
        )

    def _merchant_wallet(self, merchant_wallet: Optional[AddressLike]) -> str:
        wallet = merchant_wallet or self.config.merchant_wallet
        if not wallet:
            raise ConfigError("A merchant wallet is required (set CHECKOUT_MERCHANT_WALLET)")
        return str(parse_address(wallet, "merchantWallet"))

    def create_payment(
        self,
        amount: AmountLike,
        *,
        token: Optional[str] = None,
        memo: Optional[str] = None,
        order_id: Optional[str] = None,
        metadata: Optional[Mapping[str, str]] = None,
        success_url: Optional[str] = None,
        cancel_url: Optional[str] = None,
        merchant_name: Optional[str] = None,
        merchant_wallet: Optional[AddressLike] = None,
        expires_in: Optional[int] = None,
        now: Optional[float] = None,
    ) -> Payment:
        """
        Create a payment request and its hosted checkout link.
        """
        token = (token or self.config.default_token).upper()
        value = to_decimal(amount)
        self.codec.encode_atomic(value, token)
        wallet = self._merchant_wallet(merchant_wallet)
        name = merchant_name or self.config.merchant_name or "Merchant"

        now = time.time() if now is None else now
        payment_id = generate_id("pay_", 16)
        checkout_url = build_checkout_url(
            self.config.checkout_url,
            amount=value,
            merchant=name,
            to=wallet,
            memo=memo,
            order_id=order_id,
            success_url=success_url,
            cancel_url=cancel_url,
            payment_id=payment_id,
        )
        payment = Payment(
            id=payment_id,
            amount=value,
            token=token,
            status=PaymentStatus.PENDING,
            merchant_address=wallet,
            checkout_url=checkout_url,
            created_at=now,
            expires_at=now + (expires_in or self.config.payment_expires_seconds),
            memo=memo,
            order_id=order_id,
            metadata=dict(metadata or {}),
        )
        logger.info("Created payment %s for %s %s", payment.id, value, token)
        return payment

    def ensure_balance(
        self,
        payer: AddressLike,
        amount: AmountLike,
        token: Optional[str] = None,
        *,
        fee_atomic: int = 0,
    ) -> int:
        """
        Check the payer can cover ``amount`` (plus any relay fee).

        Returns the current atomic balance; raises :class:`InsufficientBalance`.
        """
        token = (token or self.config.default_token).upper()
        required = self.codec.encode_atomic(amount, token) + fee_atomic
        account = self.builder.token_account(payer, token)
        balance = self.ledger.get_token_balance(account) or 0
        if balance < required:
            raise InsufficientBalance(
                f"Insufficient {token} balance: have {self.codec.format(balance, token)}, "
                f"need {self.codec.format(required, token)}",
                {"token": token, "balance": balance, "required": required},
            )
        return balance

    def build_transaction(
        self,
        *,
        payer: AddressLike,
        amount: AmountLike,
        recipient: Optional[AddressLike] = None,
        token: Optional[str] = None,
        memo: Optional[str] = None,
    ) -> BuiltTransaction:
        """Customer pays network fees."""
        recipient = self._merchant_wallet(recipient)
        token = token or self.config.default_token
        return _rebuild_once(
            lambda: self.builder.build(
                payer=payer, recipient=recipient, amount=amount, token=token, memo=memo
            ),
            "transaction",
        )

    def fetch_quote(self) -> GaslessFeeQuote:
        if self.relay is None:
            raise RelayUnavailable("No relay configured (set CHECKOUT_RELAY_URL)")
        return self.relay.fetch_quote()

    def _quoted_fee(self, token: str) -> Tuple[Optional[GaslessFeeQuote], int]:
        """Current relay quote and the fee it charges for ``token``; ``(None, 0)`` without one."""
        try:
            quote = self.fetch_quote()
        except RelayUnavailable as exc:
            logger.info("Gasless quote unavailable (%s)", exc.message)
            return None, 0
        try:
            token_fee = quote.fee_for_mint(str(self.builder.mint(token)))
        except UnsupportedToken:
            return quote, 0
        if token_fee is None or token_fee.fee < 0:
            return quote, 0
        return quote, token_fee.fee

    def build_gasless(
        self,
        *,
        payer: AddressLike,
        amount: AmountLike,
        recipient: Optional[AddressLike] = None,
        token: Optional[str] = None,
        memo: Optional[str] = None,
        quote: Optional[GaslessFeeQuote] = None,
    ) -> BuiltTransaction:
        """
        Relay-sponsored transaction, or the standard one when the relay cannot
        sponsor this payment. A rejection is retried once against a fresh quote
        before falling back.
        """
        if self.relay is None:
            logger.info("No relay configured; building standard transaction")
            return self.build_transaction(
                payer=payer, amount=amount, recipient=recipient, token=token, memo=memo
            )

        relay = self.relay
        recipient = self._merchant_wallet(recipient)
        token = token or self.config.default_token
        outcome = relay.build(
            payer=payer, recipient=recipient, amount=amount, token=token, memo=memo, quote=quote
        )
        if outcome.status == "rejected":
            logger.warning("Relay rejected build (%s); retrying once", outcome.reason)
            outcome = relay.build(
                payer=payer, recipient=recipient, amount=amount, token=token, memo=memo
            )
        if not outcome.is_ok:
            logger.info("Gasless %s (%s); falling back to standard transaction", outcome.status, outcome.reason)
            return self.build_transaction(
                payer=payer, amount=amount, recipient=recipient, token=token, memo=memo
            )
        return outcome.unwrap()

    def submit(self, built: BuiltTransaction) -> str:
        """Broadcast a signed transaction, through the relay when it is sponsored."""
        if built.sponsored:
            if self.relay is None:
                raise RelayUnavailable("Sponsored transaction but no relay configured")
            return self.relay.submit(built).unwrap()
        return self.ledger.send_transaction(built.to_bytes())

    def _rebuild_from(self, built: BuiltTransaction, *, gasless: bool) -> BuiltTransaction:
        build = self.build_gasless if gasless else self.build_transaction
        return build(
            payer=built.payer,
            amount=self.codec.decode_atomic(built.amount_atomic, built.token),
            recipient=built.recipient,
            token=built.token,
            memo=built.memo,
        )

    def _sign_and_submit(
        self,
        keypair: Keypair,
        built: BuiltTransaction,
        rebuild: Build,
    ) -> Tuple[str, BuiltTransaction]:
        """
        Sign and broadcast ``built``.

        A failed broadcast gets one rebuild with a fresh blockhash. A relay that
        refuses to co-sign gets one fresh sponsored build; when it refuses again,
        or is unreachable, the customer pays the fees directly.
        """
        built.sign(keypair)
        try:
            return self.submit(built), built
        except RelayRejected as exc:
            logger.warning("Relay refused transaction (%s); rebuilding once", exc.message)
            built = self._rebuild_from(built, gasless=True).sign(keypair)
            try:
                return self.submit(built), built
            except (RelayRejected, RelayUnavailable) as retry_exc:
                logger.warning("Relay refused again (%s); paying fees directly", retry_exc.message)
                built = self._rebuild_from(built, gasless=False)
        except RelayUnavailable as exc:
            if not built.sponsored:
                raise
            logger.warning("Relay submit unavailable (%s); paying fees directly", exc.message)
            built = self._rebuild_from(built, gasless=False)
        except LedgerError as exc:
            logger.warning("Broadcast failed (%s); rebuilding once", exc.message)
            built = rebuild()
        built.sign(keypair)
        return self.submit(built), built

    def pay(
        self,
        keypair: Keypair,
        amount: AmountLike,
        *,
        recipient: Optional[AddressLike] = None,
        token: Optional[str] = None,
        memo: Optional[str] = None,
        gasless: bool = False,
        check_balance: bool = True,
    ) -> PaymentReceipt:
        """
        Check the balance, then build, sign, broadcast and confirm a payment
        from ``keypair``.

        For gasless payments the relay quote is fetched first so the balance
        check covers its fee; nothing is built for an underfunded payer.
        Raises :class:`ConfirmationTimeout` when the transaction does not
        confirm in time, and :class:`LedgerError` when it fails on chain.
        """
        payer = keypair.pubkey()
        token = (token or self.config.default_token).upper()

        quote, fee_atomic = None, 0
        if gasless and self.relay is not None:
            quote, fee_atomic = self._quoted_fee(token)
        if check_balance:
            self.ensure_balance(payer, amount, token, fee_atomic=fee_atomic)

        def build() -> BuiltTransaction:
            if gasless and quote is not None:
                return self.build_gasless(
                    payer=payer, amount=amount, recipient=recipient, token=token, memo=memo, quote=quote
                )
            return self.build_transaction(
                payer=payer, amount=amount, recipient=recipient, token=token, memo=memo
            )

        built = build()
        signature, built = self._sign_and_submit(keypair, built, build)
        logger.info("Submitted payment %s (gasless=%s)", signature, built.sponsored)

        result = self.tracker.wait(signature)
        if result.timed_out:
            raise ConfirmationTimeout(
                f"Transaction {signature} was not confirmed in time",
                {"signature": signature},
            )
        if not result.confirmed:
            raise LedgerError(
                f"Transaction {signature} failed on chain",
                {"signature": signature, "err": result.error},
            )
        return PaymentReceipt(
            signature=signature,
            gasless=built.sponsored,
            amount_atomic=built.amount_atomic,
            fee_atomic=built.fee_atomic,
            created_recipient_account=built.creates_recipient_account,
            result=result,
        )

    def get_payment_status(self, signature: str) -> TrackingResult:
        return self.tracker.check(signature)

    def describe(self) -> Dict[str, Any]:
        return {
            "network": self.config.network,
            "rpcUrl": self.config.rpc_url,
            "relayUrl": self.config.relay_url,
            "gasless": self.config.gasless_enabled,
            "tokens": [token.symbol for token in self.registry],
        }


def send_payment(
    config: CheckoutConfig,
    keypair: Keypair,
    amount: AmountLike,
    *,
    session: Optional[requests.Session] = None,
    recipient: Optional[AddressLike] = None,
    token: Optional[str] = None,
    memo: Optional[str] = None,
    gasless: bool = False,
) -> PaymentReceipt:
    """
    High-level helper that builds, signs, broadcasts and confirms one payment.
    """
    client = CheckoutClient(config, session=session)
    return client.pay(keypair, amount, recipient=recipient, token=token, memo=memo, gasless=gasless)
