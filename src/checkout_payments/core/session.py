"""
Checkout session lifecycle.

``pending → processing → completed`` is the happy path. A failed attempt puts
the session back to ``pending`` with a fresh Payment; ``expired`` and
``cancelled`` are only reachable from ``pending``. Terminal sessions never
change again.
"""

from __future__ import annotations

import logging
import threading
import time
from dataclasses import dataclass, field
from decimal import Decimal
from typing import Callable, Dict, List, Mapping, Optional, Set, Tuple

from .addresses import parse_address
from .errors import (
    InvalidTransition,
    SessionAlreadyFinalized,
    SessionExpired,
    SessionNotFound,
    StaleSignature,
)
from .models import EventType, Payment, PaymentStatus, SessionStatus, generate_id
from .tokens import AmountCodec, AmountLike, to_decimal

__all__ = [
    "CheckoutSession",
    "PaymentSession",
    "PaymentSessionStore",
    "SessionEvent",
    "SessionListener",
]

logger = logging.getLogger(__name__)

SessionEvent = Tuple[EventType, Payment]
Clock = Callable[[], float]


@dataclass
class CheckoutSession:
    id: str
    merchant_id: str
    merchant_name: str
    merchant_wallet: str
    amount: Decimal
    currency: str
    success_url: str
    cancel_url: str
    created_at: float
    expires_at: float
    url: str
    description: Optional[str] = None
    metadata: Dict[str, str] = field(default_factory=dict)
    order_id: Optional[str] = None
    webhook_url: Optional[str] = None
    status: SessionStatus = SessionStatus.PENDING
    tx_signature: Optional[str] = None
    payer_address: Optional[str] = None
    completed_at: Optional[float] = None
    payments: List[Payment] = field(default_factory=list)
    failed_signatures: Set[str] = field(default_factory=set)

    @property
    def payment(self) -> Payment:
        """The latest attempt; at most one attempt is ever non-terminal."""
        return self.payments[-1]

    def to_dict(self) -> Dict[str, object]:
        def millis(value: Optional[float]) -> Optional[int]:
            return None if value is None else int(value * 1000)

        return {
            "id": self.id,
            "merchantId": self.merchant_id,
            "merchantName": self.merchant_name,
            "merchantWallet": self.merchant_wallet,
            "amount": str(self.amount),
            "currency": self.currency,
            "description": self.description,
            "metadata": dict(self.metadata),
            "successUrl": self.success_url,
            "cancelUrl": self.cancel_url,
            "url": self.url,
            "status": self.status.value,
            "txSignature": self.tx_signature,
            "payerAddress": self.payer_address,
            "createdAt": millis(self.created_at),
            "expiresAt": millis(self.expires_at),
            "completedAt": millis(self.completed_at),
            "payment": self.payment.to_dict(),
        }


class PaymentSession:
    """
    State machine over one :class:`CheckoutSession`.

    Transition methods take the current time explicitly. Events they produce
    are queued on :attr:`outbox`; the store drains and publishes them, even
    when the transition itself raised after recording an expiry.
    """

    def __init__(self, record: CheckoutSession) -> None:
        self.record = record
        self.outbox: List[SessionEvent] = []

    @property
    def id(self) -> str:
        return self.record.id

    @property
    def status(self) -> SessionStatus:
        return self.record.status

    def _emit(self, event_type: EventType, payment: Payment) -> None:
        self.outbox.append((event_type, payment.snapshot()))

    def drain(self) -> List[SessionEvent]:
        events, self.outbox = self.outbox, []
        return events

    def _new_attempt(self, now: float) -> Payment:
        record = self.record
        payment = Payment(
            id=generate_id("pay_", 16),
            amount=record.amount,
            token=record.currency,
            status=PaymentStatus.PENDING,
            merchant_address=record.merchant_wallet,
            checkout_url=record.url,
            created_at=now,
            expires_at=record.expires_at,
            memo=record.description,
            order_id=record.order_id,
            metadata=dict(record.metadata),
        )
        record.payments.append(payment)
        return payment

    def open(self, now: float) -> None:
        self._emit(EventType.PAYMENT_CREATED, self._new_attempt(now))

    def refresh(self, now: float) -> None:
        """
        Apply expiry. Evaluated on every read so a lagging timer (or a client
        clock) can never keep a session payable past ``expires_at``.
        """
        record = self.record
        if record.status is not SessionStatus.PENDING or now < record.expires_at:
            return
        record.status = SessionStatus.EXPIRED
        payment = record.payment
        payment.status = PaymentStatus.EXPIRED
        logger.info("Checkout session %s expired", record.id)
        self._emit(EventType.PAYMENT_EXPIRED, payment)

    def _reject_finalized(self) -> None:
        status = self.record.status
        if status is SessionStatus.EXPIRED:
            raise SessionExpired(
                f"Checkout session {self.id} has expired", {"sessionId": self.id}
            )
        if status.terminal:
            raise SessionAlreadyFinalized(
                f"Checkout session {self.id} is already {status.value}",
                {"sessionId": self.id, "status": status.value},
            )

    def _require_in_flight(self, signature: str) -> Payment:
        payment = self.record.payment
        if signature != payment.tx_signature:
            raise InvalidTransition(
                f"Checkout session {self.id} is processing a different transaction",
                {"sessionId": self.id, "signature": signature},
            )
        return payment

    def begin_processing(self, signature: str, payer_address: str, now: float) -> None:
        self.refresh(now)
        self._reject_finalized()
        record = self.record
        if record.status is SessionStatus.PROCESSING:
            raise InvalidTransition(
                f"Checkout session {self.id} already has transaction "
                f"{record.payment.tx_signature} in flight",
                {"sessionId": self.id},
            )
        if not signature:
            raise InvalidTransition("A transaction signature is required")
        if signature in record.failed_signatures:
            raise StaleSignature(
                f"Signature {signature} belongs to a failed attempt; rebuild with a fresh blockhash",
                {"sessionId": self.id, "signature": signature},
            )
        payer = str(parse_address(payer_address, "payerAddress"))

        payment = record.payment
        payment.status = PaymentStatus.PROCESSING
        payment.tx_signature = signature
        payment.payer_address = payer
        record.status = SessionStatus.PROCESSING
        logger.info("Checkout session %s processing %s", self.id, signature)

    def complete(self, signature: str, payer_address: Optional[str], now: float) -> None:
        """
        Record the confirmed payment. Accepted exactly once per session.

        A pending session goes through ``processing`` implicitly. A processing
        session past ``expires_at`` can still complete because its funds may
        already have moved.
        """
        record = self.record
        self._reject_finalized()
        if record.status is SessionStatus.PENDING:
            if not payer_address:
                raise InvalidTransition("payerAddress is required to complete a pending session")
            self.begin_processing(signature, payer_address, now)
        payment = self._require_in_flight(signature)

        if payer_address:
            payment.payer_address = str(parse_address(payer_address, "payerAddress"))
        payment.status = PaymentStatus.COMPLETED
        payment.completed_at = now
        record.status = SessionStatus.COMPLETED
        record.tx_signature = signature
        record.payer_address = payment.payer_address
        record.completed_at = now
        logger.info("Checkout session %s completed with %s", self.id, signature)
        self._emit(EventType.PAYMENT_COMPLETED, payment)

    def fail(self, signature: str, reason: str, now: float) -> None:
        """
        Drop the in-flight attempt. No funds moved, so the session becomes
        payable again, but only by a rebuilt transaction.
        """
        record = self.record
        self._reject_finalized()
        if record.status is not SessionStatus.PROCESSING:
            raise InvalidTransition(f"Checkout session {self.id} has no transaction in flight")
        payment = self._require_in_flight(signature)

        payment.status = PaymentStatus.FAILED
        payment.failure_reason = reason
        record.failed_signatures.add(signature)
        record.status = SessionStatus.PENDING
        logger.warning("Checkout session %s attempt %s failed: %s", self.id, signature, reason)
        self._emit(EventType.PAYMENT_FAILED, payment)

        self._new_attempt(now)
        self.refresh(now)

    def cancel(self, now: float) -> None:
        self.refresh(now)
        self._reject_finalized()
        record = self.record
        if record.status is SessionStatus.PROCESSING:
            raise InvalidTransition(
                f"Checkout session {self.id} cannot be cancelled while a transaction is in flight"
            )
        record.status = SessionStatus.CANCELLED
        payment = record.payment
        payment.status = PaymentStatus.FAILED
        payment.failure_reason = "cancelled"
        logger.info("Checkout session %s cancelled", self.id)


SessionListener = Callable[[EventType, Payment, CheckoutSession], None]


class PaymentSessionStore:
    """
    In-memory owner of every checkout session.

    Passed explicitly to the HTTP layer and the service so tests can swap in
    their own instance. Events produced by transitions are handed to the
    registered listeners after the store lock is released.
    """

    def __init__(
        self,
        *,
        clock: Clock = time.time,
        codec: Optional[AmountCodec] = None,
        session_ttl_seconds: int = 1800,
        retention_seconds: int = 86400,
        url_for: Callable[[str], str] = lambda session_id: f"/checkout/{session_id}",
    ) -> None:
        self.clock = clock
        self.codec = codec or AmountCodec()
        self.session_ttl_seconds = session_ttl_seconds
        self.retention_seconds = retention_seconds
        self.url_for = url_for
        self._sessions: Dict[str, PaymentSession] = {}
        self._listeners: List[SessionListener] = []
        self._lock = threading.RLock()

    def __len__(self) -> int:
        return len(self._sessions)

    def __contains__(self, session_id: object) -> bool:
        return session_id in self._sessions

    def subscribe(self, listener: SessionListener) -> None:
        self._listeners.append(listener)

    def _publish(self, record: CheckoutSession, events: List[SessionEvent]) -> None:
        for event_type, payment in events:
            for listener in self._listeners:
                try:
                    listener(event_type, payment, record)
                except Exception:  # noqa: BLE001
                    logger.exception("Session listener failed for %s", event_type.value)

    def create(
        self,
        *,
        merchant_id: str,
        merchant_name: str,
        merchant_wallet: str,
        amount: AmountLike,
        success_url: str,
        cancel_url: str,
        currency: str = "USDC",
        description: Optional[str] = None,
        metadata: Optional[Mapping[str, str]] = None,
        order_id: Optional[str] = None,
        webhook_url: Optional[str] = None,
        expires_in: Optional[int] = None,
    ) -> CheckoutSession:
        value = to_decimal(amount)
        # Rejects non-positive amounts and amounts below the token's precision.
        self.codec.encode_atomic(value, currency)
        wallet = str(parse_address(merchant_wallet, "merchantWallet"))
        ttl = self.session_ttl_seconds if expires_in is None else expires_in
        if ttl <= 0:
            raise ValueError("expiresIn must be greater than zero")

        now = self.clock()
        session_id = generate_id("cs_", 24)
        record = CheckoutSession(
            id=session_id,
            merchant_id=merchant_id,
            merchant_name=merchant_name,
            merchant_wallet=wallet,
            amount=value,
            currency=currency.upper(),
            success_url=success_url,
            cancel_url=cancel_url,
            created_at=now,
            expires_at=now + ttl,
            url=self.url_for(session_id),
            description=description,
            metadata=dict(metadata or {}),
            order_id=order_id,
            webhook_url=webhook_url,
        )
        session = PaymentSession(record)
        with self._lock:
            session.open(now)
            self._sessions[session_id] = session
            events = session.drain()
        logger.info("Created checkout session %s for merchant %s", session_id, merchant_id)
        self._publish(record, events)
        return record

    def _load(self, session_id: str) -> PaymentSession:
        try:
            return self._sessions[session_id]
        except KeyError:
            raise SessionNotFound(
                f"Checkout session {session_id} not found", {"sessionId": session_id}
            ) from None

    def _apply(
        self,
        session_id: str,
        transition: Callable[[PaymentSession, float], None],
    ) -> CheckoutSession:
        session: Optional[PaymentSession] = None
        events: List[SessionEvent] = []
        try:
            with self._lock:
                session = self._load(session_id)
                try:
                    transition(session, self.clock())
                finally:
                    events = session.drain()
        finally:
            if session is not None and events:
                self._publish(session.record, events)
        return session.record

    def get(self, session_id: str) -> CheckoutSession:
        return self._apply(session_id, lambda session, now: session.refresh(now))

    def begin_processing(self, session_id: str, signature: str, payer_address: str) -> CheckoutSession:
        return self._apply(
            session_id,
            lambda session, now: session.begin_processing(signature, payer_address, now),
        )

    def complete(
        self,
        session_id: str,
        signature: str,
        payer_address: Optional[str] = None,
    ) -> CheckoutSession:
        return self._apply(
            session_id,
            lambda session, now: session.complete(signature, payer_address, now),
        )

    def fail(self, session_id: str, signature: str, reason: str) -> CheckoutSession:
        return self._apply(session_id, lambda session, now: session.fail(signature, reason, now))

    def cancel(self, session_id: str) -> CheckoutSession:
        return self._apply(session_id, lambda session, now: session.cancel(now))

    def for_merchant(self, merchant_id: str) -> List[CheckoutSession]:
        with self._lock:
            ids = [s.id for s in self._sessions.values() if s.record.merchant_id == merchant_id]
        return [self.get(session_id) for session_id in ids]

    def prune(self) -> List[str]:
        """
        Expire what is due and drop terminal sessions past the retention window.

        Returns the ids of the dropped sessions.
        """
        removed: List[str] = []
        with self._lock:
            for session_id in list(self._sessions):
                record = self.get(session_id)
                if record.status.terminal and self.clock() - record.created_at > self.retention_seconds:
                    del self._sessions[session_id]
                    removed.append(session_id)
        if removed:
            logger.info("Pruned %d checkout sessions", len(removed))
        return removed
