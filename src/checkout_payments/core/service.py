"""
Server-side orchestration: sessions, confirmation tracking, expiry timers and
webhook fan-out.
"""

from __future__ import annotations

import logging
import threading
from collections import deque
from dataclasses import dataclass
from typing import Callable, Deque, Dict, Iterable, List, Mapping, Optional, Union

from .errors import CheckoutError, SessionNotFound
from .models import EventType, Payment
from .scheduling import ScheduledTask
from .session import CheckoutSession, PaymentSessionStore
from .tokens import AmountLike
from .tracker import StatusTracker, TrackingResult
from .webhooks import (
    DeliveryResult,
    WebhookDispatcher,
    WebhookEndpointConfig,
    WebhookEndpointRegistry,
)

__all__ = ["CheckoutService", "CreatedSession"]

logger = logging.getLogger(__name__)

Executor = Callable[[Callable[[], object]], None]


def _spawn(job: Callable[[], object]) -> None:
    threading.Thread(target=job, name="webhook-delivery", daemon=True).start()


@dataclass(frozen=True)
class CreatedSession:
    session: CheckoutSession
    webhook: Optional[WebhookEndpointConfig] = None
    webhook_created: bool = False


class CheckoutService:
    """
    Ties the session store to its side effects.

    Webhooks go out on ``executor`` (a daemon thread per delivery by default)
    so a slow merchant endpoint never blocks a request; only the latest
    ``delivery_history`` results are kept. Every background task for a session
    is stopped once the session is terminal, and old terminal sessions are
    pruned whenever a new one is opened.
    """

    def __init__(
        self,
        store: PaymentSessionStore,
        *,
        tracker: Optional[StatusTracker] = None,
        dispatcher: Optional[WebhookDispatcher] = None,
        endpoints: Optional[WebhookEndpointRegistry] = None,
        executor: Executor = _spawn,
        expiry_interval: Optional[float] = None,
        delivery_history: int = 100,
    ) -> None:
        self.store = store
        self.tracker = tracker
        self.dispatcher = dispatcher or WebhookDispatcher()
        self.endpoints = endpoints or WebhookEndpointRegistry()
        self.executor = executor
        self.expiry_interval = expiry_interval
        self.deliveries: Deque[DeliveryResult] = deque(maxlen=delivery_history)
        self._tasks: Dict[str, List[ScheduledTask]] = {}
        self._lock = threading.Lock()
        store.subscribe(self._on_session_event)

    def _on_session_event(
        self,
        event_type: EventType,
        payment: Payment,
        record: CheckoutSession,
    ) -> None:
        if record.status.terminal:
            self._stop_tasks(record.id)
        endpoints = [e for e in self.endpoints.for_merchant(record.merchant_id) if e.accepts(event_type)]
        if not endpoints:
            return

        def deliver() -> None:
            results = self.dispatcher.deliver(event_type, payment, endpoints)
            self.deliveries.extend(results)

        self.executor(deliver)

    def _add_task(self, session_id: str, task: ScheduledTask) -> None:
        with self._lock:
            self._tasks.setdefault(session_id, []).append(task)

    def _stop_tasks(self, session_id: str) -> None:
        with self._lock:
            tasks = self._tasks.pop(session_id, [])
        for task in tasks:
            task.stop()

    def tasks_for(self, session_id: str) -> List[ScheduledTask]:
        with self._lock:
            return list(self._tasks.get(session_id, []))

    def register_webhook(
        self,
        merchant_id: str,
        url: str,
        events: Optional[Iterable[Union[EventType, str]]] = None,
    ) -> WebhookEndpointConfig:
        endpoint = self.endpoints.register(merchant_id, url, events)
        logger.info("Registered webhook %s for merchant %s", endpoint.id, merchant_id)
        return endpoint

    def create_session(
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
    ) -> CreatedSession:
        """
        Open a session. A ``webhook_url`` the merchant has not registered yet
        gets an endpoint (and secret) before ``payment.created`` goes out.
        """
        self.prune()
        webhook: Optional[WebhookEndpointConfig] = None
        webhook_created = False
        if webhook_url:
            webhook = self.endpoints.find(merchant_id, webhook_url)
            if webhook is None:
                webhook = self.register_webhook(merchant_id, webhook_url)
                webhook_created = True

        record = self.store.create(
            merchant_id=merchant_id,
            merchant_name=merchant_name,
            merchant_wallet=merchant_wallet,
            amount=amount,
            success_url=success_url,
            cancel_url=cancel_url,
            currency=currency,
            description=description,
            metadata=metadata,
            order_id=order_id,
            webhook_url=webhook_url,
            expires_in=expires_in,
        )
        if self.expiry_interval:
            self.watch_expiry(record.id)
        return CreatedSession(record, webhook, webhook_created)

    def get_session(self, session_id: str) -> CheckoutSession:
        return self.store.get(session_id)

    def watch_expiry(self, session_id: str, interval: Optional[float] = None) -> ScheduledTask:
        """
        Countdown that expires the session on time even when nobody reads it.

        Ends once the session is terminal or pruned, and gives up one interval
        past ``expires_at`` while a submitted payment is still being settled.
        """
        interval = interval or self.expiry_interval or 1.0
        try:
            remaining = max(self.store.get(session_id).expires_at - self.store.clock(), 0.0)
        except SessionNotFound:
            remaining = 0.0

        def step() -> bool:
            try:
                return self.store.get(session_id).status.terminal
            except SessionNotFound:
                return True

        task = ScheduledTask(
            step,
            interval,
            timeout=remaining + interval,
            name=f"expiry-{session_id[-8:]}",
        )
        self._add_task(session_id, task)
        return task.start()

    def submit(self, session_id: str, signature: str, payer_address: str) -> CheckoutSession:
        """
        Record a broadcast transaction and let the tracker settle the session.
        """
        record = self.store.begin_processing(session_id, signature, payer_address)
        if self.tracker is not None:
            task = self.tracker.track(
                signature, lambda result: self._settle(session_id, result)
            )
            self._add_task(session_id, task)
        return record

    def _settle(self, session_id: str, result: TrackingResult) -> None:
        try:
            if result.confirmed:
                self.store.complete(session_id, result.signature)
            else:
                self.store.fail(session_id, result.signature, result.reason or "failed")
        except CheckoutError as exc:
            # Completed or cancelled through another path while polling.
            logger.info("Tracker outcome for %s not applied: %s", session_id, exc.message)

    def complete(
        self,
        session_id: str,
        signature: str,
        payer_address: Optional[str] = None,
    ) -> CheckoutSession:
        return self.store.complete(session_id, signature, payer_address)

    def fail(self, session_id: str, signature: str, reason: str) -> CheckoutSession:
        return self.store.fail(session_id, signature, reason)

    def cancel(self, session_id: str) -> CheckoutSession:
        record = self.store.cancel(session_id)
        self._stop_tasks(session_id)
        return record

    def prune(self) -> int:
        removed = self.store.prune()
        for session_id in removed:
            self._stop_tasks(session_id)
        return len(removed)

    def shutdown(self) -> None:
        with self._lock:
            session_ids = list(self._tasks)
        for session_id in session_ids:
            self._stop_tasks(session_id)
        logger.info("Checkout service stopped")
