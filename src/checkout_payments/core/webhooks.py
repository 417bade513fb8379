"""
Signed webhook events: producing, delivering, verifying and dispatching them.

The wire body is ``{id, type, payment, timestamp, signature}``. ``signature``
inside the body is the HMAC of the canonical event without that field, so a
stored event can be re-verified on its own. The ``X-Signature`` header is the
HMAC of the exact raw body bytes and is what receivers check before parsing.
"""

from __future__ import annotations

import hashlib
import hmac
import json
import logging
import secrets
import threading
import time
from dataclasses import dataclass, field, replace
from decimal import InvalidOperation
from typing import Any, Callable, Dict, FrozenSet, Iterable, List, Mapping, Optional, Tuple, Union

import requests

from .errors import InvalidWebhookSignature
from .models import EventType, Payment, generate_id, isoformat, parse_timestamp
from .payloads import canonical_json

__all__ = [
    "DeliveryResult",
    "SIGNATURE_HEADER",
    "WebhookDispatcher",
    "WebhookEndpointConfig",
    "WebhookEndpointRegistry",
    "WebhookEvent",
    "WebhookHandlerTable",
    "WebhookSigner",
    "WebhookVerifier",
    "handle_webhook",
    "sign_payload",
    "verify_signature",
]

logger = logging.getLogger(__name__)

SIGNATURE_HEADER = "X-Signature"

BytesLike = Union[bytes, str]

_KNOWN_EVENT_TYPES = frozenset(e.value for e in EventType)


def _as_bytes(value: BytesLike) -> bytes:
    return value.encode("utf-8") if isinstance(value, str) else bytes(value)


def sign_payload(payload: BytesLike, secret: str) -> str:
    """Hex HMAC-SHA256 of ``payload`` keyed by ``secret``."""
    return hmac.new(secret.encode("utf-8"), _as_bytes(payload), hashlib.sha256).hexdigest()


def verify_signature(payload: BytesLike, signature: Optional[str], secret: str) -> bool:
    """
    Constant-time check of ``signature`` against ``payload``.

    Missing or non-string signatures are simply invalid.
    """
    if not signature or not isinstance(signature, str):
        return False
    expected = sign_payload(payload, secret)
    return hmac.compare_digest(expected.encode("ascii"), signature.strip().lower().encode("utf-8"))


@dataclass(frozen=True)
class WebhookEndpointConfig:
    id: str
    url: str
    secret: str
    events: FrozenSet[EventType] = frozenset(EventType)
    active: bool = True
    merchant_id: Optional[str] = None

    @classmethod
    def generate(
        cls,
        url: str,
        *,
        events: Optional[Iterable[Union[EventType, str]]] = None,
        merchant_id: Optional[str] = None,
    ) -> "WebhookEndpointConfig":
        subscribed = frozenset(EventType(e) for e in events) if events else frozenset(EventType)
        return cls(
            id=f"wh_{secrets.token_hex(16)}",
            url=url,
            secret=f"whsec_{secrets.token_hex(24)}",
            events=subscribed,
            merchant_id=merchant_id,
        )

    def accepts(self, event_type: EventType) -> bool:
        return self.active and event_type in self.events

    def to_dict(self, *, include_secret: bool = False) -> Dict[str, Any]:
        data: Dict[str, Any] = {
            "id": self.id,
            "url": self.url,
            "events": sorted(e.value for e in self.events),
            "active": self.active,
            "merchantId": self.merchant_id,
        }
        if include_secret:
            data["secret"] = self.secret
        return data


@dataclass
class WebhookEvent:
    id: str
    type: EventType
    payment: Payment
    timestamp: float
    signature: str = ""

    @classmethod
    def create(cls, event_type: EventType, payment: Payment, *, now: Optional[float] = None) -> "WebhookEvent":
        now = time.time() if now is None else now
        return cls(
            id=f"evt_{int(now * 1000)}_{generate_id('', 9)}",
            type=event_type,
            payment=payment.snapshot(),
            timestamp=now,
        )

    def unsigned_dict(self) -> Dict[str, Any]:
        return {
            "id": self.id,
            "type": self.type.value,
            "payment": self.payment.to_dict(),
            "timestamp": isoformat(self.timestamp),
        }

    def to_dict(self) -> Dict[str, Any]:
        data = self.unsigned_dict()
        data["signature"] = self.signature
        return data

    @classmethod
    def from_dict(cls, payload: Any) -> "WebhookEvent":
        """
        Validate an already-authenticated body into the closed event shape.

        Raises ``ValueError`` on unknown types or malformed payments.
        """
        if not isinstance(payload, dict):
            raise ValueError("Webhook body must be a JSON object")
        try:
            event_type = EventType(payload["type"])
            payment = payload["payment"]
            if not isinstance(payment, dict):
                raise ValueError("payment must be an object")
            timestamp = parse_timestamp(payload["timestamp"])
            if timestamp is None:
                raise ValueError("timestamp is required")
            return cls(
                id=str(payload["id"]),
                type=event_type,
                payment=Payment.from_dict(payment),
                timestamp=timestamp,
                signature=str(payload.get("signature") or ""),
            )
        except (KeyError, TypeError, InvalidOperation) as exc:
            raise ValueError(f"Malformed webhook event: {exc}") from exc


@dataclass(frozen=True)
class SignedDelivery:
    body: bytes
    headers: Dict[str, str]
    event: WebhookEvent


class WebhookSigner:
    def __init__(self, secret: str) -> None:
        self.secret = secret

    def sign_event(self, event: WebhookEvent) -> SignedDelivery:
        """Sign a copy of ``event``; the same event can be signed for many endpoints."""
        event = replace(event, signature=sign_payload(canonical_json(event.unsigned_dict()), self.secret))
        body = canonical_json(event.to_dict())
        headers = {
            "Content-Type": "application/json",
            SIGNATURE_HEADER: sign_payload(body, self.secret),
            "X-Event-Type": event.type.value,
        }
        return SignedDelivery(body=body, headers=headers, event=event)


class WebhookVerifier:
    def __init__(self, secret: str) -> None:
        self.secret = secret

    def verify(self, raw_body: BytesLike, signature: Optional[str]) -> bool:
        return verify_signature(raw_body, signature, self.secret)

    def verify_event(self, event: WebhookEvent) -> bool:
        """Check the signature embedded in a parsed event."""
        return verify_signature(canonical_json(event.unsigned_dict()), event.signature, self.secret)

    def authenticate(self, raw_body: BytesLike, signature: Optional[str]) -> Dict[str, Any]:
        """
        Check the header signature, then decode. Nothing is decoded before
        the HMAC matches.
        """
        if not signature:
            raise InvalidWebhookSignature("Missing webhook signature")
        if not self.verify(raw_body, signature):
            raise InvalidWebhookSignature("Invalid webhook signature")
        try:
            payload = json.loads(_as_bytes(raw_body).decode("utf-8"))
        except (UnicodeDecodeError, json.JSONDecodeError) as exc:
            raise ValueError(f"Webhook body is not valid JSON: {exc}") from exc
        if not isinstance(payload, dict):
            raise ValueError("Webhook body must be a JSON object")
        return payload

    def parse(self, raw_body: BytesLike, signature: Optional[str]) -> WebhookEvent:
        return WebhookEvent.from_dict(self.authenticate(raw_body, signature))


WebhookHandler = Callable[[WebhookEvent], None]


class WebhookHandlerTable:
    """Event type → handler. Unregistered types are acknowledged and ignored."""

    def __init__(self, handlers: Optional[Mapping[Union[EventType, str], WebhookHandler]] = None) -> None:
        self._handlers: Dict[EventType, WebhookHandler] = {}
        for event_type, handler in (handlers or {}).items():
            self.register(event_type, handler)

    def register(self, event_type: Union[EventType, str], handler: WebhookHandler) -> None:
        self._handlers[EventType(event_type)] = handler

    def on(self, event_type: Union[EventType, str]) -> Callable[[WebhookHandler], WebhookHandler]:
        def decorator(handler: WebhookHandler) -> WebhookHandler:
            self.register(event_type, handler)
            return handler

        return decorator

    def dispatch(self, event: WebhookEvent) -> bool:
        handler = self._handlers.get(event.type)
        if handler is None:
            logger.debug("No handler for %s; acknowledging", event.type.value)
            return False
        handler(event)
        return True


def handle_webhook(
    raw_body: BytesLike,
    signature: Optional[str],
    verifier: WebhookVerifier,
    handlers: WebhookHandlerTable,
) -> Tuple[int, Dict[str, Any]]:
    """
    Framework-neutral receiver: returns ``(status_code, json_body)``.

    Signature failures are 401 and never reach a handler. Authentic events of
    a type this version does not know are acknowledged untouched. Malformed
    bodies are 400 and handler errors are 500.
    """
    try:
        payload = verifier.authenticate(raw_body, signature)
    except InvalidWebhookSignature as exc:
        logger.warning("Rejected webhook: %s", exc.message)
        return 401, {"error": exc.message}
    except ValueError as exc:
        return 400, {"error": str(exc)}

    event_type = payload.get("type")
    if not isinstance(event_type, str) or event_type not in _KNOWN_EVENT_TYPES:
        logger.info("Ignoring webhook of unknown type %r", event_type)
        return 200, {"received": True, "handled": False}

    try:
        event = WebhookEvent.from_dict(payload)
    except ValueError as exc:
        return 400, {"error": str(exc)}

    try:
        handled = handlers.dispatch(event)
    except Exception:  # noqa: BLE001
        logger.exception("Webhook handler for %s failed", event.type.value)
        return 500, {"error": "Webhook processing failed"}
    return 200, {"received": True, "handled": handled}


@dataclass(frozen=True)
class DeliveryResult:
    endpoint_id: str
    url: str
    event_id: str
    ok: bool
    status_code: Optional[int] = None
    error: Optional[str] = None


class WebhookEndpointRegistry:
    """In-memory endpoint configs keyed by merchant."""

    def __init__(self) -> None:
        self._endpoints: Dict[str, WebhookEndpointConfig] = {}
        self._lock = threading.Lock()

    def add(self, endpoint: WebhookEndpointConfig) -> WebhookEndpointConfig:
        with self._lock:
            self._endpoints[endpoint.id] = endpoint
        return endpoint

    def register(
        self,
        merchant_id: str,
        url: str,
        events: Optional[Iterable[Union[EventType, str]]] = None,
    ) -> WebhookEndpointConfig:
        return self.add(WebhookEndpointConfig.generate(url, events=events, merchant_id=merchant_id))

    def get(self, endpoint_id: str) -> Optional[WebhookEndpointConfig]:
        return self._endpoints.get(endpoint_id)

    def remove(self, endpoint_id: str) -> bool:
        with self._lock:
            return self._endpoints.pop(endpoint_id, None) is not None

    def for_merchant(self, merchant_id: str) -> List[WebhookEndpointConfig]:
        return [e for e in self._endpoints.values() if e.merchant_id == merchant_id]

    def find(self, merchant_id: str, url: str) -> Optional[WebhookEndpointConfig]:
        for endpoint in self.for_merchant(merchant_id):
            if endpoint.url == url:
                return endpoint
        return None


@dataclass
class WebhookDispatcher:
    """
    Single-attempt delivery of signed events.

    There is no retry queue: a failed delivery is logged and reported back to
    the caller, nothing more.
    """

    session: requests.Session = field(default_factory=requests.Session)
    timeout: float = 10.0
    clock: Callable[[], float] = time.time

    def deliver(
        self,
        event_type: EventType,
        payment: Payment,
        endpoints: Iterable[WebhookEndpointConfig],
    ) -> List[DeliveryResult]:
        """
        One event per transition, signed separately for each subscribed endpoint.
        """
        targets = [endpoint for endpoint in endpoints if endpoint.accepts(event_type)]
        if not targets:
            return []
        event = WebhookEvent.create(event_type, payment, now=self.clock())
        return [self.send(endpoint, event) for endpoint in targets]

    def send(self, endpoint: WebhookEndpointConfig, event: WebhookEvent) -> DeliveryResult:
        delivery = WebhookSigner(endpoint.secret).sign_event(event)
        try:
            response = self.session.post(
                endpoint.url,
                data=delivery.body,
                headers=delivery.headers,
                timeout=self.timeout,
            )
        except requests.RequestException as exc:
            logger.warning("Webhook %s to %s failed: %s", event.id, endpoint.url, exc)
            return DeliveryResult(endpoint.id, endpoint.url, event.id, ok=False, error=str(exc))

        ok = 200 <= response.status_code < 300
        if ok:
            logger.info("Webhook %s delivered to %s", event.id, endpoint.url)
        else:
            logger.warning(
                "Webhook %s to %s answered %s", event.id, endpoint.url, response.status_code
            )
        return DeliveryResult(
            endpoint.id, endpoint.url, event.id, ok=ok, status_code=response.status_code
        )
