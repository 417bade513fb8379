"""
Closed status / event vocabularies and the customer-facing Payment record.
"""

from __future__ import annotations

import secrets
import string
from dataclasses import dataclass, field, replace
from datetime import datetime, timezone
from decimal import Decimal
from enum import Enum
from typing import Any, Dict, Optional

from .tokens import AmountCodec

__all__ = [
    "EventType",
    "Payment",
    "PaymentStatus",
    "SessionStatus",
    "generate_id",
    "isoformat",
    "parse_timestamp",
]

_ID_ALPHABET = string.ascii_lowercase + string.digits
_CODEC = AmountCodec()


def generate_id(prefix: str, length: int) -> str:
    return prefix + "".join(secrets.choice(_ID_ALPHABET) for _ in range(length))


def isoformat(timestamp: Optional[float]) -> Optional[str]:
    if timestamp is None:
        return None
    moment = datetime.fromtimestamp(timestamp, tz=timezone.utc)
    return moment.isoformat(timespec="milliseconds").replace("+00:00", "Z")


def parse_timestamp(value: Any) -> Optional[float]:
    """Accepts ISO-8601 strings or epoch seconds."""
    if value is None or value == "":
        return None
    if isinstance(value, (int, float)) and not isinstance(value, bool):
        return float(value)
    if isinstance(value, str):
        text = value[:-1] + "+00:00" if value.endswith("Z") else value
        moment = datetime.fromisoformat(text)
        if moment.tzinfo is None:
            moment = moment.replace(tzinfo=timezone.utc)
        return moment.timestamp()
    raise ValueError(f"Unsupported timestamp {value!r}")


class SessionStatus(str, Enum):
    PENDING = "pending"
    PROCESSING = "processing"
    COMPLETED = "completed"
    EXPIRED = "expired"
    CANCELLED = "cancelled"

    @property
    def terminal(self) -> bool:
        return self in (SessionStatus.COMPLETED, SessionStatus.EXPIRED, SessionStatus.CANCELLED)


class PaymentStatus(str, Enum):
    PENDING = "pending"
    PROCESSING = "processing"
    COMPLETED = "completed"
    FAILED = "failed"
    EXPIRED = "expired"
    REFUNDED = "refunded"

    @property
    def terminal(self) -> bool:
        return self not in (PaymentStatus.PENDING, PaymentStatus.PROCESSING)


class EventType(str, Enum):
    PAYMENT_CREATED = "payment.created"
    PAYMENT_COMPLETED = "payment.completed"
    PAYMENT_FAILED = "payment.failed"
    PAYMENT_EXPIRED = "payment.expired"
    PAYMENT_REFUNDED = "payment.refunded"
    SUBSCRIPTION_CREATED = "subscription.created"
    SUBSCRIPTION_RENEWED = "subscription.renewed"
    SUBSCRIPTION_CANCELLED = "subscription.cancelled"
    SUBSCRIPTION_EXPIRED = "subscription.expired"


@dataclass
class Payment:
    """
    Customer-facing projection of one payment attempt.

    Only the decimal ``amount`` is stored; ``amount_lamports`` is always
    derived from it so the two can never drift.
    """

    id: str
    amount: Decimal
    token: str
    status: PaymentStatus
    merchant_address: str
    checkout_url: str
    created_at: float
    expires_at: float
    memo: Optional[str] = None
    order_id: Optional[str] = None
    metadata: Dict[str, str] = field(default_factory=dict)
    tx_signature: Optional[str] = None
    payer_address: Optional[str] = None
    failure_reason: Optional[str] = None
    completed_at: Optional[float] = None

    @property
    def amount_lamports(self) -> int:
        return _CODEC.encode_atomic(self.amount, self.token)

    def snapshot(self) -> "Payment":
        return replace(self, metadata=dict(self.metadata))

    def to_dict(self) -> Dict[str, Any]:
        return {
            "id": self.id,
            "amount": str(self.amount),
            "amountLamports": str(self.amount_lamports),
            "token": self.token,
            "status": self.status.value,
            "merchantAddress": self.merchant_address,
            "checkoutUrl": self.checkout_url,
            "memo": self.memo,
            "orderId": self.order_id,
            "metadata": dict(self.metadata),
            "createdAt": isoformat(self.created_at),
            "expiresAt": isoformat(self.expires_at),
            "completedAt": isoformat(self.completed_at),
            "txSignature": self.tx_signature,
            "payerAddress": self.payer_address,
            "failureReason": self.failure_reason,
        }

    @classmethod
    def from_dict(cls, payload: Dict[str, Any]) -> "Payment":
        """
        Parse a payment received over the wire.

        Raises ``ValueError`` (or ``KeyError``) on anything that does not match
        the closed vocabulary.
        """
        metadata = payload.get("metadata") or {}
        if not isinstance(metadata, dict):
            raise ValueError("payment.metadata must be an object")
        created_at = parse_timestamp(payload["createdAt"])
        expires_at = parse_timestamp(payload["expiresAt"])
        if created_at is None or expires_at is None:
            raise ValueError("payment timestamps are required")
        return cls(
            id=str(payload["id"]),
            amount=Decimal(str(payload["amount"])),
            token=str(payload.get("token") or "USDC"),
            status=PaymentStatus(payload["status"]),
            merchant_address=str(payload["merchantAddress"]),
            checkout_url=str(payload.get("checkoutUrl") or ""),
            created_at=created_at,
            expires_at=expires_at,
            memo=payload.get("memo"),
            order_id=payload.get("orderId"),
            metadata={str(k): str(v) for k, v in metadata.items()},
            tx_signature=payload.get("txSignature"),
            payer_address=payload.get("payerAddress"),
            failure_reason=payload.get("failureReason"),
            completed_at=parse_timestamp(payload.get("completedAt")),
        )
