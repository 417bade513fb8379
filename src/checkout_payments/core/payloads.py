"""
Helpers for the JSON bodies and URLs exchanged with collaborators.
"""

from __future__ import annotations

import json
from decimal import Decimal
from typing import TYPE_CHECKING, Any, Dict, Mapping, Optional
from urllib.parse import urlencode

from .tokens import AmountLike, to_decimal

if TYPE_CHECKING:
    from .transactions import BuiltTransaction

__all__ = [
    "build_checkout_url",
    "build_relay_request",
    "canonical_json",
    "json_default",
]


def json_default(value: Any) -> Any:
    if isinstance(value, Decimal):
        return str(value)
    if hasattr(value, "to_dict"):
        return value.to_dict()
    raise TypeError(f"Object of type {type(value).__name__} is not JSON serializable")


def canonical_json(data: Mapping[str, Any]) -> bytes:
    """
    Deterministic serialisation used for signing: sorted keys, no whitespace, UTF-8.
    """
    return json.dumps(
        data,
        sort_keys=True,
        separators=(",", ":"),
        ensure_ascii=False,
        default=json_default,
    ).encode("utf-8")


def build_checkout_url(
    base_url: str,
    *,
    amount: AmountLike,
    merchant: str,
    to: str,
    memo: Optional[str] = None,
    order_id: Optional[str] = None,
    success_url: Optional[str] = None,
    cancel_url: Optional[str] = None,
    payment_id: Optional[str] = None,
) -> str:
    """
    Hosted checkout link understood by the payment page.

    ``amount``, ``merchant`` and ``to`` are always present; the rest only when set.
    """
    params = {
        "amount": str(to_decimal(amount)),
        "merchant": merchant,
        "to": to,
    }
    optional = {
        "memo": memo,
        "orderId": order_id,
        "successUrl": success_url,
        "cancelUrl": cancel_url,
        "paymentId": payment_id,
    }
    params.update({key: value for key, value in optional.items() if value})
    return f"{base_url}?{urlencode(params)}"


def build_relay_request(built: "BuiltTransaction") -> Dict[str, Any]:
    """Body for the relay ``/transfer`` endpoint: the partially signed transaction."""
    return {"transaction": built.serialize()}
