"""
Ledger address helpers.
"""

from __future__ import annotations

from typing import Type, Union

from solders.pubkey import Pubkey

__all__ = ["parse_address"]

AddressLike = Union[str, Pubkey]


def parse_address(
    value: AddressLike,
    field_name: str = "address",
    *,
    error: Type[Exception] = ValueError,
) -> Pubkey:
    if isinstance(value, Pubkey):
        return value
    raw = (value or "").strip() if isinstance(value, str) else ""
    if not raw:
        raise error(f"{field_name} must not be empty")
    try:
        return Pubkey.from_string(raw)
    except ValueError as exc:
        raise error(f"{field_name} is not a valid Solana address") from exc

