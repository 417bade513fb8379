"""
Token metadata and conversion between human amounts and atomic units.
"""

from __future__ import annotations

from dataclasses import dataclass, field
from decimal import ROUND_HALF_UP, Decimal, InvalidOperation
from typing import Dict, Iterable, Iterator, Mapping, Optional, Union

from .errors import InvalidAmount, UnsupportedToken

__all__ = [
    "AmountCodec",
    "AmountLike",
    "DEFAULT_TOKENS",
    "NETWORKS",
    "TokenInfo",
    "TokenRegistry",
    "to_decimal",
]

NETWORKS = ("devnet", "mainnet-beta")

AmountLike = Union[Decimal, str, int, float]


@dataclass(frozen=True)
class TokenInfo:
    symbol: str
    name: str
    decimals: int
    mints: Mapping[str, str] = field(default_factory=dict)

    def mint_for(self, network: str) -> str:
        try:
            return self.mints[network]
        except KeyError:
            raise UnsupportedToken(
                f"{self.symbol} has no mint on {network}",
                {"token": self.symbol, "network": network},
            ) from None


DEFAULT_TOKENS = (
    TokenInfo(
        symbol="USDC",
        name="USD Coin",
        decimals=6,
        mints={
            "devnet": "4zMMC9srt5Ri5X14GAgXhaHii3GnPAEERYPJgZJDncDU",
            "mainnet-beta": "EPjFWdd5AufqSSqeM2qN1xzybapC8G4wEGGkZwyTDt1v",
        },
    ),
    TokenInfo(
        symbol="USDT",
        name="Tether USD",
        decimals=6,
        mints={"mainnet-beta": "Es9vMFrzaCERmJfrF4H2FYD4KCoNkY11McCe8BenwNYB"},
    ),
)


class TokenRegistry:
    """
    Static symbol → (mint per network, decimals) lookup.
    """

    def __init__(self, tokens: Iterable[TokenInfo] = DEFAULT_TOKENS) -> None:
        self._tokens: Dict[str, TokenInfo] = {t.symbol.upper(): t for t in tokens}

    def __contains__(self, symbol: object) -> bool:
        return isinstance(symbol, str) and symbol.upper() in self._tokens

    def __iter__(self) -> Iterator[TokenInfo]:
        return iter(self._tokens.values())

    def get(self, symbol: str) -> TokenInfo:
        try:
            return self._tokens[symbol.upper()]
        except (KeyError, AttributeError):
            raise UnsupportedToken(
                f"Unsupported token '{symbol}'", {"token": symbol}
            ) from None

    def mint(self, symbol: str, network: str) -> str:
        return self.get(symbol).mint_for(network)

    def decimals(self, symbol: str) -> int:
        return self.get(symbol).decimals

    def by_mint(self, mint: str, network: str) -> Optional[TokenInfo]:
        for token in self._tokens.values():
            if token.mints.get(network) == mint:
                return token
        return None


def to_decimal(amount: AmountLike) -> Decimal:
    """
    Coerce ``amount`` to :class:`Decimal`.

    Floats go through ``str`` so ``29.99`` stays ``29.99`` instead of its
    binary expansion.
    """
    if isinstance(amount, bool):
        raise InvalidAmount(f"Amount must be numeric, got {amount!r}")
    if isinstance(amount, float):
        amount = str(amount)
    try:
        value = Decimal(amount)
    except (InvalidOperation, TypeError, ValueError) as exc:
        raise InvalidAmount(f"Amount must be a decimal number, got {amount!r}") from exc
    if not value.is_finite():
        raise InvalidAmount(f"Amount must be finite, got {amount!r}")
    return value


class AmountCodec:
    """Converts decimal amounts to atomic integer units and back."""

    def __init__(self, registry: Optional[TokenRegistry] = None) -> None:
        self.registry = registry or TokenRegistry()

    def encode_atomic(self, amount: AmountLike, symbol: str) -> int:
        """
        Scale ``amount`` to atomic units of ``symbol``.

        Sub-atomic digits round half-up. Amounts that end up at zero or below
        are rejected.
        """
        decimals = self.registry.decimals(symbol)
        value = to_decimal(amount)
        if value <= 0:
            raise InvalidAmount("Payment amount must be greater than zero", {"amount": str(value)})

        quantum = Decimal(1).scaleb(-decimals)
        try:
            rounded = value.quantize(quantum, rounding=ROUND_HALF_UP)
        except InvalidOperation as exc:
            raise InvalidAmount(
                f"Amount {value} cannot be represented with {decimals} decimals"
            ) from exc
        atomic = int(rounded.scaleb(decimals))
        if atomic <= 0:
            raise InvalidAmount(
                f"Amount {value} rounds to zero at {decimals} decimals",
                {"amount": str(value), "decimals": decimals},
            )
        return atomic

    def decode_atomic(self, atomic: int, symbol: str) -> Decimal:
        decimals = self.registry.decimals(symbol)
        return Decimal(int(atomic)).scaleb(-decimals).quantize(Decimal(1).scaleb(-decimals))

    def format(self, atomic: int, symbol: str, places: int = 2) -> str:
        value = self.decode_atomic(atomic, symbol)
        return str(value.quantize(Decimal(1).scaleb(-places), rounding=ROUND_HALF_UP))
