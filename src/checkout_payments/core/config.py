"""
Configuration objects and helpers for the checkout core.
"""

from __future__ import annotations

from dataclasses import dataclass
from decimal import Decimal, InvalidOperation
from typing import Any, Dict, Mapping, Optional

from .addresses import parse_address
from .environment import build_environment
from .tokens import NETWORKS, TokenRegistry

__all__ = [
    "ConfigError",
    "CheckoutConfig",
    "CheckoutParameters",
    "DEFAULT_RPC_ENDPOINTS",
    "load_checkout_config",
]

DEFAULT_RPC_ENDPOINTS = {
    "devnet": "https://api.devnet.solana.com",
    "mainnet-beta": "https://api.mainnet-beta.solana.com",
}

_COMMITMENTS = ("processed", "confirmed", "finalized")

_PARAMETER_TO_ENV_KEY = {
    "network": "CHECKOUT_NETWORK",
    "rpc_url": "CHECKOUT_RPC_URL",
    "relay_url": "CHECKOUT_RELAY_URL",
    "checkout_base_url": "CHECKOUT_BASE_URL",
    "merchant_name": "CHECKOUT_MERCHANT_NAME",
    "merchant_wallet": "CHECKOUT_MERCHANT_WALLET",
    "default_token": "CHECKOUT_DEFAULT_TOKEN",
    "session_ttl_seconds": "CHECKOUT_SESSION_TTL_SECONDS",
    "payment_expires_seconds": "CHECKOUT_PAYMENT_EXPIRES_SECONDS",
    "retention_seconds": "CHECKOUT_RETENTION_SECONDS",
    "confirmation_timeout_seconds": "CHECKOUT_CONFIRMATION_TIMEOUT_SECONDS",
    "poll_interval_seconds": "CHECKOUT_POLL_INTERVAL_SECONDS",
    "commitment": "CHECKOUT_COMMITMENT",
    "request_timeout_seconds": "CHECKOUT_REQUEST_TIMEOUT_SECONDS",
    "webhook_timeout_seconds": "CHECKOUT_WEBHOOK_TIMEOUT_SECONDS",
}


def _stringify(value: Any) -> str:
    if isinstance(value, bool):
        return "true" if value else "false"
    return str(value)


@dataclass(frozen=True)
class CheckoutParameters:
    """
    Explicit parameter bundle for :func:`load_checkout_config`.

    Anything left as ``None`` falls through to the environment.
    """

    network: Optional[str] = None
    rpc_url: Optional[str] = None
    relay_url: Optional[str] = None
    checkout_base_url: Optional[str] = None
    merchant_name: Optional[str] = None
    merchant_wallet: Optional[str] = None
    default_token: Optional[str] = None
    session_ttl_seconds: Optional[int | str] = None
    payment_expires_seconds: Optional[int | str] = None
    retention_seconds: Optional[int | str] = None
    confirmation_timeout_seconds: Optional[float | str] = None
    poll_interval_seconds: Optional[float | str] = None
    commitment: Optional[str] = None
    request_timeout_seconds: Optional[float | str] = None
    webhook_timeout_seconds: Optional[float | str] = None

    def as_overrides(self) -> Dict[str, str]:
        overrides: Dict[str, str] = {}
        for field_name, env_key in _PARAMETER_TO_ENV_KEY.items():
            value = getattr(self, field_name)
            if value is None:
                continue
            overrides[env_key] = _stringify(value)
        return overrides


def _collect_parameter_overrides(
    parameters: Optional[CheckoutParameters],
    explicit: Mapping[str, Any],
) -> Dict[str, str]:
    overrides: Dict[str, str] = {}
    if parameters is not None:
        overrides.update(parameters.as_overrides())

    for key, value in explicit.items():
        if value is None:
            continue
        try:
            env_key = _PARAMETER_TO_ENV_KEY[key]
        except KeyError as exc:
            raise TypeError(f"Unknown checkout parameter '{key}'") from exc
        overrides[env_key] = _stringify(value)
    return overrides


class ConfigError(Exception):
    """Raised when the supplied configuration is invalid."""


def _positive_int(values: Mapping[str, str], key: str, default: str) -> int:
    raw = values.get(key) or default
    try:
        parsed = int(raw)
    except ValueError as exc:
        raise ConfigError(f"{key} must be an integer, got '{raw}'") from exc
    if parsed <= 0:
        raise ConfigError(f"{key} must be greater than zero")
    return parsed


def _positive_float(values: Mapping[str, str], key: str, default: str) -> float:
    raw = values.get(key) or default
    try:
        parsed = Decimal(raw)
    except InvalidOperation as exc:
        raise ConfigError(f"{key} must be a number, got '{raw}'") from exc
    if not parsed.is_finite() or parsed <= 0:
        raise ConfigError(f"{key} must be greater than zero")
    return float(parsed)


@dataclass(frozen=True)
class CheckoutConfig:
    rpc_url: str
    checkout_base_url: str
    network: str = "devnet"
    relay_url: Optional[str] = None
    merchant_name: Optional[str] = None
    merchant_wallet: Optional[str] = None
    default_token: str = "USDC"
    session_ttl_seconds: int = 1800
    payment_expires_seconds: int = 3600
    retention_seconds: int = 86400
    confirmation_timeout_seconds: float = 60.0
    poll_interval_seconds: float = 2.0
    commitment: str = "confirmed"
    request_timeout_seconds: float = 30.0
    webhook_timeout_seconds: float = 10.0

    @property
    def gasless_enabled(self) -> bool:
        return bool(self.relay_url)

    @property
    def checkout_url(self) -> str:
        return f"{self.checkout_base_url}/pay"

    def session_url(self, session_id: str) -> str:
        return f"{self.checkout_base_url}/checkout/{session_id}"

    @classmethod
    def from_mapping(cls, values: Mapping[str, str]) -> "CheckoutConfig":
        network = (values.get("CHECKOUT_NETWORK") or "devnet").strip()
        if network not in NETWORKS:
            raise ConfigError(
                f"CHECKOUT_NETWORK must be one of {', '.join(NETWORKS)}, got '{network}'"
            )

        rpc_url = (values.get("CHECKOUT_RPC_URL") or DEFAULT_RPC_ENDPOINTS[network]).rstrip("/")
        relay_url = (values.get("CHECKOUT_RELAY_URL") or "").strip().rstrip("/") or None
        checkout_base_url = (
            values.get("CHECKOUT_BASE_URL") or "http://localhost:8000"
        ).rstrip("/")

        merchant_wallet = values.get("CHECKOUT_MERCHANT_WALLET") or None
        if merchant_wallet is not None:
            merchant_wallet = str(
                parse_address(merchant_wallet, "CHECKOUT_MERCHANT_WALLET", error=ConfigError)
            )

        default_token = (values.get("CHECKOUT_DEFAULT_TOKEN") or "USDC").upper()
        if default_token not in TokenRegistry():
            raise ConfigError(f"CHECKOUT_DEFAULT_TOKEN '{default_token}' is not supported")

        commitment = (values.get("CHECKOUT_COMMITMENT") or "confirmed").strip()
        if commitment not in _COMMITMENTS:
            raise ConfigError(
                f"CHECKOUT_COMMITMENT must be one of {', '.join(_COMMITMENTS)}"
            )

        return cls(
            rpc_url=rpc_url,
            checkout_base_url=checkout_base_url,
            network=network,
            relay_url=relay_url,
            merchant_name=values.get("CHECKOUT_MERCHANT_NAME") or None,
            merchant_wallet=merchant_wallet,
            default_token=default_token,
            session_ttl_seconds=_positive_int(values, "CHECKOUT_SESSION_TTL_SECONDS", "1800"),
            payment_expires_seconds=_positive_int(
                values, "CHECKOUT_PAYMENT_EXPIRES_SECONDS", "3600"
            ),
            retention_seconds=_positive_int(values, "CHECKOUT_RETENTION_SECONDS", "86400"),
            confirmation_timeout_seconds=_positive_float(
                values, "CHECKOUT_CONFIRMATION_TIMEOUT_SECONDS", "60"
            ),
            poll_interval_seconds=_positive_float(values, "CHECKOUT_POLL_INTERVAL_SECONDS", "2"),
            commitment=commitment,
            request_timeout_seconds=_positive_float(
                values, "CHECKOUT_REQUEST_TIMEOUT_SECONDS", "30"
            ),
            webhook_timeout_seconds=_positive_float(
                values, "CHECKOUT_WEBHOOK_TIMEOUT_SECONDS", "10"
            ),
        )

    @classmethod
    def from_env(
        cls,
        *,
        env_file: Optional[str] = ".env",
        overrides: Optional[Mapping[str, str]] = None,
        base: Optional[Mapping[str, str]] = None,
        parameters: Optional[CheckoutParameters] = None,
        network: Optional[str] = None,
        rpc_url: Optional[str] = None,
        relay_url: Optional[str] = None,
        checkout_base_url: Optional[str] = None,
        merchant_name: Optional[str] = None,
        merchant_wallet: Optional[str] = None,
        default_token: Optional[str] = None,
        session_ttl_seconds: Optional[int | str] = None,
        payment_expires_seconds: Optional[int | str] = None,
        retention_seconds: Optional[int | str] = None,
        confirmation_timeout_seconds: Optional[float | str] = None,
        poll_interval_seconds: Optional[float | str] = None,
        commitment: Optional[str] = None,
        request_timeout_seconds: Optional[float | str] = None,
        webhook_timeout_seconds: Optional[float | str] = None,
    ) -> "CheckoutConfig":
        parameter_overrides = _collect_parameter_overrides(
            parameters,
            {
                "network": network,
                "rpc_url": rpc_url,
                "relay_url": relay_url,
                "checkout_base_url": checkout_base_url,
                "merchant_name": merchant_name,
                "merchant_wallet": merchant_wallet,
                "default_token": default_token,
                "session_ttl_seconds": session_ttl_seconds,
                "payment_expires_seconds": payment_expires_seconds,
                "retention_seconds": retention_seconds,
                "confirmation_timeout_seconds": confirmation_timeout_seconds,
                "poll_interval_seconds": poll_interval_seconds,
                "commitment": commitment,
                "request_timeout_seconds": request_timeout_seconds,
                "webhook_timeout_seconds": webhook_timeout_seconds,
            },
        )
        merged_overrides = dict(overrides or {})
        merged_overrides.update(parameter_overrides)

        environment = build_environment(
            env_file=env_file,
            base=base,
            overrides=merged_overrides,
        )
        return cls.from_mapping(environment.variables)


def load_checkout_config(
    *,
    env_file: Optional[str] = ".env",
    overrides: Optional[Mapping[str, str]] = None,
    base: Optional[Mapping[str, str]] = None,
    parameters: Optional[CheckoutParameters] = None,
    **kwargs: Any,
) -> CheckoutConfig:
    """
    Convenience wrapper around :meth:`CheckoutConfig.from_env`.

    Keyword arguments use the :class:`CheckoutParameters` field names and take
    precedence over ``overrides``, the ``.env`` file and the environment.
    """
    return CheckoutConfig.from_env(
        env_file=env_file,
        overrides=overrides,
        base=base,
        parameters=parameters,
        **kwargs,
    )
