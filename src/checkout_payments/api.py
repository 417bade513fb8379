"""
Public, high-level helpers for building checkout clients and services.
"""

from __future__ import annotations

from typing import Any, Mapping, Optional

import requests
from solders.keypair import Keypair

from .core.client import CheckoutClient, PaymentReceipt, send_payment as _send_payment
from .core.config import (
    CheckoutConfig,
    CheckoutParameters,
    ConfigError,
    load_checkout_config,
)
from .core.environment import CheckoutEnvironment, build_environment, load_env_file
from .core.service import CheckoutService
from .core.session import PaymentSessionStore
from .core.tokens import AmountLike
from .core.webhooks import WebhookDispatcher

__all__ = [
    "CheckoutClient",
    "CheckoutConfig",
    "CheckoutEnvironment",
    "CheckoutParameters",
    "CheckoutService",
    "ConfigError",
    "PaymentReceipt",
    "build_environment",
    "create_checkout_client",
    "create_checkout_service",
    "load_checkout_config",
    "load_env_file",
    "send_payment",
]


def _resolve_config(
    config: Optional[CheckoutConfig],
    *,
    env_file: Optional[str],
    overrides: Optional[Mapping[str, str]],
    base: Optional[Mapping[str, str]],
    parameters: Optional[CheckoutParameters],
    kwargs: Mapping[str, Any],
) -> CheckoutConfig:
    if config is not None:
        extras = (overrides, base, parameters, *kwargs.values())
        if any(item is not None and item != {} for item in extras):
            raise ValueError(
                "Provide either a pre-built CheckoutConfig or individual parameters, not both."
            )
        return config
    return load_checkout_config(
        env_file=env_file,
        overrides=overrides,
        base=base,
        parameters=parameters,
        **kwargs,
    )


def create_checkout_client(
    *,
    config: Optional[CheckoutConfig] = None,
    session: Optional[requests.Session] = None,
    env_file: Optional[str] = ".env",
    overrides: Optional[Mapping[str, str]] = None,
    base: Optional[Mapping[str, str]] = None,
    parameters: Optional[CheckoutParameters] = None,
    **kwargs: Any,
) -> CheckoutClient:
    """
    Construct a :class:`CheckoutClient`.

    Callers can either supply a ready-made :class:`CheckoutConfig` or let the
    helper assemble one from environment data. Extra keyword arguments use the
    :class:`CheckoutParameters` field names.
    """
    cfg = _resolve_config(
        config,
        env_file=env_file,
        overrides=overrides,
        base=base,
        parameters=parameters,
        kwargs=kwargs,
    )
    return CheckoutClient(cfg, session=session)


def create_checkout_service(
    *,
    config: Optional[CheckoutConfig] = None,
    session: Optional[requests.Session] = None,
    store: Optional[PaymentSessionStore] = None,
    client: Optional[CheckoutClient] = None,
    expiry_interval: Optional[float] = 5.0,
    env_file: Optional[str] = ".env",
    overrides: Optional[Mapping[str, str]] = None,
    base: Optional[Mapping[str, str]] = None,
    parameters: Optional[CheckoutParameters] = None,
    **kwargs: Any,
) -> CheckoutService:
    """
    Wire a :class:`CheckoutService` for the HTTP server: a session store using
    the configured TTLs, the ledger tracker and a webhook dispatcher sharing
    one ``requests.Session``.
    """
    cfg = client.config if client is not None else _resolve_config(
        config,
        env_file=env_file,
        overrides=overrides,
        base=base,
        parameters=parameters,
        kwargs=kwargs,
    )
    http = session or (client.session if client is not None else requests.Session())
    client = client or CheckoutClient(cfg, session=http)
    store = store or PaymentSessionStore(
        codec=client.codec,
        session_ttl_seconds=cfg.session_ttl_seconds,
        retention_seconds=cfg.retention_seconds,
        url_for=cfg.session_url,
    )
    return CheckoutService(
        store,
        tracker=client.tracker,
        dispatcher=WebhookDispatcher(session=http, timeout=cfg.webhook_timeout_seconds),
        expiry_interval=expiry_interval,
    )


def send_payment(
    keypair: Keypair,
    amount: AmountLike,
    *,
    config: Optional[CheckoutConfig] = None,
    session: Optional[requests.Session] = None,
    recipient: Optional[str] = None,
    token: Optional[str] = None,
    memo: Optional[str] = None,
    gasless: bool = False,
    env_file: Optional[str] = ".env",
    overrides: Optional[Mapping[str, str]] = None,
    base: Optional[Mapping[str, str]] = None,
    parameters: Optional[CheckoutParameters] = None,
    **kwargs: Any,
) -> PaymentReceipt:
    """
    High-level convenience wrapper: build, sign, broadcast and confirm.
    """
    cfg = _resolve_config(
        config,
        env_file=env_file,
        overrides=overrides,
        base=base,
        parameters=parameters,
        kwargs=kwargs,
    )
    return _send_payment(
        cfg,
        keypair,
        amount,
        session=session,
        recipient=recipient,
        token=token,
        memo=memo,
        gasless=gasless,
    )
