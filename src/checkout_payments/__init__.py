"""
Public facade for the stablecoin checkout package.

The module re-exports the most useful pieces for integrators so they can
``from checkout_payments import ...`` without navigating the package.
"""

from .api import create_checkout_client, create_checkout_service, send_payment
from .core import (
    CheckoutClient,
    CheckoutConfig,
    CheckoutEnvironment,
    CheckoutError,
    CheckoutParameters,
    CheckoutService,
    CheckoutSession,
    ConfigError,
    EventType,
    GaslessRelayClient,
    Payment,
    PaymentReceipt,
    PaymentSessionStore,
    StatusTracker,
    TokenRegistry,
    TransactionBuilder,
    WebhookEvent,
    WebhookHandlerTable,
    WebhookVerifier,
    build_checkout_url,
    build_environment,
    load_checkout_config,
    load_env_file,
    sign_payload,
    verify_signature,
)

__all__ = (
    "CheckoutClient",
    "CheckoutConfig",
    "CheckoutEnvironment",
    "CheckoutError",
    "CheckoutParameters",
    "CheckoutService",
    "CheckoutSession",
    "ConfigError",
    "EventType",
    "GaslessRelayClient",
    "Payment",
    "PaymentReceipt",
    "PaymentSessionStore",
    "StatusTracker",
    "TokenRegistry",
    "TransactionBuilder",
    "WebhookEvent",
    "WebhookHandlerTable",
    "WebhookVerifier",
    "build_checkout_url",
    "build_environment",
    "create_checkout_client",
    "create_checkout_service",
    "load_checkout_config",
    "load_env_file",
    "send_payment",
    "sign_payload",
    "verify_signature",
)
