"""
Core primitives that implement the stablecoin checkout lifecycle.
"""

from .client import CheckoutClient, PaymentReceipt, send_payment
from .config import (
    CheckoutConfig,
    CheckoutParameters,
    ConfigError,
    load_checkout_config,
)
from .environment import CheckoutEnvironment, build_environment, load_env_file
from .errors import (
    AccountNotFound,
    CheckoutError,
    ConfirmationTimeout,
    InsufficientBalance,
    InvalidAmount,
    InvalidTransition,
    InvalidWebhookSignature,
    LedgerError,
    RelayRejected,
    RelayUnavailable,
    SessionAlreadyFinalized,
    SessionExpired,
    SessionNotFound,
    StaleSignature,
    TransactionBuildFailed,
    UnsupportedToken,
)
from .ledger import LedgerClient
from .models import EventType, Payment, PaymentStatus, SessionStatus
from .payloads import build_checkout_url, canonical_json
from .relay import GaslessBuild, GaslessFeeQuote, GaslessRelayClient, RelaySubmission
from .scheduling import ScheduledTask
from .service import CheckoutService, CreatedSession
from .session import CheckoutSession, PaymentSession, PaymentSessionStore
from .tokens import AmountCodec, TokenInfo, TokenRegistry
from .tracker import ConfirmationState, StatusTracker, TrackingResult
from .transactions import BuiltTransaction, TransactionBuilder
from .webhooks import (
    WebhookDispatcher,
    WebhookEndpointConfig,
    WebhookEndpointRegistry,
    WebhookEvent,
    WebhookHandlerTable,
    WebhookSigner,
    WebhookVerifier,
    handle_webhook,
    sign_payload,
    verify_signature,
)

__all__ = [
    "AccountNotFound",
    "AmountCodec",
    "BuiltTransaction",
    "CheckoutClient",
    "CheckoutConfig",
    "CheckoutEnvironment",
    "CheckoutError",
    "CheckoutParameters",
    "CheckoutService",
    "CheckoutSession",
    "ConfigError",
    "ConfirmationState",
    "ConfirmationTimeout",
    "CreatedSession",
    "EventType",
    "GaslessBuild",
    "GaslessFeeQuote",
    "GaslessRelayClient",
    "InsufficientBalance",
    "InvalidAmount",
    "InvalidTransition",
    "InvalidWebhookSignature",
    "LedgerClient",
    "LedgerError",
    "Payment",
    "PaymentReceipt",
    "PaymentSession",
    "PaymentSessionStore",
    "PaymentStatus",
    "RelayRejected",
    "RelaySubmission",
    "RelayUnavailable",
    "ScheduledTask",
    "SessionAlreadyFinalized",
    "SessionExpired",
    "SessionNotFound",
    "SessionStatus",
    "StaleSignature",
    "StatusTracker",
    "TokenInfo",
    "TokenRegistry",
    "TrackingResult",
    "TransactionBuildFailed",
    "TransactionBuilder",
    "UnsupportedToken",
    "WebhookDispatcher",
    "WebhookEndpointConfig",
    "WebhookEndpointRegistry",
    "WebhookEvent",
    "WebhookHandlerTable",
    "WebhookSigner",
    "WebhookVerifier",
    "build_checkout_url",
    "build_environment",
    "canonical_json",
    "handle_webhook",
    "load_checkout_config",
    "load_env_file",
    "send_payment",
    "sign_payload",
    "verify_signature",
]
