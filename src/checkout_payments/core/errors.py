"""
Error taxonomy shared by the checkout core.

Every error carries a stable ``error_code`` so the HTTP layer and SDK callers
can branch on it without matching on message text.
"""

from __future__ import annotations

from typing import Any, Dict, Optional

__all__ = [
    "AccountNotFound",
    "CheckoutError",
    "ConfirmationTimeout",
    "InsufficientBalance",
    "InvalidAmount",
    "InvalidTransition",
    "InvalidWebhookSignature",
    "LedgerError",
    "RelayRejected",
    "RelayUnavailable",
    "SessionAlreadyFinalized",
    "SessionExpired",
    "SessionNotFound",
    "StaleSignature",
    "TransactionBuildFailed",
    "UnsupportedToken",
]


class CheckoutError(Exception):
    """Base class for every checkout failure."""

    error_code = "checkout:error"

    def __init__(self, message: str, details: Optional[Dict[str, Any]] = None) -> None:
        self.message = message
        self.details = details or {}
        super().__init__(message)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "error_code": self.error_code,
            "message": self.message,
            "details": self.details,
        }


class InvalidAmount(CheckoutError):
    """Amount is not positive or rounds to zero atomic units."""

    error_code = "checkout:amount:invalid"


class UnsupportedToken(CheckoutError):
    error_code = "checkout:token:unsupported"


class AccountNotFound(CheckoutError):
    """The recipient token account does not exist and no creation step was added."""

    error_code = "checkout:account:not_found"


class InsufficientBalance(CheckoutError):
    error_code = "checkout:balance:insufficient"


class LedgerError(CheckoutError):
    """The ledger RPC node returned an error or could not be reached."""

    error_code = "checkout:ledger:error"


class TransactionBuildFailed(CheckoutError):
    """Blockhash fetch or instruction assembly failed."""

    error_code = "checkout:transaction:build_failed"


class RelayUnavailable(CheckoutError):
    """
    The gasless relay cannot be used for this payment.

    Always recoverable by falling back to the customer-pays-fees path.
    """

    error_code = "checkout:relay:unavailable"


class RelayRejected(CheckoutError):
    error_code = "checkout:relay:rejected"


class ConfirmationTimeout(CheckoutError):
    error_code = "checkout:confirmation:timeout"


class SessionNotFound(CheckoutError):
    error_code = "checkout:session:not_found"


class SessionExpired(CheckoutError):
    error_code = "checkout:session:expired"


class SessionAlreadyFinalized(CheckoutError):
    """
    A completion (or other transition) was attempted on a terminal session.

    Raised instead of overwriting so retried client requests can never credit
    a payment or emit its webhook twice.
    """

    error_code = "checkout:session:already_finalized"


class InvalidTransition(CheckoutError):
    error_code = "checkout:session:invalid_transition"


class StaleSignature(CheckoutError):
    """The signature belongs to an attempt that already failed."""

    error_code = "checkout:session:stale_signature"


class InvalidWebhookSignature(CheckoutError):
    error_code = "checkout:webhook:invalid_signature"
