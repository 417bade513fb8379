"""
Confirmation polling for broadcast transactions.
"""

from __future__ import annotations

import logging
import time
from dataclasses import dataclass
from enum import Enum
from typing import Any, Callable, Optional

from .errors import LedgerError
from .ledger import LedgerClient
from .scheduling import ScheduledTask

__all__ = ["ConfirmationState", "StatusTracker", "TrackingResult"]

logger = logging.getLogger(__name__)


class ConfirmationState(str, Enum):
    PENDING = "pending"
    CONFIRMED = "confirmed"
    FAILED = "failed"


@dataclass(frozen=True)
class TrackingResult:
    signature: str
    state: ConfirmationState
    error: Any = None
    timed_out: bool = False

    @property
    def confirmed(self) -> bool:
        return self.state is ConfirmationState.CONFIRMED

    @property
    def reason(self) -> Optional[str]:
        if self.timed_out:
            return "confirmation timeout"
        if self.error is not None:
            return f"transaction error: {self.error}"
        return None


class StatusTracker:
    """
    Maps ledger signature status to ``pending | confirmed | failed``.

    A signature that is not confirmed before ``timeout`` is reported as failed:
    its blockhash will have expired, so it can never land later. The same
    signature is never resubmitted.
    """

    def __init__(
        self,
        ledger: LedgerClient,
        *,
        commitment: str = "confirmed",
        interval: float = 2.0,
        timeout: float = 60.0,
        sleep: Callable[[float], None] = time.sleep,
        clock: Callable[[], float] = time.monotonic,
    ) -> None:
        self.ledger = ledger
        self.commitment = commitment
        self.interval = interval
        self.timeout = timeout
        self.sleep = sleep
        self.clock = clock

    def check(self, signature: str) -> TrackingResult:
        try:
            status = self.ledger.get_signature_status(signature)
        except LedgerError as exc:
            logger.warning("Status lookup for %s failed: %s", signature, exc.message)
            return TrackingResult(signature, ConfirmationState.PENDING)

        if status is None:
            return TrackingResult(signature, ConfirmationState.PENDING)
        if status.failed:
            return TrackingResult(signature, ConfirmationState.FAILED, error=status.err)
        if status.reached(self.commitment):
            return TrackingResult(signature, ConfirmationState.CONFIRMED)
        return TrackingResult(signature, ConfirmationState.PENDING)

    def _timeout_result(self, signature: str) -> TrackingResult:
        logger.warning("No confirmation for %s within %.1fs", signature, self.timeout)
        return TrackingResult(signature, ConfirmationState.FAILED, timed_out=True)

    def wait(self, signature: str) -> TrackingResult:
        """Block until the signature confirms, fails or times out."""
        deadline = self.clock() + self.timeout
        while True:
            result = self.check(signature)
            if result.state is not ConfirmationState.PENDING:
                logger.info("Signature %s %s", signature, result.state.value)
                return result
            if self.clock() >= deadline:
                return self._timeout_result(signature)
            self.sleep(self.interval)

    def track(
        self,
        signature: str,
        on_result: Callable[[TrackingResult], None],
    ) -> ScheduledTask:
        """
        Poll in the background; ``on_result`` fires once with the outcome
        unless the returned task is stopped first.
        """

        def step() -> bool:
            result = self.check(signature)
            if result.state is ConfirmationState.PENDING:
                return False
            on_result(result)
            return True

        task = ScheduledTask(
            step,
            self.interval,
            timeout=self.timeout,
            on_timeout=lambda: on_result(self._timeout_result(signature)),
            name=f"confirm-{signature[:8]}",
            clock=self.clock,
        )
        return task.start()
