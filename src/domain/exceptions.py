"""Exception hierarchy for the notification delivery engine.

Error taxonomy: retryable, non-retryable, storage, transport, delivery outcome.
"""

from __future__ import annotations

from typing import TYPE_CHECKING

if TYPE_CHECKING:
    from src.domain.models import DeliveryResult


class NotificationEngineError(Exception):
    """Base exception for all engine errors."""

    pass


class RetryableError(NotificationEngineError):
    """Errors that can be retried (network issues, temporary failures)."""

    pass


class NonRetryableError(NotificationEngineError):
    """Errors that should not be retried (validation, logic errors)."""

    pass


class ValidationError(NonRetryableError):
    """Invalid notification request or configuration."""

    pass


class RepositoryError(RetryableError):
    """Database/storage errors.

    Raised by the idempotency store, attempt ledger and deduplication log
    adapters. The delivery coordinator treats it as "store unavailable" at
    acquisition time and fails closed.
    """

    pass


class TransientTransportError(RetryableError):
    """Transport failure that may succeed on retry (timeout, 4xx, network)."""

    pass


class PermanentTransportError(NonRetryableError):
    """Transport failure that will never succeed (invalid address, rejected)."""

    pass


class InvalidStateTransitionError(NonRetryableError):
    """Delivery state machine was asked to make an illegal transition."""

    def __init__(self, current: str, target: str) -> None:
        self.current = current
        self.target = target
        super().__init__(f"Illegal delivery transition: {current} -> {target}")


class DeliveryFailedError(NonRetryableError):
    """A logical send reached the FAILED state."""

    def __init__(self, result: DeliveryResult) -> None:
        self.result = result
        super().__init__(
            f"Delivery to {result.recipient} failed after "
            f"{result.attempt_count} attempt(s): {result.error_message}"
        )


class PermanentDeliveryFailure(DeliveryFailedError):
    """Transport rejected the send permanently; no retry was made."""

    pass


class TerminalDeliveryFailure(DeliveryFailedError):
    """Transient failures exhausted the retry budget or the timeout."""

    pass
