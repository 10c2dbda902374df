"""Deliver a notification at most once per dedup window.

Flow for one invocation:
1. Fingerprint the request (or take the caller-supplied idempotency key)
2. Atomically acquire the key in the idempotency store
3. Lost the race / key live  -> suppress, upsert the deduplication log
   Store unreachable         -> suppress (fail closed), distinct alarm
4. Won the key -> record a queued send attempt and call the transport,
   retrying transient failures with capped exponential backoff
5. Any FAILED end state releases the key so a later resend is accepted
"""

import random
import time
from collections.abc import Callable
from datetime import datetime, timedelta
from typing import Any

from src.config.logging_config import get_logger
from src.config.settings import Settings
from src.domain.delivery_constants import RETRY_JITTER_RATIO
from src.domain.delivery_state import DeliveryState, DeliveryStateMachine
from src.domain.exceptions import RepositoryError
from src.domain.models import (
    AcquireResult,
    DeliveryOutcome,
    DeliveryResult,
    FailureKind,
    NotificationRequest,
    SendAttempt,
    utc_now,
)
from src.domain.protocols import DeliveryRepositoryProtocol
from src.observability.metrics import (
    DELIVERY_DURATION_SECONDS,
    IDEMPOTENCY_STORE_UNAVAILABLE_TOTAL,
    NOTIFICATION_DUPLICATES_SUPPRESSED_TOTAL,
    NOTIFICATION_FAILURES_TOTAL,
    NOTIFICATION_RETRIES_TOTAL,
    NOTIFICATIONS_DELIVERED_TOTAL,
)
from src.observability.tracing import correlation_scope
from src.ports.transport import NotificationTransportPort
from src.services.failure_classifier import classify_failure, describe_failure
from src.services.fingerprinter import (
    Fingerprinter,
    normalize_notification_type,
    normalize_recipient,
)

logger = get_logger(__name__)

TRANSPORT_REJECTED_MESSAGE = "Transport reported the send as not accepted"


def _default_jitter(base: float) -> float:
    return random.uniform(0.0, base * RETRY_JITTER_RATIO)


class _SendContext:
    """Mutable bookkeeping for one accepted send."""

    def __init__(
        self,
        request: NotificationRequest,
        recipient: str,
        notification_type: str,
        content_hash: str,
        acquisition: AcquireResult,
        machine: DeliveryStateMachine,
    ) -> None:
        self.request = request
        self.recipient = recipient
        self.notification_type = notification_type
        self.content_hash = content_hash
        self.acquisition = acquisition
        self.machine = machine
        self.attempt: SendAttempt | None = None
        self.attempt_number = 0


class DeliveryCoordinator:
    """Orchestrates fingerprinting, key acquisition, sending and retries.

    Clock, sleep and jitter are injectable so that retry schedules and
    deadlines can be driven deterministically in tests.
    """

    def __init__(
        self,
        repository: DeliveryRepositoryProtocol,
        transport: NotificationTransportPort,
        settings: Settings,
        *,
        fingerprinter: Fingerprinter | None = None,
        sleep: Callable[[float], None] = time.sleep,
        clock: Callable[[], datetime] = utc_now,
        jitter_provider: Callable[[float], float] | None = None,
    ) -> None:
        self._repository = repository
        self._transport = transport
        self._window = settings.dedup_window
        self._max_retries = settings.max_retries
        self._retry_delay_ms = settings.retry_delay_ms
        self._max_retry_delay_ms = settings.max_retry_delay_ms
        self._timeout = timedelta(milliseconds=settings.timeout_ms)
        self._fingerprinter = fingerprinter or Fingerprinter(
            settings.dedup_payload_fields, key_scope=settings.dedup_key_scope
        )
        self._sleep = sleep
        self._clock = clock
        self._jitter_provider = jitter_provider or _default_jitter

    def deliver(self, request: NotificationRequest) -> DeliveryResult:
        """Run one logical send to completion and report how it ended.

        Args:
            request: Notification to deliver

        Returns:
            DeliveryResult with the outcome and the state transition history

        Raises:
            ValidationError: If the request cannot be fingerprinted
        """
        started = time.perf_counter()
        with correlation_scope():
            result = self._deliver(request)
        DELIVERY_DURATION_SECONDS.labels(outcome=result.outcome.value).observe(
            time.perf_counter() - started
        )
        return result

    __call__ = deliver

    def _deliver(self, request: NotificationRequest) -> DeliveryResult:
        machine = DeliveryStateMachine()
        recipient = normalize_recipient(request.recipient)
        notification_type = normalize_notification_type(request.notification_type)

        content_hash = request.idempotency_key or self._fingerprinter(
            recipient, notification_type, request.payload, subject=request.subject
        )
        machine.transition(DeliveryState.FINGERPRINTED)

        now = self._clock()
        try:
            acquisition = self._repository.try_acquire(
                content_hash, self._window, now=now
            )
        except RepositoryError as exc:
            return self._suppress_store_unavailable(
                machine, recipient, notification_type, content_hash, exc
            )

        if not acquisition.acquired:
            return self._suppress_duplicate(
                machine,
                request,
                recipient,
                notification_type,
                content_hash,
                acquisition,
                now,
            )

        machine.transition(DeliveryState.ACCEPTED)
        context = _SendContext(
            request, recipient, notification_type, content_hash, acquisition, machine
        )
        logger.info(
            "notification_accepted",
            recipient=recipient,
            notification_type=notification_type,
            content_hash=content_hash,
            expires_at=acquisition.expires_at.isoformat()
            if acquisition.expires_at
            else None,
        )

        try:
            context.attempt = self._repository.create_attempt(
                SendAttempt(
                    idempotency_key=content_hash,
                    recipient=recipient,
                    subject=request.subject,
                    notification_type=notification_type,
                    created_at=now,
                    updated_at=now,
                )
            )
        except RepositoryError as exc:
            logger.error(
                "send_attempt_create_failed",
                content_hash=content_hash,
                error=str(exc),
            )
            return self._fail(
                context,
                DeliveryOutcome.FAILED_TERMINAL,
                f"Send attempt could not be recorded: {exc}",
            )

        return self._send_with_retries(context, deadline=now + self._timeout)

    def _suppress_store_unavailable(
        self,
        machine: DeliveryStateMachine,
        recipient: str,
        notification_type: str,
        content_hash: str,
        exc: RepositoryError,
    ) -> DeliveryResult:
        machine.transition(DeliveryState.SUPPRESSED)
        IDEMPOTENCY_STORE_UNAVAILABLE_TOTAL.labels(
            notification_type=notification_type
        ).inc()
        logger.error(
            "idempotency_store_unavailable",
            recipient=recipient,
            notification_type=notification_type,
            content_hash=content_hash,
            error=str(exc),
        )
        return DeliveryResult(
            outcome=DeliveryOutcome.SUPPRESSED_STORE_UNAVAILABLE,
            recipient=recipient,
            notification_type=notification_type,
            content_hash=content_hash,
            error_message=str(exc),
            history=machine.history,
        )

    def _suppress_duplicate(
        self,
        machine: DeliveryStateMachine,
        request: NotificationRequest,
        recipient: str,
        notification_type: str,
        content_hash: str,
        acquisition: AcquireResult,
        now: datetime,
    ) -> DeliveryResult:
        machine.transition(DeliveryState.SUPPRESSED)
        NOTIFICATION_DUPLICATES_SUPPRESSED_TOTAL.labels(
            notification_type=notification_type
        ).inc()

        # The winner's row may already be released; the episode then starts now.
        first_sent_at = acquisition.created_at or now
        duplicate_count: int | None = None
        try:
            entry = self._repository.record_duplicate(
                content_hash=content_hash,
                recipient=recipient,
                subject=request.subject,
                notification_type=notification_type,
                first_sent_at=first_sent_at,
                attempted_at=now,
            )
            duplicate_count = entry.attempt_count
        except RepositoryError as exc:
            logger.warning(
                "dedup_log_write_failed",
                content_hash=content_hash,
                error=str(exc),
            )

        logger.info(
            "notification_suppressed",
            recipient=recipient,
            notification_type=notification_type,
            content_hash=content_hash,
            first_sent_at=first_sent_at.isoformat(),
            expires_at=acquisition.expires_at.isoformat()
            if acquisition.expires_at
            else None,
            duplicate_count=duplicate_count,
        )
        return DeliveryResult(
            outcome=DeliveryOutcome.SUPPRESSED_DUPLICATE,
            recipient=recipient,
            notification_type=notification_type,
            content_hash=content_hash,
            expires_at=acquisition.expires_at,
            history=machine.history,
        )

    def _send_with_retries(
        self, context: _SendContext, *, deadline: datetime
    ) -> DeliveryResult:
        request = context.request
        while True:
            context.attempt_number += 1
            context.machine.transition(DeliveryState.SENDING)

            failure_kind: FailureKind
            error_message: str
            try:
                response: Any = self._transport.send(
                    context.recipient, request.subject, request.body
                )
            except Exception as exc:
                failure_kind = classify_failure(exc)
                error_message = describe_failure(exc)
            else:
                if response is not False:
                    return self._succeed(context)
                failure_kind = FailureKind.TRANSIENT
                error_message = TRANSPORT_REJECTED_MESSAGE

            if failure_kind is FailureKind.PERMANENT:
                return self._fail(
                    context, DeliveryOutcome.FAILED_PERMANENT, error_message
                )

            if context.attempt_number >= self._max_retries:
                return self._fail(
                    context,
                    DeliveryOutcome.FAILED_TERMINAL,
                    f"{error_message} (gave up after {context.attempt_number} attempts)",
                )

            delay = self._compute_retry_delay(context.attempt_number)
            if self._clock() + delay > deadline:
                return self._fail(
                    context,
                    DeliveryOutcome.FAILED_TERMINAL,
                    f"{error_message} (deadline reached after "
                    f"{context.attempt_number} attempts)",
                )

            context.machine.transition(DeliveryState.RETRY_SCHEDULED)
            self._record_retry(context, error_message)
            NOTIFICATION_RETRIES_TOTAL.labels(
                notification_type=context.notification_type
            ).inc()
            logger.warning(
                "notification_retry_scheduled",
                recipient=context.recipient,
                notification_type=context.notification_type,
                content_hash=context.content_hash,
                attempt=context.attempt_number,
                max_retries=self._max_retries,
                delay_seconds=delay.total_seconds(),
                error=error_message,
            )
            self._sleep(delay.total_seconds())

    def _compute_retry_delay(self, attempt_number: int) -> timedelta:
        """Capped exponential backoff plus jitter for the retry after ``attempt_number``."""
        base_ms = min(
            self._retry_delay_ms * (2 ** max(attempt_number - 1, 0)),
            self._max_retry_delay_ms,
        )
        base_seconds = base_ms / 1000.0
        jitter = max(0.0, self._jitter_provider(base_seconds))
        return timedelta(seconds=base_seconds + jitter)

    def _record_retry(self, context: _SendContext, error_message: str) -> None:
        if context.attempt is None:
            return
        try:
            context.attempt = self._repository.record_retry(
                context.attempt.attempt_id, error_message, now=self._clock()
            )
        except RepositoryError as exc:
            logger.error(
                "send_attempt_update_failed",
                attempt_id=str(context.attempt.attempt_id),
                transition="retry",
                error=str(exc),
            )

    def _succeed(self, context: _SendContext) -> DeliveryResult:
        context.machine.transition(DeliveryState.DELIVERED)
        if context.attempt is not None:
            try:
                context.attempt = self._repository.mark_sent(
                    context.attempt.attempt_id, now=self._clock()
                )
            except RepositoryError as exc:
                logger.error(
                    "send_attempt_update_failed",
                    attempt_id=str(context.attempt.attempt_id),
                    transition="sent",
                    error=str(exc),
                )

        NOTIFICATIONS_DELIVERED_TOTAL.labels(
            notification_type=context.notification_type
        ).inc()
        logger.info(
            "notification_delivered",
            recipient=context.recipient,
            notification_type=context.notification_type,
            content_hash=context.content_hash,
            attempts=context.attempt_number,
        )
        return self._result(context, DeliveryOutcome.DELIVERED, None)

    def _fail(
        self, context: _SendContext, outcome: DeliveryOutcome, error_message: str
    ) -> DeliveryResult:
        context.machine.transition(DeliveryState.FAILED)
        if context.attempt is not None:
            try:
                context.attempt = self._repository.mark_failed(
                    context.attempt.attempt_id, error_message, now=self._clock()
                )
            except RepositoryError as exc:
                logger.error(
                    "send_attempt_update_failed",
                    attempt_id=str(context.attempt.attempt_id),
                    transition="failed",
                    error=str(exc),
                )

        released = False
        if context.acquisition.holder_id is not None:
            try:
                released = self._repository.release(
                    context.content_hash, context.acquisition.holder_id
                )
            except RepositoryError as exc:
                logger.error(
                    "idempotency_key_release_failed",
                    content_hash=context.content_hash,
                    error=str(exc),
                )

        kind = (
            FailureKind.PERMANENT
            if outcome is DeliveryOutcome.FAILED_PERMANENT
            else FailureKind.TRANSIENT
        )
        NOTIFICATION_FAILURES_TOTAL.labels(
            notification_type=context.notification_type, kind=kind.value
        ).inc()
        logger.error(
            "notification_failed",
            recipient=context.recipient,
            notification_type=context.notification_type,
            content_hash=context.content_hash,
            outcome=outcome.value,
            attempts=context.attempt_number,
            key_released=released,
            error=error_message,
        )
        return self._result(context, outcome, error_message)

    def _result(
        self,
        context: _SendContext,
        outcome: DeliveryOutcome,
        error_message: str | None,
    ) -> DeliveryResult:
        attempt = context.attempt
        return DeliveryResult(
            outcome=outcome,
            recipient=context.recipient,
            notification_type=context.notification_type,
            content_hash=context.content_hash,
            attempt_id=attempt.attempt_id if attempt else None,
            attempt_count=max(
                context.attempt_number, attempt.attempt_count if attempt else 0
            ),
            error_message=error_message,
            expires_at=context.acquisition.expires_at,
            history=context.machine.history,
        )


__all__ = ["DeliveryCoordinator", "TRANSPORT_REJECTED_MESSAGE"]
