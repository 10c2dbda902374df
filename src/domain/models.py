"""Domain models for the notification delivery engine.

All models use Pydantic v2 for validation and serialization.
"""

from __future__ import annotations

from datetime import UTC, datetime, timedelta
from enum import StrEnum
from typing import Any
from uuid import UUID, uuid4

from pydantic import BaseModel, ConfigDict, Field, field_validator

from src.domain.delivery_constants import (
    MAX_IDEMPOTENCY_KEY_LENGTH,
    MAX_NOTIFICATION_TYPE_LENGTH,
)
from src.domain.delivery_state import DeliveryState
from src.domain.exceptions import PermanentDeliveryFailure, TerminalDeliveryFailure


def ensure_utc(value: datetime) -> datetime:
    """Return ``value`` as an aware UTC datetime (naive values are assumed UTC)."""
    if value.tzinfo is None:
        return value.replace(tzinfo=UTC)
    return value.astimezone(UTC)


def utc_now() -> datetime:
    return datetime.now(tz=UTC)


class SendStatus(StrEnum):
    """Final or in-flight status of a send attempt row."""

    QUEUED = "queued"
    SENT = "sent"
    FAILED = "failed"


class DeliveryOutcome(StrEnum):
    """Caller-visible outcome of one coordinator invocation."""

    DELIVERED = "delivered"
    SUPPRESSED_DUPLICATE = "suppressed_duplicate"
    SUPPRESSED_STORE_UNAVAILABLE = "suppressed_store_unavailable"
    FAILED_PERMANENT = "failed_permanent"
    FAILED_TERMINAL = "failed_terminal"


class FailureKind(StrEnum):
    """Classification of a transport failure."""

    TRANSIENT = "transient"
    PERMANENT = "permanent"


class NotificationRequest(BaseModel):
    """A request to deliver one notification to one recipient.

    ``payload`` carries the business context (violation id, status, campaign id,
    ...). Only the dedup-relevant subset of it participates in fingerprinting.
    """

    recipient: str
    notification_type: str = Field(..., max_length=MAX_NOTIFICATION_TYPE_LENGTH)
    subject: str
    body: str = ""
    payload: dict[str, Any] = Field(default_factory=dict)
    idempotency_key: str | None = Field(
        default=None,
        max_length=MAX_IDEMPOTENCY_KEY_LENGTH,
        description="Explicit key supplied by the caller; overrides the fingerprint",
    )

    @field_validator("recipient", "notification_type")
    @classmethod
    def _require_non_blank(cls, value: str) -> str:
        stripped = value.strip()
        if not stripped:
            msg = "must not be blank"
            raise ValueError(msg)
        return stripped

    @field_validator("idempotency_key")
    @classmethod
    def _normalize_key(cls, value: str | None) -> str | None:
        if value is None:
            return None
        stripped = value.strip()
        return stripped or None


class AcquireResult(BaseModel):
    """Result of an atomic acquire on the idempotency store.

    When ``acquired`` is False, ``created_at``/``expires_at`` describe the live
    row left by the winner (if it still exists) and ``holder_id`` is None.
    """

    model_config = ConfigDict(frozen=True)

    key: str
    acquired: bool
    holder_id: str | None = None
    created_at: datetime | None = None
    expires_at: datetime | None = None


class SendAttempt(BaseModel):
    """One logical send intent, mutated in place as retries occur."""

    attempt_id: UUID = Field(default_factory=uuid4)
    idempotency_key: str
    recipient: str
    subject: str
    notification_type: str = ""
    status: SendStatus = SendStatus.QUEUED
    error_message: str | None = None
    attempt_count: int = Field(default=1, ge=1)
    created_at: datetime = Field(default_factory=utc_now)
    updated_at: datetime = Field(default_factory=utc_now)

    @field_validator("created_at", "updated_at")
    @classmethod
    def _ensure_timezone(cls, value: datetime) -> datetime:
        return ensure_utc(value)


class DeduplicationLogEntry(BaseModel):
    """Observability record of duplicates suppressed in one episode."""

    entry_id: UUID = Field(default_factory=uuid4)
    content_hash: str
    recipient: str
    subject: str
    notification_type: str = ""
    first_sent_at: datetime
    last_attempted_at: datetime
    attempt_count: int = Field(default=1, ge=1)

    @field_validator("first_sent_at", "last_attempted_at")
    @classmethod
    def _ensure_timezone(cls, value: datetime) -> datetime:
        return ensure_utc(value)


class DeliveryResult(BaseModel):
    """Outcome of a coordinator invocation, including its state history."""

    outcome: DeliveryOutcome
    recipient: str
    notification_type: str
    content_hash: str
    attempt_id: UUID | None = None
    attempt_count: int = 0
    error_message: str | None = None
    expires_at: datetime | None = None
    history: tuple[DeliveryState, ...] = ()

    @property
    def final_state(self) -> DeliveryState:
        return self.history[-1] if self.history else DeliveryState.REQUESTED

    @property
    def delivered(self) -> bool:
        return self.outcome is DeliveryOutcome.DELIVERED

    @property
    def is_duplicate(self) -> bool:
        return self.outcome is DeliveryOutcome.SUPPRESSED_DUPLICATE

    @property
    def suppressed(self) -> bool:
        return self.outcome in (
            DeliveryOutcome.SUPPRESSED_DUPLICATE,
            DeliveryOutcome.SUPPRESSED_STORE_UNAVAILABLE,
        )

    @property
    def failed(self) -> bool:
        return self.outcome in (
            DeliveryOutcome.FAILED_PERMANENT,
            DeliveryOutcome.FAILED_TERMINAL,
        )

    def raise_for_failure(self) -> None:
        """Raise the matching delivery failure for FAILED outcomes."""
        if self.outcome is DeliveryOutcome.FAILED_PERMANENT:
            raise PermanentDeliveryFailure(self)
        if self.outcome is DeliveryOutcome.FAILED_TERMINAL:
            raise TerminalDeliveryFailure(self)


class DeliveryStats(BaseModel):
    """Aggregated delivery statistics over a time window."""

    since: datetime
    total_sent: int = 0
    total_failed: int = 0
    duplicates_prevented: int = 0
    retry_attempts: int = 0
    unique_recipients: int = 0


class RetentionPolicy(BaseModel):
    """Storage hygiene horizon for ledger and dedup log rows."""

    retention_days: int = Field(..., ge=1)

    def cutoff(self, now: datetime) -> datetime:
        return ensure_utc(now) - timedelta(days=self.retention_days)


class SweepResult(BaseModel):
    """Row counts removed by one cleanup sweep."""

    deleted_keys: int = 0
    deleted_attempts: int = 0
    deleted_logs: int = 0
    swept_at: datetime = Field(default_factory=utc_now)

    @property
    def total_deleted(self) -> int:
        return self.deleted_keys + self.deleted_attempts + self.deleted_logs
