"""Protocol definitions for dependency inversion.

These abstract interfaces define the storage contracts that the SQLite and
PostgreSQL adapters implement.
"""

from datetime import datetime
from typing import Protocol
from uuid import UUID

from src.domain.models import (
    DeduplicationLogEntry,
    DeliveryStats,
    SendAttempt,
)
from src.ports.idempotency_store import IdempotencyStorePort


class AttemptLedgerProtocol(Protocol):
    """Durable record of every accepted send and its retry count."""

    def create_attempt(self, attempt: SendAttempt) -> SendAttempt:
        """Insert a new queued attempt row.

        Raises:
            RepositoryError: On storage errors
        """
        ...

    def record_retry(
        self, attempt_id: UUID, error_message: str, *, now: datetime | None = None
    ) -> SendAttempt:
        """Increment ``attempt_count`` and keep the row queued.

        ``updated_at`` is stamped with ``now`` (default: current UTC time).

        Raises:
            RepositoryError: On storage errors or unknown attempt
        """
        ...

    def mark_sent(
        self, attempt_id: UUID, *, now: datetime | None = None
    ) -> SendAttempt:
        """Set status to sent and clear the error message."""
        ...

    def mark_failed(
        self, attempt_id: UUID, error_message: str, *, now: datetime | None = None
    ) -> SendAttempt:
        """Set status to failed with the final error message."""
        ...

    def get_attempt(self, attempt_id: UUID) -> SendAttempt | None:
        """Fetch an attempt by id."""
        ...

    def list_send_attempts(
        self, since: datetime, *, limit: int = 50
    ) -> list[SendAttempt]:
        """Return attempts updated since ``since``, newest first."""
        ...

    def delete_attempts_older_than(self, cutoff: datetime) -> int:
        """Delete attempts last updated before ``cutoff``."""
        ...


class DeduplicationLogProtocol(Protocol):
    """Queryable record of duplicate sends that were prevented."""

    def record_duplicate(
        self,
        *,
        content_hash: str,
        recipient: str,
        subject: str,
        notification_type: str,
        first_sent_at: datetime,
        attempted_at: datetime,
    ) -> DeduplicationLogEntry:
        """Insert or atomically increment the entry for this suppression episode.

        Raises:
            RepositoryError: On storage errors
        """
        ...

    def list_deduplication_logs(
        self, since: datetime, *, limit: int = 50
    ) -> list[DeduplicationLogEntry]:
        """Return entries touched since ``since``, most recent first."""
        ...

    def delete_logs_older_than(self, cutoff: datetime) -> int:
        """Delete entries last attempted before ``cutoff``."""
        ...


class DeliveryRepositoryProtocol(
    IdempotencyStorePort, AttemptLedgerProtocol, DeduplicationLogProtocol, Protocol
):
    """Combined storage surface used by the coordinator, sweeper and stats."""

    def get_delivery_stats(self, since: datetime) -> DeliveryStats:
        """Aggregate ledger and log rows updated since ``since``.

        Raises:
            RepositoryError: On storage errors
        """
        ...

    def close(self) -> None:
        """Release connections held by the repository."""
        ...
