"""PostgreSQL implementation of the delivery storage protocols."""

from __future__ import annotations

from collections.abc import Callable
from contextlib import AbstractContextManager
from datetime import datetime, timedelta
from typing import Any
from uuid import UUID, uuid4

from psycopg2 import Error as PsycopgError
from psycopg2.extras import RealDictCursor

from src.config.logging_config import get_logger
from src.domain.exceptions import RepositoryError
from src.domain.models import (
    AcquireResult,
    DeduplicationLogEntry,
    DeliveryStats,
    SendAttempt,
    SendStatus,
    ensure_utc,
    utc_now,
)

logger = get_logger(__name__)

ConnectionProvider = Callable[[], AbstractContextManager[Any]]


class PostgresDeliveryStore:
    """Idempotency keys, send attempts and the dedup log in PostgreSQL.

    Every statement runs on a connection borrowed from ``connection_provider``
    and is committed before the connection is returned.
    """

    def __init__(self, connection_provider: ConnectionProvider):
        self._connection_provider = connection_provider

    # ------------------------------------------------------------------
    # Idempotency store
    # ------------------------------------------------------------------

    def try_acquire(
        self, key: str, window: timedelta, *, now: datetime | None = None
    ) -> AcquireResult:
        current = ensure_utc(now or utc_now())
        holder_id = uuid4().hex

        try:
            with self._connection_provider() as conn:
                with conn.cursor(cursor_factory=RealDictCursor) as cur:
                    cur.execute(
                        """
                        INSERT INTO notification_idempotency_keys (
                            key, holder_id, created_at, expires_at
                        ) VALUES (%s, %s, %s, %s)
                        ON CONFLICT (key) DO UPDATE SET
                            holder_id = EXCLUDED.holder_id,
                            created_at = EXCLUDED.created_at,
                            expires_at = EXCLUDED.expires_at
                        WHERE notification_idempotency_keys.expires_at
                            <= EXCLUDED.created_at
                        RETURNING key, holder_id, created_at, expires_at
                        """,
                        (key, holder_id, current, current + window),
                    )
                    row = cur.fetchone()
                    acquired = row is not None
                    if not acquired:
                        cur.execute(
                            """
                            SELECT key, created_at, expires_at
                            FROM notification_idempotency_keys
                            WHERE key = %s
                            """,
                            (key,),
                        )
                        row = cur.fetchone()
                    conn.commit()
        except PsycopgError as exc:
            raise RepositoryError(f"Failed to acquire idempotency key: {exc}") from exc

        if acquired:
            return AcquireResult(
                key=key,
                acquired=True,
                holder_id=holder_id,
                created_at=ensure_utc(row["created_at"]),
                expires_at=ensure_utc(row["expires_at"]),
            )
        return AcquireResult(
            key=key,
            acquired=False,
            created_at=ensure_utc(row["created_at"]) if row else None,
            expires_at=ensure_utc(row["expires_at"]) if row else None,
        )

    def is_live(self, key: str, *, now: datetime | None = None) -> bool:
        current = ensure_utc(now or utc_now())
        with self._connection_provider() as conn:
            with conn.cursor() as cur:
                cur.execute(
                    """
                    SELECT 1 FROM notification_idempotency_keys
                    WHERE key = %s AND expires_at > %s
                    """,
                    (key, current),
                )
                row = cur.fetchone()
        return row is not None

    def release(self, key: str, holder_id: str) -> bool:
        with self._connection_provider() as conn:
            with conn.cursor() as cur:
                cur.execute(
                    """
                    DELETE FROM notification_idempotency_keys
                    WHERE key = %s AND holder_id = %s
                    """,
                    (key, holder_id),
                )
                released = cur.rowcount > 0
                conn.commit()
        return released

    def expire_older_than(self, cutoff: datetime) -> int:
        return self._delete_before(
            "DELETE FROM notification_idempotency_keys WHERE expires_at < %s", cutoff
        )

    # ------------------------------------------------------------------
    # Send attempt ledger
    # ------------------------------------------------------------------

    def create_attempt(self, attempt: SendAttempt) -> SendAttempt:
        with self._connection_provider() as conn:
            with conn.cursor(cursor_factory=RealDictCursor) as cur:
                cur.execute(
                    """
                    INSERT INTO notification_send_attempts (
                        attempt_id,
                        idempotency_key,
                        recipient,
                        subject,
                        notification_type,
                        status,
                        error_message,
                        attempt_count,
                        created_at,
                        updated_at
                    ) VALUES (%s, %s, %s, %s, %s, %s, %s, %s, %s, %s)
                    RETURNING *
                    """,
                    (
                        attempt.attempt_id,
                        attempt.idempotency_key,
                        attempt.recipient,
                        attempt.subject,
                        attempt.notification_type,
                        attempt.status.value,
                        attempt.error_message,
                        attempt.attempt_count,
                        attempt.created_at,
                        attempt.updated_at,
                    ),
                )
                row = cur.fetchone()
                conn.commit()
        return SendAttempt.model_validate(dict(row)) if row else attempt

    def record_retry(
        self, attempt_id: UUID, error_message: str, *, now: datetime | None = None
    ) -> SendAttempt:
        return self._update_attempt(
            attempt_id,
            "attempt_count = attempt_count + 1, error_message = %s, status = %s",
            (error_message, SendStatus.QUEUED.value),
            now,
        )

    def mark_sent(
        self, attempt_id: UUID, *, now: datetime | None = None
    ) -> SendAttempt:
        return self._update_attempt(
            attempt_id,
            "status = %s, error_message = NULL",
            (SendStatus.SENT.value,),
            now,
        )

    def mark_failed(
        self, attempt_id: UUID, error_message: str, *, now: datetime | None = None
    ) -> SendAttempt:
        return self._update_attempt(
            attempt_id,
            "status = %s, error_message = %s",
            (SendStatus.FAILED.value, error_message),
            now,
        )

    def _update_attempt(
        self,
        attempt_id: UUID,
        assignments: str,
        params: tuple[Any, ...],
        now: datetime | None,
    ) -> SendAttempt:
        with self._connection_provider() as conn:
            with conn.cursor(cursor_factory=RealDictCursor) as cur:
                cur.execute(
                    f"""
                    UPDATE notification_send_attempts
                    SET {assignments}, updated_at = %s
                    WHERE attempt_id = %s
                    RETURNING *
                    """,
                    (*params, ensure_utc(now or utc_now()), attempt_id),
                )
                row = cur.fetchone()
                conn.commit()
        if row is None:
            raise RepositoryError(f"Unknown send attempt: {attempt_id}")
        return SendAttempt.model_validate(dict(row))

    def get_attempt(self, attempt_id: UUID) -> SendAttempt | None:
        with self._connection_provider() as conn:
            with conn.cursor(cursor_factory=RealDictCursor) as cur:
                cur.execute(
                    "SELECT * FROM notification_send_attempts WHERE attempt_id = %s",
                    (attempt_id,),
                )
                row = cur.fetchone()
        return SendAttempt.model_validate(dict(row)) if row else None

    def list_send_attempts(
        self, since: datetime, *, limit: int = 50
    ) -> list[SendAttempt]:
        with self._connection_provider() as conn:
            with conn.cursor(cursor_factory=RealDictCursor) as cur:
                cur.execute(
                    """
                    SELECT * FROM notification_send_attempts
                    WHERE updated_at >= %s
                    ORDER BY updated_at DESC
                    LIMIT %s
                    """,
                    (ensure_utc(since), limit),
                )
                rows = cur.fetchall()
        return [SendAttempt.model_validate(dict(row)) for row in rows]

    def delete_attempts_older_than(self, cutoff: datetime) -> int:
        return self._delete_before(
            "DELETE FROM notification_send_attempts WHERE updated_at < %s", cutoff
        )

    # ------------------------------------------------------------------
    # Deduplication log
    # ------------------------------------------------------------------

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
        with self._connection_provider() as conn:
            with conn.cursor(cursor_factory=RealDictCursor) as cur:
                cur.execute(
                    """
                    INSERT INTO notification_dedup_log (
                        entry_id,
                        content_hash,
                        recipient,
                        subject,
                        notification_type,
                        first_sent_at,
                        last_attempted_at,
                        attempt_count
                    ) VALUES (%s, %s, %s, %s, %s, %s, %s, 1)
                    ON CONFLICT (content_hash, first_sent_at) DO UPDATE SET
                        attempt_count = notification_dedup_log.attempt_count + 1,
                        last_attempted_at = GREATEST(
                            notification_dedup_log.last_attempted_at,
                            EXCLUDED.last_attempted_at
                        )
                    RETURNING *
                    """,
                    (
                        uuid4(),
                        content_hash,
                        recipient,
                        subject,
                        notification_type,
                        ensure_utc(first_sent_at),
                        ensure_utc(attempted_at),
                    ),
                )
                row = cur.fetchone()
                conn.commit()
        if row is None:
            raise RepositoryError("Deduplication log upsert returned no row")
        return DeduplicationLogEntry.model_validate(dict(row))

    def list_deduplication_logs(
        self, since: datetime, *, limit: int = 50
    ) -> list[DeduplicationLogEntry]:
        with self._connection_provider() as conn:
            with conn.cursor(cursor_factory=RealDictCursor) as cur:
                cur.execute(
                    """
                    SELECT * FROM notification_dedup_log
                    WHERE last_attempted_at >= %s
                    ORDER BY last_attempted_at DESC
                    LIMIT %s
                    """,
                    (ensure_utc(since), limit),
                )
                rows = cur.fetchall()
        return [DeduplicationLogEntry.model_validate(dict(row)) for row in rows]

    def delete_logs_older_than(self, cutoff: datetime) -> int:
        return self._delete_before(
            "DELETE FROM notification_dedup_log WHERE last_attempted_at < %s", cutoff
        )

    # ------------------------------------------------------------------
    # Reporting
    # ------------------------------------------------------------------

    def get_delivery_stats(self, since: datetime) -> DeliveryStats:
        since_value = ensure_utc(since)
        with self._connection_provider() as conn:
            with conn.cursor(cursor_factory=RealDictCursor) as cur:
                cur.execute(
                    """
                    SELECT
                        COUNT(*) FILTER (WHERE status = 'sent') AS total_sent,
                        COUNT(*) FILTER (WHERE status = 'failed') AS total_failed,
                        COALESCE(SUM(attempt_count - 1), 0) AS retry_attempts,
                        COUNT(DISTINCT recipient) AS unique_recipients
                    FROM notification_send_attempts
                    WHERE updated_at >= %s
                    """,
                    (since_value,),
                )
                ledger = cur.fetchone() or {}
                cur.execute(
                    """
                    SELECT COALESCE(SUM(attempt_count), 0) AS duplicates_prevented
                    FROM notification_dedup_log
                    WHERE last_attempted_at >= %s
                    """,
                    (since_value,),
                )
                duplicates = cur.fetchone() or {}

        return DeliveryStats(
            since=since_value,
            total_sent=int(ledger.get("total_sent") or 0),
            total_failed=int(ledger.get("total_failed") or 0),
            duplicates_prevented=int(duplicates.get("duplicates_prevented") or 0),
            retry_attempts=int(ledger.get("retry_attempts") or 0),
            unique_recipients=int(ledger.get("unique_recipients") or 0),
        )

    def _delete_before(self, statement: str, cutoff: datetime) -> int:
        with self._connection_provider() as conn:
            with conn.cursor() as cur:
                cur.execute(statement, (ensure_utc(cutoff),))
                deleted = max(cur.rowcount, 0)
                conn.commit()
        return deleted


__all__ = ["ConnectionProvider", "PostgresDeliveryStore"]
