"""SQLite repository adapter for local storage.

Implements DeliveryRepositoryProtocol with a SQLite backend. Timestamps are
stored as fixed-width UTC ISO strings so that lexical comparison in SQL matches
chronological order.
"""

import sqlite3
from datetime import datetime, timedelta
from pathlib import Path
from typing import Final
from uuid import UUID, uuid4

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

KEYS_TABLE: Final[str] = "notification_idempotency_keys"
ATTEMPTS_TABLE: Final[str] = "notification_send_attempts"
DEDUP_LOG_TABLE: Final[str] = "notification_dedup_log"

_TIMESTAMP_FORMAT: Final[str] = "%Y-%m-%dT%H:%M:%S.%f+00:00"
DEFAULT_BUSY_TIMEOUT_SECONDS: Final[float] = 30.0


def _to_db(value: datetime) -> str:
    return ensure_utc(value).strftime(_TIMESTAMP_FORMAT)


def _from_db(value: str) -> datetime:
    return ensure_utc(datetime.fromisoformat(value))


class SQLiteRepository:
    """SQLite-based delivery repository.

    Every public method opens its own connection, so one instance can be shared
    between threads. Concurrent acquires are serialized by ``BEGIN IMMEDIATE``.
    """

    def __init__(
        self,
        db_path: str,
        *,
        busy_timeout_seconds: float = DEFAULT_BUSY_TIMEOUT_SECONDS,
    ) -> None:
        """Initialize repository and ensure schema.

        Args:
            db_path: Path to SQLite database file
            busy_timeout_seconds: How long a writer waits for the database lock
        """
        self.db_path = db_path
        if busy_timeout_seconds <= 0:
            raise RepositoryError("busy_timeout_seconds must be positive")
        self._busy_timeout = busy_timeout_seconds

        Path(db_path).parent.mkdir(parents=True, exist_ok=True)

        self._create_schema()

    def _get_connection(self) -> sqlite3.Connection:
        """Get database connection in autocommit mode.

        Returns:
            SQLite connection
        """
        conn = sqlite3.connect(
            self.db_path, timeout=self._busy_timeout, isolation_level=None
        )
        conn.row_factory = sqlite3.Row
        return conn

    def _create_schema(self) -> None:
        """Create database schema if not exists."""
        logger.info("sqlite_schema_creation_started", db_path=str(self.db_path))
        try:
            conn = self._get_connection()
        except sqlite3.Error as e:
            raise RepositoryError(f"Failed to open database: {e}") from e
        try:
            conn.execute("PRAGMA journal_mode=WAL")
            conn.executescript(
                f"""
                CREATE TABLE IF NOT EXISTS {KEYS_TABLE} (
                    key TEXT PRIMARY KEY,
                    holder_id TEXT NOT NULL,
                    created_at TEXT NOT NULL,
                    expires_at TEXT NOT NULL
                );
                CREATE INDEX IF NOT EXISTS idx_idempotency_keys_expires_at
                    ON {KEYS_TABLE}(expires_at);

                CREATE TABLE IF NOT EXISTS {ATTEMPTS_TABLE} (
                    attempt_id TEXT PRIMARY KEY,
                    idempotency_key TEXT NOT NULL,
                    recipient TEXT NOT NULL,
                    subject TEXT NOT NULL,
                    notification_type TEXT NOT NULL DEFAULT '',
                    status TEXT NOT NULL
                        CHECK (status IN ('queued', 'sent', 'failed')),
                    error_message TEXT,
                    attempt_count INTEGER NOT NULL DEFAULT 1,
                    created_at TEXT NOT NULL,
                    updated_at TEXT NOT NULL
                );
                CREATE INDEX IF NOT EXISTS idx_send_attempts_key
                    ON {ATTEMPTS_TABLE}(idempotency_key);
                CREATE INDEX IF NOT EXISTS idx_send_attempts_updated_at
                    ON {ATTEMPTS_TABLE}(updated_at);

                CREATE TABLE IF NOT EXISTS {DEDUP_LOG_TABLE} (
                    entry_id TEXT PRIMARY KEY,
                    content_hash TEXT NOT NULL,
                    recipient TEXT NOT NULL,
                    subject TEXT NOT NULL,
                    notification_type TEXT NOT NULL DEFAULT '',
                    first_sent_at TEXT NOT NULL,
                    last_attempted_at TEXT NOT NULL,
                    attempt_count INTEGER NOT NULL DEFAULT 1,
                    UNIQUE (content_hash, first_sent_at)
                );
                CREATE INDEX IF NOT EXISTS idx_dedup_log_last_attempted_at
                    ON {DEDUP_LOG_TABLE}(last_attempted_at);
                """
            )
        except sqlite3.Error as e:
            raise RepositoryError(f"Failed to create schema: {e}") from e
        finally:
            conn.close()
        logger.info("sqlite_schema_creation_completed", db_path=str(self.db_path))

    # ------------------------------------------------------------------
    # Idempotency store
    # ------------------------------------------------------------------

    def try_acquire(
        self, key: str, window: timedelta, *, now: datetime | None = None
    ) -> AcquireResult:
        """Claim ``key`` unless a live row exists.

        The insert and the takeover of an expired row are a single
        ``INSERT ... ON CONFLICT DO UPDATE ... WHERE expires_at <= now``.
        """
        current = ensure_utc(now or utc_now())
        holder_id = uuid4().hex
        created_at = _to_db(current)
        expires_at = _to_db(current + window)

        try:
            conn = self._get_connection()
        except sqlite3.Error as e:
            raise RepositoryError(f"Failed to acquire idempotency key: {e}") from e
        try:
            conn.execute("BEGIN IMMEDIATE")
            cursor = conn.execute(
                f"""
                INSERT INTO {KEYS_TABLE} (key, holder_id, created_at, expires_at)
                VALUES (?, ?, ?, ?)
                ON CONFLICT(key) DO UPDATE SET
                    holder_id = excluded.holder_id,
                    created_at = excluded.created_at,
                    expires_at = excluded.expires_at
                WHERE {KEYS_TABLE}.expires_at <= excluded.created_at
                """,
                (key, holder_id, created_at, expires_at),
            )
            acquired = cursor.rowcount == 1
            if acquired:
                conn.execute("COMMIT")
                return AcquireResult(
                    key=key,
                    acquired=True,
                    holder_id=holder_id,
                    created_at=_from_db(created_at),
                    expires_at=_from_db(expires_at),
                )

            row = conn.execute(
                f"SELECT created_at, expires_at FROM {KEYS_TABLE} WHERE key = ?",
                (key,),
            ).fetchone()
            conn.execute("COMMIT")
        except sqlite3.Error as e:
            if conn.in_transaction:
                conn.execute("ROLLBACK")
            raise RepositoryError(f"Failed to acquire idempotency key: {e}") from e
        finally:
            conn.close()

        return AcquireResult(
            key=key,
            acquired=False,
            created_at=_from_db(row["created_at"]) if row else None,
            expires_at=_from_db(row["expires_at"]) if row else None,
        )

    def is_live(self, key: str, *, now: datetime | None = None) -> bool:
        current = _to_db(now or utc_now())
        try:
            conn = self._get_connection()
            try:
                row = conn.execute(
                    f"SELECT 1 FROM {KEYS_TABLE} WHERE key = ? AND expires_at > ?",
                    (key, current),
                ).fetchone()
            finally:
                conn.close()
        except sqlite3.Error as e:
            raise RepositoryError(f"Failed to read idempotency key: {e}") from e
        return row is not None

    def release(self, key: str, holder_id: str) -> bool:
        """Delete the caller's own acquisition; a newer holder is left intact."""
        try:
            conn = self._get_connection()
            try:
                cursor = conn.execute(
                    f"DELETE FROM {KEYS_TABLE} WHERE key = ? AND holder_id = ?",
                    (key, holder_id),
                )
                released = cursor.rowcount > 0
            finally:
                conn.close()
        except sqlite3.Error as e:
            raise RepositoryError(f"Failed to release idempotency key: {e}") from e
        return released

    def expire_older_than(self, cutoff: datetime) -> int:
        return self._delete_before(KEYS_TABLE, "expires_at", cutoff)

    # ------------------------------------------------------------------
    # Send attempt ledger
    # ------------------------------------------------------------------

    def create_attempt(self, attempt: SendAttempt) -> SendAttempt:
        try:
            conn = self._get_connection()
            try:
                conn.execute(
                    f"""
                    INSERT INTO {ATTEMPTS_TABLE} (
                        attempt_id, idempotency_key, recipient, subject,
                        notification_type, status, error_message, attempt_count,
                        created_at, updated_at
                    ) VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?)
                    """,
                    (
                        str(attempt.attempt_id),
                        attempt.idempotency_key,
                        attempt.recipient,
                        attempt.subject,
                        attempt.notification_type,
                        attempt.status.value,
                        attempt.error_message,
                        attempt.attempt_count,
                        _to_db(attempt.created_at),
                        _to_db(attempt.updated_at),
                    ),
                )
            finally:
                conn.close()
        except sqlite3.Error as e:
            raise RepositoryError(f"Failed to create send attempt: {e}") from e
        return attempt

    def record_retry(
        self, attempt_id: UUID, error_message: str, *, now: datetime | None = None
    ) -> SendAttempt:
        return self._update_attempt(
            attempt_id,
            "attempt_count = attempt_count + 1, error_message = ?, status = ?",
            (error_message, SendStatus.QUEUED.value),
            now,
        )

    def mark_sent(
        self, attempt_id: UUID, *, now: datetime | None = None
    ) -> SendAttempt:
        return self._update_attempt(
            attempt_id,
            "status = ?, error_message = NULL",
            (SendStatus.SENT.value,),
            now,
        )

    def mark_failed(
        self, attempt_id: UUID, error_message: str, *, now: datetime | None = None
    ) -> SendAttempt:
        return self._update_attempt(
            attempt_id,
            "status = ?, error_message = ?",
            (SendStatus.FAILED.value, error_message),
            now,
        )

    def _update_attempt(
        self,
        attempt_id: UUID,
        assignments: str,
        params: tuple[object, ...],
        now: datetime | None,
    ) -> SendAttempt:
        try:
            conn = self._get_connection()
            try:
                conn.execute("BEGIN IMMEDIATE")
                cursor = conn.execute(
                    f"""
                    UPDATE {ATTEMPTS_TABLE}
                    SET {assignments}, updated_at = ?
                    WHERE attempt_id = ?
                    """,
                    (*params, _to_db(now or utc_now()), str(attempt_id)),
                )
                if cursor.rowcount == 0:
                    conn.execute("ROLLBACK")
                    raise RepositoryError(f"Unknown send attempt: {attempt_id}")
                row = conn.execute(
                    f"SELECT * FROM {ATTEMPTS_TABLE} WHERE attempt_id = ?",
                    (str(attempt_id),),
                ).fetchone()
                conn.execute("COMMIT")
            except sqlite3.Error:
                if conn.in_transaction:
                    conn.execute("ROLLBACK")
                raise
            finally:
                conn.close()
        except sqlite3.Error as e:
            raise RepositoryError(f"Failed to update send attempt: {e}") from e
        return self._row_to_attempt(row)

    def get_attempt(self, attempt_id: UUID) -> SendAttempt | None:
        try:
            conn = self._get_connection()
            try:
                row = conn.execute(
                    f"SELECT * FROM {ATTEMPTS_TABLE} WHERE attempt_id = ?",
                    (str(attempt_id),),
                ).fetchone()
            finally:
                conn.close()
        except sqlite3.Error as e:
            raise RepositoryError(f"Failed to get send attempt: {e}") from e
        return self._row_to_attempt(row) if row else None

    def list_send_attempts(
        self, since: datetime, *, limit: int = 50
    ) -> list[SendAttempt]:
        try:
            conn = self._get_connection()
            try:
                rows = conn.execute(
                    f"""
                    SELECT * FROM {ATTEMPTS_TABLE}
                    WHERE updated_at >= ?
                    ORDER BY updated_at DESC
                    LIMIT ?
                    """,
                    (_to_db(since), limit),
                ).fetchall()
            finally:
                conn.close()
        except sqlite3.Error as e:
            raise RepositoryError(f"Failed to list send attempts: {e}") from e
        return [self._row_to_attempt(row) for row in rows]

    def delete_attempts_older_than(self, cutoff: datetime) -> int:
        return self._delete_before(ATTEMPTS_TABLE, "updated_at", cutoff)

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
        """Upsert the log entry for the suppression episode of ``first_sent_at``."""
        first_sent = _to_db(first_sent_at)
        try:
            conn = self._get_connection()
            try:
                conn.execute("BEGIN IMMEDIATE")
                conn.execute(
                    f"""
                    INSERT INTO {DEDUP_LOG_TABLE} (
                        entry_id, content_hash, recipient, subject,
                        notification_type, first_sent_at, last_attempted_at,
                        attempt_count
                    ) VALUES (?, ?, ?, ?, ?, ?, ?, 1)
                    ON CONFLICT(content_hash, first_sent_at) DO UPDATE SET
                        attempt_count = {DEDUP_LOG_TABLE}.attempt_count + 1,
                        last_attempted_at = MAX(
                            {DEDUP_LOG_TABLE}.last_attempted_at,
                            excluded.last_attempted_at
                        )
                    """,
                    (
                        str(uuid4()),
                        content_hash,
                        recipient,
                        subject,
                        notification_type,
                        first_sent,
                        _to_db(attempted_at),
                    ),
                )
                row = conn.execute(
                    f"""
                    SELECT * FROM {DEDUP_LOG_TABLE}
                    WHERE content_hash = ? AND first_sent_at = ?
                    """,
                    (content_hash, first_sent),
                ).fetchone()
                conn.execute("COMMIT")
            except sqlite3.Error:
                if conn.in_transaction:
                    conn.execute("ROLLBACK")
                raise
            finally:
                conn.close()
        except sqlite3.Error as e:
            raise RepositoryError(f"Failed to record duplicate: {e}") from e
        return self._row_to_log_entry(row)

    def list_deduplication_logs(
        self, since: datetime, *, limit: int = 50
    ) -> list[DeduplicationLogEntry]:
        try:
            conn = self._get_connection()
            try:
                rows = conn.execute(
                    f"""
                    SELECT * FROM {DEDUP_LOG_TABLE}
                    WHERE last_attempted_at >= ?
                    ORDER BY last_attempted_at DESC
                    LIMIT ?
                    """,
                    (_to_db(since), limit),
                ).fetchall()
            finally:
                conn.close()
        except sqlite3.Error as e:
            raise RepositoryError(f"Failed to list deduplication logs: {e}") from e
        return [self._row_to_log_entry(row) for row in rows]

    def delete_logs_older_than(self, cutoff: datetime) -> int:
        return self._delete_before(DEDUP_LOG_TABLE, "last_attempted_at", cutoff)

    # ------------------------------------------------------------------
    # Reporting
    # ------------------------------------------------------------------

    def get_delivery_stats(self, since: datetime) -> DeliveryStats:
        """Aggregate statistics for rows touched since ``since``.

        Each logical send is one ledger row, so retries never inflate
        ``total_sent``; they are reported as ``retry_attempts`` instead.
        """
        since_value = _to_db(since)
        try:
            conn = self._get_connection()
            try:
                ledger = conn.execute(
                    f"""
                    SELECT
                        COALESCE(SUM(CASE WHEN status = 'sent' THEN 1 ELSE 0 END), 0)
                            AS total_sent,
                        COALESCE(SUM(CASE WHEN status = 'failed' THEN 1 ELSE 0 END), 0)
                            AS total_failed,
                        COALESCE(SUM(attempt_count - 1), 0) AS retry_attempts,
                        COUNT(DISTINCT recipient) AS unique_recipients
                    FROM {ATTEMPTS_TABLE}
                    WHERE updated_at >= ?
                    """,
                    (since_value,),
                ).fetchone()
                duplicates = conn.execute(
                    f"""
                    SELECT COALESCE(SUM(attempt_count), 0) AS duplicates_prevented
                    FROM {DEDUP_LOG_TABLE}
                    WHERE last_attempted_at >= ?
                    """,
                    (since_value,),
                ).fetchone()
            finally:
                conn.close()
        except sqlite3.Error as e:
            raise RepositoryError(f"Failed to get delivery stats: {e}") from e

        return DeliveryStats(
            since=ensure_utc(since),
            total_sent=int(ledger["total_sent"]),
            total_failed=int(ledger["total_failed"]),
            duplicates_prevented=int(duplicates["duplicates_prevented"]),
            retry_attempts=int(ledger["retry_attempts"]),
            unique_recipients=int(ledger["unique_recipients"]),
        )

    def close(self) -> None:
        """Connections are per-call; nothing to release."""

    # ------------------------------------------------------------------
    # Helpers
    # ------------------------------------------------------------------

    def _delete_before(self, table: str, column: str, cutoff: datetime) -> int:
        try:
            conn = self._get_connection()
            try:
                cursor = conn.execute(
                    f"DELETE FROM {table} WHERE {column} < ?", (_to_db(cutoff),)
                )
                deleted = max(cursor.rowcount, 0)
            finally:
                conn.close()
        except sqlite3.Error as e:
            raise RepositoryError(f"Failed to prune {table}: {e}") from e
        return deleted

    @staticmethod
    def _row_to_attempt(row: sqlite3.Row) -> SendAttempt:
        return SendAttempt(
            attempt_id=UUID(row["attempt_id"]),
            idempotency_key=row["idempotency_key"],
            recipient=row["recipient"],
            subject=row["subject"],
            notification_type=row["notification_type"] or "",
            status=SendStatus(row["status"]),
            error_message=row["error_message"],
            attempt_count=int(row["attempt_count"]),
            created_at=_from_db(row["created_at"]),
            updated_at=_from_db(row["updated_at"]),
        )

    @staticmethod
    def _row_to_log_entry(row: sqlite3.Row) -> DeduplicationLogEntry:
        return DeduplicationLogEntry(
            entry_id=UUID(row["entry_id"]),
            content_hash=row["content_hash"],
            recipient=row["recipient"],
            subject=row["subject"],
            notification_type=row["notification_type"] or "",
            first_sent_at=_from_db(row["first_sent_at"]),
            last_attempted_at=_from_db(row["last_attempted_at"]),
            attempt_count=int(row["attempt_count"]),
        )
