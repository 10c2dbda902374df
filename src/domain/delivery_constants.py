"""Business rules and defaults for notification delivery and deduplication.

All suppression, retry and retention defaults live here so the settings layer,
the coordinator and the sweeper agree on them.
"""

from typing import Final

DEFAULT_DEDUP_WINDOW_MINUTES: Final[int] = 24 * 60
"""Length of the suppression window for an accepted notification.

Business rule: once a notification has been accepted for a recipient, an
identical notification (same fingerprint) is suppressed for 24 hours. A new
violation of the same type weeks later has a different fingerprint or falls
outside the window and is delivered normally.
"""

DEFAULT_MAX_RETRIES: Final[int] = 3
"""Maximum number of transport attempts for one logical send (first try included).

Example with max_retries=3:
    - attempt 1: timeout        -> retry scheduled
    - attempt 2: timeout        -> retry scheduled
    - attempt 3: timeout        -> FAILED, idempotency key released
"""

DEFAULT_RETRY_DELAY_MS: Final[int] = 1_000
"""Base delay before the first retry; doubled for each further retry."""

DEFAULT_MAX_RETRY_DELAY_MS: Final[int] = 30_000
"""Upper bound for a single backoff delay."""

DEFAULT_TIMEOUT_MS: Final[int] = 60_000
"""Upper bound for the whole logical send, retries and backoff included.

Must not exceed the suppression window, otherwise the held idempotency key
could expire while a retry loop is still running.
"""

DEFAULT_RETENTION_DAYS: Final[int] = 30
"""Send attempts and deduplication log rows older than this are pruned."""

DEFAULT_CLEANUP_INTERVAL_MINUTES: Final[int] = 24 * 60
"""Interval between scheduled cleanup sweeps."""

DEFAULT_LOG_LISTING_LIMIT: Final[int] = 50
DEFAULT_REPORT_WINDOW_HOURS: Final[int] = 24

RETRY_JITTER_RATIO: Final[float] = 0.25
"""Random jitter added to a backoff delay, as a fraction of the delay."""

KEY_SCOPE_RECIPIENT_CONTENT: Final[str] = "recipient_content"
KEY_SCOPE_RECIPIENT: Final[str] = "recipient"

MAX_IDEMPOTENCY_KEY_LENGTH: Final[int] = 255
"""Longest caller-supplied idempotency key the key and ledger columns can hold."""

MAX_NOTIFICATION_TYPE_LENGTH: Final[int] = 100

DEFAULT_DEDUP_PAYLOAD_FIELDS: Final[dict[str, list[str]]] = {
    "violation_notification": ["violation_id", "status"],
    "violation_approved": ["violation_id", "status"],
    "campaign": ["campaign_id", "recipient_id"],
    "system": ["user_id", "subject"],
}
"""Dedup-relevant payload fields per notification type.

Business rule: two notifications are "the same" when recipient, type and these
fields match. Timestamps, tracking ids and rendered text never participate.
"""

VOLATILE_PAYLOAD_FIELDS: Final[frozenset[str]] = frozenset(
    {
        "timestamp",
        "created_at",
        "updated_at",
        "sent_at",
        "requested_at",
        "request_id",
        "correlation_id",
        "tracking_id",
        "trace_id",
    }
)
"""Payload fields ignored when a notification type has no explicit field map."""
