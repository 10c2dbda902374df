"""Read-side queries for the reporting collaborator."""

from datetime import datetime, timedelta

from src.config.logging_config import get_logger
from src.domain.delivery_constants import (
    DEFAULT_LOG_LISTING_LIMIT,
    DEFAULT_REPORT_WINDOW_HOURS,
)
from src.domain.exceptions import ValidationError
from src.domain.models import (
    DeduplicationLogEntry,
    DeliveryStats,
    SendAttempt,
    ensure_utc,
    utc_now,
)
from src.domain.protocols import DeliveryRepositoryProtocol

logger = get_logger(__name__)


def window_start(
    hours: int = DEFAULT_REPORT_WINDOW_HOURS, *, now: datetime | None = None
) -> datetime:
    """Start of a look-back window of ``hours`` ending at ``now``.

    Raises:
        ValidationError: If ``hours`` is not positive
    """
    if hours <= 0:
        raise ValidationError("hours must be positive")
    return ensure_utc(now or utc_now()) - timedelta(hours=hours)


def _check_limit(limit: int) -> None:
    if limit <= 0:
        raise ValidationError("limit must be positive")


def stats(
    repository: DeliveryRepositoryProtocol,
    since: datetime | None = None,
    *,
    hours: int = DEFAULT_REPORT_WINDOW_HOURS,
) -> DeliveryStats:
    """Delivery statistics for rows updated since ``since``.

    When ``since`` is omitted the window is the last ``hours`` hours.
    """
    start = ensure_utc(since) if since is not None else window_start(hours)
    result = repository.get_delivery_stats(start)
    logger.debug(
        "delivery_stats_computed",
        since=start.isoformat(),
        total_sent=result.total_sent,
        total_failed=result.total_failed,
        duplicates_prevented=result.duplicates_prevented,
    )
    return result


def list_deduplication_logs(
    repository: DeliveryRepositoryProtocol,
    since: datetime | None = None,
    *,
    hours: int = DEFAULT_REPORT_WINDOW_HOURS,
    limit: int = DEFAULT_LOG_LISTING_LIMIT,
) -> list[DeduplicationLogEntry]:
    """Most recently touched dedup log entries, newest first."""
    _check_limit(limit)
    start = ensure_utc(since) if since is not None else window_start(hours)
    return repository.list_deduplication_logs(start, limit=limit)


def list_send_attempts(
    repository: DeliveryRepositoryProtocol,
    since: datetime | None = None,
    *,
    hours: int = DEFAULT_REPORT_WINDOW_HOURS,
    limit: int = DEFAULT_LOG_LISTING_LIMIT,
) -> list[SendAttempt]:
    _check_limit(limit)
    start = ensure_utc(since) if since is not None else window_start(hours)
    return repository.list_send_attempts(start, limit=limit)


__all__ = [
    "list_deduplication_logs",
    "list_send_attempts",
    "stats",
    "window_start",
]
