"""Retention sweep for idempotency keys, send attempts and dedup logs.

Deletes only rows that no live request can depend on:
- idempotency keys whose ``expires_at`` has passed
- send attempts last updated before the retention cutoff
- dedup log entries last attempted before the retention cutoff

Each delete is a single statement, so the sweep is safe alongside live
traffic and idempotent when re-run.
"""

from datetime import UTC, datetime, time, timedelta

import pytz

from src.config.logging_config import get_logger
from src.domain.exceptions import ValidationError
from src.domain.models import RetentionPolicy, SweepResult, ensure_utc, utc_now
from src.domain.protocols import DeliveryRepositoryProtocol
from src.observability.metrics import CLEANUP_DELETED_ROWS_TOTAL

logger = get_logger(__name__)


def sweep(
    repository: DeliveryRepositoryProtocol,
    retention_policy: RetentionPolicy,
    *,
    now: datetime | None = None,
) -> SweepResult:
    """Run one cleanup sweep.

    Args:
        repository: Delivery repository to prune
        retention_policy: Horizon for ledger and dedup log rows
        now: Reference time (defaults to the current UTC time)

    Returns:
        Counts of deleted rows per table

    Raises:
        RepositoryError: On storage errors
    """
    current = ensure_utc(now or utc_now())
    cutoff = retention_policy.cutoff(current)

    logger.info(
        "cleanup_sweep_started",
        retention_days=retention_policy.retention_days,
        cutoff=cutoff.isoformat(),
    )

    deleted_keys = repository.expire_older_than(current)
    deleted_attempts = repository.delete_attempts_older_than(cutoff)
    deleted_logs = repository.delete_logs_older_than(cutoff)

    CLEANUP_DELETED_ROWS_TOTAL.labels(table="idempotency_keys").inc(deleted_keys)
    CLEANUP_DELETED_ROWS_TOTAL.labels(table="send_attempts").inc(deleted_attempts)
    CLEANUP_DELETED_ROWS_TOTAL.labels(table="dedup_log").inc(deleted_logs)

    result = SweepResult(
        deleted_keys=deleted_keys,
        deleted_attempts=deleted_attempts,
        deleted_logs=deleted_logs,
        swept_at=current,
    )
    logger.info(
        "cleanup_sweep_completed",
        deleted_keys=deleted_keys,
        deleted_attempts=deleted_attempts,
        deleted_logs=deleted_logs,
        total_deleted=result.total_deleted,
    )
    return result


def next_sweep_at(
    now: datetime,
    *,
    interval_minutes: int,
    run_at_hour: int | None = None,
    timezone: str = "UTC",
) -> datetime:
    """When the scheduled sweep should run next.

    With ``run_at_hour`` the sweep runs daily at that local hour in
    ``timezone`` (e.g. 02:00); otherwise every ``interval_minutes``.

    Raises:
        ValidationError: If the timezone is unknown
    """
    current = ensure_utc(now)
    if run_at_hour is None:
        return current + timedelta(minutes=interval_minutes)

    try:
        tz = pytz.timezone(timezone)
    except pytz.UnknownTimeZoneError as exc:
        raise ValidationError(f"Unknown cleanup timezone: {timezone}") from exc

    local_now = current.astimezone(tz)
    candidate_date = local_now.date()
    while True:
        naive = datetime.combine(candidate_date, time(hour=run_at_hour))
        candidate = tz.normalize(tz.localize(naive))
        if candidate > local_now:
            return candidate.astimezone(UTC)
        candidate_date += timedelta(days=1)


__all__ = ["next_sweep_at", "sweep"]
