from __future__ import annotations

from datetime import UTC, datetime, timedelta
from typing import Any

import pytest

from src.domain.exceptions import ValidationError
from src.domain.models import RetentionPolicy, SendAttempt
from src.use_cases.cleanup_sweeper import next_sweep_at, sweep
from tests.conftest import FIXED_NOW, FakeClock, ScriptedTransport, make_request

POLICY = RetentionPolicy(retention_days=30)


def _seed(repo: Any) -> None:
    repo.try_acquire("expired", timedelta(hours=1), now=FIXED_NOW - timedelta(hours=2))
    repo.try_acquire("live", timedelta(hours=24), now=FIXED_NOW)
    repo.create_attempt(
        SendAttempt(
            idempotency_key="expired",
            recipient="old@x.com",
            subject="Old",
            created_at=FIXED_NOW - timedelta(days=40),
            updated_at=FIXED_NOW - timedelta(days=40),
        )
    )
    repo.create_attempt(
        SendAttempt(
            idempotency_key="live",
            recipient="new@x.com",
            subject="New",
            created_at=FIXED_NOW,
            updated_at=FIXED_NOW,
        )
    )
    repo.record_duplicate(
        content_hash="expired",
        recipient="old@x.com",
        subject="Old",
        notification_type="system",
        first_sent_at=FIXED_NOW - timedelta(days=40),
        attempted_at=FIXED_NOW - timedelta(days=40),
    )
    repo.record_duplicate(
        content_hash="live",
        recipient="new@x.com",
        subject="New",
        notification_type="system",
        first_sent_at=FIXED_NOW,
        attempted_at=FIXED_NOW,
    )


def test_sweep_deletes_only_expired_rows(repo: Any) -> None:
    _seed(repo)

    result = sweep(repo, POLICY, now=FIXED_NOW)

    assert result.deleted_keys == 1
    assert result.deleted_attempts == 1
    assert result.deleted_logs == 1
    assert result.total_deleted == 3
    assert result.swept_at == FIXED_NOW
    assert repo.is_live("live", now=FIXED_NOW)
    remaining = repo.list_send_attempts(FIXED_NOW - timedelta(days=365))
    assert [attempt.recipient for attempt in remaining] == ["new@x.com"]


def test_second_sweep_is_a_no_op(repo: Any) -> None:
    _seed(repo)
    sweep(repo, POLICY, now=FIXED_NOW)

    again = sweep(repo, POLICY, now=FIXED_NOW)

    assert again.deleted_keys == 0
    assert again.total_deleted == 0


def test_sweep_uses_retention_cutoff(mock_repository: Any) -> None:
    sweep(mock_repository, RetentionPolicy(retention_days=7), now=FIXED_NOW)

    mock_repository.expire_older_than.assert_called_once_with(FIXED_NOW)
    mock_repository.delete_attempts_older_than.assert_called_once_with(
        FIXED_NOW - timedelta(days=7)
    )
    mock_repository.delete_logs_older_than.assert_called_once_with(
        FIXED_NOW - timedelta(days=7)
    )


def test_next_sweep_interval_mode() -> None:
    assert next_sweep_at(FIXED_NOW, interval_minutes=90) == FIXED_NOW + timedelta(
        minutes=90
    )


def test_next_sweep_daily_hour_same_day_and_next_day() -> None:
    early = datetime(2026, 1, 15, 1, 0, tzinfo=UTC)
    late = datetime(2026, 1, 15, 3, 0, tzinfo=UTC)

    assert next_sweep_at(early, interval_minutes=1440, run_at_hour=2) == datetime(
        2026, 1, 15, 2, 0, tzinfo=UTC
    )
    assert next_sweep_at(late, interval_minutes=1440, run_at_hour=2) == datetime(
        2026, 1, 16, 2, 0, tzinfo=UTC
    )


def test_next_sweep_respects_timezone() -> None:
    now = datetime(2026, 1, 15, 0, 30, tzinfo=UTC)

    next_run = next_sweep_at(
        now, interval_minutes=1440, run_at_hour=2, timezone="Europe/Berlin"
    )

    assert next_run == datetime(2026, 1, 15, 1, 0, tzinfo=UTC)


def test_next_sweep_unknown_timezone() -> None:
    with pytest.raises(ValidationError):
        next_sweep_at(FIXED_NOW, interval_minutes=1, run_at_hour=2, timezone="Mars/Base")


@pytest.mark.parametrize(
    ("age_days", "expected_deleted"),
    [(29, 0), (31, 1)],
)
def test_retention_follows_delivery_clock(
    make_coordinator: Any,
    repo: Any,
    clock: FakeClock,
    age_days: int,
    expected_deleted: int,
) -> None:
    coordinator = make_coordinator(ScriptedTransport())
    delivered = coordinator.deliver(make_request())
    stored = repo.get_attempt(delivered.attempt_id)
    assert stored.updated_at == clock()

    result = sweep(repo, POLICY, now=clock() + timedelta(days=age_days))

    assert result.deleted_attempts == expected_deleted
