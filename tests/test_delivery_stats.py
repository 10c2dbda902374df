from __future__ import annotations

from collections.abc import Callable
from datetime import timedelta
from typing import Any

import pytest

from src.domain.exceptions import PermanentTransportError, ValidationError
from src.use_cases.delivery_stats import (
    list_deduplication_logs,
    list_send_attempts,
    stats,
    window_start,
)
from tests.conftest import FIXED_NOW, FakeClock, ScriptedTransport, make_request


def test_stats_count_each_logical_send_once(
    make_coordinator: Callable[..., Any], repo: Any, clock: FakeClock
) -> None:
    coordinator = make_coordinator(
        ScriptedTransport(
            [
                True,
                TimeoutError("slow"),
                True,
                PermanentTransportError("bounced"),
            ]
        )
    )

    coordinator.deliver(make_request(recipient="a@x.com"))
    coordinator.deliver(make_request(recipient="a@x.com"))
    coordinator.deliver(make_request(recipient="a@x.com"))
    coordinator.deliver(make_request(recipient="b@x.com"))
    coordinator.deliver(make_request(recipient="c@x.com"))

    report = stats(repo, clock() - timedelta(hours=24))

    assert report.total_sent == 2
    assert report.total_failed == 1
    assert report.retry_attempts == 1
    assert report.duplicates_prevented == 2
    assert report.unique_recipients == 3
    terminal_rows = [
        attempt
        for attempt in list_send_attempts(repo, clock() - timedelta(hours=24))
        if attempt.status.value in {"sent", "failed"}
    ]
    assert report.total_sent + report.total_failed == len(terminal_rows)


def test_empty_store_reports_zeroes(repo: Any) -> None:
    report = stats(repo, FIXED_NOW - timedelta(hours=24))

    assert report.total_sent == 0
    assert report.total_failed == 0
    assert report.duplicates_prevented == 0
    assert report.retry_attempts == 0
    assert report.unique_recipients == 0


def test_listings_default_to_window(mock_repository: Any) -> None:
    list_deduplication_logs(mock_repository, hours=6, limit=10)
    list_send_attempts(mock_repository, hours=6)

    (since,) = mock_repository.list_deduplication_logs.call_args.args
    assert mock_repository.list_deduplication_logs.call_args.kwargs == {"limit": 10}
    assert mock_repository.list_send_attempts.call_args.kwargs == {"limit": 50}
    assert abs((window_start(6) - since).total_seconds()) < 60


def test_invalid_window_and_limit_rejected(mock_repository: Any) -> None:
    with pytest.raises(ValidationError):
        window_start(0)
    with pytest.raises(ValidationError):
        list_deduplication_logs(mock_repository, limit=0)
