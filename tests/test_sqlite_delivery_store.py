from __future__ import annotations

import sqlite3
import threading
from datetime import timedelta
from pathlib import Path
from uuid import uuid4

import pytest

from src.adapters.sqlite_repository import SQLiteRepository
from src.domain.exceptions import RepositoryError
from src.domain.models import SendAttempt, SendStatus
from src.ports.idempotency_store import IdempotencyStorePort
from tests.conftest import FIXED_NOW

WINDOW = timedelta(hours=24)


def test_repository_satisfies_store_port(repo: SQLiteRepository) -> None:
    assert isinstance(repo, IdempotencyStorePort)


def test_first_acquire_wins_and_second_sees_winner(repo: SQLiteRepository) -> None:
    first = repo.try_acquire("hash-1", WINDOW, now=FIXED_NOW)
    second = repo.try_acquire("hash-1", WINDOW, now=FIXED_NOW + timedelta(minutes=5))

    assert first.acquired
    assert first.holder_id is not None
    assert first.created_at == FIXED_NOW
    assert first.expires_at == FIXED_NOW + WINDOW

    assert not second.acquired
    assert second.holder_id is None
    assert second.created_at == FIXED_NOW
    assert second.expires_at == FIXED_NOW + WINDOW


def test_expired_key_can_be_reacquired(repo: SQLiteRepository) -> None:
    first = repo.try_acquire("hash-1", WINDOW, now=FIXED_NOW)
    later = FIXED_NOW + WINDOW + timedelta(seconds=1)

    second = repo.try_acquire("hash-1", WINDOW, now=later)

    assert second.acquired
    assert second.holder_id != first.holder_id
    assert second.created_at == later


def test_concurrent_acquires_have_exactly_one_winner(repo: SQLiteRepository) -> None:
    results = []
    barrier = threading.Barrier(8)
    lock = threading.Lock()

    def _worker() -> None:
        barrier.wait()
        outcome = repo.try_acquire("contended", WINDOW, now=FIXED_NOW)
        with lock:
            results.append(outcome)

    threads = [threading.Thread(target=_worker) for _ in range(8)]
    for thread in threads:
        thread.start()
    for thread in threads:
        thread.join()

    winners = [result for result in results if result.acquired]
    losers = [result for result in results if not result.acquired]
    assert len(winners) == 1
    assert len(losers) == 7
    assert {loser.expires_at for loser in losers} == {winners[0].expires_at}


def test_is_live_respects_expiry(repo: SQLiteRepository) -> None:
    repo.try_acquire("hash-1", WINDOW, now=FIXED_NOW)

    assert repo.is_live("hash-1", now=FIXED_NOW + timedelta(hours=1))
    assert not repo.is_live("hash-1", now=FIXED_NOW + WINDOW)
    assert not repo.is_live("missing", now=FIXED_NOW)


def test_release_only_deletes_own_acquisition(repo: SQLiteRepository) -> None:
    acquired = repo.try_acquire("hash-1", WINDOW, now=FIXED_NOW)
    assert acquired.holder_id is not None

    assert not repo.release("hash-1", "someone-else")
    assert repo.is_live("hash-1", now=FIXED_NOW)

    assert repo.release("hash-1", acquired.holder_id)
    assert not repo.is_live("hash-1", now=FIXED_NOW)
    assert repo.try_acquire("hash-1", WINDOW, now=FIXED_NOW).acquired


def test_expire_older_than_keeps_live_keys(repo: SQLiteRepository) -> None:
    repo.try_acquire("old", timedelta(hours=1), now=FIXED_NOW)
    repo.try_acquire("fresh", WINDOW, now=FIXED_NOW)

    deleted = repo.expire_older_than(FIXED_NOW + timedelta(hours=2))

    assert deleted == 1
    assert repo.is_live("fresh", now=FIXED_NOW + timedelta(hours=2))


def _attempt(**overrides: object) -> SendAttempt:
    defaults: dict[str, object] = {
        "idempotency_key": "hash-1",
        "recipient": "u@x.com",
        "subject": "Approved",
        "notification_type": "violation_approved",
        "created_at": FIXED_NOW,
        "updated_at": FIXED_NOW,
    }
    defaults.update(overrides)
    return SendAttempt(**defaults)


def test_attempt_lifecycle_mutates_single_row(repo: SQLiteRepository) -> None:
    attempt = repo.create_attempt(_attempt())

    retried = repo.record_retry(attempt.attempt_id, "TimeoutError: slow")
    assert retried.attempt_count == 2
    assert retried.status is SendStatus.QUEUED
    assert retried.error_message == "TimeoutError: slow"

    sent = repo.mark_sent(attempt.attempt_id)
    assert sent.status is SendStatus.SENT
    assert sent.error_message is None
    assert sent.attempt_count == 2

    stored = repo.get_attempt(attempt.attempt_id)
    assert stored is not None
    assert stored.status is SendStatus.SENT
    assert stored.created_at == FIXED_NOW


def test_mark_failed_records_error(repo: SQLiteRepository) -> None:
    attempt = repo.create_attempt(_attempt())

    failed = repo.mark_failed(attempt.attempt_id, "PermanentTransportError: bounced")

    assert failed.status is SendStatus.FAILED
    assert failed.error_message == "PermanentTransportError: bounced"


def test_attempt_updates_stamp_supplied_time(repo: SQLiteRepository) -> None:
    attempt = repo.create_attempt(_attempt())

    retried = repo.record_retry(
        attempt.attempt_id, "TimeoutError: slow", now=FIXED_NOW + timedelta(seconds=2)
    )
    sent = repo.mark_sent(attempt.attempt_id, now=FIXED_NOW + timedelta(seconds=5))

    assert retried.updated_at == FIXED_NOW + timedelta(seconds=2)
    assert sent.updated_at == FIXED_NOW + timedelta(seconds=5)
    assert [
        row.attempt_id
        for row in repo.list_send_attempts(FIXED_NOW + timedelta(seconds=5))
    ] == [attempt.attempt_id]


def test_update_unknown_attempt_raises(repo: SQLiteRepository) -> None:
    with pytest.raises(RepositoryError):
        repo.record_retry(uuid4(), "boom")

    assert repo.get_attempt(uuid4()) is None


def test_record_duplicate_upserts_per_episode(repo: SQLiteRepository) -> None:
    kwargs = {
        "content_hash": "hash-1",
        "recipient": "u@x.com",
        "subject": "Approved",
        "notification_type": "violation_approved",
        "first_sent_at": FIXED_NOW,
    }

    first = repo.record_duplicate(**kwargs, attempted_at=FIXED_NOW + timedelta(minutes=1))
    second = repo.record_duplicate(**kwargs, attempted_at=FIXED_NOW + timedelta(minutes=3))

    assert first.entry_id == second.entry_id
    assert second.attempt_count == 2
    assert second.last_attempted_at == FIXED_NOW + timedelta(minutes=3)

    next_episode = repo.record_duplicate(
        **{**kwargs, "first_sent_at": FIXED_NOW + timedelta(days=2)},
        attempted_at=FIXED_NOW + timedelta(days=2, minutes=1),
    )
    assert next_episode.entry_id != first.entry_id
    assert next_episode.attempt_count == 1


def test_listings_are_newest_first_and_limited(repo: SQLiteRepository) -> None:
    for minutes in range(3):
        repo.record_duplicate(
            content_hash=f"hash-{minutes}",
            recipient="u@x.com",
            subject="Approved",
            notification_type="violation_approved",
            first_sent_at=FIXED_NOW,
            attempted_at=FIXED_NOW + timedelta(minutes=minutes),
        )

    entries = repo.list_deduplication_logs(FIXED_NOW - timedelta(hours=1), limit=2)

    assert [entry.content_hash for entry in entries] == ["hash-2", "hash-1"]
    assert repo.list_deduplication_logs(FIXED_NOW + timedelta(hours=1)) == []


def test_schema_is_recreated_after_drop(tmp_path: Path) -> None:
    db_path = tmp_path / "delivery.db"
    repository = SQLiteRepository(str(db_path))

    conn = sqlite3.connect(str(db_path))
    try:
        conn.execute("DROP TABLE notification_dedup_log")
        conn.commit()
    finally:
        conn.close()

    repository._create_schema()

    conn = sqlite3.connect(str(db_path))
    try:
        assert conn.execute(
            "SELECT name FROM sqlite_master WHERE name='notification_dedup_log'"
        ).fetchone()
    finally:
        conn.close()


def test_invalid_busy_timeout_rejected(tmp_path: Path) -> None:
    with pytest.raises(RepositoryError):
        SQLiteRepository(str(tmp_path / "x.db"), busy_timeout_seconds=0)
