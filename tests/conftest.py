"""Pytest configuration and shared fixtures."""

from __future__ import annotations

import os
import threading
from collections.abc import Callable, Generator, Iterable
from datetime import UTC, datetime, timedelta
from pathlib import Path
from typing import Any
from unittest.mock import Mock

import pytest

from src.adapters.repository_factory import create_repository
from src.config.settings import Settings
from src.domain.models import NotificationRequest
from src.domain.protocols import DeliveryRepositoryProtocol
from src.use_cases.deliver_notification import DeliveryCoordinator

FIXED_NOW = datetime(2026, 1, 15, 9, 30, tzinfo=UTC)


class FakeClock:
    """Deterministic clock; ``sleep`` advances it instead of blocking."""

    def __init__(self, start: datetime = FIXED_NOW) -> None:
        self.now = start
        self.sleeps: list[float] = []
        self._lock = threading.Lock()

    def __call__(self) -> datetime:
        with self._lock:
            return self.now

    def advance(self, **kwargs: float) -> None:
        with self._lock:
            self.now = self.now + timedelta(**kwargs)

    def sleep(self, seconds: float) -> None:
        self.sleeps.append(seconds)
        self.advance(seconds=seconds)


class ScriptedTransport:
    """Transport that replays a script of outcomes, then succeeds.

    Each script item is either an exception instance (raised) or a value
    (returned).
    """

    def __init__(self, outcomes: Iterable[Any] = ()) -> None:
        self._outcomes = list(outcomes)
        self.calls: list[tuple[str, str, str]] = []
        self._lock = threading.Lock()

    def send(self, recipient: str, subject: str, body: str) -> object:
        with self._lock:
            self.calls.append((recipient, subject, body))
            outcome = self._outcomes.pop(0) if self._outcomes else True
        if isinstance(outcome, BaseException):
            raise outcome
        return outcome


@pytest.fixture
def settings(
    tmp_path_factory: pytest.TempPathFactory, request: pytest.FixtureRequest
) -> Settings:
    """Create settings configured for the requested database backend."""

    base_settings = Settings()

    backend = "sqlite"
    if hasattr(request.node, "callspec"):
        backend = request.node.callspec.params.get("repo", backend)

    if request.node.get_closest_marker("postgres"):
        backend = "postgres"

    if backend == "postgres":
        if os.environ.get("TEST_POSTGRES", "0") != "1":
            pytest.skip("PostgreSQL tests disabled (TEST_POSTGRES!=1)")
        if not os.environ.get("POSTGRES_PASSWORD"):
            pytest.skip("POSTGRES_PASSWORD not set for PostgreSQL tests")
        return base_settings.model_copy(update={"database_type": "postgres"})

    temp_dir = tmp_path_factory.mktemp("db")
    db_path = temp_dir / "test.sqlite"
    return base_settings.model_copy(
        update={
            "database_type": "sqlite",
            "db_path": str(db_path),
            "dedup_window_minutes": 1440,
            "max_retries": 3,
            "retry_delay_ms": 1000,
            "max_retry_delay_ms": 30000,
            "timeout_ms": 60000,
            "retention_days": 30,
        }
    )


@pytest.fixture
def repo(settings: Settings) -> Generator[DeliveryRepositoryProtocol, None, None]:
    """Provide a repository instance for the configured backend."""

    repository = create_repository(settings)

    try:
        yield repository
    finally:
        repository.close()

        if settings.database_type == "sqlite":
            for suffix in ("", "-wal", "-shm"):
                Path(settings.db_path + suffix).unlink(missing_ok=True)


@pytest.fixture
def clock() -> FakeClock:
    return FakeClock()


@pytest.fixture
def make_coordinator(
    repo: DeliveryRepositoryProtocol, settings: Settings, clock: FakeClock
) -> Callable[..., DeliveryCoordinator]:
    """Build a coordinator over the test repository with a fake clock."""

    def _factory(
        transport: Any,
        *,
        settings_override: dict[str, Any] | None = None,
        repository: Any = None,
    ) -> DeliveryCoordinator:
        effective = (
            settings.model_copy(update=settings_override)
            if settings_override
            else settings
        )
        return DeliveryCoordinator(
            repository if repository is not None else repo,
            transport,
            effective,
            sleep=clock.sleep,
            clock=clock,
            jitter_provider=lambda base: 0.0,
        )

    return _factory


def make_request(
    recipient: str = "u@x.com",
    notification_type: str = "violation_approved",
    **overrides: Any,
) -> NotificationRequest:
    """Helper to create a violation-approved notification request."""
    defaults: dict[str, Any] = {
        "recipient": recipient,
        "notification_type": notification_type,
        "subject": "Your violation report was approved",
        "body": "Violation #42 has been approved.",
        "payload": {"violation_id": 42, "status": "approved"},
    }
    defaults.update(overrides)
    return NotificationRequest(**defaults)


@pytest.fixture
def mock_repository() -> Mock:
    """Mock delivery repository."""
    mock = Mock(spec=DeliveryRepositoryProtocol)
    mock.expire_older_than.return_value = 0
    mock.delete_attempts_older_than.return_value = 0
    mock.delete_logs_older_than.return_value = 0
    mock.list_deduplication_logs.return_value = []
    mock.list_send_attempts.return_value = []
    return mock
