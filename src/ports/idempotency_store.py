"""Port definition for the idempotency store."""

from __future__ import annotations

from datetime import datetime, timedelta
from typing import Protocol, runtime_checkable

from src.domain.models import AcquireResult


@runtime_checkable
class IdempotencyStorePort(Protocol):
    """Durable keyed record of sends that have already been accepted."""

    def try_acquire(
        self, key: str, window: timedelta, *, now: datetime | None = None
    ) -> AcquireResult:
        """Atomically claim ``key`` for ``window`` unless a live row exists.

        Implementations must use a single conditional write so that exactly one
        of several concurrent callers receives ``acquired=True``.

        Raises:
            RepositoryError: When the store is unavailable
        """

    def is_live(self, key: str, *, now: datetime | None = None) -> bool:
        """Return True when a non-expired row exists for ``key``."""

    def release(self, key: str, holder_id: str) -> bool:
        """Delete the acquisition identified by ``holder_id`` ahead of expiry."""

    def expire_older_than(self, cutoff: datetime) -> int:
        """Delete rows whose ``expires_at`` is before ``cutoff``."""


__all__ = ["IdempotencyStorePort"]
