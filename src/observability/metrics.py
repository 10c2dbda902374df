"""Prometheus metrics for notification delivery observability.

Duplicates prevented, failures and store outages are separate series so that
dashboards never conflate "suppressed" with "failed".
"""

from __future__ import annotations

import os
import signal
import threading
from types import FrameType
from typing import Final

from prometheus_client import Counter, Histogram, start_http_server

from src.config.logging_config import get_logger

logger = get_logger(__name__)

NOTIFICATIONS_DELIVERED_TOTAL: Final[Counter] = Counter(
    "notifications_delivered_total",
    "Notifications accepted by the transport",
    labelnames=("notification_type",),
)

NOTIFICATION_DUPLICATES_SUPPRESSED_TOTAL: Final[Counter] = Counter(
    "notification_duplicates_suppressed_total",
    "Duplicate notifications suppressed inside the dedup window",
    labelnames=("notification_type",),
)

IDEMPOTENCY_STORE_UNAVAILABLE_TOTAL: Final[Counter] = Counter(
    "idempotency_store_unavailable_total",
    "Sends suppressed because the idempotency store could not be reached",
    labelnames=("notification_type",),
)

NOTIFICATION_RETRIES_TOTAL: Final[Counter] = Counter(
    "notification_retries_total",
    "Retries scheduled after transient transport failures",
    labelnames=("notification_type",),
)

NOTIFICATION_FAILURES_TOTAL: Final[Counter] = Counter(
    "notification_failures_total",
    "Logical sends that ended in the FAILED state",
    labelnames=("notification_type", "kind"),
)

CLEANUP_DELETED_ROWS_TOTAL: Final[Counter] = Counter(
    "notification_cleanup_deleted_rows_total",
    "Rows removed by the cleanup sweeper",
    labelnames=("table",),
)

DELIVERY_DURATION_SECONDS: Final[Histogram] = Histogram(
    "notification_delivery_duration_seconds",
    "Duration of a coordinator invocation in seconds",
    labelnames=("outcome",),
)

_EXPORTER_LOCK = threading.Lock()
_EXPORTER_STARTED = False
_EXPORTER_STOP_EVENT = threading.Event()
_DEFAULT_METRICS_PORT: Final[int] = 9000
_METRICS_PORT_ENV: Final[str] = "METRICS_PORT"
METRICS_EXPORTER_AUTO_START_ENV: Final[str] = "METRICS_EXPORTER_AUTO_START"


def _should_autostart() -> bool:
    raw_value = os.getenv(METRICS_EXPORTER_AUTO_START_ENV, "0")
    return raw_value.strip().lower() in {"1", "true", "yes", "on"}


def _resolve_metrics_port() -> int:
    port_raw = os.getenv(_METRICS_PORT_ENV)
    try:
        return int(port_raw) if port_raw else _DEFAULT_METRICS_PORT
    except ValueError:
        logger.warning("invalid_metrics_port", port=port_raw)
        return _DEFAULT_METRICS_PORT


def ensure_metrics_exporter() -> None:
    """Start the Prometheus HTTP exporter once per process."""

    global _EXPORTER_STARTED
    with _EXPORTER_LOCK:
        if _EXPORTER_STARTED:
            return

        port = _resolve_metrics_port()
        try:
            start_http_server(port)
        except OSError as exc:
            logger.error("metrics_exporter_start_failed", port=port, error=str(exc))
            raise

        _EXPORTER_STARTED = True
        logger.info("metrics_exporter_started", port=port)


def _handle_shutdown_signal(signum: int, frame: FrameType | None) -> None:
    logger.info("metrics_exporter_shutdown_signal", signal=signum)
    _EXPORTER_STOP_EVENT.set()


def run_metrics_exporter_forever() -> None:
    """Start the exporter and block until SIGTERM/SIGINT."""

    ensure_metrics_exporter()
    for watched_signal in (signal.SIGTERM, signal.SIGINT):
        signal.signal(watched_signal, _handle_shutdown_signal)

    _EXPORTER_STOP_EVENT.wait()
    logger.info("metrics_exporter_stopped")


__all__ = [
    "CLEANUP_DELETED_ROWS_TOTAL",
    "DELIVERY_DURATION_SECONDS",
    "IDEMPOTENCY_STORE_UNAVAILABLE_TOTAL",
    "NOTIFICATIONS_DELIVERED_TOTAL",
    "NOTIFICATION_DUPLICATES_SUPPRESSED_TOTAL",
    "NOTIFICATION_FAILURES_TOTAL",
    "NOTIFICATION_RETRIES_TOTAL",
    "ensure_metrics_exporter",
    "run_metrics_exporter_forever",
]


if _should_autostart():
    ensure_metrics_exporter()


if __name__ == "__main__":
    run_metrics_exporter_forever()
