"""Common runtime helpers for long-running scripts."""

from __future__ import annotations

import signal
import threading
from collections.abc import Callable
from dataclasses import dataclass
from types import FrameType
from typing import Protocol, TextIO

from src.config.logging_config import get_logger, setup_logging
from src.config.settings import Settings

logger = get_logger(__name__)

MIN_WAIT_SECONDS = 0.1


class ShutdownSignal(Protocol):
    def is_set(self) -> bool: ...

    def wait(self, timeout: float) -> bool: ...


@dataclass
class _ShutdownController:
    """Shutdown state shared between signal handlers and the loop."""

    _event: threading.Event

    def is_set(self) -> bool:
        return self._event.is_set()

    def wait(self, timeout: float) -> bool:
        return self._event.wait(timeout)

    def request(self, signum: int, frame: FrameType | None) -> None:
        sig_name = signal.Signals(signum).name
        logger.info("shutdown_signal_received", signal=sig_name)
        self._event.set()


def create_shutdown_controller() -> _ShutdownController:
    return _ShutdownController(threading.Event())


def install_signal_handlers(controller: _ShutdownController) -> None:
    """Register SIGTERM/SIGINT handlers for graceful shutdown."""

    def _handler(signum: int, frame: FrameType | None) -> None:
        controller.request(signum, frame)

    signal.signal(signal.SIGTERM, _handler)
    signal.signal(signal.SIGINT, _handler)


def initialize_logging(
    settings: Settings, *, json_logs: bool = False, stream: TextIO | None = None
) -> None:
    """Initialize structlog-based logging for scripts."""

    json_output = json_logs or settings.log_json
    setup_logging(log_level=settings.log_level, json_logs=json_output, stream=stream)
    logger.info("logging_initialized", level=settings.log_level, json_logs=json_output)


def run_scheduler_loop(
    *,
    controller: ShutdownSignal,
    run_once: bool,
    action: Callable[[], object],
    next_delay: Callable[[], float],
) -> int:
    """Run ``action`` repeatedly until shutdown is requested.

    ``next_delay`` is asked after every iteration how many seconds to wait, so
    callers can schedule at fixed intervals or at a wall-clock hour. Failed
    iterations are logged and retried on the next tick; with ``run_once`` the
    failure propagates.

    Returns:
        Number of iterations executed
    """

    logger.info("scheduler_loop_started", run_once=run_once)
    iteration = 0
    while not controller.is_set():
        iteration += 1
        try:
            action()
        except Exception:  # noqa: BLE001
            logger.exception("scheduler_iteration_failed", iteration=iteration)
            if run_once:
                raise
        if run_once:
            break

        wait_seconds = max(MIN_WAIT_SECONDS, next_delay())
        logger.info("scheduler_sleeping", wait_seconds=round(wait_seconds, 3))
        controller.wait(wait_seconds)

    logger.info("scheduler_loop_stopped", iterations=iteration)
    return iteration


__all__ = [
    "ShutdownSignal",
    "create_shutdown_controller",
    "initialize_logging",
    "install_signal_handlers",
    "run_scheduler_loop",
]
