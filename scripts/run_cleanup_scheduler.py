"""Periodic cleanup sweeper for idempotency keys, send attempts and dedup logs.

After each sweep the delivery statistics of the reporting window are logged.
"""

from __future__ import annotations

import argparse
import sys
from pathlib import Path

sys.path.insert(0, str(Path(__file__).parent.parent))

from scripts import runtime
from src.adapters.repository_factory import create_repository
from src.config.logging_config import get_logger
from src.config.settings import Settings, get_settings
from src.domain.models import utc_now
from src.domain.protocols import DeliveryRepositoryProtocol
from src.use_cases.cleanup_sweeper import next_sweep_at, sweep
from src.use_cases.delivery_stats import stats

logger = get_logger(__name__)


def parse_args(argv: list[str] | None = None) -> argparse.Namespace:
    parser = argparse.ArgumentParser(description="Run the notification cleanup sweeper")
    parser.add_argument(
        "--interval-minutes",
        type=int,
        default=None,
        help="Sweep every N minutes instead of daily at the configured hour",
    )
    parser.add_argument(
        "--retention-days",
        type=int,
        default=None,
        help="Override retention_days for this process",
    )
    parser.add_argument(
        "--json-logs",
        action="store_true",
        help="Emit logs in JSON format",
    )
    parser.add_argument(
        "--run-once",
        action="store_true",
        help="Run a single sweep and exit",
    )
    args = parser.parse_args(argv)
    if args.interval_minutes is not None and args.interval_minutes <= 0:
        parser.error("--interval-minutes must be greater than 0")
    if args.retention_days is not None and args.retention_days <= 0:
        parser.error("--retention-days must be greater than 0")
    return args


def run_sweep_and_report(
    repository: DeliveryRepositoryProtocol, settings: Settings
) -> None:
    """Sweep expired rows, then log the statistics of the reporting window."""
    result = sweep(repository, settings.retention_policy())
    report = stats(repository, hours=settings.report_window_hours)
    logger.info(
        "cleanup_stats_report",
        window_hours=settings.report_window_hours,
        deleted_total=result.total_deleted,
        total_sent=report.total_sent,
        total_failed=report.total_failed,
        duplicates_prevented=report.duplicates_prevented,
        retry_attempts=report.retry_attempts,
        unique_recipients=report.unique_recipients,
    )


def main(argv: list[str] | None = None) -> int:
    args = parse_args(argv)

    settings = get_settings()
    overrides: dict[str, object] = {}
    if args.retention_days is not None:
        overrides["retention_days"] = args.retention_days
    if args.interval_minutes is not None:
        overrides["cleanup_interval_minutes"] = args.interval_minutes
        overrides["cleanup_run_at_hour"] = None
    if overrides:
        settings = settings.model_copy(update=overrides)

    runtime.initialize_logging(settings, json_logs=args.json_logs)

    controller = runtime.create_shutdown_controller()
    runtime.install_signal_handlers(controller)

    repository = create_repository(settings)

    def _next_delay() -> float:
        now = utc_now()
        next_run = next_sweep_at(
            now,
            interval_minutes=settings.cleanup_interval_minutes,
            run_at_hour=settings.cleanup_run_at_hour,
            timezone=settings.cleanup_timezone,
        )
        logger.info("cleanup_next_run_scheduled", next_run=next_run.isoformat())
        return (next_run - now).total_seconds()

    try:
        runtime.run_scheduler_loop(
            controller=controller,
            run_once=args.run_once,
            action=lambda: run_sweep_and_report(repository, settings),
            next_delay=_next_delay,
        )
    finally:
        repository.close()

    return 0


if __name__ == "__main__":
    raise SystemExit(main())
