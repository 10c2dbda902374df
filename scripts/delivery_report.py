"""Print delivery statistics and recent dedup activity as JSON.

Examples:
    python scripts/delivery_report.py --hours 24
    python scripts/delivery_report.py --logs --limit 20
    python scripts/delivery_report.py --cleanup
"""

from __future__ import annotations

import argparse
import json
import sys
from pathlib import Path
from typing import Any, TextIO

sys.path.insert(0, str(Path(__file__).parent.parent))

from scripts import runtime
from src.adapters.repository_factory import create_repository
from src.config.logging_config import get_logger
from src.config.settings import get_settings
from src.domain.exceptions import RepositoryError
from src.domain.protocols import DeliveryRepositoryProtocol
from src.use_cases.cleanup_sweeper import sweep
from src.use_cases.delivery_stats import (
    list_deduplication_logs,
    list_send_attempts,
    stats,
)

logger = get_logger(__name__)


def parse_args(argv: list[str] | None = None) -> argparse.Namespace:
    parser = argparse.ArgumentParser(description="Notification delivery report")
    parser.add_argument(
        "--hours",
        type=int,
        default=None,
        help="Look-back window in hours (default from settings)",
    )
    parser.add_argument(
        "--limit",
        type=int,
        default=None,
        help="Maximum rows per listing (default from settings)",
    )
    parser.add_argument(
        "--logs",
        action="store_true",
        help="Include recent deduplication log entries",
    )
    parser.add_argument(
        "--attempts",
        action="store_true",
        help="Include recent send attempts",
    )
    parser.add_argument(
        "--cleanup",
        action="store_true",
        help="Run a cleanup sweep before reporting",
    )
    args = parser.parse_args(argv)
    if args.hours is not None and args.hours <= 0:
        parser.error("--hours must be greater than 0")
    if args.limit is not None and args.limit <= 0:
        parser.error("--limit must be greater than 0")
    return args


def build_report(
    repository: DeliveryRepositoryProtocol,
    *,
    hours: int,
    limit: int,
    include_logs: bool = False,
    include_attempts: bool = False,
) -> dict[str, Any]:
    report: dict[str, Any] = {
        "window_hours": hours,
        "stats": stats(repository, hours=hours).model_dump(mode="json"),
    }
    if include_logs:
        report["deduplication_logs"] = [
            entry.model_dump(mode="json")
            for entry in list_deduplication_logs(repository, hours=hours, limit=limit)
        ]
    if include_attempts:
        report["send_attempts"] = [
            attempt.model_dump(mode="json")
            for attempt in list_send_attempts(repository, hours=hours, limit=limit)
        ]
    return report


def main(argv: list[str] | None = None, *, stream: TextIO | None = None) -> int:
    args = parse_args(argv)
    out = stream or sys.stdout

    settings = get_settings()
    runtime.initialize_logging(settings, stream=sys.stderr)

    hours = args.hours or settings.report_window_hours
    limit = args.limit or settings.log_listing_limit

    try:
        repository = create_repository(settings)
    except RepositoryError as exc:
        logger.error("delivery_report_store_unavailable", error=str(exc))
        return 1

    try:
        report: dict[str, Any] = {}
        if args.cleanup:
            report["cleanup"] = sweep(
                repository, settings.retention_policy()
            ).model_dump(mode="json")
        report.update(
            build_report(
                repository,
                hours=hours,
                limit=limit,
                include_logs=args.logs,
                include_attempts=args.attempts,
            )
        )
    except RepositoryError as exc:
        logger.error("delivery_report_failed", error=str(exc))
        return 1
    finally:
        repository.close()

    out.write(json.dumps(report, indent=2, sort_keys=True))
    out.write("\n")
    return 0


if __name__ == "__main__":
    raise SystemExit(main())
