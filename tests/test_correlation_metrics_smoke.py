from __future__ import annotations

from collections.abc import Callable
from typing import Any

import structlog
from prometheus_client import REGISTRY

from src.observability.tracing import correlation_scope
from tests.conftest import ScriptedTransport, make_request


class _ContextRecordingTransport(ScriptedTransport):
    def __init__(self) -> None:
        super().__init__()
        self.correlation_ids: list[str | None] = []

    def send(self, recipient: str, subject: str, body: str) -> object:
        context = structlog.contextvars.get_contextvars()
        self.correlation_ids.append(context.get("correlation_id"))
        return super().send(recipient, subject, body)


def _sample(name: str, **labels: str) -> float:
    return REGISTRY.get_sample_value(name, labels) or 0.0


def test_delivery_emits_correlation_and_metrics(
    make_coordinator: Callable[..., Any],
) -> None:
    delivered_before = _sample(
        "notifications_delivered_total", notification_type="violation_approved"
    )
    suppressed_before = _sample(
        "notification_duplicates_suppressed_total",
        notification_type="violation_approved",
    )
    transport = _ContextRecordingTransport()
    coordinator = make_coordinator(transport)

    coordinator.deliver(make_request())
    coordinator.deliver(make_request())

    assert transport.correlation_ids[0]
    assert "correlation_id" not in structlog.contextvars.get_contextvars()
    assert (
        _sample("notifications_delivered_total", notification_type="violation_approved")
        == delivered_before + 1
    )
    assert (
        _sample(
            "notification_duplicates_suppressed_total",
            notification_type="violation_approved",
        )
        == suppressed_before + 1
    )


def test_correlation_scope_reuses_caller_id() -> None:
    with correlation_scope("req-123") as correlation_id:
        assert correlation_id == "req-123"
        assert structlog.contextvars.get_contextvars()["correlation_id"] == "req-123"

    assert "correlation_id" not in structlog.contextvars.get_contextvars()
