"""Port definition for the outbound mail transport collaborator."""

from __future__ import annotations

from typing import Protocol, runtime_checkable


@runtime_checkable
class NotificationTransportPort(Protocol):
    """Delivers a rendered notification to a single recipient."""

    def send(self, recipient: str, subject: str, body: str) -> object:
        """Send one message.

        Returning normally (any value other than ``False``) means success.
        Failures are reported by raising ``TransientTransportError`` or
        ``PermanentTransportError``; other exceptions are classified by the
        delivery coordinator.
        """


__all__ = ["NotificationTransportPort"]
