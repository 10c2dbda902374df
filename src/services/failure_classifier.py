"""Classification of transport failures into transient and permanent.

Rules:
1. Explicit ``TransientTransportError`` / ``PermanentTransportError`` win
2. SMTP replies: 5xx refusals of recipient, sender or content are permanent,
   4xx replies are transient
3. Timeouts, connection and other OS-level errors are transient
4. ``ValueError`` (malformed address or content rejected before sending) is permanent
5. Anything else is treated as transient and retried within the budget
"""

import smtplib
import socket

from src.domain.exceptions import PermanentTransportError, TransientTransportError
from src.domain.models import FailureKind

_PERMANENT_SMTP_ERRORS: tuple[type[smtplib.SMTPException], ...] = (
    smtplib.SMTPRecipientsRefused,
    smtplib.SMTPSenderRefused,
    smtplib.SMTPDataError,
    smtplib.SMTPNotSupportedError,
)


def _smtp_code(exc: smtplib.SMTPException) -> int | None:
    code = getattr(exc, "smtp_code", None)
    if isinstance(code, int):
        return code
    if isinstance(exc, smtplib.SMTPRecipientsRefused):
        codes = [
            reply[0]
            for reply in exc.recipients.values()
            if isinstance(reply, tuple) and reply and isinstance(reply[0], int)
        ]
        if codes:
            return min(codes)
    return None


def classify_failure(exc: BaseException) -> FailureKind:
    """Decide whether a failed send may be retried.

    Example:
        >>> classify_failure(TimeoutError("read timed out"))
        <FailureKind.TRANSIENT: 'transient'>
    """
    if isinstance(exc, PermanentTransportError):
        return FailureKind.PERMANENT
    if isinstance(exc, TransientTransportError):
        return FailureKind.TRANSIENT

    if isinstance(exc, smtplib.SMTPException):
        code = _smtp_code(exc)
        if code is not None:
            return FailureKind.PERMANENT if code >= 500 else FailureKind.TRANSIENT
        if isinstance(exc, _PERMANENT_SMTP_ERRORS):
            return FailureKind.PERMANENT
        return FailureKind.TRANSIENT

    if isinstance(exc, TimeoutError | socket.timeout | ConnectionError | OSError):
        return FailureKind.TRANSIENT

    if isinstance(exc, ValueError):
        return FailureKind.PERMANENT

    return FailureKind.TRANSIENT


def describe_failure(exc: BaseException) -> str:
    message = str(exc).strip()
    return f"{type(exc).__name__}: {message}" if message else type(exc).__name__


__all__ = ["classify_failure", "describe_failure"]
