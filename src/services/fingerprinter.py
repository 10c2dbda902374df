"""Content fingerprinting for notification deduplication.

A fingerprint identifies a *logical* notification: the same recipient, the
same notification type and the same dedup-relevant payload fields always hash
to the same value, while cosmetic differences (whitespace in free text,
timestamps, tracking ids, unrelated metadata) never change it.

Canonical form:
    {"payload": {<relevant fields, sorted>}, "recipient": "<lower>", "type": "<lower>"}
serialized as compact JSON with sorted keys, hashed with SHA-256.
"""

import hashlib
import json
import re
from collections.abc import Mapping, Sequence
from datetime import date, datetime
from typing import Any
from uuid import UUID

from src.domain.delivery_constants import (
    DEFAULT_DEDUP_PAYLOAD_FIELDS,
    KEY_SCOPE_RECIPIENT,
    KEY_SCOPE_RECIPIENT_CONTENT,
    VOLATILE_PAYLOAD_FIELDS,
)
from src.domain.exceptions import ValidationError
from src.domain.models import ensure_utc

_WHITESPACE_RE = re.compile(r"\s+")

KEY_SCOPES = (KEY_SCOPE_RECIPIENT_CONTENT, KEY_SCOPE_RECIPIENT)
SUBJECT_FIELD = "subject"


def normalize_recipient(recipient: str) -> str:
    """Canonical recipient address (trimmed, lower-cased).

    Example:
        >>> normalize_recipient("  U@X.com ")
        'u@x.com'
    """
    return recipient.strip().lower()


def normalize_notification_type(notification_type: str) -> str:
    return notification_type.strip().lower()


def canonicalize_value(value: Any) -> Any:
    """Convert a payload value into a JSON-stable canonical form.

    Strings have runs of whitespace collapsed; mappings are rebuilt with string
    keys; sequences keep their order; datetimes become UTC ISO strings.
    """
    if value is None or isinstance(value, bool | int | float):
        return value
    if isinstance(value, str):
        return _WHITESPACE_RE.sub(" ", value).strip()
    if isinstance(value, datetime):
        return ensure_utc(value).isoformat()
    if isinstance(value, date):
        return value.isoformat()
    if isinstance(value, UUID):
        return str(value)
    if isinstance(value, Mapping):
        return {str(k): canonicalize_value(v) for k, v in value.items()}
    if isinstance(value, set | frozenset):
        return sorted(
            (canonicalize_value(item) for item in value),
            key=lambda item: json.dumps(item, sort_keys=True),
        )
    if isinstance(value, Sequence):
        return [canonicalize_value(item) for item in value]
    return str(value)


def select_relevant_fields(
    payload: Mapping[str, Any], fields: Sequence[str] | None
) -> dict[str, Any]:
    """Pick the dedup-relevant subset of ``payload``.

    With an explicit field list, missing fields are kept as None so that
    "field absent" and "field present" never collide. Without one, every field
    except the volatile ones participates.
    """
    if fields is not None:
        return {name: canonicalize_value(payload.get(name)) for name in fields}
    return {
        str(name): canonicalize_value(value)
        for name, value in payload.items()
        if str(name) not in VOLATILE_PAYLOAD_FIELDS
    }


def fingerprint(
    recipient: str,
    notification_type: str,
    payload: Mapping[str, Any] | None = None,
    *,
    relevant_fields: Sequence[str] | None = None,
    key_scope: str = KEY_SCOPE_RECIPIENT_CONTENT,
) -> str:
    """Compute the content hash of a logical notification.

    Args:
        recipient: Recipient address
        notification_type: Notification type (e.g. ``violation_approved``)
        payload: Business context of the notification
        relevant_fields: Payload fields that define identity (None = all non-volatile)
        key_scope: ``recipient_content`` or ``recipient``

    Returns:
        SHA-256 hex digest (64 characters)

    Raises:
        ValidationError: If recipient or type is blank or the scope is unknown

    Example:
        >>> fingerprint("u@x.com", "violation_approved", {"violation_id": 7},
        ...             relevant_fields=["violation_id"])  # doctest: +ELLIPSIS
        '...'
    """
    canonical_recipient = normalize_recipient(recipient)
    canonical_type = normalize_notification_type(notification_type)
    if not canonical_recipient or not canonical_type:
        raise ValidationError("recipient and notification_type are required")
    if key_scope not in KEY_SCOPES:
        raise ValidationError(f"Unknown dedup key scope: {key_scope}")

    material: dict[str, Any] = {
        "recipient": canonical_recipient,
        "type": canonical_type,
    }
    if key_scope == KEY_SCOPE_RECIPIENT_CONTENT:
        material["payload"] = select_relevant_fields(payload or {}, relevant_fields)

    serialized = json.dumps(
        material, sort_keys=True, separators=(",", ":"), ensure_ascii=False
    )
    return hashlib.sha256(serialized.encode("utf-8")).hexdigest()


class Fingerprinter:
    """Fingerprinting bound to a per-type field map and key scope."""

    def __init__(
        self,
        field_map: Mapping[str, Sequence[str]] | None = None,
        *,
        key_scope: str = KEY_SCOPE_RECIPIENT_CONTENT,
    ) -> None:
        if key_scope not in KEY_SCOPES:
            raise ValidationError(f"Unknown dedup key scope: {key_scope}")
        source = DEFAULT_DEDUP_PAYLOAD_FIELDS if field_map is None else field_map
        self._field_map = {
            normalize_notification_type(name): list(fields)
            for name, fields in source.items()
        }
        self._key_scope = key_scope

    @property
    def key_scope(self) -> str:
        return self._key_scope

    def relevant_fields(self, notification_type: str) -> list[str] | None:
        return self._field_map.get(normalize_notification_type(notification_type))

    def __call__(
        self,
        recipient: str,
        notification_type: str,
        payload: Mapping[str, Any] | None = None,
        *,
        subject: str | None = None,
    ) -> str:
        """Fingerprint a notification with its type's field map.

        ``subject`` is a request field rather than a payload key; it takes part
        in the hash only when the type's field list names ``subject`` and the
        payload does not carry its own value.
        """
        fields = self.relevant_fields(notification_type)
        material = dict(payload or {})
        if subject is not None and fields is not None and SUBJECT_FIELD in fields:
            material.setdefault(SUBJECT_FIELD, subject)
        return fingerprint(
            recipient,
            notification_type,
            material,
            relevant_fields=fields,
            key_scope=self._key_scope,
        )


__all__ = [
    "Fingerprinter",
    "canonicalize_value",
    "fingerprint",
    "normalize_notification_type",
    "normalize_recipient",
    "select_relevant_fields",
]
