from datetime import UTC, datetime

import pytest

from src.domain.exceptions import ValidationError
from src.services.fingerprinter import (
    Fingerprinter,
    canonicalize_value,
    fingerprint,
    select_relevant_fields,
)


def test_fingerprint_is_sha256_hex() -> None:
    digest = fingerprint("u@x.com", "system", {"user_id": 1})

    assert len(digest) == 64
    assert all(ch in "0123456789abcdef" for ch in digest)


def test_recipient_and_type_are_case_and_whitespace_insensitive() -> None:
    first = fingerprint("  U@X.com ", " Violation_Approved", {"violation_id": 7})
    second = fingerprint("u@x.com", "violation_approved", {"violation_id": 7})

    assert first == second


def test_free_text_whitespace_does_not_change_fingerprint() -> None:
    first = fingerprint("u@x.com", "system", {"subject": "Weekly   report\n"})
    second = fingerprint("u@x.com", "system", {"subject": "Weekly report"})

    assert first == second


def test_payload_key_order_does_not_matter() -> None:
    first = fingerprint("u@x.com", "campaign", {"a": 1, "b": {"y": 2, "x": 1}})
    second = fingerprint("u@x.com", "campaign", {"b": {"x": 1, "y": 2}, "a": 1})

    assert first == second


def test_volatile_fields_are_ignored_without_field_map() -> None:
    base = {"order_id": 9}
    first = fingerprint(
        "u@x.com", "receipt", {**base, "timestamp": "2026-01-01T00:00:00Z"}
    )
    second = fingerprint("u@x.com", "receipt", {**base, "request_id": "abc"})

    assert first == second == fingerprint("u@x.com", "receipt", base)


def test_relevant_fields_restrict_identity() -> None:
    fields = ["violation_id", "status"]
    first = fingerprint(
        "u@x.com",
        "violation_approved",
        {"violation_id": 7, "status": "approved", "reviewer": "ann"},
        relevant_fields=fields,
    )
    second = fingerprint(
        "u@x.com",
        "violation_approved",
        {"violation_id": 7, "status": "approved", "reviewer": "bob"},
        relevant_fields=fields,
    )
    other_violation = fingerprint(
        "u@x.com",
        "violation_approved",
        {"violation_id": 8, "status": "approved"},
        relevant_fields=fields,
    )

    assert first == second
    assert first != other_violation


def test_missing_relevant_field_serializes_as_null() -> None:
    selected = select_relevant_fields({"violation_id": 1}, ["violation_id", "status"])

    assert selected == {"violation_id": 1, "status": None}


def test_recipient_scope_ignores_payload() -> None:
    first = fingerprint(
        "u@x.com", "system", {"user_id": 1}, key_scope="recipient"
    )
    second = fingerprint(
        "u@x.com", "system", {"user_id": 2}, key_scope="recipient"
    )

    assert first == second


def test_different_recipients_never_collide() -> None:
    payload = {"violation_id": 7, "status": "approved"}

    assert fingerprint("a@x.com", "violation_approved", payload) != fingerprint(
        "b@x.com", "violation_approved", payload
    )


def test_blank_recipient_rejected() -> None:
    with pytest.raises(ValidationError):
        fingerprint("   ", "system")


def test_unknown_scope_rejected() -> None:
    with pytest.raises(ValidationError):
        fingerprint("u@x.com", "system", key_scope="everything")


def test_canonicalize_datetime_to_utc_iso() -> None:
    naive = datetime(2026, 1, 1, 12, 0)

    assert canonicalize_value(naive) == datetime(2026, 1, 1, 12, 0, tzinfo=UTC).isoformat()
    assert canonicalize_value({"b", "a"}) == ["a", "b"]


def test_fingerprinter_uses_builtin_type_map() -> None:
    fingerprinter = Fingerprinter()

    assert fingerprinter.relevant_fields("VIOLATION_APPROVED") == [
        "violation_id",
        "status",
    ]
    first = fingerprinter(
        "u@x.com", "violation_approved", {"violation_id": 7, "status": "approved"}
    )
    second = fingerprinter(
        "u@x.com",
        "violation_approved",
        {"violation_id": 7, "status": "approved", "approved_at": "now"},
    )

    assert first == second


def test_fingerprinter_custom_map_overrides_defaults() -> None:
    fingerprinter = Fingerprinter({"digest": ["week"]})

    assert fingerprinter.relevant_fields("digest") == ["week"]
    assert fingerprinter.relevant_fields("violation_approved") is None


def test_subject_distinguishes_system_notifications() -> None:
    fingerprinter = Fingerprinter()
    payload = {"user_id": 7}

    reset = fingerprinter("u@x.com", "system", payload, subject="Password reset")
    approved = fingerprinter("u@x.com", "system", payload, subject="Account approved")

    assert reset != approved
    assert reset == fingerprinter(
        "u@x.com", "system", payload, subject="  Password   reset"
    )


def test_payload_subject_takes_precedence_over_request_subject() -> None:
    fingerprinter = Fingerprinter()

    first = fingerprinter(
        "u@x.com", "system", {"user_id": 7, "subject": "digest"}, subject="A"
    )
    second = fingerprinter(
        "u@x.com", "system", {"user_id": 7, "subject": "digest"}, subject="B"
    )

    assert first == second


def test_subject_ignored_when_type_does_not_list_it() -> None:
    fingerprinter = Fingerprinter()
    payload = {"violation_id": 7, "status": "approved"}

    assert fingerprinter(
        "u@x.com", "violation_approved", payload, subject="First"
    ) == fingerprinter("u@x.com", "violation_approved", payload, subject="Second")


def test_mixed_type_sets_canonicalize_in_stable_order() -> None:
    assert canonicalize_value({1, "a"}) == canonicalize_value({"a", 1})
    assert fingerprint("u@x.com", "reminder", {"tags": {1, "a", 2.5}}) == fingerprint(
        "u@x.com", "reminder", {"tags": {2.5, "a", 1}}
    )
