import pytest
from pydantic import ValidationError

from src.domain.delivery_constants import (
    MAX_IDEMPOTENCY_KEY_LENGTH,
    MAX_NOTIFICATION_TYPE_LENGTH,
)
from tests.conftest import make_request


def test_idempotency_key_at_column_width_is_accepted() -> None:
    request = make_request(idempotency_key="k" * MAX_IDEMPOTENCY_KEY_LENGTH)

    assert request.idempotency_key == "k" * MAX_IDEMPOTENCY_KEY_LENGTH


def test_overlong_idempotency_key_is_rejected() -> None:
    with pytest.raises(ValidationError):
        make_request(idempotency_key="k" * (MAX_IDEMPOTENCY_KEY_LENGTH + 1))


def test_overlong_notification_type_is_rejected() -> None:
    with pytest.raises(ValidationError):
        make_request(notification_type="t" * (MAX_NOTIFICATION_TYPE_LENGTH + 1))


def test_blank_recipient_is_rejected() -> None:
    with pytest.raises(ValidationError):
        make_request(recipient="   ")


def test_blank_idempotency_key_means_no_key() -> None:
    assert make_request(idempotency_key="   ").idempotency_key is None
