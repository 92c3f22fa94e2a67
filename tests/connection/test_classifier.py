"""
Tests for close-event classification.

Tests cover:
- Priority order of the rules
- Case-insensitive message markers
- Totality on malformed input
- Mapping onto the error taxonomy
"""

from __future__ import annotations

import pytest

from lifeline.connection.classifier import (
    CloseEvent,
    ErrorCategory,
    classify_close,
    error_for_category,
)
from lifeline.core.exceptions import (
    AuthenticationExpired,
    TransientProtocolError,
    UnclassifiedError,
)


class TestClassifyClose:
    """Tests for classify_close."""

    @pytest.mark.parametrize(
        "event,expected",
        [
            (CloseEvent(status_code=515), ErrorCategory.STREAM_RESET),
            (CloseEvent(error_code="515"), ErrorCategory.STREAM_RESET),
            (CloseEvent(message="Stream Errored (restart required)"), ErrorCategory.STREAM_RESET),
            (CloseEvent(message="stream:error received"), ErrorCategory.STREAM_RESET),
            (CloseEvent(message="error 515"), ErrorCategory.STREAM_RESET),
            (CloseEvent(status_code=440), ErrorCategory.SESSION_CONFLICT),
            (CloseEvent(message="Connection Replaced"), ErrorCategory.SESSION_CONFLICT),
            (CloseEvent(message="CONFLICT"), ErrorCategory.SESSION_CONFLICT),
            (CloseEvent(status_code=401), ErrorCategory.LOGGED_OUT),
            (CloseEvent(status_code=408, message="timed out"), ErrorCategory.OTHER),
            (CloseEvent(), ErrorCategory.OTHER),
        ],
    )
    def test_categories(self, event, expected):
        assert classify_close(event) is expected

    def test_stream_reset_wins_over_conflict(self):
        event = CloseEvent(status_code=440, message="Stream Errored")

        assert classify_close(event) is ErrorCategory.STREAM_RESET

    def test_conflict_wins_over_logged_out(self):
        event = CloseEvent(status_code=401, message="replaced by another session")

        assert classify_close(event) is ErrorCategory.SESSION_CONFLICT

    def test_none_is_other(self):
        assert classify_close(None) is ErrorCategory.OTHER

    def test_malformed_status_is_other(self):
        event = CloseEvent(status_code="not-a-number")  # type: ignore[arg-type]

        assert classify_close(event) is ErrorCategory.OTHER

    def test_non_string_message_does_not_raise(self):
        event = CloseEvent(message=None)  # type: ignore[arg-type]

        assert classify_close(event) is ErrorCategory.OTHER


class TestCloseEvent:
    """Tests for the CloseEvent descriptor."""

    def test_from_dict(self):
        event = CloseEvent.from_dict({"status_code": "515", "message": "x", "extra": 1})

        assert event.status_code == 515
        assert event.message == "x"
        assert event.error_code is None

    def test_round_trip(self):
        event = CloseEvent(440, "conflict", "440")

        assert CloseEvent.from_dict(event.to_dict()) == event


class TestErrorForCategory:
    """Tests for taxonomy mapping."""

    def test_transient(self):
        exc = error_for_category(ErrorCategory.STREAM_RESET, CloseEvent(515, "Stream Errored"))

        assert isinstance(exc, TransientProtocolError)
        assert exc.status_code == 515

    def test_logged_out(self):
        exc = error_for_category(ErrorCategory.LOGGED_OUT, CloseEvent(401))

        assert isinstance(exc, AuthenticationExpired)
        assert exc.retryable is False
        assert exc.message == "logged_out"

    def test_other(self):
        exc = error_for_category(ErrorCategory.OTHER, CloseEvent(500, "boom"))

        assert isinstance(exc, UnclassifiedError)
