"""
Tests for error tracking and user-facing error messages
"""

import logging

import pytest

from studygroups.error_handler import ErrorHandler, MAX_RECENT_ERRORS, user_message
from studygroups.errors import (
    AuthExpiredError,
    CatalogError,
    GatewayError,
    MalformedResponseError,
    MembershipError,
    NotMemberError,
    SendError,
    SyncError,
)


class TestUserMessage:
    @pytest.mark.parametrize("status,expected", [
        (None, "Network error. Please check your internet connection."),
        (403, "You don't have permission to perform this action."),
        (404, "The requested group was not found."),
        (500, "Server error. Please try again later."),
        (503, "Server error. Please try again later."),
    ])
    def test_gateway_status_mapping(self, status, expected):
        error = SyncError("g1", GatewayError("failed", status_code=status, detail="boom"))
        assert user_message(error) == expected

    def test_conflict_uses_server_detail(self):
        cause = GatewayError("failed", status_code=409, detail="You are already a member of this group")
        error = MembershipError("g1", cause, action="join")
        assert user_message(error) == "You are already a member of this group"

    def test_malformed_and_auth(self):
        assert user_message(CatalogError(MalformedResponseError("bad"))).startswith("Unexpected response")
        assert user_message(AuthExpiredError()) == "Session expired. Please log in again."

    def test_precondition_text_passes_through(self):
        assert user_message(NotMemberError("g1")) == str(NotMemberError("g1"))


class TestErrorHandler:
    def test_latest_per_component(self):
        handler = ErrorHandler()
        first = SendError("g1", GatewayError("down"))
        second = SendError("g1", GatewayError("still down"))

        handler.record("send", first)
        handler.record("send", second)

        assert handler.latest("send") is second
        assert handler.latest("sync") is None
        assert handler.error_count == 2

        handler.clear("send")
        assert handler.latest_errors() == {}

    def test_unknown_component_rejected(self):
        with pytest.raises(ValueError):
            ErrorHandler().record("rendering", SyncError("g1", GatewayError("x")))

    def test_history_is_bounded(self):
        handler = ErrorHandler()
        for n in range(MAX_RECENT_ERRORS + 5):
            handler.record("sync", SyncError("g1", GatewayError(f"failure {n}")), level=logging.WARNING)

        assert len(handler.last_errors) == MAX_RECENT_ERRORS
        summary = handler.get_error_summary()
        assert summary["total_errors"] == MAX_RECENT_ERRORS + 5
        assert summary["error_types"] == ["SyncError"]
        assert summary["components"] == ["sync"]

    def test_record_logs_at_requested_level(self, caplog):
        handler = ErrorHandler()
        with caplog.at_level(logging.WARNING, logger="studygroups"):
            handler.record("catalog", CatalogError(GatewayError("down")), level=logging.WARNING)
        assert any(r.levelno == logging.WARNING and "[catalog]" in r.getMessage() for r in caplog.records)

    def test_message_for(self):
        handler = ErrorHandler()
        assert handler.message_for("catalog") is None
        handler.record("catalog", CatalogError(GatewayError("down", status_code=500)))
        assert handler.message_for("catalog") == "Server error. Please try again later."
