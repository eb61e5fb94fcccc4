"""Tests for logger module.

Tests filters, console formatting, context enrichment and content previews.
"""

from __future__ import annotations

import logging

from unittest.mock import Mock, patch

import pytest

from threadrelay.api.middleware.request_context import (
    RequestContext,
    clear_request_context,
    set_request_context,
)
from threadrelay.utils.logger import ColoredConsoleFormatter, ErrorFilter, RelayFilter, RelayLogger


def _record(level: int, name: str = "test", msg: str = "test", args: tuple = ()) -> logging.LogRecord:
    return logging.LogRecord(name=name, level=level, pathname="", lineno=0, msg=msg, args=args, exc_info=None)


class TestFilters:
    @pytest.mark.parametrize(
        ("level", "relay", "error"),
        [
            (logging.DEBUG, False, False),
            (logging.INFO, True, False),
            (logging.WARNING, True, False),
            (logging.ERROR, True, True),
            (logging.CRITICAL, True, True),
        ],
    )
    def test_levels(self, level: int, relay: bool, error: bool) -> None:
        assert RelayFilter().filter(_record(level)) is relay
        assert ErrorFilter().filter(_record(level)) is error


class TestColoredConsoleFormatter:
    def test_standard_record(self) -> None:
        text = ColoredConsoleFormatter().format(_record(logging.INFO, name="threadrelay", msg="hello %s", args=("x",)))

        assert "[INFO]" in text
        assert "threadrelay - hello x" in text

    def test_uvicorn_access_record(self) -> None:
        record = _record(
            logging.INFO,
            name="uvicorn.access",
            msg='%s - "%s %s HTTP/%s" %d',
            args=("127.0.0.1:5000", "POST", "/api/create-threads", "1.1", 201),
        )

        text = ColoredConsoleFormatter().format(record)

        assert "/api/create-threads HTTP/1.1" in text
        assert "201" in text


class TestRelayLogger:
    @pytest.fixture
    def relay_logger(self) -> RelayLogger:
        with patch("threadrelay.utils.logger.setup_logging") as mock_setup:
            mock_setup.return_value = Mock(spec=logging.Logger)
            return RelayLogger("test")

    def test_enriches_with_request_context(self, relay_logger: RelayLogger) -> None:
        set_request_context(RequestContext(request_id="req_ctx", conversation_id="thread_abc123"))
        try:
            relay_logger.info("Message buffered", seq_id=3)
        finally:
            clear_request_context()

        extra = relay_logger.logger.info.call_args.kwargs["extra"]
        assert extra["request_id"] == "req_ctx"
        assert extra["conversation_id"] == "thread_abc123"
        assert extra["seq_id"] == 3
        assert extra["instance_id"] == relay_logger.instance_id

    def test_explicit_fields_win_over_context(self, relay_logger: RelayLogger) -> None:
        set_request_context(RequestContext(request_id="req_ctx"))
        try:
            relay_logger.warning("override", request_id="req_explicit")
        finally:
            clear_request_context()

        assert relay_logger.logger.warning.call_args.kwargs["extra"]["request_id"] == "req_explicit"

    def test_critical_passes_exc_info(self, relay_logger: RelayLogger) -> None:
        error = RuntimeError("lost")

        relay_logger.critical("Batch dropped", exc_info=error)

        assert relay_logger.logger.critical.call_args.kwargs["exc_info"] is error

    def test_preview_hidden_by_default(self, relay_logger: RelayLogger) -> None:
        assert relay_logger.preview("my secret message") == "[HIDDEN]"

    def test_preview_redacts_when_enabled(self, relay_logger: RelayLogger) -> None:
        settings = Mock(enable_content_logging=True)
        with patch("threadrelay.utils.logger.get_settings", return_value=settings):
            preview = relay_logger.preview("mail me at someone@example.com\nthanks " + "x" * 60)

        assert "[EMAIL]" in preview
        assert "\n" not in preview
        assert preview.endswith("...")
