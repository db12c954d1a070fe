"""Tests for structured logging module."""

from __future__ import annotations

import json
import logging
from pathlib import Path

import pytest
import structlog

from calsync.core.logging import (
    _NOISE_LOGGERS,
    add_otel_context,
    configure_logging,
    redact_event,
)

pytestmark = pytest.mark.unit


# ---------------------------------------------------------------------------
# Fixtures
# ---------------------------------------------------------------------------


@pytest.fixture(autouse=True)
def _reset_logging():
    """Reset logging and bound context between tests."""
    structlog.contextvars.clear_contextvars()
    yield
    structlog.contextvars.clear_contextvars()
    root = logging.getLogger()
    for handler in root.handlers:
        handler.close()
    root.handlers.clear()
    root.setLevel(logging.WARNING)
    # Clear file handlers leaked onto noise loggers
    for name in _NOISE_LOGGERS:
        logging.getLogger(name).handlers.clear()
    structlog.reset_defaults()


def _app_log_records(log_root: Path) -> list[dict]:
    for handler in logging.getLogger().handlers:
        handler.flush()
    content = (log_root / "calsync.log").read_text().strip()
    return [json.loads(line) for line in content.splitlines()]


# ---------------------------------------------------------------------------
# Processors
# ---------------------------------------------------------------------------


class TestAddOtelContext:
    def test_zeroed_ids_when_no_span(self):
        result = add_otel_context(None, "info", {"event": "test"})
        assert result["trace_id"] == "0" * 32
        assert result["span_id"] == "0" * 16

    def test_real_ids_when_span_active(self):
        from opentelemetry.sdk.trace import TracerProvider

        provider = TracerProvider()
        tracer = provider.get_tracer("test")
        with tracer.start_as_current_span("sync-pass"):
            result = add_otel_context(None, "info", {"event": "test"})
            assert result["trace_id"] != "0" * 32
            assert len(result["trace_id"]) == 32
            assert len(result["span_id"]) == 16
        provider.shutdown()


class TestRedactEvent:
    def test_message_credentials_redacted(self):
        result = redact_event(None, "info", {"event": "refresh_token=1//secret failed"})
        assert "1//secret" not in result["event"]

    def test_non_string_event_untouched(self):
        event_dict = {"event": {"nested": "refresh_token=abc"}}
        assert redact_event(None, "info", event_dict) is event_dict
        assert event_dict["event"] == {"nested": "refresh_token=abc"}


# ---------------------------------------------------------------------------
# configure_logging()
# ---------------------------------------------------------------------------


class TestConfigureLogging:
    def test_text_format_installs_console_renderer(self):
        configure_logging(fmt="text")
        formatter = logging.getLogger().handlers[0].formatter
        assert isinstance(formatter, structlog.stdlib.ProcessorFormatter)
        assert isinstance(formatter.processors[-1], structlog.dev.ConsoleRenderer)

    def test_json_format_installs_json_renderer(self):
        configure_logging(fmt="json")
        formatter = logging.getLogger().handlers[0].formatter
        assert isinstance(formatter.processors[-1], structlog.processors.JSONRenderer)

    def test_reconfiguration_does_not_duplicate_handlers(self):
        configure_logging()
        configure_logging()
        assert len(logging.getLogger().handlers) == 1

    def test_noise_loggers_suppressed(self):
        configure_logging()
        assert logging.getLogger("httpx").level >= logging.WARNING
        assert logging.getLogger("asyncpg").level >= logging.WARNING

    def test_log_level_applied(self):
        configure_logging(level="debug")
        assert logging.getLogger().level == logging.DEBUG


# ---------------------------------------------------------------------------
# Log files
# ---------------------------------------------------------------------------


class TestLogFiles:
    def test_nested_log_root_created(self, tmp_path: Path):
        log_dir = tmp_path / "deep" / "nested"
        configure_logging(log_root=log_dir)
        assert log_dir.is_dir()

    def test_transport_loggers_write_to_uvicorn_log(self, tmp_path: Path):
        configure_logging(log_root=tmp_path)
        handlers = [
            h for h in logging.getLogger("httpx").handlers if isinstance(h, logging.FileHandler)
        ]
        assert len(handlers) == 1
        assert handlers[0].baseFilename.endswith("uvicorn.log")

    def test_app_log_is_json_with_bound_context(self, tmp_path: Path):
        configure_logging(fmt="text", log_root=tmp_path)
        structlog.contextvars.bind_contextvars(mapping_id="map-1", sync_type="full")

        logging.getLogger("calsync.sync.orchestrator").info("Sync pass finished")

        (record,) = _app_log_records(tmp_path)
        assert record["event"] == "Sync pass finished"
        assert record["level"] == "info"
        assert record["logger"] == "calsync.sync.orchestrator"
        assert record["mapping_id"] == "map-1"
        assert record["sync_type"] == "full"
        assert record["trace_id"] == "0" * 32

    def test_credentials_never_reach_log_file(self, tmp_path: Path):
        configure_logging(log_root=tmp_path)

        logging.getLogger("calsync.sync.tokens").warning(
            "Refresh rejected: %s", "refresh_token=1//0gLeaky&client_secret=abc"
        )

        (record,) = _app_log_records(tmp_path)
        assert "1//0gLeaky" not in record["event"]
        assert "abc" not in record["event"]
