import io
import json
import logging

import pytest
import structlog

from gitwright.config import LoggingConfig
from gitwright.logging import configure_logging, get_logger


@pytest.fixture
def restore_logging():
    root = logging.getLogger()
    handlers, level = root.handlers[:], root.level
    yield
    structlog.reset_defaults()
    root.handlers[:] = handlers
    root.setLevel(level)


def test_json_output_covers_structlog_and_library_records(restore_logging):
    buffer = io.StringIO()
    configure_logging(LoggingConfig(level="debug", format="json"), stream=buffer)

    get_logger("gitwright.tests").info("Tool invocation resolved", call_id="c1")
    logging.getLogger("aiohttp.access").warning("GET /api/list 200")

    first, second = [json.loads(line) for line in buffer.getvalue().splitlines()]
    assert first["event"] == "Tool invocation resolved"
    assert first["call_id"] == "c1"
    assert first["level"] == "info"
    assert "timestamp" in first
    assert second["event"] == "GET /api/list 200"
    assert second["level"] == "warning"


def test_level_filters_events(restore_logging):
    buffer = io.StringIO()
    configure_logging(LoggingConfig(level="warning", format="console"), stream=buffer)

    log = get_logger("gitwright.tests")
    log.info("hidden detail")
    log.warning("visible problem", attempts=3)
    logging.getLogger("apscheduler").info("hidden library detail")

    output = buffer.getvalue()
    assert "visible problem" in output
    assert "attempts" in output
    assert "hidden" not in output
