"""Unit tests for structured logging."""

import json
import logging
from io import StringIO

import pytest

from daily_news.logging_config import StructuredFormatter, create_execution_logger


@pytest.fixture
def log_stream():
    stream = StringIO()
    handler = logging.StreamHandler(stream)
    handler.setFormatter(StructuredFormatter())
    logger = logging.getLogger("daily_news")
    original_level = logger.level
    logger.addHandler(handler)
    logger.setLevel(logging.DEBUG)
    yield stream
    logger.removeHandler(handler)
    logger.setLevel(original_level)


def _records(stream: StringIO) -> list[dict]:
    return [json.loads(line) for line in stream.getvalue().splitlines() if line.strip()]


class TestStructuredLogging:
    def test_context_and_extra_fields_serialized(self, log_stream):
        logger = create_execution_logger("pipeline", "exec-1")
        logger.info("Processed feed", source_name="GeekNews", items_count=3)

        record = _records(log_stream)[-1]
        assert record["message"] == "Processed feed"
        assert record["level"] == "INFO"
        assert record["logger"] == "daily_news.pipeline"
        assert record["execution_id"] == "exec-1"
        assert record["component"] == "pipeline"
        assert record["source_name"] == "GeekNews"
        assert record["items_count"] == 3

    def test_korean_text_not_escaped(self, log_stream):
        logger = create_execution_logger("pipeline", "exec-2")
        logger.info("새로운 뉴스 없음")

        assert "새로운 뉴스 없음" in log_stream.getvalue()

    def test_execution_end_reports_duration(self, log_stream):
        logger = create_execution_logger("main", "exec-3")
        logger.log_execution_start()
        logger.log_execution_end(success=False, error="boom")

        record = _records(log_stream)[-1]
        assert record["execution_success"] is False
        assert record["execution_duration_seconds"] >= 0
        assert record["error"] == "boom"

    def test_failed_item_logged_as_error(self, log_stream):
        logger = create_execution_logger("pipeline", "exec-4")
        logger.log_item_processing("Some title", "skipped", success=False)

        record = _records(log_stream)[-1]
        assert record["level"] == "ERROR"
        assert record["item_title"] == "Some title"
        assert record["action"] == "skipped"

    def test_location_points_at_caller(self, log_stream):
        logger = create_execution_logger("pipeline", "exec-5")
        logger.info("plain")
        logger.log_feed_processing("GeekNews", 5, 2)
        logger.log_item_processing("Some title", "persisted")

        for record in _records(log_stream)[-3:]:
            assert record["location"].startswith(
                "test_logging_unit.test_location_points_at_caller:"
            )

    def test_generated_execution_id(self):
        logger = create_execution_logger("main")
        assert logger.execution_id.startswith("exec_")
