"""
Tests for the structured JSON logger
"""
import json
import logging

import pytest

from core.utils.logging import SERVICE_NAME, StructuredLogger


class RecordingHandler(logging.Handler):
    def __init__(self):
        super().__init__()
        self.records = []

    def emit(self, record):
        self.records.append(record)


@pytest.fixture
def root_handler():
    handler = RecordingHandler()
    root = logging.getLogger()
    root.addHandler(handler)
    yield handler
    root.removeHandler(handler)


class TestStructuredLogger:

    def test_each_entry_is_emitted_once(self, root_handler):
        structured = StructuredLogger("order_pipeline.test_once")
        own_handler = RecordingHandler()
        structured.logger.addHandler(own_handler)

        structured.info(message="Retry sweep complete", job="retry_sweep", metadata={"processed": 2})

        assert root_handler.records == []
        assert len(own_handler.records) == 1
        entry = json.loads(own_handler.records[0].getMessage())
        assert entry["message"] == "Retry sweep complete"
        assert entry["job"] == "retry_sweep"
        assert entry["service"] == SERVICE_NAME
        assert entry["metadata"] == {"processed": 2}

    def test_exceptions_are_described(self):
        structured = StructuredLogger("order_pipeline.test_errors")
        own_handler = RecordingHandler()
        structured.logger.addHandler(own_handler)

        structured.error(message="Dispatch failed", order_id="abc", exception=ValueError("bad address"))

        entry = json.loads(own_handler.records[0].getMessage())
        assert entry["level"] == "ERROR"
        assert entry["order_id"] == "abc"
        assert entry["exception"] == {"type": "ValueError", "message": "bad address"}
