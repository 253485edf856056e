"""
Tests for structured JSON logging and correlation context.
"""

import json
import logging

import pytest

from ace_assistant.config import settings
from ace_assistant.core.structured_logging import (
    conversation_id_var,
    request_id_var,
    setup_logging,
    turn_id_var,
)


@pytest.fixture
def log_file(tmp_path):
    setup_logging(log_dir=str(tmp_path), log_file="test.jsonl")
    yield tmp_path / "test.jsonl"
    setup_logging(log_dir=settings.log_dir, log_file=settings.log_file)


def _entries(path):
    for handler in logging.getLogger().handlers:
        handler.flush()
    return [json.loads(line) for line in path.read_text().splitlines() if line.strip()]


class TestStructuredLogging:
    def test_extra_fields_and_context(self, log_file):
        tokens = [
            (request_id_var, request_id_var.set("req-9")),
            (conversation_id_var, conversation_id_var.set("conv-3")),
            (turn_id_var, turn_id_var.set("turn-1")),
        ]
        try:
            logging.getLogger("ace_assistant.tests").info(
                "tool_call_finished", extra={"tool": "runSql", "duration_ms": 4.2}
            )
        finally:
            for var, token in reversed(tokens):
                var.reset(token)

        entry = _entries(log_file)[-1]
        assert entry["event"] == "tool_call_finished"
        assert entry["level"] == "info"
        assert entry["service"] == "ace-assistant"
        assert entry["tool"] == "runSql"
        assert entry["duration_ms"] == 4.2
        assert entry["request_id"] == "req-9"
        assert entry["conversation_id"] == "conv-3"
        assert entry["turn_id"] == "turn-1"

    def test_unset_context_omitted(self, log_file):
        logging.getLogger("ace_assistant.tests").warning("probe_failed")
        entry = _entries(log_file)[-1]
        assert entry["level"] == "warning"
        assert "request_id" not in entry
        assert "turn_id" not in entry

    def test_level_name_accepted(self, tmp_path):
        setup_logging(log_dir=str(tmp_path), log_file="quiet.jsonl", log_level="warning")
        try:
            logging.getLogger("ace_assistant.tests").info("dropped")
            logging.getLogger("ace_assistant.tests").error("kept")
            events = [entry["event"] for entry in _entries(tmp_path / "quiet.jsonl")]
        finally:
            setup_logging(log_dir=settings.log_dir, log_file=settings.log_file)
        assert events == ["kept"]
