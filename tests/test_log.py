"""Tests for structured JSON logging."""

import io
import json

from twoloop_kernel.log import configure_logging, get_logger


class TestLogging:
    def test_structured_fields_merged(self):
        stream = io.StringIO()
        configure_logging(level="INFO", stream=stream)

        get_logger("orchestrator").info(
            "task routed", extra={"structured": {"task_id": "task_1", "status": "APPROVED"}},
        )

        entry = json.loads(stream.getvalue().strip())
        assert entry["message"] == "task routed"
        assert entry["logger"] == "twoloop_kernel.orchestrator"
        assert entry["level"] == "INFO"
        assert entry["task_id"] == "task_1"
        assert entry["status"] == "APPROVED"
        assert entry["service.name"] == "twoloop_kernel"

    def test_level_filters(self):
        stream = io.StringIO()
        configure_logging(level="WARNING", stream=stream)

        get_logger("jobs").info("job enqueued")

        assert stream.getvalue() == ""

    def test_exception_fields(self):
        stream = io.StringIO()
        configure_logging(stream=stream)

        try:
            raise ValueError("bad score")
        except ValueError:
            get_logger().exception("evaluation failed")

        entry = json.loads(stream.getvalue().strip())
        assert entry["exception.type"] == "ValueError"
        assert entry["exception.message"] == "bad score"

    def test_reconfigure_replaces_handler(self):
        first, second = io.StringIO(), io.StringIO()
        configure_logging(stream=first)
        logger = configure_logging(stream=second)

        get_logger("approval").warning("task expired")

        assert len(logger.handlers) == 1
        assert first.getvalue() == ""
        assert "task expired" in second.getvalue()

    def test_plain_format(self):
        stream = io.StringIO()
        configure_logging(stream=stream, json_format=False)
        get_logger("feedback").info("proposal created")
        assert "INFO twoloop_kernel.feedback: proposal created" in stream.getvalue()
