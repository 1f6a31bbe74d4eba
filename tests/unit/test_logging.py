"""Unit tests for relay logging setup."""

import logging
import sys

import pytest

from voice_relay.utils.logging import (
    LOG_FORMAT,
    NOISY_LOGGERS,
    ContextFormatter,
    record_context,
    setup_logging,
)


def make_record(msg: str = "Route removed", **extra: object) -> logging.LogRecord:
    record = logging.LogRecord("voice_relay.routes", logging.INFO, __file__, 1, msg, (), None)
    record.__dict__.update(extra)
    return record


class TestContextFormatter:
    def test_extra_rendered_as_json(self) -> None:
        record = make_record(identity="alice", route="from-alice")

        line = ContextFormatter(LOG_FORMAT).format(record)

        assert line.endswith('Route removed {"identity": "alice", "route": "from-alice"}')
        assert " - voice_relay.routes - INFO - " in line

    def test_no_extra_leaves_message_alone(self) -> None:
        line = ContextFormatter(LOG_FORMAT).format(make_record())

        assert line.endswith("INFO - Route removed")

    def test_unserializable_values_use_str(self) -> None:
        record = make_record(missing={"LIVEKIT_URL"})

        line = ContextFormatter(LOG_FORMAT).format(record)

        assert "LIVEKIT_URL" in line

    def test_context_precedes_traceback(self) -> None:
        try:
            raise RuntimeError("boom")
        except RuntimeError:
            record = logging.LogRecord(
                "voice_relay.coordinator",
                logging.ERROR,
                __file__,
                1,
                "Background task failed",
                (),
                sys.exc_info(),
            )
        record.task = "join-alice"

        line = ContextFormatter(LOG_FORMAT).format(record)

        first, _, rest = line.partition("\n")
        assert first.endswith('Background task failed {"task": "join-alice"}')
        assert "RuntimeError: boom" in rest

    def test_record_context_from_logger(self, caplog: pytest.LogCaptureFixture) -> None:
        logger = logging.getLogger("voice_relay.test")

        with caplog.at_level(logging.INFO, logger="voice_relay.test"):
            logger.info("Voice assigned", extra={"identity": "bob", "voice_id": "v1"})

        assert record_context(caplog.records[0]) == {"identity": "bob", "voice_id": "v1"}


def test_setup_logging_quiets_third_party() -> None:
    root = logging.getLogger()
    saved_handlers, saved_level = root.handlers[:], root.level
    root.handlers = []
    try:
        setup_logging("INFO")

        assert isinstance(root.handlers[0].formatter, ContextFormatter)
        assert root.level == logging.INFO
        for name in NOISY_LOGGERS:
            assert logging.getLogger(name).level == logging.WARNING
    finally:
        root.handlers = saved_handlers
        root.setLevel(saved_level)
        for name in NOISY_LOGGERS:
            logging.getLogger(name).setLevel(logging.NOTSET)
