"""Activity log lines and structured JSON entries"""

import json
import logging

from logger import ActivityFormatter, log_activity, logger, scrub, short


class Capture(logging.Handler):

    def __init__(self):
        super().__init__()
        self.records = []

    def emit(self, record):
        self.records.append(record)


def capture_activity(*args, **fields):
    handler = Capture()
    logger.addHandler(handler)
    try:
        log_activity(*args, **fields)
    finally:
        logger.removeHandler(handler)
    return handler.records[-1]


class TestLogger:

    def test_short(self):
        assert short("0x" + "ab" * 32) == "0xabababab..."
        assert short("abc") == "abc"
        assert short(None) == ""

    def test_secret_fields_truncated(self):
        scrubbed = scrub({"token": "eyJhbGciOiJIUzI1NiJ9.payload", "subject": "telegram_42"})
        assert scrubbed == {"token": "eyJhbG...", "subject": "telegram_42"}

    def test_activity_line_and_fields(self):
        record = capture_activity("WARNING", "CHAIN", "Sponsorship rejected", sponsorship="sp-1", reason="tx_failed")
        assert record.levelno == logging.WARNING
        assert record.getMessage() == "[CHAIN] Sponsorship rejected | sponsorship=sp-1 | reason=tx_failed"

        entry = json.loads(ActivityFormatter().format(record))
        assert entry["category"] == "CHAIN"
        assert entry["fields"] == {"sponsorship": "sp-1", "reason": "tx_failed"}
        assert entry["level"] == "WARNING"

    def test_unknown_level_falls_back_to_info(self):
        record = capture_activity("CHATTY", "AUTH", "Session issued")
        assert record.levelno == logging.INFO
        assert "fields" not in json.loads(ActivityFormatter().format(record))
