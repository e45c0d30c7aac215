# FlowB Logger Module
# © 2026 FlowB Project
# Licensed under the Apache License, Version 2.0

import logging
import json
import os
from datetime import datetime, timezone
from pathlib import Path

# Log directory (override with FLOWB_LOG_DIR)
LOG_DIR = Path(os.getenv("FLOWB_LOG_DIR", Path(__file__).parent / "logs"))
LOG_DIR.mkdir(parents=True, exist_ok=True)

TRUST_LOG_FILE = LOG_DIR / "flowb.log"
ACTIVITY_LOG_FILE = LOG_DIR / "flowb.json"
ERROR_LOG_FILE = LOG_DIR / "errors.log"

CONSOLE_LEVEL = os.getenv("LOG_LEVEL", "info").upper()

# Activity fields that must never reach a log file in full
SECRET_FIELDS = {"token", "password", "init_data", "admin_key", "signature", "api_key"}

LINE_FORMAT = '[%(asctime)s] [%(levelname)-8s] [%(name)s] %(message)s'


class ActivityFormatter(logging.Formatter):
    """One JSON object per line; activity category and fields kept as keys"""

    def format(self, record):
        entry = {
            "ts": datetime.fromtimestamp(record.created, timezone.utc).isoformat(),
            "level": record.levelname,
            "logger": record.name,
            "category": getattr(record, "category", None),
            "message": record.getMessage(),
            "where": f"{record.module}:{record.lineno}",
        }
        fields = getattr(record, "fields", None)
        if fields:
            entry["fields"] = fields
        if record.exc_info:
            entry["exception"] = self.formatException(record.exc_info)
        return json.dumps(entry, ensure_ascii=False, default=str)


def _file_handler(path: Path, level, formatter) -> logging.Handler:
    handler = logging.FileHandler(path, encoding='utf-8')
    handler.setLevel(level)
    handler.setFormatter(formatter)
    return handler


def setup_logger(name):
    """Logger with the trust log, JSON activity log, error log and console handlers"""
    logger = logging.getLogger(name)
    logger.setLevel(logging.DEBUG)

    # Avoid duplicate handlers on re-import
    if logger.handlers:
        return logger

    console = logging.StreamHandler()
    console.setLevel(getattr(logging, CONSOLE_LEVEL, logging.INFO))
    console.setFormatter(logging.Formatter('[%(asctime)s] %(message)s', datefmt='%H:%M:%S'))

    for handler in (
        _file_handler(TRUST_LOG_FILE, logging.DEBUG, logging.Formatter(LINE_FORMAT, datefmt='%Y-%m-%d %H:%M:%S')),
        _file_handler(ACTIVITY_LOG_FILE, logging.INFO, ActivityFormatter()),
        _file_handler(ERROR_LOG_FILE, logging.ERROR, logging.Formatter(LINE_FORMAT)),
        console,
    ):
        logger.addHandler(handler)
    logger.propagate = False

    return logger


# ===== STANDARD LOGGER =====
logger = setup_logger("FlowB")

# ===== CATEGORY LOGGERS =====
auth_logger = setup_logger("FlowB.Auth")          # Identity claims + tokens
chain_logger = setup_logger("FlowB.Chain")        # On-chain payment checks
checkin_logger = setup_logger("FlowB.Checkin")    # Proximity / QR check-ins
db_logger = setup_logger("FlowB.Database")        # Record store
api_logger = setup_logger("FlowB.API")            # HTTP requests


def short(value, keep: int = 10) -> str:
    """Truncate identifiers (tx hashes, tokens) for log lines"""
    value = str(value or "")
    return value if len(value) <= keep else f"{value[:keep]}..."


def scrub(fields: dict) -> dict:
    return {k: (short(v, 6) if k in SECRET_FIELDS else v) for k, v in fields.items()}


def log_activity(level, category, message, **fields):
    """
    Log a trust decision with a category tag and structured fields

    The text line carries "key=value" pairs; the JSON activity log keeps
    category and fields as separate keys. Secret-looking fields are truncated.

    Example:
        log_activity("INFO", "CHAIN", "Sponsorship verified", sponsorship="sp-1", amount="5.00")
    """
    fields = scrub(fields)
    line = f"[{category}] {message}"
    if fields:
        line += " | " + " | ".join(f"{k}={v}" for k, v in fields.items())

    logger.log(
        getattr(logging, level.upper(), logging.INFO),
        line,
        extra={"category": category, "fields": fields},
    )
