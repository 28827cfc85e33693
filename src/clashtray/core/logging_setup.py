"""Logging configuration and redaction helpers."""

from __future__ import annotations

import logging
import re
from logging.handlers import RotatingFileHandler
from pathlib import Path

from clashtray.core.storage import get_logs_dir

LOG_FILE_NAME = "app.log"
CORE_LOG_FILE_NAME = "core.log"
MAX_LOG_BYTES = 2 * 1024 * 1024
BACKUP_COUNT = 5


def setup_logging(*, level: int = logging.INFO) -> Path:
    logs_dir = get_logs_dir()
    logs_dir.mkdir(parents=True, exist_ok=True)
    log_path = logs_dir / LOG_FILE_NAME

    root = logging.getLogger()
    if root.handlers:
        return log_path

    root.setLevel(level)

    formatter = logging.Formatter(
        fmt="%(asctime)s %(levelname)s %(name)s: %(message)s",
        datefmt="%Y-%m-%d %H:%M:%S",
    )

    file_handler = RotatingFileHandler(
        log_path, maxBytes=MAX_LOG_BYTES, backupCount=BACKUP_COUNT, encoding="utf-8"
    )
    file_handler.setFormatter(formatter)

    console_handler = logging.StreamHandler()
    console_handler.setFormatter(formatter)

    root.addHandler(file_handler)
    root.addHandler(console_handler)

    return log_path


_BEARER_PATTERN = re.compile(r"(?i)\b(bearer\s+)[^\s,;'\"]+")
_SECRET_FIELD_PATTERN = re.compile(r"(?i)([\"']?secret[\"']?\s*[:=]\s*[\"']?)[^\s,;'\"}]+")


def redact(text: str) -> str:
    """Mask bearer tokens and ``secret`` values in free-form text."""
    if not text:
        return text
    text = _BEARER_PATTERN.sub(r"\1<redacted>", text)
    return _SECRET_FIELD_PATTERN.sub(r"\1<redacted>", text)
