from __future__ import annotations

import logging
import re
from pathlib import Path

from logfmter import Logfmter

from replybridge.adapters.config.schema import LoggingConfig

_API_KEY_PATTERN = re.compile(r"AIza[0-9A-Za-z_\-]{4,}")
_RECORD_DEFAULTS = set(vars(logging.makeLogRecord({})))


def redact_credentials(text: str) -> str:
    return _API_KEY_PATTERN.sub("AIza***", text)


class CredentialRedactingFilter(logging.Filter):
    """Masks Gemini API keys in messages, arguments and ``extra`` fields."""

    def filter(self, record: logging.LogRecord) -> bool:
        if isinstance(record.msg, str):
            record.msg = redact_credentials(record.msg)
        if isinstance(record.args, tuple):
            record.args = tuple(redact_credentials(arg) if isinstance(arg, str) else arg for arg in record.args)
        for key, value in list(vars(record).items()):
            if key not in _RECORD_DEFAULTS and isinstance(value, str):
                setattr(record, key, redact_credentials(value))
        return True


def configure_logging(config: LoggingConfig) -> logging.Logger:
    if config.logfmt_enabled:
        formatter = Logfmter(
            keys=["at", "when", "name", "msg"],
            mapping={"at": "levelname", "when": "asctime"},
            datefmt="%Y%m%d %H:%M:%S",
        )
    else:
        formatter = logging.Formatter("%(asctime)s %(levelname)s %(name)s %(message)s")

    logger = logging.getLogger("replybridge")
    level = getattr(logging, getattr(config, "log_level", "INFO").upper(), logging.INFO)
    logger.setLevel(level)
    redactor = CredentialRedactingFilter()

    stream_handler = logging.StreamHandler()
    stream_handler.setFormatter(formatter)
    stream_handler.addFilter(redactor)

    log_dir = Path(config.log_dir)
    log_dir.mkdir(parents=True, exist_ok=True)
    file_handler = logging.FileHandler(log_dir / "replybridge.log")
    file_handler.setFormatter(formatter)
    file_handler.addFilter(redactor)

    logger.handlers = [stream_handler, file_handler]
    logger.propagate = False
    return logger
