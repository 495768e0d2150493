"""
paged-genai :: Structured Logging

Everything logs under the "paged_genai" tree. Terminal output is one
colored line per record; with json_output (or PAGED_GENAI_LOG_JSON=1) each
record is one JSON object, which is also what log files always get.

    setup_logging("DEBUG", json_output=True)
    logger = get_logger("paged_genai.tokenizer")

INL - 2025
"""

import json
import logging
import sys
import time
from typing import Any, Dict, Optional

ROOT_LOGGER = "paged_genai"

# Record attributes copied into JSON lines / appended to terminal lines.
CONTEXT_FIELDS = ("request_id", "endpoint")


class JSONFormatter(logging.Formatter):
    """One JSON object per record."""

    def format(self, record: logging.LogRecord) -> str:
        entry: Dict[str, Any] = {
            "timestamp": self.formatTime(record, self.datefmt),
            "level": record.levelname,
            "logger": record.name,
            "message": record.getMessage(),
        }
        for name in CONTEXT_FIELDS:
            if hasattr(record, name):
                entry[name] = getattr(record, name)
        entry.update(getattr(record, "extra_data", None) or {})
        if record.exc_info and record.exc_info[1]:
            entry["exception"] = self.formatException(record.exc_info)
        return json.dumps(entry, default=str)


class HumanFormatter(logging.Formatter):
    """`12:00:01 [   INFO] paged_genai.tokenizer: message [req=3 /v1/tokenize]`"""

    COLORS = {
        "DEBUG": "\033[36m",
        "INFO": "\033[32m",
        "WARNING": "\033[33m",
        "ERROR": "\033[31m",
        "CRITICAL": "\033[41m",
    }
    RESET = "\033[0m"

    def __init__(self, color: bool = True):
        super().__init__()
        self.color = color

    def format(self, record: logging.LogRecord) -> str:
        level = f"[{record.levelname:>7}]"
        if self.color:
            level = f"{self.COLORS.get(record.levelname, '')}{level}{self.RESET}"
        msg = f"{self.formatTime(record, '%H:%M:%S')} {level} {record.name}: {record.getMessage()}"

        tags = []
        if hasattr(record, "request_id"):
            tags.append(f"req={record.request_id}")
        if hasattr(record, "endpoint"):
            tags.append(str(record.endpoint))
        if tags:
            msg += f" [{' '.join(tags)}]"
        extra = getattr(record, "extra_data", None)
        if extra:
            msg += " " + " ".join(f"{k}={v}" for k, v in extra.items())
        if record.exc_info and record.exc_info[1]:
            msg += "\n" + self.formatException(record.exc_info)
        return msg


def setup_logging(
    level: str = "INFO",
    json_output: bool = False,
    log_file: Optional[str] = None,
) -> logging.Logger:
    """
    (Re)configure the paged_genai logger tree. Safe to call more than once:
    handlers from a previous call are closed and replaced.

    Args:
        level: DEBUG, INFO, WARNING or ERROR
        json_output: JSON lines on stderr instead of colored text
        log_file: also append JSON lines to this file
    """
    logger = logging.getLogger(ROOT_LOGGER)
    logger.setLevel(getattr(logging, level.upper(), logging.INFO))
    for handler in list(logger.handlers):
        logger.removeHandler(handler)
        handler.close()

    console = logging.StreamHandler(sys.stderr)
    console.setFormatter(JSONFormatter() if json_output else HumanFormatter(color=sys.stderr.isatty()))
    logger.addHandler(console)

    if log_file:
        fh = logging.FileHandler(log_file)
        fh.setFormatter(JSONFormatter())
        logger.addHandler(fh)

    return logger


def get_logger(name: str = ROOT_LOGGER) -> logging.Logger:
    return logging.getLogger(name)


class RequestLogger:
    """
    Logger bound to one HTTP request: every record carries the request id
    and endpoint, keyword arguments land in the JSON entry.

        req_log = RequestLogger(7, logger, endpoint="/v1/tokenize")
        req_log.error("render failed", elapsed_ms=req_log.elapsed_ms())
    """

    def __init__(self, request_id, logger: Optional[logging.Logger] = None, endpoint: Optional[str] = None):
        self.request_id = request_id
        self.endpoint = endpoint
        self.logger = logger or get_logger()
        self.start_time = time.perf_counter()

    def _log(self, level: int, msg: str, fields: Dict[str, Any]):
        extra: Dict[str, Any] = {"request_id": self.request_id, "extra_data": fields}
        if self.endpoint is not None:
            extra["endpoint"] = self.endpoint
        self.logger.log(level, msg, extra=extra)

    def debug(self, msg: str, **fields):
        self._log(logging.DEBUG, msg, fields)

    def info(self, msg: str, **fields):
        self._log(logging.INFO, msg, fields)

    def warning(self, msg: str, **fields):
        self._log(logging.WARNING, msg, fields)

    def error(self, msg: str, **fields):
        self._log(logging.ERROR, msg, fields)

    def elapsed_ms(self) -> float:
        return (time.perf_counter() - self.start_time) * 1000
