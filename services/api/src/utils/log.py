"""
Logging setup.

``init`` configures the root logger once per process: coloured,
human-readable lines in development, one JSON object per line in staging and
production (selected by ``ENVIRONMENT``). Modules then use plain stdlib
loggers from ``get_logger``.
"""

import json
import logging
import os
import sys
from datetime import datetime

JSON_ENVIRONMENTS = ("production", "prod", "staging")


class ColoredFormatter(logging.Formatter):
    COLORS = {
        "DEBUG": "\033[36m",
        "INFO": "\033[32m",
        "WARNING": "\033[33m",
        "ERROR": "\033[31m",
        "CRITICAL": "\033[35m",
    }
    ENDC = "\033[0m"

    def format(self, record: logging.LogRecord) -> str:
        timestamp = datetime.fromtimestamp(record.created).strftime("%H:%M:%S")
        color = self.COLORS.get(record.levelname, "")
        module_name = record.name if record.name != "__main__" else "main"
        line = f"[{timestamp}] {color}{record.levelname:8s}{self.ENDC} [{module_name}] {record.getMessage()}"
        if record.exc_info:
            line += "\n" + self.formatException(record.exc_info)
        return line


class JsonFormatter(logging.Formatter):
    def format(self, record: logging.LogRecord) -> str:
        entry = {
            "timestamp": datetime.fromtimestamp(record.created).isoformat(),
            "level": record.levelname,
            "module": record.name,
            "message": record.getMessage(),
            "environment": os.getenv("ENVIRONMENT", "unknown"),
        }
        if record.exc_info:
            entry["exception"] = self.formatException(record.exc_info)
        return json.dumps(entry)


_initialized = False


def init(level: str = "INFO", environment: str = None) -> None:
    global _initialized
    if _initialized:
        return

    environment = (environment or os.getenv("ENVIRONMENT", "development")).lower()
    handler = logging.StreamHandler(sys.stdout)
    if environment in JSON_ENVIRONMENTS:
        handler.setFormatter(JsonFormatter())
    else:
        handler.setFormatter(ColoredFormatter())

    root = logging.getLogger()
    root.handlers.clear()
    root.addHandler(handler)
    root.setLevel(getattr(logging, str(level).upper(), logging.INFO))

    # The Couchbase SDK and APScheduler are chatty at INFO
    logging.getLogger("apscheduler").setLevel(logging.WARNING)
    logging.getLogger("couchbase").setLevel(logging.WARNING)
    _initialized = True


def get_logger(name: str) -> logging.Logger:
    return logging.getLogger(name)
