"""
Structured logging for the kernel.

All kernel modules log under the ``twoloop_kernel`` namespace. Structured
fields travel in ``extra={"structured": {...}}`` and are merged into the
JSON line by ``JSONFormatter``.

Usage:
    from twoloop_kernel.log import configure_logging, get_logger

    configure_logging(level="INFO")
    logger = get_logger("convergence")
    logger.info("run converged", extra={"structured": {"run_id": run.id}})
"""

import json
import logging
import sys
from datetime import datetime, timezone
from typing import Any, Optional

ROOT_LOGGER = "twoloop_kernel"


class JSONFormatter(logging.Formatter):
    """Formats log records as JSON lines."""

    def __init__(self, service_name: str = "twoloop_kernel"):
        super().__init__()
        self.service_name = service_name

    def format(self, record: logging.LogRecord) -> str:
        entry = {
            "timestamp": datetime.fromtimestamp(
                record.created, tz=timezone.utc
            ).isoformat(),
            "level": record.levelname,
            "logger": record.name,
            "message": record.getMessage(),
            "service.name": self.service_name,
        }

        if hasattr(record, "structured"):
            entry.update(record.structured)

        if record.exc_info and record.exc_info[0] is not None:
            entry["exception.type"] = record.exc_info[0].__name__
            entry["exception.message"] = str(record.exc_info[1])

        return json.dumps(entry, default=str)


def configure_logging(
    level: str = "INFO",
    stream: Any = None,
    json_format: bool = True,
    service_name: str = "twoloop_kernel",
) -> logging.Logger:
    """
    Attach a single stream handler to the kernel's root logger.

    Safe to call repeatedly; existing handlers are replaced.
    """
    logger = logging.getLogger(ROOT_LOGGER)
    log_level = getattr(logging, level.upper(), logging.INFO)
    logger.setLevel(log_level)
    logger.handlers.clear()

    handler = logging.StreamHandler(stream or sys.stderr)
    if json_format:
        handler.setFormatter(JSONFormatter(service_name=service_name))
    else:
        handler.setFormatter(
            logging.Formatter("%(asctime)s %(levelname)s %(name)s: %(message)s")
        )
    handler.setLevel(log_level)
    logger.addHandler(handler)
    logger.propagate = False
    return logger


def get_logger(name: Optional[str] = None) -> logging.Logger:
    """Get a child logger under the kernel namespace."""
    if name:
        return logging.getLogger(f"{ROOT_LOGGER}.{name}")
    return logging.getLogger(ROOT_LOGGER)
