"""Configure application logging using the Python standard library.

This module defines a function that sets up a root logger with both
console and rotating file handlers.  Logs are formatted as JSON for
structured logging and include the order and customer the record is
about when the caller passes them through ``extra``.
"""

import json
import logging
import logging.handlers
import os
from datetime import datetime, timezone

# Context attributes copied to the top level of each JSON record.
_CONTEXT_FIELDS = ("order_id", "customer_id", "product_id")


class JsonFormatter(logging.Formatter):
    """Format log records as JSON strings."""

    def format(self, record: logging.LogRecord) -> str:
        log_record = {
            "timestamp": datetime.fromtimestamp(record.created, timezone.utc).isoformat(),
            "level": record.levelname,
            "module": record.module,
            "message": record.getMessage(),
        }
        for name in _CONTEXT_FIELDS:
            if hasattr(record, name):
                log_record[name] = getattr(record, name)
        extra = getattr(record, "extra", None)
        if isinstance(extra, dict):
            # Merged into the top level rather than nested under "extra"
            log_record.update(extra)
        if record.exc_info:
            log_record["exception"] = self.formatException(record.exc_info)
        return json.dumps(log_record, default=str)


def configure_logging(log_dir: str = "logs", level: int = logging.INFO) -> None:
    """Configure root logger with JSON formatting and rotating file handler.

    Args:
        log_dir: Directory where log files are written.  The directory
            will be created if it does not exist.
        level: Logging level for the root logger.
    """
    os.makedirs(log_dir, exist_ok=True)
    logger = logging.getLogger()
    logger.setLevel(level)
    # Remove any default handlers (e.g. from basicConfig)
    for handler in list(logger.handlers):
        logger.removeHandler(handler)
    formatter = JsonFormatter()
    console_handler = logging.StreamHandler()
    console_handler.setFormatter(formatter)
    console_handler.setLevel(level)
    logger.addHandler(console_handler)
    file_handler = logging.handlers.RotatingFileHandler(
        filename=os.path.join(log_dir, "pos_orders.log"),
        maxBytes=5 * 1024 * 1024,  # 5 MB per log file
        backupCount=3,
        encoding="utf-8",
    )
    file_handler.setFormatter(formatter)
    file_handler.setLevel(level)
    logger.addHandler(file_handler)
