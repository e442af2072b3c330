"""Configure application logging using the Python standard library.

Sets up the root logger with a console handler and a rotating file
handler.  Records are rendered as one JSON object per line with the
timestamp, level, module and message, plus the request context fields
(``request_id``, ``user_id``) and any ``extra`` dict the caller attached.
"""

import json
import logging
import logging.handlers
import os
from datetime import datetime, UTC

_CONTEXT_FIELDS = ("request_id", "user_id")


class JsonFormatter(logging.Formatter):
    """Format log records as JSON strings."""

    def format(self, record: logging.LogRecord) -> str:
        log_record = {
            "timestamp": datetime.fromtimestamp(record.created, UTC).isoformat(),
            "level": record.levelname,
            "module": record.module,
            "message": record.getMessage(),
        }
        for field in _CONTEXT_FIELDS:
            if hasattr(record, field):
                log_record[field] = getattr(record, field)
        extra = getattr(record, "extra", None)
        if isinstance(extra, dict):
            # Flatten into the top level rather than nesting under "extra"
            log_record.update(extra)
        if record.exc_info:
            log_record["exc_info"] = self.formatException(record.exc_info)
        return json.dumps(log_record, default=str)


def configure_logging(log_dir: str = "logs", level: int | str = logging.INFO) -> None:
    """Configure root logger with JSON formatting and rotating file handler.

    Calling this again replaces the handlers installed by the previous call.

    Args:
        log_dir: Directory where log files are written.  Created if missing.
        level: Logging level for the root logger (number or level name).
    """
    os.makedirs(log_dir, exist_ok=True)
    root = logging.getLogger()
    root.setLevel(level)
    for handler in list(root.handlers):
        root.removeHandler(handler)
        handler.close()
    formatter = JsonFormatter()

    console_handler = logging.StreamHandler()
    console_handler.setFormatter(formatter)
    console_handler.setLevel(level)
    root.addHandler(console_handler)

    file_handler = logging.handlers.RotatingFileHandler(
        filename=os.path.join(log_dir, "storefront.log"),
        maxBytes=5 * 1024 * 1024,  # 5 MB per log file
        backupCount=3,
        encoding="utf-8",
    )
    file_handler.setFormatter(formatter)
    file_handler.setLevel(level)
    root.addHandler(file_handler)
