"""JSON logging for the ingestion job.

Every record is one JSON object on stdout so CloudWatch Logs Insights can
filter on ``execution_id``, ``component`` and whatever fields a call adds.
"""

import json
import logging
import sys
import time
from datetime import UTC, datetime
from typing import Any

ROOT_LOGGER_NAME = "daily_news"
NOISY_LOGGERS = ("botocore", "boto3", "urllib3")

_STANDARD_ATTRS = frozenset(
    logging.LogRecord("", 0, "", 0, "", (), None).__dict__
) | {"message", "asctime", "taskName"}


class StructuredFormatter(logging.Formatter):
    """Renders a record and its ``extra`` fields as a JSON line."""

    def format(self, record: logging.LogRecord) -> str:
        payload: dict[str, Any] = {
            "timestamp": datetime.fromtimestamp(record.created, UTC).isoformat(),
            "level": record.levelname,
            "logger": record.name,
            "message": record.getMessage(),
            "location": f"{record.module}.{record.funcName}:{record.lineno}",
        }
        payload.update(
            (name, value)
            for name, value in record.__dict__.items()
            if name not in _STANDARD_ATTRS and not name.startswith("_")
        )
        if record.exc_info:
            payload["exception"] = self.formatException(record.exc_info)
        # Korean titles and messages stay readable in the log stream
        return json.dumps(payload, ensure_ascii=False, default=str)


class ExecutionLogger:
    """Component logger that stamps every record with the run's context."""

    def __init__(self, execution_id: str, component: str = "main"):
        self.execution_id = execution_id
        self.component = component
        self.logger = logging.getLogger(f"{ROOT_LOGGER_NAME}.{component}")
        self._started: float | None = None

    def _emit(self, level: int, message: str, fields: dict[str, Any]) -> None:
        if not self.logger.isEnabledFor(level):
            return
        context = {"execution_id": self.execution_id, "component": self.component}
        context.update(fields)
        # report the caller of the public helper, not this module
        self.logger.log(level, message, extra=context, stacklevel=3)

    def debug(self, message: str, **fields) -> None:
        self._emit(logging.DEBUG, message, fields)

    def info(self, message: str, **fields) -> None:
        self._emit(logging.INFO, message, fields)

    def warning(self, message: str, **fields) -> None:
        self._emit(logging.WARNING, message, fields)

    def error(self, message: str, **fields) -> None:
        self._emit(logging.ERROR, message, fields)

    def log_execution_start(self, **fields) -> None:
        self._started = time.monotonic()
        self._emit(logging.INFO, f"{self.component} started", fields)

    def log_execution_end(self, success: bool = True, **fields) -> None:
        """Close the span opened by log_execution_start."""
        duration = None
        if self._started is not None:
            duration = round(time.monotonic() - self._started, 3)
        self._emit(
            logging.INFO if success else logging.ERROR,
            f"{self.component} {'finished' if success else 'failed'}",
            {"execution_success": success, "execution_duration_seconds": duration, **fields},
        )

    def log_feed_processing(self, source_name: str, items_count: int, new_count: int) -> None:
        self._emit(
            logging.INFO,
            f"{source_name}: {new_count} new of {items_count} items",
            {"source_name": source_name, "items_count": items_count, "new_count": new_count},
        )

    def log_item_processing(
        self, item_title: str, action: str, success: bool = True, **fields
    ) -> None:
        self._emit(
            logging.INFO if success else logging.ERROR,
            f"Item {action}: {item_title}",
            {"item_title": item_title, "action": action, "success": success, **fields},
        )

    def log_metrics(self, metrics: dict[str, Any]) -> None:
        self._emit(logging.INFO, "Run metrics", {"metrics": metrics})


def setup_structured_logging(log_level: str = "INFO") -> None:
    """Route all logging to stdout as JSON.

    Args:
        log_level: Level name for the job's loggers (DEBUG, INFO, WARNING, ERROR)

    Raises:
        ValueError: If the level name is unknown
    """
    level = logging.getLevelName(log_level.upper())
    if not isinstance(level, int):
        raise ValueError(f"Unknown log level: {log_level}")

    handler = logging.StreamHandler(sys.stdout)
    handler.setFormatter(StructuredFormatter())

    # Lambda installs its own handler on the root logger
    root = logging.getLogger()
    root.handlers = [handler]
    root.setLevel(level)

    logging.getLogger(ROOT_LOGGER_NAME).setLevel(level)
    for name in NOISY_LOGGERS:
        logging.getLogger(name).setLevel(logging.WARNING)


def create_execution_logger(component: str, execution_id: str | None = None) -> ExecutionLogger:
    """ExecutionLogger for ``component``; a fresh ``exec_`` id is minted when none is given."""
    if not execution_id:
        execution_id = f"exec_{datetime.now(UTC).strftime('%Y%m%d_%H%M%S_%f')}"
    return ExecutionLogger(execution_id, component)
