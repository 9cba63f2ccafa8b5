"""The logging configuration module."""

import json
import logging
import sys
from datetime import datetime, timezone
from typing import Optional

# Dimensions promoted to top-level keys so log queries can join on them.
CORRELATION_KEYS = ("request_id", "tenant_id", "event_id", "event_type")

_RECORD_ATTRIBUTES = frozenset(logging.makeLogRecord({}).__dict__) | {
    "message",
    "asctime",
    "taskName",
    "custom_dimensions",
}


class JSONFormatter(logging.Formatter):
    """Render each record as a single JSON line.

    Context attached with ``ContextualLogger.with_context`` lands under
    ``custom_dimensions``; the correlation keys are also copied to the top level.
    """

    def format(self, record: logging.LogRecord) -> str:
        """Format the log record as JSON.

        Args:
        ----
            record (logging.LogRecord): The log record to format

        Returns:
        -------
            str: JSON-formatted log message

        """
        entry = {
            "timestamp": datetime.fromtimestamp(record.created, tz=timezone.utc).isoformat(),
            "level": record.levelname,
            "logger": record.name,
            "message": record.getMessage(),
            "location": f"{record.module}.{record.funcName}:{record.lineno}",
        }

        dimensions = getattr(record, "custom_dimensions", None) or {}
        for key in CORRELATION_KEYS:
            if dimensions.get(key) is not None:
                entry[key] = dimensions[key]
        if dimensions:
            entry["custom_dimensions"] = dimensions

        # Ad hoc ``extra=`` fields
        for key, value in record.__dict__.items():
            if key not in _RECORD_ATTRIBUTES and key not in entry:
                entry[key] = value

        if record.exc_info:
            entry["exception"] = self.formatException(record.exc_info)

        return json.dumps(entry, default=str)


class ContextualLogger(logging.LoggerAdapter):
    """Logger adapter carrying billing context (tenant, event, request) as dimensions."""

    def __init__(self, logger: logging.Logger, dimensions: Optional[dict] = None) -> None:
        """Wrap ``logger`` with a fixed set of dimensions."""
        super().__init__(logger, {})
        self.dimensions = dimensions or {}

    def process(self, msg: str, kwargs: dict) -> tuple[str, dict]:
        """Merge the bound dimensions into the record's extra."""
        if self.dimensions:
            extra = kwargs.setdefault("extra", {})
            extra["custom_dimensions"] = {**self.dimensions, **extra.get("custom_dimensions", {})}
        return msg, kwargs

    def with_context(self, **dimensions: str | int | float | bool | None) -> "ContextualLogger":
        """Return a logger with ``dimensions`` added to the current ones.

        Args:
        ----
            dimensions: Keyword arguments to add to dimensions

        Returns:
        -------
            ContextualLogger: New logger instance with updated dimensions

        """
        return ContextualLogger(self.logger, {**self.dimensions, **dimensions})


class LoggerConfigurator:
    """Builds stdout loggers for the service.

    Context is bound where work enters the service: the API context dependency,
    the webhook dispatcher and the reconciliation sweep.

    ```python
    logger = LoggerConfigurator.configure_logger(__name__, dimensions={"component": "sweep"})
    logger.with_context(tenant_id=str(tenant.id)).info("Reminder sent")
    ```

    Text output when LOCAL_DEVELOPMENT is set, JSON otherwise, at LOG_LEVEL.
    """

    @staticmethod
    def configure_logger(name: str, dimensions: Optional[dict] = None) -> ContextualLogger:
        """Configure the named logger once and wrap it with ``dimensions``."""
        base = logging.getLogger(name)

        # Import settings here to avoid circular imports
        from billflow.core.config import settings

        base.setLevel(getattr(logging, settings.LOG_LEVEL.upper(), logging.INFO))
        base.propagate = False

        if not getattr(base, "_billflow_configured", False):
            handler = logging.StreamHandler(sys.stdout)
            if settings.LOCAL_DEVELOPMENT:
                handler.setFormatter(
                    logging.Formatter("%(asctime)s - %(name)s - %(levelname)s - %(message)s")
                )
            else:
                handler.setFormatter(JSONFormatter())
            base.handlers = [handler]
            base._billflow_configured = True

        return ContextualLogger(base, dimensions)


# Default logger instance
logger = LoggerConfigurator.configure_logger("billflow")
