"""Structured JSON logging utilities.

- JSON format for log aggregation (Datadog, CloudWatch, etc.)
- Includes request_id, event_id, reference, trace_id, span_id
- Standard fields: timestamp, level, message, module, func, line
"""

import json
import logging
from datetime import datetime, timezone
from typing import Any

from resortpay_api.context import event_id_var, reference_var, request_id_var
from resortpay_api.utils.sanitize import sanitize_exc, sanitize_obj, sanitize_str

# LogRecord attributes that are never copied into the JSON body as extras
_RESERVED_ATTRS = frozenset({
    "name",
    "msg",
    "args",
    "created",
    "filename",
    "funcName",
    "levelname",
    "levelno",
    "lineno",
    "module",
    "msecs",
    "message",
    "pathname",
    "process",
    "processName",
    "relativeCreated",
    "thread",
    "threadName",
    "taskName",
    "exc_info",
    "exc_text",
    "stack_info",
    "trace_id",
    "span_id",
    "otelTraceID",
    "otelSpanID",
    "otelServiceName",
    "otelTraceSampled",
})

_CONTEXT_FIELDS = (
    ("request_id", request_id_var),
    ("event_id", event_id_var),
    ("reference", reference_var),
)


class JSONFormatter(logging.Formatter):
    """JSON log formatter with request/reconciliation context.

    Formats log records as JSON with standard fields:
    - timestamp: ISO 8601 UTC
    - level: log level (INFO, ERROR, etc.)
    - message: log message
    - module: Python module name
    - func: function name
    - line: line number
    - request_id: from context variable (if available)
    - event_id: provider event being reconciled (if available)
    - reference: "<reference_type>:<reference_id>" (if available)
    - trace_id / span_id: OTel-injected or explicit extra kwargs

    Every extra field is passed through sanitize_obj() so card data, tokens
    and signatures never reach the log pipeline.
    """

    def format(self, record: logging.LogRecord) -> str:
        """Format log record as JSON string."""
        log_data: dict[str, Any] = {
            "timestamp": datetime.now(timezone.utc).isoformat(),
            "level": record.levelname,
            "message": sanitize_str(record.getMessage()),
            "module": record.module,
            "func": record.funcName,
            "line": record.lineno,
        }

        for field, var in _CONTEXT_FIELDS:
            value = var.get()
            if value:
                log_data[field] = value

        # OTel LoggingInstrumentor injects otelTraceID/otelSpanID into record
        trace_id = getattr(record, "otelTraceID", None) or getattr(record, "trace_id", None)
        span_id = getattr(record, "otelSpanID", None) or getattr(record, "span_id", None)

        if trace_id:
            log_data["trace_id"] = str(trace_id)
        if span_id:
            log_data["span_id"] = str(span_id)

        if record.exc_info:
            log_data["exc_info"] = sanitize_exc(record.exc_info)

        # Add any extra fields from logger.info(..., extra={...})
        for key, value in record.__dict__.items():
            if key not in _RESERVED_ATTRS:
                log_data[key] = sanitize_obj(value)

        return json.dumps(log_data, default=str)


def configure_json_logging(log_level: str = "INFO") -> None:
    """Configure root logger with JSON formatter.

    Args:
        log_level: Log level (DEBUG, INFO, WARNING, ERROR, CRITICAL)
    """
    root_logger = logging.getLogger()
    root_logger.setLevel(log_level)

    # Remove existing handlers
    for handler in root_logger.handlers[:]:
        root_logger.removeHandler(handler)

    handler = logging.StreamHandler()
    handler.setFormatter(JSONFormatter())
    root_logger.addHandler(handler)
