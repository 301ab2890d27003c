"""
Structured logging for the billing webhook (CloudWatch Logs Insights).

Every JSON log line carries the API Gateway request id and, once known,
the Stripe event being processed and the tenant it resolved to, so one
delivery can be traced across handler, reconciler and store logs.
"""

import json
import logging
import os
import uuid
from contextvars import ContextVar
from typing import Optional

# Context variables for request correlation
request_id_var: ContextVar[str] = ContextVar("request_id", default="")
event_context_var: ContextVar[dict] = ContextVar("event_context", default={})

_STANDARD_RECORD_FIELDS = (
    "name", "msg", "args", "created", "filename", "funcName",
    "levelname", "levelno", "lineno", "module", "msecs",
    "pathname", "process", "processName", "relativeCreated",
    "stack_info", "exc_info", "exc_text", "thread", "threadName",
    "taskName", "message", "asctime",
)


class StructuredFormatter(logging.Formatter):
    """JSON formatter; bound event context and `extra` fields become top-level keys."""

    def format(self, record: logging.LogRecord) -> str:
        log_entry = {
            "timestamp": self.formatTime(record),
            "level": record.levelname,
            "logger": record.name,
            "message": record.getMessage(),
            "request_id": request_id_var.get(),
            "function_name": os.environ.get("AWS_LAMBDA_FUNCTION_NAME", ""),
        }
        log_entry.update(event_context_var.get())

        for key, value in record.__dict__.items():
            if key not in _STANDARD_RECORD_FIELDS:
                log_entry[key] = value

        if record.exc_info:
            log_entry["exception"] = self.formatException(record.exc_info)

        return json.dumps(log_entry, default=str)


def configure_structured_logging(level: int = logging.INFO) -> logging.Logger:
    """
    Configure structured JSON logging for Lambda.

    Call this at the start of the handler. Replaces any handlers the
    runtime installed so each line is emitted once.
    """
    root_logger = logging.getLogger()
    root_logger.setLevel(level)

    for handler in root_logger.handlers[:]:
        root_logger.removeHandler(handler)

    handler = logging.StreamHandler()
    handler.setFormatter(StructuredFormatter())
    root_logger.addHandler(handler)

    return root_logger


def bind_event_context(**fields: Optional[str]) -> None:
    """Attach fields (stripe_event_id, event_type, tenant_id) to every later log line."""
    context = dict(event_context_var.get())
    context.update({key: value for key, value in fields.items() if value is not None})
    event_context_var.set(context)


def clear_event_context() -> None:
    event_context_var.set({})


def set_request_id(event: dict) -> str:
    """
    Extract or generate request ID and set in context.

    Args:
        event: Lambda event

    Returns:
        Request ID string
    """
    request_id = (event.get("requestContext") or {}).get("requestId")

    if not request_id:
        headers = event.get("headers") or {}
        request_id = headers.get("x-request-id") or headers.get("X-Request-Id")

    if not request_id:
        request_id = str(uuid.uuid4())

    request_id_var.set(request_id)
    return request_id


def log_api_request(
    logger: logging.Logger,
    method: str,
    path: str,
    status_code: int,
    latency_ms: float,
    event_type: Optional[str] = None,
) -> None:
    """Log webhook request outcome with standard fields."""
    logger.info(
        f"{method} {path} -> {status_code}",
        extra={
            "http_method": method,
            "path": path,
            "status_code": status_code,
            "latency_ms": latency_ms,
            "event_type": event_type or "unknown",
        }
    )


def log_external_call(
    logger: logging.Logger,
    service: str,
    operation: str,
    success: bool,
    latency_ms: float,
    error: Optional[str] = None,
) -> None:
    """Log external service call."""
    level = logging.INFO if success else logging.WARNING
    logger.log(
        level,
        f"External call to {service}: {operation} -> {'success' if success else 'failed'}",
        extra={
            "service": service,
            "operation": operation,
            "success": success,
            "latency_ms": latency_ms,
            "error": error,
        }
    )
