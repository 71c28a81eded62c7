"""Root logger setup with run/node correlation.

The engine binds ``ctx_run_id`` and ``ctx_workflow_id`` for the lifetime of a
run, the scheduler binds ``ctx_node_id`` around each node, and the loop
executor binds ``ctx_iteration`` around each body pass.  A logging filter
copies whichever are set onto every record, so both the JSON and the text
formatter can show them.
"""

from __future__ import annotations

import contextvars
import logging
import sys

from pythonjsonlogger import jsonlogger

ctx_run_id: contextvars.ContextVar[str | None] = contextvars.ContextVar("run_id", default=None)
ctx_workflow_id: contextvars.ContextVar[str | None] = contextvars.ContextVar("workflow_id", default=None)
ctx_node_id: contextvars.ContextVar[str | None] = contextvars.ContextVar("node_id", default=None)
ctx_iteration: contextvars.ContextVar[int | None] = contextvars.ContextVar("iteration", default=None)

_CORRELATION_VARS = (
    ("run_id", ctx_run_id),
    ("workflow_id", ctx_workflow_id),
    ("node_id", ctx_node_id),
    ("iteration", ctx_iteration),
)

_NOISY_LOGGERS = ("httpx", "httpcore", "uvicorn.access")


class CorrelationFilter(logging.Filter):
    """Attach the bound correlation ids to each record."""

    def filter(self, record: logging.LogRecord) -> bool:
        tags = []
        for field, var in _CORRELATION_VARS:
            value = var.get()
            setattr(record, field, value)
            if value is not None:
                tags.append(f"{field}={value}")
        record.correlation = f" [{' '.join(tags)}]" if tags else ""
        return True


class CorrelationJsonFormatter(jsonlogger.JsonFormatter):
    def add_fields(self, log_record, record, message_dict):
        super().add_fields(log_record, record, message_dict)
        log_record.pop("correlation", None)
        for field, _ in _CORRELATION_VARS:
            if log_record.get(field) is None:
                log_record.pop(field, None)


def setup_logger(log_format: str = "text", log_level: str = "INFO") -> logging.Logger:
    """Replace the root handlers with a single stdout handler.

    ``log_format="json"`` emits one JSON object per line; anything else
    uses a plain text line with the correlation ids in brackets.
    """
    root = logging.getLogger()
    for existing in list(root.handlers):
        root.removeHandler(existing)

    handler = logging.StreamHandler(sys.stdout)
    handler.addFilter(CorrelationFilter())
    if log_format.lower() == "json":
        handler.setFormatter(CorrelationJsonFormatter(
            "%(asctime)s %(levelname)s %(name)s %(message)s",
            rename_fields={"levelname": "level", "asctime": "timestamp"},
        ))
    else:
        handler.setFormatter(logging.Formatter(
            "%(asctime)s %(levelname)-7s %(name)s%(correlation)s: %(message)s"
        ))
    root.addHandler(handler)
    root.setLevel(getattr(logging, log_level.upper(), logging.INFO))

    for name in _NOISY_LOGGERS:
        logging.getLogger(name).setLevel(logging.WARNING)
    return root
