"""
Structured logging with automatic trace context propagation.

Key Features:
- Standard logger.info() calls get run context automatically
- ContextVar-based propagation: async-safe, and copied into the worker
  threads that run synchronous nodes
- Dual output modes: JSON for production, human-readable for development

Architecture:
    GraphRunner.arun() -> sets run_id and graph_id once
        | (automatic propagation via ContextVar)
    GraphExecutor step loop -> adds step
        | (each task runs in its own context copy)
    Node invocation -> adds node_id
        |
    Node code -> logger.info("message") gets all of the above
"""

import json
import logging
import os
import re
from contextvars import ContextVar
from datetime import UTC, datetime
from typing import Any

trace_context: ContextVar[dict[str, Any] | None] = ContextVar("weft_trace_context", default=None)

ANSI_ESCAPE_PATTERN = re.compile(r"\x1b\[[0-9;]*m|\033\[[0-9;]*m")

_EXTRA_FIELDS = ("event", "node_id", "step", "batch_id", "latency_ms")


def strip_ansi_codes(text: str) -> str:
    """Remove ANSI escape codes from text for clean JSON logging."""
    return ANSI_ESCAPE_PATTERN.sub("", text)


class StructuredFormatter(logging.Formatter):
    """
    JSON formatter for structured logging.

    Produces machine-parseable entries with the standard fields, the
    current trace context (run_id, graph_id, step, node_id), and any
    known fields passed through ``extra``.
    """

    def format(self, record: logging.LogRecord) -> str:
        context = trace_context.get() or {}

        log_entry: dict[str, Any] = {
            "timestamp": datetime.now(UTC).isoformat(),
            "level": record.levelname.lower(),
            "logger": record.name,
            "message": strip_ansi_codes(record.getMessage()),
        }
        log_entry.update(context)

        for name in _EXTRA_FIELDS:
            value = getattr(record, name, None)
            if value is not None:
                log_entry[name] = value

        if record.exc_info:
            log_entry["exception"] = strip_ansi_codes(self.formatException(record.exc_info))

        return json.dumps(log_entry, default=str)


class HumanReadableFormatter(logging.Formatter):
    """Colourised formatter for development, prefixed with run context."""

    COLORS = {
        "DEBUG": "\033[36m",  # Cyan
        "INFO": "\033[32m",  # Green
        "WARNING": "\033[33m",  # Yellow
        "ERROR": "\033[31m",  # Red
        "CRITICAL": "\033[35m",  # Magenta
    }
    RESET = "\033[0m"

    def format(self, record: logging.LogRecord) -> str:
        context = trace_context.get() or {}

        prefix_parts = []
        if run_id := context.get("run_id"):
            prefix_parts.append(f"run:{str(run_id)[:8]}")
        if graph_id := context.get("graph_id"):
            prefix_parts.append(f"graph:{graph_id}")
        if (step := context.get("step")) is not None:
            prefix_parts.append(f"step:{step}")
        if node_id := context.get("node_id"):
            prefix_parts.append(f"node:{node_id}")
        context_prefix = f"[{' | '.join(prefix_parts)}] " if prefix_parts else ""

        color = self.COLORS.get(record.levelname, "")
        level = f"{record.levelname:<8}"
        message = f"{color}[{level}]{self.RESET} {context_prefix}{record.getMessage()}"
        if record.exc_info:
            message = f"{message}\n{self.formatException(record.exc_info)}"
        return message


def configure_logging(
    level: str = "INFO",
    format: str = "auto",  # "json", "human", or "auto"
) -> None:
    """
    Configure logging for an application embedding the engine.

    Call once at startup. The library itself never configures handlers.

    Args:
        level: Log level (DEBUG, INFO, WARNING, ERROR, CRITICAL)
        format: "json", "human", or "auto" (JSON if LOG_FORMAT=json or
            ENV=production, else human)
    """
    if format == "auto":
        log_format_env = os.getenv("LOG_FORMAT", "").lower()
        env = os.getenv("ENV", "development").lower()
        format = "json" if log_format_env == "json" or env == "production" else "human"

    formatter = StructuredFormatter() if format == "json" else HumanReadableFormatter()

    handler = logging.StreamHandler()
    handler.setFormatter(formatter)

    root_logger = logging.getLogger()
    root_logger.handlers.clear()
    root_logger.addHandler(handler)
    root_logger.setLevel(level.upper())


def set_trace_context(**kwargs: Any) -> None:
    """
    Add fields to the trace context of the current execution context.

    Framework-managed: the runner sets run_id/graph_id, the executor sets
    step and node_id. Values set inside a task do not leak to siblings.
    """
    current = trace_context.get() or {}
    trace_context.set({**current, **kwargs})


def get_trace_context() -> dict:
    """Copy of the current trace context (empty dict if none)."""
    context = trace_context.get() or {}
    return context.copy()


def clear_trace_context() -> None:
    """Reset trace context, e.g. between tests."""
    trace_context.set(None)
