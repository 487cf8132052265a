"""
Structured logging with session context propagation.

Every log record emitted while a session is being driven carries the
session's identifiers without any explicit passing:

    FlowRuntime.handle_event() → sets session_id, flow_id, conversation_id
        ↓ (automatic propagation via ContextVar)
    SessionMachine.advance() → adds node_id per executed node
        ↓
    logger.info("message") → record gets ALL context automatically

Two output modes: JSON for production, colourised human-readable text for
development.
"""

import json
import logging
import os
import re
from collections.abc import Iterator
from contextlib import contextmanager
from contextvars import ContextVar
from datetime import UTC, datetime
from typing import Any

# ContextVar is async-safe: concurrent sessions each see their own context
trace_context: ContextVar[dict[str, Any] | None] = ContextVar("trace_context", default=None)

ANSI_ESCAPE_PATTERN = re.compile(r"\x1b\[[0-9;]*m|\033\[[0-9;]*m")


def strip_ansi_codes(text: str) -> str:
    """Remove ANSI escape codes from text for clean JSON logging."""
    return ANSI_ESCAPE_PATTERN.sub("", text)


class StructuredFormatter(logging.Formatter):
    """
    JSON formatter for structured logging.

    Produces machine-parseable log entries with:
    - Standard fields (timestamp, level, logger, message)
    - Session context (session_id, flow_id, conversation_id, node_id)
    - ``event`` and ``node_id`` from the ``extra`` dict, when given
    """

    def format(self, record: logging.LogRecord) -> str:
        context = trace_context.get() or {}
        message = strip_ansi_codes(record.getMessage())

        log_entry: dict[str, Any] = {
            "timestamp": datetime.now(UTC).isoformat(),
            "level": record.levelname.lower(),
            "logger": record.name,
            "message": message,
        }
        log_entry.update(context)

        event = getattr(record, "event", None)
        if event is not None:
            log_entry["event"] = strip_ansi_codes(event) if isinstance(event, str) else event

        node_id = getattr(record, "node_id", None)
        if node_id is not None:
            log_entry["node_id"] = node_id

        if record.exc_info:
            log_entry["exception"] = strip_ansi_codes(self.formatException(record.exc_info))

        return json.dumps(log_entry, default=str)


class HumanReadableFormatter(logging.Formatter):
    """
    Human-readable formatter for development.

    Prefixes each line with a short session/node context.
    """

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
        session_id = context.get("session_id", "")
        flow_id = context.get("flow_id", "")
        node_id = context.get("node_id", "")

        prefix_parts = []
        if session_id:
            prefix_parts.append(f"session:{session_id[-8:]}")
        if flow_id:
            prefix_parts.append(f"flow:{flow_id}")
        if node_id:
            prefix_parts.append(f"node:{node_id}")
        context_prefix = f"[{' | '.join(prefix_parts)}] " if prefix_parts else ""

        color = self.COLORS.get(record.levelname, "")
        level = f"{record.levelname:<8}"

        event = ""
        record_event = getattr(record, "event", None)
        if record_event is not None:
            event = f" [{record_event}]"

        line = f"{color}[{level}]{self.RESET} {context_prefix}{record.getMessage()}{event}"
        if record.exc_info:
            line += "\n" + self.formatException(record.exc_info)
        return line


def configure_logging(
    level: str = "INFO",
    format: str = "auto",  # "json", "human", or "auto"
) -> None:
    """
    Configure logging for the application. Call once at startup.

    Args:
        level: Log level (DEBUG, INFO, WARNING, ERROR, CRITICAL)
        format: "json", "human", or "auto" (JSON if LOG_FORMAT=json or
            ENV=production, else human)

    Examples:
        configure_logging(level="DEBUG", format="human")
        configure_logging(level="INFO", format="json")
    """
    if format == "auto":
        log_format_env = os.getenv("LOG_FORMAT", "").lower()
        env = os.getenv("ENV", "development").lower()
        format = "json" if log_format_env == "json" or env == "production" else "human"

    if format == "json":
        formatter: logging.Formatter = StructuredFormatter()
        os.environ["NO_COLOR"] = "1"
    else:
        formatter = HumanReadableFormatter()

    handler = logging.StreamHandler()
    handler.setFormatter(formatter)

    root_logger = logging.getLogger()
    root_logger.handlers.clear()
    root_logger.addHandler(handler)
    root_logger.setLevel(level.upper())

    if format == "json":
        # Route HTTP client logs through the JSON formatter on the root logger
        for logger_name in ("httpcore", "httpx"):
            third_party = logging.getLogger(logger_name)
            third_party.handlers.clear()
            third_party.propagate = True


def set_trace_context(**kwargs: Any) -> None:
    """
    Merge fields into the current trace context.

    Called by the runtime when it starts driving a session and by the state
    machine for every node it executes.
    """
    current = trace_context.get() or {}
    trace_context.set({**current, **kwargs})


def get_trace_context() -> dict:
    """Copy of the current trace context; empty dict if none is set."""
    context = trace_context.get() or {}
    return context.copy()


def clear_trace_context() -> None:
    trace_context.set(None)


@contextmanager
def session_context(**kwargs: Any) -> Iterator[None]:
    """
    Scope trace fields to a block and restore the previous context afterwards.

    Example:
        with session_context(session_id=session.id, flow_id=session.graph_ref):
            await machine.advance(graph, session, event)
    """
    current = trace_context.get() or {}
    token = trace_context.set({**current, **kwargs})
    try:
        yield
    finally:
        trace_context.reset(token)
