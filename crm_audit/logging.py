"""crm-audit — Structured logging configuration.

Uses structlog for structured, levelled logging with consistent key names
across all layers.  All log entries include:
    - timestamp (ISO-8601)
    - level
    - logger (Python logger name)
    - execution_id / action_id / account_id (bound via context variables when available)
"""

from __future__ import annotations

import logging
import sys
from contextvars import ContextVar
from typing import Any

import structlog
from structlog.types import EventDict, Processor, WrappedLogger

# Context variables, injected into log records when set.
_ctx_execution_id: ContextVar[str | None] = ContextVar("execution_id", default=None)
_ctx_action_id: ContextVar[str | None] = ContextVar("action_id", default=None)
_ctx_account_id: ContextVar[str | None] = ContextVar("account_id", default=None)

# Keys whose values may carry customer data (property values, emails, ...).
_SENSITIVE_KEYS = frozenset({"value", "new_value", "original_value", "current_value", "properties"})
_MASK = "***"


def bind_execution_context(
    execution_id: str | None = None,
    action_id: str | None = None,
    account_id: str | None = None,
) -> None:
    """Bind execution context to the current async task / thread."""
    if execution_id is not None:
        _ctx_execution_id.set(execution_id)
    if action_id is not None:
        _ctx_action_id.set(action_id)
    if account_id is not None:
        _ctx_account_id.set(account_id)


def clear_execution_context() -> None:
    _ctx_execution_id.set(None)
    _ctx_action_id.set(None)
    _ctx_account_id.set(None)


# ---------------------------------------------------------------------------
# Custom processors
# ---------------------------------------------------------------------------


def _inject_context_vars(
    _logger: WrappedLogger, _method: str, event_dict: EventDict
) -> EventDict:
    """Add ContextVar values to every log record."""
    if (execution_id := _ctx_execution_id.get()) is not None:
        event_dict["execution_id"] = execution_id
    if (action_id := _ctx_action_id.get()) is not None:
        event_dict["action_id"] = action_id
    if (account_id := _ctx_account_id.get()) is not None:
        event_dict["account_id"] = account_id
    return event_dict


def _mask_pii(
    _logger: WrappedLogger, _method: str, event_dict: EventDict
) -> EventDict:
    """Replace customer property values with a fixed mask."""
    for key in _SENSITIVE_KEYS.intersection(event_dict):
        if event_dict[key] is not None:
            event_dict[key] = _MASK
    return event_dict


def _passthrough(
    _logger: WrappedLogger, _method: str, event_dict: EventDict
) -> EventDict:
    return event_dict


def pii_processor(enabled: bool) -> Processor:
    """Return the masking processor, or a no-op when masking is off."""
    return _mask_pii if enabled else _passthrough


# ---------------------------------------------------------------------------
# Setup
# ---------------------------------------------------------------------------


def configure_logging(
    level: str = "info",
    format: str = "console",
    log_file: str | None = None,
    mask_pii: bool = True,
) -> None:
    """Configure structlog and stdlib logging.

    Call once at process startup, before any log statements.

    Args:
        level:    One of debug, info, warning, error, critical.
        format:   ``"console"`` for human-readable output, ``"json"`` for
                  machine-readable structured logs.
        log_file: Optional path to write logs to in addition to stdout.
        mask_pii: Replace CRM property values with ``***`` in every record.
    """
    shared_processors: list[Any] = [
        structlog.contextvars.merge_contextvars,
        _inject_context_vars,
        pii_processor(mask_pii),
        structlog.stdlib.add_log_level,
        structlog.stdlib.add_logger_name,
        structlog.processors.TimeStamper(fmt="iso"),
        structlog.processors.StackInfoRenderer(),
    ]

    if format == "json":
        renderer: Any = structlog.processors.JSONRenderer()
    else:
        renderer = structlog.dev.ConsoleRenderer(colors=sys.stderr.isatty())

    structlog.configure(
        processors=[
            *shared_processors,
            structlog.stdlib.ProcessorFormatter.wrap_for_formatter,
        ],
        logger_factory=structlog.stdlib.LoggerFactory(),
        wrapper_class=structlog.stdlib.BoundLogger,
        cache_logger_on_first_use=True,
    )

    formatter = structlog.stdlib.ProcessorFormatter(
        foreign_pre_chain=shared_processors,
        processors=[
            structlog.stdlib.ProcessorFormatter.remove_processors_meta,
            renderer,
        ],
    )

    handlers: list[logging.Handler] = []

    stream_handler = logging.StreamHandler(sys.stdout)
    stream_handler.setFormatter(formatter)
    handlers.append(stream_handler)

    if log_file:
        file_handler = logging.FileHandler(log_file)
        file_handler.setFormatter(formatter)
        handlers.append(file_handler)

    root_logger = logging.getLogger()
    root_logger.handlers = handlers
    root_logger.setLevel(level.upper())

    # Silence noisy third-party loggers.
    for noisy in ("httpx", "httpcore", "asyncio"):
        logging.getLogger(noisy).setLevel(logging.WARNING)


def get_logger(name: str) -> structlog.stdlib.BoundLogger:
    """Return a bound structlog logger for *name*.

    Usage::

        log = get_logger(__name__)
        log.info("execution_started", plan_id="plan-123", action_count=5)
    """
    return structlog.get_logger(name)
