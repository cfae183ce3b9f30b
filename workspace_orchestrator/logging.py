"""Structured logging for the workspace orchestrator.

Logs go to stderr so ``--json`` output on stdout stays machine-readable.
Per-run context (skill name, run id) is carried in contextvars and merged
into every event emitted while a run is active.
"""

import logging
import sys
from collections.abc import Iterator
from contextlib import contextmanager
from typing import Any, TextIO

import structlog

from workspace_orchestrator.config import get_config


def _renderer(fmt: str) -> Any:
    if fmt == "json":
        return structlog.processors.JSONRenderer()
    return structlog.dev.ConsoleRenderer(colors=False)


def configure_logging(level: str | None = None, stream: TextIO | None = None) -> None:
    """Configure structlog from the ``logging`` config section.

    Args:
        level: Level override, e.g. ``"DEBUG"`` for ``--verbose``
        stream: Output stream (stderr when omitted)
    """
    settings = get_config().logging
    threshold = getattr(logging, (level or settings.level).upper(), logging.INFO)

    structlog.configure(
        processors=[
            structlog.contextvars.merge_contextvars,
            structlog.processors.add_log_level,
            structlog.processors.TimeStamper(fmt="iso"),
            structlog.processors.StackInfoRenderer(),
            structlog.processors.format_exc_info,
            _renderer(settings.format),
        ],
        wrapper_class=structlog.make_filtering_bound_logger(threshold),
        context_class=dict,
        logger_factory=structlog.PrintLoggerFactory(file=stream or sys.stderr),
        cache_logger_on_first_use=True,
    )


@contextmanager
def run_context(**values: Any) -> Iterator[None]:
    """Bind ``values`` to every log event emitted inside the block."""
    tokens = structlog.contextvars.bind_contextvars(**values)
    try:
        yield
    finally:
        structlog.contextvars.reset_contextvars(**tokens)


def get_logger(name: str | None = None) -> structlog.BoundLogger:
    """Return a module logger (usually ``get_logger(__name__)``)."""
    return structlog.get_logger(name) if name else structlog.get_logger()
