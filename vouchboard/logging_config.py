"""structlog setup for the indexer and its per-run log context."""

import logging
import sys

import structlog

from vouchboard.config import get_settings

SERVICE_NAME = "vouchboard"


def _renderer(log_format: str) -> list[structlog.types.Processor]:
    if log_format == "json":
        return [structlog.processors.format_exc_info, structlog.processors.JSONRenderer()]
    return [structlog.dev.ConsoleRenderer(colors=sys.stderr.isatty())]


def configure_logging(level: str | None = None, log_format: str | None = None) -> None:
    """
    Route indexer logs to stderr, leaving stdout to CLI results.

    Args:
        level: Log level name; defaults to VOUCHBOARD_LOG_LEVEL
        log_format: "json" or "console"; defaults to VOUCHBOARD_LOG_FORMAT
    """
    settings = get_settings()
    numeric_level = getattr(logging, (level or settings.log_level).upper())
    logging.basicConfig(format="%(message)s", stream=sys.stderr, level=numeric_level)

    structlog.configure(
        processors=[
            structlog.contextvars.merge_contextvars,
            structlog.processors.add_log_level,
            structlog.processors.TimeStamper(fmt="iso"),
            structlog.processors.StackInfoRenderer(),
            *_renderer(log_format or settings.log_format),
        ],
        wrapper_class=structlog.make_filtering_bound_logger(numeric_level),
        context_class=dict,
        logger_factory=structlog.PrintLoggerFactory(file=sys.stderr),
        cache_logger_on_first_use=True,
    )

    structlog.contextvars.clear_contextvars()
    structlog.contextvars.bind_contextvars(service=SERVICE_NAME)


def get_logger(name: str | None = None) -> structlog.stdlib.BoundLogger:
    return structlog.get_logger(name)


def bind_index_context(slug: str, requester: str | None = None) -> None:
    """Tag every log line of an indexing run with its repository and caller."""
    context = {"slug": slug}
    if requester:
        context["requester"] = requester
    structlog.contextvars.bind_contextvars(**context)


def clear_index_context() -> None:
    structlog.contextvars.unbind_contextvars("slug", "requester")
