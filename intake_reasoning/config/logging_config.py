"""
Structured logging for the intake engine.

Every entry carries an ISO timestamp, level, logger name and, when bound,
the intake id. Patient free text and evidence snippets must never reach a
log sink: engine modules log identifiers, counts and levels, and the
`redact_patient_text` processor masks any field that slips through.
"""

import logging
import sys
from collections.abc import Iterator
from contextlib import contextmanager
from typing import Any

import structlog
from structlog.types import EventDict, Processor, WrappedLogger

from intake_reasoning.config.config import Settings, get_settings

REDACTED = "[redacted]"

# Event keys that could carry raw patient text.
PATIENT_TEXT_KEYS = frozenset({
    "text",
    "answer",
    "snippet",
    "original_text",
    "message_text",
    "chief_complaint",
})


def redact_patient_text(_: WrappedLogger, __: str, event_dict: EventDict) -> EventDict:
    """Mask patient text fields before rendering."""
    for key in PATIENT_TEXT_KEYS.intersection(event_dict):
        event_dict[key] = REDACTED
    return event_dict


def _renderer(log_format: str) -> Processor:
    if log_format == "json":
        return structlog.processors.JSONRenderer()
    return structlog.dev.ConsoleRenderer(colors=sys.stdout.isatty())


def configure_logging(settings: Settings | None = None) -> None:
    """
    Configure structlog and the stdlib root logger for the host process.

    JSON output for production log aggregation, console output otherwise.
    The engine itself never calls this; embedding hosts do once at startup.

    Args:
        settings: Explicit settings; falls back to the cached environment settings.
    """
    settings = settings or get_settings()

    shared_processors: list[Processor] = [
        structlog.contextvars.merge_contextvars,
        structlog.stdlib.add_log_level,
        structlog.stdlib.add_logger_name,
        structlog.processors.TimeStamper(fmt="iso"),
        redact_patient_text,
    ]
    renderer = _renderer("json" if settings.is_production else settings.log_format)

    structlog.configure(
        processors=shared_processors + [
            structlog.processors.format_exc_info,
            structlog.stdlib.ProcessorFormatter.wrap_for_formatter,
        ],
        wrapper_class=structlog.stdlib.BoundLogger,
        context_class=dict,
        logger_factory=structlog.stdlib.LoggerFactory(),
        cache_logger_on_first_use=True,
    )

    handler = logging.StreamHandler(sys.stdout)
    handler.setFormatter(
        structlog.stdlib.ProcessorFormatter(
            processors=[
                structlog.stdlib.ProcessorFormatter.remove_processors_meta,
                renderer,
            ],
            foreign_pre_chain=shared_processors,
        )
    )

    root_logger = logging.getLogger()
    root_logger.handlers = [handler]
    root_logger.setLevel(settings.log_level.upper())


def get_logger(name: str) -> structlog.stdlib.BoundLogger:
    """Structured logger for a module, typically `get_logger(__name__)`."""
    return structlog.get_logger(name)


def bind_intake_context(
    intake_id: str | None,
    session_id: str | None = None,
    **extra: Any,
) -> None:
    """
    Bind intake identifiers to all subsequent log entries in this context.

    Args:
        intake_id: Intake record identifier.
        session_id: Conversation session identifier.
        **extra: Additional identifiers (never patient text).
    """
    structlog.contextvars.clear_contextvars()
    structlog.contextvars.bind_contextvars(
        intake_id=intake_id,
        session_id=session_id,
        **extra,
    )


@contextmanager
def intake_log_context(intake_id: str | None, **extra: Any) -> Iterator[None]:
    """Bind intake identifiers for the duration of one engine call."""
    with structlog.contextvars.bound_contextvars(intake_id=intake_id, **extra):
        yield
