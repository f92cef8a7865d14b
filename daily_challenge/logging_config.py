"""structlog setup for the challenge service.

Entries are snake_case events with keyword fields (``challenge_id``,
``method``, ``step``). Everything goes to stderr; stdout belongs to the CLI's
JSON results.

Two context keys identify where an entry came from:

* ``job``: the CLI command, or ``scheduler`` for the long-running loop
* ``step``: the daily cycle step (``ended``, ``winners``, ``today``)
"""

import logging
import sys
from contextlib import AbstractContextManager
from typing import Any

import structlog


def configure_logging(
    level: str = "INFO",
    json_format: bool = True,
    service_name: str = "daily-challenge",
) -> None:
    """
    Configure structlog once per process, before the first command runs.

    Args:
        level: ``CHALLENGE_LOG_LEVEL`` (DEBUG, INFO, WARNING, ERROR, CRITICAL)
        json_format: JSON lines for log shippers when True (``CHALLENGE_LOG_FORMAT=json``),
            coloured console output otherwise
        service_name: Bound to every entry as ``service``
    """
    log_level = getattr(logging, level.upper())
    # SQLAlchemy echo and asyncpg warnings go through stdlib logging
    logging.basicConfig(format="%(message)s", stream=sys.stderr, level=log_level)

    shared_processors: list[structlog.types.Processor] = [
        structlog.contextvars.merge_contextvars,
        structlog.processors.add_log_level,
        structlog.processors.TimeStamper(fmt="iso", utc=True),
        structlog.processors.StackInfoRenderer(),
    ]

    if json_format:
        processors = [
            *shared_processors,
            structlog.processors.format_exc_info,
            structlog.processors.JSONRenderer(),
        ]
    else:
        processors = [
            *shared_processors,
            structlog.dev.ConsoleRenderer(colors=sys.stderr.isatty()),
        ]

    structlog.configure(
        processors=processors,
        wrapper_class=structlog.make_filtering_bound_logger(log_level),
        context_class=dict,
        logger_factory=structlog.PrintLoggerFactory(file=sys.stderr),
        cache_logger_on_first_use=True,
    )

    structlog.contextvars.clear_contextvars()
    structlog.contextvars.bind_contextvars(service=service_name)


def get_logger(name: str | None = None) -> structlog.stdlib.BoundLogger:
    return structlog.get_logger(name)


def bind_job_context(job: str, **kwargs: Any) -> None:
    """Tag later entries with the CLI command (or ``scheduler``) being run."""
    structlog.contextvars.bind_contextvars(job=job, **kwargs)


def clear_job_context(*extra_keys: str) -> None:
    """Drop ``job`` and any ``extra_keys`` once the command has finished."""
    structlog.contextvars.unbind_contextvars("job", *extra_keys)


def step_context(step: str) -> AbstractContextManager[None]:
    """Tag entries inside the block with a daily cycle step.

    On exit the previous ``step`` value (or its absence) is restored and
    ``job`` is left as the caller bound it.
    """
    return structlog.contextvars.bound_contextvars(step=step)
