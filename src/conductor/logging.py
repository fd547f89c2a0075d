"""Structured logging for the runtime.

Modules log through the standard `logging.getLogger(__name__)`; this module
routes those records through structlog so that bound context (flow id,
agent, delegation depth) is attached to every line.
"""

import logging
import sys
from collections.abc import Iterator
from contextlib import contextmanager

import structlog

from conductor.config import Settings, get_settings


def _wants_json(settings: Settings, json_output: bool | None) -> bool:
    if json_output is not None:
        return json_output
    if settings.log_json is not None:
        return bool(settings.log_json)
    return settings.app_env == "prod"


def configure_logging(level: str | None = None, json_output: bool | None = None) -> None:
    """Install a structlog formatter on the root logger.

    Args:
        level: Log level name. Defaults to LOG_LEVEL.
        json_output: Force JSON lines. If None, use LOG_JSON, else JSON only in prod.
    """
    settings = get_settings()
    log_level = getattr(logging, (level or settings.log_level).upper(), logging.INFO)

    shared_processors: list[structlog.types.Processor] = [
        structlog.contextvars.merge_contextvars,
        structlog.stdlib.add_log_level,
        structlog.stdlib.add_logger_name,
        structlog.processors.TimeStamper(fmt="iso"),
        structlog.processors.StackInfoRenderer(),
    ]
    renderer: structlog.types.Processor
    if _wants_json(settings, json_output):
        renderer = structlog.processors.JSONRenderer()
    else:
        renderer = structlog.dev.ConsoleRenderer()

    structlog.configure(
        processors=[*shared_processors, structlog.stdlib.ProcessorFormatter.wrap_for_formatter],
        logger_factory=structlog.stdlib.LoggerFactory(),
        wrapper_class=structlog.stdlib.BoundLogger,
        cache_logger_on_first_use=True,
    )

    formatter = structlog.stdlib.ProcessorFormatter(
        foreign_pre_chain=shared_processors,
        processors=[structlog.stdlib.ProcessorFormatter.remove_processors_meta, renderer],
    )
    handler = logging.StreamHandler(sys.stderr)
    handler.setFormatter(formatter)

    root = logging.getLogger()
    root.handlers.clear()
    root.addHandler(handler)
    root.setLevel(log_level)


def bind_context(**kwargs: object) -> None:
    structlog.contextvars.bind_contextvars(**kwargs)


def clear_context() -> None:
    structlog.contextvars.clear_contextvars()


@contextmanager
def log_context(**kwargs: object) -> Iterator[None]:
    """Bind keys for the duration of a block, restoring previous values after."""
    with structlog.contextvars.bound_contextvars(**kwargs):
        yield
