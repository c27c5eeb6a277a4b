"""
Logging Configuration for Nexus Monitor

structlog over the stdlib root logger. Every event is stamped with the
service name and environment, so pipeline runs from the API process and
from Prefect workers can be told apart in a shared log stream.
"""

import logging
import sys
from typing import Dict, List, Optional

import structlog
from structlog.processors import JSONRenderer, TimeStamper
from structlog.stdlib import add_log_level, ProcessorFormatter
from structlog.types import EventDict, Processor

from nexus_monitor.config.settings import Settings, get_settings

# Runtime loggers that get our handler instead of their own
RUNTIME_LOGGERS = ("uvicorn", "uvicorn.error", "uvicorn.access", "prefect")

# Libraries held at a fixed level regardless of LOG_LEVEL
QUIET_LOGGERS: Dict[str, int] = {
    "sqlalchemy.engine": logging.WARNING,
    "httpx": logging.WARNING,
    "httpcore": logging.WARNING,
}


def service_context(settings: Settings) -> Processor:
    """Processor adding ``service`` and ``environment`` unless already bound."""
    def _stamp(logger: logging.Logger, method_name: str, event_dict: EventDict) -> EventDict:
        event_dict.setdefault("service", settings.app_name)
        event_dict.setdefault("environment", settings.app_env)
        return event_dict

    return _stamp


def build_renderer(log_format: str) -> Processor:
    if log_format == "json":
        return JSONRenderer()
    return structlog.dev.ConsoleRenderer(colors=sys.stdout.isatty())


def configure_logging(
    log_level: Optional[str] = None,
    settings: Optional[Settings] = None,
) -> logging.Handler:
    """
    Configure structured logging for the API process or a workflow run.

    Args:
        log_level: Override of the configured level (DEBUG, INFO, ...)
        settings: Settings to read, defaults to the cached application settings

    Returns:
        The handler installed on the root logger
    """
    settings = settings or get_settings()
    level_name = (log_level or settings.monitoring.log_level).upper()
    level = logging.getLevelName(level_name)
    if not isinstance(level, int):
        level = logging.INFO

    shared_processors: List[Processor] = [
        structlog.contextvars.merge_contextvars,
        structlog.stdlib.add_logger_name,
        add_log_level,
        service_context(settings),
        TimeStamper(fmt="iso"),
        structlog.stdlib.PositionalArgumentsFormatter(),
        structlog.processors.StackInfoRenderer(),
        structlog.processors.format_exc_info,
        structlog.processors.UnicodeDecoder(),
    ]

    structlog.configure(
        processors=shared_processors + [ProcessorFormatter.wrap_for_formatter],
        logger_factory=structlog.stdlib.LoggerFactory(),
        cache_logger_on_first_use=True,
    )

    handler = logging.StreamHandler(sys.stdout)
    handler.setLevel(level)
    handler.setFormatter(
        ProcessorFormatter(
            processor=build_renderer(settings.monitoring.log_format),
            foreign_pre_chain=shared_processors,
        )
    )

    root_logger = logging.getLogger()
    root_logger.setLevel(level)
    for existing in root_logger.handlers[:]:
        root_logger.removeHandler(existing)
    root_logger.addHandler(handler)

    for name in RUNTIME_LOGGERS:
        runtime_logger = logging.getLogger(name)
        runtime_logger.handlers = [handler]
        runtime_logger.propagate = False
        runtime_logger.setLevel(level)

    for name, quiet_level in QUIET_LOGGERS.items():
        logging.getLogger(name).setLevel(quiet_level)

    structlog.get_logger(__name__).info(
        "Logging configured",
        level=level_name,
        format=settings.monitoring.log_format,
    )
    return handler
