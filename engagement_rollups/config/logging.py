"""
Logging Configuration for the Engagement Rollups Engine

Structured logging via structlog, rendered through the stdlib logging tree so
uvicorn, aiokafka and SQLAlchemy records share one format. Every record
carries the service and environment; records written from a shard worker
also carry the shard name.
"""

import logging
import sys
from typing import Dict, Optional

import structlog
from structlog.processors import JSONRenderer, TimeStamper
from structlog.stdlib import ProcessorFormatter, add_log_level
from structlog.types import EventDict, Processor, WrappedLogger

from engagement_rollups.config.settings import Settings, get_settings

# Third-party loggers that are chatty below WARNING in normal operation
LIBRARY_LEVELS: Dict[str, int] = {
    "aiokafka": logging.WARNING,
    "sqlalchemy.engine": logging.WARNING,
    "uvicorn.access": logging.INFO,
}

HANDLED_LOGGERS = ("uvicorn", "uvicorn.error", "uvicorn.access", "aiokafka")


def bind_shard_context(shard_name: str) -> None:
    """Tag every record logged from the current worker task with its shard"""
    structlog.contextvars.bind_contextvars(shard=shard_name)


class ServiceContext:
    """Processor adding the static service fields to each record"""

    def __init__(self, settings: Settings):
        self.service = settings.app_name
        self.environment = settings.app_env
        self.version = settings.version

    def __call__(self, logger: WrappedLogger, method_name: str, event_dict: EventDict) -> EventDict:
        event_dict.setdefault("service", self.service)
        event_dict.setdefault("env", self.environment)
        event_dict.setdefault("version", self.version)
        return event_dict


def _renderer(log_format: str) -> Processor:
    if log_format == "json":
        return JSONRenderer()
    return structlog.dev.ConsoleRenderer(colors=sys.stdout.isatty())


def configure_logging(log_level: Optional[str] = None, log_format: Optional[str] = None) -> None:
    """
    Configure structured logging for the engine and the API.

    Args:
        log_level: Override log level (DEBUG, INFO, WARNING, ERROR)
        log_format: Override output format (json or text)
    """
    settings = get_settings()
    level = (log_level or settings.monitoring.log_level).upper()
    log_format = log_format or settings.monitoring.log_format
    numeric_level = getattr(logging, level, logging.INFO)

    shared_processors = [
        structlog.contextvars.merge_contextvars,
        structlog.stdlib.add_logger_name,
        add_log_level,
        ServiceContext(settings),
        TimeStamper(fmt="iso", utc=True),
        structlog.processors.StackInfoRenderer(),
        structlog.processors.format_exc_info,
    ]

    structlog.configure(
        processors=shared_processors + [ProcessorFormatter.wrap_for_formatter],
        logger_factory=structlog.stdlib.LoggerFactory(),
        wrapper_class=structlog.stdlib.BoundLogger,
        cache_logger_on_first_use=True,
    )

    handler = logging.StreamHandler(sys.stdout)
    handler.setFormatter(ProcessorFormatter(processor=_renderer(log_format), foreign_pre_chain=shared_processors))

    root_logger = logging.getLogger()
    root_logger.handlers = [handler]
    root_logger.setLevel(numeric_level)

    for logger_name in HANDLED_LOGGERS:
        library_logger = logging.getLogger(logger_name)
        library_logger.handlers = []
        library_logger.propagate = True

    for logger_name, library_level in LIBRARY_LEVELS.items():
        # Debug runs see everything, including SQL when the engine echoes it
        logging.getLogger(logger_name).setLevel(numeric_level if settings.debug else max(numeric_level, library_level))

    structlog.get_logger(__name__).info(
        "Logging configured",
        level=level,
        format=log_format,
        environment=settings.app_env,
    )
