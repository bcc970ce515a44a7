"""
Logging Setup

structlog renders through the standard library so that records from
SQLAlchemy, asyncio and the host process share one format. Output goes to
stdout and, when ``log_file`` is set, to a file as well.
"""

import logging
import sys
from typing import List, Optional

import structlog
from structlog.typing import Processor

from sdeconomy.config.settings import Settings, get_settings

QUIET_LOGGERS = ("sqlalchemy.engine", "sqlalchemy.pool", "aiosqlite", "asyncio")


def _pre_chain() -> List[Processor]:
    """Processors applied to both structlog and foreign stdlib records."""
    return [
        structlog.contextvars.merge_contextvars,
        structlog.stdlib.add_logger_name,
        structlog.stdlib.add_log_level,
        structlog.processors.TimeStamper(fmt="iso", utc=True),
        structlog.stdlib.PositionalArgumentsFormatter(),
        structlog.processors.StackInfoRenderer(),
        structlog.processors.format_exc_info,
        structlog.processors.UnicodeDecoder(),
    ]


def _renderer(log_format: str) -> Processor:
    if log_format == "json":
        return structlog.processors.JSONRenderer(sort_keys=True)
    return structlog.dev.ConsoleRenderer(colors=sys.stdout.isatty())


def _handlers(settings: Settings) -> List[logging.Handler]:
    handlers: List[logging.Handler] = [logging.StreamHandler(sys.stdout)]
    if settings.monitoring.log_file:
        handlers.append(logging.FileHandler(settings.monitoring.log_file, encoding="utf-8"))
    return handlers


def configure_logging(log_level: Optional[str] = None, settings: Optional[Settings] = None) -> None:
    """
    Route structlog and stdlib logging through one formatter.

    Args:
        log_level: Override for ``settings.monitoring.log_level``
        settings: Settings to read from (defaults to cached settings)
    """
    settings = settings or get_settings()
    level_name = (log_level or settings.monitoring.log_level).upper()
    level = logging.getLevelName(level_name)
    if not isinstance(level, int):
        level = logging.INFO

    pre_chain = _pre_chain()
    structlog.configure(
        processors=pre_chain + [structlog.stdlib.ProcessorFormatter.wrap_for_formatter],
        logger_factory=structlog.stdlib.LoggerFactory(),
        wrapper_class=structlog.stdlib.BoundLogger,
        cache_logger_on_first_use=True,
    )
    formatter = structlog.stdlib.ProcessorFormatter(
        processors=[
            structlog.stdlib.ProcessorFormatter.remove_processors_meta,
            _renderer(settings.monitoring.log_format),
        ],
        foreign_pre_chain=pre_chain,
    )

    root = logging.getLogger()
    for handler in list(root.handlers):
        root.removeHandler(handler)
        handler.close()
    for handler in _handlers(settings):
        handler.setFormatter(formatter)
        root.addHandler(handler)
    root.setLevel(level)

    # Library chatter only at WARNING unless SQL echo was asked for
    for name in QUIET_LOGGERS:
        quiet = logging.INFO if settings.database.echo and name.startswith("sqlalchemy") else logging.WARNING
        logging.getLogger(name).setLevel(max(quiet, level))

    structlog.get_logger(__name__).info(
        "Logging configured", level=level_name, format=settings.monitoring.log_format
    )


def bind_service_context(settings: Settings) -> None:
    """Attach the app name and environment to every later log line in this context."""
    structlog.contextvars.bind_contextvars(app=settings.app_name, environment=settings.app_env)
