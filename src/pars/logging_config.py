"""
Pars Ops Logging Configuration

structlog on top of the standard library: JSON lines when the daemon runs
under a process manager, coloured console output when run by hand.
"""
import logging
import sys
from typing import List, Optional

import structlog
from pythonjsonlogger import jsonlogger

# Loggers that are chatty at INFO and add nothing to an update transcript
_QUIET_LOGGERS = ("asyncio", "sqlalchemy.engine", "uvicorn.access", "passlib")


def setup_logging(
    log_level: str = "INFO", json_logs: bool = False, log_file: Optional[str] = None
) -> None:
    """
    Configure application logging

    Args:
        log_level: Logging level (DEBUG, INFO, WARNING, ERROR, CRITICAL)
        json_logs: Render JSON instead of coloured console lines
        log_file: Optional path that additionally receives JSON records
    """
    numeric_level = getattr(logging, log_level.upper(), logging.INFO)

    handlers: List[logging.Handler] = [logging.StreamHandler(sys.stdout)]
    if log_file:
        handlers.append(get_file_handler(log_file, log_level))

    logging.basicConfig(
        format="%(message)s",
        level=numeric_level,
        handlers=handlers,
        force=True,
    )

    processors = [
        structlog.contextvars.merge_contextvars,
        structlog.stdlib.add_log_level,
        structlog.stdlib.add_logger_name,
        structlog.processors.TimeStamper(fmt="iso", utc=True),
        structlog.processors.StackInfoRenderer(),
    ]

    if json_logs:
        processors += [
            structlog.processors.format_exc_info,
            structlog.processors.JSONRenderer(),
        ]
    else:
        processors += [
            structlog.processors.ExceptionRenderer(),
            structlog.dev.ConsoleRenderer(colors=sys.stdout.isatty()),
        ]

    structlog.configure(
        processors=processors,
        wrapper_class=structlog.stdlib.BoundLogger,
        context_class=dict,
        logger_factory=structlog.stdlib.LoggerFactory(),
        cache_logger_on_first_use=True,
    )

    for name in _QUIET_LOGGERS:
        logging.getLogger(name).setLevel(logging.WARNING)


def get_file_handler(log_file: str, log_level: str = "INFO") -> logging.FileHandler:
    """Create a file handler that writes one JSON object per record"""
    handler = logging.FileHandler(log_file, encoding="utf-8")
    handler.setLevel(getattr(logging, log_level.upper(), logging.INFO))
    handler.setFormatter(
        jsonlogger.JsonFormatter(
            "%(asctime)s %(levelname)s %(name)s %(message)s",
            rename_fields={"asctime": "timestamp", "levelname": "level"},
        )
    )
    return handler
