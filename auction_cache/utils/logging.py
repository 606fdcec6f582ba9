"""
Structured logging for the auction cache service, built on structlog.
"""

import logging
import sys
from typing import Any, Optional

import structlog
from structlog.typing import Processor

# Libraries that log every request at INFO and drown out cache decisions
_NOISY_LOGGERS = ("httpx", "httpcore", "web3", "urllib3")


def setup_logging(log_level: str = "INFO", json_output: Optional[bool] = None) -> None:
    """Configure structlog and the stdlib root logger.

    ``json_output`` defaults to JSON lines when stderr is not a terminal
    (containers, log shippers) and colored console output otherwise.
    """
    level = getattr(logging, log_level.upper(), logging.INFO)

    logging.basicConfig(
        format="%(message)s",
        stream=sys.stdout,
        level=level,
    )
    for name in _NOISY_LOGGERS:
        logging.getLogger(name).setLevel(max(level, logging.WARNING))

    shared_processors: list[Processor] = [
        structlog.contextvars.merge_contextvars,
        structlog.processors.add_log_level,
        structlog.processors.StackInfoRenderer(),
        structlog.dev.set_exc_info,
        structlog.processors.TimeStamper(fmt="iso", utc=True),
    ]

    if json_output is None:
        json_output = not sys.stderr.isatty()

    if json_output:
        processors = shared_processors + [
            structlog.processors.dict_tracebacks,
            structlog.processors.JSONRenderer(),
        ]
    else:
        processors = shared_processors + [structlog.dev.ConsoleRenderer(colors=True)]

    structlog.configure(
        processors=processors,
        wrapper_class=structlog.make_filtering_bound_logger(level),
        context_class=dict,
        logger_factory=structlog.PrintLoggerFactory(),
        cache_logger_on_first_use=True,
    )


def get_logger(name: str | None = None) -> structlog.BoundLogger:
    """Get a logger, bound to ``module=name`` when a name is given."""
    logger = structlog.get_logger()
    if name:
        logger = logger.bind(module=name)
    return logger


class LoggerMixin:
    """Gives a class a ``log`` property bound to its class name."""

    @property
    def log(self) -> structlog.BoundLogger:
        if not hasattr(self, "_logger"):
            self._logger = get_logger(self.__class__.__name__)
        return self._logger


def log_context(**kwargs: Any) -> structlog.contextvars.bound_contextvars:
    """Bind key/values to every log line emitted inside the ``with`` block."""
    return structlog.contextvars.bound_contextvars(**kwargs)
