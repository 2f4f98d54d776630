"""Process-wide structlog logger.

Configured from the environment at import time, before Settings exist, so
that configuration errors are logged too.

- ``LOG_LEVEL``: threshold, default INFO.
- ``LOG_FORMAT=json``: one JSON object per line instead of console output.
"""

from __future__ import annotations

import logging
import os
import sys

import structlog

_SHARED_PROCESSORS: list[structlog.types.Processor] = [
    structlog.stdlib.filter_by_level,
    structlog.contextvars.merge_contextvars,
    structlog.stdlib.add_log_level,
    structlog.dev.set_exc_info,
    structlog.processors.TimeStamper(fmt="iso"),
    structlog.processors.StackInfoRenderer(),
]


def _tail_processors(json_output: bool) -> list[structlog.types.Processor]:
    if json_output:
        return [structlog.processors.format_exc_info, structlog.processors.JSONRenderer()]
    return [structlog.dev.ConsoleRenderer(colors=sys.stderr.isatty())]


def configure_logging() -> structlog.stdlib.BoundLogger:
    level = logging.getLevelNamesMapping().get(
        os.environ.get("LOG_LEVEL", "INFO").upper(), logging.INFO
    )
    # filter_by_level consults the stdlib root logger
    logging.basicConfig(level=level, format="%(message)s", stream=sys.stderr)

    json_output = os.environ.get("LOG_FORMAT", "").lower() == "json"
    structlog.configure(
        processors=[*_SHARED_PROCESSORS, *_tail_processors(json_output)],
        wrapper_class=structlog.stdlib.BoundLogger,
        context_class=dict,
        logger_factory=structlog.stdlib.LoggerFactory(),
        cache_logger_on_first_use=True,
    )
    return structlog.get_logger("pincer")


logger = configure_logging()


def _log_uncaught(exc_type, exc_value, exc_tb) -> None:
    if issubclass(exc_type, KeyboardInterrupt):
        sys.__excepthook__(exc_type, exc_value, exc_tb)
        return
    logger.critical("Uncaught exception", exc_info=(exc_type, exc_value, exc_tb))
    sys.exit(1)


sys.excepthook = _log_uncaught
