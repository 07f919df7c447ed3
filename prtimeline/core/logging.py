"""structlog on top of stdlib logging, rendered to stderr."""

from __future__ import annotations

import logging
import logging.config
import os

import structlog

# Transport libraries are chatty at INFO.
_QUIET_LOGGERS = ("httpx", "httpcore")

_PRE_CHAIN: list[structlog.types.Processor] = [
    structlog.contextvars.merge_contextvars,
    structlog.stdlib.add_log_level,
    structlog.stdlib.add_logger_name,
    structlog.processors.TimeStamper(fmt="iso", utc=True),
    structlog.processors.StackInfoRenderer(),
    structlog.processors.format_exc_info,
]


def _renderer(fmt: str) -> structlog.types.Processor:
    if fmt == "json":
        return structlog.processors.JSONRenderer()
    return structlog.dev.ConsoleRenderer(colors=False)


def setup_logging(level: str | None = None) -> None:
    """Wire structlog into the stdlib logging tree.

    *level* overrides ``PRTIMELINE_LOG_LEVEL`` (default INFO);
    ``PRTIMELINE_LOG_FORMAT`` picks ``console`` or ``json`` output.
    Everything goes to stderr so stdout stays free for JSON results.
    """
    log_level = (level or os.environ.get("PRTIMELINE_LOG_LEVEL") or "INFO").upper()
    fmt = os.environ.get("PRTIMELINE_LOG_FORMAT", "console").strip().lower()

    structlog.configure(
        processors=[*_PRE_CHAIN, structlog.stdlib.ProcessorFormatter.wrap_for_formatter],
        logger_factory=structlog.stdlib.LoggerFactory(),
        wrapper_class=structlog.stdlib.BoundLogger,
        cache_logger_on_first_use=True,
    )

    loggers: dict[str, dict[str, str]] = {"prtimeline": {"level": log_level}}
    loggers.update({name: {"level": "WARNING"} for name in _QUIET_LOGGERS})

    logging.config.dictConfig(
        {
            "version": 1,
            "disable_existing_loggers": False,
            "formatters": {
                "structured": {
                    "()": structlog.stdlib.ProcessorFormatter,
                    "foreign_pre_chain": _PRE_CHAIN,
                    "processors": [
                        structlog.stdlib.ProcessorFormatter.remove_processors_meta,
                        _renderer(fmt),
                    ],
                },
            },
            "handlers": {
                "stderr": {
                    "class": "logging.StreamHandler",
                    "stream": "ext://sys.stderr",
                    "formatter": "structured",
                },
            },
            "root": {"handlers": ["stderr"], "level": log_level},
            "loggers": loggers,
        }
    )
