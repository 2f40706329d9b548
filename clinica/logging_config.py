"""Logging estruturado do serviço da clínica.

structlog sobre o logging da stdlib; JSON por linha por padrão,
``LOG_FORMAT=console`` usa o renderer legível de desenvolvimento.
"""
from __future__ import annotations

import logging
import sys
import uuid

import structlog

from . import config

_configured = False


def setup_logging(log_level: str | None = None, log_format: str | None = None) -> None:
    """Configura structlog e o root logger da stdlib (idempotente)."""
    global _configured

    level_name = (log_level or config.LOG_LEVEL).upper()
    renderer = (
        structlog.dev.ConsoleRenderer()
        if (log_format or config.LOG_FORMAT) == "console"
        else structlog.processors.JSONRenderer()
    )

    structlog.configure(
        processors=[
            structlog.contextvars.merge_contextvars,
            structlog.stdlib.add_log_level,
            structlog.stdlib.add_logger_name,
            structlog.processors.TimeStamper(fmt="iso"),
            structlog.processors.StackInfoRenderer(),
            structlog.processors.format_exc_info,
            renderer,
        ],
        wrapper_class=structlog.stdlib.BoundLogger,
        context_class=dict,
        logger_factory=structlog.stdlib.LoggerFactory(),
        cache_logger_on_first_use=True,
    )

    if not _configured:
        logging.basicConfig(format="%(message)s", stream=sys.stdout, level=getattr(logging, level_name, logging.INFO))
        _configured = True
    else:
        logging.getLogger().setLevel(getattr(logging, level_name, logging.INFO))


def get_logger(name: str) -> structlog.stdlib.BoundLogger:
    return structlog.get_logger(name)


def generate_request_id() -> str:
    return f"req-{uuid.uuid4().hex[:12]}"
