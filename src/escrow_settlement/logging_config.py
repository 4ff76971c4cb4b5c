"""Structured logging configuration using structlog.

JSON output in production, colored console output in development. Log
entries carry whatever is bound in the structlog context: the HTTP
request_id, or the sweep_id / ingest batch of a background job.

Token amounts are wei-scale integers that overflow JSON number precision in
most log pipelines, so any int wider than 53 bits is rendered as a string.

Usage:
    from escrow_settlement.logging_config import setup_logging, get_logger
    setup_logging(log_level="DEBUG", json_logs=False)
    logger = get_logger()
    logger.info("escrow.upserted", task_id="42", amount="1000000")
"""

from __future__ import annotations

import logging
import sys
from typing import Any

import structlog

_MAX_SAFE_INT = 2**53


def _stringify_wide_ints(
    _logger: Any, _method: str, event_dict: dict[str, Any]
) -> dict[str, Any]:
    """Render integers beyond float precision as strings."""
    for key, value in event_dict.items():
        if isinstance(value, int) and not isinstance(value, bool) and abs(value) >= _MAX_SAFE_INT:
            event_dict[key] = str(value)
    return event_dict


def setup_logging(log_level: str = "DEBUG", json_logs: bool = False) -> None:
    """Configure structlog on top of the stdlib root logger.

    Args:
        log_level: Standard Python log level string (DEBUG, INFO, WARNING, etc.)
        json_logs: If True, output JSON (for production). If False, colored console.
    """
    shared_processors: list[structlog.types.Processor] = [
        structlog.contextvars.merge_contextvars,
        structlog.stdlib.add_logger_name,
        structlog.stdlib.add_log_level,
        structlog.processors.TimeStamper(fmt="iso"),
        structlog.processors.StackInfoRenderer(),
        _stringify_wide_ints,
        structlog.processors.UnicodeDecoder(),
    ]

    if json_logs:
        renderer: structlog.types.Processor = structlog.processors.JSONRenderer()
    else:
        renderer = structlog.dev.ConsoleRenderer(colors=True)

    structlog.configure(
        processors=[
            *shared_processors,
            structlog.stdlib.ProcessorFormatter.wrap_for_formatter,
        ],
        logger_factory=structlog.stdlib.LoggerFactory(),
        wrapper_class=structlog.stdlib.BoundLogger,
        cache_logger_on_first_use=True,
    )

    formatter = structlog.stdlib.ProcessorFormatter(
        processors=[
            structlog.stdlib.ProcessorFormatter.remove_processors_meta,
            renderer,
        ],
    )

    handler = logging.StreamHandler(sys.stdout)
    handler.setFormatter(formatter)

    root_logger = logging.getLogger()
    root_logger.handlers.clear()
    root_logger.addHandler(handler)
    root_logger.setLevel(getattr(logging, log_level.upper(), logging.DEBUG))

    # web3 logs every RPC round-trip at DEBUG
    for noisy_logger in ("uvicorn.access", "sqlalchemy.engine", "web3", "urllib3", "aiohttp"):
        logging.getLogger(noisy_logger).setLevel(logging.WARNING)


def get_logger(name: str | None = None) -> structlog.stdlib.BoundLogger:
    """Get a structured logger instance."""
    return structlog.get_logger(name)


def bind_job_context(**values: Any) -> None:
    """Bind identifiers of a background job (sweep_id, from_block, ...) to the log context."""
    structlog.contextvars.bind_contextvars(**values)


def clear_job_context(*keys: str) -> None:
    """Drop job identifiers bound with bind_job_context."""
    structlog.contextvars.unbind_contextvars(*keys)
