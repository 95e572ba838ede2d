"""
Structured logging for the orchestrator.

Call ``setup_logging()`` once per process: the app lifespan does it for the
HTTP server, ``cli.main`` for the operator commands. Log lines go to stderr,
so stdout stays free for command output. Every module then logs event names
with keyword context::

    logger = structlog.get_logger(__name__)
    logger.info("market_deployed", entity_id=7, market="0x...")
"""

import logging
import sys
from typing import Any

import structlog


def _resolve_level(level: int | str) -> int:
    if isinstance(level, int):
        return level
    resolved = logging.getLevelName(level.upper())
    return resolved if isinstance(resolved, int) else logging.INFO


def _stderr_logger(*args: Any) -> structlog.PrintLogger:
    # Looks up sys.stderr per logger, so a stream swapped in later is used.
    return structlog.PrintLogger(sys.stderr)


def setup_logging(level: int | str = logging.INFO, json_output: bool = False) -> None:
    """
    Args:
        level: Minimum level, numeric or by name (``"DEBUG"``, ``"INFO"`` ...).
        json_output: One JSON object per line (production) instead of the
            colored console renderer (development).
    """
    processors: list = [
        structlog.contextvars.merge_contextvars,
        structlog.processors.add_log_level,
        structlog.processors.TimeStamper(fmt="iso", utc=True),
        structlog.dev.set_exc_info,
    ]
    if json_output:
        processors += [structlog.processors.dict_tracebacks, structlog.processors.JSONRenderer()]
    else:
        processors.append(structlog.dev.ConsoleRenderer(colors=True))

    structlog.configure(
        processors=processors,
        wrapper_class=structlog.make_filtering_bound_logger(_resolve_level(level)),
        context_class=dict,
        logger_factory=_stderr_logger,
        cache_logger_on_first_use=False,
    )
