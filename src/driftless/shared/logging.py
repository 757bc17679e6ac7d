"""Structured logging for driftless.

The bootstrap engine only logs; user-facing progress lines are printed by the
commands. Events carry ``step``, ``revision``, ``object`` and ``attempt``
keys, rendered for a terminal by default or as JSON lines for CI.
"""

import logging
import sys
from pathlib import Path
from typing import Any

import structlog

# Event keys whose values are credentials and never reach a log sink
REDACTED_KEYS = frozenset({"password", "token", "private_key", "identity", "secret_data"})

# Client libraries that are chatty at info level
QUIET_LOGGERS = ("kubernetes", "urllib3", "httpx", "httpcore")


def redact_secrets(logger: Any, method_name: str, event_dict: dict[str, Any]) -> dict[str, Any]:
    """Mask credential values passed as event keys."""
    for key in REDACTED_KEYS.intersection(event_dict):
        event_dict[key] = "***"
    return event_dict


def configure_logging(
    level: str = "warning",
    log_file: str | Path | None = None,
    json_output: bool = False,
) -> None:
    """Route stdlib logging and structlog to one sink.

    Args:
        level: debug, info, warning or error
        log_file: Write to this file instead of stderr
        json_output: Render JSON lines instead of console output
    """
    log_level = getattr(logging, level.upper(), logging.WARNING)

    if log_file:
        handler: logging.Handler = logging.FileHandler(str(log_file))
    else:
        handler = logging.StreamHandler(sys.stderr)
    handler.setLevel(log_level)

    logging.basicConfig(level=log_level, handlers=[handler], format="%(message)s", force=True)
    if log_level > logging.DEBUG:
        for name in QUIET_LOGGERS:
            logging.getLogger(name).setLevel(max(log_level, logging.WARNING))

    processors: list[structlog.types.Processor] = [
        structlog.stdlib.filter_by_level,
        structlog.stdlib.add_logger_name,
        structlog.stdlib.add_log_level,
        structlog.processors.TimeStamper(fmt="iso"),
        redact_secrets,
        structlog.processors.StackInfoRenderer(),
    ]

    if json_output:
        processors += [structlog.processors.format_exc_info, structlog.processors.JSONRenderer()]
    else:
        processors.append(structlog.dev.ConsoleRenderer(colors=sys.stderr.isatty() and not log_file))

    structlog.configure(
        processors=processors,
        wrapper_class=structlog.stdlib.BoundLogger,
        context_class=dict,
        logger_factory=structlog.stdlib.LoggerFactory(),
        cache_logger_on_first_use=True,
    )


def get_logger(name: str) -> structlog.stdlib.BoundLogger:
    """Logger for a driftless module, usually ``get_logger(__name__)``."""
    return structlog.get_logger(name)
