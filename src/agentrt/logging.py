"""structlog setup shared by the CLI and the runtime.

Modules log through stdlib `logging.getLogger(__name__)`; records pass
through one structlog formatter so session context bound for a turn shows
up on every line emitted while that turn runs.
"""

import logging
import sys
from collections.abc import Iterator
from contextlib import contextmanager

import structlog

from agentrt.config import get_settings

# Transport chatter that would bury turn-level records at INFO.
QUIET_LOGGERS = ("httpx", "httpcore", "asyncio")


def configure_logging(level: str, json_output: bool | None = None) -> None:
    """Install a single stderr handler on the root logger.

    Args:
        level: Log level name (DEBUG, INFO, WARNING, ERROR).
        json_output: Force JSON lines. Defaults to JSON when APP_ENV is prod.
    """
    log_level = getattr(logging, level.upper(), logging.INFO)
    if json_output is None:
        json_output = get_settings().app_env == "prod"

    final: list[structlog.types.Processor]
    if json_output:
        final = [
            structlog.processors.format_exc_info,
            structlog.processors.JSONRenderer(sort_keys=True),
        ]
    else:
        # ConsoleRenderer formats exceptions itself.
        final = [structlog.dev.ConsoleRenderer(colors=False)]

    structlog.configure(
        processors=[
            structlog.contextvars.merge_contextvars,
            structlog.stdlib.add_log_level,
            structlog.stdlib.add_logger_name,
            structlog.processors.TimeStamper(fmt="iso", utc=True),
            structlog.stdlib.ProcessorFormatter.wrap_for_formatter,
        ],
        logger_factory=structlog.stdlib.LoggerFactory(),
        wrapper_class=structlog.stdlib.BoundLogger,
        cache_logger_on_first_use=True,
    )

    handler = logging.StreamHandler(sys.stderr)
    handler.setFormatter(
        structlog.stdlib.ProcessorFormatter(
            foreign_pre_chain=[
                structlog.contextvars.merge_contextvars,
                structlog.stdlib.add_log_level,
                structlog.stdlib.add_logger_name,
                structlog.processors.TimeStamper(fmt="iso", utc=True),
            ],
            processors=[
                structlog.stdlib.ProcessorFormatter.remove_processors_meta,
                *final,
            ],
        )
    )

    root = logging.getLogger()
    root.handlers.clear()
    root.addHandler(handler)
    root.setLevel(log_level)
    for name in QUIET_LOGGERS:
        logging.getLogger(name).setLevel(max(log_level, logging.WARNING))


@contextmanager
def turn_context(session_id: str, **kwargs: object) -> Iterator[None]:
    """Bind `session_id` (and any extra fields) until the block exits."""
    with structlog.contextvars.bound_contextvars(session_id=session_id, **kwargs):
        yield
