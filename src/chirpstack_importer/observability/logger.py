"""Structured logging configuration.

Levels:
- INFO (20): Run summaries (default)
- VERBOSE (15): Between DEBUG and INFO, for stdlib loggers that use it
- DEBUG (10): One line per unit, registry requests and throttle slots
- TRACE (5): Everything

Run-scoped fields (``run_id``, ``operation``) are bound with LogContext and
carried by structlog's contextvars, so tasks spawned inside the context (one
per row) log them too.

AppKeys, NwkKeys and API tokens are root secrets of the devices and the
network server. Event fields named after them are masked before rendering.
"""

import logging
import sys
from pathlib import Path
from types import TracebackType
from typing import Any

import structlog
from structlog.typing import EventDict, WrappedLogger

TRACE = 5
VERBOSE = 15

logging.addLevelName(TRACE, "TRACE")
logging.addLevelName(VERBOSE, "VERBOSE")

SECRET_FIELDS: frozenset[str] = frozenset(
    {"app_key", "nwk_key", "api_token", "token", "authorization"}
)


class LogContext:
    """
    Bind fields to every log event emitted inside the block.

    Usage:
        with LogContext(run_id="run_1a2b3c4d"):
            logger.info("Executing import")
    """

    def __init__(self, **kwargs: Any) -> None:
        self.new_context = kwargs
        self._tokens: dict[str, Any] = {}

    def __enter__(self) -> "LogContext":
        self._tokens = dict(structlog.contextvars.bind_contextvars(**self.new_context))
        return self

    def __exit__(
        self,
        exc_type: type[BaseException] | None,
        exc_val: BaseException | None,
        exc_tb: TracebackType | None,
    ) -> None:
        structlog.contextvars.reset_contextvars(**self._tokens)


def mask_secret(value: object) -> str:
    """Keep the last four characters of a secret."""
    text = str(value)
    if len(text) <= 8:
        return "****"
    return f"****{text[-4:]}"


def redact_secrets(
    logger: WrappedLogger, method_name: str, event_dict: EventDict
) -> EventDict:
    """Structlog processor masking secret fields."""
    for key in SECRET_FIELDS.intersection(event_dict):
        if event_dict[key]:
            event_dict[key] = mask_secret(event_dict[key])
    return event_dict


LOG_LEVELS = {
    "TRACE": TRACE,
    "DEBUG": logging.DEBUG,
    "VERBOSE": VERBOSE,
    "INFO": logging.INFO,
    "WARNING": logging.WARNING,
    "ERROR": logging.ERROR,
    "CRITICAL": logging.CRITICAL,
}


def get_log_level(level: str) -> int:
    """
    Get numeric log level from string.

    Args:
        level: Level name (TRACE, DEBUG, VERBOSE, INFO, WARNING, ERROR, CRITICAL)

    Returns:
        Numeric log level, INFO for unknown names
    """
    return LOG_LEVELS.get(level.upper(), logging.INFO)


def configure_logging(
    level: str = "INFO",
    json_logs: bool = False,
    log_file: str | Path | None = None,
    log_filter: str | None = None,
) -> None:
    """
    Configure structured logging.

    Args:
        level: Logging level (TRACE, DEBUG, VERBOSE, INFO, WARNING, ERROR, CRITICAL)
        json_logs: Whether to output logs in JSON format
        log_file: Optional path to write logs to file
        log_filter: Comma-separated component names to keep (e.g., "executor,client")
    """
    log_level = get_log_level(level)

    handlers: list[logging.Handler] = [logging.StreamHandler(sys.stderr)]
    if log_file:
        file_path = Path(log_file)
        file_path.parent.mkdir(parents=True, exist_ok=True)
        handlers.append(logging.FileHandler(file_path))

    logging.basicConfig(format="%(message)s", level=log_level, handlers=handlers, force=True)
    logging.getLogger().setLevel(log_level)

    # httpx logs every request at INFO
    logging.getLogger("httpx").setLevel(max(log_level, logging.WARNING))

    if log_filter:
        components = [c.strip() for c in log_filter.split(",") if c.strip()]
        for name in list(logging.root.manager.loggerDict):
            if not any(comp in name for comp in components):
                logging.getLogger(name).setLevel(logging.WARNING)

    processors: list[Any] = [
        structlog.contextvars.merge_contextvars,
        structlog.stdlib.add_logger_name,
        structlog.stdlib.add_log_level,
        structlog.stdlib.PositionalArgumentsFormatter(),
        structlog.processors.TimeStamper(fmt="iso"),
        structlog.processors.StackInfoRenderer(),
        structlog.processors.format_exc_info,
        structlog.processors.UnicodeDecoder(),
        redact_secrets,
    ]

    if json_logs:
        processors.append(structlog.processors.JSONRenderer())
    else:
        processors.append(structlog.dev.ConsoleRenderer(colors=sys.stderr.isatty()))

    structlog.configure(
        processors=processors,
        logger_factory=structlog.stdlib.LoggerFactory(),
        wrapper_class=structlog.stdlib.BoundLogger,
        cache_logger_on_first_use=True,
    )
