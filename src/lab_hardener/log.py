"""structlog configuration for the CLI."""

import logging
import sys
from typing import IO, Optional

import structlog

from lab_hardener.config import LoggingConfig

_log_file: Optional[IO[str]] = None


def configure_logging(config: LoggingConfig, verbose: bool = False, quiet: bool = False) -> None:
    """Configure structlog once per process.

    Logs go to stderr so ``--json`` results on stdout stay parseable; with
    ``LOG_FILE`` set they are appended to that file instead.
    """
    global _log_file

    level_name = "DEBUG" if verbose else ("ERROR" if quiet else config.level)
    level = logging.getLevelName(level_name)

    stream: IO[str] = sys.stderr
    if config.file is not None:
        config.file.parent.mkdir(parents=True, exist_ok=True)
        if _log_file is not None:
            _log_file.close()
        _log_file = open(config.file, "a", encoding="utf-8")
        stream = _log_file

    renderer = (
        structlog.processors.JSONRenderer()
        if config.json_output or config.file is not None
        else structlog.dev.ConsoleRenderer(colors=stream.isatty())
    )

    structlog.configure(
        processors=[
            structlog.contextvars.merge_contextvars,
            structlog.processors.add_log_level,
            structlog.processors.TimeStamper(fmt="%Y-%m-%d %H:%M:%S"),
            renderer,
        ],
        wrapper_class=structlog.make_filtering_bound_logger(level),
        logger_factory=structlog.PrintLoggerFactory(file=stream),
        cache_logger_on_first_use=False,
    )
