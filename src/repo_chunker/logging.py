from __future__ import annotations

import logging
import sys
from typing import TYPE_CHECKING

import structlog

if TYPE_CHECKING:
    from pathlib import Path

_LOGGING_CONFIGURED = False


def setup_logging(
    filename: str | Path | None = None,
    level: str = "INFO",
    *,
    force: bool = False,
) -> structlog.BoundLogger:
    """Route JSON log events (`chunking.*`, `tokenizer.*`, `files.*`, `cli.*`) to stderr or a file.

    Importing this module configures stderr at INFO so library callers get events
    without setup. The CLI calls again with `force=True` when `--log-file` or
    `--log-level` is given; that replaces the root handlers and level and
    reconfigures structlog for loggers not yet cached. Without `force`, repeat calls are no-ops.

    Args:
        filename: Log file, appended to in UTF-8. None writes to stderr.
        level: Level name such as "DEBUG" or "WARNING"; unknown names fall back to INFO.
        force: Replace an existing configuration.

    Returns:
        The "repo_chunker" structlog logger.
    """
    global _LOGGING_CONFIGURED  # noqa: PLW0603
    if force or not _LOGGING_CONFIGURED:
        numeric_level = logging.getLevelNamesMapping().get(level.upper(), logging.INFO)
        handlers: list[logging.Handler] = []
        if filename:
            handlers.append(logging.FileHandler(str(filename), encoding="utf-8"))
        else:
            handlers.append(logging.StreamHandler(sys.stderr))

        logging.basicConfig(
            level=numeric_level,
            handlers=handlers,
            format="%(message)s",
            force=force,
        )
        structlog.configure(
            processors=[
                structlog.processors.TimeStamper(fmt="iso"),
                structlog.processors.add_log_level,
                structlog.processors.StackInfoRenderer(),
                structlog.processors.format_exc_info,
                structlog.processors.JSONRenderer(),
            ],
            wrapper_class=structlog.make_filtering_bound_logger(numeric_level),
            context_class=dict,
            logger_factory=structlog.stdlib.LoggerFactory(),
            cache_logger_on_first_use=True,
        )
        _LOGGING_CONFIGURED = True

    return structlog.get_logger("repo_chunker")


logger = setup_logging()
