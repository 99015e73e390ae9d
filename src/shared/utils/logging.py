"""Root logging setup shared by the CLI and the HTTP function.

Modules log through ``logging.getLogger(__name__)``; hosts call
:func:`setup_logging` once before doing any work.
"""

from __future__ import annotations
import logging
import os
import sys
from typing import Iterable, Optional

# httpx logs every request at INFO
DEFAULT_QUIET_LOGGERS = ("httpx", "httpcore", "werkzeug")

TIMESTAMP_FORMAT = "%(asctime)s [%(levelname)s] %(name)s: %(message)s"
PLAIN_FORMAT = "[%(levelname)s] %(name)s: %(message)s"


def setup_logging(
    level: Optional[str] = None,
    format_string: Optional[str] = None,
    include_timestamp: bool = True,
    quiet_loggers: Iterable[str] = DEFAULT_QUIET_LOGGERS,
) -> None:
    """Send all records to stdout at *level*.

    Args:
        level: Level name; falls back to ``LOG_LEVEL`` and then INFO.
        format_string: Replaces the default line format.
        include_timestamp: Prefix lines with the wall-clock time.
        quiet_loggers: Third-party loggers held at WARNING.

    Example:
        >>> setup_logging(level="DEBUG")
    """
    level_name = (level or os.getenv("LOG_LEVEL") or "INFO").upper()
    if format_string is None:
        format_string = TIMESTAMP_FORMAT if include_timestamp else PLAIN_FORMAT

    logging.basicConfig(
        level=getattr(logging, level_name, logging.INFO),
        format=format_string,
        datefmt="%Y-%m-%d %H:%M:%S",
        stream=sys.stdout,
        force=True,
    )

    for logger_name in quiet_loggers:
        logging.getLogger(logger_name).setLevel(logging.WARNING)
