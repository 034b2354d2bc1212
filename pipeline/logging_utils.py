import logging
import os
import sys
from typing import IO, Optional

LOG_FORMAT = "%(asctime)s %(levelname)s [%(name)s] %(message)s"

_handler: Optional[logging.Handler] = None


def resolve_level(name: Optional[str] = None) -> int:
    """Level for `name`, else LOG_LEVEL from the environment, else INFO."""
    level = logging.getLevelName((name or os.getenv("LOG_LEVEL") or "INFO").upper())
    return level if isinstance(level, int) else logging.INFO


def setup_logging(level: Optional[str] = None, stream: Optional[IO[str]] = None) -> logging.Handler:
    """
    Send root logging to stderr, or to `stream`. Runners write JSON lines on
    stdout, so log records must never land there.

    Calling this again swaps the handler installed by the previous call.
    """
    global _handler
    root = logging.getLogger()
    if _handler is not None:
        root.removeHandler(_handler)

    _handler = logging.StreamHandler(stream or sys.stderr)
    _handler.setFormatter(logging.Formatter(LOG_FORMAT))
    root.addHandler(_handler)
    root.setLevel(resolve_level(level))
    return _handler


def get_logger(name: str) -> logging.Logger:
    return logging.getLogger(name)
