"""Logging setup shared by the API process, the scheduler and the CLI.

Call ``configure_logging()`` once at startup, before the first sync runs.
Sync, fetch and write messages all go through module loggers under
``refsync.*``; only the level of the root logger is set here.
"""

import logging
import os
import sys
from typing import IO, Iterable, Optional

DEFAULT_FORMAT = "%(asctime)s [%(levelname)s] %(name)s: %(message)s"
DEFAULT_DATEFMT = "%Y-%m-%d %H:%M:%S"

# per-request and per-job chatter from the libraries under the sync loop
QUIET_LOGGERS = ("httpx", "httpcore", "apscheduler.executors", "apscheduler.scheduler", "uvicorn.access")

_installed: Optional[logging.Handler] = None
_configured = False


def resolve_level(level: Optional[str]) -> int:
    """``level`` or ``LOG_LEVEL`` as a logging constant; unknown names mean INFO."""
    name = (level or os.environ.get("LOG_LEVEL") or "INFO").upper()
    value = logging.getLevelName(name)
    return value if isinstance(value, int) else logging.INFO


def configure_logging(
    level: Optional[str] = None,
    fmt: str = DEFAULT_FORMAT,
    datefmt: str = DEFAULT_DATEFMT,
    quiet: Iterable[str] = QUIET_LOGGERS,
    stream: Optional[IO[str]] = None,
) -> None:
    global _installed, _configured
    if _configured:
        return

    root = logging.getLogger()
    root.setLevel(resolve_level(level))
    # uvicorn, or a test runner, may already own the root handlers
    if not root.handlers:
        handler = logging.StreamHandler(stream or sys.stdout)
        handler.setFormatter(logging.Formatter(fmt=fmt, datefmt=datefmt))
        root.addHandler(handler)
        _installed = handler

    for name in quiet:
        logging.getLogger(name).setLevel(logging.WARNING)
    _configured = True


def reset_logging() -> None:
    """Undo ``configure_logging`` so it can run again (tests, reloads)."""
    global _installed, _configured
    if _installed is not None:
        logging.getLogger().removeHandler(_installed)
        _installed = None
    _configured = False
