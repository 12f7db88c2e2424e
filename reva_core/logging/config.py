# =============================================================================
# reva_core/logging/config.py
# Logging Configuration for the Reva Sync Core
# =============================================================================
"""
Log setup shared by the sync agent, the diagnostics dashboard and the tests.

The core modules only call logging.getLogger(__name__); whoever runs the
core (scripts/run_sync_agent.py, app.py) calls setup_logging() once.
"""

import logging
import sys
import time
from pathlib import Path
from datetime import datetime
from typing import Optional


LOG_FORMAT = "%(asctime)s | %(name)s | %(levelname)s | %(message)s"
LOG_DATE_FORMAT = "%Y-%m-%d %H:%M:%S"

# Daily files land here when file logging is on
LOG_DIR = Path("logs")

# The Supabase client stack logs every request and websocket frame at INFO/DEBUG
SUPABASE_STACK_LOGGERS = (
    "urllib3",
    "httpx",
    "httpcore",
    "hpack",
    "supabase",
    "postgrest",
    "realtime",
    "websockets",
    "gotrue",
)


def setup_logging(
    level: int = logging.INFO,
    log_to_file: bool = True,
    log_filename: Optional[str] = None,
    library_level: int = logging.WARNING,
) -> None:
    """
    Configure logging for a sync agent or dashboard process.

    Args:
        level: Root log level (the agent passes DEBUG for --debug)
        log_to_file: Also write logs/sync_YYYY-MM-DD.log; the dashboard turns this off
        log_filename: Override the daily file name
        library_level: Level for the Supabase client stack (httpx, realtime, ...)
    """
    handlers = [logging.StreamHandler(sys.stdout)]

    if log_to_file:
        LOG_DIR.mkdir(exist_ok=True)
        if log_filename is None:
            log_filename = f"sync_{datetime.now().strftime('%Y-%m-%d')}.log"
        handlers.append(logging.FileHandler(LOG_DIR / log_filename))

    logging.basicConfig(
        level=level,
        format=LOG_FORMAT,
        datefmt=LOG_DATE_FORMAT,
        handlers=handlers,
        force=True,  # Replace handlers from an earlier call
    )

    for name in SUPABASE_STACK_LOGGERS:
        logging.getLogger(name).setLevel(library_level)

    logging.getLogger("reva_core").info(
        f"Logging initialized ({logging.getLevelName(level)}"
        f"{', file ' + str(LOG_DIR / log_filename) if log_to_file else ''})"
    )


def get_logger(name: str) -> logging.Logger:
    """Logger for scripts outside the package, e.g. get_logger("reva_core.agent")."""
    return logging.getLogger(name)


class LogContext:
    """
    Log the start, duration and outcome of a block.

    The outbox drain runs inside one:

        with LogContext(logger, "Draining outbox"):
            ...
        # "Draining outbox... started"
        # "Draining outbox... completed (0.42s)"

    A drain cancelled on sign-out or shutdown is logged as cancelled, not
    failed. Exceptions are never suppressed.
    """

    def __init__(self, logger: logging.Logger, operation: str, level: int = logging.INFO):
        self.logger = logger
        self.operation = operation
        self.level = level
        self.start_time = None

    def __enter__(self):
        self.start_time = time.monotonic()
        self.logger.log(self.level, f"{self.operation}... started")
        return self

    def __exit__(self, exc_type, exc_val, exc_tb):
        elapsed = time.monotonic() - self.start_time

        if exc_type is None:
            self.logger.log(self.level, f"{self.operation}... completed ({elapsed:.2f}s)")
        elif issubclass(exc_type, (KeyboardInterrupt, SystemExit)) or exc_type.__name__ == "CancelledError":
            self.logger.info(f"{self.operation}... cancelled ({elapsed:.2f}s)")
        else:
            self.logger.error(
                f"{self.operation}... failed ({elapsed:.2f}s): {exc_val}",
                exc_info=True
            )

        return False
