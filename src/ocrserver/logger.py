# src/ocrserver/logger.py

import logging
import sys
from pathlib import Path
from logging.handlers import QueueHandler, QueueListener, RotatingFileHandler
from typing import Union, Optional, Any

# --- Custom Log Level for Progress ---
PROGRESS = 25
logging.addLevelName(PROGRESS, "PROGRESS")

def progress(self, msg, *args, **kwargs):
    if self.isEnabledFor(PROGRESS):
        self._log(PROGRESS, msg, args, **kwargs)

logging.Logger.progress = progress

LOG_FORMAT = "%(asctime)s | %(processName)-15s | %(levelname)-8s | %(message)s"


# --- Custom Filters ---
class ExcludeLevelFilter(logging.Filter):
    def __init__(self, levelno: int):
        super().__init__()
        self.levelno = levelno
    def filter(self, record: logging.LogRecord) -> bool:
        return record.levelno != self.levelno


# --- Main Configuration Function ---
def setup_logging(
    log_queue: Any,
    *,
    level: int = logging.INFO,
    file_path: Optional[Union[str, Path]] = None,
    file_level: Optional[int] = None,
    console: bool = True,
    console_progress: bool = False,
) -> QueueListener:
    """
    Sets up the logging listener architecture.

    Args:
        log_queue: The process-safe queue that job threads and page workers log to.
        level: The base logging level for the console.
        file_path: Path to the persistent log file.
        file_level: The logging level for the file.
        console: Also echo records to stderr.
        console_progress: Let PROGRESS lines through to the console.

    Returns:
        A QueueListener instance. You must call .start() on it.
    """
    handlers = []

    # File handler
    if file_path:
        fp = Path(file_path)
        fp.parent.mkdir(parents=True, exist_ok=True)
        # a long-running service, rotate instead of growing forever
        fh = RotatingFileHandler(fp, maxBytes=5*1024*1024, backupCount=5, encoding="utf-8")
        fh.setLevel(file_level if file_level is not None else level)
        fh.setFormatter(logging.Formatter(LOG_FORMAT))
        handlers.append(fh)

    if console:
        ch = logging.StreamHandler(sys.stderr)
        ch.setLevel(level)
        ch.setFormatter(logging.Formatter(LOG_FORMAT))
        if not console_progress:
            ch.addFilter(ExcludeLevelFilter(PROGRESS))
        handlers.append(ch)

    # The listener pulls from the process-safe queue and pushes to the configured handlers.
    listener = QueueListener(log_queue, *handlers, respect_handler_level=True)
    return listener

def configure_worker_logging(log_queue: Any, level: int = logging.DEBUG):
    """
    Configures the ocrserver logger for the current process.
    Used in the main process and as the initializer of every page worker pool.
    It removes all existing handlers and adds only a QueueHandler.
    """
    logger = logging.getLogger("ocrserver")
    logger.setLevel(level)

    # Remove any handlers that may have been inherited from the parent process
    logger.handlers.clear()
    logger.propagate = False

    qh = QueueHandler(log_queue)
    logger.addHandler(qh)
