"""
Logging setup for schedCore.

Everything under the ``sched_core`` logger (sched_core.loop,
sched_core.scheduler.dispatcher, ...) goes to the console and, unless
disabled, to a rotating file.
"""

import logging
import logging.handlers
from pathlib import Path
from typing import Optional

LOG_FORMAT = "%(asctime)s | %(levelname)-8s | %(name)s | %(message)s"
LOG_DATE_FORMAT = "%Y-%m-%d %H:%M:%S"
MAX_LOG_BYTES = 10 * 1024 * 1024
LOG_BACKUPS = 5

_logging_configured = False


def setup_logging(
    level: str = "INFO",
    log_file: Optional[str] = None,
    data_dir: Optional[Path] = None,
) -> Optional[str]:
    """Configure the ``sched_core`` logger once per process.

    Args:
        level: Level name (DEBUG, INFO, WARNING, ERROR, CRITICAL).
        log_file: ``None`` for ``<data_dir>/logs/schedcore.log``, ``"none"``
            to disable file output, anything else is used as the path.
        data_dir: Base for the default log path (defaults to the
            configured data directory).

    Returns:
        The log file path in use, or None when file logging is off or
        logging was already configured.
    """
    global _logging_configured
    if _logging_configured:
        return None
    _logging_configured = True

    numeric_level = getattr(logging, level.upper(), logging.INFO)

    parent_logger = logging.getLogger("sched_core")
    parent_logger.setLevel(numeric_level)
    parent_logger.propagate = False

    fmt = logging.Formatter(LOG_FORMAT, datefmt=LOG_DATE_FORMAT)

    console = logging.StreamHandler()
    console.setLevel(numeric_level)
    console.setFormatter(fmt)
    parent_logger.addHandler(console)

    if isinstance(log_file, str) and log_file.lower() == "none":
        return None

    if log_file is None:
        if data_dir is None:
            from .config.loader import get_data_dir
            data_dir = get_data_dir()
        path = Path(data_dir) / "logs" / "schedcore.log"
    else:
        path = Path(log_file)
    path.parent.mkdir(parents=True, exist_ok=True)

    file_handler = logging.handlers.RotatingFileHandler(
        str(path), maxBytes=MAX_LOG_BYTES, backupCount=LOG_BACKUPS, encoding="utf-8",
    )
    file_handler.setLevel(numeric_level)
    file_handler.setFormatter(fmt)
    parent_logger.addHandler(file_handler)
    return str(path)
