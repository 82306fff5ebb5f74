"""JSON-lines log file for long-running scheduler processes.

Writes to ``<log_dir>/tix.log``, rotated at 5MB with 3 backups.
"""

import json
import logging
import os
import threading
from logging.handlers import RotatingFileHandler
from pathlib import Path

LOG_FILENAME = "tix.log"
_MAX_BYTES = 5 * 1024 * 1024
_BACKUP_COUNT = 3
_setup_lock = threading.Lock()


class JsonFormatter(logging.Formatter):
    """One JSON object per record."""

    def format(self, record: logging.LogRecord) -> str:
        entry = {
            "ts": self.formatTime(record, datefmt="%Y-%m-%dT%H:%M:%S"),
            "level": record.levelname,
            "logger": record.name,
            "msg": record.getMessage(),
        }
        if hasattr(record, "args_data"):
            entry["data"] = record.args_data
        if record.exc_info and record.exc_info[1]:
            entry["exception"] = repr(record.exc_info[1])
        return json.dumps(entry, default=str)


def setup_logging(log_dir: Path, level: int = logging.INFO) -> logging.Logger:
    """Attach the rotating JSON handler to the ``ticket_orchestrator`` logger.

    Calling it again with the same directory is a no-op; a different directory
    replaces the previous handler.
    """
    logger = logging.getLogger("ticket_orchestrator")
    log_dir = Path(log_dir)
    log_dir.mkdir(parents=True, exist_ok=True)
    target = os.path.abspath(str(log_dir / LOG_FILENAME))

    with _setup_lock:
        for handler in logger.handlers[:]:
            if not isinstance(handler, RotatingFileHandler):
                continue
            if handler.baseFilename == target:
                return logger
            logger.removeHandler(handler)
            handler.close()

        handler = RotatingFileHandler(target, maxBytes=_MAX_BYTES, backupCount=_BACKUP_COUNT)
        handler.setFormatter(JsonFormatter())
        logger.addHandler(handler)
        logger.setLevel(level)
    return logger
