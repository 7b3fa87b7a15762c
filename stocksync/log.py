from __future__ import annotations

import logging
import queue
import sys
from logging.handlers import QueueHandler, QueueListener, RotatingFileHandler
from pathlib import Path

SUCCESS = 25
logging.addLevelName(SUCCESS, "SUCCESS")

LOG_FORMAT = "%(asctime)s [%(levelname)s] %(name)s: %(message)s"

_listener: QueueListener | None = None


def configure_logging(level: str = "INFO", log_file: str | None = None, max_size_mb: int = 100, backup_count: int = 10) -> None:
    """Route every record through a queue to console and, optionally, a size-bounded file."""
    global _listener
    shutdown_logging()

    formatter = logging.Formatter(LOG_FORMAT)
    handlers: list[logging.Handler] = []

    console = logging.StreamHandler(sys.stderr)
    console.setFormatter(formatter)
    console.setLevel(level.upper())
    handlers.append(console)

    if log_file:
        path = Path(log_file)
        path.parent.mkdir(parents=True, exist_ok=True)
        file_handler = RotatingFileHandler(path, maxBytes=max_size_mb * 1024 * 1024, backupCount=backup_count, encoding="utf-8")
        file_handler.setFormatter(formatter)
        file_handler.setLevel(logging.DEBUG)
        handlers.append(file_handler)

    records: queue.Queue[logging.LogRecord] = queue.Queue(-1)
    root = logging.getLogger()
    for handler in list(root.handlers):
        root.removeHandler(handler)
    root.addHandler(QueueHandler(records))
    root.setLevel(logging.DEBUG if log_file else level.upper())
    logging.getLogger("httpx").setLevel(logging.WARNING)
    logging.getLogger("httpcore").setLevel(logging.WARNING)

    _listener = QueueListener(records, *handlers, respect_handler_level=True)
    _listener.start()


def shutdown_logging() -> None:
    """Flush queued records and close handlers."""
    global _listener
    if _listener is None:
        return
    _listener.stop()
    for handler in _listener.handlers:
        handler.flush()
        handler.close()
    _listener = None
