from __future__ import annotations

import logging
from logging import Handler

LOG_FORMAT = "%(asctime)s | %(levelname)-8s | %(name)s | %(message)s"
# Chatty at DEBUG and not ours to debug.
QUIET_LOGGERS: tuple[str, ...] = ("httpx", "httpcore", "filelock")


def setup_logging(level: str = "INFO") -> None:
    """Configure application logging once; calling again replaces the handler."""
    logging.captureWarnings(True)

    root = logging.getLogger()
    if root.handlers:
        for handler in list(root.handlers):
            root.removeHandler(handler)
    handler: Handler = logging.StreamHandler()
    formatter = logging.Formatter(LOG_FORMAT, datefmt="%Y-%m-%d %H:%M:%S")
    handler.setFormatter(formatter)
    root.addHandler(handler)
    root.setLevel(level.upper())
    for name in QUIET_LOGGERS:
        logging.getLogger(name).setLevel(logging.WARNING)


__all__ = ["setup_logging"]
