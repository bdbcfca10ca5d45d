"""
Logging helpers

Every module asks for its logger through get_logger(__name__). The first call
installs a console handler and a rotating file handler on the root logger.
"""

import logging
import os
import sys
from logging.handlers import RotatingFileHandler
from pathlib import Path
from typing import Optional

LOG_FORMAT = "%(asctime)s | %(levelname)s | %(name)s | %(message)s"
DATE_FORMAT = "%H:%M:%S"

_configured = False


def setup_logging(level: int = logging.INFO, log_dir: Optional[str] = None) -> None:
    """Configure root logging once (console + rotating file)."""
    global _configured
    if _configured:
        return
    _configured = True

    root = logging.getLogger()
    if root.handlers:
        # Somebody (pytest, the host application) already configured logging.
        return

    formatter = logging.Formatter(LOG_FORMAT, datefmt=DATE_FORMAT)

    console = logging.StreamHandler(sys.stdout)
    console.setLevel(level)
    console.setFormatter(formatter)
    root.addHandler(console)

    log_dir = log_dir or os.getenv("WEBPILOT_LOG_DIR", "logs")
    try:
        Path(log_dir).mkdir(parents=True, exist_ok=True)
        file_handler = RotatingFileHandler(
            Path(log_dir) / "webpilot.log",
            maxBytes=5 * 1024 * 1024,
            backupCount=3,
            encoding="utf-8",
        )
        file_handler.setLevel(logging.DEBUG)
        file_handler.setFormatter(formatter)
        root.addHandler(file_handler)
    except OSError as e:
        root.warning(f"File logging disabled: {e}")

    root.setLevel(min(level, logging.DEBUG))


def get_logger(name: Optional[str] = None) -> logging.Logger:
    setup_logging()
    return logging.getLogger(name)
