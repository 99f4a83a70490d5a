"""Logging setup shared by the server and the CLI."""

from __future__ import annotations

import logging
import os
from pathlib import Path


LOG_FORMAT = "%(asctime)s %(levelname)s %(name)s: %(message)s"


def setup_logging(level: str | None = None) -> None:
    """Configure console logging and, optionally, a log file.

    Does nothing when the root logger already has handlers, so embedding
    applications keep their own configuration.
    """
    root_logger = logging.getLogger()
    if root_logger.handlers:
        return

    level_name = (level or os.getenv("WAREHOUSE_KB_LOG_LEVEL", "INFO")).upper()
    formatter = logging.Formatter(LOG_FORMAT)

    stream_handler = logging.StreamHandler()
    stream_handler.setFormatter(formatter)
    root_logger.addHandler(stream_handler)

    log_file = os.getenv("WAREHOUSE_KB_LOG_FILE")
    if log_file:
        log_path = Path(log_file).expanduser()
        log_path.parent.mkdir(parents=True, exist_ok=True)
        file_handler = logging.FileHandler(log_path, encoding="utf-8")
        file_handler.setFormatter(formatter)
        root_logger.addHandler(file_handler)

    root_logger.setLevel(getattr(logging, level_name, logging.INFO))
    # google-genai logs every HTTP request at INFO.
    logging.getLogger("httpx").setLevel(logging.WARNING)
