"""Logging setup for the CLI: rich console output plus an optional plain log file."""

from __future__ import annotations

import logging
from pathlib import Path

from rich.logging import RichHandler

FILE_FORMAT = "%(asctime)s - %(name)s - %(levelname)s - %(message)s"


def setup_logging(log_level: str = "INFO", log_file: Path | None = None) -> None:
    """Configure the package logger.

    Args:
        log_level: Level name applied to the package logger
        log_file: When given, every record is also appended to this file
    """
    logger = logging.getLogger("dynamo_cleanup")
    logger.setLevel(log_level.upper())
    logger.handlers.clear()
    logger.propagate = False

    logger.addHandler(RichHandler(rich_tracebacks=True, markup=False, show_path=False))

    if log_file is not None:
        log_file.parent.mkdir(parents=True, exist_ok=True)
        file_handler = logging.FileHandler(log_file, encoding="utf-8")
        file_handler.setFormatter(logging.Formatter(FILE_FORMAT))
        logger.addHandler(file_handler)

    # boto and kubernetes are chatty at DEBUG
    for noisy in ("botocore", "boto3", "urllib3", "kubernetes"):
        logging.getLogger(noisy).setLevel(logging.WARNING)
