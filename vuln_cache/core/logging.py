"""Logging setup shared by the CLI and embedding applications"""

import logging
import sys
from typing import Optional, Union

LOG_FORMAT = '%(asctime)s - %(name)s - %(levelname)s - %(message)s'

# loggers this package writes to
PACKAGE_LOGGERS = ("vuln_cache", "fetcher")


def setup_logging(level: Union[int, str] = logging.INFO, log_file: Optional[str] = None) -> None:
    """
    Configure root logging with a stderr handler and an optional file handler

    Args:
        level: Level name or number for the package loggers
        log_file: Also append log lines to this file
    """
    if isinstance(level, str):
        level = logging.getLevelName(level.upper())
        if not isinstance(level, int):
            level = logging.INFO

    handlers = [logging.StreamHandler(sys.stderr)]
    if log_file:
        handlers.append(logging.FileHandler(log_file))

    logging.basicConfig(level=logging.WARNING, format=LOG_FORMAT, handlers=handlers, force=True)
    for name in PACKAGE_LOGGERS:
        logging.getLogger(name).setLevel(level)
