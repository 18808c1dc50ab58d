"""
Logging setup for the CLI.

    verbose  DEBUG    every task, cache decision and retry
    default  INFO     phase progress and summaries
    quiet    WARNING  problems only
"""

import logging
from typing import Optional

LOG_FORMAT = '%(asctime)s | %(levelname)s | %(message)s'
DATE_FORMAT = '%H:%M:%S'

_LEVELS = {
    "verbose": logging.DEBUG,
    "default": logging.INFO,
    "quiet": logging.WARNING,
}


def verbosity_from_flags(verbose: bool = False, quiet: bool = False) -> str:
    if verbose:
        return "verbose"
    if quiet:
        return "quiet"
    return "default"


def configure_logging(verbosity: str = "default", logger_name: Optional[str] = None) -> logging.Logger:
    """Configure the root handler once and return the package (or named) logger."""
    level = _LEVELS.get(verbosity, logging.INFO)
    logging.basicConfig(level=level, format=LOG_FORMAT, datefmt=DATE_FORMAT, force=True)
    # asyncio debug chatter is noise below WARNING
    logging.getLogger("asyncio").setLevel(max(level, logging.WARNING))
    logger = logging.getLogger(logger_name or "tokencrawler")
    logger.setLevel(level)
    return logger
