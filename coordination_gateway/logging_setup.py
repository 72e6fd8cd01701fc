# coordination_gateway/logging_setup.py
"""
Log sink configuration.

Service modules import ``logger`` from loguru directly; this module only
decides where the records go. Called once by the CLI callback.
"""

import sys
from typing import Optional

from loguru import logger

from .settings import settings

LOG_FORMAT = (
    "<green>{time:YYYY-MM-DD HH:mm:ss.SSS}</green> | "
    "<level>{level: <8}</level> | "
    "<cyan>{name}</cyan>:<cyan>{line}</cyan> - <level>{message}</level>"
)

def configure_logging(level: Optional[str] = None, log_file: Optional[str] = None) -> None:
    """Replace loguru's default sink with stderr (and an optional file)."""
    level = (level or settings.LOG_LEVEL).upper()
    log_file = log_file or settings.LOG_FILE

    logger.remove()
    # stdout is reserved for JSON-RPC traffic and CLI output
    logger.add(sys.stderr, format=LOG_FORMAT, level=level)
    if log_file:
        logger.add(log_file, format=LOG_FORMAT, level=level, rotation="10 MB", retention=5)
