"""
Logging setup for the auction service.
"""

import logging
import time
from typing import Optional, Union


def configure_logging(level: Union[int, str] = logging.INFO, handlers: Optional[list] = None):
    """
    Configures logging format and log level.

    - log format: %(asctime)s [%(levelname)s] [%(name)s] %(message)s
    - timestamps are UTC
    - modules get their logger with ``logging.getLogger(__name__)``
    """
    logging.Formatter.converter = time.gmtime
    logging.basicConfig(
        format="%(asctime)s [%(levelname)s] [%(name)s] %(message)s",
        level=level,
        handlers=handlers,
        force=True,
    )
    logging.captureWarnings(True)
