"""
Logging setup for the Guarded Chat service.

Modules log through ``logging.getLogger(__name__)``; the process entry
point calls ``configure_logging`` once.
"""

import logging
import os
from typing import Optional

LOG_FORMAT = "%(asctime)s - %(name)s - %(levelname)s - %(message)s"


def configure_logging(level: Optional[str] = None) -> None:
    """Configure root logging.

    Args:
        level: Level name; defaults to the LOG_LEVEL environment variable, then INFO
    """
    resolved = (level or os.getenv("LOG_LEVEL", "info")).upper()
    logging.basicConfig(
        level=getattr(logging, resolved, logging.INFO),
        format=LOG_FORMAT,
    )
