"""Central logger configuration.

Why this exists:
- Consistent formatting across the ingress, the transcode worker and the scheduler
- One place to tune log level/handlers
"""

import logging
import sys

from src.voicenotes.config.settings import settings


def setup_logger(name: str = "voicenotes") -> logging.Logger:
    """Create and return a configured logger.

    NOTE:
    - Every module should do: `logger = setup_logger(__name__)`.
    - Level comes from APP_LOG_LEVEL; unknown values fall back to INFO.
    """
    logger = logging.getLogger(name)

    # Prevent duplicate handlers in reload environments (uvicorn --reload)
    if logger.handlers:
        return logger

    level = logging.getLevelName((settings.app_log_level or "INFO").upper())
    logger.setLevel(level if isinstance(level, int) else logging.INFO)

    handler = logging.StreamHandler(sys.stdout)
    formatter = logging.Formatter(
        fmt="%(asctime)s | %(levelname)s | %(name)s | %(message)s",
        datefmt="%Y-%m-%d %H:%M:%S",
    )
    handler.setFormatter(formatter)
    logger.addHandler(handler)

    # Avoid propagating to root and double-printing
    logger.propagate = False
    return logger
