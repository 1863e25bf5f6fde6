"""Project-wide logger."""

import logging
import os
import sys

LOG_FORMAT = "%(asctime)s %(levelname)-7s [%(threadName)s] %(name)s: %(message)s"

logger = logging.getLogger("vocabimages")


def setup_logging(level: str | None = None) -> logging.Logger:
    """Attach a stream handler to the project logger.

    The level defaults to ``VOCABIMAGES_LOG_LEVEL`` (INFO when unset). Calling
    this more than once only updates the level.
    """
    level_name = (level or os.getenv("VOCABIMAGES_LOG_LEVEL", "INFO")).upper()
    logger.setLevel(getattr(logging, level_name, logging.INFO))

    if not any(getattr(h, "_vocabimages", False) for h in logger.handlers):
        handler = logging.StreamHandler(sys.stderr)
        handler.setFormatter(logging.Formatter(LOG_FORMAT))
        handler._vocabimages = True
        logger.addHandler(handler)
        logger.propagate = False

    return logger
