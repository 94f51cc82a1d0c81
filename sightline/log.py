"""Console logging for scripts that drive sightline.

Library modules only create loggers; nothing here runs on import.
"""

from __future__ import annotations

import logging
from typing import IO

LOG_FORMAT = "%(asctime)s %(levelname)-7s %(name)s: %(message)s"

_HANDLER_NAME = "sightline-console"


def configure_logging(
    level: int | str = logging.INFO,
    name: str = "sightline",
    stream: IO[str] | None = None,
) -> logging.Logger:
    """Send ``name`` and its children to one console handler at ``level``.

    Repeated calls replace the handler installed by an earlier call, so
    the level and stream can be changed without duplicating output.
    """
    logger = logging.getLogger(name)
    for existing in list(logger.handlers):
        if existing.get_name() == _HANDLER_NAME:
            logger.removeHandler(existing)

    handler = logging.StreamHandler(stream)
    handler.set_name(_HANDLER_NAME)
    handler.setFormatter(logging.Formatter(LOG_FORMAT))
    logger.addHandler(handler)
    logger.setLevel(level.upper() if isinstance(level, str) else level)
    logger.propagate = False
    return logger
