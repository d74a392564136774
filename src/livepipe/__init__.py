"""livepipe - Declarative dataset pipelines on DuckDB."""

from __future__ import annotations

import logging

__version__ = "0.1.0"

LOG_FORMAT = "%(asctime)s [%(levelname)s] %(name)s: %(message)s"


def setup_logging(level: str = "INFO") -> None:
    """Send ``livepipe.*`` log records to stderr at the given level.

    Safe to call more than once: the handler is only attached the first time,
    later calls just adjust the level.
    """
    logger = logging.getLogger("livepipe")
    logger.setLevel(getattr(logging, str(level).upper(), logging.INFO))
    if logger.handlers:
        return
    handler = logging.StreamHandler()
    handler.setFormatter(logging.Formatter(LOG_FORMAT, datefmt="%Y-%m-%d %H:%M:%S"))
    logger.addHandler(handler)
