"""Logging setup for the catalog service.

Modules log through ``logging.getLogger(__name__)``; this module only wires
the root handler once at application start.
"""

from __future__ import annotations

import logging

LOG_FORMAT = "%(asctime)s %(levelname)s [%(name)s] %(message)s"

_handler: logging.Handler | None = None


def configure_logging(level: str | int = "INFO") -> None:
    """Configure the root logger with a single stream handler.

    Calling it again only adjusts the level.

    Args:
        level: Level name (e.g. "DEBUG") or numeric logging level.
    """
    global _handler

    if isinstance(level, str):
        level = logging.getLevelName(level.upper())
        if not isinstance(level, int):
            level = logging.INFO

    root = logging.getLogger()
    if _handler is None or _handler not in root.handlers:
        _handler = logging.StreamHandler()
        _handler.setFormatter(logging.Formatter(LOG_FORMAT))
        root.addHandler(_handler)

    root.setLevel(level)
    logging.getLogger("geocatalog").setLevel(level)
