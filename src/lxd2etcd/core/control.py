"""
Process-wide control state: log verbosity and the connection "initialized" flag.
"""

from __future__ import annotations

import logging

TRACE = 5
logging.addLevelName(TRACE, "TRACE")

logger = logging.getLogger(__name__)

_NEXT_LEVEL = {
    logging.INFO: logging.DEBUG,
    logging.DEBUG: TRACE,
}


class ServiceControl:
    """
    Holds the mutable bits shared between the scheduler and signal handlers.

    Verbosity lives on the root logger itself, so the level is read when a
    record is emitted; toggling never touches connection or snapshot state.
    """

    def __init__(self, *, root_logger: logging.Logger | None = None) -> None:
        self._root = root_logger or logging.getLogger()
        self.initialized = False

    @property
    def level(self) -> int:
        return self._root.level

    def set_level(self, level: int) -> None:
        self._root.setLevel(level)

    def toggle_debug(self) -> int:
        """Cycle the log level INFO -> DEBUG -> TRACE -> INFO and return the new level."""
        new_level = _NEXT_LEVEL.get(self._root.level, logging.INFO)
        logger.info("Setting log level to %s", logging.getLevelName(new_level).capitalize())
        self._root.setLevel(new_level)
        return new_level


__all__ = ["TRACE", "ServiceControl"]
