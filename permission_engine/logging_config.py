from __future__ import annotations

import logging


def configure_engine_logging(level: str = "INFO") -> None:
    """
    Minimal logging configuration for the engine.

    Notes:
    - Plain stdlib logging; the host application owns handlers.
    - Set `PERM_LOG_LEVEL=DEBUG` to see every individual authorization decision.
    """

    normalized = level.upper()
    logging.getLogger("permission_engine").setLevel(normalized)
    logging.getLogger("permission_engine").propagate = True
