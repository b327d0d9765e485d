"""
Structured logging helpers.
"""

from __future__ import annotations

import json
import logging
from typing import Any

CORE_LOGGERS = ("app.jobs", "app.storage", "app.sink", "app.agent")


def log_event(
    logger: logging.Logger,
    level: int,
    event: str,
    **fields: Any,
) -> None:
    """
    Emit one structured log line as compact JSON.
    """

    payload = {"event": event, **fields}
    logger.log(level, json.dumps(payload, default=str, sort_keys=True))


def configure_logging(level: str = "INFO") -> None:
    logging.basicConfig(
        level=getattr(logging, level.upper(), logging.INFO),
        format="%(asctime)s %(levelname)s %(name)s %(message)s",
    )


def set_core_verbosity(enabled: bool) -> None:
    """Quiet the core loggers down to warnings when logging is switched off."""
    for name in CORE_LOGGERS:
        logging.getLogger(name).setLevel(logging.NOTSET if enabled else logging.WARNING)
