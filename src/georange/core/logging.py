"""
Logging configuration.

Library modules only call `logging.getLogger(__name__)`; nothing here runs on import.
Applications that want georange's console format call `configure_logging()`, which
applies the packaged YAML config (`src/georange/config/logging.yaml`) with the level
from the argument or, failing that, from settings (`GEORANGE_LOG_LEVEL`).
"""

from __future__ import annotations

import copy
import logging.config

from georange.config.settings import get_logging_config, get_settings
from georange.core.errors import InvalidArgument

LIBRARY_LOGGER = "georange"


def configure_logging(level: str | None = None) -> None:
    """Apply the packaged logging config to the root, handler and `georange` loggers."""
    level = (level or get_settings().app.log_level).upper()
    if not isinstance(logging.getLevelName(level), int):
        raise InvalidArgument(f"unknown log level {level!r}")

    # The loaded YAML is cached; work on a copy.
    config = copy.deepcopy(get_logging_config())
    config.setdefault("root", {})["level"] = level
    config.setdefault("loggers", {}).setdefault(LIBRARY_LOGGER, {})["level"] = level
    for handler in config.get("handlers", {}).values():
        if isinstance(handler, dict) and "level" in handler:
            handler["level"] = level

    logging.config.dictConfig(config)
