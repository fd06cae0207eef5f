from __future__ import annotations

import logging

from lexybrain.core.config import get_settings


_LOG_FORMAT = "%(asctime)s %(levelname)s %(name)s %(message)s"


def configure_logging() -> None:
    settings = get_settings()
    level = logging.getLevelName(settings.log_level.upper())
    if not isinstance(level, int):
        level = logging.INFO
    root = logging.getLogger()
    # Avoid stacking handlers when the app factory runs more than once (tests).
    if not root.handlers:
        logging.basicConfig(level=level, format=_LOG_FORMAT)
    root.setLevel(level)
    # Keep driver chatter out of request logs.
    logging.getLogger("httpx").setLevel(logging.WARNING)
    logging.getLogger("sqlalchemy.engine").setLevel(logging.WARNING)
