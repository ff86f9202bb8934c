"""Process-wide logging setup."""

import logging

from app.config import settings

_CONFIGURED = False


def configure_logging(level: str | None = None) -> None:
    """Install the root handler once; later calls only adjust the level."""
    global _CONFIGURED
    resolved = (level or settings.log_level or "INFO").upper()
    if _CONFIGURED:
        logging.getLogger().setLevel(resolved)
        return
    logging.basicConfig(level=resolved, format=settings.log_format)
    # httpx logs every request at INFO
    logging.getLogger("httpx").setLevel(logging.WARNING)
    _CONFIGURED = True


def get_logger(name: str) -> logging.Logger:
    return logging.getLogger(name)
