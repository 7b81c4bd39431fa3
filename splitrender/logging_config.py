"""Logging setup shared by the Celery worker and local entry points."""

import logging

from splitrender.config import get_settings

LOG_FORMAT = "%(asctime)s %(levelname)s [%(name)s] %(message)s"


def configure_logging(level: str | None = None) -> None:
    """Install a single stream handler on the root logger.

    Calling it twice does not stack handlers.
    """
    settings = get_settings()
    root = logging.getLogger()
    root.setLevel((level or settings.log_level).upper())

    if any(getattr(h, "_splitrender", False) for h in root.handlers):
        return

    handler = logging.StreamHandler()
    handler.setFormatter(logging.Formatter(LOG_FORMAT))
    handler._splitrender = True  # type: ignore[attr-defined]
    root.addHandler(handler)
