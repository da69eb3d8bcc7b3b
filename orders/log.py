"""Logging setup for the ``orders`` package.

Records are emitted as JSON lines (python-json-logger) or plain text, and
always carry the placement ``attempt_id``.
"""

import logging

from pythonjsonlogger import jsonlogger

from .config import OrdersSettings, get_settings
from .logging_filters import AttemptIdFilter

LOG_FORMAT = "%(asctime)s %(levelname)s %(name)s %(message)s %(attempt_id)s"
TEXT_FORMAT = "%(asctime)s | %(levelname)s | %(name)s | %(attempt_id)s | %(message)s"


def configure_logging(settings: OrdersSettings | None = None) -> logging.Logger:
    """Install a single stream handler on the ``orders`` logger.

    Calling it again replaces the handler instead of stacking a new one.

    Returns:
        The configured ``orders`` package logger.
    """
    settings = settings or get_settings()
    logger = logging.getLogger("orders")
    for h in list(logger.handlers):
        if getattr(h, "_orders_handler", False):
            logger.removeHandler(h)

    h = logging.StreamHandler()
    h._orders_handler = True  # type: ignore[attr-defined]
    if settings.log_json:
        h.setFormatter(jsonlogger.JsonFormatter(LOG_FORMAT))
    else:
        h.setFormatter(logging.Formatter(TEXT_FORMAT))
    h.addFilter(AttemptIdFilter())
    logger.addHandler(h)
    logger.setLevel(settings.log_level.upper())
    return logger
