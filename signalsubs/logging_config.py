"""Logging setup for signalsubs.

All service loggers live under the ``signalsubs`` hierarchy so a single
handler on the root package logger captures ledger, payment and scheduler
events alike.
"""

import logging
import sys

ROOT_LOGGER_NAME = "signalsubs"
LOG_FORMAT = "%(asctime)s %(levelname)s [%(name)s] %(message)s"

_HANDLER_MARKER = "_signalsubs_handler"


def get_logger(name: str) -> logging.Logger:
    """Return a logger, nesting bare names under the package logger."""
    if name != ROOT_LOGGER_NAME and not name.startswith(f"{ROOT_LOGGER_NAME}."):
        name = f"{ROOT_LOGGER_NAME}.{name}"
    return logging.getLogger(name)


def setup_logging(level: str | int = "INFO", stream=None) -> logging.Logger:
    """Attach a single stream handler to the package logger.

    Safe to call more than once: an existing handler is reused and only the
    level is updated.
    """
    logger = logging.getLogger(ROOT_LOGGER_NAME)
    if isinstance(level, str):
        level = logging.getLevelName(level.upper())
        if not isinstance(level, int):
            level = logging.INFO
    logger.setLevel(level)

    for handler in logger.handlers:
        if getattr(handler, _HANDLER_MARKER, False):
            handler.setLevel(level)
            return logger

    handler = logging.StreamHandler(stream or sys.stderr)
    handler.setFormatter(logging.Formatter(LOG_FORMAT))
    handler.setLevel(level)
    setattr(handler, _HANDLER_MARKER, True)
    logger.addHandler(handler)
    return logger


def log_transition(
    logger: logging.Logger,
    subscription_id: str,
    from_status: str | None,
    to_status: str,
    **fields,
) -> None:
    """Log a subscription status change in a grep-friendly key=value form."""
    extra = " ".join(f"{k}={v}" for k, v in fields.items() if v is not None)
    logger.info(
        "Subscription %s %s -> %s%s",
        subscription_id,
        from_status or "(new)",
        to_status,
        f" | {extra}" if extra else "",
    )
