"""Module with the logger of wsmirror and helpers to keep log lines readable."""

import logging
from typing import Any

_FORMAT = "%(asctime)s - %(levelname)s - %(message)s"


def _create_logger(name: str) -> logging.Logger:
    handler = logging.StreamHandler()
    handler.setFormatter(logging.Formatter(_FORMAT))

    logger = logging.getLogger(name)
    logger.addHandler(handler)

    return logger


def set_debug(enabled: bool) -> None:
    """Show everything down to debug messages, or only errors."""
    log.setLevel(logging.DEBUG if enabled else logging.ERROR)


def summarize(obj: Any, max_length: int = 255) -> str:
    """
    Return a representation of an object that fits on a log line.

    Binary data is only described by its size since it's rarely readable anyway.
    """
    if isinstance(obj, (bytes, bytearray)):
        text = f"<{len(obj)} bytes>"
    else:
        text = str(obj)

    if len(text) > max_length:
        return text[: max_length - 3] + "..."

    return text


log = _create_logger("wsmirror")
