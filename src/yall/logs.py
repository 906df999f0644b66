"""Channel logging for yall.

Log records are tagged with a ``channel`` (start, finish, warn, error, just)
through the ``extra`` mapping. :class:`ChannelFormatter` colours the message
by channel so that runs in many folders stay readable when interleaved with
package-manager output.
"""

from __future__ import annotations

import logging
import os
import sys
from typing import Any, TextIO

RESET = "\033[0m"

CHANNEL_COLORS = {
    "start": "\033[35m",
    "finish": "\033[35m",
    "warn": "\033[33m",
    "just": "\033[90m",
    "error": "\033[31m",
}

_LEVEL_CHANNELS = {
    logging.DEBUG: "just",
    logging.INFO: "just",
    logging.WARNING: "warn",
    logging.ERROR: "error",
    logging.CRITICAL: "error",
}


def _channel_for(record: logging.LogRecord) -> str:
    channel = getattr(record, "channel", None)
    if channel in CHANNEL_COLORS:
        return channel
    return _LEVEL_CHANNELS.get(record.levelno, "just")


class ChannelFormatter(logging.Formatter):
    """Formatter that colours the rendered message by its channel."""

    def __init__(self, fmt: str = "%(message)s", *, use_color: bool = False) -> None:
        super().__init__(fmt)
        self.use_color = use_color

    def format(self, record: logging.LogRecord) -> str:
        text = super().format(record)
        if not self.use_color:
            return text
        return f"{CHANNEL_COLORS[_channel_for(record)]}{text}{RESET}"


def color_enabled(stream: TextIO) -> bool:
    if os.environ.get("NO_COLOR"):
        return False
    if os.environ.get("FORCE_COLOR"):
        return True
    isatty = getattr(stream, "isatty", None)
    return bool(isatty and isatty())


def configure_logging(verbosity: int = 0, *, quiet: bool = False, stream: TextIO | None = None) -> None:
    """Install the channel handler on the root logger.

    Args:
        verbosity: Number of ``-v`` flags; 1 or more enables DEBUG.
        quiet: Only show warnings and errors.
        stream: Output stream (defaults to stdout).
    """
    stream = stream or sys.stdout
    level = logging.INFO
    if verbosity >= 1:
        level = logging.DEBUG
    if quiet:
        level = logging.WARNING

    handler = logging.StreamHandler(stream)
    handler.setFormatter(ChannelFormatter(use_color=color_enabled(stream)))
    root = logging.getLogger()
    for existing in list(root.handlers):
        root.removeHandler(existing)
    root.addHandler(handler)
    root.setLevel(level)


def _log(logger: logging.Logger, level: int, channel: str, msg: str, *args: Any) -> None:
    logger.log(level, msg, *args, extra={"channel": channel})


def start(logger: logging.Logger, msg: str, *args: Any) -> None:
    _log(logger, logging.INFO, "start", msg, *args)


def finish(logger: logging.Logger, msg: str, *args: Any) -> None:
    _log(logger, logging.INFO, "finish", msg, *args)


def warn(logger: logging.Logger, msg: str, *args: Any) -> None:
    _log(logger, logging.WARNING, "warn", msg, *args)


def error(logger: logging.Logger, msg: str, *args: Any) -> None:
    _log(logger, logging.ERROR, "error", msg, *args)


def just(logger: logging.Logger, msg: str, *args: Any) -> None:
    _log(logger, logging.INFO, "just", msg, *args)
