"""Runtime logging helpers."""

from __future__ import annotations

import os
import sys
from logging import Handler
from typing import Any, Literal

from loguru import logger
from rich import get_console
from rich.logging import RichHandler

LogProfile = Literal["default", "chat"]

_DEFAULT_FORMAT = "{time:YYYY-MM-DD HH:mm:ss.SSS} | {level:<6} | {name}:{function}:{line} | {message}"
_CONFIGURED: tuple[LogProfile, str] | None = None
_HANDLER_IDS: list[int] = []


def _build_chat_handler() -> Handler:
    return RichHandler(
        console=get_console(),
        show_level=True,
        show_time=False,
        show_path=False,
        markup=False,
        rich_tracebacks=False,
    )


def _console_filter(record: Any) -> bool:
    # Transcript records have their own file sink.
    return "transcript" not in record["extra"]


def configure_logging(level: str | None = None, *, profile: LogProfile = "default") -> None:
    """Configure process-level logging once.

    The ``chat`` profile routes records through rich so they interleave
    cleanly with the terminal channel's own output. Only handlers added here
    are replaced on reconfiguration, so transcript sinks survive.
    """

    global _CONFIGURED
    resolved = (level or os.getenv("CLAUDEPIPE_LOG_LEVEL", "INFO")).upper()
    if _CONFIGURED == (profile, resolved):
        return

    if _CONFIGURED is None:
        logger.remove()
    for handler_id in _HANDLER_IDS:
        logger.remove(handler_id)
    _HANDLER_IDS.clear()

    if profile == "chat":
        handler_id = logger.add(
            _build_chat_handler(),
            level=resolved,
            format="{message}",
            filter=_console_filter,
            backtrace=False,
            diagnose=False,
        )
    else:
        handler_id = logger.add(
            sys.stderr,
            level=resolved,
            format=_DEFAULT_FORMAT,
            filter=_console_filter,
            backtrace=False,
            diagnose=False,
        )
    _HANDLER_IDS.append(handler_id)
    _CONFIGURED = (profile, resolved)
