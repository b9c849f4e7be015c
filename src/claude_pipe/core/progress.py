"""Throttling for transient tool-progress messages."""

from __future__ import annotations

import time
from collections.abc import Callable

from claude_pipe.core.types import TurnUpdate

UpdateKey = tuple[str, str | None, str | None]


def update_key(update: TurnUpdate) -> UpdateKey:
    return (update.kind, update.tool_name, update.tool_use_id)


class ProgressThrottle:
    """Decide which turn updates become outbound progress messages.

    Repeats of the same ``(kind, tool_name, tool_use_id)`` within ``window_seconds``
    of the last one for a conversation are dropped. The first
    ``tool_call_started`` of a key in a turn is always delivered, and
    ``turn_finished`` never is.
    """

    def __init__(self, window_seconds: float, *, clock: Callable[[], float] = time.monotonic) -> None:
        self.window_seconds = window_seconds
        self._clock = clock
        self._last: dict[str, tuple[UpdateKey, float]] = {}
        self._started: dict[str, set[UpdateKey]] = {}

    def should_publish(self, update: TurnUpdate) -> bool:
        conversation = update.conversation_key
        if update.kind in ("turn_started", "turn_finished"):
            self._started.pop(conversation, None)
            self._last.pop(conversation, None)
            return update.kind == "turn_started"

        key = update_key(update)
        now = self._clock()
        previous = self._last.get(conversation)
        self._last[conversation] = (key, now)

        if update.kind == "tool_call_started":
            seen = self._started.setdefault(conversation, set())
            if key not in seen:
                seen.add(key)
                return True

        if previous is None:
            return True
        previous_key, previous_at = previous
        return not (previous_key == key and now - previous_at < self.window_seconds)

    def reset(self, conversation_key: str) -> None:
        self._started.pop(conversation_key, None)
        self._last.pop(conversation_key, None)
