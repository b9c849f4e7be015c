"""Optional JSONL transcript of backend traffic per conversation."""

from __future__ import annotations

import itertools
import json
from contextlib import suppress
from datetime import UTC, datetime
from pathlib import Path
from typing import Any

from loguru import logger

_SINK_KEYS = itertools.count(1)


class TranscriptLogger:
    """Append-only JSONL log written through a dedicated loguru file sink.

    loguru rotates the file once it would grow past ``max_bytes`` and keeps
    at most ``max_files`` rotated files. The sink is added on the first
    write. When disabled every call is a no-op.
    """

    def __init__(
        self,
        path: str | Path,
        *,
        enabled: bool = True,
        max_bytes: int = 1_000_000,
        max_files: int = 3,
    ) -> None:
        self.path = Path(path)
        self.enabled = enabled
        self.max_bytes = max_bytes
        self.max_files = max_files
        self._key = next(_SINK_KEYS)
        self._sink_id: int | None = None
        self._logger = logger.bind(transcript=self._key)

    @classmethod
    def disabled(cls) -> TranscriptLogger:
        return cls(Path("transcript.jsonl"), enabled=False)

    def _ensure_sink(self) -> bool:
        if self._sink_id is not None:
            return True
        key = self._key
        try:
            self._sink_id = logger.add(
                self.path,
                level="INFO",
                format="{message}",
                filter=lambda record: record["extra"].get("transcript") == key,
                rotation=self.max_bytes,
                retention=self.max_files,
                encoding="utf-8",
                enqueue=False,
                delay=True,
                catch=True,
            )
        except (OSError, ValueError) as exc:
            logger.warning("transcript.sink.error path={} error={}", self.path, exc)
            self.enabled = False
            return False
        return True

    def log(self, conversation_key: str, event: dict[str, Any]) -> None:
        if not self.enabled or not self._ensure_sink():
            return
        record = {
            "timestamp": datetime.now(UTC).isoformat(),
            "conversation_key": conversation_key,
            **event,
        }
        self._logger.info(json.dumps(record, ensure_ascii=False))

    def close(self) -> None:
        if self._sink_id is None:
            return
        with suppress(ValueError):
            logger.remove(self._sink_id)
        self._sink_id = None
