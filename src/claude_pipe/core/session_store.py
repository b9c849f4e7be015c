"""File-backed conversation → backend session map."""

from __future__ import annotations

import json
import threading
from dataclasses import asdict
from datetime import UTC, datetime
from pathlib import Path
from typing import Protocol

from loguru import logger

from claude_pipe.core.types import SessionRecord


class SessionStoreProtocol(Protocol):
    """What backends and commands need from session persistence."""

    def get(self, key: str) -> SessionRecord | None: ...

    def set(self, key: str, session_id: str, topic: str | None = None) -> None: ...

    def clear(self, key: str) -> None: ...


class SessionStore:
    """JSON session map persisted atomically (temp file + rename).

    A topic is kept for as long as the session id stays the same and is
    replaced when a new id is stored.
    """

    def __init__(self, file_path: str | Path) -> None:
        self.file_path = Path(file_path)
        self._lock = threading.RLock()
        self._records: dict[str, SessionRecord] = self._load()

    def _load(self) -> dict[str, SessionRecord]:
        if not self.file_path.exists():
            return {}
        try:
            raw = json.loads(self.file_path.read_text(encoding="utf-8"))
        except (OSError, json.JSONDecodeError) as exc:
            logger.error("session_store.load.error path={} error={}", self.file_path, exc)
            return {}
        if not isinstance(raw, dict):
            return {}

        records: dict[str, SessionRecord] = {}
        for key, value in raw.items():
            if not isinstance(value, dict):
                continue
            session_id = value.get("session_id") or value.get("sessionId")
            if not isinstance(session_id, str) or not session_id:
                continue
            updated_at = value.get("updated_at") or value.get("updatedAt") or ""
            topic = value.get("topic")
            records[key] = SessionRecord(
                session_id=session_id,
                updated_at=str(updated_at),
                topic=topic if isinstance(topic, str) else None,
            )
        return records

    def _save(self) -> None:
        payload = {key: asdict(record) for key, record in self._records.items()}
        tmp_path = self.file_path.with_name(f"{self.file_path.name}.tmp")
        try:
            self.file_path.parent.mkdir(parents=True, exist_ok=True)
            tmp_path.write_text(json.dumps(payload, ensure_ascii=False, indent=2), encoding="utf-8")
            tmp_path.replace(self.file_path)
        except OSError as exc:
            # In-memory records stay authoritative for this process.
            logger.error("session_store.save.error path={} error={}", self.file_path, exc)
            if tmp_path.exists():
                tmp_path.unlink()

    def get(self, key: str) -> SessionRecord | None:
        with self._lock:
            return self._records.get(key)

    def entries(self) -> dict[str, SessionRecord]:
        with self._lock:
            return dict(self._records)

    def set(self, key: str, session_id: str, topic: str | None = None) -> None:
        with self._lock:
            previous = self._records.get(key)
            if previous is not None and previous.session_id == session_id and previous.topic:
                topic = previous.topic
            self._records[key] = SessionRecord(
                session_id=session_id,
                updated_at=datetime.now(UTC).isoformat(),
                topic=topic,
            )
            self._save()

    def clear(self, key: str) -> None:
        with self._lock:
            if key not in self._records:
                return
            del self._records[key]
            self._save()
