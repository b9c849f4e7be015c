from __future__ import annotations

import json
from pathlib import Path

from claude_pipe.core.session_store import SessionStore
from claude_pipe.core.transcript import TranscriptLogger


def test_set_persists_and_reloads(tmp_path: Path) -> None:
    path = tmp_path / "state" / "sessions.json"
    store = SessionStore(path)

    store.set("cli:c1", "S1", "hello")

    reloaded = SessionStore(path)
    record = reloaded.get("cli:c1")
    assert record is not None
    assert record.session_id == "S1"
    assert record.topic == "hello"
    assert record.updated_at
    assert not path.with_name("sessions.json.tmp").exists()


def test_topic_survives_same_session_and_resets_on_new_one(tmp_path: Path) -> None:
    store = SessionStore(tmp_path / "sessions.json")

    store.set("cli:c1", "S1", "first question")
    store.set("cli:c1", "S1", "second question")
    kept = store.get("cli:c1")
    assert kept is not None
    assert kept.topic == "first question"

    store.set("cli:c1", "S2", "new topic")
    replaced = store.get("cli:c1")
    assert replaced is not None
    assert replaced.session_id == "S2"
    assert replaced.topic == "new topic"


def test_clear_removes_entry(tmp_path: Path) -> None:
    path = tmp_path / "sessions.json"
    store = SessionStore(path)
    store.set("cli:c1", "S1")

    store.clear("cli:c1")
    store.clear("cli:missing")

    assert store.get("cli:c1") is None
    assert json.loads(path.read_text(encoding="utf-8")) == {}


def test_corrupt_file_loads_as_empty(tmp_path: Path) -> None:
    path = tmp_path / "sessions.json"
    path.write_text("{not json", encoding="utf-8")

    store = SessionStore(path)

    assert store.entries() == {}


def test_camel_case_entries_are_accepted(tmp_path: Path) -> None:
    path = tmp_path / "sessions.json"
    path.write_text(
        json.dumps({"telegram:1": {"sessionId": "S9", "updatedAt": "2025-01-01T00:00:00Z"}, "bad": {"x": 1}}),
        encoding="utf-8",
    )

    store = SessionStore(path)

    record = store.get("telegram:1")
    assert record is not None
    assert record.session_id == "S9"
    assert store.get("bad") is None


def test_save_failure_keeps_records_in_memory(tmp_path: Path) -> None:
    blocker = tmp_path / "not-a-dir"
    blocker.write_text("", encoding="utf-8")
    store = SessionStore(blocker / "sessions.json")

    store.set("cli:c1", "S1", "edited files")

    record = store.get("cli:c1")
    assert record is not None
    assert record.session_id == "S1"


def test_failed_replace_removes_temp_file(tmp_path: Path) -> None:
    # A directory at the target path makes the final rename fail.
    path = tmp_path / "sessions.json"
    path.mkdir()
    store = SessionStore(path)

    store.set("cli:c1", "S1")

    assert store.get("cli:c1") is not None
    assert not path.with_name("sessions.json.tmp").exists()


def test_transcript_rotates_by_size(tmp_path: Path) -> None:
    path = tmp_path / "transcript.jsonl"
    transcript = TranscriptLogger(path, max_bytes=200, max_files=2)

    try:
        for index in range(12):
            transcript.log("cli:c1", {"type": "user", "text": f"message {index:02d}"})
    finally:
        transcript.close()

    files = list(tmp_path.glob("transcript*.jsonl*"))
    assert path in files
    assert 2 <= len(files) <= 3
    last = path.read_text(encoding="utf-8").strip().splitlines()[-1]
    record = json.loads(last)
    assert record["conversation_key"] == "cli:c1"
    assert record["text"] == "message 11"


def test_transcript_records_stay_out_of_other_transcripts(tmp_path: Path) -> None:
    first = TranscriptLogger(tmp_path / "a.jsonl")
    second = TranscriptLogger(tmp_path / "b.jsonl")

    try:
        first.log("cli:a", {"type": "user", "text": "{not a format}"})
        second.log("cli:b", {"type": "user", "text": "other"})
    finally:
        first.close()
        second.close()

    lines = (tmp_path / "a.jsonl").read_text(encoding="utf-8").splitlines()
    assert [json.loads(line)["text"] for line in lines] == ["{not a format}"]
    assert json.loads((tmp_path / "b.jsonl").read_text(encoding="utf-8"))["conversation_key"] == "cli:b"


def test_disabled_transcript_writes_nothing(tmp_path: Path) -> None:
    path = tmp_path / "transcript.jsonl"
    transcript = TranscriptLogger(path, enabled=False)

    transcript.log("cli:c1", {"type": "user"})

    assert not path.exists()
