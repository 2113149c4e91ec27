from __future__ import annotations

import json
from pathlib import Path
from tempfile import TemporaryDirectory

import pytest

from claudechat.shared.models.message import MessageRole
from claudechat.shared.services.persistence import SessionPersistence
from claudechat.shared.services.session_store import MIGRATED_SESSION_ID, SessionStore


def test_attached_store_is_saved_after_each_change() -> None:
    with TemporaryDirectory() as tmpdir:
        path = Path(tmpdir) / "nested" / "sessions.json"
        persistence = SessionPersistence(path)
        store = SessionStore()
        persistence.attach(store)

        session = store.create("Work")
        store.add_message(MessageRole.USER, "hello")

        payload = json.loads(path.read_text(encoding="utf-8"))
        assert payload["version"] == "1.1.0"
        assert payload["currentSessionId"] == session.id
        saved = payload["sessions"][0]
        assert saved["name"] == "Work"
        assert saved["externalSessionId"] is None
        assert saved["messages"][0]["role"] == "user"
        assert saved["messages"][0]["content"] == "hello"


def test_detach_stops_saving() -> None:
    with TemporaryDirectory() as tmpdir:
        path = Path(tmpdir) / "sessions.json"
        persistence = SessionPersistence(path)
        store = SessionStore()
        persistence.attach(store)
        store.create()
        persistence.detach()
        before = path.read_text(encoding="utf-8")

        store.create("Unsaved")

        assert path.read_text(encoding="utf-8") == before


def test_load_into_restores_saved_state() -> None:
    with TemporaryDirectory() as tmpdir:
        path = Path(tmpdir) / "sessions.json"
        original = SessionStore()
        SessionPersistence(path).attach(original)
        original.create("A")
        original.add_message(MessageRole.USER, "q")
        original.update_external_session_id("ext-a")
        b = original.create("B")

        restored = SessionStore()
        assert SessionPersistence(path).load_into(restored) is True

        assert [s.name for s in restored.sessions] == ["A", "B"]
        assert restored.current_session_id == b.id
        assert restored.sessions[0].external_session_id == "ext-a"


def test_missing_file_loads_nothing() -> None:
    with TemporaryDirectory() as tmpdir:
        store = SessionStore()
        assert SessionPersistence(Path(tmpdir) / "none.json").load_into(store) is False
        assert store.sessions == []


def test_corrupt_file_is_ignored() -> None:
    with TemporaryDirectory() as tmpdir:
        path = Path(tmpdir) / "sessions.json"
        path.write_text("{not json", encoding="utf-8")
        persistence = SessionPersistence(path)
        assert persistence.load() is None

        path.write_text("[1, 2]", encoding="utf-8")
        assert persistence.load() is None


def test_legacy_file_is_migrated_on_load() -> None:
    with TemporaryDirectory() as tmpdir:
        path = Path(tmpdir) / "sessions.json"
        path.write_text(json.dumps({"sessionId": "legacy"}), encoding="utf-8")
        store = SessionStore()

        assert SessionPersistence(path).load_into(store) is True

        assert store.current_session.id == MIGRATED_SESSION_ID
        assert store.current_external_session_id() == "legacy"


def test_save_replaces_file_without_leftover_temp_files() -> None:
    with TemporaryDirectory() as tmpdir:
        path = Path(tmpdir) / "sessions.json"
        persistence = SessionPersistence(path)
        store = SessionStore()
        store.create("First")
        persistence.save(store)
        store.rename(store.current_session.id, "Second")
        persistence.save(store)

        payload = json.loads(path.read_text(encoding="utf-8"))
        assert payload["sessions"][0]["name"] == "Second"
        assert sorted(p.name for p in Path(tmpdir).iterdir()) == ["sessions.json"]


@pytest.mark.parametrize(
    "session",
    [
        {"id": "s1", "name": "Bad", "createdAt": "yesterday", "messages": []},
        {"id": "s1", "name": "Bad", "messages": [{"role": "robot", "content": "?"}]},
        "not-a-session",
        {"id": "s1", "name": "Bad", "messages": ["not-a-message"]},
    ],
)
def test_malformed_fields_start_fresh_and_keep_file(session) -> None:
    with TemporaryDirectory() as tmpdir:
        path = Path(tmpdir) / "sessions.json"
        original_text = json.dumps({
            "version": "1.1.0",
            "sessions": [session],
            "currentSessionId": "s1",
        })
        path.write_text(original_text, encoding="utf-8")
        store = SessionStore()

        assert SessionPersistence(path).load_into(store) is False

        assert store.sessions == []
        assert store.current_session.name == "Session 1"
        assert path.read_text(encoding="utf-8") == original_text
