from __future__ import annotations

import json
import sys
from pathlib import Path

import pytest
from rich.console import Console

from claudechat import app
from claudechat.engine.errors import ToolNotFoundError
from claudechat.engine.process import RunOutcome, RunStatus
from claudechat.shared.models.message import Message, MessageRole
from claudechat.shared.services.session_store import SessionStore


@pytest.fixture
def cli_env(tmp_path: Path, monkeypatch: pytest.MonkeyPatch) -> Path:
    data_file = tmp_path / "sessions.json"
    monkeypatch.chdir(tmp_path)
    monkeypatch.setenv("CLAUDECHAT_DATA_FILE", str(data_file))
    monkeypatch.setattr(app, "_configure_logging", lambda *_a: tmp_path / "test.log")
    return data_file


def _main(monkeypatch: pytest.MonkeyPatch, *argv: str) -> int:
    monkeypatch.setattr(sys, "argv", ["claudechat", *argv])
    try:
        app.main()
    except SystemExit as exc:
        return int(exc.code or 0)
    return 0


def test_resolve_session_by_id_or_unique_prefix() -> None:
    store = SessionStore()
    a = store.create("A")
    b = store.create("B")
    assert app.resolve_session(store, a.id) is a
    assert app.resolve_session(store, b.id[:12]) is b
    assert app.resolve_session(store, "") is None
    assert app.resolve_session(store, "zzz-not-there") is None


def test_new_rename_and_delete_persist(cli_env: Path, monkeypatch: pytest.MonkeyPatch) -> None:
    assert _main(monkeypatch, "--new", "Work") == 0
    payload = json.loads(cli_env.read_text(encoding="utf-8"))
    work = payload["sessions"][-1]
    assert work["name"] == "Work"
    assert payload["currentSessionId"] == work["id"]

    assert _main(monkeypatch, "--rename", work["id"][:8], "Office") == 0
    payload = json.loads(cli_env.read_text(encoding="utf-8"))
    assert payload["sessions"][-1]["name"] == "Office"

    assert _main(monkeypatch, "--delete", work["id"]) == 0
    payload = json.loads(cli_env.read_text(encoding="utf-8"))
    assert all(s["id"] != work["id"] for s in payload["sessions"])

    assert _main(monkeypatch, "--delete", "missing") == 1


def test_export_writes_markdown_in_cwd(cli_env: Path, monkeypatch: pytest.MonkeyPatch) -> None:
    cli_env.write_text(json.dumps({
        "version": "1.1.0",
        "sessions": [{
            "id": "s1", "name": "Notes", "externalSessionId": "ext-1",
            "createdAt": "2025-01-01T00:00:00Z", "updatedAt": "2025-01-01T00:00:00Z",
            "messages": [
                {"role": "user", "content": "hello", "timestamp": "2025-01-01T00:00:01Z"},
                {"role": "assistant", "content": "hi!", "timestamp": "2025-01-01T00:00:02Z"},
            ],
        }],
        "currentSessionId": "s1",
    }), encoding="utf-8")

    assert _main(monkeypatch, "--export") == 0

    exported = list(cli_env.parent.glob("claude-chat-Notes-*.md"))
    assert len(exported) == 1
    text = exported[0].read_text(encoding="utf-8")
    assert "hello" in text and "hi!" in text


def test_export_of_empty_session_fails(cli_env: Path, monkeypatch: pytest.MonkeyPatch) -> None:
    assert _main(monkeypatch, "--export") == 1


class _StubController:
    def __init__(self, fragments: list[str], outcome: RunOutcome) -> None:
        self._fragments = fragments
        self.last_outcome: RunOutcome | None = None
        self._outcome = outcome

    async def submit(self, prompt, on_fragment=None):
        for text in self._fragments:
            on_fragment(text)
        self.last_outcome = self._outcome
        return Message(MessageRole.ASSISTANT, "".join(self._fragments))

    async def stop(self) -> bool:
        return False


@pytest.mark.asyncio
async def test_answer_mentioning_error_markdown_is_not_reported_as_failure() -> None:
    console = Console(record=True, width=120, color_system=None)
    controller = _StubController(
        ["Use **Error:** headings in your notes."],
        RunOutcome(status=RunStatus.SUCCESS),
    )

    await app._ask(console, controller, "formatting tips")  # type: ignore[arg-type]

    text = console.export_text()
    assert text.count("**Error:**") == 1


@pytest.mark.asyncio
async def test_failed_run_prints_its_error() -> None:
    console = Console(record=True, width=120, color_system=None)
    controller = _StubController(
        [],
        RunOutcome(status=RunStatus.FAILURE, error=ToolNotFoundError("claude")),
    )

    await app._ask(console, controller, "hi")  # type: ignore[arg-type]

    assert "Claude command not found" in console.export_text()
