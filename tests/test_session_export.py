from __future__ import annotations

from datetime import datetime, timezone

from claudechat.shared.models.message import Message, MessageRole
from claudechat.shared.models.session import Session
from claudechat.shared.services.session_export import export_filename, export_markdown

_T = datetime(2025, 3, 4, 10, 20, 30, tzinfo=timezone.utc)


def _session() -> Session:
    return Session(
        name="Bug hunt #2",
        external_session_id="ext-42",
        messages=[
            Message(MessageRole.USER, "Why does it crash?", _T),
            Message(MessageRole.SYSTEM, "Session conflict", _T),
            Message(MessageRole.ASSISTANT, "A null pointer.", _T),
        ],
    )


def test_export_filename_is_filesystem_safe() -> None:
    assert export_filename(_session(), now=_T) == (
        "claude-chat-Bug-hunt--2-2025-03-04T10-20-30.md"
    )


def test_export_markdown_layout() -> None:
    text = export_markdown(_session(), exported_at=_T)

    assert text.startswith("# Claude Chat Conversation\n\n**Session:** Bug hunt #2\n\n")
    assert "*Exported: 2025-03-04T10:20:30+00:00*" in text
    assert "*Claude Session ID: ext-42*" in text
    assert "## 👤 User\n\n*10:20:30*\n\nWhy does it crash?\n\n---\n\n" in text
    assert "## 🤖 Assistant\n\n*10:20:30*\n\nA null pointer.\n\n---\n\n" in text
    assert text.index("Why does it crash?") < text.index("A null pointer.")


def test_export_markdown_skips_system_messages() -> None:
    text = export_markdown(_session(), exported_at=_T)
    assert "Session conflict" not in text


def test_export_markdown_without_external_session() -> None:
    text = export_markdown(Session(name="Fresh"), exported_at=_T)
    assert "*Claude Session ID: N/A*" in text
