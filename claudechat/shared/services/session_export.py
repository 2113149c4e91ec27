"""Render a chat session as a Markdown document."""

from __future__ import annotations

import re
from datetime import datetime, timezone

from claudechat.shared.models.message import MessageRole
from claudechat.shared.models.session import Session

_ROLE_LABELS = {
    MessageRole.USER: "👤 User",
    MessageRole.ASSISTANT: "🤖 Assistant",
}


def export_filename(session: Session, now: datetime | None = None) -> str:
    """``claude-chat-<name>-<YYYY-MM-DDTHH-MM-SS>.md``, filesystem safe."""
    now = now or datetime.now(timezone.utc)
    safe_name = re.sub(r"[^a-zA-Z0-9]", "-", session.name or "Conversation")
    stamp = now.strftime("%Y-%m-%dT%H-%M-%S")
    return f"claude-chat-{safe_name}-{stamp}.md"


def export_markdown(session: Session, exported_at: datetime | None = None) -> str:
    """Build the Markdown transcript. System messages are left out."""
    exported_at = exported_at or datetime.now(timezone.utc)
    parts = [
        "# Claude Chat Conversation\n\n",
        f"**Session:** {session.name or 'Conversation'}\n\n",
        f"*Exported: {exported_at.isoformat(timespec='seconds')}*\n\n",
        f"*Claude Session ID: {session.external_session_id or 'N/A'}*\n\n",
        "---\n\n",
    ]
    for message in session.messages:
        if message.is_system:
            continue
        parts.append(f"## {_ROLE_LABELS[message.role]}\n\n")
        parts.append(f"*{message.timestamp.strftime('%H:%M:%S')}*\n\n")
        parts.append(f"{message.content}\n\n")
        parts.append("---\n\n")
    return "".join(parts)
