"""Session state — one conversation with its own Claude CLI session id."""

from __future__ import annotations

from dataclasses import dataclass, field
from datetime import datetime, timezone
import re
import uuid
from typing import Any

from claudechat.shared.models.message import Message, MessageRole, parse_timestamp


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


DEFAULT_NAME_TEMPLATE = "Session {n}"


def default_session_name(n: int) -> str:
    return DEFAULT_NAME_TEMPLATE.format(n=n)


def is_default_session_name(name: str | None) -> bool:
    if not name:
        return True
    return re.match(r"^session \d+$", name.strip(), flags=re.IGNORECASE) is not None


@dataclass
class Session:
    """Holds all conversation state for a session.

    ``id`` is generated locally and never changes. ``external_session_id``
    is assigned by the Claude CLI and is what ``-r`` resumes; it can be
    cleared and re-assigned many times over the life of a session.
    """

    id: str = field(default_factory=lambda: str(uuid.uuid4()))
    name: str = ""
    external_session_id: str | None = None
    created_at: datetime = field(default_factory=_utcnow)
    updated_at: datetime = field(default_factory=_utcnow)
    messages: list[Message] = field(default_factory=list)

    def touch(self) -> None:
        """Bump ``updated_at``; never moves it backwards."""
        now = _utcnow()
        if now > self.updated_at:
            self.updated_at = now

    def add_message(self, role: MessageRole, content: str) -> Message:
        msg = Message(role=role, content=content, timestamp=_utcnow())
        self.messages.append(msg)
        self.touch()
        return msg

    def truncate_after(self, index: int) -> int:
        """Drop every message after ``index``. Returns how many were removed."""
        keep = max(index + 1, 0)
        removed = len(self.messages) - keep
        if removed <= 0:
            return 0
        del self.messages[keep:]
        self.touch()
        return removed

    def clear_messages(self) -> None:
        self.messages.clear()
        self.touch()

    @property
    def message_count(self) -> int:
        return sum(1 for m in self.messages if not m.is_system)

    def to_dict(self) -> dict[str, Any]:
        return {
            "id": self.id,
            "name": self.name,
            "externalSessionId": self.external_session_id,
            "createdAt": self.created_at.isoformat(),
            "updatedAt": self.updated_at.isoformat(),
            "messages": [m.to_dict() for m in self.messages],
        }

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> Session:
        # "sessionId" is the key older state files used for the CLI id.
        external = data.get("externalSessionId", data.get("sessionId"))
        created_at = parse_timestamp(data.get("createdAt"))
        updated_at = parse_timestamp(data.get("updatedAt") or data.get("createdAt"))
        return cls(
            id=str(data.get("id") or uuid.uuid4()),
            name=str(data.get("name") or ""),
            external_session_id=external or None,
            created_at=created_at,
            updated_at=max(created_at, updated_at),
            messages=[Message.from_dict(m) for m in data.get("messages") or []],
        )
