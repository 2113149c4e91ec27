"""Chat message model."""

from dataclasses import dataclass, field
from datetime import datetime, timezone
from enum import Enum
from typing import Any


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


def parse_timestamp(value: Any) -> datetime:
    """Parse an ISO-8601 timestamp, assuming UTC when no offset is given."""
    if isinstance(value, datetime):
        dt = value
    elif isinstance(value, str) and value:
        # Persisted JS dates end in "Z", which older fromisoformat rejects.
        if value.endswith("Z"):
            value = value[:-1] + "+00:00"
        dt = datetime.fromisoformat(value)
    else:
        return _utcnow()
    return dt if dt.tzinfo else dt.replace(tzinfo=timezone.utc)


class MessageRole(Enum):
    USER = "user"
    ASSISTANT = "assistant"
    # Transient UI annotations; never sent to the CLI, never counted.
    SYSTEM = "system"


@dataclass
class Message:
    role: MessageRole
    content: str
    timestamp: datetime = field(default_factory=_utcnow)

    @property
    def is_system(self) -> bool:
        return self.role == MessageRole.SYSTEM

    def to_dict(self) -> dict[str, Any]:
        return {
            "role": self.role.value,
            "content": self.content,
            "timestamp": self.timestamp.isoformat(),
        }

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> "Message":
        return cls(
            role=MessageRole(data.get("role", "user")),
            content=str(data.get("content") or ""),
            timestamp=parse_timestamp(data.get("timestamp")),
        )
