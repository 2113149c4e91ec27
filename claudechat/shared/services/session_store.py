"""In-memory table of chat sessions with a single "current" session.

The store performs no I/O. Every mutating operation fires exactly one
change notification, which the persistence layer subscribes to.
Operations on unknown session ids fail softly (``False`` / ``None``).
"""

from __future__ import annotations

import logging
from collections.abc import Callable
from typing import Any

from claudechat.shared.models.message import Message, MessageRole
from claudechat.shared.models.session import Session, default_session_name

logger = logging.getLogger(__name__)

STATE_VERSION = "1.1.0"
MIGRATED_SESSION_ID = "session-migrated"
MIGRATED_SESSION_NAME = "Migrated Session"

ChangeCallback = Callable[["SessionStore"], None]


class SessionStore:
    """Holds every conversation session and tracks the current one.

    Once initialized the store is never empty: reading the current
    session on an empty store creates one, and deleting the last session
    replaces it with a fresh default session.
    """

    def __init__(self) -> None:
        self._sessions: list[Session] = []
        self._current_id: str | None = None
        self._subscribers: list[ChangeCallback] = []

    # ── notifications ───────────────────────────────────────────────

    def subscribe(self, callback: ChangeCallback) -> Callable[[], None]:
        """Register a change listener. Returns an unsubscribe function."""
        self._subscribers.append(callback)

        def _unsubscribe() -> None:
            if callback in self._subscribers:
                self._subscribers.remove(callback)

        return _unsubscribe

    def _notify(self) -> None:
        for callback in list(self._subscribers):
            try:
                callback(self)
            except Exception:
                logger.exception("Session store change listener failed")

    # ── queries ─────────────────────────────────────────────────────

    @property
    def sessions(self) -> list[Session]:
        return list(self._sessions)

    @property
    def current_session_id(self) -> str | None:
        return self._current_id

    @property
    def current_session(self) -> Session:
        current = self.get(self._current_id) if self._current_id else None
        if current is not None:
            return current
        if self._sessions:
            # Pointer lost (e.g. bad state file): fall back to the first.
            self._current_id = self._sessions[0].id
            return self._sessions[0]
        return self.create()

    def get(self, session_id: str | None) -> Session | None:
        for session in self._sessions:
            if session.id == session_id:
                return session
        return None

    def current_messages(self) -> list[Message]:
        return list(self.current_session.messages)

    def current_external_session_id(self) -> str | None:
        return self.current_session.external_session_id

    def last_user_index(self, session_id: str | None = None) -> int | None:
        session = self._resolve(session_id)
        if session is None:
            return None
        for i in range(len(session.messages) - 1, -1, -1):
            if session.messages[i].role == MessageRole.USER:
                return i
        return None

    # ── session lifecycle ───────────────────────────────────────────

    def create(self, name: str | None = None) -> Session:
        """Append a new session and make it current."""
        session = Session(name=name or default_session_name(len(self._sessions) + 1))
        self._sessions.append(session)
        self._current_id = session.id
        logger.info("Created session %s (%s)", session.id[:8], session.name)
        self._notify()
        return session

    def switch(self, session_id: str) -> bool:
        if self.get(session_id) is None:
            logger.warning("Cannot switch to unknown session %s", session_id)
            return False
        self._current_id = session_id
        self._notify()
        return True

    def delete(self, session_id: str) -> bool:
        session = self.get(session_id)
        if session is None:
            return False
        self._sessions.remove(session)
        if self._current_id == session_id:
            self._current_id = self._sessions[0].id if self._sessions else None
        if not self._sessions:
            fresh = Session(name=default_session_name(1))
            self._sessions.append(fresh)
            self._current_id = fresh.id
            logger.info("Last session deleted, created %s", fresh.id[:8])
        logger.info("Deleted session %s", session_id[:8])
        self._notify()
        return True

    def rename(self, session_id: str, name: str) -> bool:
        session = self.get(session_id)
        if session is None:
            return False
        session.name = name
        session.touch()
        self._notify()
        return True

    # ── messages ────────────────────────────────────────────────────

    def add_message(
        self,
        role: MessageRole,
        content: str,
        session_id: str | None = None,
    ) -> Message | None:
        """Append a message to the current (or given) session."""
        session = self._resolve(session_id)
        if session is None:
            return None
        msg = session.add_message(role, content)
        self._notify()
        return msg

    def clear(self, session_id: str | None = None) -> bool:
        """Wipe a session's history. The session itself survives."""
        session = self._resolve(session_id)
        if session is None:
            return False
        session.clear_messages()
        self._notify()
        return True

    def truncate_after(self, index: int, session_id: str | None = None) -> int:
        session = self._resolve(session_id)
        if session is None:
            return 0
        removed = session.truncate_after(index)
        if removed:
            self._notify()
        return removed

    def edit_message(
        self,
        index: int,
        content: str,
        session_id: str | None = None,
    ) -> bool:
        """Replace message ``index`` and discard every message after it."""
        session = self._resolve(session_id)
        if session is None or not 0 <= index < len(session.messages):
            return False
        session.messages[index].content = content
        session.truncate_after(index)
        session.touch()
        self._notify()
        return True

    def update_external_session_id(
        self,
        external_session_id: str | None,
        session_id: str | None = None,
    ) -> bool:
        session = self._resolve(session_id)
        if session is None:
            return False
        if session.external_session_id == external_session_id:
            return True
        session.external_session_id = external_session_id
        session.touch()
        logger.info(
            "Session %s external id -> %s",
            session.id[:8], external_session_id or "(none)",
        )
        self._notify()
        return True

    def _resolve(self, session_id: str | None) -> Session | None:
        if session_id is None:
            return self.current_session
        return self.get(session_id)

    # ── load / export ───────────────────────────────────────────────

    def load(self, sessions: list[Session], current_session_id: str | None) -> None:
        """Replace the store contents (e.g. from disk) without notifying."""
        self._sessions = list(sessions)
        if current_session_id and self.get(current_session_id) is not None:
            self._current_id = current_session_id
        else:
            self._current_id = self._sessions[0].id if self._sessions else None

    def load_dict(self, data: dict[str, Any]) -> None:
        """Load a persisted state document, migrating the legacy format."""
        raw_sessions = data.get("sessions") or []
        if raw_sessions:
            sessions = [Session.from_dict(s) for s in raw_sessions]
        else:
            # Legacy documents only carried one top-level CLI session id.
            sessions = [
                Session(
                    id=MIGRATED_SESSION_ID,
                    name=MIGRATED_SESSION_NAME,
                    external_session_id=data.get("sessionId") or None,
                )
            ]
            logger.info("Migrated legacy state into a single session")
        self.load(sessions, data.get("currentSessionId"))

    def export_for_save(self) -> dict[str, Any]:
        return {
            "version": STATE_VERSION,
            "sessions": [s.to_dict() for s in self._sessions],
            "currentSessionId": self._current_id,
        }
