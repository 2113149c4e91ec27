"""Chat controller — drives the stream manager on behalf of a chat UI.

Records each exchange in the SessionStore: the user message goes in
before the run starts, the assistant message (with an error or
"stopped" marker when relevant) once it ends. The CLI session id the
manager reports is written back to the session that started the run,
even if the user has switched sessions in the meantime.
"""

from __future__ import annotations

import logging
from collections.abc import Awaitable, Callable

from claudechat.engine.process import ProcessStreamManager, RunOutcome, RunStatus
from claudechat.shared.models.message import Message, MessageRole
from claudechat.shared.models.session import Session
from claudechat.shared.services.session_export import export_markdown
from claudechat.shared.services.session_store import SessionStore

logger = logging.getLogger(__name__)

STOPPED_MARKER = "\n\n_Stopped by user_"
ERROR_TEMPLATE = "\n\n**Error:** {message}"

FragmentHandler = Callable[[str], Awaitable[None] | None]


class ChatController:
    """Submit, stop, edit-and-resend and regenerate chat commands."""

    def __init__(self, store: SessionStore, manager: ProcessStreamManager) -> None:
        self._store = store
        self._manager = manager
        self._processing = False
        self._run_session_id: str | None = None
        self._last_outcome: RunOutcome | None = None
        manager.set_session_id_callback(self._on_session_id_changed)

    @property
    def store(self) -> SessionStore:
        return self._store

    @property
    def is_processing(self) -> bool:
        return self._processing

    @property
    def last_outcome(self) -> RunOutcome | None:
        """Outcome of the most recent finished exchange."""
        return self._last_outcome

    def _on_session_id_changed(self, external_session_id: str | None) -> None:
        logger.info(
            "Session ID changed, saving: %s", external_session_id or "(null)",
        )
        if not self._store.update_external_session_id(
            external_session_id, session_id=self._run_session_id,
        ):
            logger.warning(
                "Session %s vanished before its CLI session id could be saved",
                self._run_session_id,
            )

    # ── commands ────────────────────────────────────────────────────

    async def submit(
        self,
        command: str,
        on_fragment: FragmentHandler | None = None,
    ) -> Message | None:
        """Send ``command`` in the current session.

        Returns the recorded assistant message, or None when the command
        was empty or another command is still running.
        """
        if not command.strip():
            return None
        if self._processing:
            logger.info("Already processing, ignoring")
            return None
        session = self._store.current_session
        self._store.add_message(MessageRole.USER, command, session_id=session.id)
        return await self._exchange(session, command, on_fragment)

    async def edit_and_resend(
        self,
        index: int,
        content: str,
        on_fragment: FragmentHandler | None = None,
    ) -> Message | None:
        """Rewrite user message ``index``, drop what followed, and rerun it."""
        if self._processing or not content.strip():
            return None
        session = self._store.current_session
        messages = session.messages
        if not 0 <= index < len(messages) or messages[index].role != MessageRole.USER:
            logger.warning("Cannot edit message %d: not a user message", index)
            return None
        self._store.edit_message(index, content, session_id=session.id)
        logger.info("Edited message %d, resending", index)
        return await self._exchange(session, content, on_fragment)

    async def regenerate_last(
        self,
        on_fragment: FragmentHandler | None = None,
    ) -> Message | None:
        """Discard the last answer and ask the last user question again."""
        if self._processing:
            return None
        session = self._store.current_session
        index = self._store.last_user_index(session.id)
        if index is None:
            return None
        command = session.messages[index].content
        self._store.truncate_after(index, session_id=session.id)
        return await self._exchange(session, command, on_fragment)

    async def stop(self) -> bool:
        """Stop the running command; its answer is recorded as stopped."""
        if not self._processing:
            return False
        logger.info("Stop requested")
        return await self._manager.stop()

    async def _exchange(
        self,
        session: Session,
        command: str,
        on_fragment: FragmentHandler | None,
    ) -> Message | None:
        self._processing = True
        self._run_session_id = session.id
        parts: list[str] = []

        def _sink(text: str) -> Awaitable[None] | None:
            parts.append(text)
            if on_fragment is not None:
                return on_fragment(text)
            return None

        try:
            outcome = await self._manager.run(
                command, session.external_session_id, on_fragment=_sink,
            )
        finally:
            self._processing = False
            self._run_session_id = None

        self._last_outcome = outcome
        content = "".join(parts)
        if outcome.status == RunStatus.STOPPED:
            content += STOPPED_MARKER
        elif outcome.status == RunStatus.FAILURE:
            logger.error("Command error: %s", outcome.error)
            content += ERROR_TEMPLATE.format(message=outcome.error)
        return self._store.add_message(
            MessageRole.ASSISTANT, content, session_id=session.id,
        )

    # ── session management ──────────────────────────────────────────

    def new_session(self, name: str | None = None) -> Session:
        return self._store.create(name)

    def switch_session(self, session_id: str) -> bool:
        return self._store.switch(session_id)

    def delete_session(self, session_id: str) -> bool:
        return self._store.delete(session_id)

    def rename_session(self, session_id: str, name: str) -> bool:
        return self._store.rename(session_id, name)

    def clear_history(self) -> bool:
        return self._store.clear()

    def export_markdown(self, session_id: str | None = None) -> str | None:
        session = self._store.get(session_id) if session_id else self._store.current_session
        if session is None or session.message_count == 0:
            return None
        return export_markdown(session)

    async def close(self) -> None:
        await self._manager.close()
