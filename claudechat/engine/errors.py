"""Exception hierarchy for the Claude CLI stream manager.

One class per failure mode. These are carried in ``RunOutcome.error``
rather than raised across the streaming boundary, so callers can
render them as conversation text.
"""
from __future__ import annotations


class ChatError(Exception):
    """Base exception for all chat runtime errors."""


class ToolNotFoundError(ChatError):
    """The Claude CLI executable could not be found."""
    def __init__(self, command: str):
        self.command = command
        super().__init__(
            "Claude command not found. Please install Claude Code CLI."
        )


class ProcessExitError(ChatError):
    """The CLI exited non-zero without producing any output."""
    def __init__(self, exit_code: int | None):
        self.exit_code = exit_code
        super().__init__(f"Process exited with code {exit_code}")


class ProcessSpawnError(ChatError):
    """The CLI could not be started for a reason other than a missing binary."""
    def __init__(self, command: str, reason: str):
        self.command = command
        self.reason = reason
        super().__init__(f"Failed to start {command}: {reason}")


class SessionConflictError(ChatError):
    """The CLI reported the session id in use again after a fresh retry."""
    def __init__(self, detail: str):
        self.detail = detail.strip()
        super().__init__(
            f"Claude session conflict persisted after retry: {self.detail}"
        )
