"""Configuration loaded from environment variables.

All settings have sensible defaults. Override via CLAUDECHAT_* env vars.
"""
from __future__ import annotations

import logging
import os
import shlex
from dataclasses import dataclass, field
from pathlib import Path

logger = logging.getLogger(__name__)

_TRUTHY = {"1", "true", "yes", "on"}


def _env_bool(name: str, default: bool) -> bool:
    raw = os.getenv(name)
    if raw is None or raw.strip() == "":
        return default
    return raw.strip().lower() in _TRUTHY


@dataclass
class ChatConfig:
    """Claude CLI stream manager configuration."""

    # Executable used to launch the CLI, and args inserted before the
    # stream flags (e.g. ["--model", "sonnet"]).
    claude_command: str = "claude"
    extra_args: list[str] = field(default_factory=list)
    # Working directory for the CLI. None inherits ours.
    cwd: str | None = None

    # Pause between killing a conflicting run and retrying it, so the
    # CLI releases the session lock.
    conflict_retry_delay: float = 0.1
    # Grace period between SIGTERM and SIGKILL when tearing down a run.
    kill_timeout: float = 5.0
    # Forward non-conflict stderr chunks and error records as fragments.
    forward_stderr: bool = True

    # Persisted sessions document. None means the default location.
    data_file: str | None = None

    # Logging
    log_level: str = "INFO"

    @property
    def data_path(self) -> Path | None:
        return Path(self.data_file).expanduser() if self.data_file else None

    @classmethod
    def from_env(cls) -> ChatConfig:
        """Load configuration from CLAUDECHAT_* environment variables."""
        chat_vars = {
            k: v for k, v in os.environ.items() if k.startswith("CLAUDECHAT_")
        }
        if chat_vars:
            logger.info(
                "ChatConfig.from_env: CLAUDECHAT_* env overrides: %s",
                ", ".join(f"{k}={v}" for k, v in sorted(chat_vars.items())),
            )
        else:
            logger.debug("ChatConfig.from_env: no CLAUDECHAT_* env vars set, using defaults")

        config = cls(
            claude_command=os.getenv(
                "CLAUDECHAT_CLAUDE_COMMAND", cls.claude_command
            ),
            extra_args=shlex.split(os.getenv("CLAUDECHAT_EXTRA_ARGS", "")),
            cwd=os.getenv("CLAUDECHAT_CWD") or None,
            conflict_retry_delay=float(os.getenv(
                "CLAUDECHAT_CONFLICT_RETRY_DELAY", str(cls.conflict_retry_delay)
            )),
            kill_timeout=float(os.getenv(
                "CLAUDECHAT_KILL_TIMEOUT", str(cls.kill_timeout)
            )),
            forward_stderr=_env_bool(
                "CLAUDECHAT_FORWARD_STDERR", cls.forward_stderr
            ),
            data_file=os.getenv("CLAUDECHAT_DATA_FILE") or None,
            log_level=os.getenv("CLAUDECHAT_LOG_LEVEL", cls.log_level),
        )
        logger.info(
            "ChatConfig.from_env: command=%s cwd=%s log_level=%s",
            config.claude_command, config.cwd or "<inherit>", config.log_level,
        )
        return config
