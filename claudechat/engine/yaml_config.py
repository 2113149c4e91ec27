"""YAML configuration loader.

Values in the ``chat`` section override the environment-derived
defaults from ``ChatConfig.from_env()``.

Example YAML:
    chat:
      claude_command: /usr/local/bin/claude
      extra_args: ["--model", "sonnet"]
      cwd: ~/notes
      conflict_retry_delay: 0.2
      kill_timeout: 5
      forward_stderr: true
      data_file: ~/.claudechat/sessions.json
      log_level: DEBUG
"""
from __future__ import annotations

import logging
import shlex
from dataclasses import fields
from pathlib import Path

import yaml

from .config import ChatConfig

logger = logging.getLogger(__name__)

CONFIG_CANDIDATES = (
    Path(".claudechat") / "config.yaml",
    Path("claudechat.yaml"),
)


def discover_config(cwd: Path) -> Path | None:
    """Return the first config file found under ``cwd``, if any."""
    for candidate in CONFIG_CANDIDATES:
        path = cwd / candidate
        if path.exists():
            return path
    return None


def load_yaml_config(path: str | Path, base: ChatConfig | None = None) -> ChatConfig:
    """Load and parse a YAML config file into a ChatConfig."""
    path = Path(path)
    logger.info(
        "load_yaml_config: attempting to load config from %s (exists=%s)",
        path, path.exists()
    )
    try:
        with open(path, encoding="utf-8") as f:
            raw = yaml.safe_load(f) or {}
    except FileNotFoundError:
        logger.error(
            "load_yaml_config: config file not found at %s (absolute path: %s)",
            path, path.absolute()
        )
        raise
    except yaml.YAMLError as exc:
        logger.error("load_yaml_config: YAML parse error in %s: %s", path, exc)
        raise

    if not isinstance(raw, dict):
        raise ValueError(f"{path}: top level must be a mapping")

    config = base or ChatConfig.from_env()
    chat_raw = raw.get("chat") or {}
    known = {f.name for f in fields(ChatConfig)}
    unknown = sorted(set(chat_raw) - known)
    if unknown:
        logger.warning(
            "load_yaml_config: ignoring unknown chat keys in %s: %s",
            path, ", ".join(unknown),
        )

    if "claude_command" in chat_raw:
        config.claude_command = str(chat_raw["claude_command"])
    if "extra_args" in chat_raw:
        extra = chat_raw["extra_args"] or []
        config.extra_args = (
            shlex.split(extra) if isinstance(extra, str) else [str(a) for a in extra]
        )
    if "cwd" in chat_raw:
        cwd = chat_raw["cwd"]
        config.cwd = str(Path(str(cwd)).expanduser()) if cwd else None
    if "conflict_retry_delay" in chat_raw:
        config.conflict_retry_delay = float(chat_raw["conflict_retry_delay"])
    if "kill_timeout" in chat_raw:
        config.kill_timeout = float(chat_raw["kill_timeout"])
    if "forward_stderr" in chat_raw:
        config.forward_stderr = bool(chat_raw["forward_stderr"])
    if "data_file" in chat_raw:
        config.data_file = str(chat_raw["data_file"]) if chat_raw["data_file"] else None
    if "log_level" in chat_raw:
        config.log_level = str(chat_raw["log_level"]).upper()

    logger.info(
        "Parsed YAML config %s — command=%s cwd=%s",
        path.name, config.claude_command, config.cwd or "<inherit>",
    )
    return config
