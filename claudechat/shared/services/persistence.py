"""Session persistence — save and load the chat state document.

Storage layout:
    ~/.claudechat/sessions.json   (override with CLAUDECHAT_DATA_FILE)

The document holds every session plus the current-session pointer::

    {"version": "1.1.0",
     "sessions": [{"id", "name", "externalSessionId", "createdAt",
                   "updatedAt", "messages": [...]}],
     "currentSessionId": "..."}

Saves go to a sibling temp file that is renamed over the document, so a
crash mid-write leaves the previous state intact.
"""

from __future__ import annotations

import json
import logging
import os
import tempfile
from collections.abc import Callable
from pathlib import Path
from typing import Any

from claudechat.shared.services.session_store import SessionStore

logger = logging.getLogger(__name__)

DEFAULT_DATA_FILE = Path.home() / ".claudechat" / "sessions.json"


class SessionPersistence:
    """Mirror a SessionStore to a JSON file.

    The store never does I/O itself; ``attach()`` subscribes to its
    change notifications and rewrites the file after each mutation.
    """

    def __init__(self, path: Path | None = None) -> None:
        self._path = Path(path) if path is not None else DEFAULT_DATA_FILE
        self._unsubscribe: Callable[[], None] | None = None

    @property
    def path(self) -> Path:
        return self._path

    def load(self) -> dict[str, Any] | None:
        """Read the state document. Missing or unparsable files yield None."""
        if not self._path.exists():
            return None
        try:
            data = json.loads(self._path.read_text(encoding="utf-8"))
        except (OSError, ValueError, RecursionError) as exc:
            logger.warning("Could not read chat state %s: %s", self._path, exc)
            return None
        if not isinstance(data, dict):
            logger.warning("Ignoring chat state %s: not a JSON object", self._path)
            return None
        return data

    def load_into(self, store: SessionStore) -> bool:
        """Populate ``store`` from disk. Returns False when nothing usable was saved.

        A document with malformed fields (bad timestamps, unknown roles,
        non-object entries) is logged and left on disk untouched; the
        store starts fresh.
        """
        data = self.load()
        if data is None:
            logger.info("No saved chat state at %s, starting fresh", self._path)
            return False
        try:
            store.load_dict(data)
        except (ValueError, TypeError, AttributeError, KeyError) as exc:
            logger.warning(
                "Ignoring malformed chat state %s: %s: %s",
                self._path, type(exc).__name__, exc,
            )
            store.load([], None)
            return False
        logger.info(
            "Loaded %d session(s) from %s", len(store.sessions), self._path,
        )
        return True

    def save(self, store: SessionStore) -> Path:
        text = json.dumps(store.export_for_save(), indent=2, ensure_ascii=False)
        self._write(text)
        logger.debug("Chat state saved to %s", self._path)
        return self._path

    def _write(self, text: str) -> None:
        directory = self._path.parent
        directory.mkdir(parents=True, exist_ok=True)
        tmp_name: str | None = None
        try:
            with tempfile.NamedTemporaryFile(
                "w",
                encoding="utf-8",
                dir=directory,
                prefix=f".{self._path.name}.",
                suffix=".tmp",
                delete=False,
            ) as tmp:
                tmp_name = tmp.name
                tmp.write(text)
                tmp.flush()
                os.fsync(tmp.fileno())
            os.replace(tmp_name, self._path)
        except OSError:
            if tmp_name is not None:
                Path(tmp_name).unlink(missing_ok=True)
            raise

    def attach(self, store: SessionStore) -> None:
        """Save ``store`` after every change until ``detach()``."""
        self.detach()
        self._unsubscribe = store.subscribe(self.save)

    def detach(self) -> None:
        if self._unsubscribe is not None:
            self._unsubscribe()
            self._unsubscribe = None
