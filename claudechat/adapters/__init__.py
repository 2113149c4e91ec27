"""Adapters package - Bridge between the stream engine and chat frontends.

The chat controller connects the ProcessStreamManager to the
SessionStore so frontends only deal with commands and fragments.
"""
from __future__ import annotations

__all__ = [
    "ChatController",
]

from claudechat.adapters.chat_controller import ChatController
