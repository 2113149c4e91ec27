"""Claude CLI stream engine — subprocess lifecycle and stream-json decoding."""
from .config import ChatConfig
from .errors import (
    ChatError,
    ProcessExitError,
    ProcessSpawnError,
    SessionConflictError,
    ToolNotFoundError,
)
from .process import (
    ProcessStreamManager,
    RunOutcome,
    RunPhase,
    RunStatus,
    RunStream,
)
from .protocol import DecoderState, EventKind, StreamDecoder, StreamEvent

__all__ = [
    # Config
    "ChatConfig",
    # Errors
    "ChatError",
    "ProcessExitError",
    "ProcessSpawnError",
    "SessionConflictError",
    "ToolNotFoundError",
    # Process management
    "ProcessStreamManager",
    "RunOutcome",
    "RunPhase",
    "RunStatus",
    "RunStream",
    # Protocol
    "DecoderState",
    "EventKind",
    "StreamDecoder",
    "StreamEvent",
]
