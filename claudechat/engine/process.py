"""Process stream manager — one Claude CLI subprocess per user command.

Each run spawns ``claude -p --output-format stream-json
--include-partial-messages --verbose [-r <id>] <command>``, feeds stdout
through a StreamDecoder and forwards answer text to the caller as it
arrives.

At most one run is active per manager. Starting a run first stops the
previous one and waits for its subprocess to exit, so output from two
runs never interleaves. A "Session ID ... already in use" message on
stderr triggers exactly one automatic retry with a fresh CLI session.

Runs never raise across the streaming boundary: every terminal state
is reported as a RunOutcome.
"""
from __future__ import annotations

import asyncio
import codecs
import inspect
import logging
import os
import signal
import time
from collections.abc import AsyncIterator, Awaitable, Callable
from dataclasses import dataclass, field
from enum import Enum
from pathlib import Path
from typing import Any

from .config import ChatConfig
from .errors import (
    ChatError,
    ProcessExitError,
    ProcessSpawnError,
    SessionConflictError,
    ToolNotFoundError,
)
from .protocol import EventKind, StreamDecoder, StreamEvent

logger = logging.getLogger(__name__)

# Signature: def/async def sink(text) -> None
FragmentSink = Callable[[str], Awaitable[None] | None]
# Signature: def/async def callback(external_session_id_or_None) -> None
SessionIdCallback = Callable[[str | None], Awaitable[None] | None]

STREAM_FLAGS = (
    "-p",
    "--output-format", "stream-json",
    "--include-partial-messages",
    # stream-json output is rejected in print mode without --verbose
    "--verbose",
)

CONFLICT_NOTICE = "\n\n⚠️ Session conflict detected, starting a new session...\n\n"

_READ_SIZE = 64 * 1024


def is_session_conflict(text: str) -> bool:
    """Best-effort match of the CLI's "session id already in use" error."""
    return "already in use" in text and "Session ID" in text


class RunStatus(Enum):
    SUCCESS = "success"
    FAILURE = "failure"
    STOPPED = "stopped"


class RunPhase(Enum):
    IDLE = "idle"
    SPAWNING = "spawning"
    STREAMING = "streaming"
    RETRYING = "retrying"
    COMPLETING = "completing"


@dataclass
class RunOutcome:
    """Terminal result of one run."""
    status: RunStatus
    error: ChatError | None = None
    external_session_id: str | None = None
    exit_code: int | None = None
    retried: bool = False
    output_received: bool = False

    @property
    def ok(self) -> bool:
        return self.status == RunStatus.SUCCESS


@dataclass
class _StreamSession:
    """Runtime state of one spawned subprocess."""
    process: asyncio.subprocess.Process
    decoder: StreamDecoder = field(default_factory=StreamDecoder)
    output_received: bool = False
    # stderr text that signalled a session conflict, if any
    conflict: str | None = None
    started_at: float = field(default_factory=time.monotonic)

    def elapsed_ms(self) -> int:
        return int((time.monotonic() - self.started_at) * 1000)


@dataclass
class _RunContext:
    """One call to run(), spanning its conflict retry."""
    stopped: bool = False
    session: _StreamSession | None = None


_END = object()


class RunStream:
    """Async-iterable fragment channel for a run scheduled by ``start()``.

    Iterate to receive fragments in arrival order; ``outcome()`` awaits
    the run's single RunOutcome.
    """

    def __init__(self) -> None:
        self._queue: asyncio.Queue[Any] = asyncio.Queue()
        self._task: asyncio.Task[RunOutcome] | None = None

    def _put(self, text: str) -> None:
        self._queue.put_nowait(text)

    def _attach(self, task: asyncio.Task[RunOutcome]) -> None:
        self._task = task
        task.add_done_callback(lambda _: self._queue.put_nowait(_END))

    def __aiter__(self) -> AsyncIterator[str]:
        return self._iterate()

    async def _iterate(self) -> AsyncIterator[str]:
        while True:
            item = await self._queue.get()
            if item is _END:
                # Leave the marker for any other consumer.
                self._queue.put_nowait(_END)
                return
            yield item

    def done(self) -> bool:
        return self._task is not None and self._task.done()

    async def outcome(self) -> RunOutcome:
        assert self._task is not None
        return await self._task


async def _call(callback: Callable[..., Any] | None, *args: Any, what: str) -> None:
    """Invoke a sync or async caller hook; its errors never break a run."""
    if callback is None:
        return
    try:
        result = callback(*args)
        if inspect.isawaitable(result):
            await result
    except Exception:
        logger.exception("%s callback failed", what)


class ProcessStreamManager:
    """Owns the Claude CLI subprocess and turns its output into fragments.

    Construct one per application and pass it to whoever issues
    commands. ``on_session_id_changed`` fires whenever the CLI announces
    a session id, and with ``None`` when a conflict forces a new session,
    so the caller can persist it before the run completes.
    """

    def __init__(
        self,
        config: ChatConfig | None = None,
        *,
        on_session_id_changed: SessionIdCallback | None = None,
    ) -> None:
        self._config = config or ChatConfig()
        self._on_session_id_changed = on_session_id_changed
        self._external_session_id: str | None = None
        self._lock = asyncio.Lock()
        # Runs that have been requested and not finished, oldest first.
        self._runs: list[_RunContext] = []
        self._phase = RunPhase.IDLE

    @property
    def config(self) -> ChatConfig:
        return self._config

    @property
    def external_session_id(self) -> str | None:
        return self._external_session_id

    @property
    def phase(self) -> RunPhase:
        return self._phase

    @property
    def is_running(self) -> bool:
        return bool(self._runs)

    def set_session_id_callback(self, callback: SessionIdCallback | None) -> None:
        self._on_session_id_changed = callback

    def set_external_session_id(self, external_session_id: str | None) -> None:
        """Adopt an id loaded from storage. Does not notify."""
        self._external_session_id = external_session_id
        logger.info("Session ID set to: %s", external_session_id or "(none)")

    async def reset_session(self) -> None:
        await self._set_session_id(None)

    async def _set_session_id(self, external_session_id: str | None) -> None:
        self._external_session_id = external_session_id
        logger.info("Captured session ID: %s", external_session_id or "(none)")
        await _call(
            self._on_session_id_changed, external_session_id, what="Session id",
        )

    def build_invocation(
        self,
        command: str,
        external_session_id: str | None = None,
    ) -> list[str]:
        """argv for one non-interactive streaming CLI call."""
        argv = [self._config.claude_command, *self._config.extra_args]
        if external_session_id:
            argv += ["-r", external_session_id]
        argv += [*STREAM_FLAGS, command]
        return argv

    # ── public run API ──────────────────────────────────────────────

    def start(
        self,
        command: str,
        external_session_id: str | None = None,
    ) -> RunStream:
        """Schedule a run and return its fragment stream."""
        _check_command(command)
        stream = RunStream()
        task = asyncio.ensure_future(
            self.run(command, external_session_id, on_fragment=stream._put)
        )
        stream._attach(task)
        return stream

    async def run(
        self,
        command: str,
        external_session_id: str | None = None,
        *,
        on_fragment: FragmentSink | None = None,
    ) -> RunOutcome:
        """Run ``command`` to completion, forwarding fragments to ``on_fragment``.

        The latest request wins: any run already in flight (or waiting)
        is stopped and its subprocess reaped before this one spawns.
        """
        _check_command(command)
        ctx = _RunContext()
        for previous in list(self._runs):
            await self._stop_context(previous)
        self._runs.append(ctx)
        try:
            async with self._lock:
                if ctx.stopped:
                    return self._outcome(RunStatus.STOPPED)
                return await self._run_attempt(
                    ctx, command, external_session_id, on_fragment, is_retry=False,
                )
        finally:
            self._runs.remove(ctx)
            if not self._runs:
                self._phase = RunPhase.IDLE

    async def stop(self) -> bool:
        """Kill the running subprocess; the run resolves as STOPPED."""
        if not self._runs:
            return False
        logger.info("Stopping current process...")
        for ctx in list(self._runs):
            await self._stop_context(ctx)
        return True

    async def close(self) -> None:
        """Stop any run and wait until it has fully unwound."""
        await self.stop()
        async with self._lock:
            pass

    # ── internals ───────────────────────────────────────────────────

    def _outcome(
        self,
        status: RunStatus,
        *,
        error: ChatError | None = None,
        session: _StreamSession | None = None,
        retried: bool = False,
    ) -> RunOutcome:
        return RunOutcome(
            status=status,
            error=error,
            external_session_id=self._external_session_id,
            exit_code=session.process.returncode if session else None,
            retried=retried,
            output_received=session.output_received if session else False,
        )

    async def _stop_context(self, ctx: _RunContext) -> None:
        ctx.stopped = True
        if ctx.session is not None:
            await self._terminate(ctx.session)

    async def _run_attempt(
        self,
        ctx: _RunContext,
        command: str,
        external_session_id: str | None,
        sink: FragmentSink | None,
        *,
        is_retry: bool,
    ) -> RunOutcome:
        self._phase = RunPhase.SPAWNING
        self._external_session_id = external_session_id
        argv = self.build_invocation(command, external_session_id)
        cwd = self._config.cwd
        logger.info(
            "Starting command (%d chars) session=%s cwd=%s retry=%s",
            len(command), external_session_id or "(new session)",
            cwd or "<inherit>", is_retry,
        )

        if cwd and not Path(cwd).is_dir():
            return self._outcome(
                RunStatus.FAILURE,
                error=ProcessSpawnError(argv[0], f"working directory not found: {cwd}"),
                retried=is_retry,
            )

        try:
            # Array-based exec, no shell. Own session so the whole
            # process group can be signalled on teardown.
            proc = await asyncio.create_subprocess_exec(
                *argv,
                stdin=asyncio.subprocess.PIPE,
                stdout=asyncio.subprocess.PIPE,
                stderr=asyncio.subprocess.PIPE,
                cwd=cwd,
                start_new_session=True,
            )
        except FileNotFoundError:
            logger.error("Claude CLI not found: %s", argv[0])
            return self._outcome(
                RunStatus.FAILURE, error=ToolNotFoundError(argv[0]), retried=is_retry,
            )
        except OSError as exc:
            logger.error("Failed to spawn %s: %s", argv[0], exc)
            return self._outcome(
                RunStatus.FAILURE,
                error=ProcessSpawnError(argv[0], str(exc)),
                retried=is_retry,
            )

        session = _StreamSession(process=proc)
        ctx.session = session
        logger.info("Process spawned, PID: %s", proc.pid)
        # One-shot command: no input will follow.
        if proc.stdin is not None:
            proc.stdin.close()

        self._phase = RunPhase.STREAMING
        stdout_task = asyncio.ensure_future(self._pump_stdout(ctx, session, sink))
        stderr_task = asyncio.ensure_future(
            self._pump_stderr(ctx, session, sink, is_retry)
        )
        try:
            if ctx.stopped:
                await self._terminate(session)
            await asyncio.gather(stdout_task, stderr_task)
            await proc.wait()
        except asyncio.CancelledError:
            stdout_task.cancel()
            stderr_task.cancel()
            self._kill_now(proc)
            raise
        except Exception as exc:
            logger.exception("Reading CLI output failed")
            stdout_task.cancel()
            stderr_task.cancel()
            await self._terminate(session)
            return self._outcome(
                RunStatus.FAILURE,
                error=ChatError(f"Reading CLI output failed: {exc}"),
                session=session,
                retried=is_retry,
            )
        finally:
            ctx.session = None

        self._phase = RunPhase.COMPLETING
        logger.info(
            "Process closed with code: %s, hadData: %s, %dms total",
            proc.returncode, session.output_received, session.elapsed_ms(),
        )

        if ctx.stopped:
            return self._outcome(RunStatus.STOPPED, session=session, retried=is_retry)

        if session.conflict is not None:
            if is_retry:
                return self._outcome(
                    RunStatus.FAILURE,
                    error=SessionConflictError(session.conflict),
                    session=session,
                    retried=True,
                )
            self._phase = RunPhase.RETRYING
            # Give the CLI time to release the session lock.
            await asyncio.sleep(self._config.conflict_retry_delay)
            if ctx.stopped:
                return self._outcome(RunStatus.STOPPED, session=session)
            outcome = await self._run_attempt(ctx, command, None, sink, is_retry=True)
            outcome.retried = True
            return outcome

        if proc.returncode == 0:
            return self._outcome(RunStatus.SUCCESS, session=session, retried=is_retry)
        if session.output_received:
            # The CLI may exit non-zero after a usable answer (e.g. a
            # failed tool call); surface the output, not the code.
            logger.info("Non-zero exit but data received, resolving")
            return self._outcome(RunStatus.SUCCESS, session=session, retried=is_retry)
        return self._outcome(
            RunStatus.FAILURE,
            error=ProcessExitError(proc.returncode),
            session=session,
            retried=is_retry,
        )

    async def _pump_stdout(
        self,
        ctx: _RunContext,
        session: _StreamSession,
        sink: FragmentSink | None,
    ) -> None:
        stream = session.process.stdout
        assert stream is not None
        utf8 = codecs.getincrementaldecoder("utf-8")(errors="replace")
        while True:
            data = await stream.read(_READ_SIZE)
            if not data:
                break
            session.output_received = True
            chunk = utf8.decode(data)
            logger.debug(
                "Raw chunk (%d chars, %dms): %s",
                len(chunk), session.elapsed_ms(), chunk[:200],
            )
            await self._dispatch(ctx, session, session.decoder.feed(chunk), sink)
        tail = session.decoder.feed(utf8.decode(b"", final=True))
        await self._dispatch(ctx, session, tail + session.decoder.flush(), sink)

    async def _pump_stderr(
        self,
        ctx: _RunContext,
        session: _StreamSession,
        sink: FragmentSink | None,
        is_retry: bool,
    ) -> None:
        stream = session.process.stderr
        assert stream is not None
        utf8 = codecs.getincrementaldecoder("utf-8")(errors="replace")
        # Teardown runs beside the read loop so the pipe keeps draining.
        teardown: asyncio.Future[None] | None = None
        try:
            while True:
                data = await stream.read(_READ_SIZE)
                if not data:
                    break
                if teardown is None:
                    teardown = await self._handle_stderr(
                        ctx, session, sink, is_retry, utf8.decode(data),
                    )
            if teardown is not None:
                await teardown
        except asyncio.CancelledError:
            if teardown is not None:
                teardown.cancel()
            raise

    async def _handle_stderr(
        self,
        ctx: _RunContext,
        session: _StreamSession,
        sink: FragmentSink | None,
        is_retry: bool,
        chunk: str,
    ) -> asyncio.Future[None] | None:
        """Forward one stderr chunk; on a conflict, start tearing the process down."""
        session.output_received = True
        logger.debug(
            "stderr (%d chars, %dms): %s",
            len(chunk), session.elapsed_ms(), chunk[:100],
        )
        if ctx.stopped or session.conflict is not None:
            return None
        if is_session_conflict(chunk):
            session.conflict = chunk
            if is_retry:
                logger.error(
                    "Session conflict persisted after retry: %s", chunk[:200],
                )
            else:
                logger.warning(
                    "Session conflict detected, retrying with new session"
                )
                await _call(sink, CONFLICT_NOTICE, what="Fragment")
                await self._set_session_id(None)
            return asyncio.ensure_future(self._terminate(session))
        if self._config.forward_stderr:
            await _call(sink, chunk, what="Fragment")
        return None

    async def _dispatch(
        self,
        ctx: _RunContext,
        session: _StreamSession,
        events: list[StreamEvent],
        sink: FragmentSink | None,
    ) -> None:
        for event in events:
            # Nothing from a stopped or conflicting process reaches the caller.
            if ctx.stopped or session.conflict is not None:
                return
            if event.kind == EventKind.TEXT:
                await _call(sink, event.text, what="Fragment")
            elif event.kind == EventKind.SESSION_ID:
                await self._set_session_id(event.session_id)
            elif event.kind == EventKind.MESSAGE_COMPLETE:
                logger.debug("Message complete")
            elif event.kind == EventKind.ERROR:
                logger.error("Stream error: %s", event.payload)
            else:
                logger.debug("Unhandled JSON type: %s", event.record_type)

    async def _terminate(self, session: _StreamSession) -> None:
        """SIGTERM the process group, escalate to SIGKILL, and reap."""
        proc = session.process
        if proc.returncode is not None:
            return
        logger.info("Cleaning up process after %dms", session.elapsed_ms())
        try:
            _send_signal(proc, signal.SIGTERM)
        except ProcessLookupError:
            pass
        try:
            await asyncio.wait_for(proc.wait(), timeout=self._config.kill_timeout)
        except asyncio.TimeoutError:
            logger.warning(
                "Process %s ignored SIGTERM for %.1fs, killing",
                proc.pid, self._config.kill_timeout,
            )
            self._kill_now(proc)
            await proc.wait()

    @staticmethod
    def _kill_now(proc: asyncio.subprocess.Process) -> None:
        if proc.returncode is not None:
            return
        try:
            _send_signal(proc, getattr(signal, "SIGKILL", signal.SIGTERM))
        except ProcessLookupError:
            pass


def _send_signal(proc: asyncio.subprocess.Process, sig: int) -> None:
    if hasattr(os, "killpg"):
        os.killpg(proc.pid, sig)
    elif sig == signal.SIGTERM:
        proc.terminate()
    else:
        proc.kill()


def _check_command(command: str) -> None:
    if not command or not command.strip():
        raise ValueError("command must not be empty")
