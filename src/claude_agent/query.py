"""One Claude CLI invocation exposed as a typed message stream.

The query owns the CLI subprocess, the SDK tool servers started for it
and an asyncio event loop (private unless one is passed in).  Messages are
consumed either blocking, with :meth:`Query.pull` stepping the loop, or
from inside the loop through :meth:`Query.pull_async` and ``async for``.
"""

from __future__ import annotations

import asyncio
import contextlib
import logging
import time
from collections import deque
from collections.abc import AsyncIterable, Coroutine, Iterator
from typing import Any

from pydantic import ValidationError

from claude_agent.config.models import MAX_QUERY_TIMEOUT, AgentOptions, PermissionMode
from claude_agent.mcp.sdk_server import SDKServer
from claude_agent.transport.codec import LineCodec
from claude_agent.transport.launcher import build_command, build_env
from claude_agent.types.messages import Message, SystemMessage, parse_message

logger = logging.getLogger(__name__)

#: Maximum bytes per JSONL line from subprocess stdout (10 MB).
_MAX_LINE_BYTES = 10_485_760

#: Seconds to wait after SIGTERM before SIGKILL.
_SIGTERM_WAIT = 3.0

#: Longest single loop step taken by ``pull()``.
_STEP_SECONDS = 0.1

#: Remaining time below which ``pull()`` treats the deadline as reached.
_EPSILON = 0.001

Prompt = str | AsyncIterable[str | dict[str, Any]] | None


class Query:
    """Bidirectional session with a single Claude CLI subprocess.

    A string *prompt* runs the CLI in ``--print`` mode; its stdin is closed
    right after the spawn.  ``None`` or an async iterable selects streaming
    input: items of the iterable (or later :meth:`send_user_message` calls)
    are written to stdin as ``user`` frames.

    Failures of the child process never raise into iteration.  The stream
    simply ends and :attr:`error` holds the first recorded cause.

    Raises:
        CLINotFoundError: If the ``claude`` executable cannot be located.
    """

    def __init__(
        self,
        prompt: Prompt,
        options: AgentOptions | None = None,
        loop: asyncio.AbstractEventLoop | None = None,
    ) -> None:
        self.options = options or AgentOptions()
        self._prompt = prompt
        self._owns_loop = loop is None
        self._loop = loop or asyncio.new_event_loop()

        self._messages: deque[Message] = deque()
        self._waiters: deque[asyncio.Future[Message | None]] = deque()
        self._activity = asyncio.Event()
        self._codec = LineCodec()

        self._process: asyncio.subprocess.Process | None = None
        self._tasks: set[asyncio.Task[Any]] = set()
        self._sdk_servers: list[SDKServer] = []
        # Frames queued by control calls made before the spawn completes.
        self._outbox: list[dict[str, Any]] = []

        self._session_id: str | None = None
        self._finished = False
        self._error: str | None = None
        self._closed = False

        try:
            self._command = build_command(
                prompt if isinstance(prompt, str) else None,
                self.options,
                self._start_sdk_servers(),
            )
        except Exception:
            self._stop_sdk_servers()
            if self._owns_loop:
                # Let the cancelled server tasks finish before closing.
                self._loop.run_until_complete(asyncio.sleep(0))
                self._loop.close()
            raise

        if self._loop.is_running():
            self._spawn_task(self._run())
        else:
            self._loop.run_until_complete(self._spawn())
            if not self._finished:
                self._spawn_task(self._pump())

    # ------------------------------------------------------------------ #
    # Properties
    # ------------------------------------------------------------------ #

    @property
    def session_id(self) -> str | None:
        """Session id announced by the first ``system``/``init`` message."""
        return self._session_id

    @property
    def is_finished(self) -> bool:
        return self._finished

    @property
    def error(self) -> str | None:
        """First recorded failure, or ``None``."""
        return self._error

    @property
    def pid(self) -> int | None:
        return self._process.pid if self._process is not None else None

    @property
    def loop(self) -> asyncio.AbstractEventLoop:
        return self._loop

    @property
    def command(self) -> list[str]:
        """The argv the CLI was launched with."""
        return list(self._command)

    # ------------------------------------------------------------------ #
    # SDK servers
    # ------------------------------------------------------------------ #

    def _start_sdk_servers(self) -> dict[str, dict[str, Any]]:
        """Start one socket server per ``sdk`` entry; return their descriptors."""
        # A forwarded tool call may never outlive the query waiting on it.
        tool_timeout = min(self.options.tool_timeout, self.options.query_timeout)
        configs: dict[str, dict[str, Any]] = {}
        for key, server in self.options.sdk_servers.items():
            sdk_server = SDKServer(server, self._loop)
            self._sdk_servers.append(sdk_server)
            sdk_server.start()
            configs[key] = sdk_server.to_stdio_config(tool_timeout)
        return configs

    def _stop_sdk_servers(self) -> None:
        for sdk_server in self._sdk_servers:
            sdk_server.stop()
        self._sdk_servers.clear()

    # ------------------------------------------------------------------ #
    # Process lifecycle
    # ------------------------------------------------------------------ #

    def _spawn_task(self, coro: Coroutine[Any, Any, Any]) -> asyncio.Task[Any]:
        task = self._loop.create_task(coro)
        self._tasks.add(task)
        task.add_done_callback(self._tasks.discard)
        return task

    async def _run(self) -> None:
        await self._spawn()
        if not self._finished:
            await self._pump()

    async def _spawn(self) -> None:
        try:
            self._process = await asyncio.create_subprocess_exec(
                *self._command,
                stdin=asyncio.subprocess.PIPE,
                stdout=asyncio.subprocess.PIPE,
                stderr=asyncio.subprocess.PIPE,
                limit=_MAX_LINE_BYTES,
                cwd=self.options.cwd,
                env=build_env(self.options),
            )
        except OSError as exc:
            logger.error("Failed to spawn Claude CLI: %s", exc)
            self._finish(f"Claude CLI exception: {exc}")
            return

        logger.debug("Spawned Claude CLI (pid %s): %s", self._process.pid, self._command[0])

        if isinstance(self._prompt, str):
            self._close_stdin()
            return

        outbox, self._outbox = self._outbox, []
        for frame in outbox:
            self._write_frame(frame)
        if self._prompt is not None:
            self._spawn_task(self._feed(self._prompt))

    async def _pump(self) -> None:
        """Read stdout until EOF, then reap the process and finish."""
        proc = self._process
        if proc is None:
            return
        if proc.stderr is not None:
            self._spawn_task(self._drain_stderr(proc.stderr))

        try:
            if proc.stdout is not None:
                await self._read_stdout(proc.stdout)
            returncode = await proc.wait()
        except asyncio.CancelledError:
            raise
        except Exception as exc:
            logger.error("Error reading Claude CLI output: %s", exc)
            self._finish(f"Claude CLI exception: {exc}")
            return

        if returncode != 0:
            logger.debug("Claude CLI exited with code %s", returncode)
            self._finish(f"Claude CLI exited with code {returncode}")
        else:
            self._finish()

    async def _read_stdout(self, stdout: asyncio.StreamReader) -> None:
        while True:
            try:
                line_bytes = await stdout.readline()
            except ValueError:
                # Line exceeded the StreamReader limit; skip it and keep reading.
                logger.warning("Claude CLI stdout line exceeded buffer limit, skipping")
                self._codec.reset()
                continue

            if not line_bytes:
                break

            line = line_bytes.decode(errors="replace").strip()
            if not line:
                continue
            for value in self._codec.decode(line):
                self._handle_value(value)

    async def _drain_stderr(self, stderr: asyncio.StreamReader) -> None:
        while True:
            try:
                line_bytes = await stderr.readline()
            except ValueError:
                continue
            if not line_bytes:
                return
            logger.debug("claude stderr: %s", line_bytes.decode(errors="replace").rstrip())

    async def _feed(self, stream: AsyncIterable[str | dict[str, Any]]) -> None:
        """Write each item of a streaming prompt to stdin, then end input."""
        try:
            async for item in stream:
                if self._finished:
                    return
                if isinstance(item, str):
                    self.send_user_message(item)
                elif isinstance(item, dict):
                    self._write_frame(item)
                else:
                    logger.debug("Ignoring prompt item of type %s", type(item).__name__)
                    continue
                await self._drain_stdin()
        except asyncio.CancelledError:
            raise
        except Exception as exc:
            logger.error("Prompt stream raised: %s", exc)
            self._record_error(f"Prompt stream failed: {exc}")
        self._close_stdin()

    # ------------------------------------------------------------------ #
    # Message routing
    # ------------------------------------------------------------------ #

    def _handle_value(self, value: Any) -> None:
        if self._finished:
            logger.debug("Dropping output received after the stream finished")
            return
        if not isinstance(value, dict) or "type" not in value:
            logger.debug("Dropping frame without a type: %.200r", value)
            return
        try:
            message = parse_message(value)
        except ValidationError as exc:
            logger.debug("Dropping malformed %r message: %s", value.get("type"), exc)
            return

        if (
            self._session_id is None
            and isinstance(message, SystemMessage)
            and message.subtype == "init"
        ):
            self._session_id = message.get_session_id()
            logger.debug("Session started: %s", self._session_id)

        self._deliver(message)

    def _deliver(self, message: Message) -> None:
        """Hand *message* to the oldest live waiter, else queue it."""
        while self._waiters:
            waiter = self._waiters.popleft()
            if not waiter.done():
                waiter.set_result(message)
                break
        else:
            self._messages.append(message)
        self._activity.set()

    def _record_error(self, error: str) -> None:
        if self._error is None:
            self._error = error

    def _finish(self, error: str | None = None) -> None:
        if error is not None:
            self._record_error(error)
        if self._finished:
            return
        self._finished = True
        while self._waiters:
            waiter = self._waiters.popleft()
            if not waiter.done():
                waiter.set_result(None)
        self._stop_sdk_servers()
        self._activity.set()

    # ------------------------------------------------------------------ #
    # Consumption
    # ------------------------------------------------------------------ #

    def pull(self, timeout: float | None = None) -> Message | None:
        """Return the next message, blocking until one arrives.

        Returns ``None`` once the stream has ended.  If no message arrives
        within *timeout* seconds (default ``options.query_timeout``) the
        stream is finished with a timeout error.

        Raises:
            RuntimeError: If called while the query's event loop is running.
        """
        if self._loop.is_running():
            msg = "pull() cannot block inside the running event loop; use pull_async()"
            raise RuntimeError(msg)

        if timeout is None:
            timeout = self.options.query_timeout
        timeout = min(timeout, MAX_QUERY_TIMEOUT)
        deadline = time.monotonic() + timeout

        while True:
            if self._messages:
                return self._messages.popleft()
            if self._finished or self._loop.is_closed():
                return None
            remaining = deadline - time.monotonic()
            if remaining <= _EPSILON:
                logger.warning("Query timed out after %g seconds", timeout)
                self._finish(f"Query timed out after {timeout:g} seconds")
                return None
            self._activity.clear()
            self._loop.run_until_complete(self._wait_activity(min(remaining, _STEP_SECONDS)))

    async def _wait_activity(self, seconds: float) -> None:
        with contextlib.suppress(TimeoutError):
            await asyncio.wait_for(self._activity.wait(), seconds)

    def pull_async(self) -> asyncio.Future[Message | None]:
        """Return a future for the next message without suspending.

        The future is already resolved when a message is queued (or with
        ``None`` when the stream has ended); otherwise it resolves, in
        request order, as messages arrive.
        """
        future: asyncio.Future[Message | None] = self._loop.create_future()
        if self._messages:
            future.set_result(self._messages.popleft())
        elif self._finished:
            future.set_result(None)
        else:
            self._waiters.append(future)
        return future

    def __iter__(self) -> Iterator[Message]:
        return self

    def __next__(self) -> Message:
        message = self.pull()
        if message is None:
            raise StopIteration
        return message

    def __aiter__(self) -> Query:
        return self

    async def __anext__(self) -> Message:
        timeout = min(self.options.query_timeout, MAX_QUERY_TIMEOUT)
        try:
            message = await asyncio.wait_for(self.pull_async(), timeout)
        except TimeoutError:
            self._finish(f"Query timed out after {timeout:g} seconds")
            message = None
        if message is None:
            raise StopAsyncIteration
        return message

    # ------------------------------------------------------------------ #
    # Control channel
    # ------------------------------------------------------------------ #

    def _write_frame(self, frame: dict[str, Any]) -> bool:
        """Write one control frame to stdin; ``False`` if nothing was written."""
        if self._finished:
            return False
        proc = self._process
        if proc is None:
            if isinstance(self._prompt, str):
                return False
            self._outbox.append(frame)
            return True
        stdin = proc.stdin
        if stdin is None or stdin.is_closing():
            return False
        try:
            stdin.write(self._codec.encode(frame).encode())
        except (BrokenPipeError, ConnectionResetError, OSError) as exc:
            logger.debug("Failed to write %s frame: %s", frame.get("type"), exc)
            self._record_error(f"Failed to write to Claude CLI: {exc}")
            return False
        return True

    async def _drain_stdin(self) -> None:
        proc = self._process
        if proc is None or proc.stdin is None or proc.stdin.is_closing():
            return
        try:
            await proc.stdin.drain()
        except (BrokenPipeError, ConnectionResetError, OSError) as exc:
            self._record_error(f"Failed to write to Claude CLI: {exc}")

    def _close_stdin(self) -> None:
        proc = self._process
        if proc is not None and proc.stdin is not None and not proc.stdin.is_closing():
            with contextlib.suppress(OSError):
                proc.stdin.close()

    def interrupt(self) -> bool:
        """Ask the CLI to stop the current turn (best effort)."""
        return self._write_frame({"type": "interrupt"})

    def send_user_message(self, content: Any) -> bool:
        """Send a follow-up user turn (streaming-input mode only)."""
        return self._write_frame(
            {"type": "user", "message": {"role": "user", "content": content}}
        )

    def set_permission_mode(self, mode: PermissionMode) -> bool:
        return self._write_frame({"type": "set_permission_mode", "permission_mode": mode})

    def respond_to_permission(self, tool_use_id: str, response: dict[str, Any]) -> bool:
        """Answer a permission request for *tool_use_id*.

        *response* is forwarded as-is, e.g. ``{"behavior": "allow"}``.
        """
        return self._write_frame(
            {
                "type": "permission_response",
                "tool_use_id": tool_use_id,
                "response": response,
            }
        )

    def rewind_files(self) -> bool:
        return self._write_frame({"type": "rewind_files"})

    # ------------------------------------------------------------------ #
    # Shutdown
    # ------------------------------------------------------------------ #

    async def aclose(self) -> None:
        """Terminate the CLI, finish the stream and release SDK servers."""
        if self._closed:
            return
        self._closed = True

        proc = self._process
        if proc is not None and proc.returncode is None:
            self._close_stdin()
            with contextlib.suppress(ProcessLookupError):
                proc.terminate()
            try:
                await asyncio.wait_for(proc.wait(), timeout=_SIGTERM_WAIT)
            except TimeoutError:
                with contextlib.suppress(ProcessLookupError):
                    proc.kill()
                await proc.wait()

        self._finish()

        current = asyncio.current_task()
        tasks = [task for task in self._tasks if task is not current and not task.done()]
        for task in tasks:
            task.cancel()
        if tasks:
            await asyncio.gather(*tasks, return_exceptions=True)

    def close(self) -> None:
        """Blocking :meth:`aclose`; also closes a private event loop."""
        if self._loop.is_closed():
            return
        if self._loop.is_running():
            msg = "close() cannot block inside the running event loop; use aclose()"
            raise RuntimeError(msg)
        self._loop.run_until_complete(self.aclose())
        if self._owns_loop:
            self._loop.run_until_complete(self._loop.shutdown_asyncgens())
            self._loop.close()

    def __enter__(self) -> Query:
        return self

    def __exit__(self, *exc_info: object) -> None:
        self.close()

    async def __aenter__(self) -> Query:
        return self

    async def __aexit__(self, *exc_info: object) -> None:
        await self.aclose()
