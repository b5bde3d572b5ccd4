"""Stdio MCP server that forwards tool calls to an :class:`SDKServer`.

Launched by the Claude CLI from the descriptor built by
``SDKServer.to_stdio_config()``::

    python -m claude_agent.mcp.sdk_runner -- SOCKET NAME VERSION TOOLS_JSON

Stdout carries JSON-RPC responses to the CLI; diagnostics go to stderr.
"""

from __future__ import annotations

import asyncio
import contextlib
import json
import logging
import os
import re
import signal
import sys
import uuid
from collections.abc import Mapping
from typing import Any, TextIO

import click

from claude_agent.config.models import DEFAULT_TOOL_TIMEOUT, MAX_QUERY_TIMEOUT
from claude_agent.errors import RunnerArgumentError
from claude_agent.mcp.sdk_server import sanitize_tool_name
from claude_agent.mcp.tools import SERVER_NAME_PATTERN, VERSION_PATTERN
from claude_agent.transport.codec import LineCodec

logger = logging.getLogger(__name__)

PROTOCOL_VERSION = "2024-11-05"

#: JSON-RPC error code for unknown methods and tools.
METHOD_NOT_FOUND = -32601

#: Upper bound for the TOOLS_JSON argument (bytes).
MAX_TOOLS_JSON_BYTES = 1_000_000

#: Maximum bytes per line on stdin or the socket (10 MB).
_MAX_LINE_BYTES = 10_485_760

#: First and longest wait between checks for a forwarded call's response.
_BACKOFF_START = 0.01
_BACKOFF_MAX = 0.5

_SERVER_NAME_RE = re.compile(SERVER_NAME_PATTERN)
_VERSION_RE = re.compile(VERSION_PATTERN)


def tool_timeout_from_env(environ: Mapping[str, str] | None = None) -> float:
    """Read ``CLAUDE_AGENT_TOOL_TIMEOUT``.

    Must be a whole number of seconds between 1 and 3600; anything else
    falls back to the default of 60.
    """
    raw = (os.environ if environ is None else environ).get("CLAUDE_AGENT_TOOL_TIMEOUT")
    if raw is None:
        return DEFAULT_TOOL_TIMEOUT
    raw = raw.strip()
    if not (raw.isascii() and raw.isdigit()) or not 1 <= int(raw) <= MAX_QUERY_TIMEOUT:
        logger.warning("Ignoring invalid CLAUDE_AGENT_TOOL_TIMEOUT=%r", raw)
        return DEFAULT_TOOL_TIMEOUT
    return float(raw)


def validate_args(
    socket_path: str,
    server_name: str,
    version: str,
    tools_json: str,
) -> list[dict[str, Any]]:
    """Check the runner's positional arguments and return the tool manifests.

    Raises:
        RunnerArgumentError: On the first argument that fails validation.
    """
    if not socket_path or not os.path.isabs(socket_path):
        msg = "Socket path must be absolute"
        raise RunnerArgumentError(msg)
    if not _SERVER_NAME_RE.fullmatch(server_name or ""):
        msg = "Server name must be 1-100 characters of letters, digits, '_' or '-'"
        raise RunnerArgumentError(msg)
    if version and not _VERSION_RE.fullmatch(version):
        msg = "Version must be 1-50 characters of letters, digits, '.', '_' or '-'"
        raise RunnerArgumentError(msg)
    if len(tools_json.encode("utf-8")) > MAX_TOOLS_JSON_BYTES:
        msg = f"Tools JSON exceeds {MAX_TOOLS_JSON_BYTES} bytes"
        raise RunnerArgumentError(msg)

    try:
        tools = json.loads(tools_json)
    except json.JSONDecodeError as exc:
        msg = f"Tools JSON is not valid JSON: {exc.msg}"
        raise RunnerArgumentError(msg) from exc

    if not isinstance(tools, list):
        msg = "Tools JSON must be an array"
        raise RunnerArgumentError(msg)
    for index, tool in enumerate(tools):
        if not isinstance(tool, dict) or not isinstance(tool.get("name"), str):
            msg = f"Tool at index {index} must be an object with a string 'name'"
            raise RunnerArgumentError(msg)
    return tools


def _error_content(text: str) -> dict[str, Any]:
    return {"content": [{"type": "text", "text": text}], "isError": True}


class SDKRunner:
    """Relay between the CLI's MCP requests and the host's tool socket.

    Everything except ``tools/call`` is answered locally.  Each call gets a
    UUID, is written to the socket and waits, with capped exponential
    backoff, for the response carrying the same id.
    """

    def __init__(
        self,
        socket_path: str,
        server_name: str,
        version: str,
        tools: list[dict[str, Any]],
        tool_timeout: float | None = None,
        stdout: TextIO | None = None,
    ) -> None:
        self.socket_path = socket_path
        self.server_name = server_name
        self.version = version or "1.0.0"
        self.tools = {tool["name"]: tool for tool in tools}
        self.tool_timeout = tool_timeout if tool_timeout is not None else tool_timeout_from_env()
        self._stdout = stdout or sys.stdout

        self._reader: asyncio.StreamReader | None = None
        self._writer: asyncio.StreamWriter | None = None
        self._socket_closed = False
        self._socket_task: asyncio.Task[None] | None = None

        # Ids of forwarded calls still waiting, and responses received for them.
        self._outstanding: set[str] = set()
        self._responses: dict[str, dict[str, Any]] = {}
        self._response_event = asyncio.Event()

        self._tasks: set[asyncio.Task[Any]] = set()
        self._stop = asyncio.Event()

    # ------------------------------------------------------------------ #
    # Connection
    # ------------------------------------------------------------------ #

    async def connect(self) -> None:
        """Connect to the host socket and start reading responses.

        Raises:
            OSError: If the socket cannot be reached.
        """
        self._reader, self._writer = await asyncio.open_unix_connection(
            self.socket_path, limit=_MAX_LINE_BYTES
        )
        self._socket_task = asyncio.create_task(self._read_socket())
        logger.debug("%s: connected to %s", self.server_name, self.socket_path)

    async def run(self, stdin: asyncio.StreamReader | None = None) -> None:
        """Serve until stdin EOF, socket EOF or SIGTERM/SIGINT."""
        if self._socket_task is None:
            await self.connect()
        if stdin is None:
            stdin = await _open_stdin()

        loop = asyncio.get_running_loop()
        installed: list[signal.Signals] = []
        for sig in (signal.SIGTERM, signal.SIGINT):
            with contextlib.suppress(NotImplementedError, RuntimeError, ValueError):
                loop.add_signal_handler(sig, self._stop.set)
                installed.append(sig)

        watchers = [
            asyncio.create_task(self._read_stdin(stdin)),
            self._socket_task,
            asyncio.create_task(self._stop.wait()),
        ]
        try:
            await asyncio.wait(watchers, return_when=asyncio.FIRST_COMPLETED)
        finally:
            for sig in installed:
                loop.remove_signal_handler(sig)
            for task in watchers:
                task.cancel()
            await asyncio.gather(*watchers, return_exceptions=True)
            await self.shutdown()

    async def shutdown(self) -> None:
        """Cancel in-flight calls and close the socket."""
        tasks = [task for task in self._tasks if not task.done()]
        if self._socket_task is not None and not self._socket_task.done():
            tasks.append(self._socket_task)
        for task in tasks:
            task.cancel()
        if tasks:
            await asyncio.gather(*tasks, return_exceptions=True)

        writer, self._writer = self._writer, None
        self._socket_closed = True
        self._response_event.set()
        if writer is not None:
            writer.close()
            with contextlib.suppress(OSError, ConnectionError):
                await writer.wait_closed()
        logger.debug("%s: runner stopped", self.server_name)

    # ------------------------------------------------------------------ #
    # Readers
    # ------------------------------------------------------------------ #

    async def _read_stdin(self, stdin: asyncio.StreamReader) -> None:
        codec = LineCodec()
        while True:
            try:
                line = await stdin.readline()
            except ValueError:
                logger.warning("%s: request line exceeded buffer limit", self.server_name)
                codec.reset()
                continue
            if not line:
                logger.debug("%s: stdin closed", self.server_name)
                return
            text = line.decode(errors="replace").strip()
            if not text:
                continue
            for request in codec.decode(text):
                if not isinstance(request, dict):
                    logger.debug("%s: ignoring non-object request", self.server_name)
                    continue
                if request.get("method") == "tools/call":
                    task = asyncio.create_task(self._respond(request))
                    self._tasks.add(task)
                    task.add_done_callback(self._tasks.discard)
                else:
                    await self._respond(request)

    async def _read_socket(self) -> None:
        reader = self._reader
        if reader is None:
            return
        codec = LineCodec()
        try:
            while True:
                try:
                    line = await reader.readline()
                except ValueError:
                    logger.warning("%s: response line exceeded buffer limit", self.server_name)
                    codec.reset()
                    continue
                if not line:
                    logger.debug("%s: socket closed by host", self.server_name)
                    return
                text = line.decode(errors="replace").strip()
                if text:
                    for response in codec.decode(text):
                        self._store_response(response)
        except (ConnectionResetError, BrokenPipeError) as exc:
            logger.debug("%s: socket error: %s", self.server_name, exc)
        finally:
            self._socket_closed = True
            self._response_event.set()

    def _store_response(self, response: Any) -> None:
        if not isinstance(response, dict):
            return
        request_id = response.get("id")
        if request_id not in self._outstanding:
            logger.debug("%s: discarding response for unknown id %r", self.server_name, request_id)
            return
        self._responses[request_id] = response
        self._response_event.set()

    async def _respond(self, request: dict[str, Any]) -> None:
        response = await self.handle_request(request)
        if response is not None:
            self._write_stdout(response)

    def _write_stdout(self, response: dict[str, Any]) -> None:
        self._stdout.write(json.dumps(response) + "\n")
        self._stdout.flush()

    # ------------------------------------------------------------------ #
    # MCP methods
    # ------------------------------------------------------------------ #

    async def handle_request(self, request: dict[str, Any]) -> dict[str, Any] | None:
        """Build the JSON-RPC response for one request (``None`` for notifications)."""
        method = request.get("method") or ""
        request_id = request.get("id")
        params = request.get("params")
        if not isinstance(params, dict):
            params = {}

        if method == "initialize":
            return _result(
                request_id,
                {
                    "protocolVersion": PROTOCOL_VERSION,
                    "capabilities": {"tools": {}},
                    "serverInfo": {"name": self.server_name, "version": self.version},
                },
            )

        if method.startswith("notifications/"):
            return None

        if method == "tools/list":
            return _result(
                request_id,
                {
                    "tools": [
                        {
                            "name": tool["name"],
                            "description": tool.get("description", ""),
                            "inputSchema": tool.get("input_schema")
                            or {"type": "object", "properties": {}},
                        }
                        for tool in self.tools.values()
                    ]
                },
            )

        if method == "tools/call":
            name = params.get("name")
            if not isinstance(name, str) or name not in self.tools:
                return _error(request_id, f"Unknown tool: {sanitize_tool_name(name)}")
            arguments = params.get("arguments")
            if not isinstance(arguments, dict):
                arguments = {}
            result = await self.call_parent(name, arguments)
            return _result(
                request_id,
                {
                    "content": result.get("content") or [],
                    "isError": bool(result.get("isError", False)),
                },
            )

        if method == "ping":
            return _result(request_id, {})

        return _error(request_id, f"Method not found: {sanitize_tool_name(method)}")

    async def call_parent(self, tool: str, args: dict[str, Any]) -> dict[str, Any]:
        """Forward one call over the socket and wait for its response."""
        writer = self._writer
        if writer is None or self._socket_closed:
            return _error_content("Tool handler is not connected")

        request_id = str(uuid.uuid4())
        self._outstanding.add(request_id)
        try:
            frame = {"id": request_id, "tool": tool, "args": args}
            try:
                writer.write((json.dumps(frame) + "\n").encode())
                await writer.drain()
            except (ConnectionError, OSError) as exc:
                logger.warning("%s: failed to forward '%s': %s", self.server_name, tool, exc)
                return _error_content(f"Failed to reach tool handler: {exc}")

            return await self._await_response(request_id, tool)
        finally:
            self._outstanding.discard(request_id)
            self._responses.pop(request_id, None)

    async def _await_response(self, request_id: str, tool: str) -> dict[str, Any]:
        loop = asyncio.get_running_loop()
        deadline = loop.time() + self.tool_timeout
        delay = _BACKOFF_START
        while True:
            response = self._responses.pop(request_id, None)
            if response is not None:
                return response
            if self._socket_closed:
                return _error_content("Tool handler connection closed")
            remaining = deadline - loop.time()
            if remaining <= 0:
                logger.warning(
                    "%s: no response for '%s' within %gs", self.server_name, tool, self.tool_timeout
                )
                return _error_content("No response from handler (timeout)")
            self._response_event.clear()
            with contextlib.suppress(TimeoutError):
                await asyncio.wait_for(self._response_event.wait(), min(delay, remaining))
            delay = min(delay * 2, _BACKOFF_MAX)


def _result(request_id: Any, result: dict[str, Any]) -> dict[str, Any]:
    return {"jsonrpc": "2.0", "id": request_id, "result": result}


def _error(request_id: Any, message: str) -> dict[str, Any]:
    return {
        "jsonrpc": "2.0",
        "id": request_id,
        "error": {"code": METHOD_NOT_FOUND, "message": message},
    }


async def _open_stdin() -> asyncio.StreamReader:
    loop = asyncio.get_running_loop()
    reader = asyncio.StreamReader(limit=_MAX_LINE_BYTES)
    await loop.connect_read_pipe(lambda: asyncio.StreamReaderProtocol(reader), sys.stdin)
    return reader


@click.command(context_settings={"help_option_names": ["-h", "--help"]})
@click.argument("socket_path")
@click.argument("server_name")
@click.argument("version")
@click.argument("tools_json")
def main(socket_path: str, server_name: str, version: str, tools_json: str) -> None:
    """Serve SDK tools to the Claude CLI over stdio."""
    logging.basicConfig(
        stream=sys.stderr,
        level=logging.DEBUG if os.environ.get("CLAUDE_AGENT_DEBUG") else logging.WARNING,
        format="sdk_runner %(levelname)s %(name)s: %(message)s",
    )

    try:
        tools = validate_args(socket_path, server_name, version, tools_json)
    except RunnerArgumentError as exc:
        raise click.UsageError(str(exc)) from exc

    runner = SDKRunner(socket_path, server_name, version, tools)
    if not asyncio.run(_serve(runner)):
        raise SystemExit(1)


async def _serve(runner: SDKRunner) -> bool:
    try:
        await runner.connect()
    except OSError as exc:
        click.echo(f"Error: cannot connect to {runner.socket_path}: {exc}", err=True)
        return False
    await runner.run()
    return True


if __name__ == "__main__":
    main()
