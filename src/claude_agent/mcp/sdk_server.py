"""Unix-socket bridge that executes SDK tool calls in the host process.

The Claude CLI cannot call Python functions directly.  For every ``sdk``
MCP server the query starts an :class:`SDKServer`, which listens on a
private Unix socket and hands the CLI a stdio descriptor that launches
:mod:`claude_agent.mcp.sdk_runner`.  The runner speaks MCP to the CLI and
forwards each ``tools/call`` here as one JSON line::

    request   {"id": ..., "tool": "<name>", "args": {...}}
    response  {"id": ..., "content": [...], "isError": false}
"""

from __future__ import annotations

import asyncio
import contextlib
import inspect
import json
import logging
import os
import shutil
import socket
import sys
import tempfile
from collections.abc import Mapping
from typing import Any

from claude_agent.mcp.tools import SdkMcpServer
from claude_agent.transport.codec import LineCodec

logger = logging.getLogger(__name__)

#: Module executed by the CLI to run the stdio side of the bridge.
RUNNER_MODULE = "claude_agent.mcp.sdk_runner"

#: Maximum bytes per request line read from the runner (10 MB).
_MAX_LINE_BYTES = 10_485_760

#: At most this many ``sys.path`` entries are forwarded to the runner.
_MAX_PATH_ENTRIES = 20

#: Longest tool name echoed back in an error message.
_MAX_NAME_CHARS = 100

_SOCKET_NAME = "sdk.sock"


def sanitize_tool_name(name: object) -> str:
    """Truncate and strip control characters for use in error text."""
    if name is None:
        return "<undefined>"
    text = str(name)[:_MAX_NAME_CHARS]
    return "".join(ch for ch in text if ch.isprintable())


def error_result(text: str) -> dict[str, Any]:
    return {"content": [{"type": "text", "text": text}], "is_error": True}


def trusted_python_path() -> str:
    """Join the importable ``sys.path`` entries the runner may rely on."""
    trusted: list[str] = []
    for entry in sys.path[:_MAX_PATH_ENTRIES]:
        if not entry or not os.path.isabs(entry) or not os.path.isdir(entry):
            continue
        real = os.path.realpath(entry)
        if not os.path.isabs(real) or not os.path.isdir(real):
            continue
        if ".." in real.split(os.sep):
            continue
        trusted.append(entry)
    return os.pathsep.join(trusted)


class SDKServer:
    """Socket listener that runs the tools of one :class:`SdkMcpServer`.

    The server holds a read-only reference to the tool definitions; the
    owning query holds the server itself and stops it when the stream
    ends.
    """

    def __init__(
        self,
        server: SdkMcpServer,
        loop: asyncio.AbstractEventLoop,
    ) -> None:
        self.server = server
        self._loop = loop
        self._temp_dir = tempfile.mkdtemp(prefix="claude-agent-sdk-")
        self._socket_path = os.path.join(self._temp_dir, _SOCKET_NAME)
        self._sock: socket.socket | None = None
        self._server: asyncio.Server | None = None
        self._serve_task: asyncio.Task[None] | None = None
        self._writers: set[asyncio.StreamWriter] = set()
        self._stopped = False

    @property
    def socket_path(self) -> str:
        return self._socket_path

    @property
    def name(self) -> str:
        return self.server.name

    @property
    def is_running(self) -> bool:
        return self._sock is not None and not self._stopped

    # ------------------------------------------------------------------ #
    # Lifecycle
    # ------------------------------------------------------------------ #

    def start(self) -> SDKServer:
        """Bind the socket and begin accepting runner connections.

        The socket is bound immediately; connections are served once the
        event loop runs.
        """
        if self._stopped:
            msg = f"SDK server '{self.name}' has been stopped"
            raise RuntimeError(msg)
        if self._sock is not None:
            return self

        with contextlib.suppress(FileNotFoundError):
            os.unlink(self._socket_path)

        sock = socket.socket(socket.AF_UNIX, socket.SOCK_STREAM)
        try:
            sock.bind(self._socket_path)
            os.chmod(self._socket_path, 0o600)
            sock.listen()
            sock.setblocking(False)
        except OSError:
            sock.close()
            raise
        self._sock = sock
        self._serve_task = self._loop.create_task(self._serve(sock))
        logger.debug("SDK server '%s' listening on %s", self.name, self._socket_path)
        return self

    async def _serve(self, sock: socket.socket) -> None:
        self._server = await asyncio.start_unix_server(
            self._handle_connection,
            sock=sock,
            limit=_MAX_LINE_BYTES,
        )

    def stop(self) -> None:
        """Stop listening and remove the socket file and its directory.

        Safe to call more than once.
        """
        if self._serve_task is not None and not self._serve_task.done():
            self._serve_task.cancel()
        self._serve_task = None

        if self._server is not None:
            self._server.close()
            self._server = None
        elif self._sock is not None:
            self._sock.close()
        self._sock = None

        for writer in list(self._writers):
            with contextlib.suppress(Exception):
                writer.close()
        self._writers.clear()

        with contextlib.suppress(FileNotFoundError):
            os.unlink(self._socket_path)
        shutil.rmtree(self._temp_dir, ignore_errors=True)

        if not self._stopped:
            logger.debug("SDK server '%s' stopped", self.name)
        self._stopped = True

    def __enter__(self) -> SDKServer:
        return self.start()

    def __exit__(self, *exc_info: object) -> None:
        self.stop()

    def __del__(self) -> None:
        with contextlib.suppress(Exception):
            self.stop()

    # ------------------------------------------------------------------ #
    # Descriptor
    # ------------------------------------------------------------------ #

    def to_stdio_config(self, tool_timeout: float | None = None) -> dict[str, Any]:
        """Stdio MCP server descriptor telling the CLI how to reach us."""
        tools_json = json.dumps(self.server.manifests(), separators=(",", ":"))
        env = {"PYTHONPATH": trusted_python_path()}
        if tool_timeout is not None:
            env["CLAUDE_AGENT_TOOL_TIMEOUT"] = str(max(1, int(tool_timeout)))
        return {
            "type": "stdio",
            "command": sys.executable,
            "args": [
                "-m",
                RUNNER_MODULE,
                "--",
                self._socket_path,
                self.server.name,
                self.server.version,
                tools_json,
            ],
            "env": env,
        }

    # ------------------------------------------------------------------ #
    # Request handling
    # ------------------------------------------------------------------ #

    async def _handle_connection(
        self,
        reader: asyncio.StreamReader,
        writer: asyncio.StreamWriter,
    ) -> None:
        self._writers.add(writer)
        codec = LineCodec()
        try:
            while True:
                try:
                    line = await reader.readline()
                except ValueError:
                    logger.warning("%s: request line exceeded buffer limit", self.name)
                    continue
                if not line:
                    break
                text = line.decode(errors="replace").strip()
                if not text:
                    continue
                for response in await self.handle_line(text, codec):
                    writer.write(codec.encode(response).encode())
                await writer.drain()
        except asyncio.CancelledError:
            raise
        except (ConnectionResetError, BrokenPipeError) as exc:
            logger.debug("%s: runner connection lost: %s", self.name, exc)
        finally:
            self._writers.discard(writer)
            with contextlib.suppress(Exception):
                writer.close()

    async def handle_line(self, line: str, codec: LineCodec | None = None) -> list[dict[str, Any]]:
        """Decode one request line and return the responses to send."""
        codec = codec or LineCodec()
        requests = codec.decode(line)
        if not requests and not codec.pending:
            logger.debug("%s: failed to parse request line", self.name)
            return [
                {
                    "id": None,
                    "content": [{"type": "text", "text": "Invalid JSON request"}],
                    "isError": True,
                }
            ]

        responses = []
        for request in requests:
            if not isinstance(request, dict):
                responses.append(
                    {
                        "id": None,
                        "content": [{"type": "text", "text": "Invalid request"}],
                        "isError": True,
                    }
                )
                continue
            tool_name = request.get("tool")
            result = await self.call_tool(tool_name, request.get("args") or {})
            response = {
                "id": request.get("id"),
                "content": result.get("content") or [],
                "isError": bool(result.get("is_error", result.get("isError", False))),
            }
            try:
                codec.encode(response)
            except (TypeError, ValueError) as exc:
                name = sanitize_tool_name(tool_name)
                logger.warning("%s: tool '%s' returned unserializable content: %s", self.name, name, exc)
                failed = error_result(f"Tool '{name}' returned a non-JSON-serializable result")
                response = {"id": request.get("id"), "content": failed["content"], "isError": True}
            responses.append(response)
        return responses

    async def call_tool(self, tool_name: object, args: dict[str, Any]) -> Mapping[str, Any]:
        """Run the named tool; failures are returned as error results."""
        tool = self.server.get_tool(tool_name) if isinstance(tool_name, str) else None
        if tool is None:
            return error_result(f"Unknown tool: {sanitize_tool_name(tool_name)}")

        logger.debug("%s: executing tool '%s'", self.name, tool.name)
        try:
            result = tool.handler(args)
            if inspect.isawaitable(result):
                result = await result
        except Exception as exc:
            logger.warning("%s: tool '%s' raised: %s", self.name, tool.name, exc)
            return error_result(f"Tool '{tool.name}' failed: {exc}")

        if not isinstance(result, Mapping):
            return error_result("Invalid handler result format")
        return result
