"""Tests for the Query message stream and its control channel."""

from __future__ import annotations

import asyncio
import json
import os
import stat
from pathlib import Path
from typing import Any
from unittest.mock import AsyncMock, MagicMock, patch

import pytest

from claude_agent import create_sdk_mcp_server, query, tool
from claude_agent.config.models import AgentOptions
from claude_agent.errors import CLINotFoundError
from claude_agent.mcp.sdk_server import SDKServer
from claude_agent.query import Query
from claude_agent.types.messages import AssistantMessage, ResultMessage, SystemMessage

# ------------------------------------------------------------------ #
# Helpers
# ------------------------------------------------------------------ #

SYSTEM_INIT = {"type": "system", "subtype": "init", "sessionId": "abc", "model": "sonnet"}
ASSISTANT = {
    "type": "assistant",
    "message": {"role": "assistant", "content": [{"type": "text", "text": "4"}]},
}
RESULT = {"type": "result", "subtype": "success", "result": "4", "isError": False}


def _line(obj: dict[str, Any]) -> bytes:
    return json.dumps(obj).encode() + b"\n"


class MockAsyncStdout:
    """Async-aware mock stdout that yields lines on demand.

    Lines can be added at any time via ``feed()``.  ``readline()``
    blocks until a line is available or ``close()`` is called.
    """

    def __init__(self) -> None:
        self._queue: asyncio.Queue[bytes] = asyncio.Queue()

    def feed(self, data: bytes) -> None:
        self._queue.put_nowait(data)

    def close(self) -> None:
        """Signal EOF."""
        self._queue.put_nowait(b"")

    async def readline(self) -> bytes:
        return await self._queue.get()


def _make_mock_process(
    lines: list[dict[str, Any] | bytes] | None = None,
    *,
    eof: bool = True,
    returncode: int = 0,
) -> tuple[MagicMock, MockAsyncStdout]:
    """Create a mock CLI process whose stdout replays *lines*."""
    stdout = MockAsyncStdout()
    for item in lines or []:
        stdout.feed(item if isinstance(item, bytes) else _line(item))
    if eof:
        stdout.close()

    proc = MagicMock()
    proc.pid = 4242
    proc.returncode = None
    proc.stdout = stdout
    proc.stderr = None

    stdin = MagicMock()
    stdin.write = MagicMock()
    stdin.drain = AsyncMock()
    stdin.close = MagicMock()
    stdin.is_closing = MagicMock(return_value=False)
    proc.stdin = stdin

    async def _wait() -> int:
        proc.returncode = returncode
        return returncode

    proc.wait = AsyncMock(side_effect=_wait)
    proc.terminate = MagicMock()
    proc.kill = MagicMock()
    return proc, stdout


def _written_frames(proc: MagicMock) -> list[dict[str, Any]]:
    return [json.loads(call.args[0].decode()) for call in proc.stdin.write.call_args_list]


@pytest.fixture
def cli_path(tmp_path: Path) -> str:
    path = tmp_path / "claude"
    path.write_text("#!/bin/sh\nexit 0\n")
    path.chmod(path.stat().st_mode | stat.S_IXUSR)
    return str(path)


@pytest.fixture
def options(cli_path: str) -> AgentOptions:
    return AgentOptions(cli_path=cli_path)


def _start(prompt: Any, options: AgentOptions, proc: MagicMock) -> tuple[Query, AsyncMock]:
    spawn = AsyncMock(return_value=proc)
    with patch("asyncio.create_subprocess_exec", spawn):
        q = Query(prompt, options)
    return q, spawn


# ------------------------------------------------------------------ #
# Blocking consumption
# ------------------------------------------------------------------ #


class TestPull:
    def test_messages_in_order(self, options: AgentOptions) -> None:
        proc, _ = _make_mock_process([SYSTEM_INIT, ASSISTANT, RESULT])
        q, _ = _start("What is 2+2?", options, proc)
        try:
            first = q.pull(timeout=5)
            second = q.pull(timeout=5)
            third = q.pull(timeout=5)
            assert isinstance(first, SystemMessage)
            assert isinstance(second, AssistantMessage)
            assert second.text == "4"
            assert isinstance(third, ResultMessage)
            assert third.result == "4"

            assert q.pull(timeout=5) is None
            assert q.is_finished
            assert q.error is None
            assert q.session_id == "abc"
        finally:
            q.close()

    def test_iteration(self, options: AgentOptions) -> None:
        proc, _ = _make_mock_process([SYSTEM_INIT, ASSISTANT, RESULT])
        q, _ = _start("What is 2+2?", options, proc)
        with q:
            types = [message.type for message in q]
        assert types == ["system", "assistant", "result"]

    def test_session_id_captured_once(self, options: AgentOptions) -> None:
        second_init = {**SYSTEM_INIT, "sessionId": "other"}
        proc, _ = _make_mock_process([SYSTEM_INIT, second_init, RESULT])
        q, _ = _start("hi", options, proc)
        with q:
            list(q)
        assert q.session_id == "abc"

    def test_print_mode_spawn(self, options: AgentOptions, cli_path: str) -> None:
        proc, _ = _make_mock_process([RESULT])
        q, spawn = _start("What is 2+2?", options, proc)
        with q:
            argv = list(spawn.call_args.args)
            assert argv[0] == cli_path
            assert argv[-3:] == ["--print", "--", "What is 2+2?"]
            assert spawn.call_args.kwargs["env"]["CLAUDE_AGENT_SDK"] == "python"
            proc.stdin.close.assert_called_once()
            assert q.pid == 4242

    def test_streaming_mode_keeps_stdin_open(self, options: AgentOptions) -> None:
        proc, _ = _make_mock_process(eof=False)
        q, spawn = _start(None, options, proc)
        try:
            assert spawn.call_args.args[-2:] == ("--input-format", "stream-json")
            proc.stdin.close.assert_not_called()
        finally:
            q.close()

    def test_timeout_finishes_stream(self, options: AgentOptions) -> None:
        proc, _ = _make_mock_process(eof=False)
        q, _ = _start("hi", options, proc)
        try:
            assert q.pull(timeout=0.2) is None
            assert q.is_finished
            assert q.error == "Query timed out after 0.2 seconds"
            assert q.pull(timeout=5) is None
        finally:
            q.close()
        proc.terminate.assert_called_once()

    def test_stream_stays_ended_after_timeout(self, options: AgentOptions) -> None:
        proc, stdout = _make_mock_process(eof=False)
        q, _ = _start("hi", options, proc)
        try:
            assert q.pull(timeout=0.2) is None
            stdout.feed(_line(ASSISTANT))
            stdout.feed(_line(RESULT))
            q.loop.run_until_complete(asyncio.sleep(0.05))
            assert q.pull(timeout=0.2) is None
            assert list(q) == []
        finally:
            q.close()

    def test_default_timeout_from_options(self, cli_path: str) -> None:
        proc, _ = _make_mock_process(eof=False)
        q, _ = _start("hi", AgentOptions(cli_path=cli_path, query_timeout=0.2), proc)
        try:
            assert q.pull() is None
            assert q.error == "Query timed out after 0.2 seconds"
        finally:
            q.close()

    def test_nonzero_exit_sets_error(self, options: AgentOptions) -> None:
        proc, _ = _make_mock_process([ASSISTANT], returncode=1)
        q, _ = _start("hi", options, proc)
        with q:
            assert isinstance(q.pull(timeout=5), AssistantMessage)
            assert q.pull(timeout=5) is None
        assert q.error == "Claude CLI exited with code 1"

    def test_spawn_failure_sets_error(self, options: AgentOptions) -> None:
        with patch("asyncio.create_subprocess_exec", AsyncMock(side_effect=OSError("boom"))):
            q = Query("hi", options)
        with q:
            assert q.is_finished
            assert q.pull(timeout=5) is None
        assert q.error == "Claude CLI exception: boom"

    def test_missing_cli_raises(self) -> None:
        with pytest.raises(CLINotFoundError):
            Query("hi", AgentOptions(cli_path="/nonexistent/claude"))

    def test_untyped_and_malformed_lines_dropped(self, options: AgentOptions) -> None:
        proc, _ = _make_mock_process(
            [
                b'{"foo": 1}\n',
                b"not json\n",
                b"[1, 2, 3]\n",
                b'{"type": "result", "num_turns": "many"}\n',
                RESULT,
            ]
        )
        q, _ = _start("hi", options, proc)
        with q:
            messages = list(q)
        assert len(messages) == 1
        assert isinstance(messages[0], ResultMessage)
        assert q.error is None

    def test_json_split_across_lines(self, options: AgentOptions) -> None:
        raw = json.dumps(RESULT)
        split = raw.index('"subtype"')
        proc, _ = _make_mock_process([raw[:split].encode() + b"\n", raw[split:].encode() + b"\n"])
        q, _ = _start("hi", options, proc)
        with q:
            messages = list(q)
        assert [m.type for m in messages] == ["result"]

    def test_unknown_message_type_delivered(self, options: AgentOptions) -> None:
        proc, _ = _make_mock_process([{"type": "stream_event", "event": {}}, RESULT])
        q, _ = _start("hi", options, proc)
        with q:
            assert [m.type for m in q] == ["stream_event", "result"]

    def test_query_function(self, options: AgentOptions) -> None:
        proc, _ = _make_mock_process([RESULT])
        with patch("asyncio.create_subprocess_exec", AsyncMock(return_value=proc)):
            q = query("hi", options)
        with q:
            assert isinstance(q.pull(timeout=5), ResultMessage)


# ------------------------------------------------------------------ #
# Non-blocking consumption
# ------------------------------------------------------------------ #


class TestPullAsync:
    def test_resolved_immediately_when_queued(self, options: AgentOptions) -> None:
        proc, _ = _make_mock_process([RESULT], eof=False)
        q, _ = _start("hi", options, proc)
        try:
            # Let the reader queue the message.
            q.loop.run_until_complete(asyncio.sleep(0.05))
            future = q.pull_async()
            assert future.done()
            assert isinstance(future.result(), ResultMessage)
        finally:
            q.close()

    def test_pending_futures_resolve_fifo(self, options: AgentOptions) -> None:
        proc, stdout = _make_mock_process(eof=False)
        q, _ = _start(None, options, proc)
        try:
            first = q.pull_async()
            second = q.pull_async()
            assert not first.done()
            assert not second.done()

            stdout.feed(_line(SYSTEM_INIT))
            stdout.feed(_line(RESULT))

            async def _both() -> tuple[Any, Any]:
                return await first, await second

            a, b = q.loop.run_until_complete(asyncio.wait_for(_both(), 5))
            assert isinstance(a, SystemMessage)
            assert isinstance(b, ResultMessage)
        finally:
            q.close()

    def test_cancelled_future_skipped(self, options: AgentOptions) -> None:
        proc, stdout = _make_mock_process(eof=False)
        q, _ = _start(None, options, proc)
        try:
            abandoned = q.pull_async()
            wanted = q.pull_async()
            abandoned.cancel()

            stdout.feed(_line(RESULT))
            message = q.loop.run_until_complete(asyncio.wait_for(wanted, 5))
            assert isinstance(message, ResultMessage)
        finally:
            q.close()

    def test_pending_futures_resolved_none_on_exit(self, options: AgentOptions) -> None:
        proc, stdout = _make_mock_process(eof=False)
        q, _ = _start(None, options, proc)
        try:
            futures = [q.pull_async(), q.pull_async()]
            stdout.close()

            async def _all() -> list[Any]:
                return [await f for f in futures]

            assert q.loop.run_until_complete(asyncio.wait_for(_all(), 5)) == [None, None]
            assert q.is_finished
            assert q.pull_async().result() is None
        finally:
            q.close()


class TestRunningLoop:
    async def test_async_iteration(self, options: AgentOptions) -> None:
        proc, _ = _make_mock_process([SYSTEM_INIT, ASSISTANT, RESULT])
        with patch("asyncio.create_subprocess_exec", AsyncMock(return_value=proc)):
            async with Query("hi", options, loop=asyncio.get_running_loop()) as q:
                messages = [message async for message in q]
        assert [m.type for m in messages] == ["system", "assistant", "result"]
        assert q.session_id == "abc"
        assert q.is_finished

    async def test_pull_rejected_inside_running_loop(self, options: AgentOptions) -> None:
        proc, _ = _make_mock_process([RESULT])
        with patch("asyncio.create_subprocess_exec", AsyncMock(return_value=proc)):
            q = Query("hi", options, loop=asyncio.get_running_loop())
            try:
                with pytest.raises(RuntimeError, match="pull_async"):
                    q.pull()
            finally:
                await q.aclose()

    async def test_control_before_spawn_is_delivered(self, options: AgentOptions) -> None:
        proc, stdout = _make_mock_process(eof=False)
        with patch("asyncio.create_subprocess_exec", AsyncMock(return_value=proc)):
            q = Query(None, options, loop=asyncio.get_running_loop())
            assert q.send_user_message("hello")
            await asyncio.sleep(0.05)
        try:
            assert _written_frames(proc) == [
                {"type": "user", "message": {"role": "user", "content": "hello"}}
            ]
        finally:
            stdout.close()
            await q.aclose()

    async def test_async_iteration_timeout(self, cli_path: str) -> None:
        proc, _ = _make_mock_process(eof=False)
        options = AgentOptions(cli_path=cli_path, query_timeout=0.2)
        with patch("asyncio.create_subprocess_exec", AsyncMock(return_value=proc)):
            q = Query("hi", options, loop=asyncio.get_running_loop())
            messages = [message async for message in q]
            await q.aclose()
        assert messages == []
        assert q.error == "Query timed out after 0.2 seconds"

    async def test_output_after_timeout_is_dropped(self, cli_path: str) -> None:
        proc, stdout = _make_mock_process(eof=False)
        options = AgentOptions(cli_path=cli_path, query_timeout=0.2)
        with patch("asyncio.create_subprocess_exec", AsyncMock(return_value=proc)):
            q = Query("hi", options, loop=asyncio.get_running_loop())
            try:
                assert [message async for message in q] == []
                assert q.is_finished

                stdout.feed(_line(SYSTEM_INIT))
                stdout.feed(_line(RESULT))
                await asyncio.sleep(0.05)

                assert await q.pull_async() is None
                assert q.session_id is None
            finally:
                stdout.close()
                await q.aclose()
        assert q.error == "Query timed out after 0.2 seconds"


# ------------------------------------------------------------------ #
# Control channel
# ------------------------------------------------------------------ #


class TestControlChannel:
    def test_frames_written(self, options: AgentOptions) -> None:
        proc, _ = _make_mock_process(eof=False)
        q, _ = _start(None, options, proc)
        try:
            assert q.send_user_message("next question")
            assert q.interrupt()
            assert q.set_permission_mode("plan")
            assert q.respond_to_permission("toolu_1", {"behavior": "allow"})
            assert q.rewind_files()
        finally:
            q.close()

        assert _written_frames(proc) == [
            {"type": "user", "message": {"role": "user", "content": "next question"}},
            {"type": "interrupt"},
            {"type": "set_permission_mode", "permission_mode": "plan"},
            {
                "type": "permission_response",
                "tool_use_id": "toolu_1",
                "response": {"behavior": "allow"},
            },
            {"type": "rewind_files"},
        ]

    def test_noop_after_finish(self, options: AgentOptions) -> None:
        proc, _ = _make_mock_process([RESULT])
        q, _ = _start(None, options, proc)
        with q:
            list(q)
            assert not q.interrupt()
            assert not q.send_user_message("too late")
        proc.stdin.write.assert_not_called()

    def test_noop_when_stdin_closing(self, options: AgentOptions) -> None:
        proc, _ = _make_mock_process(eof=False)
        proc.stdin.is_closing.return_value = True
        q, _ = _start(None, options, proc)
        try:
            assert not q.interrupt()
        finally:
            q.close()
        proc.stdin.write.assert_not_called()

    def test_write_failure_recorded(self, options: AgentOptions) -> None:
        proc, _ = _make_mock_process(eof=False)
        proc.stdin.write.side_effect = BrokenPipeError("pipe closed")
        q, _ = _start(None, options, proc)
        try:
            assert not q.interrupt()
            assert q.error == "Failed to write to Claude CLI: pipe closed"
            assert not q.is_finished
        finally:
            q.close()

    def test_first_error_wins(self, options: AgentOptions) -> None:
        proc, _ = _make_mock_process(returncode=2, eof=False)
        proc.stdin.write.side_effect = BrokenPipeError("pipe closed")
        q, stdout = _start(None, options, proc)
        try:
            q.interrupt()
            stdout.close()
            assert q.pull(timeout=5) is None
            assert q.error == "Failed to write to Claude CLI: pipe closed"
        finally:
            q.close()


class TestStreamingPrompt:
    def test_items_written_then_stdin_closed(self, options: AgentOptions) -> None:
        async def prompts() -> Any:
            yield "first"
            yield {"type": "user", "message": {"role": "user", "content": "second"}}

        proc, stdout = _make_mock_process(eof=False)
        q, _ = _start(prompts(), options, proc)
        try:
            q.loop.run_until_complete(asyncio.sleep(0.05))
            assert _written_frames(proc) == [
                {"type": "user", "message": {"role": "user", "content": "first"}},
                {"type": "user", "message": {"role": "user", "content": "second"}},
            ]
            proc.stdin.close.assert_called_once()
        finally:
            stdout.close()
            q.close()


# ------------------------------------------------------------------ #
# SDK servers owned by the query
# ------------------------------------------------------------------ #


class TestSdkServers:
    def test_descriptor_passed_and_socket_released(self, cli_path: str) -> None:
        add = tool("add", "Add", handler=lambda args: {"content": []})
        options = AgentOptions(
            cli_path=cli_path,
            mcp_servers={"calc": create_sdk_mcp_server("calc", [add])},
            tool_timeout=120,
            query_timeout=30,
        )
        proc, stdout = _make_mock_process(eof=False)
        q, spawn = _start("hi", options, proc)
        try:
            argv = list(spawn.call_args.args)
            config = json.loads(argv[argv.index("--mcp-config") + 1])
            calc = config["mcpServers"]["calc"]
            assert calc["type"] == "stdio"
            assert calc["args"][:3] == ["-m", "claude_agent.mcp.sdk_runner", "--"]
            # The shorter of the two timeouts bounds forwarded calls.
            assert calc["env"]["CLAUDE_AGENT_TOOL_TIMEOUT"] == "30"

            socket_path = calc["args"][3]
            assert os.path.exists(socket_path)

            stdout.close()
            assert q.pull(timeout=5) is None
            assert not os.path.exists(socket_path)
        finally:
            q.close()

    def test_servers_stopped_when_cli_missing(self, tmp_path: Path) -> None:
        options = AgentOptions(
            cli_path=str(tmp_path / "missing"),
            mcp_servers={"calc": create_sdk_mcp_server("calc")},
        )
        original_stop = SDKServer.stop
        with patch.object(SDKServer, "stop", autospec=True, side_effect=original_stop) as stop:
            with pytest.raises(CLINotFoundError):
                Query("hi", options)
        stop.assert_called()
        server = stop.call_args.args[0]
        assert not os.path.exists(server.socket_path)
