"""Persistent multi-turn session with the Claude CLI."""

from __future__ import annotations

import asyncio
import logging
from typing import Any

from claude_agent.config.models import AgentOptions
from claude_agent.errors import ClaudeAgentError
from claude_agent.query import Query
from claude_agent.types.messages import Message, ResultMessage, SystemMessage

logger = logging.getLogger(__name__)


class Client:
    """Conversation over one streaming-input :class:`Query`.

    Unlike :func:`claude_agent.query`, the CLI keeps running between turns:
    every :meth:`send` adds a user turn to the same session and
    :meth:`receive_until_result` collects the reply.

    Example::

        with Client(options) as client:
            client.connect("List the files here")
            for message in client.receive_until_result():
                ...
            client.send("Now summarise README.md")
            reply = client.receive_until_result()
    """

    def __init__(
        self,
        options: AgentOptions | None = None,
        loop: asyncio.AbstractEventLoop | None = None,
    ) -> None:
        self.options = options or AgentOptions()
        self._loop = loop
        self._query: Query | None = None
        self._session_id: str | None = None

    @property
    def is_connected(self) -> bool:
        return self._query is not None

    @property
    def session_id(self) -> str | None:
        """Session id once known (from ``resume`` or the init message)."""
        if self._session_id is not None:
            return self._session_id
        return self._query.session_id if self._query is not None else None

    @property
    def query(self) -> Query | None:
        return self._query

    def _require_query(self) -> Query:
        if self._query is None:
            msg = "Not connected"
            raise ClaudeAgentError(msg)
        return self._query

    # ------------------------------------------------------------------ #
    # Session lifecycle
    # ------------------------------------------------------------------ #

    def connect(self, prompt: Any = None) -> Client:
        """Start the CLI, optionally sending the first user turn.

        Raises:
            ClaudeAgentError: If already connected.
            CLINotFoundError: If the ``claude`` executable cannot be found.
        """
        return self._open(self.options, prompt)

    def resume(self, session_id: str, prompt: Any = None) -> Client:
        """Reconnect to an earlier session by id."""
        options = self.options.model_copy(update={"resume": session_id})
        self._open(options, prompt)
        self._session_id = session_id
        return self

    def _open(self, options: AgentOptions, prompt: Any) -> Client:
        if self._query is not None:
            msg = "Already connected"
            raise ClaudeAgentError(msg)
        self._session_id = None
        self._query = Query(None, options, loop=self._loop)
        logger.debug("Client connected (resume=%s)", options.resume)
        if prompt is not None:
            self._query.send_user_message(prompt)
        return self

    def disconnect(self) -> None:
        """Stop the CLI and end the session."""
        query, self._query = self._query, None
        if query is not None:
            query.close()

    async def adisconnect(self) -> None:
        query, self._query = self._query, None
        if query is not None:
            await query.aclose()

    def __enter__(self) -> Client:
        return self

    def __exit__(self, *exc_info: object) -> None:
        self.disconnect()

    async def __aenter__(self) -> Client:
        return self

    async def __aexit__(self, *exc_info: object) -> None:
        await self.adisconnect()

    # ------------------------------------------------------------------ #
    # Conversation
    # ------------------------------------------------------------------ #

    def send(self, content: Any) -> Client:
        """Send a follow-up user turn."""
        self._require_query().send_user_message(content)
        return self

    def interrupt(self) -> bool:
        """Ask the CLI to stop the current turn."""
        return self._require_query().interrupt()

    def receive(self, timeout: float | None = None) -> Message | None:
        """Blocking receive; ``None`` once the session has ended."""
        message = self._require_query().pull(timeout)
        self._capture_session(message)
        return message

    def receive_async(self) -> asyncio.Future[Message | None]:
        query = self._require_query()
        future = query.pull_async()
        future.add_done_callback(self._capture_session_from_future)
        return future

    def receive_until_result(self, timeout: float | None = None) -> list[Message]:
        """Collect messages up to and including the next result message."""
        messages: list[Message] = []
        while (message := self.receive(timeout)) is not None:
            messages.append(message)
            if isinstance(message, ResultMessage):
                break
        return messages

    @property
    def error(self) -> str | None:
        return self._query.error if self._query is not None else None

    def _capture_session(self, message: Message | None) -> None:
        if (
            self._session_id is None
            and isinstance(message, SystemMessage)
            and message.subtype == "init"
        ):
            self._session_id = message.get_session_id()

    def _capture_session_from_future(self, future: asyncio.Future[Message | None]) -> None:
        if not future.cancelled():
            self._capture_session(future.result())
