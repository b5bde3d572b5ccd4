"""Python client for the Claude agent CLI."""

from __future__ import annotations

import asyncio
from collections.abc import Callable
from typing import Any

from claude_agent.client import Client
from claude_agent.config.models import (
    AgentOptions,
    HTTPServerConfig,
    SSEServerConfig,
    StdioServerConfig,
    SubagentDefinition,
    SystemPromptPreset,
)
from claude_agent.errors import ClaudeAgentError, CLINotFoundError, ConfigError
from claude_agent.mcp.tools import SdkMcpServer, ToolDefinition, ToolHandler
from claude_agent.query import Prompt, Query
from claude_agent.types.messages import (
    AssistantMessage,
    BaseMessage,
    Message,
    ResultMessage,
    SystemMessage,
    TextBlock,
    ThinkingBlock,
    ToolResultBlock,
    ToolUseBlock,
    UserMessage,
)

__version__ = "0.1.0"


def query(
    prompt: Prompt,
    options: AgentOptions | None = None,
    loop: asyncio.AbstractEventLoop | None = None,
) -> Query:
    """Start a query and return its message stream.

    Example::

        for message in query("What is 2+2?"):
            if isinstance(message, AssistantMessage):
                print(message.text)
    """
    return Query(prompt, options, loop=loop)


def tool(
    name: str,
    description: str = "",
    input_schema: dict[str, Any] | None = None,
    handler: ToolHandler | None = None,
) -> ToolDefinition | Callable[[ToolHandler], ToolDefinition]:
    """Define an SDK tool.

    Called with *handler* it returns the definition directly; without one
    it returns a decorator::

        @tool("add", "Add two numbers", {"type": "object", "properties": {...}})
        def add(args):
            return {"content": [{"type": "text", "text": str(args["a"] + args["b"])}]}
    """
    schema = input_schema if input_schema is not None else {"type": "object", "properties": {}}

    def wrap(func: ToolHandler) -> ToolDefinition:
        return ToolDefinition(
            name=name,
            description=description,
            input_schema=schema,
            handler=func,
        )

    if handler is not None:
        return wrap(handler)
    return wrap


def create_sdk_mcp_server(
    name: str,
    tools: list[ToolDefinition] | None = None,
    version: str = "1.0.0",
) -> SdkMcpServer:
    """Group tools into an in-process MCP server for ``AgentOptions.mcp_servers``."""
    return SdkMcpServer(name=name, version=version, tools=tools or [])


__all__ = [
    "AgentOptions",
    "AssistantMessage",
    "BaseMessage",
    "CLINotFoundError",
    "ClaudeAgentError",
    "Client",
    "ConfigError",
    "HTTPServerConfig",
    "Message",
    "Query",
    "ResultMessage",
    "SSEServerConfig",
    "SdkMcpServer",
    "StdioServerConfig",
    "SubagentDefinition",
    "SystemMessage",
    "SystemPromptPreset",
    "TextBlock",
    "ThinkingBlock",
    "ToolDefinition",
    "ToolResultBlock",
    "ToolUseBlock",
    "UserMessage",
    "__version__",
    "create_sdk_mcp_server",
    "query",
    "tool",
]
