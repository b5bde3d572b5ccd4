"""SDK tool definitions and the in-process MCP server that groups them."""

from __future__ import annotations

from collections.abc import Callable
from typing import Any, Literal

from pydantic import BaseModel, ConfigDict, Field

#: Server names travel to the runner as argv and must pass its validation.
SERVER_NAME_PATTERN = r"^[a-zA-Z0-9_-]{1,100}$"

#: Version strings follow the same restriction as the runner applies.
VERSION_PATTERN = r"^[a-zA-Z0-9._-]{1,50}$"

ToolHandler = Callable[[dict[str, Any]], Any]


class ToolDefinition(BaseModel):
    """A locally executed tool exposed to the agent through an SDK server.

    The handler receives the tool arguments as a single ``dict`` and
    returns ``{"content": [...], "is_error": bool}``.  It may be a plain
    function or a coroutine function.  Handlers are never serialized;
    only the manifest (name, description, schema) leaves the process.
    """

    model_config = ConfigDict(frozen=True)

    name: str = Field(min_length=1, description="Tool name, unique per server")
    description: str = Field(default="", description="Human-readable description")
    input_schema: dict[str, Any] = Field(
        default_factory=lambda: {"type": "object", "properties": {}},
        description="JSON schema for the tool arguments",
    )
    handler: ToolHandler = Field(exclude=True, description="Local implementation")

    def manifest(self) -> dict[str, Any]:
        """Return the serializable part of the definition."""
        return {
            "name": self.name,
            "description": self.description,
            "input_schema": self.input_schema,
        }


class SdkMcpServer(BaseModel):
    """Configuration for an in-process (``type: sdk``) MCP server."""

    model_config = ConfigDict(frozen=True, extra="forbid")

    type: Literal["sdk"] = "sdk"
    name: str = Field(pattern=SERVER_NAME_PATTERN, description="Server name")
    version: str = Field(default="1.0.0", pattern=VERSION_PATTERN)
    tools: list[ToolDefinition] = Field(default_factory=list)

    def get_tool(self, name: str) -> ToolDefinition | None:
        """Look up a tool by exact name."""
        for tool in self.tools:
            if tool.name == name:
                return tool
        return None

    def tool_names(self) -> list[str]:
        """Fully qualified names for ``allowed_tools`` (``mcp__<server>__<tool>``)."""
        return [f"mcp__{self.name}__{tool.name}" for tool in self.tools]

    def manifests(self) -> list[dict[str, Any]]:
        return [tool.manifest() for tool in self.tools]
