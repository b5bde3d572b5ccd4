"""Pydantic v2 models for agent query options."""

from __future__ import annotations

from typing import Annotated, Any, Literal

from pydantic import BaseModel, ConfigDict, Discriminator, Field, Tag, field_validator

from claude_agent.mcp.tools import SdkMcpServer

#: Hard ceiling for any per-query timeout (seconds).
MAX_QUERY_TIMEOUT = 3600.0

#: Default seconds to wait for the next message before giving up.
DEFAULT_QUERY_TIMEOUT = 600.0

#: Default seconds the runner waits for a forwarded tool call.
DEFAULT_TOOL_TIMEOUT = 60.0

PermissionMode = Literal["default", "acceptEdits", "bypassPermissions", "plan"]
SettingSource = Literal["user", "project", "local"]


class StdioServerConfig(BaseModel):
    """An external MCP server launched as a subprocess by the CLI."""

    model_config = ConfigDict(frozen=True, extra="forbid")

    type: Literal["stdio"] = "stdio"
    command: str = Field(min_length=1, description="Executable to launch")
    args: list[str] = Field(default_factory=list)
    env: dict[str, str] = Field(default_factory=dict)


class SSEServerConfig(BaseModel):
    """A remote MCP server reached over Server-Sent Events."""

    model_config = ConfigDict(frozen=True, extra="forbid")

    type: Literal["sse"] = "sse"
    url: str = Field(min_length=1)
    headers: dict[str, str] = Field(default_factory=dict)


class HTTPServerConfig(BaseModel):
    """A remote MCP server reached over streamable HTTP."""

    model_config = ConfigDict(frozen=True, extra="forbid")

    type: Literal["http"] = "http"
    url: str = Field(min_length=1)
    headers: dict[str, str] = Field(default_factory=dict)


def _server_discriminator(v: Any) -> str:
    """Extract the server type from raw data or a model instance."""
    if isinstance(v, dict):
        return str(v.get("type", "stdio"))
    return str(getattr(v, "type", ""))


McpServerConfig = Annotated[
    Annotated[SdkMcpServer, Tag("sdk")]
    | Annotated[StdioServerConfig, Tag("stdio")]
    | Annotated[SSEServerConfig, Tag("sse")]
    | Annotated[HTTPServerConfig, Tag("http")],
    Discriminator(_server_discriminator),
]
"""Discriminated union of all MCP server configuration types."""


class SubagentDefinition(BaseModel):
    """A named sub-agent the CLI may delegate to."""

    model_config = ConfigDict(frozen=True, extra="forbid")

    description: str = Field(description="When the agent should be used")
    prompt: str = Field(description="System prompt for the sub-agent")
    tools: list[str] | None = Field(default=None, description="Allowed tool names")
    model: Literal["sonnet", "opus", "haiku", "inherit"] | None = None


class SystemPromptPreset(BaseModel):
    """Use a CLI preset system prompt, optionally with appended text."""

    model_config = ConfigDict(frozen=True, extra="forbid")

    type: Literal["preset"] = "preset"
    preset: str = Field(min_length=1)
    append: str | None = None


class AgentOptions(BaseModel):
    """Immutable configuration snapshot for one query."""

    model_config = ConfigDict(frozen=True, extra="forbid")

    allowed_tools: list[str] = Field(default_factory=list)
    disallowed_tools: list[str] = Field(default_factory=list)
    model: str | None = Field(default=None, description="Model alias or identifier")
    max_turns: int | None = Field(default=None, ge=1)
    permission_mode: PermissionMode = "default"
    resume: str | None = Field(default=None, description="Session id to resume")
    fork_session: bool = False
    system_prompt: str | SystemPromptPreset | None = None
    mcp_servers: dict[str, McpServerConfig] = Field(default_factory=dict)
    agents: dict[str, SubagentDefinition] = Field(default_factory=dict)
    setting_sources: list[SettingSource] = Field(default_factory=list)
    output_format: dict[str, Any] | None = Field(
        default=None,
        description="Structured output spec, e.g. {'type': 'json_schema', 'schema': {...}}",
    )
    query_timeout: float = Field(default=DEFAULT_QUERY_TIMEOUT, gt=0)
    tool_timeout: float = Field(default=DEFAULT_TOOL_TIMEOUT, ge=1, le=MAX_QUERY_TIMEOUT)
    cli_path: str | None = Field(default=None, description="Explicit path to claude")
    cwd: str | None = None
    env: dict[str, str] = Field(default_factory=dict)

    @field_validator("query_timeout")
    @classmethod
    def _clamp_query_timeout(cls, value: float) -> float:
        return min(value, MAX_QUERY_TIMEOUT)

    @field_validator("output_format")
    @classmethod
    def _check_output_format(cls, value: dict[str, Any] | None) -> dict[str, Any] | None:
        if value is not None and not isinstance(value.get("schema"), dict):
            msg = "output_format requires a 'schema' mapping"
            raise ValueError(msg)
        return value

    @property
    def sdk_servers(self) -> dict[str, SdkMcpServer]:
        """The subset of ``mcp_servers`` hosted in this process."""
        return {
            name: server
            for name, server in self.mcp_servers.items()
            if isinstance(server, SdkMcpServer)
        }
