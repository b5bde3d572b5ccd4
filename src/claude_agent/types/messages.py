"""Pydantic v2 models for messages streamed by the Claude CLI."""

from __future__ import annotations

from typing import Any, Literal

from pydantic import BaseModel, ConfigDict, Field, PrivateAttr, model_validator

#: camelCase keys the CLI may emit, mapped to our field names.
_FIELD_RENAMES = {
    "sessionId": "session_id",
    "parentToolUseId": "parent_tool_use_id",
    "durationMs": "duration_ms",
    "numTurns": "num_turns",
    "totalCostUsd": "total_cost_usd",
    "isError": "is_error",
    "slashCommands": "slash_commands",
    "claudeCodeVersion": "claude_code_version",
    "outputStyle": "output_style",
    "apiKeySource": "api_key_source",
    "permissionMode": "permission_mode",
    "mcpServers": "mcp_servers",
    "durationApiMs": "duration_api_ms",
    "modelUsage": "model_usage",
    "permissionDenials": "permission_denials",
    "toolUseResult": "tool_use_result",
    "structuredOutput": "structured_output",
}


# ------------------------------------------------------------------ #
# Content blocks
# ------------------------------------------------------------------ #


class _BlockBase(BaseModel):
    model_config = ConfigDict(frozen=True, extra="allow")


class TextBlock(_BlockBase):
    """Text content block."""

    type: Literal["text"] = "text"
    text: str = ""


class ThinkingBlock(_BlockBase):
    """Extended-thinking content block."""

    type: Literal["thinking"] = "thinking"
    thinking: str = ""
    signature: str | None = None


class ToolUseBlock(_BlockBase):
    """A tool invocation requested by the model."""

    type: Literal["tool_use"] = "tool_use"
    id: str = ""
    name: str = ""
    input: dict[str, Any] = Field(default_factory=dict)


class ToolResultBlock(_BlockBase):
    """The result of a tool invocation fed back to the model."""

    type: Literal["tool_result"] = "tool_result"
    tool_use_id: str = ""
    content: str | list[dict[str, Any]] | None = None
    is_error: bool | None = None


ContentBlock = TextBlock | ThinkingBlock | ToolUseBlock | ToolResultBlock

_BLOCK_TYPES: dict[str, type[_BlockBase]] = {
    "text": TextBlock,
    "thinking": ThinkingBlock,
    "tool_use": ToolUseBlock,
    "tool_result": ToolResultBlock,
}


def parse_content_block(raw: Any) -> ContentBlock | Any:
    """Build a content block from its raw form.

    Unknown block types and non-mapping values are returned unchanged.
    """
    if not isinstance(raw, dict):
        return raw
    block_cls = _BLOCK_TYPES.get(str(raw.get("type", "")))
    if block_cls is None:
        return raw
    return block_cls.model_validate(raw)


# ------------------------------------------------------------------ #
# Messages
# ------------------------------------------------------------------ #


class BaseMessage(BaseModel):
    """Common envelope fields; also used as-is for unknown message types."""

    model_config = ConfigDict(frozen=True, extra="allow", protected_namespaces=())

    type: str
    uuid: str | None = None
    session_id: str | None = None
    parent_tool_use_id: str | None = None


class UserMessage(BaseMessage):
    """A user turn, including tool results echoed back by the CLI."""

    type: Literal["user"] = "user"
    message: dict[str, Any] = Field(default_factory=dict)
    tool_use_result: Any = None


class AssistantMessage(BaseMessage):
    """A model response with its content blocks."""

    type: Literal["assistant"] = "assistant"
    message: dict[str, Any] = Field(default_factory=dict)
    model: str | None = None

    _blocks_cache: list[Any] | None = PrivateAttr(default=None)

    @model_validator(mode="before")
    @classmethod
    def _model_from_message(cls, values: Any) -> Any:
        if not isinstance(values, dict) or values.get("model") is not None:
            return values
        message = values.get("message")
        if isinstance(message, dict) and isinstance(message.get("model"), str):
            values = {**values, "model": message["model"]}
        return values

    @property
    def content_blocks(self) -> list[ContentBlock | Any]:
        """Content blocks, decoded on first access."""
        if self._blocks_cache is None:
            raw = self.message.get("content") or []
            if isinstance(raw, str):
                raw = [{"type": "text", "text": raw}]
            self._blocks_cache = [parse_content_block(block) for block in raw]
        return self._blocks_cache

    @property
    def text(self) -> str:
        """All text blocks joined with newlines."""
        return "\n".join(
            block.text for block in self.content_blocks if isinstance(block, TextBlock)
        )

    @property
    def tool_uses(self) -> list[ToolUseBlock]:
        return [block for block in self.content_blocks if isinstance(block, ToolUseBlock)]


class SystemMessage(BaseMessage):
    """System notifications; ``subtype == "init"`` opens a session."""

    type: Literal["system"] = "system"
    subtype: str = ""
    data: dict[str, Any] | None = None
    cwd: str | None = None
    model: str | None = None
    tools: Any = None
    mcp_servers: Any = None
    permission_mode: str | None = None
    slash_commands: Any = None
    api_key_source: str | None = None
    claude_code_version: str | None = None
    output_style: str | None = None

    def get_session_id(self) -> str | None:
        """Session id from the top level or the nested ``data`` payload."""
        if self.session_id:
            return self.session_id
        if self.data and isinstance(self.data.get("session_id"), str):
            return self.data["session_id"]
        return None


class ResultMessage(BaseMessage):
    """Final aggregated outcome; always the last message of a turn."""

    type: Literal["result"] = "result"
    subtype: str = ""
    result: str | None = None
    is_error: bool | None = False
    duration_ms: float | None = None
    duration_api_ms: float | None = None
    num_turns: int | None = None
    total_cost_usd: float | None = None
    usage: dict[str, Any] | None = None
    model_usage: dict[str, Any] | None = None
    permission_denials: Any = None
    structured_output: Any = None


Message = UserMessage | AssistantMessage | SystemMessage | ResultMessage | BaseMessage

_MESSAGE_TYPES: dict[str, type[BaseMessage]] = {
    "user": UserMessage,
    "assistant": AssistantMessage,
    "system": SystemMessage,
    "result": ResultMessage,
}


def normalize_fields(data: dict[str, Any]) -> dict[str, Any]:
    """Return a copy of *data* with known camelCase keys renamed."""
    normalized = dict(data)
    for camel, snake in _FIELD_RENAMES.items():
        if camel in normalized:
            normalized[snake] = normalized.pop(camel)
    return normalized


def parse_message(data: dict[str, Any]) -> Message:
    """Build the message model matching ``data["type"]``.

    Unknown types produce a :class:`BaseMessage`.

    Raises:
        pydantic.ValidationError: If a known type carries malformed fields.
    """
    normalized = normalize_fields(data)
    normalized["type"] = str(normalized.get("type", ""))
    message_cls = _MESSAGE_TYPES.get(normalized["type"], BaseMessage)
    return message_cls.model_validate(normalized)
