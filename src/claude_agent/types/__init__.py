"""Typed messages and content blocks streamed by the Claude CLI."""

from claude_agent.types.messages import (
    AssistantMessage,
    BaseMessage,
    ContentBlock,
    Message,
    ResultMessage,
    SystemMessage,
    TextBlock,
    ThinkingBlock,
    ToolResultBlock,
    ToolUseBlock,
    UserMessage,
    normalize_fields,
    parse_content_block,
    parse_message,
)

__all__ = [
    "AssistantMessage",
    "BaseMessage",
    "ContentBlock",
    "Message",
    "ResultMessage",
    "SystemMessage",
    "TextBlock",
    "ThinkingBlock",
    "ToolResultBlock",
    "ToolUseBlock",
    "UserMessage",
    "normalize_fields",
    "parse_content_block",
    "parse_message",
]
