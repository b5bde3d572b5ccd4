"""Option models and the YAML option loader."""

from claude_agent.config.models import (
    AgentOptions,
    HTTPServerConfig,
    McpServerConfig,
    SSEServerConfig,
    StdioServerConfig,
    SubagentDefinition,
    SystemPromptPreset,
)
from claude_agent.config.parser import load_options, validate_options

__all__ = [
    "AgentOptions",
    "HTTPServerConfig",
    "McpServerConfig",
    "SSEServerConfig",
    "StdioServerConfig",
    "SubagentDefinition",
    "SystemPromptPreset",
    "load_options",
    "validate_options",
]
