"""Process launching and line-protocol helpers."""

from claude_agent.transport.codec import LineCodec
from claude_agent.transport.launcher import build_command, build_env, find_cli, sanitize_text

__all__ = [
    "LineCodec",
    "build_command",
    "build_env",
    "find_cli",
    "sanitize_text",
]
