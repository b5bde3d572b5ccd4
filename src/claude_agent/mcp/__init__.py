"""In-process MCP tools and the socket bridge that serves them."""

from claude_agent.mcp.tools import SdkMcpServer, ToolDefinition, ToolHandler

__all__ = ["SdkMcpServer", "ToolDefinition", "ToolHandler"]
