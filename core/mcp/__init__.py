"""MCP surface for the assistant: the FastMCP server and its streamable-http app."""

from core.mcp.server import (
    MCPRouteNormalizerASGI,
    mcp,
    mcp_stream_app,
    mcp_tool,
    tool_inventory_status,
)

__all__ = [
    "MCPRouteNormalizerASGI",
    "mcp",
    "mcp_stream_app",
    "mcp_tool",
    "tool_inventory_status",
]
