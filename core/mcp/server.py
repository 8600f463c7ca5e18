"""
MCP server wiring and tool registration.
"""

from __future__ import annotations

import threading
from typing import Any, Callable, Optional

from fastmcp import FastMCP

import core.config as config
from core.services import assistant_tools, knowledge_service

READ_ONLY_TOOL_ANNOTATIONS = {"readOnlyHint": True}
DESTRUCTIVE_TOOL_ANNOTATIONS = {"destructiveHint": True}

mcp = FastMCP("OpsMemory")

_REGISTERED_TOOLS: list[tuple[Callable[..., str], tuple[Any, ...], dict[str, Any]]] = []
_TOOL_REGISTRY_LOCK = threading.Lock()
_LAST_TOOL_COUNT: Optional[int] = None


def mcp_tool(*args, **kwargs):
    """Register a tool with FastMCP and keep a local registry for rebinding."""
    def decorator(fn: Callable[..., str]):
        _REGISTERED_TOOLS.append((fn, args, kwargs))
        mcp.tool(*args, **kwargs)(fn)
        return fn
    return decorator


def _record_tool_inventory_count(tool_count: int) -> None:
    global _LAST_TOOL_COUNT
    with _TOOL_REGISTRY_LOCK:
        if tool_count == 0 and (_LAST_TOOL_COUNT is None or _LAST_TOOL_COUNT > 0):
            config.logger.warning("tool_inventory_empty", extra={"tool_count": tool_count})
        elif tool_count > 0 and _LAST_TOOL_COUNT == 0:
            config.logger.info("tool_inventory_restored", extra={"tool_count": tool_count})
        _LAST_TOOL_COUNT = tool_count


def _rebind_tool_registry(reason: str) -> None:
    with _TOOL_REGISTRY_LOCK:
        for fn, args, kwargs in _REGISTERED_TOOLS:
            mcp.tool(*args, **kwargs)(fn)
        config.logger.warning(
            "tool_registry_rebind",
            extra={"reason": reason, "tool_count": len(_REGISTERED_TOOLS)},
        )


async def tool_inventory_status(refresh_if_empty: bool = False, reason: str = "") -> dict:
    """Return tool inventory details and optionally rebind when empty."""
    tools = await mcp.get_tools()
    tool_names = sorted(tools.keys())

    refreshed = False
    if refresh_if_empty and not tool_names:
        refreshed = True
        _rebind_tool_registry(reason or "inventory_empty")
        tools = await mcp.get_tools()
        tool_names = sorted(tools.keys())

    _record_tool_inventory_count(len(tool_names))
    return {
        "tool_count": len(tool_names),
        "tools": tool_names,
        "refreshed": refreshed,
    }


@mcp.resource(
    "opsmemory://knowledge-prompt",
    name="opsmemory_knowledge_prompt",
    mime_type="text/markdown",
)
def knowledge_prompt_resource() -> str:
    """Current knowledge digest for the assistant's system prompt."""
    return knowledge_service.generate_knowledge_prompt()


# =============================================================================
# Knowledge tools
# =============================================================================

@mcp_tool()
def remember_fact(topic: str, fact: str, context: Optional[str] = None) -> str:
    """Remember a fact about the homelab discovered during operations."""
    return assistant_tools.remember_fact(topic, fact, context)


@mcp_tool(annotations=READ_ONLY_TOOL_ANNOTATIONS)
def recall_knowledge(topic: Optional[str] = None) -> str:
    """Recall what is known about a topic. Call before taking actions."""
    return assistant_tools.recall_knowledge(topic)


@mcp_tool()
def learn_correction(topic: str, old_fact: str, new_fact: str) -> str:
    """Replace something known to be wrong with what the user said."""
    return assistant_tools.learn_correction(topic, old_fact, new_fact)


@mcp_tool(annotations=READ_ONLY_TOOL_ANNOTATIONS)
def resolve_alias(alias_type: str, user_input: str) -> str:
    """Translate a friendly name ('my PC') into its technical value."""
    return assistant_tools.resolve_alias(alias_type, user_input)


@mcp_tool()
def store_alias(alias_type: str, name: str, value: str) -> str:
    """Store a friendly name for a MAC, container or entity id."""
    return assistant_tools.store_alias(alias_type, name, value)


@mcp_tool(annotations=DESTRUCTIVE_TOOL_ANNOTATIONS)
def invalidate_knowledge(topic: str, fact_contains: str) -> str:
    """Mark knowledge containing the given text as outdated."""
    return assistant_tools.invalidate_knowledge(topic, fact_contains)


# =============================================================================
# Investigation tools
# =============================================================================

@mcp_tool()
def start_investigation(thread_id: int, symptom: str) -> str:
    """Start tracking a troubleshooting session for a chat thread."""
    return assistant_tools.start_investigation(thread_id, symptom)


@mcp_tool()
def record_step(
    thread_id: int,
    action: str,
    plugin: Optional[str] = None,
    result: Optional[str] = None,
) -> str:
    """Record a diagnostic step in the thread's active investigation."""
    return assistant_tools.record_step(thread_id, action, plugin, result)


@mcp_tool()
def resolve_investigation(thread_id: int, resolution: str) -> str:
    """Close the thread's active investigation with what fixed it."""
    return assistant_tools.resolve_investigation(thread_id, resolution)


@mcp_tool(annotations=READ_ONLY_TOOL_ANNOTATIONS)
def search_past_incidents(symptom: str) -> str:
    """Search resolved incidents for similar symptoms."""
    return assistant_tools.search_past_incidents(symptom)


@mcp_tool(annotations=READ_ONLY_TOOL_ANNOTATIONS)
def get_investigation_status(thread_id: int) -> str:
    """Show the active investigation for a chat thread."""
    return assistant_tools.get_investigation_status(thread_id)


mcp_stream_app = mcp.http_app(
    path="/",
    transport="streamable-http",
    stateless_http=True,
    json_response=True,
)


class MCPRouteNormalizerASGI:
    """Pure ASGI middleware - no response buffering, streaming-safe."""
    def __init__(self, wrapped_app):
        self.wrapped_app = wrapped_app

    async def __call__(self, scope, receive, send):
        if scope["type"] == "http" and scope.get("path") == "/mcp":
            scope = dict(scope)
            scope["path"] = "/mcp/"
        await self.wrapped_app(scope, receive, send)
