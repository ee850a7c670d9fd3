"""
MCP-backed tools.

Each configured server is connected once at startup and its tools are
registered as "<server>_<tool>", so equal tool names on two servers never
collide. A server that cannot be reached is logged and skipped; the
assistant then answers without it.
"""

from __future__ import annotations

from collections.abc import Callable
from contextlib import AsyncExitStack
from typing import Any

import structlog
from fastmcp import Client
from fastmcp.client.transports import StreamableHttpTransport

from chatrelay.config import McpServerSettings, ToolsSettings
from chatrelay.core.tools.registry import ToolHandler, ToolRegistry
from chatrelay.providers.base import ToolSpec

logger = structlog.stdlib.get_logger()

ClientFactory = Callable[[McpServerSettings, float], Client]


def http_client(server: McpServerSettings, timeout_seconds: float) -> Client:
    transport = StreamableHttpTransport(server.url, headers=server.headers)
    return Client(transport, timeout=timeout_seconds)


def render_result(result: Any) -> str:
    """Flatten a tool result to the text blocks the model can read."""
    return "\n".join(block.text for block in result.content if block.type == "text")


def _call_handler(client: Client, tool_name: str) -> ToolHandler:
    async def call(arguments: dict[str, Any]) -> str:
        result = await client.call_tool(tool_name, arguments)
        return render_result(result)

    return call


async def register_server_tools(registry: ToolRegistry, server_name: str, client: Client) -> int:
    """Register every tool an open client exposes. Returns how many."""
    tools = await client.list_tools()
    for tool in tools:
        spec = ToolSpec(
            name=f"{server_name}_{tool.name}",
            description=tool.description or "",
            parameters=tool.inputSchema,
        )
        registry.register(spec, _call_handler(client, tool.name))
    return len(tools)


async def load_mcp_tools(
    settings: ToolsSettings,
    stack: AsyncExitStack,
    client_factory: ClientFactory = http_client,
) -> ToolRegistry:
    """
    Connect the configured MCP servers and collect their tools.

    Clients stay open on `stack`; closing the stack disconnects them.
    """
    registry = ToolRegistry()
    if not settings.enabled:
        return registry

    for server in settings.servers:
        client = client_factory(server, settings.timeout_seconds)
        try:
            await stack.enter_async_context(client)
            count = await register_server_tools(registry, server.name, client)
        except Exception as e:
            await logger.awarning("tools.mcp.server_unavailable", server=server.name, error=str(e))
            continue
        await logger.ainfo("tools.mcp.server_ready", server=server.name, tools=count)

    return registry
