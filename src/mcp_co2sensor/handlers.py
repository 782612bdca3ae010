"""
JSON-RPC method handlers for the CO2 Sensor MCP Server.

Requests: initialize, shutdown, resources/list, resources/read, tools/list,
tools/call. Notifications: exit, notifications/initialized,
notifications/cancelled.
"""

from __future__ import annotations

from typing import TYPE_CHECKING, Any

from mcp_co2sensor.errors import InvalidArgumentError
from mcp_co2sensor.logging import get_logger
from mcp_co2sensor.resources import list_resources, read_resource
from mcp_co2sensor.routing import MethodRegistry
from mcp_co2sensor.tools import text_content

if TYPE_CHECKING:
    from mcp_co2sensor.config import ServerConfig
    from mcp_co2sensor.context import RequestContext

logger = get_logger(__name__)


def server_capabilities() -> dict[str, Any]:
    return {
        "resources": {
            "supportsResourceTemplates": False,
            "supportsResourceSearch": False,
        },
        "tools": {
            "supportsToolSearch": False,
        },
    }


def server_info_params(config: ServerConfig) -> dict[str, Any]:
    """Params of the server/info notification sent at startup."""
    return {
        "name": config.info_name,
        "version": config.version,
        "capabilities": server_capabilities(),
    }


# =============================================================================
# Requests
# =============================================================================


async def handle_initialize(ctx: RequestContext, params: dict[str, Any]) -> dict[str, Any]:
    """Answer with server identity, capabilities and the negotiated version."""
    server_config = ctx.config.server
    return {
        "serverInfo": {
            "name": server_config.name,
            "version": server_config.version,
        },
        "capabilities": server_capabilities(),
        "protocolVersion": params.get("protocolVersion")
        or server_config.default_protocol_version,
    }


async def handle_shutdown(ctx: RequestContext, _params: dict[str, Any]) -> dict[str, Any]:
    """Acknowledge, then stop the server after the configured grace delay."""
    ctx.server.request_shutdown()
    return {}


async def handle_resources_list(
    _ctx: RequestContext, _params: dict[str, Any]
) -> dict[str, Any]:
    return {"resources": list_resources()}


async def handle_resources_read(
    ctx: RequestContext, params: dict[str, Any]
) -> dict[str, Any]:
    return await read_resource(ctx.device, params.get("uri"))


async def handle_tools_list(ctx: RequestContext, _params: dict[str, Any]) -> dict[str, Any]:
    return {"tools": ctx.server.tools.descriptors()}


async def handle_tools_call(ctx: RequestContext, params: dict[str, Any]) -> dict[str, Any]:
    """
    Invoke a tool from the catalog.

    Raises:
        InvalidArgumentError: If params.name is missing.
        NotFoundError: If the tool is not in the catalog.
    """
    name = params.get("name")
    if not isinstance(name, str) or not name:
        raise InvalidArgumentError("Invalid params", details={"parameter": "name"})

    arguments = params.get("arguments") or {}
    logger.debug(
        "Calling tool",
        extra={"tool": name, "request_id": ctx.request_id},
    )
    result = await ctx.server.tools.invoke(name, ctx, arguments)
    return text_content(result)


# =============================================================================
# Notifications
# =============================================================================


async def handle_exit(ctx: RequestContext, _params: dict[str, Any]) -> None:
    """Stop the server immediately."""
    logger.info("Exit notification received")
    ctx.server.stop()


async def handle_ignored(_ctx: RequestContext, _params: dict[str, Any]) -> None:
    return None


def build_method_registry() -> MethodRegistry:
    """Create a MethodRegistry with every supported method registered."""
    registry = MethodRegistry()
    registry.register("initialize", handle_initialize)
    registry.register("shutdown", handle_shutdown)
    registry.register("resources/list", handle_resources_list)
    registry.register("resources/read", handle_resources_read)
    registry.register("tools/list", handle_tools_list)
    registry.register("tools/call", handle_tools_call)

    registry.register_notification("exit", handle_exit)
    registry.register_notification("notifications/initialized", handle_ignored)
    registry.register_notification("notifications/cancelled", handle_ignored)
    return registry
