"""
Tool catalog for the CO2 Sensor MCP Server.

Tools (registered in catalog order on the default tool registry):
- get_sensor_data: Acquire a CO2 reading (waits on hardware when attached)
- get_device_info: Device identity, uptime and battery
- get_network_status: WiFi/MQTT status (stub)
- publish_mqtt_data: Report an MQTT publish of the current reading (stub)
- reconnect_wifi: Acknowledge a WiFi reconnect (stub)
- reconnect_mqtt: Acknowledge an MQTT reconnect (stub)
"""

from __future__ import annotations

import json
from typing import TYPE_CHECKING, Any

from mcp_co2sensor.routing import tool_handler

if TYPE_CHECKING:
    from mcp_co2sensor.context import RequestContext


def text_content(result: Any) -> dict[str, Any]:
    """Wrap a tool result as a tools/call text content block."""
    return {
        "content": [
            {
                "type": "text",
                "text": json.dumps(result, indent=2),
            }
        ]
    }


@tool_handler(
    "get_sensor_data",
    "Get current CO2 ppm readings from the MH-Z19B sensor",
)
async def handle_get_sensor_data(
    ctx: RequestContext, _args: dict[str, Any]
) -> dict[str, Any]:
    return await ctx.device.get_sensor_data()


@tool_handler("get_device_info", "Get information about the device")
async def handle_get_device_info(
    ctx: RequestContext, _args: dict[str, Any]
) -> dict[str, Any]:
    return ctx.device.get_device_info()


@tool_handler(
    "get_network_status",
    "Get WiFi and MQTT connection status (NOT IMPLEMENTED)",
)
async def handle_get_network_status(
    ctx: RequestContext, _args: dict[str, Any]
) -> dict[str, Any]:
    return ctx.device.get_network_status()


@tool_handler(
    "publish_mqtt_data",
    "Publish current sensor data to the MQTT topic (NOT IMPLEMENTED)",
)
async def handle_publish_mqtt_data(
    ctx: RequestContext, _args: dict[str, Any]
) -> dict[str, Any]:
    return ctx.device.publish_to_mqtt()


@tool_handler(
    "reconnect_wifi",
    "Force the device to reconnect to WiFi (NOT IMPLEMENTED)",
)
async def handle_reconnect_wifi(
    ctx: RequestContext, _args: dict[str, Any]
) -> dict[str, Any]:
    return ctx.device.reconnect_wifi()


@tool_handler(
    "reconnect_mqtt",
    "Force the device to reconnect to the MQTT broker (NOT IMPLEMENTED)",
)
async def handle_reconnect_mqtt(
    ctx: RequestContext, _args: dict[str, Any]
) -> dict[str, Any]:
    return ctx.device.reconnect_mqtt()
