"""
Resource catalog for the CO2 Sensor MCP Server.

Three read-only JSON resources are exposed:
- device://device/info: device identity, uptime and battery
- device://sensor/data: current CO2 reading (acquired on read)
- device://network/status: WiFi/MQTT status (stub)
"""

from __future__ import annotations

import json
from typing import TYPE_CHECKING, Any

from mcp_co2sensor.errors import InvalidArgumentError

if TYPE_CHECKING:
    from mcp_co2sensor.device import Device

DEVICE_INFO_URI = "device://device/info"
SENSOR_DATA_URI = "device://sensor/data"
NETWORK_STATUS_URI = "device://network/status"

MIME_TYPE = "application/json"

RESOURCES: tuple[dict[str, str], ...] = (
    {
        "uri": DEVICE_INFO_URI,
        "name": "Device Information",
        "mimeType": MIME_TYPE,
        "description": "Basic information about the device including ID, firmware version, and uptime",
    },
    {
        "uri": SENSOR_DATA_URI,
        "name": "MH-Z19B Sensor Data",
        "mimeType": MIME_TYPE,
        "description": "Current CO2 ppm readings from the MH-Z19B sensor",
    },
    {
        "uri": NETWORK_STATUS_URI,
        "name": "Network Connection Status",
        "mimeType": MIME_TYPE,
        "description": "WiFi and MQTT connection status information",
    },
)


def list_resources() -> list[dict[str, str]]:
    """Return the resources/list catalog (a fresh copy on every call)."""
    return [dict(resource) for resource in RESOURCES]


async def read_resource(device: Device, uri: Any) -> dict[str, Any]:
    """
    Read one resource as pretty-printed JSON text.

    Args:
        device: The device to read from.
        uri: Resource URI from the request params.

    Returns:
        resources/read result with a single content entry.

    Raises:
        InvalidArgumentError: If uri is missing or unknown.
    """
    if not uri:
        raise InvalidArgumentError("Invalid params", details={"parameter": "uri"})

    if uri == DEVICE_INFO_URI:
        data = device.get_device_info()
    elif uri == SENSOR_DATA_URI:
        data = await device.get_sensor_data()
    elif uri == NETWORK_STATUS_URI:
        data = device.get_network_status()
    else:
        raise InvalidArgumentError("Invalid resource URI", details={"uri": uri})

    return {
        "contents": [
            {
                "uri": uri,
                "mimeType": MIME_TYPE,
                "text": json.dumps(data, indent=2),
            }
        ]
    }
