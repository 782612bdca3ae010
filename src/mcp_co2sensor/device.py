"""
Device state for the CO2 Sensor MCP Server.

Device bundles the device identity, the power state, the network/MQTT stubs
and the SensorEngine, and runs the background tick that drains the battery
and refreshes the simulated reading.
"""

from __future__ import annotations

import asyncio
import contextlib
import random
from datetime import datetime
from typing import TYPE_CHECKING, Any

from mcp_co2sensor.logging import get_logger
from mcp_co2sensor.sensor import (
    ReadingStatus,
    SensorEngine,
    SensorReading,
    format_timestamp,
)
from mcp_co2sensor.transport import open_sensor_transport

if TYPE_CHECKING:
    from mcp_co2sensor.config import AppConfig
    from mcp_co2sensor.transport import HardwareTransport

logger = get_logger(__name__)

FIRMWARE_VERSION = "1.0.0"


class Device:
    """
    The simulated (or serial-backed) sensor device.

    Attributes:
        device_id: Random "rpipico-<hex>" identifier chosen at construction.
        firmware_version: Reported firmware version.
        boot_time: Local time the device object was created.
        sensor: The SensorEngine owning the current reading.

    Example:
        >>> device = Device(config)
        >>> await device.start()
        >>> device.get_device_info()["deviceId"]
        'rpipico-3fa2'
        >>> await device.stop()
    """

    def __init__(
        self,
        config: AppConfig,
        transport: HardwareTransport | None = None,
        rng: random.Random | None = None,
    ) -> None:
        self.config = config
        self._rng = rng if rng is not None else random.Random()
        self.device_id = f"rpipico-{self._rng.randrange(0xFFFF):x}"
        self.firmware_version = FIRMWARE_VERSION
        self.boot_time = datetime.now()
        self.battery_level = config.sensor.battery_start

        network = config.network
        self.wifi_connected = True
        self.wifi_ssid = network.wifi_ssid
        self.ip_address = f"192.168.1.{self._rng.randrange(255)}"
        self.mqtt_connected = True
        self.mqtt_broker = network.mqtt_broker
        self.mqtt_port = network.mqtt_port
        self.mqtt_topic = network.mqtt_topic

        self.sensor = SensorEngine(config.sensor, transport=transport, rng=self._rng)
        self._tick_task: asyncio.Task[None] | None = None

    # -------------------------------------------------------------------------
    # Lifecycle
    # -------------------------------------------------------------------------

    async def start(self, discover: bool = True) -> None:
        """
        Attach hardware (if found) and start the background tick.

        Args:
            discover: Look for a serial sensor when none was injected.
        """
        if discover and not self.sensor.hardware_attached:
            transport = await open_sensor_transport(self.config.serial)
            if transport is not None:
                self.sensor.attach(transport)

        if self._tick_task is None:
            self._tick_task = asyncio.create_task(self._tick_loop())

        logger.info(
            "Device started",
            extra={
                "device_id": self.device_id,
                "hardware": self.sensor.hardware_attached,
            },
        )

    async def stop(self) -> None:
        """Stop the tick and release the hardware transport."""
        task, self._tick_task = self._tick_task, None
        if task is not None:
            task.cancel()
            with contextlib.suppress(asyncio.CancelledError):
                await task

        await self.sensor.detach()
        logger.info("Device stopped", extra={"device_id": self.device_id})

    async def _tick_loop(self) -> None:
        interval = self.config.sensor.tick_interval_seconds
        while True:
            await asyncio.sleep(interval)
            try:
                self.tick()
            except Exception:
                logger.exception("Background tick failed")

    def tick(self) -> None:
        """Refresh the reading and drain the battery by one step."""
        self.sensor.tick()
        self._drain_battery()

    def _drain_battery(self) -> None:
        drained = self.battery_level - self.config.sensor.battery_drain
        self.battery_level = max(0.0, round(drained, 1))

    # -------------------------------------------------------------------------
    # Getters
    # -------------------------------------------------------------------------

    @property
    def uptime_seconds(self) -> int:
        return int((datetime.now() - self.boot_time).total_seconds())

    def get_device_info(self) -> dict[str, Any]:
        """Device identity, uptime and battery, read at call time."""
        return {
            "deviceId": self.device_id,
            "firmwareVersion": self.firmware_version,
            "bootTime": format_timestamp(self.boot_time),
            "uptime": self.uptime_seconds,
            "batteryLevel": self.battery_level,
        }

    async def get_sensor_data(self) -> dict[str, Any]:
        """
        Acquire a reading and return its wire representation.

        A simulated reading counts as a refresh, so it drains the battery like
        a tick does.
        """
        reading: SensorReading = await self.sensor.acquire()
        if reading.status is ReadingStatus.SIMULATED_DATA:
            self._drain_battery()
        return reading.to_dict()

    def get_network_status(self) -> dict[str, Any]:
        return {
            "wifiConnected": self.wifi_connected,
            "wifiSSID": self.wifi_ssid,
            "ipAddress": self.ip_address,
            "mqttConnected": self.mqtt_connected,
            "mqttBroker": self.mqtt_broker,
            "mqttPort": self.mqtt_port,
            "mqttTopic": self.mqtt_topic,
        }

    # -------------------------------------------------------------------------
    # Network stubs (no real MQTT or WiFi behind these)
    # -------------------------------------------------------------------------

    def publish_to_mqtt(self) -> dict[str, Any]:
        """Report what would be published for the current reading."""
        if not self.mqtt_connected:
            return {"success": False, "message": "MQTT not connected"}
        return {
            "success": True,
            "topic": self.mqtt_topic,
            "data": str(self.sensor.current_reading.co2_level),
            "timestamp": format_timestamp(datetime.now()),
        }

    def reconnect_wifi(self) -> dict[str, Any]:
        return {"success": True, "message": "WiFi reconnection initiated"}

    def reconnect_mqtt(self) -> dict[str, Any]:
        if not self.wifi_connected:
            return {"success": False, "message": "WiFi not connected"}
        return {"success": True, "message": "MQTT reconnection initiated"}
