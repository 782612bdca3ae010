"""
Pytest configuration and shared fixtures for the CO2 Sensor MCP Server tests.
"""

from __future__ import annotations

import asyncio
import io
import random
from collections.abc import AsyncIterator

import pytest
import pytest_asyncio

from mcp_co2sensor.config import AppConfig
from mcp_co2sensor.device import Device
from mcp_co2sensor.errors import UnavailableError
from mcp_co2sensor.server import MCPServer
from mcp_co2sensor.transport import HardwareTransport


def pytest_configure(config: pytest.Config) -> None:
    """Configure pytest markers."""
    config.addinivalue_line(
        "markers",
        "integration: marks tests as integration tests (deselect with '-m \"not integration\"')",
    )


class FakeTransport(HardwareTransport):
    """
    In-memory HardwareTransport.

    Records writes, optionally fails them, and optionally answers each write
    with a line on the next loop iteration.
    """

    def __init__(self, reply: str | None = None, fail_writes: bool = False) -> None:
        super().__init__()
        self.reply = reply
        self.fail_writes = fail_writes
        self.writes: list[bytes] = []
        self.opened = False
        self.closed = False

    @property
    def description(self) -> str:
        return "fake-serial"

    async def open(self) -> None:
        self.opened = True

    async def write(self, data: bytes) -> None:
        self.writes.append(data)
        if self.fail_writes:
            raise UnavailableError("Error writing to serial port")
        if self.reply is not None:
            asyncio.get_running_loop().call_soon(self.publish, self.reply)

    async def close(self) -> None:
        self.closed = True

    def emit(self, line: str) -> None:
        self.publish(line)


@pytest.fixture
def config() -> AppConfig:
    """Configuration with short timings and no sensor log file."""
    return AppConfig(
        server={"shutdown_grace_ms": 10},
        sensor={"timeout_ms": 100, "tick_interval_seconds": 60.0},
        serial={"enabled": False},
        logging={"sensor_log_path": ""},
    )


@pytest.fixture
def rng() -> random.Random:
    return random.Random(1234)


@pytest.fixture
def fake_transport() -> FakeTransport:
    return FakeTransport()


@pytest.fixture
def device(config: AppConfig, rng: random.Random) -> Device:
    """A simulation-mode device (no hardware)."""
    return Device(config, rng=rng)


@pytest.fixture
def hardware_device(
    config: AppConfig, fake_transport: FakeTransport, rng: random.Random
) -> Device:
    """A device attached to the fake transport."""
    return Device(config, transport=fake_transport, rng=rng)


@pytest.fixture
def stdout() -> io.StringIO:
    return io.StringIO()


@pytest_asyncio.fixture
async def server(
    config: AppConfig, device: Device, stdout: io.StringIO
) -> AsyncIterator[MCPServer]:
    """A started server in simulation mode writing to a StringIO."""
    srv = MCPServer(config=config, device=device, stdout=stdout)
    await srv.start(discover=False)
    yield srv
    await srv.close()


@pytest_asyncio.fixture
async def hardware_server(
    config: AppConfig, hardware_device: Device, stdout: io.StringIO
) -> AsyncIterator[MCPServer]:
    """A started server whose device is attached to the fake transport."""
    srv = MCPServer(config=config, device=hardware_device, stdout=stdout)
    await srv.start(discover=False)
    yield srv
    await srv.close()
