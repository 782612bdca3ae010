"""
Tests for the hardware transport module.

This test module validates:
- Line subscriptions (delivery, release, failing listeners)
- Serial port discovery by USB vendor/product id
- SerialTransport read/write/close against a fake pyserial port
- open_sensor_transport fallbacks to simulation mode
"""

from __future__ import annotations

import asyncio
import queue
from types import SimpleNamespace
from typing import Any

import pytest
import serial

from mcp_co2sensor import transport as transport_module
from mcp_co2sensor.config import SerialConfig
from mcp_co2sensor.errors import UnavailableError
from mcp_co2sensor.transport import (
    DeviceDescriptor,
    LineEventSource,
    SerialTransport,
    find_sensor_port,
    list_devices,
    open_sensor_transport,
)

# =============================================================================
# Fakes
# =============================================================================


class FakeSerialPort:
    """Stands in for serial.Serial; reads are fed from a queue."""

    instances: list[FakeSerialPort] = []

    def __init__(self, port: str, baudrate: int, timeout: float, write_timeout: float) -> None:
        self.port = port
        self.baudrate = baudrate
        self.timeout = timeout
        self.is_open = True
        self.written: list[bytes] = []
        self.fail_writes = False
        self._incoming: queue.Queue[bytes] = queue.Queue()
        FakeSerialPort.instances.append(self)

    @property
    def in_waiting(self) -> int:
        return 0

    def feed(self, data: bytes) -> None:
        self._incoming.put(data)

    def read(self, size: int = 1) -> bytes:
        try:
            return self._incoming.get(timeout=self.timeout)
        except queue.Empty:
            return b""

    def write(self, data: bytes) -> int:
        if self.fail_writes:
            raise serial.SerialTimeoutException("Write timeout")
        self.written.append(data)
        return len(data)

    def flush(self) -> None:
        pass

    def close(self) -> None:
        self.is_open = False


def _port_info(device: str, vid: int | None, pid: int | None, description: str = "") -> Any:
    return SimpleNamespace(device=device, vid=vid, pid=pid, description=description)


@pytest.fixture
def fake_serial(monkeypatch: pytest.MonkeyPatch) -> type[FakeSerialPort]:
    FakeSerialPort.instances = []
    monkeypatch.setattr(serial, "Serial", FakeSerialPort)
    return FakeSerialPort


@pytest.fixture
def pico_ports(monkeypatch: pytest.MonkeyPatch) -> None:
    ports = [
        _port_info("/dev/ttyS0", None, None, "ttyS0"),
        _port_info("/dev/ttyUSB0", 0x0403, 0x6001, "FT232R"),
        _port_info("/dev/ttyACM0", 0x2E8A, 0x0005, "Board in FS mode"),
    ]
    monkeypatch.setattr(transport_module.list_ports, "comports", lambda: ports)


# =============================================================================
# Tests for LineEventSource
# =============================================================================


class TestLineEventSource:
    """Tests for subscriptions."""

    def test_every_subscriber_sees_every_line(self) -> None:
        source = LineEventSource()
        first: list[str] = []
        second: list[str] = []
        source.subscribe(first.append)
        source.subscribe(second.append)

        source.publish("a")
        source.publish("b")

        assert first == ["a", "b"]
        assert second == ["a", "b"]

    def test_close_stops_delivery(self) -> None:
        source = LineEventSource()
        seen: list[str] = []
        subscription = source.subscribe(seen.append)

        subscription.close()
        subscription.close()
        source.publish("late")

        assert seen == []
        assert not subscription.active
        assert source.subscriber_count == 0

    def test_context_manager_releases(self) -> None:
        source = LineEventSource()

        with source.subscribe(lambda _line: None):
            assert source.subscriber_count == 1

        assert source.subscriber_count == 0

    def test_unsubscribe_during_delivery(self) -> None:
        source = LineEventSource()
        seen: list[str] = []

        def once(line: str) -> None:
            seen.append(line)
            subscription.close()

        subscription = source.subscribe(once)
        other: list[str] = []
        source.subscribe(other.append)

        source.publish("x")
        source.publish("y")

        assert seen == ["x"]
        assert other == ["x", "y"]

    def test_failing_listener_does_not_block_others(self) -> None:
        source = LineEventSource()
        seen: list[str] = []

        def broken(_line: str) -> None:
            raise RuntimeError("listener bug")

        source.subscribe(broken)
        source.subscribe(seen.append)

        source.publish("CO2 (ppm):700")

        assert seen == ["CO2 (ppm):700"]


# =============================================================================
# Tests for discovery
# =============================================================================


class TestDiscovery:
    """Tests for serial port discovery."""

    @pytest.mark.usefixtures("pico_ports")
    def test_list_devices(self) -> None:
        devices = list_devices()

        assert [d.path for d in devices] == ["/dev/ttyS0", "/dev/ttyUSB0", "/dev/ttyACM0"]
        assert devices[0].vendor_id is None
        assert devices[2].vendor_id == "2E8A"
        assert devices[2].product_id == "0005"

    @pytest.mark.usefixtures("pico_ports")
    def test_find_by_usb_ids(self) -> None:
        descriptor = find_sensor_port(SerialConfig())

        assert descriptor is not None
        assert descriptor.path == "/dev/ttyACM0"

    @pytest.mark.usefixtures("pico_ports")
    def test_no_match(self) -> None:
        assert find_sensor_port(SerialConfig(product_id="000A")) is None

    def test_explicit_port_skips_discovery(self, monkeypatch: pytest.MonkeyPatch) -> None:
        def fail() -> list[Any]:
            raise AssertionError("discovery should not run")

        monkeypatch.setattr(transport_module.list_ports, "comports", fail)

        descriptor = find_sensor_port(SerialConfig(port="/dev/serial0"))

        assert descriptor == DeviceDescriptor(path="/dev/serial0", description="configured port")

    def test_listing_error_returns_none(self, monkeypatch: pytest.MonkeyPatch) -> None:
        def fail() -> list[Any]:
            raise OSError("sysfs unavailable")

        monkeypatch.setattr(transport_module.list_ports, "comports", fail)

        assert find_sensor_port(SerialConfig()) is None


# =============================================================================
# Tests for SerialTransport
# =============================================================================


class TestSerialTransport:
    """Tests for SerialTransport against a fake port."""

    @pytest.mark.asyncio
    async def test_lines_are_published_on_the_loop(
        self, fake_serial: type[FakeSerialPort]
    ) -> None:
        transport = SerialTransport(DeviceDescriptor(path="/dev/ttyACM0"), read_timeout=0.05)
        await transport.open()
        loop = asyncio.get_running_loop()
        received: asyncio.Future[str] = loop.create_future()

        def listener(line: str) -> None:
            assert asyncio.get_running_loop() is loop
            if not received.done():
                received.set_result(line)

        transport.subscribe(listener)
        fake_serial.instances[0].feed(b"CO2 (pp")
        fake_serial.instances[0].feed(b"m):655\r\n")

        assert await asyncio.wait_for(received, timeout=2.0) == "CO2 (ppm):655"
        await transport.close()

    @pytest.mark.asyncio
    async def test_open_uses_configured_settings(
        self, fake_serial: type[FakeSerialPort]
    ) -> None:
        config = SerialConfig(baud_rate=9600, read_timeout_seconds=0.05)
        transport = SerialTransport.from_config(DeviceDescriptor(path="/dev/ttyACM1"), config)

        await transport.open()

        port = fake_serial.instances[0]
        assert port.port == "/dev/ttyACM1"
        assert port.baudrate == 9600
        assert transport.is_open
        assert transport.description == "/dev/ttyACM1"
        await transport.close()

    @pytest.mark.asyncio
    async def test_write(self, fake_serial: type[FakeSerialPort]) -> None:
        transport = SerialTransport(DeviceDescriptor(path="/dev/ttyACM0"), read_timeout=0.05)
        await transport.open()

        await transport.write(b"getdata\r\n")

        assert fake_serial.instances[0].written == [b"getdata\r\n"]
        await transport.close()

    @pytest.mark.asyncio
    async def test_write_failure(self, fake_serial: type[FakeSerialPort]) -> None:
        transport = SerialTransport(DeviceDescriptor(path="/dev/ttyACM0"), read_timeout=0.05)
        await transport.open()
        fake_serial.instances[0].fail_writes = True

        with pytest.raises(UnavailableError, match="Error writing to serial port"):
            await transport.write(b"getdata\r\n")
        await transport.close()

    @pytest.mark.asyncio
    async def test_write_when_closed(self) -> None:
        transport = SerialTransport(DeviceDescriptor(path="/dev/ttyACM0"))

        with pytest.raises(UnavailableError, match="not open"):
            await transport.write(b"getdata\r\n")

    @pytest.mark.asyncio
    async def test_close(self, fake_serial: type[FakeSerialPort]) -> None:
        transport = SerialTransport(DeviceDescriptor(path="/dev/ttyACM0"), read_timeout=0.05)
        await transport.open()
        port = fake_serial.instances[0]

        await transport.close()

        assert not port.is_open
        assert not transport.is_open

    @pytest.mark.asyncio
    async def test_open_failure(self, monkeypatch: pytest.MonkeyPatch) -> None:
        def refuse(**_kwargs: Any) -> None:
            raise serial.SerialException("Permission denied")

        monkeypatch.setattr(serial, "Serial", refuse)
        transport = SerialTransport(DeviceDescriptor(path="/dev/ttyACM0"))

        with pytest.raises(UnavailableError, match="Cannot open serial port"):
            await transport.open()


# =============================================================================
# Tests for open_sensor_transport
# =============================================================================


class TestOpenSensorTransport:
    """Tests for discovery plus open."""

    @pytest.mark.asyncio
    async def test_disabled(self) -> None:
        assert await open_sensor_transport(SerialConfig(enabled=False)) is None

    @pytest.mark.asyncio
    async def test_not_found(self, monkeypatch: pytest.MonkeyPatch) -> None:
        monkeypatch.setattr(transport_module.list_ports, "comports", lambda: [])

        assert await open_sensor_transport(SerialConfig()) is None

    @pytest.mark.asyncio
    @pytest.mark.usefixtures("pico_ports")
    async def test_found_and_opened(self, fake_serial: type[FakeSerialPort]) -> None:
        transport = await open_sensor_transport(SerialConfig(read_timeout_seconds=0.05))

        assert transport is not None
        assert transport.description == "/dev/ttyACM0"
        await transport.close()

    @pytest.mark.asyncio
    @pytest.mark.usefixtures("pico_ports")
    async def test_open_failure_falls_back(self, monkeypatch: pytest.MonkeyPatch) -> None:
        def refuse(**_kwargs: Any) -> None:
            raise serial.SerialException("Device busy")

        monkeypatch.setattr(serial, "Serial", refuse)

        assert await open_sensor_transport(SerialConfig()) is None
