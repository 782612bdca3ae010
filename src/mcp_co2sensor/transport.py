"""
Hardware transport for the CO2 sensor.

The sensor is a microcontroller on a USB serial port that prints
newline-delimited text. This module provides:

- LineEventSource: fan-out of received lines to any number of subscribers,
  each holding a Subscription handle it must release.
- HardwareTransport: the narrow interface the acquisition engine depends on
  (subscribe to lines, write a request, open, close).
- SerialTransport: a pyserial implementation with a reader thread that feeds
  lines back into the event loop.
- list_devices / find_sensor_port: USB discovery by vendor/product id.
"""

from __future__ import annotations

import asyncio
import threading
from abc import ABC, abstractmethod
from collections.abc import Callable
from dataclasses import dataclass
from typing import TYPE_CHECKING, Any

import serial
from serial.tools import list_ports

from mcp_co2sensor.errors import UnavailableError
from mcp_co2sensor.framing import LineFramer
from mcp_co2sensor.logging import get_logger

if TYPE_CHECKING:
    from mcp_co2sensor.config import SerialConfig

logger = get_logger(__name__)

LineListener = Callable[[str], None]


# =============================================================================
# Line Events
# =============================================================================


class Subscription:
    """
    Handle for one listener registered on a LineEventSource.

    close() removes exactly this listener and is safe to call more than once.
    Usable as a context manager.
    """

    def __init__(self, source: LineEventSource, listener: LineListener) -> None:
        self._source = source
        self._listener = listener
        self._active = True

    @property
    def active(self) -> bool:
        """Whether the listener is still registered."""
        return self._active

    def close(self) -> None:
        """Unregister the listener."""
        if self._active:
            self._active = False
            self._source._remove(self)

    def _deliver(self, line: str) -> None:
        if self._active:
            self._listener(line)

    def __enter__(self) -> Subscription:
        return self

    def __exit__(self, *exc_info: Any) -> None:
        self.close()


class LineEventSource:
    """
    Broadcasts received text lines to every active subscriber.

    Each subscriber sees every line published after it subscribed. A failing
    listener is logged and does not prevent delivery to the others.
    """

    def __init__(self) -> None:
        self._subscriptions: list[Subscription] = []

    def subscribe(self, listener: LineListener) -> Subscription:
        """
        Register a listener for received lines.

        Returns:
            Subscription handle; close it to stop receiving lines.
        """
        subscription = Subscription(self, listener)
        self._subscriptions.append(subscription)
        return subscription

    @property
    def subscriber_count(self) -> int:
        """Number of active subscriptions."""
        return len(self._subscriptions)

    def publish(self, line: str) -> None:
        """Deliver a line to all subscribers registered at call time."""
        # Snapshot: listeners may unsubscribe while handling the line
        for subscription in list(self._subscriptions):
            try:
                subscription._deliver(line)
            except Exception:
                logger.exception("Line listener failed", extra={"line": line})

    def _remove(self, subscription: Subscription) -> None:
        try:
            self._subscriptions.remove(subscription)
        except ValueError:
            pass


class HardwareTransport(LineEventSource, ABC):
    """
    Interface between the acquisition engine and a physical sensor.

    Subclasses publish every received line through publish() on the event
    loop thread and implement write(), open() and close().
    """

    @property
    @abstractmethod
    def description(self) -> str:
        """Human-readable name of the device (e.g., the port path)."""

    @abstractmethod
    async def open(self) -> None:
        """Start receiving lines."""

    @abstractmethod
    async def write(self, data: bytes) -> None:
        """
        Send bytes to the device and wait for them to be flushed.

        Raises:
            UnavailableError: If the write fails.
        """

    @abstractmethod
    async def close(self) -> None:
        """Stop receiving lines and release the device."""


# =============================================================================
# Serial Discovery
# =============================================================================


@dataclass(frozen=True)
class DeviceDescriptor:
    """A serial port found during discovery."""

    path: str
    vendor_id: str | None = None
    product_id: str | None = None
    description: str = ""

    def to_dict(self) -> dict[str, Any]:
        """Convert the descriptor to a dictionary for logging."""
        return {
            "path": self.path,
            "vendor_id": self.vendor_id,
            "product_id": self.product_id,
            "description": self.description,
        }


def list_devices() -> list[DeviceDescriptor]:
    """
    List the serial ports visible to the host.

    Returns:
        One descriptor per port; USB ids are upper-case 4-digit hex strings,
        or None for non-USB ports.
    """
    devices: list[DeviceDescriptor] = []
    for port in list_ports.comports():
        devices.append(
            DeviceDescriptor(
                path=port.device,
                vendor_id=f"{port.vid:04X}" if port.vid is not None else None,
                product_id=f"{port.pid:04X}" if port.pid is not None else None,
                description=port.description or "",
            )
        )
    return devices


def find_sensor_port(config: SerialConfig) -> DeviceDescriptor | None:
    """
    Locate the sensor's serial port.

    An explicit config.port wins; otherwise the first port matching the
    configured USB vendor/product id is returned.

    Returns:
        The matching descriptor, or None if no sensor is attached.
    """
    if config.port:
        return DeviceDescriptor(path=config.port, description="configured port")

    try:
        devices = list_devices()
    except Exception as e:
        logger.error("Error listing serial ports", extra={"error": str(e)})
        return None

    for device in devices:
        if device.vendor_id == config.vendor_id and device.product_id == config.product_id:
            logger.info("Found sensor serial port", extra=device.to_dict())
            return device

    logger.info(
        "No sensor serial port found",
        extra={
            "vendor_id": config.vendor_id,
            "product_id": config.product_id,
            "ports": [d.path for d in devices],
        },
    )
    return None


# =============================================================================
# Serial Transport
# =============================================================================


class SerialTransport(HardwareTransport):
    """
    HardwareTransport over a pyserial port.

    A daemon thread performs blocking reads, frames them into lines and hands
    each line to the event loop with call_soon_threadsafe, so listeners always
    run on the loop thread.

    Example:
        >>> transport = SerialTransport(descriptor, baud_rate=115200)
        >>> await transport.open()
        >>> sub = transport.subscribe(print)
        >>> await transport.write(b"getdata\\r\\n")
    """

    def __init__(
        self,
        descriptor: DeviceDescriptor,
        baud_rate: int = 115200,
        read_timeout: float = 0.5,
    ) -> None:
        super().__init__()
        self.descriptor = descriptor
        self.baud_rate = baud_rate
        self.read_timeout = read_timeout
        self._serial: serial.Serial | None = None
        self._loop: asyncio.AbstractEventLoop | None = None
        self._reader: threading.Thread | None = None
        self._stop = threading.Event()
        self._write_lock = asyncio.Lock()

    @classmethod
    def from_config(
        cls, descriptor: DeviceDescriptor, config: SerialConfig
    ) -> SerialTransport:
        """Create a transport for a discovered port using serial settings."""
        return cls(
            descriptor,
            baud_rate=config.baud_rate,
            read_timeout=config.read_timeout_seconds,
        )

    @property
    def description(self) -> str:
        return self.descriptor.path

    @property
    def is_open(self) -> bool:
        """Whether the underlying port is open."""
        return self._serial is not None and self._serial.is_open

    async def open(self) -> None:
        """
        Open the port and start the reader thread.

        Raises:
            UnavailableError: If the port cannot be opened.
        """
        if self.is_open:
            return

        self._loop = asyncio.get_running_loop()
        try:
            self._serial = await self._loop.run_in_executor(None, self._open_port)
        except serial.SerialException as e:
            raise UnavailableError(
                f"Cannot open serial port {self.descriptor.path}",
                details={"port": self.descriptor.path, "error": str(e)},
            ) from e

        self._stop.clear()
        self._reader = threading.Thread(
            target=self._read_loop,
            name=f"serial-reader-{self.descriptor.path}",
            daemon=True,
        )
        self._reader.start()
        logger.info(
            "Serial transport opened",
            extra={"port": self.descriptor.path, "baud_rate": self.baud_rate},
        )

    def _open_port(self) -> serial.Serial:
        return serial.Serial(
            port=self.descriptor.path,
            baudrate=self.baud_rate,
            timeout=self.read_timeout,
            write_timeout=self.read_timeout,
        )

    def _read_loop(self) -> None:
        """Reader thread body: blocking reads until stopped or the port fails."""
        framer = LineFramer()
        port = self._serial
        loop = self._loop
        assert port is not None and loop is not None

        while not self._stop.is_set():
            try:
                chunk = port.read(port.in_waiting or 1)
            except (serial.SerialException, OSError, TypeError) as e:
                if not self._stop.is_set():
                    logger.error(
                        "Serial read failed",
                        extra={"port": self.descriptor.path, "error": str(e)},
                    )
                break

            if not chunk:
                continue

            for line in framer.feed(chunk):
                line = line.strip()
                if line:
                    try:
                        loop.call_soon_threadsafe(self.publish, line)
                    except RuntimeError:
                        # Event loop already closed
                        return

    async def write(self, data: bytes) -> None:
        port = self._serial
        if port is None or not port.is_open:
            raise UnavailableError(
                "Serial port is not open", details={"port": self.descriptor.path}
            )

        loop = asyncio.get_running_loop()
        async with self._write_lock:
            try:
                await loop.run_in_executor(None, self._write_blocking, port, data)
            except (serial.SerialException, OSError) as e:
                raise UnavailableError(
                    "Error writing to serial port",
                    details={"port": self.descriptor.path, "error": str(e)},
                ) from e

    @staticmethod
    def _write_blocking(port: serial.Serial, data: bytes) -> None:
        port.write(data)
        port.flush()

    async def close(self) -> None:
        self._stop.set()
        port, self._serial = self._serial, None
        if port is not None:
            try:
                port.close()
            except (serial.SerialException, OSError) as e:
                logger.warning(
                    "Error closing serial port",
                    extra={"port": self.descriptor.path, "error": str(e)},
                )

        reader, self._reader = self._reader, None
        if reader is not None and reader is not threading.current_thread():
            loop = asyncio.get_running_loop()
            await loop.run_in_executor(None, reader.join, self.read_timeout * 2)

        logger.info("Serial transport closed", extra={"port": self.descriptor.path})


async def open_sensor_transport(config: SerialConfig) -> HardwareTransport | None:
    """
    Discover and open the sensor transport.

    Returns:
        An open transport, or None when serial is disabled, no sensor is
        found, or the port cannot be opened (simulation mode).
    """
    if not config.enabled:
        logger.info("Serial transport disabled, running in simulation mode")
        return None

    loop = asyncio.get_running_loop()
    descriptor = await loop.run_in_executor(None, find_sensor_port, config)
    if descriptor is None:
        logger.info("No USB serial port found, running in simulation mode")
        return None

    transport = SerialTransport.from_config(descriptor, config)
    try:
        await transport.open()
    except UnavailableError as e:
        logger.error(
            "Running in simulation mode due to error",
            extra={"error": e.message, "details": e.details},
        )
        return None
    return transport
