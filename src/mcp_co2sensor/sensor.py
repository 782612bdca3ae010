"""
Sensor acquisition engine.

SensorEngine owns the current CO2 reading. An acquisition either answers
immediately from the simulator (no hardware attached) or runs a race between
the hardware printing a valid reading and a timeout:

    IDLE -> AWAITING_HARDWARE -> RESOLVED
    IDLE -> AWAITING_HARDWARE -> TIMED_OUT -> RESOLVED

Each call gets its own PendingAcquisition holding one timer handle and one
line subscription. Whichever side fires first resolves the call and releases
both handles; the other side then finds the state already past
AWAITING_HARDWARE and does nothing. Concurrent calls share the transport's
line stream but never each other's handles.
"""

from __future__ import annotations

import asyncio
import random
import re
from collections.abc import Callable
from dataclasses import dataclass
from datetime import datetime
from enum import Enum
from typing import TYPE_CHECKING, Any

from mcp_co2sensor.errors import UnavailableError
from mcp_co2sensor.logging import get_logger, get_sensor_log

if TYPE_CHECKING:
    from mcp_co2sensor.config import SensorConfig
    from mcp_co2sensor.transport import HardwareTransport, LineEventSource, Subscription

logger = get_logger(__name__)

READING_PATTERN = re.compile(r"CO2 \(ppm\):(\d+)")

TIMESTAMP_FORMAT = "%Y/%m/%d %H:%M:%S"


def format_timestamp(value: datetime) -> str:
    """Format a local timestamp as "YYYY/MM/DD HH:MM:SS"."""
    return value.strftime(TIMESTAMP_FORMAT)


def parse_reading(line: str) -> int | None:
    """
    Extract a CO2 value from one line of sensor output.

    Returns:
        The ppm value, or None if the line has no reading or the value is
        not positive.

    Example:
        >>> parse_reading("CO2 (ppm):812")
        812
        >>> parse_reading("CO2 (ppm):0") is None
        True
    """
    match = READING_PATTERN.search(line)
    if match is None:
        return None
    value = int(match.group(1))
    if value <= 0:
        return None
    return value


class ReadingStatus(str, Enum):
    """Where a reading came from."""

    DATA_RECEIVED = "data_received"
    TIMEOUT_SIMULATED_DATA = "timeout_simulated_data"
    SIMULATED_DATA = "simulated_data"


@dataclass(frozen=True)
class SensorReading:
    """
    One CO2 reading.

    Attributes:
        co2_level: CO2 concentration in ppm.
        last_update: Local time the reading was taken.
        status: Origin of the reading.
    """

    co2_level: int
    last_update: datetime
    status: ReadingStatus

    def to_dict(self) -> dict[str, Any]:
        """Convert to the wire representation."""
        return {
            "co2Level": self.co2_level,
            "lastUpdate": format_timestamp(self.last_update),
            "status": self.status.value,
        }


# =============================================================================
# Acquisition Race
# =============================================================================


class AcquisitionState(str, Enum):
    """Lifecycle of a single acquisition call."""

    IDLE = "idle"
    AWAITING_HARDWARE = "awaiting_hardware"
    TIMED_OUT = "timed_out"
    RESOLVED = "resolved"


class PendingAcquisition:
    """
    State of one hardware acquisition: a line subscription raced against a timer.

    The first valid reading or the timer expiry resolves the call; both handles
    are released at that moment. Use as an async context manager so the
    handles are also released on faults and cancellation.

    Args:
        source: Line stream to watch.
        timeout: Seconds to wait before falling back.
        on_reading: Called with the parsed value when hardware wins; returns
            the resolved reading.
        on_timeout: Called when the timer wins; returns the fallback reading.

    Example:
        >>> async with PendingAcquisition(transport, 5.0, store, fallback) as pending:
        ...     await transport.write(b"getdata\\r\\n")
        ...     reading = await pending.result()
    """

    def __init__(
        self,
        source: LineEventSource,
        timeout: float,
        on_reading: Callable[[int], SensorReading],
        on_timeout: Callable[[], SensorReading],
    ) -> None:
        self._source = source
        self._timeout = timeout
        self._on_reading = on_reading
        self._on_timeout = on_timeout
        self.state = AcquisitionState.IDLE
        self._future: asyncio.Future[SensorReading] | None = None
        self._timer: asyncio.TimerHandle | None = None
        self._subscription: Subscription | None = None

    @property
    def released(self) -> bool:
        """True once neither the timer nor the subscription is held."""
        return self._timer is None and self._subscription is None

    def start(self) -> None:
        """Subscribe to the line stream and arm the timer."""
        if self.state is not AcquisitionState.IDLE:
            raise RuntimeError(f"Acquisition already started (state={self.state.value})")

        loop = asyncio.get_running_loop()
        self._future = loop.create_future()
        self._subscription = self._source.subscribe(self._handle_line)
        self._timer = loop.call_later(self._timeout, self._handle_timer)
        self.state = AcquisitionState.AWAITING_HARDWARE

    async def result(self) -> SensorReading:
        """Wait for the race to resolve."""
        if self._future is None:
            raise RuntimeError("Acquisition not started")
        return await self._future

    def _handle_line(self, line: str) -> None:
        if self.state is not AcquisitionState.AWAITING_HARDWARE:
            return
        value = parse_reading(line)
        if value is None:
            logger.debug("Ignoring sensor line without a reading", extra={"line": line})
            return
        self._release()
        self._resolve(self._on_reading, value)

    def _handle_timer(self) -> None:
        # The handle has fired; nothing left to cancel
        self._timer = None
        if self.state is not AcquisitionState.AWAITING_HARDWARE:
            return
        self.state = AcquisitionState.TIMED_OUT
        self._release()
        self._resolve(self._on_timeout)

    def _resolve(self, produce: Callable[..., SensorReading], *args: Any) -> None:
        self.state = AcquisitionState.RESOLVED
        future = self._future
        assert future is not None
        if future.done():
            return
        try:
            reading = produce(*args)
        except Exception as e:
            future.set_exception(e)
            return
        future.set_result(reading)

    def _release(self) -> None:
        timer, self._timer = self._timer, None
        if timer is not None:
            timer.cancel()
        subscription, self._subscription = self._subscription, None
        if subscription is not None:
            subscription.close()

    def expire(self) -> None:
        """Resolve now as if the timer had fired (used on shutdown)."""
        if self.state is not AcquisitionState.AWAITING_HARDWARE:
            return
        timer, self._timer = self._timer, None
        if timer is not None:
            timer.cancel()
        self._handle_timer()

    def abandon(self) -> None:
        """Release both handles without resolving (fault or cancellation path)."""
        self._release()
        if self.state in (AcquisitionState.IDLE, AcquisitionState.AWAITING_HARDWARE):
            self.state = AcquisitionState.RESOLVED
            if self._future is not None and not self._future.done():
                self._future.cancel()

    async def __aenter__(self) -> PendingAcquisition:
        self.start()
        return self

    async def __aexit__(self, *exc_info: Any) -> None:
        self.abandon()


# =============================================================================
# Engine
# =============================================================================


class SensorEngine:
    """
    Owner of the current CO2 reading and of all in-flight acquisitions.

    Example:
        >>> engine = SensorEngine(config.sensor)
        >>> reading = await engine.acquire()
        >>> reading.status
        <ReadingStatus.SIMULATED_DATA: 'simulated_data'>
    """

    def __init__(
        self,
        config: SensorConfig,
        transport: HardwareTransport | None = None,
        rng: random.Random | None = None,
    ) -> None:
        self.config = config
        self._rng = rng if rng is not None else random.Random()
        self._sensor_log = get_sensor_log()
        self._reading = SensorReading(
            co2_level=0,
            last_update=datetime.now(),
            status=ReadingStatus.SIMULATED_DATA,
        )
        self._transport: HardwareTransport | None = None
        self._listener: Subscription | None = None
        self._pending: set[PendingAcquisition] = set()
        if transport is not None:
            self.attach(transport)

    @property
    def transport(self) -> HardwareTransport | None:
        """The attached hardware transport, if any."""
        return self._transport

    @property
    def hardware_attached(self) -> bool:
        """Whether readings come from hardware."""
        return self._transport is not None

    @property
    def current_reading(self) -> SensorReading:
        """The most recently stored reading."""
        return self._reading

    @property
    def pending_count(self) -> int:
        """Number of acquisitions currently awaiting hardware."""
        return len(self._pending)

    @property
    def timeout_seconds(self) -> float:
        return self.config.timeout_ms / 1000.0

    # -------------------------------------------------------------------------
    # Lifecycle
    # -------------------------------------------------------------------------

    def attach(self, transport: HardwareTransport) -> None:
        """Attach a hardware transport and follow every reading it prints."""
        if self._transport is not None:
            raise RuntimeError("A hardware transport is already attached")
        self._transport = transport
        self._listener = transport.subscribe(self._handle_hardware_line)
        logger.info("Sensor hardware attached", extra={"device": transport.description})

    async def detach(self) -> None:
        """
        Stop following the transport and close it.

        Acquisitions still awaiting hardware resolve with simulated fallback
        data, so every caller gets an answer.
        """
        transport, self._transport = self._transport, None
        listener, self._listener = self._listener, None
        if listener is not None:
            listener.close()
        for pending in list(self._pending):
            pending.expire()
        if transport is not None:
            await transport.close()

    # -------------------------------------------------------------------------
    # Readings
    # -------------------------------------------------------------------------

    def _store(self, co2_level: int, status: ReadingStatus) -> SensorReading:
        reading = SensorReading(
            co2_level=co2_level, last_update=datetime.now(), status=status
        )
        self._reading = reading
        return reading

    def _simulated_value(self) -> int:
        return self._rng.randrange(self.config.simulated_min, self.config.simulated_max)

    def _handle_hardware_line(self, line: str) -> None:
        value = parse_reading(line)
        if value is not None:
            self._store(value, ReadingStatus.DATA_RECEIVED)

    def _hardware_won(self, value: int) -> SensorReading:
        reading = self._store(value, ReadingStatus.DATA_RECEIVED)
        self._sensor_log.info("sensor data received: %d", value)
        return reading

    def _timeout_won(self) -> SensorReading:
        reading = self._store(
            self._simulated_value(), ReadingStatus.TIMEOUT_SIMULATED_DATA
        )
        self._sensor_log.info(
            "sensor data wait timeout - using simulated value: %d", reading.co2_level
        )
        return reading

    def tick(self) -> None:
        """
        Periodic refresh: without hardware, replace the reading with a new
        simulated value; with hardware, only bump the timestamp.
        """
        if self._transport is None:
            self._store(self._simulated_value(), ReadingStatus.SIMULATED_DATA)
        else:
            current = self._reading
            self._store(current.co2_level, current.status)

    async def acquire(self) -> SensorReading:
        """
        Obtain a current reading.

        Without hardware this returns a fresh simulated reading immediately.
        With hardware it requests a reading and waits for the first valid
        line or the configured timeout, whichever comes first.

        Returns:
            The resolved SensorReading.
        """
        transport = self._transport
        if transport is None:
            reading = self._store(self._simulated_value(), ReadingStatus.SIMULATED_DATA)
            self._sensor_log.info("sensor data requested: %d", reading.co2_level)
            return reading

        self._sensor_log.info("sensor data requested - waiting for data...")
        pending = PendingAcquisition(
            transport,
            self.timeout_seconds,
            on_reading=self._hardware_won,
            on_timeout=self._timeout_won,
        )
        self._pending.add(pending)
        try:
            async with pending:
                await self._request_reading(transport)
                return await pending.result()
        finally:
            self._pending.discard(pending)

    async def _request_reading(self, transport: HardwareTransport) -> None:
        """Ask the hardware for a reading; failures fall through to the timeout."""
        try:
            await transport.write(self.config.request_command.encode("utf-8"))
        except UnavailableError as e:
            self._sensor_log.info("Error requesting data: %s", e.message)
            logger.warning(
                "Sensor data request failed",
                extra={"error": e.message, "device": transport.description},
            )
