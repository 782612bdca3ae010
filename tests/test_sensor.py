"""
Tests for the sensor acquisition engine.

This test module validates:
- Reading parsing from sensor output lines
- Simulation-mode acquisition
- The hardware-vs-timeout race and its exactly-once resolution
- Handle release on every exit path
- Overlapping acquisitions sharing one line stream
"""

from __future__ import annotations

import asyncio
import random
from datetime import datetime

import pytest
from conftest import FakeTransport

from mcp_co2sensor.config import SensorConfig
from mcp_co2sensor.sensor import (
    AcquisitionState,
    PendingAcquisition,
    ReadingStatus,
    SensorEngine,
    SensorReading,
    format_timestamp,
    parse_reading,
)

TIMEOUT_MS = 100


@pytest.fixture
def sensor_config() -> SensorConfig:
    return SensorConfig(timeout_ms=TIMEOUT_MS)


@pytest.fixture
def engine(sensor_config: SensorConfig) -> SensorEngine:
    return SensorEngine(sensor_config, rng=random.Random(7))


@pytest.fixture
def hw_engine(sensor_config: SensorConfig, fake_transport: FakeTransport) -> SensorEngine:
    return SensorEngine(sensor_config, transport=fake_transport, rng=random.Random(7))


async def _let_tasks_run(iterations: int = 3) -> None:
    for _ in range(iterations):
        await asyncio.sleep(0)


# =============================================================================
# Parsing and formatting
# =============================================================================


class TestParseReading:
    """Tests for parse_reading."""

    def test_valid_line(self) -> None:
        assert parse_reading("CO2 (ppm):812") == 812

    def test_line_with_surrounding_text(self) -> None:
        assert parse_reading("[sensor] CO2 (ppm):450 ok") == 450

    def test_zero_is_rejected(self) -> None:
        assert parse_reading("CO2 (ppm):0") is None

    def test_garbled_lines(self) -> None:
        assert parse_reading("CO2 (ppm):") is None
        assert parse_reading("CO2 ppm 812") is None
        assert parse_reading("") is None
        assert parse_reading("temperature:21") is None


class TestSensorReading:
    """Tests for SensorReading serialization."""

    def test_to_dict(self) -> None:
        reading = SensorReading(
            co2_level=612,
            last_update=datetime(2024, 1, 5, 13, 4, 5),
            status=ReadingStatus.DATA_RECEIVED,
        )

        assert reading.to_dict() == {
            "co2Level": 612,
            "lastUpdate": "2024/01/05 13:04:05",
            "status": "data_received",
        }

    def test_format_timestamp_zero_pads(self) -> None:
        assert format_timestamp(datetime(2025, 3, 9, 7, 8, 9)) == "2025/03/09 07:08:09"


# =============================================================================
# Simulation mode
# =============================================================================


class TestSimulatedAcquisition:
    """Tests for acquisition without hardware."""

    @pytest.mark.asyncio
    async def test_returns_simulated_reading(self, engine: SensorEngine) -> None:
        reading = await engine.acquire()

        assert reading.status is ReadingStatus.SIMULATED_DATA
        assert 400 <= reading.co2_level < 1000
        assert engine.current_reading == reading
        assert engine.pending_count == 0

    @pytest.mark.asyncio
    async def test_resolves_without_waiting(self, engine: SensorEngine) -> None:
        loop = asyncio.get_running_loop()
        started = loop.time()

        await engine.acquire()

        assert loop.time() - started < 0.05

    @pytest.mark.asyncio
    async def test_range_respects_config(self) -> None:
        engine = SensorEngine(
            SensorConfig(simulated_min=500, simulated_max=501), rng=random.Random(1)
        )

        for _ in range(5):
            reading = await engine.acquire()
            assert reading.co2_level == 500

    def test_tick_refreshes_simulated_value(self, engine: SensorEngine) -> None:
        engine.tick()

        assert engine.current_reading.status is ReadingStatus.SIMULATED_DATA
        assert 400 <= engine.current_reading.co2_level < 1000


# =============================================================================
# Hardware race
# =============================================================================


class TestHardwareAcquisition:
    """Tests for the hardware-vs-timeout race."""

    @pytest.mark.asyncio
    async def test_hardware_reading_wins(
        self, hw_engine: SensorEngine, fake_transport: FakeTransport
    ) -> None:
        fake_transport.reply = "CO2 (ppm):812"

        reading = await hw_engine.acquire()

        assert reading.status is ReadingStatus.DATA_RECEIVED
        assert reading.co2_level == 812
        assert fake_transport.writes == [b"getdata\r\n"]

    @pytest.mark.asyncio
    async def test_no_late_timeout_after_hardware_wins(
        self, hw_engine: SensorEngine, fake_transport: FakeTransport
    ) -> None:
        fake_transport.reply = "CO2 (ppm):812"

        await hw_engine.acquire()
        await asyncio.sleep(TIMEOUT_MS / 1000 * 2)

        current = hw_engine.current_reading
        assert current.status is ReadingStatus.DATA_RECEIVED
        assert current.co2_level == 812

    @pytest.mark.asyncio
    async def test_timeout_when_hardware_silent(
        self, hw_engine: SensorEngine, fake_transport: FakeTransport
    ) -> None:
        loop = asyncio.get_running_loop()
        started = loop.time()

        reading = await hw_engine.acquire()
        elapsed = loop.time() - started

        assert reading.status is ReadingStatus.TIMEOUT_SIMULATED_DATA
        assert 400 <= reading.co2_level < 1000
        assert elapsed >= TIMEOUT_MS / 1000 - 0.01
        assert elapsed < TIMEOUT_MS / 1000 + 0.5

    @pytest.mark.asyncio
    async def test_garbled_lines_do_not_win(
        self, hw_engine: SensorEngine, fake_transport: FakeTransport
    ) -> None:
        task = asyncio.create_task(hw_engine.acquire())
        await _let_tasks_run()

        fake_transport.emit("garbage")
        fake_transport.emit("CO2 (ppm):0")
        fake_transport.emit("CO2 (ppm):")
        await _let_tasks_run()
        assert not task.done()

        fake_transport.emit("CO2 (ppm):733")
        reading = await task

        assert reading.status is ReadingStatus.DATA_RECEIVED
        assert reading.co2_level == 733

    @pytest.mark.asyncio
    async def test_write_failure_falls_through_to_timeout(
        self, hw_engine: SensorEngine, fake_transport: FakeTransport
    ) -> None:
        fake_transport.fail_writes = True

        reading = await hw_engine.acquire()

        assert reading.status is ReadingStatus.TIMEOUT_SIMULATED_DATA
        assert len(fake_transport.writes) == 1

    @pytest.mark.asyncio
    async def test_handles_released_after_each_outcome(
        self, hw_engine: SensorEngine, fake_transport: FakeTransport
    ) -> None:
        # Only the engine's own persistent listener remains between calls
        assert fake_transport.subscriber_count == 1

        fake_transport.reply = "CO2 (ppm):640"
        await hw_engine.acquire()
        assert fake_transport.subscriber_count == 1

        fake_transport.reply = None
        await hw_engine.acquire()
        assert fake_transport.subscriber_count == 1
        assert hw_engine.pending_count == 0

    @pytest.mark.asyncio
    async def test_cancelled_call_releases_handles(
        self, hw_engine: SensorEngine, fake_transport: FakeTransport
    ) -> None:
        task = asyncio.create_task(hw_engine.acquire())
        await _let_tasks_run()
        assert fake_transport.subscriber_count == 2

        task.cancel()
        with pytest.raises(asyncio.CancelledError):
            await task

        assert fake_transport.subscriber_count == 1
        assert hw_engine.pending_count == 0

    @pytest.mark.asyncio
    async def test_unsolicited_lines_update_current_reading(
        self, hw_engine: SensorEngine, fake_transport: FakeTransport
    ) -> None:
        fake_transport.emit("CO2 (ppm):901")

        assert hw_engine.current_reading.co2_level == 901
        assert hw_engine.current_reading.status is ReadingStatus.DATA_RECEIVED

    def test_tick_keeps_hardware_value(
        self, hw_engine: SensorEngine, fake_transport: FakeTransport
    ) -> None:
        fake_transport.emit("CO2 (ppm):555")

        hw_engine.tick()

        assert hw_engine.current_reading.co2_level == 555


class TestConcurrentAcquisitions:
    """Tests for overlapping acquisitions on one transport."""

    @pytest.mark.asyncio
    async def test_one_reading_resolves_all_waiting_calls(
        self, hw_engine: SensorEngine, fake_transport: FakeTransport
    ) -> None:
        first = asyncio.create_task(hw_engine.acquire())
        second = asyncio.create_task(hw_engine.acquire())
        await _let_tasks_run()
        assert hw_engine.pending_count == 2

        fake_transport.emit("CO2 (ppm):812")
        results = await asyncio.gather(first, second)

        assert [r.status for r in results] == [ReadingStatus.DATA_RECEIVED] * 2
        assert [r.co2_level for r in results] == [812, 812]

    @pytest.mark.asyncio
    async def test_later_call_times_out_independently(
        self, hw_engine: SensorEngine, fake_transport: FakeTransport
    ) -> None:
        first = asyncio.create_task(hw_engine.acquire())
        await _let_tasks_run()

        fake_transport.emit("CO2 (ppm):812")
        second = asyncio.create_task(hw_engine.acquire())

        first_reading, second_reading = await asyncio.wait_for(
            asyncio.gather(first, second), timeout=2.0
        )

        assert first_reading.status is ReadingStatus.DATA_RECEIVED
        assert first_reading.co2_level == 812
        assert second_reading.status is ReadingStatus.TIMEOUT_SIMULATED_DATA
        assert fake_transport.subscriber_count == 1

    @pytest.mark.asyncio
    async def test_detach_resolves_pending_calls(
        self, sensor_config: SensorConfig, fake_transport: FakeTransport
    ) -> None:
        engine = SensorEngine(
            sensor_config.model_copy(update={"timeout_ms": 60_000}),
            transport=fake_transport,
        )
        task = asyncio.create_task(engine.acquire())
        await _let_tasks_run()

        await engine.detach()
        reading = await asyncio.wait_for(task, timeout=1.0)

        assert reading.status is ReadingStatus.TIMEOUT_SIMULATED_DATA
        assert fake_transport.closed
        assert fake_transport.subscriber_count == 0
        assert not engine.hardware_attached


# =============================================================================
# PendingAcquisition state machine
# =============================================================================


def _fallback() -> SensorReading:
    return SensorReading(500, datetime.now(), ReadingStatus.TIMEOUT_SIMULATED_DATA)


def _received(value: int) -> SensorReading:
    return SensorReading(value, datetime.now(), ReadingStatus.DATA_RECEIVED)


class TestPendingAcquisition:
    """Tests for the per-call state machine."""

    @pytest.mark.asyncio
    async def test_hardware_path_states(self, fake_transport: FakeTransport) -> None:
        pending = PendingAcquisition(fake_transport, 1.0, _received, _fallback)
        assert pending.state is AcquisitionState.IDLE

        pending.start()
        assert pending.state is AcquisitionState.AWAITING_HARDWARE
        assert not pending.released

        fake_transport.emit("CO2 (ppm):700")

        assert pending.state is AcquisitionState.RESOLVED
        assert pending.released
        assert (await pending.result()).co2_level == 700

    @pytest.mark.asyncio
    async def test_timeout_path_resolves_once(self, fake_transport: FakeTransport) -> None:
        calls: list[str] = []

        def fallback() -> SensorReading:
            calls.append("timeout")
            return _fallback()

        def received(value: int) -> SensorReading:
            calls.append("hardware")
            return _received(value)

        pending = PendingAcquisition(fake_transport, 0.01, received, fallback)
        pending.start()

        reading = await pending.result()
        # A reading arriving after the timeout has no effect
        fake_transport.emit("CO2 (ppm):700")
        pending._handle_timer()

        assert reading.status is ReadingStatus.TIMEOUT_SIMULATED_DATA
        assert calls == ["timeout"]
        assert pending.released
        assert fake_transport.subscriber_count == 0

    @pytest.mark.asyncio
    async def test_start_twice_raises(self, fake_transport: FakeTransport) -> None:
        pending = PendingAcquisition(fake_transport, 1.0, _received, _fallback)
        pending.start()

        with pytest.raises(RuntimeError):
            pending.start()

        pending.abandon()

    @pytest.mark.asyncio
    async def test_result_before_start_raises(self, fake_transport: FakeTransport) -> None:
        pending = PendingAcquisition(fake_transport, 1.0, _received, _fallback)

        with pytest.raises(RuntimeError):
            await pending.result()

    @pytest.mark.asyncio
    async def test_fallback_failure_is_reported(self, fake_transport: FakeTransport) -> None:
        def broken() -> SensorReading:
            raise ValueError("rng exploded")

        pending = PendingAcquisition(fake_transport, 0.01, _received, broken)

        async with pending:
            with pytest.raises(ValueError):
                await pending.result()

        assert pending.released
        assert pending.state is AcquisitionState.RESOLVED

    @pytest.mark.asyncio
    async def test_context_manager_releases_on_error(
        self, fake_transport: FakeTransport
    ) -> None:
        pending = PendingAcquisition(fake_transport, 10.0, _received, _fallback)

        with pytest.raises(OSError):
            async with pending:
                raise OSError("boom")

        assert pending.released
        assert pending.state is AcquisitionState.RESOLVED
        assert fake_transport.subscriber_count == 0
