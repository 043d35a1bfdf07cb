import asyncio
import json
import random

import numpy as np
import pytest

from lumi.tester.errors import LumiError, WaitTimeoutError
from lumi.tester.parser.gps import GpsPoint
from lumi.tester.services.audio_capture import (
    analyze_samples,
    calculate_rms,
    detect_ducking,
    volume_timeline,
)
from lumi.tester.services.mock_location import (
    MockLocationManager,
    SpeedMode,
    effective_speed_kmh,
    segment_delay_seconds,
)


class SimulatedTime:
    """Records requested sleeps and returns immediately."""

    def __init__(self):
        self.requested: list[float] = []

    async def sleep(self, seconds: float) -> None:
        self.requested.append(seconds)
        await asyncio.sleep(0)


@pytest.fixture
def simulated():
    return SimulatedTime()


@pytest.fixture
def published():
    return []


@pytest.fixture
def manager(simulated, published):
    async def publish(update):
        published.append(update)

    return MockLocationManager(publish=publish, sleep=simulated.sleep, control_file=None)


ROUTE = [GpsPoint(lat=10.0, lon=10.0), GpsPoint(lat=10.001, lon=10.001)]


class TestMockLocationPlayback:
    @pytest.mark.asyncio
    async def test_arrival_at_second_waypoint(self, manager, simulated, published):
        await manager.start("", ROUTE, speed_kmh=36)

        state = await manager.wait_for_location("", 10.001, 10.001, tolerance=50, timeout_ms=10000)

        assert state.current_lat == 10.001
        # ~156 m at 10 m/s
        assert 15.0 < max(simulated.requested) < 16.5
        assert [p.lat for p in published] == [10.0, 10.001]
        assert published[0].speed_ms == pytest.approx(10.0)
        await manager.wait_for_completion("", timeout_ms=1000)

    @pytest.mark.asyncio
    async def test_completion_sets_finished(self, manager):
        await manager.start("route", ROUTE, interval_ms=10)
        await manager.wait_for_completion("route", timeout_ms=2000)
        state = await manager.get_state("route")
        assert state.finished
        assert not state.is_running

    @pytest.mark.asyncio
    async def test_restart_cancels_previous_playback(self, manager):
        await manager.start("car", ROUTE, interval_ms=10, loop_route=True)
        first = manager.running_tasks()["car"]

        await manager.start("car", ROUTE, interval_ms=10, loop_route=True)

        second = manager.running_tasks()["car"]
        assert first.cancelled()
        assert second is not first
        await manager.stop("car")
        await asyncio.wait_for(second, timeout=1)
        await asyncio.sleep(0)
        assert manager.running_tasks() == {}

    @pytest.mark.asyncio
    async def test_finished_playback_is_forgotten(self, manager):
        await manager.start("route", ROUTE, interval_ms=10)
        task = manager.running_tasks()["route"]
        await manager.wait_for_completion("route", timeout_ms=2000)
        await task
        assert "route" not in manager.running_tasks()

    @pytest.mark.asyncio
    async def test_start_without_points_fails(self, manager):
        with pytest.raises(LumiError):
            await manager.start("", [])

    @pytest.mark.asyncio
    async def test_control_unknown_instance_fails(self, manager):
        with pytest.raises(LumiError, match="'default' not found"):
            await manager.control("", speed=10)

    @pytest.mark.asyncio
    async def test_control_after_finish_is_accepted(self, manager):
        await manager.start("", ROUTE, interval_ms=10)
        await manager.wait_for_completion("", timeout_ms=2000)
        await manager.control("", speed=50, pause=True)
        state = await manager.get_state("")
        assert state.speed == 50
        assert state.paused

    @pytest.mark.asyncio
    async def test_wait_for_location_times_out(self, manager):
        await manager.start("", ROUTE, interval_ms=10)
        with pytest.raises(WaitTimeoutError):
            await manager.wait_for_location("", 50.0, 50.0, tolerance=5, timeout_ms=0)

    @pytest.mark.asyncio
    async def test_stop_ends_playback_without_finishing(self, published):
        gate = asyncio.Event()

        async def publish(update):
            published.append(update)

        async def blocking_sleep(seconds):
            await gate.wait()

        manager = MockLocationManager(publish=publish, sleep=blocking_sleep, control_file=None)
        start = asyncio.create_task(manager.start("", ROUTE * 3, interval_ms=10))
        await asyncio.sleep(0)
        await asyncio.sleep(0)
        await manager.stop("")
        gate.set()
        await start
        for _ in range(5):
            await asyncio.sleep(0)

        state = await manager.get_state("")
        assert not state.is_running
        assert not state.finished
        assert len(published) <= 2

    @pytest.mark.asyncio
    async def test_control_file_is_applied_and_removed(self, tmp_path, simulated, published):
        control_file = tmp_path / "control.json"
        control_file.write_text(json.dumps({"speed": 72, "speedMode": "noise"}))

        async def publish(update):
            published.append(update)

        manager = MockLocationManager(
            publish=publish, sleep=simulated.sleep, control_file=control_file
        )
        await manager.start("", ROUTE, speed_kmh=36)
        await manager.wait_for_completion("", timeout_ms=2000)

        state = await manager.get_state("")
        assert state.speed == 72
        assert state.speed_mode is SpeedMode.NOISE
        assert not control_file.exists()


class TestSpeedModel:
    def test_linear_speed(self):
        assert effective_speed_kmh(40, SpeedMode.LINEAR, 5, random.Random(1)) == 40

    def test_noise_stays_within_range_and_floor(self):
        rng = random.Random(3)
        for _ in range(100):
            speed = effective_speed_kmh(20, SpeedMode.NOISE, 5, rng)
            assert 15 <= speed <= 25
        assert effective_speed_kmh(0, SpeedMode.NOISE, 0.5, rng) == 1.0

    def test_segment_delay_uses_interval_without_speed(self):
        assert segment_delay_seconds(ROUTE[0], ROUTE[1], None, 750) == 0.75
        assert segment_delay_seconds(ROUTE[0], ROUTE[1], 0, 750) == 0.75


class TestAudioAnalysis:
    def test_rms_of_constant_signal(self):
        samples = np.full(1000, 16384, dtype=np.int16)
        assert calculate_rms(samples) == pytest.approx(0.5, abs=0.001)
        assert calculate_rms(np.array([], dtype=np.int16)) == 0.0

    def test_timeline_windows_are_100ms(self):
        samples = np.zeros(48000 * 2, dtype=np.int16)
        timeline = volume_timeline(samples)
        assert [t for t, _ in timeline] == [i * 100 for i in range(10)]

    def test_detects_single_ducking_event(self):
        volumes = [0.5] * 10 + [0.1] * 3 + [0.5] * 10
        timeline = [(i * 100, v) for i, v in enumerate(volumes)]

        events = detect_ducking(timeline, drop_threshold=30)

        assert len(events) == 1
        assert events[0].start_ms == 1000
        assert events[0].end_ms == 1300
        assert events[0].drop_percent == pytest.approx(80.0)

    def test_short_timeline_has_no_events(self):
        timeline = [(i * 100, v) for i, v in enumerate([0.5, 0.1, 0.5])]
        assert detect_ducking(timeline) == []

    def test_has_ducking_filters_by_drop(self):
        window = 48000 * 2 // 10
        loud = np.full(window * 10, 16000, dtype=np.int16)
        quiet = np.full(window * 3, 1000, dtype=np.int16)
        analysis = analyze_samples(np.concatenate([loud, quiet, loud]), duration_ms=2300)
        assert analysis.has_ducking(min_events=1, min_drop_percent=50)
        assert not analysis.has_ducking(min_events=1, min_drop_percent=99)
