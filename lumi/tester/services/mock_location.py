"""
Mock GPS playback.

Each named instance runs as a detached asyncio task that walks its waypoints
and publishes every position through a platform-supplied callback. The task
and the command handlers share one `MockLocationState` per name behind a lock.
"""

import asyncio
import contextlib
import json
import random
import tempfile
import time
from collections.abc import Awaitable, Callable
from enum import Enum
from functools import partial
from pathlib import Path

from pydantic import BaseModel

from lumi.tester.errors import LumiError, WaitTimeoutError
from lumi.tester.parser.gps import GpsPoint
from lumi.tester.utils.geo import haversine_distance, initial_bearing
from lumi.tester.utils.logger import get_logger

logger = get_logger(__name__)

CONTROL_FILE_PATH = Path(tempfile.gettempdir()) / "lumi-gps-control.json"
PAUSE_POLL_SECONDS = 0.1
STATE_POLL_SECONDS = 0.5
FIRST_POINT_SETTLE_SECONDS = 0.5
DEFAULT_SPEED_NOISE_KMH = 5.0
MIN_NOISY_SPEED_KMH = 1.0


class SpeedMode(str, Enum):
    LINEAR = "linear"
    NOISE = "noise"

    @classmethod
    def from_str(cls, value: str | None) -> "SpeedMode":
        return cls.NOISE if (value or "").lower() == "noise" else cls.LINEAR


class MockLocationState(BaseModel):
    current_lat: float | None = None
    current_lon: float | None = None
    is_running: bool = False
    finished: bool = False
    paused: bool = False
    speed: float | None = None  # km/h
    speed_mode: SpeedMode = SpeedMode.LINEAR
    speed_noise: float | None = None
    stop_requested: bool = False


class LocationUpdate(BaseModel):
    lat: float
    lon: float
    altitude: float = 0.0
    bearing: float = 0.0
    speed_ms: float = 0.0


LocationPublisher = Callable[[LocationUpdate], Awaitable[None]]
Sleep = Callable[[float], Awaitable[None]]


def instance_label(name: str) -> str:
    return name or "default"


def effective_speed_kmh(
    base: float | None, mode: SpeedMode, noise: float | None, rng: random.Random
) -> float:
    """Base speed, or base plus uniform noise in [-noise, +noise] floored at 1 km/h."""
    speed = base or 0.0
    if mode is SpeedMode.NOISE:
        spread = noise if noise is not None else DEFAULT_SPEED_NOISE_KMH
        return max(speed + rng.uniform(-spread, spread), MIN_NOISY_SPEED_KMH)
    return speed


def segment_delay_seconds(
    start: GpsPoint, end: GpsPoint, speed_kmh: float | None, interval_ms: int
) -> float:
    """Time to cover a segment at the given speed, else the fixed interval."""
    if speed_kmh is None:
        return interval_ms / 1000
    speed_ms = speed_kmh / 3.6
    if speed_ms <= 0.001:
        return interval_ms / 1000
    return haversine_distance(start.lat, start.lon, end.lat, end.lon) / speed_ms


def bearing_at(points: list[GpsPoint], index: int) -> float:
    if index < len(points) - 1:
        nxt = points[index + 1]
        return initial_bearing(points[index].lat, points[index].lon, nxt.lat, nxt.lon)
    if index > 0:
        prev = points[index - 1]
        return initial_bearing(prev.lat, prev.lon, points[index].lat, points[index].lon)
    return 0.0


class MockLocationManager:
    """Owns the shared state of every mock-location instance of one driver.

    Example:
        manager = MockLocationManager(publish=driver.publish_location)
        await manager.start("", points, speed_kmh=36)
        await manager.wait_for_location("", 10.001, 10.001, tolerance=50, timeout_ms=10000)
    """

    def __init__(
        self,
        publish: LocationPublisher,
        sleep: Sleep = asyncio.sleep,
        control_file: Path | None = CONTROL_FILE_PATH,
        rng: random.Random | None = None,
        clock: Callable[[], float] = time.monotonic,
    ):
        self._publish = publish
        self._sleep = sleep
        self._control_file = control_file
        self._rng = rng or random.Random()
        self._clock = clock
        self._lock = asyncio.Lock()
        self._states: dict[str, MockLocationState] = {}
        self._tasks: dict[str, asyncio.Task] = {}

    async def get_state(self, name: str = "") -> MockLocationState | None:
        async with self._lock:
            state = self._states.get(name)
            return state.model_copy() if state else None

    async def start(
        self,
        name: str,
        points: list[GpsPoint],
        speed_kmh: float | None = None,
        speed_mode: SpeedMode = SpeedMode.LINEAR,
        speed_noise: float | None = None,
        interval_ms: int = 1000,
        loop_route: bool = False,
    ) -> None:
        """
        Spawn playback for `name`.

        Starting an instance whose name is already in use cancels the
        previous playback for that name before replacing its state record.
        """
        if not points:
            raise LumiError("No GPS points provided for mock location")

        logger.info(f"Starting mock location '{instance_label(name)}' with {len(points)} waypoints")
        if speed_kmh is not None:
            mode = "linear" if speed_mode is SpeedMode.LINEAR else f"noise ±{speed_noise or 5.0:.1f}"
            logger.info(f"Using speed: {speed_kmh} km/h ({mode})")

        previous = self._tasks.pop(name, None)
        if previous is not None and not previous.done():
            logger.info(f"Replacing running mock location '{instance_label(name)}'")
            previous.cancel()
            with contextlib.suppress(asyncio.CancelledError):
                await previous

        async with self._lock:
            self._states[name] = MockLocationState(
                is_running=True,
                speed=speed_kmh,
                speed_mode=speed_mode,
                speed_noise=speed_noise,
            )

        task = asyncio.create_task(
            self._playback(name, list(points), interval_ms, loop_route),
            name=f"mock-location-{instance_label(name)}",
        )
        self._tasks[name] = task
        task.add_done_callback(partial(self._forget_task, name))
        await self._sleep(FIRST_POINT_SETTLE_SECONDS)

    def _forget_task(self, name: str, task: asyncio.Task) -> None:
        if self._tasks.get(name) is task:
            del self._tasks[name]

    def running_tasks(self) -> dict[str, asyncio.Task]:
        return dict(self._tasks)

    async def stop(self, name: str | None = None) -> None:
        """Ask one instance (or every instance when `name` is None) to stop."""
        async with self._lock:
            names = list(self._states) if name is None else [name]
            for key in names:
                state = self._states.get(key)
                if state is not None:
                    state.stop_requested = True
                    state.is_running = False
        logger.info("Mock location stopped")

    async def control(
        self,
        name: str,
        speed: float | None = None,
        speed_mode: SpeedMode | None = None,
        speed_noise: float | None = None,
        pause: bool | None = None,
        resume: bool | None = None,
    ) -> None:
        async with self._lock:
            state = self._states.get(name)
            if state is None:
                raise LumiError(f"Mock location instance '{instance_label(name)}' not found")
            if speed is not None:
                logger.info(f"Updating mock speed to {speed} km/h")
                state.speed = speed
            if speed_mode is not None:
                state.speed_mode = speed_mode
            if speed_noise is not None:
                state.speed_noise = speed_noise
            if pause:
                logger.info("Pausing mock location")
                state.paused = True
            if resume:
                logger.info("Resuming mock location")
                state.paused = False

    async def wait_for_location(
        self, name: str, lat: float, lon: float, tolerance: float, timeout_ms: int
    ) -> MockLocationState:
        logger.info(f"Waiting for location ({lat:.4f}, {lon:.4f}) within {tolerance:.1f}m...")
        deadline = self._clock() + timeout_ms / 1000
        while True:
            state = await self.get_state(name)
            if state and state.current_lat is not None and state.current_lon is not None:
                distance = haversine_distance(state.current_lat, state.current_lon, lat, lon)
                if distance <= tolerance:
                    logger.success(
                        f"Reached location ({state.current_lat:.4f}, {state.current_lon:.4f}). "
                        f"Distance: {distance:.1f}m"
                    )
                    return state
            if self._clock() >= deadline:
                raise WaitTimeoutError("Timeout waiting for location")
            await self._sleep(STATE_POLL_SECONDS)

    async def wait_for_completion(self, name: str, timeout_ms: int | None = None) -> None:
        logger.info(f"Waiting for mock location '{instance_label(name)}' completion...")
        deadline = None if timeout_ms is None else self._clock() + timeout_ms / 1000
        while True:
            state = await self.get_state(name)
            if state is not None and state.finished:
                logger.success("Mock location completed")
                return
            if deadline is not None and self._clock() >= deadline:
                raise WaitTimeoutError("Timeout waiting for mock location completion")
            await self._sleep(STATE_POLL_SECONDS)

    def _read_control_file(self) -> dict | None:
        if self._control_file is None or not self._control_file.exists():
            return None
        try:
            content = json.loads(self._control_file.read_text())
        except (OSError, json.JSONDecodeError) as e:
            logger.debug(f"Ignoring unreadable control file: {e}")
            return None
        self._control_file.unlink(missing_ok=True)
        return content if isinstance(content, dict) else None

    async def _apply_control_file(self, name: str) -> None:
        control = self._read_control_file()
        if not control:
            return
        async with self._lock:
            state = self._states.get(name)
            if state is None:
                return
            if isinstance(control.get("speed"), int | float):
                state.speed = float(control["speed"])
            if isinstance(control.get("paused"), bool):
                state.paused = control["paused"]
            if isinstance(control.get("speedMode"), str):
                state.speed_mode = SpeedMode.from_str(control["speedMode"])

    async def _wait_while_paused(self, name: str) -> bool:
        """Returns False when the instance was asked to stop."""
        while True:
            await self._apply_control_file(name)
            async with self._lock:
                state = self._states.get(name)
                if state is None or state.stop_requested:
                    return False
                if not state.paused:
                    return True
            await self._sleep(PAUSE_POLL_SECONDS)

    async def _playback(
        self, name: str, points: list[GpsPoint], interval_ms: int, loop_route: bool
    ) -> None:
        try:
            while True:
                for index, point in enumerate(points):
                    if not await self._wait_while_paused(name):
                        return

                    async with self._lock:
                        state = self._states.get(name)
                        if state is None:
                            return
                        state.current_lat = point.lat
                        state.current_lon = point.lon
                        speed, mode, noise = state.speed, state.speed_mode, state.speed_noise

                    speed_kmh = effective_speed_kmh(speed, mode, noise, self._rng)
                    await self._publish(
                        LocationUpdate(
                            lat=point.lat,
                            lon=point.lon,
                            altitude=point.altitude or 0.0,
                            bearing=bearing_at(points, index),
                            speed_ms=speed_kmh / 3.6,
                        )
                    )

                    if index < len(points) - 1:
                        segment_speed = None if speed is None else speed_kmh
                        await self._sleep(
                            segment_delay_seconds(point, points[index + 1], segment_speed, interval_ms)
                        )

                if not loop_route:
                    break

            async with self._lock:
                state = self._states.get(name)
                if state is not None:
                    state.is_running = False
                    state.finished = True
            logger.success("Mock location playback completed")
        except Exception as e:
            logger.error(f"Mock location '{instance_label(name)}' stopped on error: {e}")
            async with self._lock:
                state = self._states.get(name)
                if state is not None:
                    state.is_running = False
