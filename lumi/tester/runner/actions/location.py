"""GPS route playback and synchronisation on its progress."""

from typing import TYPE_CHECKING

from lumi.tester.errors import FlowConfigError
from lumi.tester.parser.commands import (
    MockLocationControlParams,
    MockLocationParams,
    WaitForLocationParams,
    WaitForMockCompletionParams,
)
from lumi.tester.parser.gps import parse_gps_file
from lumi.tester.runner.actions.registry import action
from lumi.tester.services.mock_location import SpeedMode

if TYPE_CHECKING:
    from lumi.tester.runner.executor import TestExecutor

DEFAULT_INTERVAL_MS = 1000


@action("mockLocation")
async def mock_location(executor: "TestExecutor", params: MockLocationParams) -> None:
    path = executor.context.resolve_path(params.file)
    if not path.exists():
        raise FlowConfigError(f"GPS file not found: {path}")
    points = parse_gps_file(path)
    if params.start_index is not None and params.start_index < len(points):
        points = points[params.start_index :]

    executor.emitter.log(f"Loaded {len(points)} GPS points from {path.name}", executor.depth)
    await executor.driver.start_mock_location(
        params.name or "",
        points,
        speed_kmh=params.speed,
        speed_mode=SpeedMode.from_str(params.speed_mode),
        speed_noise=params.speed_noise,
        interval_ms=params.interval_ms or DEFAULT_INTERVAL_MS,
        loop_route=params.loop_,
    )


@action("stopMockLocation")
async def stop_mock_location(executor: "TestExecutor", params: None) -> None:
    await executor.driver.stop_mock_location()


@action("mockLocationControl")
async def mock_location_control(
    executor: "TestExecutor", params: MockLocationControlParams
) -> None:
    await executor.driver.control_mock_location(
        params.name or "",
        speed=params.speed,
        speed_mode=SpeedMode.from_str(params.speed_mode) if params.speed_mode else None,
        speed_noise=params.speed_noise,
        pause=params.pause,
        resume=params.resume,
    )


@action("waitForLocation")
async def wait_for_location(executor: "TestExecutor", params: WaitForLocationParams) -> None:
    await executor.driver.wait_for_location(
        params.name or "", params.lat, params.lon, params.tolerance, params.timeout
    )


@action("waitForMockCompletion")
async def wait_for_mock_completion(
    executor: "TestExecutor", params: WaitForMockCompletionParams | None
) -> None:
    params = params or WaitForMockCompletionParams()
    await executor.driver.wait_for_mock_completion(params.name or "", params.timeout)
