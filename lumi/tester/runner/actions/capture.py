"""Screenshots, screen recording and animated GIF capture."""

import asyncio
from datetime import datetime
from typing import TYPE_CHECKING

from lumi.tester.errors import LumiError
from lumi.tester.parser.commands import (
    BuildGifParams,
    CaptureGifFrameParams,
    ExportReportParams,
    PathParams,
    StartGifCaptureParams,
    StopGifCaptureParams,
)
from lumi.tester.runner.actions.registry import action
from lumi.tester.runner.gif import crop_png, encode_gif
from lumi.tester.utils.logger import get_logger

if TYPE_CHECKING:
    from lumi.tester.runner.executor import TestExecutor

logger = get_logger(__name__)


def _timestamped(prefix: str, suffix: str) -> str:
    return f"{prefix}_{datetime.now().strftime('%Y%m%d_%H%M%S')}{suffix}"


@action("takeScreenshot")
async def take_screenshot(executor: "TestExecutor", params: PathParams | None) -> None:
    name = (params.path if params else None) or _timestamped("screenshot", ".png")
    path = executor.context.output_path(name)
    await executor.driver.take_screenshot(str(path))
    executor.emitter.log(f"Screenshot saved: {path.name}", executor.depth)


@action("startRecording")
async def start_recording(executor: "TestExecutor", params: PathParams | None) -> None:
    name = (params.path if params else None) or _timestamped("recording", ".mp4")
    await executor.driver.start_recording(str(executor.context.output_path(name)))


@action("stopRecording")
async def stop_recording(executor: "TestExecutor", params: None) -> None:
    await executor.driver.stop_recording()


@action("exportReport")
async def export_report(executor: "TestExecutor", params: ExportReportParams) -> None:
    logger.warning(f"exportReport is not implemented yet, ignoring ({params.format}: {params.path})")


@action("captureGifFrame")
async def capture_gif_frame(executor: "TestExecutor", params: CaptureGifFrameParams) -> None:
    frame = await executor.driver.screenshot_bytes()
    if params.crop:
        frame = await asyncio.to_thread(crop_png, frame, params.crop)
    executor.gif_frames[params.name] = frame
    executor.emitter.log(f"Captured GIF frame '{params.name}'", executor.depth)


@action("buildGif")
async def build_gif(executor: "TestExecutor", params: BuildGifParams) -> None:
    frames = []
    for frame in params.frames:
        data = executor.gif_frames.get(frame.name)
        if data is None:
            raise LumiError(f"GIF frame not found: {frame.name}")
        frames.append((data, frame.delay or params.delay))

    if params.loop_count is not None:
        loop_count: int | None = params.loop_count
    else:
        loop_count = 0 if params.loop_gif else None

    output = executor.context.output_path(params.output)
    await asyncio.to_thread(
        encode_gif,
        frames,
        output,
        params.width,
        params.height,
        params.quality,
        params.colors,
        loop_count,
    )
    executor.emitter.log(f"Built GIF: {output.name} ({len(frames)} frames)", executor.depth)


@action("startGifCapture")
async def start_gif_capture(executor: "TestExecutor", params: StartGifCaptureParams | None) -> None:
    params = params or StartGifCaptureParams()
    executor.auto_gif.start(params.interval, params.max_frames, params.width)
    executor.emitter.log(
        f"Auto GIF capture started (every {params.interval}ms, max {params.max_frames} frames)",
        executor.depth,
    )


@action("stopGifCapture")
async def stop_gif_capture(executor: "TestExecutor", params: StopGifCaptureParams) -> None:
    interval = executor.auto_gif.interval_ms
    width = executor.auto_gif.width
    frames = executor.auto_gif.stop()
    if not frames:
        raise LumiError("No frames captured! Make sure startGifCapture was called.")

    delay = params.delay or interval
    loop_count = params.loop_count if params.loop_count is not None else 0
    output = executor.context.output_path(params.output)
    await asyncio.to_thread(
        encode_gif,
        [(frame, delay) for frame in frames],
        output,
        width,
        None,
        params.quality,
        128,
        loop_count,
    )
    executor.emitter.log(
        f"Built GIF: {output.name} ({len(frames)} frames, {delay}ms delay)", executor.depth
    )
