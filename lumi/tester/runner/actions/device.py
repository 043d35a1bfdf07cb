"""Device settings, clipboard, files, profiling and media playback."""

import json
from typing import TYPE_CHECKING

from lumi.tester.drivers.base import Orientation
from lumi.tester.errors import AssertionFailure, FlowConfigError
from lumi.tester.parser.commands import (
    AssertClipboardParams,
    AssertPerformanceParams,
    FileTransferParams,
    ModeParams,
    NetworkParams,
    PlayMediaParams,
    StartAudioCaptureParams,
    StartProfilingParams,
    StopProfilingParams,
    VariableParams,
    VerifyAudioDuckingParams,
)
from lumi.tester.runner.actions.registry import action
from lumi.tester.utils.logger import get_logger

if TYPE_CHECKING:
    from lumi.tester.runner.executor import TestExecutor

logger = get_logger(__name__)

LIMIT_UNITS = ("mb", "kb", "fps", "%")


# Screen and connectivity


@action("rotate")
async def rotate(executor: "TestExecutor", params: ModeParams) -> None:
    await executor.driver.rotate_screen(params.mode)


@action("setOrientation")
async def set_orientation(executor: "TestExecutor", params: ModeParams) -> None:
    try:
        orientation = Orientation.parse(params.mode)
    except ValueError as e:
        raise FlowConfigError(f"Unknown orientation: {params.mode}") from e
    await executor.driver.set_orientation(orientation)


@action("setNetwork")
async def set_network(executor: "TestExecutor", params: NetworkParams) -> None:
    await executor.driver.set_network_connection(params.wifi, params.data)


@action("airplaneMode")
async def airplane_mode(executor: "TestExecutor", params: None) -> None:
    await executor.driver.toggle_airplane_mode()


@action("setVolume")
async def set_volume(executor: "TestExecutor", level: int) -> None:
    await executor.driver.set_volume(level)


@action("lockDevice")
async def lock_device(executor: "TestExecutor", params: None) -> None:
    await executor.driver.lock_device()


@action("unlockDevice")
async def unlock_device(executor: "TestExecutor", params: None) -> None:
    await executor.driver.unlock_device()


@action("openNotifications")
async def open_notifications(executor: "TestExecutor", params: None) -> None:
    await executor.driver.open_notifications()


@action("openQuickSettings")
async def open_quick_settings(executor: "TestExecutor", params: None) -> None:
    await executor.driver.open_quick_settings()


@action("selectDisplay")
async def select_display(executor: "TestExecutor", display: str) -> None:
    if display.strip().lower() == "auto":
        detected = await executor.driver.detect_android_auto_display()
        if detected is None:
            logger.warning("No secondary display detected, staying on the current display")
            return
        executor.emitter.log(f"Selected display {detected}", executor.depth)
        await executor.driver.select_display(detected)
        return
    try:
        display_id = int(display)
    except ValueError as e:
        raise FlowConfigError(f"Invalid display ID '{display}'") from e
    await executor.driver.select_display(display_id)


@action("setLocale")
async def set_locale(executor: "TestExecutor", locale: str) -> None:
    await executor.driver.set_locale(locale)


# Files and clipboard


@action("pushFile")
async def push_file(executor: "TestExecutor", params: FileTransferParams) -> None:
    source = executor.context.resolve_path(params.source)
    if not source.exists():
        raise FlowConfigError(f"Source file not found: {source}")
    await executor.driver.push_file(str(source), params.destination)


@action("pullFile")
async def pull_file(executor: "TestExecutor", params: FileTransferParams) -> None:
    destination = executor.context.output_path(params.destination)
    await executor.driver.pull_file(params.source, str(destination))


@action("setClipboard")
async def set_clipboard(executor: "TestExecutor", text: str) -> None:
    await executor.driver.set_clipboard(text)


@action("getClipboard")
async def get_clipboard(executor: "TestExecutor", params: VariableParams) -> None:
    try:
        content = await executor.driver.get_clipboard()
    except Exception as e:
        logger.warning(f"getClipboard failed (platform limitation?): {e}")
        return
    executor.context.vars[params.name] = content


@action("assertClipboard", soft=True)
async def assert_clipboard(executor: "TestExecutor", params: AssertClipboardParams) -> None:
    actual = await executor.driver.get_clipboard()
    if actual != params.expected:
        raise AssertionFailure(
            f"Clipboard content mismatch. Expected: '{params.expected}', Got: '{actual}'"
        )


# Profiling


@action("startProfiling")
async def start_profiling(executor: "TestExecutor", params: StartProfilingParams | None) -> None:
    params = params or StartProfilingParams()
    await executor.driver.start_profiling(
        package=params.package or executor.context.app_id,
        interval_ms=params.sampling_interval_ms,
    )
    executor.emitter.log("Started performance profiling", executor.depth)


@action("stopProfiling")
async def stop_profiling(executor: "TestExecutor", params: StopProfilingParams | None) -> None:
    await executor.driver.stop_profiling()
    executor.emitter.log("Stopped performance profiling", executor.depth)
    if params and params.save_path:
        metrics = await executor.driver.get_performance_metrics()
        path = executor.context.output_path(params.save_path)
        path.write_text(json.dumps(metrics, indent=2), encoding="utf-8")
        executor.emitter.log(f"Saved performance report: {path.name}", executor.depth)


def parse_limit(limit: str) -> float:
    """Numeric part of a limit such as `200MB`, `512 kB`, `55fps` or `80%`."""
    text = limit.strip().lower()
    for unit in LIMIT_UNITS:
        if text.endswith(unit):
            text = text[: -len(unit)].strip()
            break
    try:
        return float(text)
    except ValueError as e:
        raise FlowConfigError(f"Invalid performance limit: {limit}") from e


def within_limit(metric: str, value: float, limit: float) -> bool:
    # Frame rates must stay above the limit, everything else below
    if "fps" in metric.lower():
        return value >= limit
    return value <= limit


@action("assertPerformance", soft=True)
async def assert_performance(executor: "TestExecutor", params: AssertPerformanceParams) -> None:
    metrics = await executor.driver.get_performance_metrics()
    value = next(
        (v for k, v in metrics.items() if k.lower() == params.metric.lower()),
        None,
    )
    if value is None:
        raise FlowConfigError(
            f"Metric '{params.metric}' not found in performance data. "
            f"Available: {sorted(metrics)}"
        )
    if not within_limit(params.metric, value, parse_limit(params.limit)):
        raise AssertionFailure(
            f"Performance Check Failed: {params.metric} = {value:.2f} (Limit: {params.limit})"
        )
    executor.emitter.log(
        f"Performance Check Passed: {params.metric} = {value:.2f} (Limit: {params.limit})",
        executor.depth,
    )


@action("setCpuThrottling")
async def set_cpu_throttling(executor: "TestExecutor", rate: float) -> None:
    await executor.driver.set_cpu_throttling(rate)


@action("setNetworkConditions")
async def set_network_conditions(executor: "TestExecutor", profile: str) -> None:
    await executor.driver.set_network_conditions(profile)


# Media and audio


@action("playMedia")
async def play_media(executor: "TestExecutor", params: PlayMediaParams) -> None:
    path = executor.context.resolve_path(params.file)
    if not path.exists():
        raise FlowConfigError(f"Media file not found: {path}")
    await executor.driver.play_media(path, params.loop_)


@action("stopMedia")
async def stop_media(executor: "TestExecutor", params: None) -> None:
    await executor.driver.stop_media()


@action("startAudioCapture")
async def start_audio_capture(
    executor: "TestExecutor", params: StartAudioCaptureParams | None
) -> None:
    params = params or StartAudioCaptureParams()
    await executor.driver.start_audio_capture(params.duration_ms, params.port)


@action("stopAudioCapture")
async def stop_audio_capture(executor: "TestExecutor", params: None) -> None:
    await executor.driver.stop_audio_capture()


@action("verifyAudioDucking")
async def verify_audio_ducking(
    executor: "TestExecutor", params: VerifyAudioDuckingParams | None
) -> None:
    params = params or VerifyAudioDuckingParams()
    await executor.driver.verify_audio_ducking(params.min_events, params.drop_threshold)
