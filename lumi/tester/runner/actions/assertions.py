"""Visibility assertions, waits and screen checks."""

import math
from typing import TYPE_CHECKING

from lumi.tester.errors import AssertionFailure, FlowConfigError, WaitTimeoutError
from lumi.tester.parser.commands import (
    AssertColorParams,
    AssertScreenshotParams,
    AssertTrueParams,
    ElementParams,
    ExtendedWaitParams,
    WaitParams,
)
from lumi.tester.runner.actions.registry import action
from lumi.tester.selectors.models import PointSelector
from lumi.tester.utils.logger import get_logger

if TYPE_CHECKING:
    from lumi.tester.runner.executor import TestExecutor

logger = get_logger(__name__)

DEFAULT_ASSERT_TIMEOUT_MS = 5000
ANIMATION_SETTLE_SECONDS = 1.0
SCREENSHOT_TOLERANCE_PERCENT = 1.0
MAX_COLOR_DISTANCE = math.sqrt(3 * 255**2)

NAMED_COLORS = {
    "red": (255, 0, 0),
    "green": (0, 255, 0),
    "blue": (0, 0, 255),
    "white": (255, 255, 255),
    "black": (0, 0, 0),
    "yellow": (255, 255, 0),
    "orange": (255, 165, 0),
    "gray": (128, 128, 128),
    "grey": (128, 128, 128),
    "cyan": (0, 255, 255),
    "magenta": (255, 0, 255),
}


@action("assertVisible", soft=True)
async def assert_visible(executor: "TestExecutor", params: ElementParams) -> None:
    selector = executor.build_selector(params)
    timeout = params.timeout if params.timeout is not None else DEFAULT_ASSERT_TIMEOUT_MS
    if not await executor.driver.wait_for_element(selector, timeout):
        raise AssertionFailure(f"Element not visible within {timeout}ms: {selector.describe()}")


@action("waitUntilVisible", soft=True)
async def wait_until_visible(executor: "TestExecutor", params: ElementParams) -> None:
    selector = executor.build_selector(params)
    timeout = params.timeout if params.timeout is not None else executor.context.default_timeout_ms
    if not await executor.driver.wait_for_element(selector, timeout):
        raise WaitTimeoutError(f"Element not visible within {timeout}ms: {selector.describe()}")


@action("assertNotVisible", soft=True)
async def assert_not_visible(executor: "TestExecutor", params: ElementParams) -> None:
    selector = executor.build_selector(params)
    if await executor.driver.is_visible(selector):
        raise AssertionFailure(f"Element is visible but should not be: {selector.describe()}")


@action("waitUntilNotVisible", soft=True)
async def wait_until_not_visible(executor: "TestExecutor", params: ElementParams) -> None:
    selector = executor.build_selector(params)
    timeout = params.timeout if params.timeout is not None else executor.context.default_timeout_ms
    if not await executor.driver.wait_for_absence(selector, timeout):
        raise WaitTimeoutError(
            f"Element failed to disappear within {timeout}ms: {selector.describe()}"
        )


@action("extendedWaitUntil")
async def extended_wait_until(executor: "TestExecutor", params: ExtendedWaitParams) -> None:
    timeout = params.timeout if params.timeout is not None else executor.context.default_timeout_ms
    if params.visible is not None:
        selector = executor.build_selector(params.visible)
        if not await executor.driver.wait_for_element(selector, timeout):
            raise WaitTimeoutError(f"Element not visible within {timeout}ms: {selector.describe()}")
    if params.not_visible is not None:
        selector = executor.build_selector(params.not_visible)
        if not await executor.driver.wait_for_absence(selector, timeout):
            raise WaitTimeoutError(
                f"Element failed to disappear within {timeout}ms: {selector.describe()}"
            )


@action("wait")
async def wait(executor: "TestExecutor", params: WaitParams | None) -> None:
    await executor.sleep((params or WaitParams()).ms / 1000)


@action("waitForAnimationToEnd")
async def wait_for_animation_to_end(executor: "TestExecutor", params: None) -> None:
    await executor.sleep(ANIMATION_SETTLE_SECONDS)


@action("assertTrue", soft=True)
async def assert_true(executor: "TestExecutor", params: AssertTrueParams) -> None:
    engine = executor.js_engine()
    if not engine.eval_bool(params.condition):
        raise AssertionFailure(f"Assertion failed: {params.condition} evaluated to false")


@action("assertScreenshot", soft=True)
async def assert_screenshot(executor: "TestExecutor", params: AssertScreenshotParams) -> None:
    name = params.name
    filename = name if name.endswith(".png") else f"{name}.png"
    reference = executor.context.resolve_path(f"screenshots/{filename}")
    if not reference.exists():
        raise FlowConfigError(f"Reference screenshot not found: {reference}")
    diff = await executor.driver.compare_screenshot(reference, SCREENSHOT_TOLERANCE_PERCENT)
    if diff > SCREENSHOT_TOLERANCE_PERCENT:
        raise AssertionFailure(f"Visual regression detected! Difference: {diff:.2f}%")
    executor.emitter.log(f"Visual check passed (diff: {diff:.2f}%)", executor.depth)


def parse_color(value: str) -> tuple[int, int, int]:
    """Named color, `#RRGGBB` or `#RGB`."""
    color = value.strip().lower()
    if color in NAMED_COLORS:
        return NAMED_COLORS[color]
    hex_part = color.lstrip("#")
    if len(hex_part) == 3:
        hex_part = "".join(c * 2 for c in hex_part)
    if len(hex_part) != 6:
        raise FlowConfigError(f"Invalid color format: {value}")
    try:
        return int(hex_part[0:2], 16), int(hex_part[2:4], 16), int(hex_part[4:6], 16)
    except ValueError as e:
        raise FlowConfigError(f"Invalid color format: {value}") from e


def color_distance(a: tuple[int, int, int], b: tuple[int, int, int]) -> float:
    """Euclidean RGB distance scaled to 0-100."""
    return math.dist(a, b) / MAX_COLOR_DISTANCE * 100


def _hex(color: tuple[int, int, int]) -> str:
    return "#{:02X}{:02X}{:02X}".format(*color)


@action("assertColor", soft=True)
async def assert_color(executor: "TestExecutor", params: AssertColorParams) -> None:
    try:
        point = PointSelector.parse(params.point)
    except ValueError as e:
        raise FlowConfigError(f"Invalid point format: {params.point}") from e
    width, height = await executor.driver.get_screen_size()
    x, y = point.to_pixels(width, height)

    expected = parse_color(params.color)
    actual = await executor.driver.get_pixel_color(x, y)
    distance = color_distance(expected, actual)
    if distance > params.tolerance:
        raise AssertionFailure(
            f"Color mismatch at ({x},{y}) - expected: {_hex(expected)} ({params.color}), "
            f"actual: {_hex(actual)}, diff: {distance:.1f}% (tolerance: {params.tolerance}%)"
        )
    executor.emitter.log(
        f"Color match at ({x},{y}) - actual: {_hex(actual)} (diff: {distance:.1f}%)",
        executor.depth,
    )
