"""
Shared logic of the drivers that act on a dumped element hierarchy.

Android, Android Auto and iOS all resolve selectors against a cached flat
element list and then act on screen coordinates; subclasses only supply the
hierarchy dump and the raw gestures.
"""

import asyncio
import time
from abc import abstractmethod
from collections.abc import Awaitable, Callable
from pathlib import Path

from lumi.tester.drivers.base import PlatformDriver
from lumi.tester.drivers.speed import SpeedProfile
from lumi.tester.drivers.ui_cache import UiHierarchyCache
from lumi.tester.errors import ElementNotFoundError, LumiError
from lumi.tester.hierarchy.models import Bounds, UiElement
from lumi.tester.matching.image_matcher import (
    ImageRegion,
    find_template_in_png,
    pixel_difference_percent,
)
from lumi.tester.matching.ocr import OcrEngine, crop_to_region
from lumi.tester.selectors.models import (
    BaseSelector,
    ImageSelector,
    OcrSelector,
    PointSelector,
    SwipeDirection,
    TypeSelector,
)
from lumi.tester.selectors.resolver import SelectorResolver
from lumi.tester.utils.logger import get_logger

logger = get_logger(__name__)

MAX_POLL_INTERVAL_MS = 500
DEFAULT_SWIPE_DURATION_MS = 300
SCROLL_SWIPE_DURATION_MS = 800
DOUBLE_TAP_GAP_SECONDS = 0.08


def swipe_vector(
    area: Bounds, direction: SwipeDirection, margin: float = 0.25
) -> tuple[int, int, int, int]:
    """
    Start and end points of a swipe across an area.

    The finger travels along the area's center line and stops `margin` of the
    area short of each edge.
    """
    center_x, center_y = area.center
    dx = int(area.width * margin)
    dy = int(area.height * margin)
    if direction == SwipeDirection.UP:
        return center_x, area.bottom - dy, center_x, area.top + dy
    if direction == SwipeDirection.DOWN:
        return center_x, area.top + dy, center_x, area.bottom - dy
    if direction == SwipeDirection.LEFT:
        return area.right - dx, center_y, area.left + dx, center_y
    return area.left + dx, center_y, area.right - dx, center_y


class DeviceDriver(PlatformDriver):
    """Base for drivers that resolve selectors against a dumped hierarchy."""

    cache_ttl_ms: int = 3000
    swipe_margin: float = 0.25

    def __init__(
        self,
        speed: SpeedProfile = SpeedProfile.NORMAL,
        screen_size: tuple[int, int] | None = None,
        sleep: Callable[[float], Awaitable[None]] = asyncio.sleep,
        clock: Callable[[], float] = time.monotonic,
    ):
        self.speed = speed
        self.screen_size = screen_size
        self.cache: UiHierarchyCache[UiElement] = UiHierarchyCache(self.cache_ttl_ms, clock=clock)
        self.resolver = SelectorResolver(screen_size)
        self.ocr = OcrEngine()
        self._sleep = sleep
        self._clock = clock

    @abstractmethod
    async def _dump_elements(self) -> list[UiElement]:
        """Fresh flat hierarchy in document order."""

    @abstractmethod
    async def _tap_at(self, x: int, y: int) -> None: ...

    @abstractmethod
    async def _long_press_at(self, x: int, y: int, duration_ms: int) -> None: ...

    @abstractmethod
    async def _swipe_between(
        self, start_x: int, start_y: int, end_x: int, end_y: int, duration_ms: int
    ) -> None: ...

    async def _double_tap_at(self, x: int, y: int) -> None:
        await self._tap_at(x, y)
        await self._sleep(DOUBLE_TAP_GAP_SECONDS)
        await self._tap_at(x, y)

    async def _after_action(self) -> None:
        """Settle delay from the speed profile, then drop the stale hierarchy."""
        delay = self.speed.tap_delay_ms
        if delay:
            await self._sleep(delay / 1000)
        await self.invalidate_cache()

    async def get_elements(self) -> list[UiElement]:
        return await self.cache.get(self._dump_elements)

    async def invalidate_cache(self) -> None:
        await self.cache.invalidate()

    async def get_screen_size(self) -> tuple[int, int]:
        if self.screen_size is None:
            raise LumiError("Screen size is unknown")
        return self.screen_size

    # Selector resolution

    async def find_element(
        self, selector: BaseSelector, allow_fallback: bool = False
    ) -> tuple[UiElement | None, bool]:
        if isinstance(selector, (PointSelector, ImageSelector, OcrSelector)):
            return None, False
        elements = await self.get_elements()
        return self.resolver.resolve(selector, elements, allow_fallback=allow_fallback)

    async def find_point(self, selector: BaseSelector) -> tuple[int, int] | None:
        """Screen coordinates to act on for a selector, or None when nothing matches."""
        if isinstance(selector, PointSelector):
            if not selector.is_relative:
                return int(selector.x), int(selector.y)
            width, height = await self.get_screen_size()
            return selector.to_pixels(width, height)

        if isinstance(selector, ImageSelector):
            return await self._find_image(selector)

        if isinstance(selector, OcrSelector):
            return await self._find_ocr_text(selector)

        element, fallback = await self.find_element(selector, allow_fallback=True)
        if element is None:
            return None
        return self.resolver.tap_point(selector, element, fallback)

    async def _find_image(self, selector: ImageSelector) -> tuple[int, int] | None:
        if not Path(selector.path).exists():
            raise LumiError(f"Template image not found: {selector.path}")
        screen = await self.screenshot_bytes()
        return await asyncio.to_thread(find_template_in_png, screen, selector.path, selector.region)

    async def _find_ocr_text(self, selector: OcrSelector) -> tuple[int, int] | None:
        await self.ocr.ensure_ready()
        screen = await self.screenshot_bytes()
        region = ImageRegion.from_str(selector.region)
        cropped, offset_x, offset_y = await asyncio.to_thread(crop_to_region, screen, region)
        match = await self.ocr.find_text_at_index(
            cropped, selector.text, selector.is_regex, selector.index
        )
        if match is None:
            return None
        return match.x + offset_x, match.y + offset_y

    async def _require_point(self, selector: BaseSelector) -> tuple[int, int]:
        point = await self.find_point(selector)
        if point is None:
            raise ElementNotFoundError(f"Element not found: {selector.describe()}")
        return point

    # Gestures

    async def tap(self, selector: BaseSelector) -> None:
        x, y = await self._require_point(selector)
        await self._tap_at(x, y)
        await self._after_action()

    async def long_press(self, selector: BaseSelector, duration_ms: int) -> None:
        x, y = await self._require_point(selector)
        await self._long_press_at(x, y, duration_ms)
        await self._after_action()

    async def double_tap(self, selector: BaseSelector) -> None:
        x, y = await self._require_point(selector)
        await self._double_tap_at(x, y)
        await self._after_action()

    async def tap_by_type_index(self, element_type: str, index: int) -> None:
        await self.tap(TypeSelector(type_name=element_type, index=index))

    async def input_by_type_index(self, element_type: str, index: int, text: str) -> None:
        await self.tap_by_type_index(element_type, index)
        await self.input_text(text)

    async def swipe(
        self,
        direction: SwipeDirection,
        duration_ms: int | None = None,
        from_selector: BaseSelector | None = None,
    ) -> None:
        if from_selector is not None:
            element, _ = await self.find_element(from_selector)
            if element is None:
                raise ElementNotFoundError("Source element for swipe not found")
            area = element.bounds
        else:
            width, height = await self.get_screen_size()
            area = Bounds(left=0, top=0, right=width, bottom=height)

        start_x, start_y, end_x, end_y = swipe_vector(area, direction, self.swipe_margin)
        await self._swipe_between(
            start_x, start_y, end_x, end_y, duration_ms or DEFAULT_SWIPE_DURATION_MS
        )
        await self.invalidate_cache()

    async def scroll_until_visible(
        self,
        selector: BaseSelector,
        max_scrolls: int,
        direction: SwipeDirection | None = None,
        from_selector: BaseSelector | None = None,
    ) -> bool:
        swipe_direction = direction or SwipeDirection.UP
        for _ in range(max_scrolls):
            if await self.is_visible(selector):
                return True
            await self.swipe(swipe_direction, SCROLL_SWIPE_DURATION_MS, from_selector)
            await self._sleep(self.speed.scroll_delay_ms / 1000)
            await self.invalidate_cache()
        return await self.is_visible(selector)

    # Queries

    async def is_visible(self, selector: BaseSelector) -> bool:
        if isinstance(selector, PointSelector):
            return True
        if isinstance(selector, (ImageSelector, OcrSelector)):
            return await self.find_point(selector) is not None
        element, _ = await self.find_element(selector)
        return element is not None

    async def _poll(self, check: Callable[[], Awaitable[bool]], timeout_ms: int) -> bool:
        """Run `check` on a fresh hierarchy until it passes or the budget elapses.

        The check always runs at least once, so a zero timeout is a single check.
        """
        deadline = self._clock() + timeout_ms / 1000
        interval = self.speed.poll_interval_ms
        while True:
            await self.invalidate_cache()
            if await check():
                return True
            remaining = deadline - self._clock()
            if remaining <= 0:
                return False
            await self._sleep(min(interval / 1000, remaining))
            interval = min(interval * 3 // 2, MAX_POLL_INTERVAL_MS)

    async def wait_for_element(self, selector: BaseSelector, timeout_ms: int) -> bool:
        return await self._poll(lambda: self.is_visible(selector), timeout_ms)

    async def wait_for_absence(self, selector: BaseSelector, timeout_ms: int) -> bool:
        async def absent() -> bool:
            return not await self.is_visible(selector)

        return await self._poll(absent, timeout_ms)

    async def get_element_text(self, selector: BaseSelector) -> str:
        element, _ = await self.find_element(selector)
        return element.display_text() if element is not None else ""

    async def compare_screenshot(self, reference_path: Path, tolerance_percent: float) -> float:
        current = await self.screenshot_bytes()
        reference = Path(reference_path).read_bytes()
        return await asyncio.to_thread(pixel_difference_percent, current, reference)
