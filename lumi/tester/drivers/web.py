"""
Web driver on Playwright's async API.

Abstract selectors are translated to Playwright selector strings when an
action runs. Selectors Playwright cannot express (id regex, template images,
OCR text) are resolved by injected JavaScript or against a page screenshot.
"""

import asyncio
import threading
import time
from pathlib import Path

from playwright.async_api import (
    Browser,
    BrowserContext,
    ConsoleMessage,
    ElementHandle,
    Locator,
    Page,
    Playwright,
    async_playwright,
)
from playwright.async_api import Error as PlaywrightError
from playwright.async_api import TimeoutError as PlaywrightTimeoutError
from pydantic import BaseModel, ConfigDict

from lumi.tester.config import settings
from lumi.tester.drivers.base import Orientation, PlatformDriver
from lumi.tester.errors import ElementNotFoundError, LumiError
from lumi.tester.matching.image_matcher import (
    ImageRegion,
    find_template_in_png,
    pixel_difference_percent,
)
from lumi.tester.matching.ocr import OcrEngine, crop_to_region
from lumi.tester.selectors.models import (
    AccessibilityIdSelector,
    AnyClickableSelector,
    BaseSelector,
    CssSelector,
    DescriptionRegexSelector,
    DescriptionSelector,
    HasChildSelector,
    IdRegexSelector,
    IdSelector,
    ImageSelector,
    OcrSelector,
    PlaceholderSelector,
    PointSelector,
    RelativeDirection,
    RelativeSelector,
    RoleSelector,
    SwipeDirection,
    TextRegexSelector,
    TextSelector,
    TypeSelector,
    XPathSelector,
    selector_index,
)
from lumi.tester.services.mock_location import LocationUpdate, MockLocationManager
from lumi.tester.utils.logger import get_logger

logger = get_logger(__name__)

DEFAULT_CDP_ENDPOINT = "http://localhost:9222"
SCROLL_STEP_PX = 300
POLL_INTERVAL_SECONDS = 0.2
MAX_CONSOLE_LOGS = 1000

ELEMENT_TEXT_JS = "el => el.value || el.innerText || el.textContent || ''"

FIND_BY_ID_REGEX_JS = """
([pattern, index]) => {
    let regex;
    try {
        regex = new RegExp(pattern);
    } catch (e) {
        return null;
    }
    let count = 0;
    for (const el of document.querySelectorAll('[id]')) {
        if (regex.test(el.id)) {
            if (count === index) return el;
            count++;
        }
    }
    return null;
}
"""

IS_RENDERED_JS = """
el => {
    if (!el.isConnected) return false;
    const style = window.getComputedStyle(el);
    return style.display !== 'none' && style.visibility !== 'hidden' && style.opacity !== '0';
}
"""

PERFORMANCE_JS = """
() => {
    const nav = performance.getEntriesByType('navigation')[0] || {};
    const fcp = (performance.getEntriesByType('paint') || [])
        .find(p => p.name === 'first-contentful-paint');
    return {
        duration: nav.duration || 0,
        fcp: fcp ? fcp.startTime : 0,
        jsHeapSize: performance.memory ? performance.memory.usedJSHeapSize : 0,
    };
}
"""

CLEAR_PERFORMANCE_JS = (
    "() => { performance.clearResourceTimings(); performance.clearMarks(); performance.clearMeasures(); }"
)

CLEAR_STORAGE_JS = "() => { localStorage.clear(); sessionStorage.clear(); }"

_WEB_TYPES = {
    "textfield": "input",
    "edittext": "input",
    "input": "input",
    "button": "button",
    "btn": "button",
    "submit": "[type='submit']",
    "image": "img",
    "icon": "img",
    "link": "a",
    "checkbox": "input[type='checkbox']",
    "radio": "input[type='radio']",
}

_LAYOUT_PSEUDO = {
    RelativeDirection.LEFT_OF: "left-of",
    RelativeDirection.RIGHT_OF: "right-of",
    RelativeDirection.ABOVE: "above",
    RelativeDirection.BELOW: "below",
    RelativeDirection.NEAR: "near",
}

_KEY_NAMES = {
    "enter": "Enter",
    "done": "Enter",
    "tab": "Tab",
    "space": "Space",
    "backspace": "Backspace",
    "del": "Backspace",
    "delete": "Delete",
    "escape": "Escape",
    "esc": "Escape",
    "up": "ArrowUp",
    "down": "ArrowDown",
    "left": "ArrowLeft",
    "right": "ArrowRight",
    "home": "Home",
    "end": "End",
}

# Chromium DevTools network profiles: (latency ms, download B/s, upload B/s)
_NETWORK_PROFILES = {
    "slow-3g": (400, 50_000, 50_000),
    "3g": (300, 200_000, 96_000),
    "fast-3g": (150, 200_000, 96_000),
    "4g": (20, 4_000_000, 3_000_000),
    "lte": (20, 4_000_000, 3_000_000),
    "wifi": (2, 30_000_000, 15_000_000),
}


class WebDriverConfig(BaseModel):
    model_config = ConfigDict(frozen=True)

    browser: str = "chromium"
    headless: bool = settings.LUMI_HEADLESS
    base_url: str | None = None
    viewport_width: int = 1280
    viewport_height: int = 720
    cdp_endpoint: str | None = settings.LUMI_CDP_ENDPOINT
    close_when_finish: bool = True
    record_video: bool = settings.LUMI_VIDEO_RECORD
    video_dir: Path = Path("/tmp/lumi_tester_videos")

    @classmethod
    def with_overrides(
        cls,
        browser: str | None = None,
        headless: bool | None = None,
        base_url: str | None = None,
        cdp_endpoint: str | None = None,
        close_when_finish: bool | None = None,
        record_video: bool | None = None,
    ) -> "WebDriverConfig":
        """Create a WebDriverConfig with only specified fields overridden."""
        overrides = {
            k: v
            for k, v in {
                "browser": browser,
                "headless": headless,
                "base_url": base_url,
                "cdp_endpoint": cdp_endpoint,
                "close_when_finish": close_when_finish,
                "record_video": record_video,
            }.items()
            if v is not None
        }
        return cls().model_copy(update=overrides)


class BrowserSession(BaseModel):
    """Live Playwright objects kept between drivers in persistent mode."""

    model_config = ConfigDict(arbitrary_types_allowed=True)

    playwright: Playwright
    browser: Browser
    context: BrowserContext
    page: Page


# Process-wide; written when a persistent driver closes, taken by the next one
_persistent_session: BrowserSession | None = None
_persistent_lock = threading.Lock()


def take_persistent_session() -> BrowserSession | None:
    global _persistent_session
    with _persistent_lock:
        session, _persistent_session = _persistent_session, None
    if session is not None and session.page.is_closed():
        return None
    return session


def store_persistent_session(session: BrowserSession) -> None:
    global _persistent_session
    with _persistent_lock:
        _persistent_session = session


def map_web_type(type_name: str) -> str:
    return _WEB_TYPES.get(type_name.strip().lower(), type_name)


def _quote(value: str) -> str:
    escaped = value.replace("\\", "\\\\").replace('"', '\\"')
    return f'"{escaped}"'


def _base_selector(selector: BaseSelector) -> str:
    """Playwright selector string for one element kind, without its index."""
    if isinstance(selector, TextSelector):
        return f"text={_quote(selector.pattern)}"
    if isinstance(selector, TextRegexSelector):
        return f"text=/{selector.pattern}/"
    if isinstance(selector, IdSelector):
        return f"[id={_quote(selector.id)}]"
    if isinstance(selector, TypeSelector):
        return map_web_type(selector.type_name)
    if isinstance(selector, RoleSelector):
        return f"[role={_quote(selector.role)}]"
    if isinstance(selector, PlaceholderSelector):
        return f"[placeholder={_quote(selector.placeholder)}]"
    if isinstance(selector, DescriptionSelector):
        return f"[aria-label={_quote(selector.description)}]"
    if isinstance(selector, AccessibilityIdSelector):
        return f"[aria-label={_quote(selector.id)}]"
    if isinstance(selector, DescriptionRegexSelector):
        return f"text=/{selector.pattern}/"
    if isinstance(selector, CssSelector):
        return selector.css
    if isinstance(selector, XPathSelector):
        return f"xpath={selector.xpath}"
    if isinstance(selector, AnyClickableSelector):
        return 'button, a, [onclick], [role="button"]'
    if isinstance(selector, RelativeSelector):
        return _relative_selector(selector)
    raise LumiError(f"Selector not supported on web: {selector.describe()}")


def _layout_operand(selector: BaseSelector) -> str:
    # Layout pseudo-classes take CSS-like operands rather than text= engines
    if isinstance(selector, TextSelector):
        return f":text({_quote(selector.pattern)})"
    return _base_selector(selector)


def _relative_selector(selector: RelativeSelector) -> str:
    distance = f", {selector.max_dist}" if selector.max_dist is not None else ""
    pseudo = _LAYOUT_PSEUDO[selector.direction]
    return (
        f"{_layout_operand(selector.target)}:{pseudo}({_layout_operand(selector.anchor)}{distance})"
    )


def to_playwright_selector(selector: BaseSelector) -> tuple[str, int]:
    """
    Translate an abstract selector to a Playwright selector string and index.

    Raises:
        LumiError: for selectors without a Playwright string form.
    """
    if isinstance(selector, RelativeSelector):
        return _relative_selector(selector), selector_index(selector.target)
    return _base_selector(selector), selector_index(selector)


class WebDriver(PlatformDriver):
    """Drives one browser page.

    Example:
        driver = await WebDriver.create(WebDriverConfig.with_overrides(base_url="https://example.com"))
        await driver.launch_app("/login")
        await driver.tap(TextSelector(pattern="Sign in"))
    """

    platform_name = "web"

    def __init__(self, session: BrowserSession, config: WebDriverConfig):
        self.session = session
        self.config = config
        self.page = session.page
        self.context = session.context
        self.console_logs: list[str] = []
        self.ocr = OcrEngine()
        self.mock_locations = MockLocationManager(publish=self.publish_location)
        self._pending_videos: list[Path] = []
        self._geolocation_granted = False
        self.page.on("console", self._on_console)

    @classmethod
    async def create(cls, config: WebDriverConfig | None = None) -> "WebDriver":
        config = config or WebDriverConfig()
        session = take_persistent_session() if not config.close_when_finish else None
        if session is not None:
            logger.info("Reusing persistent browser session")
            await session.page.bring_to_front()
        else:
            session = await cls._open_session(config)
        await session.page.set_viewport_size(
            {"width": config.viewport_width, "height": config.viewport_height}
        )
        return cls(session, config)

    @staticmethod
    async def _open_session(config: WebDriverConfig) -> BrowserSession:
        playwright = await async_playwright().start()
        browser_type = getattr(playwright, config.browser, None)
        if browser_type is None:
            await playwright.stop()
            raise LumiError(f"Unknown browser: {config.browser}")

        browser = None
        endpoint = config.cdp_endpoint or (None if config.close_when_finish else DEFAULT_CDP_ENDPOINT)
        if endpoint and config.browser == "chromium":
            logger.info(f"Trying to connect to browser at {endpoint}")
            try:
                browser = await browser_type.connect_over_cdp(endpoint)
                logger.success("Connected to existing browser")
            except PlaywrightError as e:
                logger.warning(f"Could not connect to existing browser: {e}")

        if browser is None:
            launch_options: dict = {"headless": config.headless}
            if config.browser == "chromium" and settings.PLAYWRIGHT_CHROMIUM_EXECUTABLE_PATH:
                launch_options["executable_path"] = settings.PLAYWRIGHT_CHROMIUM_EXECUTABLE_PATH
            browser = await browser_type.launch(**launch_options)

        context = None
        if browser.contexts and not config.close_when_finish:
            context = browser.contexts[0]
            logger.info("Reusing existing browser context")
        if context is None:
            context_options: dict = {}
            if config.record_video:
                config.video_dir.mkdir(parents=True, exist_ok=True)
                context_options["record_video_dir"] = str(config.video_dir)
            context = await browser.new_context(**context_options)

        page = context.pages[0] if context.pages and not config.close_when_finish else await context.new_page()
        return BrowserSession(playwright=playwright, browser=browser, context=context, page=page)

    def device_serial(self) -> str | None:
        return self.config.browser

    def _on_console(self, message: ConsoleMessage) -> None:
        self.console_logs.append(f"[{message.type}] {message.text}")
        if len(self.console_logs) > MAX_CONSOLE_LOGS:
            del self.console_logs[0]

    # Element lookup

    def _locator(self, selector: BaseSelector) -> Locator:
        if isinstance(selector, HasChildSelector):
            return self._locator(selector.parent).filter(has=self._locator_all(selector.child))
        selector_string, index = to_playwright_selector(selector)
        return self.page.locator(selector_string).nth(index)

    def _locator_all(self, selector: BaseSelector) -> Locator:
        if isinstance(selector, HasChildSelector):
            return self._locator(selector)
        selector_string, _ = to_playwright_selector(selector)
        return self.page.locator(selector_string)

    async def _find_by_id_regex(self, selector: IdRegexSelector) -> ElementHandle | None:
        handle = await self.page.evaluate_handle(FIND_BY_ID_REGEX_JS, [selector.pattern, selector.index])
        element = handle.as_element()
        if element is None:
            await handle.dispose()
        return element

    async def _screen_point(self, selector: BaseSelector) -> tuple[int, int] | None:
        screen = await self.screenshot_bytes()
        if isinstance(selector, ImageSelector):
            if not Path(selector.path).exists():
                raise LumiError(f"Template image not found: {selector.path}")
            return await asyncio.to_thread(find_template_in_png, screen, selector.path, selector.region)
        assert isinstance(selector, OcrSelector)
        cropped, offset_x, offset_y = await asyncio.to_thread(
            crop_to_region, screen, ImageRegion.from_str(selector.region)
        )
        match = await self.ocr.find_text_at_index(cropped, selector.text, selector.is_regex, selector.index)
        return (match.x + offset_x, match.y + offset_y) if match else None

    async def _point_of(self, selector: BaseSelector) -> tuple[float, float]:
        """Viewport coordinates of the center of whatever the selector names."""
        if isinstance(selector, PointSelector):
            width, height = await self.get_screen_size()
            return selector.to_pixels(width, height)
        if isinstance(selector, (ImageSelector, OcrSelector)):
            point = await self._screen_point(selector)
            if point is None:
                raise ElementNotFoundError(f"Element not found: {selector.describe()}")
            return point

        if isinstance(selector, IdRegexSelector):
            element = await self._find_by_id_regex(selector)
            if element is None:
                raise ElementNotFoundError(f"Element not found: {selector.describe()}")
            await element.scroll_into_view_if_needed()
            box = await element.bounding_box()
        else:
            locator = self._locator(selector)
            if await locator.count() == 0:
                raise ElementNotFoundError(f"Element not found: {selector.describe()}")
            await locator.scroll_into_view_if_needed()
            box = await locator.bounding_box()
        if box is None:
            raise ElementNotFoundError(f"Element has no bounding box: {selector.describe()}")
        return box["x"] + box["width"] / 2, box["y"] + box["height"] / 2

    # Lifecycle

    def _full_url(self, url: str) -> str:
        if url.startswith(("http://", "https://")) or not self.config.base_url:
            return url
        return self.config.base_url.rstrip("/") + url

    async def launch_app(self, app_id: str, clear_state: bool = False) -> None:
        if clear_state:
            await self.context.clear_cookies()
        await self.page.goto(self._full_url(app_id))

    async def stop_app(self, app_id: str) -> None:
        await self.page.goto("about:blank")

    async def clear_app_data(self, app_id: str) -> None:
        await self.context.clear_cookies()
        await self.page.evaluate(CLEAR_STORAGE_JS)

    async def background_app(self, app_id: str | None, duration_ms: int) -> None:
        logger.info(f"Background on web only waits {duration_ms}ms")
        await asyncio.sleep(duration_ms / 1000)

    # Gestures

    async def tap(self, selector: BaseSelector) -> None:
        if isinstance(selector, (PointSelector, ImageSelector, OcrSelector)):
            x, y = await self._point_of(selector)
            await self.page.mouse.click(x, y)
        elif isinstance(selector, IdRegexSelector):
            element = await self._find_by_id_regex(selector)
            if element is None:
                raise ElementNotFoundError(f"Element not found for IdRegex: {selector.pattern}")
            await element.click()
        else:
            await self._locator(selector).click()

    async def long_press(self, selector: BaseSelector, duration_ms: int) -> None:
        x, y = await self._point_of(selector)
        await self.page.mouse.move(x, y)
        await self.page.mouse.down()
        await asyncio.sleep(duration_ms / 1000)
        await self.page.mouse.up()

    async def double_tap(self, selector: BaseSelector) -> None:
        if isinstance(selector, IdRegexSelector):
            element = await self._find_by_id_regex(selector)
            if element is None:
                raise ElementNotFoundError(f"Element not found for IdRegex: {selector.pattern}")
            await element.dblclick()
        elif isinstance(selector, (PointSelector, ImageSelector, OcrSelector)):
            x, y = await self._point_of(selector)
            await self.page.mouse.dblclick(x, y)
        else:
            await self._locator(selector).dblclick()

    async def right_click(self, selector: BaseSelector) -> None:
        if isinstance(selector, IdRegexSelector):
            element = await self._find_by_id_regex(selector)
            if element is None:
                raise ElementNotFoundError(f"Element not found for IdRegex: {selector.pattern}")
            await element.click(button="right")
        elif isinstance(selector, (PointSelector, ImageSelector, OcrSelector)):
            x, y = await self._point_of(selector)
            await self.page.mouse.click(x, y, button="right")
        else:
            await self._locator(selector).click(button="right")

    async def tap_by_type_index(self, element_type: str, index: int) -> None:
        locator = self.page.locator(map_web_type(element_type))
        if await locator.count() <= index:
            raise ElementNotFoundError(f"Element not found: {element_type} at index {index}")
        await locator.nth(index).click()

    async def input_by_type_index(self, element_type: str, index: int, text: str) -> None:
        locator = self.page.locator(map_web_type(element_type))
        if await locator.count() <= index:
            raise ElementNotFoundError(f"Element not found: {element_type} at index {index}")
        await locator.nth(index).fill(text)

    async def swipe(
        self,
        direction: SwipeDirection,
        duration_ms: int | None = None,
        from_selector: BaseSelector | None = None,
    ) -> None:
        dx, dy = {
            SwipeDirection.UP: (0, -SCROLL_STEP_PX),
            SwipeDirection.DOWN: (0, SCROLL_STEP_PX),
            SwipeDirection.LEFT: (-SCROLL_STEP_PX, 0),
            SwipeDirection.RIGHT: (SCROLL_STEP_PX, 0),
        }[direction]
        if from_selector is None:
            await self.page.evaluate(f"window.scrollBy({dx}, {dy})")
            return
        if isinstance(from_selector, IdRegexSelector):
            element = await self._find_by_id_regex(from_selector)
            if element is None:
                raise ElementNotFoundError("Source element for swipe not found")
            await element.evaluate(f"el => el.scrollBy({dx}, {dy})")
            return
        locator = self._locator(from_selector)
        if await locator.count() == 0:
            raise ElementNotFoundError("Source element for swipe not found")
        await locator.evaluate(f"el => el.scrollBy({dx}, {dy})")

    async def scroll_until_visible(
        self,
        selector: BaseSelector,
        max_scrolls: int,
        direction: SwipeDirection | None = None,
        from_selector: BaseSelector | None = None,
    ) -> bool:
        for _ in range(max_scrolls):
            if await self.is_visible(selector):
                return True
            await self.swipe(direction or SwipeDirection.DOWN, None, from_selector)
            await asyncio.sleep(0.5)
        return await self.is_visible(selector)

    # Text

    async def input_text(self, text: str, unicode: bool = False) -> None:
        await self.page.keyboard.type(text)

    async def erase_text(self, char_count: int | None = None) -> None:
        if char_count is None:
            await self.page.keyboard.press("ControlOrMeta+A")
            await self.page.keyboard.press("Backspace")
            return
        for _ in range(char_count):
            await self.page.keyboard.press("Backspace")

    async def hide_keyboard(self) -> None:
        pass

    async def press_key(self, key: str) -> None:
        await self.page.keyboard.press(_KEY_NAMES.get(key.strip().lower(), key))

    # Queries

    async def is_visible(self, selector: BaseSelector) -> bool:
        if isinstance(selector, PointSelector):
            return True
        if isinstance(selector, (ImageSelector, OcrSelector)):
            return await self._screen_point(selector) is not None
        if isinstance(selector, IdRegexSelector):
            element = await self._find_by_id_regex(selector)
            return element is not None and await element.evaluate(IS_RENDERED_JS)
        return await self._locator(selector).is_visible()

    async def _poll(self, check, timeout_ms: int) -> bool:
        deadline = time.monotonic() + timeout_ms / 1000
        while True:
            if await check():
                return True
            if time.monotonic() >= deadline:
                return False
            await asyncio.sleep(POLL_INTERVAL_SECONDS)

    def _waits_natively(self, selector: BaseSelector, timeout_ms: int) -> bool:
        # Playwright reads a zero timeout as "wait forever"
        return timeout_ms > 0 and not isinstance(
            selector, (PointSelector, ImageSelector, OcrSelector, IdRegexSelector)
        )

    async def wait_for_element(self, selector: BaseSelector, timeout_ms: int) -> bool:
        if not self._waits_natively(selector, timeout_ms):
            return await self._poll(lambda: self.is_visible(selector), timeout_ms)
        try:
            await self._locator(selector).wait_for(state="visible", timeout=timeout_ms)
            return True
        except PlaywrightTimeoutError:
            return False

    async def wait_for_absence(self, selector: BaseSelector, timeout_ms: int) -> bool:
        async def absent() -> bool:
            return not await self.is_visible(selector)

        if not self._waits_natively(selector, timeout_ms):
            return await self._poll(absent, timeout_ms)
        try:
            await self._locator(selector).wait_for(state="hidden", timeout=timeout_ms)
            return True
        except PlaywrightTimeoutError:
            return False

    async def get_element_text(self, selector: BaseSelector) -> str:
        if isinstance(selector, IdRegexSelector):
            element = await self._find_by_id_regex(selector)
            return await element.evaluate(ELEMENT_TEXT_JS) if element is not None else ""
        locator = self._locator(selector)
        if await locator.count() == 0:
            return ""
        return await locator.evaluate(ELEMENT_TEXT_JS)

    async def get_screen_size(self) -> tuple[int, int]:
        viewport = self.page.viewport_size
        if viewport is None:
            return self.config.viewport_width, self.config.viewport_height
        return viewport["width"], viewport["height"]

    async def dump_ui_hierarchy(self) -> str:
        return await self.page.content()

    async def dump_logs(self, limit: int) -> str:
        return "\n".join(self.console_logs[-limit:] if limit else [])

    # Capture

    async def screenshot_bytes(self) -> bytes:
        return await self.page.screenshot(type="png")

    async def compare_screenshot(self, reference_path: Path, tolerance_percent: float) -> float:
        current = await self.screenshot_bytes()
        reference = Path(reference_path).read_bytes()
        return await asyncio.to_thread(pixel_difference_percent, current, reference)

    async def start_recording(self, path: str) -> None:
        if self.page.video is None:
            logger.warning("No video recording available; set LUMI_VIDEO_RECORD=true")
            return
        self._pending_videos.append(Path(path))

    async def stop_recording(self) -> None:
        if self._pending_videos:
            logger.info("Page video is saved when the browser closes")

    async def open_link(self, url: str, app_id: str | None = None) -> None:
        await self.launch_app(url)

    # Navigation

    async def back(self) -> None:
        await self.page.go_back()

    async def home(self) -> None:
        if self.config.base_url:
            await self.launch_app(self.config.base_url)

    async def _set_viewport(self, landscape: bool) -> None:
        long_side = max(self.config.viewport_width, self.config.viewport_height)
        short_side = min(self.config.viewport_width, self.config.viewport_height)
        width, height = (long_side, short_side) if landscape else (short_side, long_side)
        await self.page.set_viewport_size({"width": width, "height": height})
        logger.info(f"Set viewport: {width}x{height}")

    async def rotate_screen(self, mode: str) -> None:
        await self._set_viewport(mode.strip().lower() == "landscape")

    async def set_orientation(self, orientation: Orientation) -> None:
        await self._set_viewport(orientation not in (Orientation.PORTRAIT, Orientation.UPSIDE_DOWN))

    # System

    async def set_clipboard(self, text: str) -> None:
        await self._grant(["clipboard-read", "clipboard-write"])
        await self.page.evaluate("text => navigator.clipboard.writeText(text)", text)

    async def get_clipboard(self) -> str:
        await self._grant(["clipboard-read", "clipboard-write"])
        return await self.page.evaluate("() => navigator.clipboard.readText()")

    async def _grant(self, permissions: list[str]) -> None:
        try:
            await self.context.grant_permissions(permissions)
        except PlaywrightError as e:
            logger.debug(f"Permission grant failed: {e}")

    async def set_permissions(self, app_id: str, permissions: dict[str, str]) -> None:
        granted = [name for name, state in permissions.items() if state.strip().lower() != "deny"]
        if len(granted) != len(permissions):
            await self.context.clear_permissions()
        if granted:
            await self._grant(granted)

    async def set_network_connection(self, wifi: bool | None, data: bool | None) -> None:
        offline = wifi is False or data is False
        await self.context.set_offline(offline)
        logger.info(f"Set web connection offline: {offline}")

    async def toggle_airplane_mode(self) -> None:
        logger.warning("Airplane mode on web always switches the browser offline")
        await self.context.set_offline(True)

    async def open_notifications(self) -> None:
        logger.warning("open_notifications is not supported on web")

    async def open_quick_settings(self) -> None:
        logger.warning("open_quick_settings is not supported on web")

    async def set_volume(self, level: int) -> None:
        logger.warning("set_volume is not supported on web")

    async def lock_device(self) -> None:
        logger.warning("lock_device is not supported on web")

    async def unlock_device(self) -> None:
        logger.warning("unlock_device is not supported on web")

    async def install_app(self, path: str) -> None:
        logger.warning("install_app is not supported on web")

    async def uninstall_app(self, app_id: str) -> None:
        logger.warning("uninstall_app is not supported on web")

    # Mock location

    async def publish_location(self, update: LocationUpdate) -> None:
        if not self._geolocation_granted:
            await self._grant(["geolocation"])
            self._geolocation_granted = True
        await self.context.set_geolocation(
            {"latitude": update.lat, "longitude": update.lon, "accuracy": 10}
        )

    # Profiling

    async def start_profiling(self, package: str | None = None, interval_ms: int | None = None) -> None:
        await self.page.evaluate(CLEAR_PERFORMANCE_JS)

    async def stop_profiling(self) -> None:
        pass

    async def get_performance_metrics(self) -> dict[str, float]:
        data = await self.page.evaluate(PERFORMANCE_JS)
        metrics = {
            "load_time_ms": float(data.get("duration") or 0),
            "fcp_ms": float(data.get("fcp") or 0),
        }
        heap = float(data.get("jsHeapSize") or 0)
        if heap > 0:
            metrics["memory_heap_mb"] = heap / 1024 / 1024
        return metrics

    async def _cdp_send(self, method: str, params: dict) -> bool:
        if self.config.browser != "chromium":
            logger.warning(f"{method} is only available on Chromium")
            return False
        cdp = await self.context.new_cdp_session(self.page)
        try:
            await cdp.send(method, params)
        finally:
            await cdp.detach()
        return True

    async def set_cpu_throttling(self, rate: float) -> None:
        if await self._cdp_send("Emulation.setCPUThrottlingRate", {"rate": rate}):
            logger.info(f"CPU throttled {rate}x")

    async def set_network_conditions(self, profile: str) -> None:
        normalized = profile.strip().lower()
        if normalized == "offline":
            await self.context.set_offline(True)
            return
        if normalized in ("online", "none", "reset"):
            await self.context.set_offline(False)
            params = {"offline": False, "latency": 0, "downloadThroughput": -1, "uploadThroughput": -1}
        elif normalized in _NETWORK_PROFILES:
            latency, download, upload = _NETWORK_PROFILES[normalized]
            params = {
                "offline": False,
                "latency": latency,
                "downloadThroughput": download,
                "uploadThroughput": upload,
            }
        else:
            logger.warning(f"Unknown network profile '{profile}', skipping")
            return
        await self._cdp_send("Network.emulateNetworkConditions", params)

    async def close(self) -> None:
        await self.mock_locations.stop()
        if not self.config.close_when_finish:
            store_persistent_session(self.session)
            logger.info("Browser kept open for the next session")
            return
        video = self.page.video
        await self.context.close()
        if video is not None:
            for target in self._pending_videos:
                target.parent.mkdir(parents=True, exist_ok=True)
                await video.save_as(target)
                logger.success(f"Saved web recording: {target}")
        await self.session.browser.close()
        await self.session.playwright.stop()
