"""App lifecycle, gestures, text entry and navigation."""

import random
import string
from typing import TYPE_CHECKING

from faker import Faker

from lumi.tester.errors import ElementNotFoundError, FlowConfigError, SkipCommand
from lumi.tester.parser.commands import (
    BackgroundAppParams,
    ClickParams,
    CopyTextFromParams,
    ElementParams,
    EraseTextParams,
    InputAtParams,
    InputTextParams,
    LaunchAppParams,
    NavigateParams,
    RandomLengthParams,
    ScrollUntilVisibleParams,
    SwipeParams,
    TypeIndexParams,
    WebTypeParams,
)
from lumi.tester.runner.actions.registry import action
from lumi.tester.selectors.models import (
    BaseSelector,
    CssSelector,
    PointSelector,
    SwipeDirection,
    TextSelector,
)
from lumi.tester.utils.logger import get_logger

if TYPE_CHECKING:
    from lumi.tester.runner.executor import TestExecutor

logger = get_logger(__name__)

DEFAULT_LONG_PRESS_MS = 1000
DEFAULT_RANDOM_LENGTH = 10
COPIED_TEXT_VAR = "copiedText"

# Content direction to the finger movement that reveals it
SCROLL_SWIPES = {
    SwipeDirection.UP: SwipeDirection.DOWN,
    SwipeDirection.DOWN: SwipeDirection.UP,
    SwipeDirection.LEFT: SwipeDirection.RIGHT,
    SwipeDirection.RIGHT: SwipeDirection.LEFT,
}

fake = Faker()


def _app_id(executor: "TestExecutor", explicit: str | None) -> str:
    app_id = explicit or executor.context.app_id
    if not app_id:
        raise FlowConfigError("No app ID specified")
    return app_id


async def _wait_for_target(
    executor: "TestExecutor", selector: BaseSelector, timeout_ms: int | None
) -> None:
    """Give the element time to show up; the gesture itself reports a miss."""
    if isinstance(selector, PointSelector):
        return
    await executor.driver.wait_for_element(
        selector, timeout_ms if timeout_ms is not None else executor.context.default_timeout_ms
    )


# App lifecycle


@action("launchApp")
async def launch_app(executor: "TestExecutor", params: LaunchAppParams | None) -> None:
    params = params or LaunchAppParams()
    context, driver = executor.context, executor.driver

    if context.platform == "web":
        target = params.url or params.app_id or context.url or context.app_id
        if not target:
            raise FlowConfigError("No URL or app ID specified for web platform")
    else:
        target = _app_id(executor, params.app_id)
    target = context.substitute_vars(target)

    if params.clear_keychain:
        await driver.clear_keychain()

    if params.clear_state and params.permissions:
        await driver.clear_app_data(target)
        await driver.set_permissions(target, params.permissions)
        await driver.launch_app(target, False)
        return

    if params.permissions:
        await driver.set_permissions(target, params.permissions)
    if params.stop_app and not params.clear_state:
        try:
            await driver.stop_app(target)
        except Exception as e:
            logger.debug(f"Stopping {target} before launch failed: {e}")
    await driver.launch_app(target, params.clear_state)


@action("stopApp")
async def stop_app(executor: "TestExecutor", app_id: str | None) -> None:
    await executor.driver.stop_app(_app_id(executor, app_id))


@action("clearAppData")
async def clear_app_data(executor: "TestExecutor", app_id: str | None) -> None:
    await executor.driver.clear_app_data(_app_id(executor, app_id))


@action("installApp")
async def install_app(executor: "TestExecutor", path: str) -> None:
    resolved = executor.context.resolve_path(path)
    if not resolved.exists():
        raise FlowConfigError(f"App file not found: {resolved}")
    await executor.driver.install_app(str(resolved))


@action("uninstallApp")
async def uninstall_app(executor: "TestExecutor", app_id: str) -> None:
    await executor.driver.uninstall_app(app_id)


@action("backgroundApp")
async def background_app(executor: "TestExecutor", params: BackgroundAppParams | None) -> None:
    params = params or BackgroundAppParams()
    app_id = params.app_id or executor.context.app_id
    await executor.driver.background_app(app_id, params.duration_ms)


# Gestures


@action("tapOn")
async def tap_on(executor: "TestExecutor", params: ElementParams) -> None:
    selector = executor.build_selector(params)
    if params.optional:
        if not await executor.driver.is_visible(selector):
            raise SkipCommand(f"Optional element not found: {selector.describe()}")
        await executor.driver.tap(selector)
        return
    await _wait_for_target(executor, selector, params.timeout)
    await executor.driver.tap(selector)


@action("longPressOn")
async def long_press_on(executor: "TestExecutor", params: ElementParams) -> None:
    selector = executor.build_selector(params)
    await _wait_for_target(executor, selector, params.timeout)
    await executor.driver.long_press(selector, params.duration or DEFAULT_LONG_PRESS_MS)


@action("doubleTapOn")
async def double_tap_on(executor: "TestExecutor", params: ElementParams) -> None:
    selector = executor.build_selector(params)
    await _wait_for_target(executor, selector, params.timeout)
    await executor.driver.double_tap(selector)


@action("rightClick")
async def right_click(executor: "TestExecutor", params: ElementParams) -> None:
    selector = executor.build_selector(params)
    await _wait_for_target(executor, selector, params.timeout)
    await executor.driver.right_click(selector)


@action("tapAt")
async def tap_at(executor: "TestExecutor", params: TypeIndexParams) -> None:
    await executor.driver.tap_by_type_index(params.element_type, params.index)


@action("inputAt")
async def input_at(executor: "TestExecutor", params: InputAtParams) -> None:
    await executor.driver.input_by_type_index(params.element_type, params.index, params.text)


@action("swipe")
async def swipe(executor: "TestExecutor", params: SwipeParams) -> None:
    duration = params.duration
    if duration is None and params.distance and params.distance.isdigit():
        duration = int(params.distance)
    from_selector = executor.build_selector(params.from_) if params.from_ else None
    await executor.driver.swipe(params.direction, duration, from_selector)


def _register_fixed_swipe(name: str, direction: SwipeDirection) -> None:
    async def handler(executor: "TestExecutor", params: None) -> None:
        await executor.driver.swipe(direction)

    handler.__name__ = f"swipe_{direction.value}"
    action(name)(handler)


_register_fixed_swipe("swipeLeft", SwipeDirection.LEFT)
_register_fixed_swipe("swipeRight", SwipeDirection.RIGHT)
_register_fixed_swipe("swipeUp", SwipeDirection.UP)
_register_fixed_swipe("swipeDown", SwipeDirection.DOWN)


@action("scrollUntilVisible")
async def scroll_until_visible(executor: "TestExecutor", params: ScrollUntilVisibleParams) -> None:
    selector = executor.build_selector(params)
    direction = SCROLL_SWIPES[params.direction] if params.direction else None
    from_selector = executor.build_selector(params.from_) if params.from_ else None
    found = await executor.driver.scroll_until_visible(
        selector, params.max_scrolls, direction, from_selector
    )
    if not found:
        raise ElementNotFoundError(f"Element not found after scrolling: {selector.describe()}")


# Text


@action("inputText")
async def input_text(executor: "TestExecutor", params: InputTextParams) -> None:
    await executor.driver.input_text(params.text, params.unicode)


@action("eraseText")
async def erase_text(executor: "TestExecutor", params: EraseTextParams | None) -> None:
    await executor.driver.erase_text(params.char_count if params else None)


@action("hideKeyboard")
async def hide_keyboard(executor: "TestExecutor", params: None) -> None:
    await executor.driver.hide_keyboard()


@action("pressKey")
async def press_key(executor: "TestExecutor", key: str) -> None:
    await executor.driver.press_key(key)


@action("copyTextFrom")
async def copy_text_from(executor: "TestExecutor", params: CopyTextFromParams) -> None:
    selector = executor.build_selector(params)
    try:
        text = await executor.driver.get_element_text(selector)
    except Exception as e:
        logger.warning(f"Failed to extract text: {e}")
        text = params.text or ""
    executor.context.vars[COPIED_TEXT_VAR] = text
    executor.emitter.log(f"Copied text: '{text}'", executor.depth)


@action("pasteText")
async def paste_text(executor: "TestExecutor", params: None) -> None:
    copied = executor.context.get_var(COPIED_TEXT_VAR)
    if copied:
        await executor.driver.input_text(copied)


def random_digits(length: int) -> str:
    return "".join(random.choices(string.digits, k=length))


def random_alphanumeric(length: int) -> str:
    return "".join(random.choices(string.ascii_letters + string.digits, k=length))


@action("inputRandomEmail")
async def input_random_email(executor: "TestExecutor", params: None) -> None:
    await executor.driver.input_text(f"{random_alphanumeric(8).lower()}@test.com")


@action("inputRandomNumber")
async def input_random_number(executor: "TestExecutor", params: RandomLengthParams | None) -> None:
    length = (params.length if params else None) or DEFAULT_RANDOM_LENGTH
    await executor.driver.input_text(random_digits(length))


@action("inputRandomPersonName")
async def input_random_person_name(executor: "TestExecutor", params: None) -> None:
    await executor.driver.input_text(f"{fake.first_name()} {fake.last_name()}")


@action("inputRandomText")
async def input_random_text(executor: "TestExecutor", params: RandomLengthParams | None) -> None:
    length = (params.length if params else None) or DEFAULT_RANDOM_LENGTH
    await executor.driver.input_text(random_alphanumeric(length))


# Navigation


@action("back")
async def back(executor: "TestExecutor", params: None) -> None:
    await executor.driver.back()


@action("pressHome")
async def press_home(executor: "TestExecutor", params: None) -> None:
    await executor.driver.home()


@action("openLink")
async def open_link(executor: "TestExecutor", url: str) -> None:
    await executor.driver.open_link(url, executor.context.app_id)


@action("navigate")
async def navigate(executor: "TestExecutor", params: NavigateParams) -> None:
    await executor.driver.open_link(params.url)


def _web_target(selector: str | None, text: str | None) -> BaseSelector:
    if selector:
        return CssSelector(css=selector)
    if text:
        return TextSelector(pattern=text)
    raise FlowConfigError("Either 'selector' or 'text' is required")


@action("click")
async def click(executor: "TestExecutor", params: ClickParams) -> None:
    target = _web_target(params.selector, params.text)
    await _wait_for_target(executor, target, None)
    await executor.driver.tap(target)


@action("type")
async def type_text(executor: "TestExecutor", params: WebTypeParams) -> None:
    if params.selector:
        target = CssSelector(css=params.selector)
        await _wait_for_target(executor, target, None)
        await executor.driver.tap(target)
    await executor.driver.input_text(params.text)
