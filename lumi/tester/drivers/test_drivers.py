from pathlib import Path
from unittest.mock import AsyncMock

import pytest

from lumi.tester.config import resolve_apk, settings
from lumi.tester.drivers.android import (
    AndroidDriver,
    escape_broadcast_text,
    find_crash,
    frame_metrics,
    parse_android_auto_display,
    parse_cpu_percent,
    parse_gfxinfo_frames,
    parse_meminfo_mb,
    parse_resumed_package,
    resolve_keycode,
    resolve_permissions,
)
from lumi.tester.drivers.android_auto import AndroidAutoDriver, resolve_dhu_keycode
from lumi.tester.drivers.base import Orientation
from lumi.tester.drivers.device_driver import swipe_vector
from lumi.tester.drivers.fake import FakeDriver, element
from lumi.tester.drivers.ios import find_paste_button, map_ios_permission, parse_ps_metrics
from lumi.tester.drivers.speed import SpeedProfile
from lumi.tester.drivers.ui_cache import UiHierarchyCache
from lumi.tester.drivers.web import map_web_type, to_playwright_selector
from lumi.tester.errors import ElementNotFoundError, LumiError, NotSupportedError
from lumi.tester.hierarchy.models import Bounds, IosElement, IosFrame
from lumi.tester.selectors.models import (
    AnyClickableSelector,
    CssSelector,
    DescriptionSelector,
    IdSelector,
    PlaceholderSelector,
    PointSelector,
    RelativeDirection,
    RelativeSelector,
    ScrollableSelector,
    SwipeDirection,
    TextRegexSelector,
    TextSelector,
    TypeSelector,
    XPathSelector,
)


@pytest.fixture
def login_driver():
    return FakeDriver([element("Welcome", (0, 0, 1080, 100)), element("Login", (100, 200, 300, 260))])


@pytest.fixture
def wifi_driver():
    return FakeDriver(
        [
            element("Wi-Fi", (0, 100, 300, 200), clickable=False),
            element("", (400, 100, 500, 200), class_name="android.widget.Switch"),
            element("", (400, 300, 500, 400), class_name="android.widget.Switch"),
            element("", (400, 500, 500, 600), class_name="android.widget.Switch"),
        ]
    )


class TestDeviceDriver:
    @pytest.mark.asyncio
    async def test_tap_text_hits_element_center(self, login_driver):
        await login_driver.tap(TextSelector(pattern="Login"))
        assert login_driver.taps == [(200, 230)]

    @pytest.mark.asyncio
    async def test_tap_missing_element_raises(self, login_driver):
        with pytest.raises(ElementNotFoundError):
            await login_driver.tap(TextSelector(pattern="Logout"))
        assert login_driver.taps == []

    @pytest.mark.asyncio
    async def test_tap_right_of_uses_target_index(self, wifi_driver):
        anchor = TextSelector(pattern="Wi-Fi")
        first = RelativeSelector(
            target=AnyClickableSelector(), anchor=anchor, direction=RelativeDirection.RIGHT_OF
        )
        second = RelativeSelector(
            target=AnyClickableSelector(index=1), anchor=anchor, direction=RelativeDirection.RIGHT_OF
        )
        await wifi_driver.tap(first)
        await wifi_driver.tap(second)
        assert wifi_driver.taps == [(450, 150), (450, 350)]

    @pytest.mark.asyncio
    async def test_percent_point_is_not_clamped(self):
        driver = FakeDriver(screen_size=(1000, 2000))
        await driver.tap(PointSelector.parse("150%,50%"))
        assert driver.taps == [(1500, 1000)]

    @pytest.mark.asyncio
    async def test_hierarchy_is_cached_until_an_action(self, login_driver):
        await login_driver.is_visible(TextSelector(pattern="Login"))
        await login_driver.is_visible(TextSelector(pattern="Welcome"))
        assert login_driver.dump_count == 1

        await login_driver.tap(TextSelector(pattern="Login"))
        await login_driver.is_visible(TextSelector(pattern="Login"))
        assert login_driver.dump_count == 2

    @pytest.mark.asyncio
    async def test_wait_with_zero_timeout_checks_once(self, login_driver):
        start = login_driver.clock.now
        assert await login_driver.wait_for_element(TextSelector(pattern="Login"), 0) is True
        assert await login_driver.wait_for_element(TextSelector(pattern="Nope"), 0) is False
        assert login_driver.clock.now == start
        assert login_driver.dump_count == 2

    @pytest.mark.asyncio
    async def test_wait_times_out_on_budget(self, login_driver):
        assert await login_driver.wait_for_element(TextSelector(pattern="Nope"), 2000) is False
        assert login_driver.clock.now == pytest.approx(2.0)

    @pytest.mark.asyncio
    async def test_wait_sees_element_appear(self, login_driver):
        async def appear(seconds):
            login_driver.clock.now += seconds
            if login_driver.clock.now >= 1.0:
                login_driver.elements.append(element("Done", (0, 500, 100, 600)))

        login_driver._sleep = appear
        assert await login_driver.wait_for_element(TextSelector(pattern="Done"), 5000) is True

    @pytest.mark.asyncio
    async def test_wait_for_absence(self, login_driver):
        assert await login_driver.wait_for_absence(TextSelector(pattern="Nope"), 1000) is True
        assert await login_driver.wait_for_absence(TextSelector(pattern="Login"), 0) is False

    @pytest.mark.asyncio
    async def test_swipe_up_within_screen_margins(self):
        driver = FakeDriver(screen_size=(1000, 2000))
        await driver.swipe(SwipeDirection.UP)
        assert driver.actions == [("swipe", 500, 1500, 500, 500)]

    @pytest.mark.asyncio
    async def test_scroll_until_visible_gives_up(self, login_driver):
        found = await login_driver.scroll_until_visible(TextSelector(pattern="Footer"), 3)
        assert found is False
        assert len([a for a in login_driver.actions if a[0] == "swipe"]) == 3

    @pytest.mark.asyncio
    async def test_element_text(self, login_driver):
        assert await login_driver.get_element_text(TextSelector(pattern="Welcome")) == "Welcome"
        assert await login_driver.get_element_text(TextSelector(pattern="Nope")) == ""

    @pytest.mark.asyncio
    async def test_unimplemented_operation_is_not_supported(self, login_driver):
        with pytest.raises(NotSupportedError):
            await login_driver.set_orientation(Orientation.LANDSCAPE)

    @pytest.mark.asyncio
    async def test_select_display_is_not_supported_by_default(self, login_driver):
        with pytest.raises(NotSupportedError, match="select_display"):
            await login_driver.select_display(2)


class TestUiHierarchyCache:
    @pytest.mark.asyncio
    async def test_double_invalidate_equals_single(self):
        now = [0.0]
        cache = UiHierarchyCache(ttl_ms=1000, clock=lambda: now[0])
        loader = AsyncMock(side_effect=[[1], [2], [3]])

        assert await cache.get(loader) == [1]
        await cache.invalidate()
        await cache.invalidate()
        assert cache.is_empty
        assert await cache.get(loader) == [2]
        assert loader.await_count == 2

    @pytest.mark.asyncio
    async def test_ttl_expiry_reloads(self):
        now = [0.0]
        cache = UiHierarchyCache(ttl_ms=500, clock=lambda: now[0])
        loader = AsyncMock(side_effect=[["a"], ["b"]])
        await cache.get(loader)
        now[0] = 0.4
        assert await cache.get(loader) == ["a"]
        now[0] = 0.6
        assert await cache.get(loader) == ["b"]


class TestSwipeVector:
    def test_right_swipe(self):
        area = Bounds(left=0, top=0, right=1000, bottom=400)
        assert swipe_vector(area, SwipeDirection.RIGHT) == (250, 200, 750, 200)

    def test_custom_margin(self):
        area = Bounds(left=0, top=0, right=100, bottom=1000)
        assert swipe_vector(area, SwipeDirection.DOWN, 0.15) == (50, 150, 50, 850)


class TestSpeedProfile:
    @pytest.mark.parametrize(
        "name,tap,scroll,poll,idle",
        [
            ("turbo", 0, 100, 30, 0),
            ("fast", 50, 300, 100, 100),
            ("normal", 150, 500, 300, 200),
            ("safe", 300, 1000, 500, 400),
        ],
    )
    def test_table(self, name, tap, scroll, poll, idle):
        profile = SpeedProfile.from_str(name)
        assert (profile.tap_delay_ms, profile.scroll_delay_ms) == (tap, scroll)
        assert (profile.poll_interval_ms, profile.ui_idle_max_wait_ms) == (poll, idle)

    def test_only_turbo_skips_ui_idle(self):
        assert SpeedProfile.TURBO.skip_ui_idle
        assert not SpeedProfile.SAFE.skip_ui_idle

    def test_unknown_is_normal(self):
        assert SpeedProfile.from_str(None) is SpeedProfile.NORMAL
        assert SpeedProfile.from_str("warp") is SpeedProfile.NORMAL


class TestAndroidHelpers:
    def test_keycodes(self):
        assert resolve_keycode("Enter") == 66
        assert resolve_keycode("187") == 187
        with pytest.raises(LumiError):
            resolve_keycode("teleport")

    def test_permissions(self):
        assert resolve_permissions("camera") == ["android.permission.CAMERA"]
        assert resolve_permissions("android.permission.READ_SMS") == ["android.permission.READ_SMS"]
        assert resolve_permissions("unknown") == []

    def test_broadcast_escape(self):
        assert escape_broadcast_text('say "hi" $HOME') == 'say \\"hi\\" \\$HOME'

    def test_resumed_package(self):
        output = "  ResumedActivity: ActivityRecord{1a2b u0 com.example.app/.MainActivity t12}"
        assert parse_resumed_package(output) == "com.example.app"
        assert parse_resumed_package("") is None

    def test_meminfo_and_cpu(self):
        assert parse_meminfo_mb("        TOTAL    20480    1000") == 20.0
        cpuinfo = "  12% 1234/com.example.app: 10% user + 2% kernel\n  3% 99/system_server"
        assert parse_cpu_percent(cpuinfo, "com.example.app") == 12.0
        assert parse_cpu_percent(cpuinfo, "com.other") is None

    def test_gfxinfo_jank(self):
        output = "\n".join(
            [
                "Profile data in ms:",
                "\tDraw\tPrepare\tProcess\tExecute",
                "\t5.00\t1.00\t3.00\t1.00",
                "\t10.00\t4.00\t6.00\t1.00",
                "\t2.00\t1.00\t1.00\t1.00",
                "View hierarchy:",
                "\t99.00\t99.00\t99.00\t1.00",
            ]
        )
        frames, janky = parse_gfxinfo_frames(output)
        assert (frames, janky) == (3, 1)
        metrics = frame_metrics(frames, janky)
        assert metrics["fps"] == pytest.approx(40.0)
        assert metrics["jank_rate"] == pytest.approx(100 / 3)
        assert frame_metrics(0, 0) == {}

    def test_android_auto_display_from_ghost_activity(self):
        activities = "Display #0 (activities from top to bottom):\nDisplay #2\n  * GhostActivity"
        assert parse_android_auto_display(activities, "") == 2

    def test_android_auto_display_from_gearhead_owner(self):
        displays = "Display 0: built-in\nDisplay 3: owner gearhead state OFF\nDisplay 4: gearhead state ON"
        assert parse_android_auto_display("", displays) == 4

    def test_android_auto_display_absent(self):
        assert parse_android_auto_display("", "Display 0: built-in") is None

    def test_crash_detection(self):
        logs = "E AndroidRuntime: FATAL EXCEPTION: main\nE AndroidRuntime: Process: com.example.app, PID: 42"
        assert find_crash(logs, "com.example.app") is True
        assert find_crash(logs, "com.other") is False


class TestIosHelpers:
    def test_permission_aliases(self):
        assert map_ios_permission("GPS") == "location"
        assert map_ios_permission("gallery") == "photos"
        assert map_ios_permission("bluetooth") is None

    def test_paste_button(self):
        elements = [
            IosElement(element_type="TextField", label="Name"),
            IosElement(element_type="MenuItem", label="Paste", frame=IosFrame(x=10, y=10, width=50, height=20)),
        ]
        assert find_paste_button(elements) is elements[1]
        assert find_paste_button(elements[:1]) is None

    def test_ps_metrics_takes_busiest_app(self):
        output = "\n".join(
            [
                "USER PID %CPU %MEM VSZ RSS TT STAT STARTED TIME COMMAND",
                "u 1 5.0 0.1 1 2048 ?? S 1:00 0:00 /Containers/Bundle/Application/X/A.app/A",
                "u 2 30.0 0.1 1 4096 ?? S 1:00 0:00 /Containers/Bundle/Application/Y/B.app/B",
                "u 3 90.0 0.1 1 8192 ?? S 1:00 0:00 /usr/libexec/backboardd",
            ]
        )
        assert parse_ps_metrics(output) == {"cpu": 30.0, "memory": 4.0}
        assert parse_ps_metrics("") == {}


class TestWebSelectorTranslation:
    @pytest.mark.parametrize(
        "selector,expected",
        [
            (TextSelector(pattern="Sign in"), ('text="Sign in"', 0)),
            (TextRegexSelector(pattern="Item \\d+", index=2), ("text=/Item \\d+/", 2)),
            (IdSelector(id="email"), ('[id="email"]', 0)),
            (TypeSelector(type_name="textfield", index=1), ("input", 1)),
            (PlaceholderSelector(placeholder="Search"), ('[placeholder="Search"]', 0)),
            (DescriptionSelector(description="Close"), ('[aria-label="Close"]', 0)),
            (CssSelector(css="div.card > a"), ("div.card > a", 0)),
            (XPathSelector(xpath="//button"), ("xpath=//button", 0)),
        ],
    )
    def test_translation(self, selector, expected):
        assert to_playwright_selector(selector) == expected

    def test_relative_uses_layout_pseudo_class(self):
        selector = RelativeSelector(
            target=TypeSelector(type_name="input", index=1),
            anchor=TextSelector(pattern="Email"),
            direction=RelativeDirection.RIGHT_OF,
            max_dist=200,
        )
        assert to_playwright_selector(selector) == ('input:right-of(:text("Email"), 200)', 1)

    def test_quotes_are_escaped(self):
        assert to_playwright_selector(TextSelector(pattern='Say "hi"'))[0] == 'text="Say \\"hi\\""'

    def test_type_aliases(self):
        assert map_web_type("Button") == "button"
        assert map_web_type("checkbox") == "input[type='checkbox']"
        assert map_web_type("section") == "section"

    def test_scrollable_is_rejected(self):
        with pytest.raises(LumiError):
            to_playwright_selector(ScrollableSelector())


class TestAndroidAuto:
    def test_dhu_keycodes(self):
        assert resolve_dhu_keycode("Play") == "media_play_pause"
        assert resolve_dhu_keycode("nav") == "navigation"
        assert resolve_dhu_keycode("custom") == "custom"

    @pytest.mark.asyncio
    async def test_point_tap_goes_to_dhu(self):
        driver = AndroidAutoDriver(bridge=AsyncMock())
        driver.send_dhu_command = AsyncMock()
        await driver.tap(PointSelector.parse("50%,50%"))
        await driver.swipe(SwipeDirection.UP)
        assert [c.args[0] for c in driver.send_dhu_command.await_args_list] == [
            "tap 400 240",
            "dpad down",
        ]

    @pytest.mark.asyncio
    async def test_text_selector_is_not_supported(self):
        driver = AndroidAutoDriver(bridge=AsyncMock())
        with pytest.raises(NotSupportedError):
            await driver.tap(TextSelector(pattern="Maps"))


class TestAndroidKeyboard:
    def test_default_apk_ships_with_the_package(self):
        import lumi.tester.config

        expected = Path(lumi.tester.config.__file__).parent / "resources" / "apk" / "ADBKeyboard.apk"
        assert resolve_apk(None, "ADBKeyboard.apk") == expected
        assert resolve_apk("/opt/apks/kb.apk", "ADBKeyboard.apk") == Path("/opt/apks/kb.apk")

    @pytest.mark.asyncio
    async def test_configured_apk_is_installed(self, monkeypatch, tmp_path):
        apk = tmp_path / "kb.apk"
        apk.write_bytes(b"apk")
        monkeypatch.setattr(settings, "LUMI_ADB_KEYBOARD_APK", str(apk))
        bridge = AsyncMock()
        bridge.shell_quiet.return_value = ""
        driver = AndroidDriver(bridge, screen_size=(1080, 1920))

        await driver.prepare_keyboard()

        bridge.install.assert_awaited_once_with(apk)
        assert driver.adb_keyboard_available

    @pytest.mark.asyncio
    async def test_unicode_without_keyboard_raises(self, monkeypatch, tmp_path):
        monkeypatch.setattr(settings, "LUMI_ADB_KEYBOARD_APK", str(tmp_path / "missing.apk"))
        bridge = AsyncMock()
        bridge.shell_quiet.return_value = ""
        driver = AndroidDriver(bridge, screen_size=(1080, 1920), unicode_input=True)

        await driver.prepare_keyboard()

        bridge.install.assert_not_awaited()
        assert not driver.adb_keyboard_available
        with pytest.raises(NotSupportedError, match="LUMI_ADB_KEYBOARD_APK"):
            await driver.input_text("héllo")
        await driver.input_text("hello")
        bridge.shell.assert_awaited_once_with("input -d 0 text 'hello'")
