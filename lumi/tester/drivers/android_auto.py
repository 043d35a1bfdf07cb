"""
Android Auto driver on the Desktop Head Unit (DHU).

Input goes through the DHU console on the process's stdin; app lifecycle and
logs still go through adb on the phone the head unit is attached to. The DHU
exposes no hierarchy, so only point selectors can be acted on.
"""

import asyncio
import tempfile
from pathlib import Path

from lumi.tester.clients.adb_bridge import AdbBridge, list_devices
from lumi.tester.config import settings
from lumi.tester.drivers.base import PlatformDriver
from lumi.tester.errors import BridgeError, LumiError
from lumi.tester.matching.image_matcher import pixel_difference_percent
from lumi.tester.selectors.models import BaseSelector, PointSelector, SwipeDirection
from lumi.tester.utils.logger import get_logger
from lumi.tester.utils.video import stop_process_gracefully

logger = get_logger(__name__)

DHU_RELATIVE_PATH = "extras/google/auto/desktop-head-unit"
DHU_CONNECT_WAIT_SECONDS = 8
DHU_COMMAND_DELAY_SECONDS = 0.1
DHU_SCREEN_SIZE = (800, 480)
ANDROID_AUTO_DISPLAY_ID = 1

# Content scrolls opposite to the finger, and the rotary controller follows content
DPAD_FOR_SWIPE = {
    SwipeDirection.UP: "dpad down",
    SwipeDirection.DOWN: "dpad up",
    SwipeDirection.LEFT: "dpad right",
    SwipeDirection.RIGHT: "dpad left",
}

DHU_KEYCODES = {
    "home": "home",
    "back": "back",
    "call": "call",
    "phone": "call",
    "end_call": "endcall",
    "endcall": "endcall",
    "search": "search",
    "play": "media_play_pause",
    "pause": "media_play_pause",
    "play_pause": "media_play_pause",
    "next": "media_next",
    "media_next": "media_next",
    "previous": "media_previous",
    "prev": "media_previous",
    "media_previous": "media_previous",
    "navigation": "navigation",
    "nav": "navigation",
}


def find_dhu() -> Path:
    sdk_root = settings.ANDROID_SDK_ROOT or settings.ANDROID_HOME
    sdk = Path(sdk_root) if sdk_root else Path.home() / "Library" / "Android" / "sdk"
    return sdk / DHU_RELATIVE_PATH


def resolve_dhu_keycode(key: str) -> str:
    return DHU_KEYCODES.get(key.strip().lower(), key)


class AndroidAutoDriver(PlatformDriver):
    """Drives an Android Auto head unit through DHU console commands."""

    platform_name = "android_auto"

    def __init__(self, bridge: AdbBridge, screen_size: tuple[int, int] = DHU_SCREEN_SIZE):
        self.bridge = bridge
        self.screen_size = screen_size
        self.dhu_process: asyncio.subprocess.Process | None = None
        self._stdin_lock = asyncio.Lock()

    @classmethod
    async def create(cls, serial: str | None = None, start_dhu: bool = True) -> "AndroidAutoDriver":
        if serial is None:
            devices = [d for d in await list_devices() if d.state == "device"]
            if not devices:
                raise BridgeError("No Android devices connected")
            if len(devices) > 1:
                raise BridgeError("Multiple devices connected. Please specify one with --device")
            serial = devices[0].serial
        driver = cls(AdbBridge(serial))
        if start_dhu:
            await driver.start_dhu()
        return driver

    def device_serial(self) -> str | None:
        return self.bridge.serial

    async def start_dhu(self) -> None:
        dhu_path = find_dhu()
        if not dhu_path.exists():
            raise LumiError(
                f"DHU not found at {dhu_path}. "
                "Install Android Auto Desktop Head Unit via SDK Manager."
            )
        logger.info("Starting Android Auto DHU...")
        self.dhu_process = await asyncio.create_subprocess_exec(
            str(dhu_path),
            "--usb",
            stdin=asyncio.subprocess.PIPE,
            stdout=asyncio.subprocess.DEVNULL,
            stderr=asyncio.subprocess.DEVNULL,
        )
        logger.info(f"Waiting for USB connection ({DHU_CONNECT_WAIT_SECONDS}s)...")
        await asyncio.sleep(DHU_CONNECT_WAIT_SECONDS)
        if self.dhu_process.returncode is not None:
            raise BridgeError(f"DHU exited unexpectedly with status: {self.dhu_process.returncode}")
        logger.success("DHU started")

    async def send_dhu_command(self, command: str) -> None:
        if self.dhu_process is None or self.dhu_process.stdin is None:
            raise BridgeError("DHU not connected. Start the DHU before sending commands.")
        async with self._stdin_lock:
            self.dhu_process.stdin.write(f"{command}\n".encode())
            await self.dhu_process.stdin.drain()
            await asyncio.sleep(DHU_COMMAND_DELAY_SECONDS)

    async def _point(self, selector: BaseSelector) -> tuple[int, int]:
        if not isinstance(selector, PointSelector):
            raise self._not_supported(
                'Selectors other than points (use tap with point: "x,y")'
            )
        return selector.to_pixels(*self.screen_size)

    # Lifecycle

    async def launch_app(self, app_id: str, clear_state: bool = False) -> None:
        if clear_state:
            await self.clear_app_data(app_id)
        activity = (
            await self.bridge.shell_quiet(f"cmd package resolve-activity --brief {app_id} | tail -n 1")
        ).strip()
        if "/" not in activity:
            raise BridgeError(f"Could not resolve launcher activity of {app_id}")
        await self.bridge.shell(f"am start -n {activity}")

    async def stop_app(self, app_id: str) -> None:
        await self.bridge.shell(f"am force-stop {app_id}")

    async def clear_app_data(self, app_id: str) -> None:
        await self.bridge.shell(f"pm clear {app_id}")

    async def set_permissions(self, app_id: str, permissions: dict[str, str]) -> None:
        for permission, state in permissions.items():
            action = "revoke" if state.strip().lower() == "deny" else "grant"
            await self.bridge.shell_quiet(f"pm {action} {app_id} {permission}")

    # Gestures

    async def tap(self, selector: BaseSelector) -> None:
        x, y = await self._point(selector)
        await self.send_dhu_command(f"tap {x} {y}")

    async def long_press(self, selector: BaseSelector, duration_ms: int) -> None:
        raise self._not_supported("Long press")

    async def double_tap(self, selector: BaseSelector) -> None:
        await self.tap(selector)
        await asyncio.sleep(DHU_COMMAND_DELAY_SECONDS)
        await self.tap(selector)

    async def swipe(
        self,
        direction: SwipeDirection,
        duration_ms: int | None = None,
        from_selector: BaseSelector | None = None,
    ) -> None:
        await self.send_dhu_command(DPAD_FOR_SWIPE[direction])

    async def scroll_until_visible(
        self,
        selector: BaseSelector,
        max_scrolls: int,
        direction: SwipeDirection | None = None,
        from_selector: BaseSelector | None = None,
    ) -> bool:
        raise self._not_supported("scroll_until_visible (use dpad commands)")

    # Text

    async def input_text(self, text: str, unicode: bool = False) -> None:
        raise self._not_supported("Text input (requires voice input or the phone keyboard)")

    async def erase_text(self, char_count: int | None = None) -> None:
        raise self._not_supported("erase_text")

    async def hide_keyboard(self) -> None:
        await self.send_dhu_command("keycode back")

    async def press_key(self, key: str) -> None:
        await self.send_dhu_command(f"keycode {resolve_dhu_keycode(key)}")

    # Queries

    async def is_visible(self, selector: BaseSelector) -> bool:
        # No hierarchy is available from the head unit
        return isinstance(selector, PointSelector)

    async def wait_for_element(self, selector: BaseSelector, timeout_ms: int) -> bool:
        raise self._not_supported("wait_for_element (use wait instead)")

    async def wait_for_absence(self, selector: BaseSelector, timeout_ms: int) -> bool:
        raise self._not_supported("wait_for_absence (use wait instead)")

    async def get_element_text(self, selector: BaseSelector) -> str:
        raise self._not_supported("get_element_text")

    async def get_screen_size(self) -> tuple[int, int]:
        return self.screen_size

    async def dump_ui_hierarchy(self) -> str:
        return "<hierarchy><!-- UI dump not supported for Android Auto --></hierarchy>"

    async def dump_logs(self, limit: int) -> str:
        return await self.bridge.logcat(limit)

    # Capture

    async def take_screenshot(self, path: str) -> None:
        target = Path(path).resolve()
        target.parent.mkdir(parents=True, exist_ok=True)
        await self.send_dhu_command(f"screenshot {target}")

    async def screenshot_bytes(self) -> bytes:
        with tempfile.TemporaryDirectory() as tmp:
            target = Path(tmp) / "dhu.png"
            await self.send_dhu_command(f"screenshot {target}")
            for _ in range(20):
                if target.exists() and target.stat().st_size > 0:
                    return target.read_bytes()
                await asyncio.sleep(DHU_COMMAND_DELAY_SECONDS)
        raise BridgeError("DHU did not write a screenshot")

    async def compare_screenshot(self, reference_path: Path, tolerance_percent: float) -> float:
        current = await self.screenshot_bytes()
        reference = Path(reference_path).read_bytes()
        return await asyncio.to_thread(pixel_difference_percent, current, reference)

    async def start_recording(self, path: str) -> None:
        raise self._not_supported("Recording")

    async def stop_recording(self) -> None:
        pass

    async def open_link(self, url: str, app_id: str | None = None) -> None:
        await self.bridge.shell(f"am start -a android.intent.action.VIEW -d '{url}'")

    # Navigation

    async def back(self) -> None:
        await self.send_dhu_command("keycode back")

    async def home(self) -> None:
        await self.send_dhu_command("keycode home")

    async def select_display(self, display_id: int) -> None:
        logger.info(f"Android Auto display is managed by the DHU (display {display_id})")

    async def detect_android_auto_display(self) -> int | None:
        return ANDROID_AUTO_DISPLAY_ID

    async def close(self) -> None:
        if self.dhu_process is None or self.dhu_process.returncode is not None:
            return
        if self.dhu_process.stdin is not None:
            self.dhu_process.stdin.close()
        await stop_process_gracefully(self.dhu_process, timeout=3.0)
        self.dhu_process = None
