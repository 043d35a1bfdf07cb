"""
iOS driver.

Simulators are driven through the idb CLI and `xcrun simctl`. Physical
devices go through WebDriverAgent when it is reachable and fall back to idb
otherwise.
"""

import asyncio
import json
import shutil
import tempfile
import time
from pathlib import Path

from lumi.tester.clients.idb_bridge import IdbBridge, IosTarget
from lumi.tester.clients.ios_client import WdaClientConfig, ensure_wda_running, select_target
from lumi.tester.clients.wda_client import WdaClientWrapper
from lumi.tester.config import settings
from lumi.tester.drivers.base import Orientation
from lumi.tester.drivers.device_driver import DeviceDriver
from lumi.tester.drivers.speed import SpeedProfile
from lumi.tester.errors import BridgeError, LumiError
from lumi.tester.hierarchy.ios import element_from_dict, parse_hierarchy
from lumi.tester.hierarchy.models import IosElement, UiElement
from lumi.tester.parser.gps import GpsPoint
from lumi.tester.services.mock_location import LocationUpdate, MockLocationManager, SpeedMode
from lumi.tester.utils.logger import get_logger
from lumi.tester.utils.shell_utils import run_command
from lumi.tester.utils.video import (
    RecordingSession,
    has_active_session,
    remove_active_session,
    set_active_session,
    stop_process_gracefully,
)

logger = get_logger(__name__)

TEXT_FIELD_TYPES = ("TextField", "TextArea", "SecureTextField", "SearchField")
PASTE_LABELS = ("Paste", "Dán")
HARDWARE_BUTTONS = ("HOME", "VOLUME_UP", "VOLUME_DOWN", "LOCK", "SIRI")
APP_CONTAINER_FOLDERS = ("Documents", "Library", "tmp")

ROTATE_SIMULATOR_SCRIPT = """
tell application "Simulator" to activate
tell application "System Events"
    tell process "Simulator"
        click menu item "Rotate Left" of menu "Device" of menu bar 1
    end tell
end tell
"""

_PERMISSION_SERVICES = {
    "all": "all",
    "calendar": "calendar",
    "contacts": "contacts",
    "contacts-limited": "contacts-limited",
    "location": "location",
    "gps": "location",
    "fine_location": "location",
    "coarse_location": "location",
    "location-always": "location-always",
    "background_location": "location-always",
    "photos": "photos",
    "gallery": "photos",
    "read_external_storage": "photos",
    "photos-add": "photos-add",
    "write_external_storage": "photos-add",
    "microphone": "microphone",
    "record_audio": "microphone",
    "camera": "camera",
    "media-library": "media-library",
    "medialibrary": "media-library",
    "motion": "motion",
    "sensors": "motion",
    "reminders": "reminders",
    "siri": "siri",
    "faceid": "faceid",
    "face-id": "faceid",
    "homekit": "homekit",
    "health": "health",
}


def map_ios_permission(name: str) -> str | None:
    """simctl privacy service name for a permission alias."""
    return _PERMISSION_SERVICES.get(name.strip().lower())


def first_text_field(elements: list[UiElement]) -> IosElement | None:
    for element in elements:
        if isinstance(element, IosElement) and element.type_name() in TEXT_FIELD_TYPES:
            return element
    return None


def find_paste_button(elements: list[UiElement]) -> IosElement | None:
    for element in elements:
        if not isinstance(element, IosElement) or not element.visible:
            continue
        label = element.label or ""
        if label in PASTE_LABELS or element.value == "Paste":
            return element
        if element.type_name() == "MenuItem" and any(p in label for p in PASTE_LABELS):
            return element
    return None


def parse_ps_metrics(output: str) -> dict[str, float]:
    """
    CPU and memory of the app under test from simulator `ps aux` output.

    The app is taken to be the busiest process launched from an installed
    bundle; test runners are ignored.
    """
    best: tuple[float, float] | None = None
    for line in output.splitlines()[1:]:
        parts = line.split()
        if len(parts) < 11:
            continue
        command = " ".join(parts[10:])
        if "/Containers/Bundle/Application/" not in command or "xctest" in command:
            continue
        try:
            cpu = float(parts[2])
            rss_kb = float(parts[5])
        except ValueError:
            continue
        if best is None or cpu >= best[0]:
            best = (cpu, rss_kb / 1024)
    if best is None:
        return {}
    return {"cpu": best[0], "memory": best[1]}


class IosDriver(DeviceDriver):
    """Drives an iOS simulator or a physical device.

    Example:
        driver = await IosDriver.create()
        await driver.launch_app("com.apple.Preferences")
    """

    platform_name = "ios"
    cache_ttl_ms = 500
    swipe_margin = 0.15

    def __init__(
        self,
        bridge: IdbBridge,
        target: IosTarget,
        screen_size: tuple[int, int] | None = None,
        speed: SpeedProfile = SpeedProfile.NORMAL,
        wda: WdaClientWrapper | None = None,
        iproxy: asyncio.subprocess.Process | None = None,
        **kwargs,
    ):
        super().__init__(speed=speed, screen_size=screen_size, **kwargs)
        self.bridge = bridge
        self.target = target
        self.is_simulator = target.is_simulator
        self.wda = wda
        self.iproxy = iproxy
        self.mock_locations = MockLocationManager(publish=self.publish_location)

    @classmethod
    async def create(cls, udid: str | None = None) -> "IosDriver":
        target = await select_target(udid)
        bridge = IdbBridge(target.udid)
        screen_size = await bridge.get_screen_size()

        wda = None
        iproxy = None
        if not target.is_simulator:
            wda, iproxy = await ensure_wda_running(target.udid, WdaClientConfig())
            if wda is None:
                logger.warning("WebDriverAgent unavailable; falling back to idb for this device")

        kind = "simulator" if target.is_simulator else "device"
        logger.success(f"Connected to iOS {kind}: {target.name} ({target.udid})")
        return cls(
            bridge,
            target,
            screen_size=screen_size,
            speed=SpeedProfile.from_str(settings.LUMI_SPEED),
            wda=wda,
            iproxy=iproxy,
        )

    def device_serial(self) -> str | None:
        return self.target.udid

    @staticmethod
    def _check(ok: bool, operation: str) -> None:
        if not ok:
            raise BridgeError(f"WebDriverAgent {operation} failed")

    # Hierarchy

    async def dump_ui_hierarchy(self) -> str:
        if self.wda is not None:
            elements = await self.wda.describe_all()
            if elements is None:
                raise BridgeError("WebDriverAgent returned no hierarchy")
            return json.dumps(elements)
        return await self.bridge.describe_all()

    async def _dump_elements(self) -> list[UiElement]:
        if self.wda is not None:
            elements = await self.wda.describe_all()
            if elements is None:
                raise BridgeError("WebDriverAgent returned no hierarchy")
            return [element_from_dict(item) for item in elements]
        return parse_hierarchy(await self.bridge.describe_all())

    # Raw gestures

    async def _tap_at(self, x: int, y: int) -> None:
        if self.wda is not None:
            self._check(await self.wda.tap(x, y), "tap")
        else:
            await self.bridge.tap(x, y)

    async def _long_press_at(self, x: int, y: int, duration_ms: int) -> None:
        if self.wda is not None:
            self._check(await self.wda.tap(x, y, duration_ms), "long press")
        else:
            await self.bridge.tap(x, y, duration_ms)

    async def _double_tap_at(self, x: int, y: int) -> None:
        if self.wda is not None:
            self._check(await self.wda.double_tap(x, y), "double tap")
            return
        await self.bridge.tap(x, y)
        await self._sleep(0.05)
        await self.bridge.tap(x, y)

    async def _swipe_between(
        self, start_x: int, start_y: int, end_x: int, end_y: int, duration_ms: int
    ) -> None:
        logger.debug(f"Swiping ({start_x}, {start_y}) -> ({end_x}, {end_y})")
        if self.wda is not None:
            self._check(await self.wda.swipe(start_x, start_y, end_x, end_y, duration_ms), "swipe")
        else:
            await self.bridge.swipe(start_x, start_y, end_x, end_y, duration_ms)

    async def _after_action(self) -> None:
        await self.invalidate_cache()

    async def right_click(self, selector) -> None:
        raise self._not_supported("Right click")

    async def input_by_type_index(self, element_type: str, index: int, text: str) -> None:
        await self.tap_by_type_index(element_type, index)
        await self._sleep(0.2)
        await self.input_text(text)

    # Text

    async def input_text(self, text: str, unicode: bool = False) -> None:
        if self.wda is not None:
            self._check(await self.wda.text(text), "text input")
        elif text.isascii() or not self.is_simulator:
            await self.bridge.text(text)
        else:
            await self._paste_text(text)
        await self.invalidate_cache()

    async def _focus_point(self, default_y: int) -> tuple[int, int]:
        width, _ = await self.get_screen_size()
        field = first_text_field(await self._dump_elements())
        if field is None:
            return width // 2, default_y
        return field.bounds.center

    async def _paste_text(self, text: str) -> None:
        """Type text idb cannot send as key events by pasting it from the clipboard."""
        await self.bridge.simctl_stdin(text.encode(), "pbcopy", self.target.udid)
        _, height = await self.get_screen_size()
        x, y = await self._focus_point(height // 4)

        logger.info("Tapping to focus text field...")
        await self.bridge.tap(x, y)
        await self._sleep(0.5)
        paste = find_paste_button(await self._dump_elements())
        if paste is None:
            await self.bridge.tap(x, y)
            await self._sleep(0.7)
            paste = find_paste_button(await self._dump_elements())
        if paste is None:
            await self.bridge.tap(x, y, 1000)
            await self._sleep(1)
            paste = find_paste_button(await self._dump_elements())
        if paste is None:
            raise LumiError("Failed to paste text: 'Paste' menu not found on screen.")
        await self.bridge.tap(*paste.bounds.center)

    async def erase_text(self, char_count: int | None = None) -> None:
        """
        Clear the first text field.

        Triple-tapping selects the field's content; typing a space replaces it
        and a second triple-tap selects that space for the next input to
        overwrite. `char_count` is ignored.
        """
        x, y = await self._focus_point(80)
        for _ in range(3):
            await self._tap_at(x, y)
            await self._sleep(0.08)
        await self._sleep(0.3)
        await self.input_text(" ")
        await self._sleep(0.1)
        for _ in range(3):
            await self._tap_at(x, y)
            await self._sleep(0.08)
        await self._sleep(0.2)
        await self.invalidate_cache()

    async def hide_keyboard(self) -> None:
        try:
            await self.bridge.key("XCUIKeyboardKeyReturn")
        except BridgeError as e:
            logger.debug(f"Return key failed: {e}")
        if self.is_simulator:
            _, height = await self.get_screen_size()
            await self.bridge.tap(50, height // 4)
        await self.invalidate_cache()

    async def press_key(self, key: str) -> None:
        button = key.strip().upper()
        if button in HARDWARE_BUTTONS:
            await self.bridge.button(button)
        else:
            await self.bridge.key(key)
        await self.invalidate_cache()

    # Navigation

    async def back(self) -> None:
        # Edge swipe; iOS has no system back button
        _, height = await self.get_screen_size()
        await self._swipe_between(5, height // 2, 200, height // 2, 200)
        await self.invalidate_cache()

    async def home(self) -> None:
        if self.wda is not None:
            self._check(await self.wda.button("home"), "home")
        else:
            await self.bridge.button("HOME")
        await self.invalidate_cache()

    async def open_link(self, url: str, app_id: str | None = None) -> None:
        if self.wda is not None:
            self._check(await self.wda.open_url(url), "open url")
        else:
            await self.bridge.open_url(url)
        await self.invalidate_cache()

    async def rotate_screen(self, mode: str) -> None:
        if not self.is_simulator:
            raise self._not_supported("rotate_screen on physical devices")
        logger.info("Rotating simulator via AppleScript...")
        try:
            await run_command(["osascript", "-e", ROTATE_SIMULATOR_SCRIPT])
        except BridgeError as e:
            logger.warning(f"Failed to rotate simulator: {e.stderr.strip() or e}")
            return
        await self._sleep(1)
        self.screen_size = await self.bridge.get_screen_size()
        self.resolver.screen_size = self.screen_size
        await self.invalidate_cache()

    async def set_orientation(self, orientation: Orientation) -> None:
        logger.warning(f"set_orientation({orientation.value}) is not reliably supported on iOS, skipping")

    # App lifecycle

    async def _terminate(self, bundle_id: str) -> None:
        if self.wda is not None:
            await self.wda.terminate(bundle_id)
            return
        try:
            await self.bridge.terminate(bundle_id)
        except BridgeError as e:
            logger.debug(f"Terminate {bundle_id} failed: {e}")

    async def _reset_app_container(self, bundle_id: str) -> None:
        try:
            container = (await self.bridge.simctl("get_app_container", self.target.udid, bundle_id, "data")).strip()
        except BridgeError as e:
            logger.debug(f"No data container for {bundle_id}: {e}")
            container = ""
        if container and Path(container).exists():
            for folder in APP_CONTAINER_FOLDERS:
                folder_path = Path(container) / folder
                if not folder_path.is_dir():
                    continue
                for child in folder_path.iterdir():
                    if child.is_dir() and not child.is_symlink():
                        shutil.rmtree(child, ignore_errors=True)
                    else:
                        child.unlink(missing_ok=True)
        try:
            await self.bridge.simctl("privacy", self.target.udid, "reset", "all", bundle_id)
        except BridgeError as e:
            logger.debug(f"Privacy reset failed: {e}")

    async def launch_app(self, app_id: str, clear_state: bool = False) -> None:
        await self.invalidate_cache()
        await self._terminate(app_id)
        await self._sleep(0.5)

        if clear_state:
            if self.is_simulator:
                await self._reset_app_container(app_id)
            else:
                logger.warning("clearState is only supported on simulators")
            await self._sleep(0.5)

        if self.is_simulator:
            await self.bridge.launch(app_id)
        elif self.wda is not None:
            self._check(await self.wda.launch(app_id), "launch")
        else:
            await run_command(
                ["xcrun", "devicectl", "device", "process", "launch", "--device", self.target.udid, app_id]
            )

        await self._sleep(2 if clear_state else 1)
        await self.invalidate_cache()

    async def stop_app(self, app_id: str) -> None:
        await self._terminate(app_id)
        await self.invalidate_cache()

    async def clear_app_data(self, app_id: str) -> None:
        await self._terminate(app_id)
        if self.is_simulator:
            await self._reset_app_container(app_id)

    async def install_app(self, path: str) -> None:
        if not Path(path).exists():
            raise LumiError(f"App file not found: {path}")
        logger.info(f"Installing app: {path}")
        await self.bridge.install(path)

    async def uninstall_app(self, app_id: str) -> None:
        logger.info(f"Uninstalling app: {app_id}")
        await self.bridge.uninstall(app_id)

    async def background_app(self, app_id: str | None, duration_ms: int) -> None:
        await self.bridge.button("HOME")
        await self._sleep(duration_ms / 1000)
        if app_id:
            await self.launch_app(app_id)
        else:
            logger.warning("No app id to bring back to the foreground")

    async def set_permissions(self, app_id: str, permissions: dict[str, str]) -> None:
        if not self.is_simulator:
            logger.warning("setPermissions is not supported on physical iOS devices")
            return
        for name, state in permissions.items():
            service = map_ios_permission(name)
            if service is None:
                logger.warning(f"Unknown permission '{name}', skipping")
                continue
            action = "revoke" if state.strip().lower() == "deny" else "grant"
            try:
                await self.bridge.simctl("privacy", self.target.udid, action, service, app_id)
            except BridgeError as e:
                logger.warning(f"Failed to {action} permission {name}: {e}")

    async def clear_keychain(self) -> None:
        if not self.is_simulator:
            logger.warning("clearKeychain requires reinstalling the app on physical devices, skipping")
            return
        keychains = (
            Path.home() / "Library/Developer/CoreSimulator/Devices" / self.target.udid / "data/Library/Keychains"
        )
        for database in keychains.glob("*.db*"):
            database.unlink(missing_ok=True)

    # Capture

    async def screenshot_bytes(self) -> bytes:
        if self.wda is not None:
            data = await self.wda.screenshot()
            if data is None:
                raise BridgeError("WebDriverAgent screenshot failed")
            return data
        with tempfile.TemporaryDirectory() as tmp_dir:
            path = Path(tmp_dir) / "screen.png"
            await self.bridge.screenshot(str(path))
            return path.read_bytes()

    async def start_recording(self, path: str) -> None:
        if has_active_session(self.target.udid):
            raise LumiError("A recording is already in progress")
        Path(path).parent.mkdir(parents=True, exist_ok=True)
        process = await self.bridge.start_recording(path)
        set_active_session(
            self.target.udid,
            RecordingSession(
                device_id=self.target.udid,
                start_time=time.time(),
                output_path=Path(path),
                process=process,
            ),
        )

    async def stop_recording(self) -> None:
        session = remove_active_session(self.target.udid)
        if session is None:
            logger.warning("No active recording to stop")
            return
        if session.process is not None:
            await stop_process_gracefully(session.process)
        logger.success(f"Saved iOS recording: {session.output_path}")

    async def dump_logs(self, limit: int) -> str:
        return await self.bridge.logs(limit)

    # System

    async def push_file(self, local_path: str, remote_path: str) -> None:
        await self.bridge.push_file(local_path, remote_path)

    async def pull_file(self, remote_path: str, local_path: str) -> None:
        await self.bridge.pull_file(remote_path, local_path)

    async def set_clipboard(self, text: str) -> None:
        if not self.is_simulator:
            raise self._not_supported("set_clipboard on physical devices")
        await self.bridge.simctl_stdin(text.encode(), "pbcopy", self.target.udid)

    async def get_clipboard(self) -> str:
        if not self.is_simulator:
            raise self._not_supported("get_clipboard on physical devices")
        return await self.bridge.simctl("pbpaste", self.target.udid)

    async def set_network_connection(self, wifi: bool | None, data: bool | None) -> None:
        logger.warning("Network toggles are not available on iOS; use Network Link Conditioner")

    async def toggle_airplane_mode(self) -> None:
        logger.warning("Airplane mode cannot be toggled on iOS through public APIs")

    async def open_notifications(self) -> None:
        width, _ = await self.get_screen_size()
        await self._swipe_between(width // 2, 0, width // 2, 500, 300)
        await self.invalidate_cache()

    async def open_quick_settings(self) -> None:
        width, _ = await self.get_screen_size()
        await self._swipe_between(width - 10, 0, width - 10, 400, 400)
        await self.invalidate_cache()

    async def set_volume(self, level: int) -> None:
        logger.warning("set_volume is not supported on iOS")

    async def lock_device(self) -> None:
        await self.bridge.button("LOCK")

    async def unlock_device(self) -> None:
        await self.bridge.button("HOME")
        width, height = await self.get_screen_size()
        await self._swipe_between(width // 2, height - 10, width // 2, height // 2, 300)
        await self.invalidate_cache()

    async def set_locale(self, locale: str) -> None:
        if not self.is_simulator:
            raise self._not_supported("set_locale on physical devices")
        try:
            await self.bridge.simctl(
                "spawn", self.target.udid, "defaults", "write", "Apple Global Domain", "AppleLanguages", f"({locale})"
            )
            logger.info(f"Set simulator locale to {locale} (restart the app for effect)")
        except BridgeError as e:
            logger.warning(f"Locale change failed: {e}")

    # Mock location

    async def publish_location(self, update: LocationUpdate) -> None:
        try:
            await self.bridge.simctl("location", self.target.udid, "set", f"{update.lat},{update.lon}")
        except BridgeError as e:
            logger.warning(f"simctl location set failed: {e}")

    async def start_mock_location(
        self,
        name: str,
        points: list[GpsPoint],
        speed_kmh: float | None = None,
        speed_mode: SpeedMode = SpeedMode.LINEAR,
        speed_noise: float | None = None,
        interval_ms: int = 1000,
        loop_route: bool = False,
    ) -> None:
        if not self.is_simulator:
            logger.warning("Mock location is only supported on iOS Simulator")
            return
        await super().start_mock_location(
            name,
            points,
            speed_kmh=speed_kmh,
            speed_mode=speed_mode,
            speed_noise=speed_noise,
            interval_ms=interval_ms,
            loop_route=loop_route,
        )

    async def stop_mock_location(self) -> None:
        await super().stop_mock_location()
        if self.is_simulator:
            try:
                await self.bridge.simctl("location", self.target.udid, "clear")
            except BridgeError as e:
                logger.debug(f"simctl location clear failed: {e}")

    # Profiling

    async def start_profiling(self, package: str | None = None, interval_ms: int | None = None) -> None:
        logger.debug("iOS metrics are sampled on demand; nothing to start")

    async def stop_profiling(self) -> None:
        pass

    async def get_performance_metrics(self) -> dict[str, float]:
        if not self.is_simulator:
            logger.warning("Performance metrics are only available on simulators")
            return {}
        return parse_ps_metrics(await self.bridge.simctl("spawn", self.target.udid, "ps", "aux"))

    async def set_cpu_throttling(self, rate: float) -> None:
        logger.warning("CPU throttling is not supported on iOS")

    async def set_network_conditions(self, profile: str) -> None:
        logger.warning("Network emulation is not supported on iOS")

    async def close(self) -> None:
        await self.mock_locations.stop()
        if self.wda is not None:
            await self.wda.cleanup()
        if self.iproxy is not None and self.iproxy.returncode is None:
            self.iproxy.terminate()
            await self.iproxy.wait()
