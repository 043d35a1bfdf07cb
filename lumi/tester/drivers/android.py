"""
Android driver: uiautomator hierarchy dumps and `input` gestures over adb.
"""

import asyncio
import re
import tempfile
import time
import zipfile
from pathlib import Path

from lumi.tester.clients.adb_bridge import AdbBridge, list_devices
from lumi.tester.config import resolve_apk, settings
from lumi.tester.drivers.base import Orientation
from lumi.tester.drivers.device_driver import DeviceDriver
from lumi.tester.drivers.speed import SpeedProfile
from lumi.tester.errors import AssertionFailure, BridgeError, LumiError, NotSupportedError
from lumi.tester.hierarchy.android import parse_hierarchy
from lumi.tester.hierarchy.models import UiElement
from lumi.tester.parser.gps import GpsPoint
from lumi.tester.services.audio_capture import AUDIO_PORT, AudioAnalysis, AudioCapture
from lumi.tester.services.mirror import MirrorHelper
from lumi.tester.services.mock_location import LocationUpdate, MockLocationManager, SpeedMode
from lumi.tester.utils.logger import get_logger
from lumi.tester.utils.text import escape_for_android_shell, to_ascii_fallback
from lumi.tester.utils.video import (
    ANDROID_MAX_RECORDING_DURATION_SECONDS,
    VIDEO_READY_DELAY_SECONDS,
    RecordingSession,
    concatenate_videos,
    has_active_session,
    remove_active_session,
    set_active_session,
    stop_process_gracefully,
)

logger = get_logger(__name__)

ADB_KEYBOARD_PACKAGE = "com.android.adbkeyboard"
ADB_KEYBOARD_IME = "com.android.adbkeyboard/.AdbIME"
ADB_KEYBOARD_APK_NAME = "ADBKeyboard.apk"

UI_IDLE_POLL_SECONDS = 0.03
LAUNCH_TIMEOUT_SECONDS = 10
FRAME_BUDGET_MS = 16.6
TEST_PROVIDERS = ("gps", "network", "fused")

KEYCODES = {
    "home": 3,
    "back": 4,
    "search": 84,
    "enter": 66,
    "done": 66,
    "numpad_enter": 160,
    "power": 26,
    "volume_up": 24,
    "volume_down": 25,
    "menu": 82,
    "tab": 61,
    "space": 62,
    "del": 67,
    "delete": 67,
    "backspace": 67,
    "dpad_up": 19,
    "up": 19,
    "dpad_down": 20,
    "down": 20,
    "dpad_left": 21,
    "left": 21,
    "dpad_right": 22,
    "right": 22,
    "dpad_center": 23,
    "center": 23,
}

PERMISSIONS = {
    "camera": ["android.permission.CAMERA"],
    "microphone": ["android.permission.RECORD_AUDIO"],
    "mic": ["android.permission.RECORD_AUDIO"],
    "location": [
        "android.permission.ACCESS_FINE_LOCATION",
        "android.permission.ACCESS_COARSE_LOCATION",
    ],
    "gps": [
        "android.permission.ACCESS_FINE_LOCATION",
        "android.permission.ACCESS_COARSE_LOCATION",
    ],
    "coarse_location": ["android.permission.ACCESS_COARSE_LOCATION"],
    "contacts": ["android.permission.READ_CONTACTS", "android.permission.WRITE_CONTACTS"],
    "phone": ["android.permission.CALL_PHONE", "android.permission.READ_PHONE_STATE"],
    "call": ["android.permission.CALL_PHONE", "android.permission.READ_PHONE_STATE"],
    "sms": ["android.permission.SEND_SMS", "android.permission.READ_SMS"],
    "storage": [
        "android.permission.READ_EXTERNAL_STORAGE",
        "android.permission.WRITE_EXTERNAL_STORAGE",
    ],
    "files": [
        "android.permission.READ_EXTERNAL_STORAGE",
        "android.permission.WRITE_EXTERNAL_STORAGE",
    ],
    "write_storage": ["android.permission.WRITE_EXTERNAL_STORAGE"],
    "calendar": ["android.permission.READ_CALENDAR", "android.permission.WRITE_CALENDAR"],
    "notifications": ["android.permission.POST_NOTIFICATIONS"],
}

ALL_PERMISSIONS = [
    "android.permission.CAMERA",
    "android.permission.RECORD_AUDIO",
    "android.permission.ACCESS_FINE_LOCATION",
    "android.permission.ACCESS_COARSE_LOCATION",
    "android.permission.READ_CONTACTS",
    "android.permission.WRITE_CONTACTS",
    "android.permission.CALL_PHONE",
    "android.permission.READ_PHONE_STATE",
    "android.permission.SEND_SMS",
    "android.permission.READ_SMS",
    "android.permission.READ_EXTERNAL_STORAGE",
    "android.permission.WRITE_EXTERNAL_STORAGE",
    "android.permission.READ_CALENDAR",
    "android.permission.WRITE_CALENDAR",
    "android.permission.POST_NOTIFICATIONS",
    "android.permission.BODY_SENSORS",
]

ALL_APP_OPS = [
    "CAMERA",
    "RECORD_AUDIO",
    "FINE_LOCATION",
    "COARSE_LOCATION",
    "READ_CONTACTS",
    "WRITE_CONTACTS",
    "CALL_PHONE",
    "READ_PHONE_STATE",
    "SEND_SMS",
    "READ_SMS",
    "READ_EXTERNAL_STORAGE",
    "WRITE_EXTERNAL_STORAGE",
    "READ_CALENDAR",
    "WRITE_CALENDAR",
    "POST_NOTIFICATION",
]

MOCK_LOCATION_SETUP = [
    "settings put global wifi_scan_always_enabled 0",
    "settings put global ble_scan_always_enabled 0",
    "appops set 2000 android:mock_location allow",
    *[f"cmd location providers add-test-provider {p}" for p in TEST_PROVIDERS],
    *[f"cmd location providers set-test-provider-enabled {p} true" for p in TEST_PROVIDERS],
]

MOCK_LOCATION_TEARDOWN = [
    *[f"cmd location providers remove-test-provider {p}" for p in TEST_PROVIDERS],
    "appops set 2000 android:mock_location deny",
    "settings put secure mock_location 0",
    "settings put global wifi_scan_always_enabled 1",
    "settings put global ble_scan_always_enabled 1",
]

MEDIA_PLAYER_PACKAGES = [
    "com.google.android.music",
    "com.google.android.apps.youtube.music",
    "com.samsung.android.app.music.chn",
    "com.sec.android.app.music",
    "com.miui.player",
]

ROTATIONS = {
    Orientation.PORTRAIT: 0,
    Orientation.LANDSCAPE: 1,
    Orientation.UPSIDE_DOWN: 2,
    Orientation.LANDSCAPE_LEFT: 1,
    Orientation.LANDSCAPE_RIGHT: 3,
}


def resolve_keycode(key: str) -> int:
    """Map a key name or a raw numeric keycode to an Android keycode."""
    normalized = key.strip().lower()
    if normalized.isdigit():
        return int(normalized)
    if normalized not in KEYCODES:
        raise LumiError(f"Unsupported key: {key}. Use raw keycode (e.g. '66') or runScript if needed")
    return KEYCODES[normalized]


def resolve_permissions(name: str) -> list[str]:
    normalized = name.strip().lower()
    if normalized in PERMISSIONS:
        return PERMISSIONS[normalized]
    if normalized.startswith("android.permission."):
        return [name.strip()]
    return []


def escape_broadcast_text(text: str) -> str:
    """Escape text for a double-quoted `am broadcast --es` argument."""
    escaped = text.replace("\\", "\\\\")
    for char in ('"', "$", "`"):
        escaped = escaped.replace(char, f"\\{char}")
    return escaped


def is_keyboard_shown(dumpsys_output: str) -> bool:
    return "mInputShown=true" in dumpsys_output or "mIsInputViewShown=true" in dumpsys_output


def parse_resumed_package(output: str) -> str | None:
    match = re.search(r"u0\s+([a-zA-Z0-9_.]+)/", output)
    return match.group(1) if match else None


def parse_meminfo_mb(output: str) -> float | None:
    match = re.search(r"TOTAL\s+(\d+)", output)
    return int(match.group(1)) / 1024 if match else None


def parse_cpu_percent(output: str, package: str) -> float | None:
    for line in output.splitlines():
        if package in line:
            match = re.search(r"(\d+(\.\d+)?)%", line)
            if match:
                return float(match.group(1))
    return None


def parse_gfxinfo_frames(output: str) -> tuple[int, int]:
    """
    Count frames and janky frames in the `dumpsys gfxinfo` profile table.

    A frame is janky when the sum of its first three columns (draw, prepare,
    process) exceeds the 60 fps frame budget.

    Returns:
        (frames, janky_frames)
    """
    frames = 0
    janky = 0
    in_table = False
    for line in output.splitlines():
        stripped = line.strip()
        if "Draw" in stripped and "Prepare" in stripped:
            in_table = True
            continue
        if stripped.startswith("View hierarchy:"):
            break
        if not in_table or not stripped:
            continue
        try:
            columns = [float(v) for v in stripped.split()[:3]]
        except ValueError:
            continue
        if len(columns) < 3:
            continue
        frames += 1
        if sum(columns) > FRAME_BUDGET_MS:
            janky += 1
    return frames, janky


def frame_metrics(frames: int, janky: int) -> dict[str, float]:
    if frames == 0:
        return {}
    jank_ratio = janky / frames
    return {"fps": 60.0 * (1.0 - jank_ratio), "jank_rate": jank_ratio * 100.0}


def parse_android_auto_display(activities: str, displays: str) -> int | None:
    """
    Locate the display the Android Auto head unit renders to.

    Prefers the display that hosts the gearhead GhostActivity, then displays
    owned by gearhead (those in state ON first), then the lowest secondary
    display.
    """
    current_display = None
    for line in activities.splitlines():
        display_match = re.search(r"Display #(\d+)", line)
        if display_match:
            current_display = int(display_match.group(1))
        elif "GhostActivity" in line and current_display:
            return current_display

    owned: list[tuple[int, bool]] = []
    for block in re.split(r"(?=Display \d+:)", displays):
        header = re.match(r"Display (\d+):", block)
        if header and "gearhead" in block:
            owned.append((int(header.group(1)), "state ON" in block))
    if owned:
        owned.sort(key=lambda entry: (not entry[1], entry[0]))
        return owned[0][0]

    secondary = sorted(
        {int(n) for n in re.findall(r"Display (\d+)", displays) if int(n) > 0}
    )
    return secondary[0] if secondary else None


def find_crash(logs: str, app_id: str) -> bool:
    """Whether logcat shows a FATAL EXCEPTION for the app's process."""
    lines = logs.splitlines()
    for i, line in enumerate(lines):
        if f"Process: {app_id}," in line:
            if any("FATAL EXCEPTION" in prev for prev in lines[max(0, i - 5) : i]):
                return True
    return False


class AndroidDriver(DeviceDriver):
    """Drives one Android device through the adb CLI.

    Example:
        driver = await AndroidDriver.create("emulator-5554")
        await driver.launch_app("com.example.app")
        await driver.tap(TextSelector(pattern="Login"))
    """

    platform_name = "android"

    def __init__(
        self,
        bridge: AdbBridge,
        screen_size: tuple[int, int] | None = None,
        speed: SpeedProfile = SpeedProfile.NORMAL,
        unicode_input: bool = False,
        **kwargs,
    ):
        super().__init__(speed=speed, screen_size=screen_size, **kwargs)
        self.bridge = bridge
        self.unicode_input = unicode_input
        self.display_id = 0
        self.original_ime = ""
        self.adb_keyboard_available = False
        self.mirror = MirrorHelper(bridge)
        self.mock_locations = MockLocationManager(publish=self.publish_location)
        self.profiled_package: str | None = None
        self._audio: AudioCapture | None = None
        self._audio_stop_task: asyncio.Task | None = None
        self.audio_analysis: AudioAnalysis | None = None

    @classmethod
    async def create(cls, serial: str | None = None) -> "AndroidDriver":
        if serial is None:
            devices = [d for d in await list_devices() if d.state == "device"]
            if not devices:
                raise BridgeError("No Android devices connected")
            if len(devices) > 1:
                raise BridgeError("Multiple devices connected. Please specify one with --device")
            serial = devices[0].serial

        bridge = AdbBridge(serial)
        screen_size = await bridge.get_screen_size()
        driver = cls(
            bridge,
            screen_size=screen_size,
            speed=SpeedProfile.from_str(settings.LUMI_SPEED),
            unicode_input=settings.LUMI_UNICODE,
        )
        await driver.prepare_keyboard()
        logger.info(f"Connected to Android device {serial} ({screen_size[0]}x{screen_size[1]})")
        return driver

    def device_serial(self) -> str | None:
        return self.bridge.serial

    async def prepare_keyboard(self) -> None:
        """Remember the user's IME and make sure ADBKeyBoard is installed and enabled."""
        self.original_ime = (
            await self.bridge.shell_quiet("settings get secure default_input_method")
        ).strip()
        installed = await self.bridge.shell_quiet("ime list -s")
        if ADB_KEYBOARD_PACKAGE not in installed:
            apk = resolve_apk(settings.LUMI_ADB_KEYBOARD_APK, ADB_KEYBOARD_APK_NAME)
            if not apk.exists():
                log = logger.warning if self.unicode_input else logger.debug
                log(f"ADBKeyBoard APK not found at {apk} (set LUMI_ADB_KEYBOARD_APK)")
                return
            logger.info("Installing ADBKeyBoard for unicode input...")
            try:
                await self.bridge.install(apk)
            except BridgeError as e:
                logger.warning(f"Failed to install ADBKeyBoard: {e}")
                return
        await self.bridge.shell_quiet(f"ime enable {ADB_KEYBOARD_IME}")
        self.adb_keyboard_available = True

    def _input(self, command: str) -> str:
        return f"input -d {self.display_id} {command}"

    async def _refresh_screen_size(self) -> None:
        self.screen_size = await self.bridge.get_screen_size()
        self.resolver.screen_size = self.screen_size

    async def get_screen_size(self) -> tuple[int, int]:
        if self.screen_size is None:
            await self._refresh_screen_size()
        return await super().get_screen_size()

    # Hierarchy

    async def dump_ui_hierarchy(self) -> str:
        try:
            xml = await self.bridge.exec_out("uiautomator dump /dev/stdout")
            if "<?xml" in xml:
                return xml[xml.index("<?xml") :]
        except BridgeError as e:
            logger.debug(f"Streaming hierarchy dump failed: {e}")
        xml = await self.bridge.shell(
            "uiautomator dump /sdcard/window_dump.xml > /dev/null && cat /sdcard/window_dump.xml"
        )
        if "<?xml" not in xml:
            raise BridgeError("uiautomator returned no hierarchy")
        return xml[xml.index("<?xml") :]

    async def _dump_elements(self) -> list[UiElement]:
        return parse_hierarchy(await self.dump_ui_hierarchy())

    async def _wait_for_ui_idle(self) -> None:
        deadline = self._clock() + self.speed.ui_idle_max_wait_ms / 1000
        while self._clock() < deadline:
            output = await self.bridge.shell_quiet(
                "dumpsys window | grep -E 'mAnimationScheduled|mCurrentFocus' | head -2"
            )
            if "mAnimationScheduled=true" not in output:
                return
            await self._sleep(UI_IDLE_POLL_SECONDS)

    async def _after_action(self) -> None:
        if not self.speed.skip_ui_idle:
            await self._wait_for_ui_idle()
        await super()._after_action()

    # Raw gestures

    async def _tap_at(self, x: int, y: int) -> None:
        await self.bridge.shell(self._input(f"tap {x} {y}"))

    async def _long_press_at(self, x: int, y: int, duration_ms: int) -> None:
        await self.bridge.shell(self._input(f"swipe {x} {y} {x} {y} {duration_ms}"))

    async def _double_tap_at(self, x: int, y: int) -> None:
        # One shell round trip keeps both taps inside the double-tap window
        await self.bridge.shell(
            f"{self._input(f'tap {x} {y}')} && sleep 0.08 && {self._input(f'tap {x} {y}')}"
        )

    async def _swipe_between(
        self, start_x: int, start_y: int, end_x: int, end_y: int, duration_ms: int
    ) -> None:
        await self.bridge.shell(
            self._input(f"swipe {start_x} {start_y} {end_x} {end_y} {duration_ms}")
        )

    async def right_click(self, selector) -> None:
        raise self._not_supported("Right click")

    async def swipe(self, direction, duration_ms=None, from_selector=None) -> None:
        # Rotation changes the logical size between swipes
        try:
            await self._refresh_screen_size()
        except BridgeError as e:
            logger.debug(f"Keeping cached screen size: {e}")
        await super().swipe(direction, duration_ms, from_selector)

    # Text

    async def input_text(self, text: str, unicode: bool = False) -> None:
        wants_unicode = unicode or self.unicode_input
        if wants_unicode and not self.adb_keyboard_available and not text.isascii():
            raise NotSupportedError(
                "Unicode input needs the ADBKeyBoard IME. Install com.android.adbkeyboard "
                "or point LUMI_ADB_KEYBOARD_APK at its APK"
            )
        if wants_unicode and self.adb_keyboard_available:
            await self._input_with_adb_keyboard(text)
        else:
            if not text.isascii():
                logger.warning("Non-ASCII text without ADBKeyBoard; typing an ASCII approximation")
                text = to_ascii_fallback(text)
            await self.bridge.shell(self._input(f"text '{escape_for_android_shell(text)}'"))
        await self.invalidate_cache()

    async def _input_with_adb_keyboard(self, text: str) -> None:
        await self.bridge.shell(f"ime set {ADB_KEYBOARD_IME}")
        for _ in range(5):
            current = await self.bridge.shell_quiet("settings get secure default_input_method")
            if "adbkeyboard" in current:
                break
            await self._sleep(0.1)
        else:
            await self._sleep(0.2)

        command = f'am broadcast -a ADB_INPUT_TEXT --es msg "{escape_broadcast_text(text)}"'
        try:
            await self.bridge.shell(command)
        except BridgeError:
            await self._sleep(0.1)
            await self.bridge.shell(command)
        await self._sleep(0.05)
        await self._restore_ime()

    async def _restore_ime(self) -> None:
        if not self.original_ime or self.original_ime == "null":
            return
        await self.bridge.shell_quiet(f"ime set {self.original_ime}")
        for _ in range(10):
            state = await self.bridge.shell_quiet("dumpsys input_method")
            if is_keyboard_shown(state) and f"mCurMethodId={self.original_ime}" in state:
                return
            await self._sleep(0.2)
        logger.warning(f"Keyboard {self.original_ime} not confirmed after restore")
        await self._sleep(0.5)

    async def erase_text(self, char_count: int | None = None) -> None:
        count = char_count if char_count is not None else 100
        if count > 0:
            keys = " ".join(["67"] * count)
            await self.bridge.shell(self._input(f"keyevent {keys}"))
        await self.invalidate_cache()

    async def hide_keyboard(self) -> None:
        state = await self.bridge.shell_quiet("dumpsys input_method")
        if is_keyboard_shown(state):
            await self.bridge.shell("input keyevent 4")
            await self._sleep(0.1)
        await self.invalidate_cache()

    async def press_key(self, key: str) -> None:
        await self.bridge.shell(self._input(f"keyevent {resolve_keycode(key)}"))
        await self._after_action()

    async def back(self) -> None:
        await self.bridge.shell("input keyevent 4")
        await self._after_action()

    async def home(self) -> None:
        await self.bridge.shell("input keyevent 3")
        await self._after_action()

    # App lifecycle

    async def launch_app(self, app_id: str, clear_state: bool = False) -> None:
        if clear_state:
            await self.clear_app_data(app_id)

        resolved = await self.bridge.shell_quiet(
            f"cmd package resolve-activity --brief {app_id} | tail -n 1"
        )
        activity = resolved.strip()
        if "/" in activity:
            await self.bridge.shell(f"am start -n {activity}")
        else:
            logger.warning(f"Could not resolve launcher activity of {app_id}, using monkey")
            await self.bridge.shell(f"monkey -p {app_id} -c android.intent.category.LAUNCHER 1")

        deadline = self._clock() + LAUNCH_TIMEOUT_SECONDS
        while self._clock() < deadline:
            resumed = await self.bridge.shell_quiet(
                "dumpsys activity activities | grep ResumedActivity"
            )
            if app_id in resumed:
                break
            await self._sleep(self.speed.poll_interval_ms / 1000)
        else:
            logger.warning(f"{app_id} did not reach the foreground within {LAUNCH_TIMEOUT_SECONDS}s")
        await self.invalidate_cache()

    async def stop_app(self, app_id: str) -> None:
        await self.bridge.shell(f"am force-stop {app_id}")
        await self.invalidate_cache()

    async def clear_app_data(self, app_id: str) -> None:
        await self.bridge.shell(f"pm clear {app_id}")

    async def install_app(self, path: str) -> None:
        app_path = Path(path)
        if not app_path.exists():
            raise LumiError(f"App file not found: {path}")
        if app_path.suffix.lower() != ".xapk":
            await self.bridge.install(app_path)
            return
        with tempfile.TemporaryDirectory() as tmp_dir:
            with zipfile.ZipFile(app_path) as archive:
                apk_names = [n for n in archive.namelist() if n.lower().endswith(".apk")]
                if not apk_names:
                    raise LumiError("No APK files found in XAPK")
                archive.extractall(tmp_dir, members=apk_names)
            await self.bridge.install_multiple([Path(tmp_dir) / name for name in apk_names])

    async def uninstall_app(self, app_id: str) -> None:
        await self.bridge.uninstall(app_id)

    async def background_app(self, app_id: str | None, duration_ms: int) -> None:
        await self.bridge.shell("input keyevent 3")
        await self._sleep(duration_ms / 1000)
        if app_id:
            await self.launch_app(app_id)
        else:
            logger.warning("No app id to bring back to the foreground")
        await self.invalidate_cache()

    async def set_permissions(self, app_id: str, permissions: dict[str, str]) -> None:
        for name, value in permissions.items():
            grant = value.strip().lower() not in ("deny", "revoke", "false")
            if name.strip().lower() == "all":
                targets = ALL_PERMISSIONS
                for op in ALL_APP_OPS:
                    mode = "allow" if grant else "deny"
                    await self.bridge.shell_quiet(f"appops set {app_id} {op} {mode}")
            else:
                targets = resolve_permissions(name)
                if not targets:
                    logger.warning(f"Unknown permission '{name}', skipping")
                    continue
            verb = "grant" if grant else "revoke"
            for permission in targets:
                try:
                    await self.bridge.shell(f"pm {verb} {app_id} {permission}")
                except BridgeError as e:
                    logger.warning(f"Failed to {verb} {permission}: {e}")

    # Capture

    async def screenshot_bytes(self) -> bytes:
        return await self.bridge.screenshot()

    async def start_recording(self, path: str) -> None:
        device_id = self.device_serial() or "default"
        if has_active_session(device_id):
            raise LumiError("A recording is already in progress")
        session = RecordingSession(device_id=device_id, start_time=time.time(), output_path=Path(path))
        session.process = await self.bridge.start_screenrecord(session.next_device_segment())
        session.restart_task = asyncio.create_task(self._roll_segments(session))
        set_active_session(device_id, session)
        logger.info(f"Recording screen to {path}")

    async def _roll_segments(self, session: RecordingSession) -> None:
        """Start a new screenrecord segment each time the previous one hits its time cap."""
        while session.process is not None:
            started = time.monotonic()
            await session.process.wait()
            if time.monotonic() - started < ANDROID_MAX_RECORDING_DURATION_SECONDS - 5:
                logger.warning("screenrecord exited early, recording stopped")
                return
            session.process = await self.bridge.start_screenrecord(session.next_device_segment())

    async def stop_recording(self) -> None:
        session = remove_active_session(self.device_serial() or "default")
        if session is None:
            logger.warning("No active recording to stop")
            return
        if session.restart_task is not None:
            session.restart_task.cancel()
            try:
                await session.restart_task
            except asyncio.CancelledError:
                pass

        await self.bridge.shell_quiet("pkill -2 screenrecord")
        if session.process is not None:
            await stop_process_gracefully(session.process)
        await asyncio.sleep(VIDEO_READY_DELAY_SECONDS)

        session.output_path.parent.mkdir(parents=True, exist_ok=True)
        with tempfile.TemporaryDirectory() as tmp_dir:
            local_segments = []
            for i, remote in enumerate(session.device_segments):
                local = Path(tmp_dir) / f"segment_{i}.mp4"
                try:
                    await self.bridge.pull(remote, local)
                    local_segments.append(local)
                except BridgeError as e:
                    logger.warning(f"Failed to pull recording segment {remote}: {e}")
            saved = await concatenate_videos(local_segments, session.output_path)

        for remote in session.device_segments:
            await self.bridge.shell_quiet(f"rm -f {remote}")
        if saved:
            logger.success(f"Saved recording to {session.output_path}")
        else:
            logger.error(f"Failed to save recording to {session.output_path}")

    async def dump_logs(self, limit: int) -> str:
        return await self.bridge.logcat(limit)

    async def detect_app_crash(self, app_id: str) -> bool:
        logs = await self.bridge.shell_quiet("logcat -d -t 200 AndroidRuntime:E *:S")
        return find_crash(logs, app_id)

    # Navigation and display

    async def open_link(self, url: str, app_id: str | None = None) -> None:
        command = f"am start -W -a android.intent.action.VIEW -d '{url}'"
        if app_id:
            command += f" -p {app_id}"
        output = await self.bridge.shell(command)
        if "Error:" in output or "exception" in output.lower():
            logger.warning(f"Opening {url} reported: {output.strip()}")
        await self.invalidate_cache()

    async def rotate_screen(self, mode: str) -> None:
        normalized = mode.strip().lower()
        if normalized not in ("portrait", "landscape"):
            raise LumiError("Invalid rotation mode. Use 'portrait' or 'landscape'")
        await self.set_orientation(Orientation(normalized))

    async def set_orientation(self, orientation: Orientation) -> None:
        await self.bridge.shell("settings put system accelerometer_rotation 0")
        await self.bridge.shell(f"settings put system user_rotation {ROTATIONS[orientation]}")
        await self._sleep(1)
        await self._refresh_screen_size()
        await self.invalidate_cache()

    async def select_display(self, display_id: int) -> None:
        self.display_id = display_id
        await self.invalidate_cache()

    async def detect_android_auto_display(self) -> int | None:
        activities = await self.bridge.shell_quiet(
            "dumpsys activity activities | grep -E 'Display #|gearhead.*GhostActivity'"
        )
        displays = await self.bridge.shell_quiet("dumpsys display")
        return parse_android_auto_display(activities, displays)

    # System

    async def push_file(self, local_path: str, remote_path: str) -> None:
        await self.bridge.push(local_path, remote_path)

    async def pull_file(self, remote_path: str, local_path: str) -> None:
        Path(local_path).parent.mkdir(parents=True, exist_ok=True)
        await self.bridge.pull(remote_path, local_path)

    async def set_clipboard(self, text: str) -> None:
        """Types the text into the focused field; Android has no shell clipboard setter."""
        escaped = text.replace('"', '\\"').replace(" ", "%s")
        await self.bridge.shell(f'input text "{escaped}"')

    async def get_clipboard(self) -> str:
        raise self._not_supported("getClipboard without a helper app")

    async def set_network_connection(self, wifi: bool | None, data: bool | None) -> None:
        if wifi is not None:
            await self.bridge.shell(f"svc wifi {'enable' if wifi else 'disable'}")
        if data is not None:
            await self.bridge.shell(f"svc data {'enable' if data else 'disable'}")

    async def toggle_airplane_mode(self) -> None:
        current = (await self.bridge.shell_quiet("settings get global airplane_mode_on")).strip()
        enable = current != "1"
        await self.bridge.shell(f"settings put global airplane_mode_on {1 if enable else 0}")
        await self.bridge.shell_quiet(
            f"am broadcast -a android.intent.action.AIRPLANE_MODE --ez state {str(enable).lower()}"
        )

    async def open_notifications(self) -> None:
        await self.bridge.shell("cmd statusbar expand-notifications")
        await self.invalidate_cache()

    async def open_quick_settings(self) -> None:
        await self.bridge.shell("cmd statusbar expand-settings")
        await self.invalidate_cache()

    async def set_volume(self, level: int) -> None:
        try:
            await self.bridge.shell(f"cmd media_session volume --stream 3 --set {level}")
        except BridgeError:
            await self.bridge.shell(f"media volume --set {level}")

    async def lock_device(self) -> None:
        await self.bridge.shell("input keyevent 26")

    async def unlock_device(self) -> None:
        await self.bridge.shell("input keyevent 26")
        await self._sleep(0.5)
        await self.bridge.shell("input keyevent 82")
        await self.invalidate_cache()

    async def set_locale(self, locale: str) -> None:
        await self.bridge.shell(f"settings put system system_locales {locale}")

    # Mock location

    async def publish_location(self, update: LocationUpdate) -> None:
        if await self.mirror.send_location(update):
            return
        for provider in TEST_PROVIDERS:
            await self.bridge.shell_quiet(
                f"cmd location providers set-test-provider-location {provider} "
                f"--location {update.lat},{update.lon}"
            )
        await self.bridge.shell_quiet(f"geo fix {update.lon} {update.lat}")

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
        await self.mirror.init_session()
        for command in MOCK_LOCATION_SETUP:
            try:
                await self.bridge.shell(command)
            except BridgeError as e:
                logger.warning(f"Mock location setup step failed ({command}): {e}")
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
        for command in MOCK_LOCATION_TEARDOWN:
            try:
                await self.bridge.shell(command)
            except BridgeError as e:
                logger.warning(f"Mock location cleanup step failed ({command}): {e}")

    # Profiling

    async def _current_package(self) -> str:
        resumed = await self.bridge.shell_quiet("dumpsys activity activities | grep ResumedActivity")
        package = parse_resumed_package(resumed)
        if package is None:
            focus = await self.bridge.shell_quiet("dumpsys window windows | grep mCurrentFocus")
            package = parse_resumed_package(focus)
        if package is None:
            raise LumiError("Could not detect current package")
        return package

    async def start_profiling(self, package: str | None = None, interval_ms: int | None = None) -> None:
        self.profiled_package = package or await self._current_package()
        await self.bridge.shell_quiet(f"dumpsys gfxinfo {self.profiled_package} reset")
        logger.info(f"Profiling {self.profiled_package}")

    async def stop_profiling(self) -> None:
        self.profiled_package = None

    async def get_performance_metrics(self) -> dict[str, float]:
        package = self.profiled_package or await self._current_package()
        metrics: dict[str, float] = {}

        memory = parse_meminfo_mb(await self.bridge.shell_quiet(f"dumpsys meminfo {package}"))
        if memory is not None:
            metrics["memory"] = memory
        cpu = parse_cpu_percent(await self.bridge.shell_quiet("dumpsys cpuinfo"), package)
        if cpu is not None:
            metrics["cpu"] = cpu
        frames, janky = parse_gfxinfo_frames(
            await self.bridge.shell_quiet(f"dumpsys gfxinfo {package}")
        )
        metrics.update(frame_metrics(frames, janky))
        return metrics

    async def set_cpu_throttling(self, rate: float) -> None:
        logger.warning("CPU throttling is not available on Android devices, skipping")

    async def set_network_conditions(self, profile: str) -> None:
        normalized = profile.strip().lower()
        if normalized == "offline":
            await self.set_network_connection(wifi=False, data=False)
        elif normalized in ("wifi", "wifi-only"):
            await self.set_network_connection(wifi=True, data=False)
        elif normalized in ("data", "mobile", "4g", "5g", "lte"):
            await self.set_network_connection(wifi=False, data=True)
        else:
            logger.warning(f"Network profile '{profile}' cannot be emulated on Android; enabling wifi")
            await self.set_network_connection(wifi=True, data=None)

    # Media and audio

    async def play_media(self, file_path: Path, loop_playback: bool = False) -> None:
        local = Path(file_path)
        if not local.exists():
            raise LumiError(f"Media file not found: {file_path}")
        remote = f"/sdcard/Music/{local.name}"
        await self.bridge.push(local, remote)
        command = f"am start -a android.intent.action.VIEW -d file://{remote} -t audio/*"
        if loop_playback:
            command += " --ez loop true"
        await self.bridge.shell(command)

    async def stop_media(self) -> None:
        await self.bridge.shell_quiet("input keyevent KEYCODE_MEDIA_PAUSE")
        await self._sleep(0.1)
        await self.bridge.shell_quiet("input keyevent KEYCODE_MEDIA_STOP")
        for package in MEDIA_PLAYER_PACKAGES:
            await self.bridge.shell_quiet(f"am force-stop {package}")

    async def start_audio_capture(self, duration_ms: int | None = None, port: int | None = None) -> None:
        if self._audio is not None:
            raise LumiError("Audio capture already running")
        if not await self.mirror.init_session():
            raise LumiError("Audio capture requires the nl-mirror helper service")
        capture = AudioCapture(port=port or AUDIO_PORT)
        await asyncio.to_thread(capture.start)
        self._audio = capture
        self.audio_analysis = None
        if duration_ms:
            self._audio_stop_task = asyncio.create_task(self._stop_audio_after(duration_ms))

    async def _stop_audio_after(self, duration_ms: int) -> None:
        await asyncio.sleep(duration_ms / 1000)
        await self._finish_audio_capture()

    async def _finish_audio_capture(self) -> AudioAnalysis | None:
        capture, self._audio = self._audio, None
        if capture is None:
            return self.audio_analysis
        self.audio_analysis = await asyncio.to_thread(capture.stop_and_analyze)
        logger.info(self.audio_analysis.summary())
        return self.audio_analysis

    async def stop_audio_capture(self) -> None:
        task, self._audio_stop_task = self._audio_stop_task, None
        if task is not None and not task.done():
            task.cancel()
            try:
                await task
            except asyncio.CancelledError:
                pass
        if self._audio is None and self.audio_analysis is None:
            raise LumiError("No audio capture to stop")
        await self._finish_audio_capture()

    async def verify_audio_ducking(self, min_events: int, drop_threshold: float) -> None:
        if self._audio is not None:
            await self.stop_audio_capture()
        if self.audio_analysis is None:
            raise LumiError("No audio capture available; run startAudioCapture first")
        if not self.audio_analysis.has_ducking(min_events, drop_threshold):
            raise AssertionFailure(
                f"Expected at least {min_events} ducking event(s) dropping {drop_threshold}%: "
                f"{self.audio_analysis.summary()}"
            )

    async def close(self) -> None:
        if self.mock_locations is not None:
            await self.mock_locations.stop()
        if self._audio is not None:
            await self.stop_audio_capture()
