import asyncio
import re
import tempfile
from pathlib import Path

import adbutils
from adbutils import AdbClient
from pydantic import BaseModel

from lumi.tester.config import settings
from lumi.tester.errors import BridgeError
from lumi.tester.utils.logger import get_logger
from lumi.tester.utils.shell_utils import resolve_binary, run_command

logger = get_logger(__name__)

PNG_SIGNATURE = b"\x89PNG"
MIN_SCREENSHOT_BYTES = 100
DEFAULT_SCREEN_SIZE = (1080, 1920)

_ADB_CANDIDATES = [
    "~/Library/Android/sdk/platform-tools/adb",
    "~/Android/Sdk/platform-tools/adb",
    "/opt/android-sdk/platform-tools/adb",
    "/usr/local/bin/adb",
]

_adb_path: str | None = None


class AndroidDevice(BaseModel):
    serial: str
    state: str


def find_adb() -> str:
    """Resolve the adb binary once per process."""
    global _adb_path
    if _adb_path is None:
        try:
            _adb_path = resolve_binary("adb", settings.LUMI_ADB_PATH, _ADB_CANDIDATES)
        except BridgeError:
            # adbutils ships a bundled adb for most platforms
            _adb_path = adbutils.adb_path()
    return _adb_path


def get_adb_client() -> AdbClient:
    return AdbClient(host=settings.ADB_HOST or "localhost", port=settings.ADB_PORT or 5037)


def parse_devices_output(output: str) -> list[AndroidDevice]:
    devices = []
    for line in output.splitlines()[1:]:
        parts = line.split()
        if len(parts) >= 2:
            devices.append(AndroidDevice(serial=parts[0], state=parts[1]))
    return devices


def parse_wm_size(output: str) -> tuple[int, int]:
    """Parse `wm size`, preferring `Override size` over `Physical size`."""
    size = DEFAULT_SCREEN_SIZE
    for line in output.splitlines():
        match = re.search(r"(Override|Physical) size:\s*(\d+)\s*x\s*(\d+)", line)
        if not match:
            continue
        size = (int(match.group(2)), int(match.group(3)))
        if match.group(1) == "Override":
            break
    return size


def is_landscape_rotation(output: str) -> bool:
    return "mRotation=1" in output or "mRotation=3" in output


def is_png(data: bytes) -> bool:
    return data[:4] == PNG_SIGNATURE and len(data) > MIN_SCREENSHOT_BYTES


async def list_devices() -> list[AndroidDevice]:
    output = await run_command([find_adb(), "devices"])
    return parse_devices_output(output.decode(errors="replace"))


class AdbBridge:
    """Typed wrapper over the adb CLI, bound to one device serial.

    Example:
        bridge = AdbBridge(serial="emulator-5554")
        width, height = await bridge.get_screen_size()
        png = await bridge.screenshot()
    """

    def __init__(self, serial: str | None = None):
        self.serial = serial

    def _args(self, *args: str) -> list[str]:
        base = [find_adb()]
        if self.serial:
            base += ["-s", self.serial]
        return base + list(args)

    async def exec(self, *args: str, timeout: float | None = None) -> str:
        output = await run_command(self._args(*args), timeout=timeout)
        return output.decode(errors="replace")

    async def shell(self, command: str, timeout: float | None = None) -> str:
        return await self.exec("shell", command, timeout=timeout)

    async def shell_quiet(self, command: str) -> str:
        """Run a shell command and return an empty string when it fails."""
        try:
            return await self.shell(command)
        except BridgeError as e:
            logger.debug(f"Ignoring failed shell command '{command}': {e}")
            return ""

    async def exec_out(self, command: str) -> str:
        data = await self.exec_out_binary(command)
        return data.decode(errors="replace")

    async def exec_out_binary(self, command: str) -> bytes:
        args = self._args("exec-out", command)
        output = await run_command(args, check=False)
        if not output:
            raise BridgeError(f"adb exec-out returned no output for '{command}'", command=args)
        return output

    async def pull(self, remote: str, local: str | Path) -> None:
        await run_command(self._args("pull", remote, str(local)))

    async def push(self, local: str | Path, remote: str) -> None:
        await run_command(self._args("push", str(local), remote))

    async def install(self, apk_path: str | Path) -> None:
        await run_command(self._args("install", "-r", "-g", str(apk_path)))

    async def install_multiple(self, apk_paths: list[Path]) -> None:
        await run_command(self._args("install-multiple", "-r", "-g", *[str(p) for p in apk_paths]))

    async def uninstall(self, package: str) -> None:
        await run_command(self._args("uninstall", package))

    async def forward(self, local_port: int, remote_port: int) -> None:
        """Forward a host TCP port to the device through the adb server."""
        client = get_adb_client()
        device = client.device(serial=self.serial) if self.serial else client.device()
        await asyncio.to_thread(device.forward, f"tcp:{local_port}", f"tcp:{remote_port}")

    async def logcat(self, limit: int) -> str:
        return await self.exec("logcat", "-d", "-t", str(limit))

    async def get_screen_size(self) -> tuple[int, int]:
        width, height = parse_wm_size(await self.shell("wm size"))
        rotation = await self.shell_quiet("dumpsys window displays | grep mRotation")
        if is_landscape_rotation(rotation) and height > width:
            return height, width
        return width, height

    async def screenshot(self) -> bytes:
        """Capture the screen as PNG bytes.

        Streams `screencap -p` over stdout when the device returns a valid PNG,
        otherwise writes to the device, pulls and deletes the file.
        """
        try:
            data = await self.exec_out_binary("screencap -p")
            if is_png(data):
                return data
            logger.debug("Fast screenshot returned invalid PNG data, using file transfer")
        except BridgeError as e:
            logger.debug(f"Fast screenshot failed: {e}")

        remote = "/sdcard/lumi_screenshot.png"
        await self.shell(f"screencap -p {remote}")
        with tempfile.TemporaryDirectory() as tmp_dir:
            local = Path(tmp_dir) / "screenshot.png"
            await self.pull(remote, local)
            data = local.read_bytes()
        await self.shell_quiet(f"rm {remote}")
        return data

    async def start_screenrecord(self, remote_path: str) -> asyncio.subprocess.Process:
        return await asyncio.create_subprocess_exec(
            *self._args("shell", "screenrecord", remote_path),
            stdout=asyncio.subprocess.DEVNULL,
            stderr=asyncio.subprocess.DEVNULL,
        )
