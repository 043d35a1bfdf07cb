import asyncio
import json

from pydantic import BaseModel, Field

from lumi.tester.config import settings
from lumi.tester.errors import BridgeError
from lumi.tester.utils.logger import get_logger
from lumi.tester.utils.shell_utils import resolve_binary, run_command

logger = get_logger(__name__)

DEFAULT_IOS_SCREEN_SIZE = (390, 844)

_IDB_CANDIDATES = [
    "~/.local/bin/idb",
    "/opt/homebrew/bin/idb",
    "/usr/local/bin/idb",
]

# idb expects the target between the group and its subcommand for these groups
_COMMAND_GROUPS = ("ui", "file")

_idb_path: str | None = None


class IosTarget(BaseModel):
    udid: str
    name: str = ""
    target_type: str = Field(default="simulator", alias="type")
    state: str = ""

    model_config = {"populate_by_name": True}

    @property
    def is_simulator(self) -> bool:
        return self.target_type == "simulator"

    @property
    def is_booted(self) -> bool:
        return self.state.lower() == "booted"


def find_idb() -> str:
    global _idb_path
    if _idb_path is None:
        _idb_path = resolve_binary("idb", settings.LUMI_IDB_PATH, _IDB_CANDIDATES)
    return _idb_path


def build_target_args(udid: str, args: list[str]) -> list[str]:
    """Insert `--udid` where idb expects it for the given subcommand.

    Ex: `["ui", "tap", "10", "20"]` -> `["ui", "tap", "--udid", U, "10", "20"]`
        `["launch", "com.app"]` -> `["launch", "--udid", U, "com.app"]`
    """
    if len(args) >= 2 and args[0] in _COMMAND_GROUPS:
        return [args[0], args[1], "--udid", udid, *args[2:]]
    if args:
        return [args[0], "--udid", udid, *args[1:]]
    return ["--udid", udid]


def parse_list_targets(output: str) -> list[IosTarget]:
    targets = []
    for line in output.splitlines():
        if not line.strip():
            continue
        try:
            targets.append(IosTarget.model_validate(json.loads(line)))
        except (json.JSONDecodeError, ValueError) as e:
            logger.debug(f"Skipping unparsable idb target line: {e}")
    return targets


def parse_xctrace_device_line(line: str, offline: bool) -> IosTarget | None:
    """Parse `Name (18.5) (00008020-0012446C1ADA002E)`; the UDID is the last group."""
    open_idx = line.rfind("(")
    close_idx = line.rfind(")")
    if open_idx < 0 or close_idx < open_idx:
        return None
    udid = line[open_idx + 1 : close_idx]
    if len(udid) < 20 or not all(c in "0123456789abcdefABCDEF-" for c in udid):
        return None
    name = line[:open_idx].strip()
    version_idx = name.rfind("(")
    if version_idx >= 0:
        name = name[:version_idx].strip()
    return IosTarget(udid=udid, name=name, type="device", state="Offline" if offline else "Booted")


def parse_xctrace_devices(output: str) -> list[IosTarget]:
    devices = []
    section = None
    for raw in output.splitlines():
        line = raw.strip()
        if line == "== Devices ==":
            section = "online"
            continue
        if line == "== Devices Offline ==":
            section = "offline"
            continue
        if line == "== Simulators ==":
            break
        if not line or line.startswith("==") or section is None:
            continue
        device = parse_xctrace_device_line(line, offline=section == "offline")
        if device is None:
            continue
        lowered = device.name.lower()
        if "mac" in lowered or "apple watch" in lowered:
            continue
        devices.append(device)
    return devices


def parse_screen_dimensions(describe_output: str) -> tuple[int, int]:
    try:
        data = json.loads(describe_output)
    except json.JSONDecodeError:
        return DEFAULT_IOS_SCREEN_SIZE
    dims = data.get("screen_dimensions") or {}
    width = dims.get("width_points") or dims.get("width")
    height = dims.get("height_points") or dims.get("height")
    if isinstance(width, int | float) and isinstance(height, int | float):
        return int(width), int(height)
    return DEFAULT_IOS_SCREEN_SIZE


async def run_idb(args: list[str], timeout: float | None = None) -> str:
    output = await run_command([find_idb(), *args], timeout=timeout)
    return output.decode(errors="replace")


async def list_targets() -> list[IosTarget]:
    """Simulators from `idb list-targets` plus physical devices from `xctrace`."""
    targets: list[IosTarget] = []
    seen: set[str] = set()
    try:
        for target in parse_list_targets(await run_idb(["list-targets", "--json"])):
            seen.add(target.udid)
            targets.append(target)
    except BridgeError as e:
        logger.warning(f"Failed to list idb targets: {e}")

    try:
        output = await run_command(["xcrun", "xctrace", "list", "devices"])
        for device in parse_xctrace_devices(output.decode(errors="replace")):
            if device.udid not in seen:
                seen.add(device.udid)
                targets.append(device)
    except BridgeError as e:
        logger.debug(f"xctrace unavailable: {e}")
    return targets


class IdbBridge:
    """idb CLI bound to one target, plus the `simctl` helpers used on simulators."""

    def __init__(self, udid: str):
        self.udid = udid

    async def run(self, *args: str, timeout: float | None = None) -> str:
        return await run_idb(build_target_args(self.udid, list(args)), timeout=timeout)

    async def simctl(self, *args: str) -> str:
        output = await run_command(["xcrun", "simctl", *args])
        return output.decode(errors="replace")

    async def simctl_stdin(self, data: bytes, *args: str) -> None:
        await run_command(["xcrun", "simctl", *args], stdin=data)

    async def describe(self) -> str:
        return await self.run("describe", "--json")

    async def get_screen_size(self) -> tuple[int, int]:
        try:
            return parse_screen_dimensions(await self.describe())
        except BridgeError as e:
            logger.warning(f"Failed to read screen size, using default: {e}")
            return DEFAULT_IOS_SCREEN_SIZE

    async def launch(self, bundle_id: str) -> None:
        await self.run("launch", bundle_id)

    async def terminate(self, bundle_id: str) -> None:
        await self.run("terminate", bundle_id)

    async def install(self, app_path: str) -> None:
        await self.run("install", app_path)

    async def uninstall(self, bundle_id: str) -> None:
        await self.run("uninstall", bundle_id)

    async def tap(self, x: int, y: int, duration_ms: int | None = None) -> None:
        args = ["ui", "tap", str(x), str(y)]
        if duration_ms:
            args += ["--duration", f"{duration_ms / 1000:.2f}"]
        await self.run(*args)

    async def text(self, text: str) -> None:
        await self.run("ui", "text", text)

    async def button(self, name: str) -> None:
        await self.run("ui", "button", name)

    async def key(self, key: str) -> None:
        await self.run("ui", "key", key)

    async def swipe(self, x1: int, y1: int, x2: int, y2: int, duration_ms: int | None = None) -> None:
        args = ["ui", "swipe", str(x1), str(y1), str(x2), str(y2)]
        if duration_ms:
            args += ["--duration", f"{duration_ms / 1000:.2f}"]
        await self.run(*args)

    async def describe_all(self) -> str:
        return await self.run("ui", "describe-all", "--json")

    async def screenshot(self, output_path: str) -> None:
        await self.run("screenshot", output_path)

    async def open_url(self, url: str) -> None:
        await self.run("open", url)

    async def push_file(self, src: str, dest: str) -> None:
        await self.run("file", "push", src, dest)

    async def pull_file(self, src: str, dest: str) -> None:
        await self.run("file", "pull", src, dest)

    async def logs(self, limit: int) -> str:
        output = await run_command(
            [find_idb(), "--udid", self.udid, "log", "--", "--style", "compact"],
            check=False,
            timeout=5,
        )
        return "\n".join(output.decode(errors="replace").splitlines()[:limit])

    async def start_recording(self, output_path: str) -> asyncio.subprocess.Process:
        return await asyncio.create_subprocess_exec(
            find_idb(),
            "--udid",
            self.udid,
            "record",
            "video",
            output_path,
            stdout=asyncio.subprocess.DEVNULL,
            stderr=asyncio.subprocess.DEVNULL,
        )
