from __future__ import annotations

import asyncio
import json
import platform
from typing import Literal

import httpx
from pydantic import BaseModel, ConfigDict

from lumi.tester.clients.idb_bridge import IosTarget, list_targets
from lumi.tester.clients.wda_client import WdaClientWrapper
from lumi.tester.config import settings
from lumi.tester.errors import BridgeError
from lumi.tester.utils.logger import get_logger
from lumi.tester.utils.shell_utils import run_command

logger = get_logger(__name__)

DeviceType = Literal["simulator", "physical", "unknown"]


class DeviceNotFoundError(BridgeError):
    """Raised when the specified device cannot be found."""

    pass


class WdaClientConfig(BaseModel):
    model_config = ConfigDict(frozen=True)
    wda_url: str = f"http://{settings.WDA_HOST}:{settings.WDA_PORT}"
    timeout: float = 30.0
    auto_start_iproxy: bool = True
    wda_startup_timeout: float = 30.0

    @classmethod
    def with_overrides(
        cls,
        wda_url: str | None = None,
        timeout: float | None = None,
        auto_start_iproxy: bool | None = None,
        wda_startup_timeout: float | None = None,
    ) -> WdaClientConfig:
        """Create a WdaClientConfig with only specified fields overridden.

        Example:
            config = WdaClientConfig.with_overrides(wda_url="http://localhost:8101")
        """
        base = cls()
        overrides = {
            k: v
            for k, v in {
                "wda_url": wda_url,
                "timeout": timeout,
                "auto_start_iproxy": auto_start_iproxy,
                "wda_startup_timeout": wda_startup_timeout,
            }.items()
            if v is not None
        }
        if not overrides:
            return base
        return base.model_copy(update=overrides)

    @property
    def port(self) -> int:
        return httpx.URL(self.wda_url).port or 8100


async def get_device_type(udid: str) -> DeviceType:
    """Detect whether a UDID belongs to a simulator or a physical device."""
    if platform.system() != "Darwin":
        return "unknown"

    try:
        output = await run_command(["xcrun", "simctl", "list", "devices", "--json"], timeout=10)
        data = json.loads(output)
        for devices in data.get("devices", {}).values():
            if any(device.get("udid") == udid for device in devices):
                return "simulator"
    except (BridgeError, json.JSONDecodeError) as e:
        logger.debug(f"simctl device lookup failed: {e}")

    try:
        output = await run_command(["idevice_id", "-l"], timeout=10)
        if udid in output.decode().split():
            return "physical"
    except BridgeError as e:
        logger.debug(f"idevice_id lookup failed: {e}")

    return "unknown"


async def select_target(udid: str | None) -> IosTarget:
    """Pick the requested target, else the first booted simulator, else the first device."""
    targets = await list_targets()
    if udid:
        for target in targets:
            if target.udid == udid:
                return target
        device_type = await get_device_type(udid)
        if device_type == "unknown":
            available = ", ".join(f"{t.udid} ({t.target_type})" for t in targets) or "none"
            raise DeviceNotFoundError(f"Device '{udid}' not found.\nAvailable devices: {available}")
        return IosTarget(
            udid=udid,
            type="simulator" if device_type == "simulator" else "device",
            state="Booted",
        )

    booted = [t for t in targets if t.is_simulator and t.is_booted]
    if booted:
        return booted[0]
    devices = [t for t in targets if not t.is_simulator and t.is_booted]
    if devices:
        return devices[0]
    raise DeviceNotFoundError(
        "No iOS devices detected.\n"
        "For simulators: Boot a simulator using Xcode or `xcrun simctl boot <udid>`\n"
        "For physical devices: Connect via USB and trust the computer on the device"
    )


async def is_wda_ready(wda_url: str) -> bool:
    try:
        async with httpx.AsyncClient(timeout=2.0) as client:
            response = await client.get(f"{wda_url}/status")
            return response.status_code == 200
    except httpx.HTTPError:
        return False


async def ensure_wda_running(
    udid: str, config: WdaClientConfig
) -> tuple[WdaClientWrapper | None, asyncio.subprocess.Process | None]:
    """
    Make sure WebDriverAgent answers on the configured URL.

    Starts `iproxy` for USB port forwarding when allowed and polls `/status`
    until the startup budget elapses.

    Returns:
        The connected client (None if WDA never became reachable) and the
        iproxy process, which the caller must terminate on teardown.
    """
    iproxy = None
    if not await is_wda_ready(config.wda_url) and config.auto_start_iproxy:
        try:
            iproxy = await asyncio.create_subprocess_exec(
                "iproxy",
                str(config.port),
                str(config.port),
                "-u",
                udid,
                stdout=asyncio.subprocess.DEVNULL,
                stderr=asyncio.subprocess.DEVNULL,
            )
            logger.info(f"Started iproxy on port {config.port}")
        except FileNotFoundError:
            logger.warning("iproxy not found; install libimobiledevice for USB forwarding")

    loop = asyncio.get_running_loop()
    deadline = loop.time() + config.wda_startup_timeout
    while not await is_wda_ready(config.wda_url):
        if loop.time() >= deadline:
            logger.error(
                f"WebDriverAgent not reachable at {config.wda_url}. "
                "Start WebDriverAgentRunner from Xcode (Product > Test) and keep it running."
            )
            return None, iproxy
        await asyncio.sleep(1)

    client = WdaClientWrapper(wda_url=config.wda_url, timeout=config.timeout)
    if not await client.init_client():
        return None, iproxy
    logger.success(f"WebDriverAgent ready at {config.wda_url}")
    return client, iproxy
