from enum import Enum
from shutil import which

from pydantic import BaseModel

from lumi.tester.clients.adb_bridge import list_devices
from lumi.tester.clients.idb_bridge import list_targets
from lumi.tester.drivers.base import PlatformDriver
from lumi.tester.drivers.web import WebDriver, WebDriverConfig
from lumi.tester.errors import BridgeError, FlowConfigError
from lumi.tester.utils.logger import get_logger

logger = get_logger(__name__)


class Platform(str, Enum):
    ANDROID = "android"
    ANDROID_AUTO = "android_auto"
    IOS = "ios"
    WEB = "web"

    @classmethod
    def parse(cls, value: str) -> "Platform":
        normalized = value.strip().lower().replace("-", "_")
        normalized = {"auto": "android_auto", "androidauto": "android_auto"}.get(normalized, normalized)
        try:
            return cls(normalized)
        except ValueError as e:
            raise FlowConfigError(f"Unknown platform: {value}") from e


class DeviceInfo(BaseModel):
    platform: Platform
    device_id: str
    name: str = ""
    state: str = ""


async def list_all_devices(platform: Platform | None = None) -> list[DeviceInfo]:
    """Connected Android devices and iOS targets; a missing bridge binary just yields none."""
    devices: list[DeviceInfo] = []
    if platform in (None, Platform.ANDROID, Platform.ANDROID_AUTO) and which("adb"):
        try:
            for device in await list_devices():
                devices.append(
                    DeviceInfo(platform=Platform.ANDROID, device_id=device.serial, state=device.state)
                )
        except BridgeError as e:
            logger.error(f"ADB command failed: {e}")
    if platform in (None, Platform.IOS):
        for target in await list_targets():
            devices.append(
                DeviceInfo(
                    platform=Platform.IOS,
                    device_id=target.udid,
                    name=target.name,
                    state=target.state,
                )
            )
    return devices


async def create_driver(
    platform: Platform,
    device_id: str | None = None,
    web_config: WebDriverConfig | None = None,
) -> PlatformDriver:
    """Connect to a device (or open a browser) and return its driver."""
    logger.info(f"Creating {platform.value} driver" + (f" for {device_id}" if device_id else ""))
    if platform == Platform.ANDROID:
        from lumi.tester.drivers.android import AndroidDriver

        return await AndroidDriver.create(device_id)
    if platform == Platform.ANDROID_AUTO:
        from lumi.tester.drivers.android_auto import AndroidAutoDriver

        return await AndroidAutoDriver.create(device_id)
    if platform == Platform.IOS:
        from lumi.tester.drivers.ios import IosDriver

        return await IosDriver.create(device_id)

    return await WebDriver.create(web_config)
