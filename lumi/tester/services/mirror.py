import asyncio
import json
from pathlib import Path

from lumi.tester.clients.adb_bridge import AdbBridge
from lumi.tester.config import resolve_apk, settings
from lumi.tester.errors import BridgeError
from lumi.tester.services.audio_capture import AUDIO_PORT
from lumi.tester.services.mock_location import LocationUpdate
from lumi.tester.utils.logger import get_logger

logger = get_logger(__name__)

MIRROR_PORT = 8889
DEVICE_APK_PATH = "/data/local/tmp/nl-mirror.apk"
MIRROR_APK_NAME = "nl-mirror-debug.apk"
MIRROR_MAIN_CLASS = "dev.nl.mirror.core.App"
CONNECT_TIMEOUT_SECONDS = 0.2


async def is_port_reachable(port: int, host: str = "127.0.0.1") -> bool:
    try:
        _, writer = await asyncio.wait_for(
            asyncio.open_connection(host, port), timeout=CONNECT_TIMEOUT_SECONDS
        )
    except (OSError, TimeoutError):
        return False
    writer.close()
    await writer.wait_closed()
    return True


class MirrorHelper:
    """
    The optional on-device helper service.

    It accepts one JSON command per line on TCP 8889 and streams audio on
    8890; both ports are reached through adb port forwarding.
    """

    def __init__(self, bridge: AdbBridge, apk_path: Path | None = None):
        self.bridge = bridge
        self.apk_path = apk_path or resolve_apk(settings.LUMI_MIRROR_APK, MIRROR_APK_NAME)
        self.active = False

    async def is_running(self) -> bool:
        output = await self.bridge.shell_quiet(f"pgrep -f '{MIRROR_MAIN_CLASS}' 2>/dev/null || true")
        return bool(output.strip())

    async def setup_port_forward(self) -> None:
        await self.bridge.forward(MIRROR_PORT, MIRROR_PORT)
        try:
            await self.bridge.forward(AUDIO_PORT, AUDIO_PORT)
        except Exception as e:
            logger.warning(f"Failed to forward audio port: {e}")

    async def deploy_if_needed(self) -> bool:
        local_size = self.apk_path.stat().st_size
        output = await self.bridge.shell_quiet(f"stat -c %s {DEVICE_APK_PATH} 2>/dev/null || echo 0")
        try:
            device_size = int(output.strip() or 0)
        except ValueError:
            device_size = 0
        if device_size == local_size:
            logger.debug("nl-mirror APK already up to date")
            return False
        logger.info(f"Deploying nl-mirror APK ({local_size} bytes)...")
        await self.bridge.push(self.apk_path, DEVICE_APK_PATH)
        return True

    async def stop(self) -> None:
        await self.bridge.shell_quiet("pkill -f 'app_process.*nl-mirror' 2>/dev/null || true")
        await self.bridge.shell_quiet("pkill -f 'dev.nl.mirror' 2>/dev/null || true")

    async def start(self) -> None:
        await self.stop()
        logger.info("Starting nl-mirror service...")
        await self.bridge.shell_quiet(
            f"sh -c 'CLASSPATH={DEVICE_APK_PATH} app_process / {MIRROR_MAIN_CLASS} >/dev/null 2>&1 &'"
        )
        for attempt in range(10):
            await asyncio.sleep(0.2)
            if await self.is_running():
                logger.info(f"nl-mirror service started ({(attempt + 1) * 200}ms)")
                return
        raise BridgeError("nl-mirror service failed to start")

    async def init_session(self) -> bool:
        """Deploy, start and forward the helper. Returns whether it is usable."""
        if not self.apk_path.exists():
            logger.warning(
                f"nl-mirror APK not found at {self.apk_path} (set LUMI_MIRROR_APK); using test providers only"
            )
            self.active = False
            return False
        try:
            await self.setup_port_forward()
            await self.deploy_if_needed()
            if not (await self.is_running() and await is_port_reachable(MIRROR_PORT)):
                await self.start()
                await asyncio.sleep(0.5)
                if not await is_port_reachable(MIRROR_PORT):
                    raise BridgeError(f"nl-mirror started but port {MIRROR_PORT} is unreachable")
            self.active = True
        except Exception as e:
            logger.warning(f"nl-mirror init failed: {e}. Speed may not be accurate.")
            self.active = False
        return self.active

    async def send_location(self, update: LocationUpdate) -> bool:
        if not self.active:
            return False
        payload = {
            "cmd": "set_location",
            "lat": update.lat,
            "lon": update.lon,
            "alt": update.altitude,
            "bearing": round(update.bearing, 2),
            "speed": round(update.speed_ms, 2),
        }
        try:
            _, writer = await asyncio.wait_for(
                asyncio.open_connection("127.0.0.1", MIRROR_PORT), timeout=CONNECT_TIMEOUT_SECONDS
            )
        except (OSError, TimeoutError):
            return False
        try:
            writer.write((json.dumps(payload) + "\n").encode())
            await asyncio.wait_for(writer.drain(), timeout=CONNECT_TIMEOUT_SECONDS)
            return True
        except (OSError, TimeoutError) as e:
            logger.warning(f"nl-mirror write failed: {e}")
            return False
        finally:
            writer.close()
