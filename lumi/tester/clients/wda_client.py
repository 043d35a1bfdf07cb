import asyncio
import traceback
import xml.etree.ElementTree as ET
from functools import wraps
from typing import Any

import wda
from wda.exceptions import WDAError, WDARequestError

from lumi.tester.utils.logger import get_logger

logger = get_logger(__name__)


def _fallback_value(func):
    return_type = func.__annotations__.get("return")
    if return_type is bool or return_type == "bool":
        return False
    return None


def with_wda_client(func):
    """Decorator to handle WDA error handling and logging.

    WDA keeps a persistent session, so the decorator only converts failures
    into a neutral return value (False for bool methods, None otherwise).
    """

    @wraps(func)
    async def wrapper(self, *args, **kwargs):
        method_name = func.__name__
        try:
            logger.debug(f"Executing WDA operation: {method_name}...")
            result = await func(self, *args, **kwargs)
            logger.debug(f"{method_name} completed successfully")
            return result
        except WDARequestError as e:
            logger.error(f"WDA request error in {method_name}: {e}")
            return _fallback_value(func)
        except WDAError as e:
            logger.error(f"WDA error in {method_name}: {e}")
            return _fallback_value(func)
        except Exception as e:
            logger.error(f"Failed to {method_name}: {e}")
            logger.debug(f"Traceback: {traceback.format_exc()}")
            return _fallback_value(func)

    return wrapper


class WdaClientWrapper:
    """Wrapper around facebook-wda for physical iOS devices.

    Prerequisites:
        1. WebDriverAgent must be running on the target device
        2. Port forwarding must be set up (e.g., iproxy 8100 8100)

    Example:
        async with WdaClientWrapper(wda_url="http://localhost:8100") as client:
            await client.tap(100, 200)
            png = await client.screenshot()
    """

    def __init__(self, wda_url: str = "http://localhost:8100", timeout: float = 30.0):
        self.wda_url = wda_url
        self.timeout = timeout
        self._client: wda.Client | None = None
        self._session: wda.Session | None = None

    async def init_client(self) -> bool:
        try:
            logger.info(f"Connecting to WebDriverAgent at {self.wda_url}")
            self._client = await asyncio.to_thread(wda.Client, self.wda_url)
            status = await asyncio.to_thread(self._client.status)
            logger.debug(f"WDA status: {status}")
            self._session = await asyncio.to_thread(self._client.session)
            logger.info(f"Connected to WebDriverAgent at {self.wda_url}")
            return True
        except Exception as e:
            logger.error(f"Failed to connect to WebDriverAgent: {e}")
            logger.error(
                "\nMake sure:\n"
                "1. WebDriverAgent is running on your device\n"
                "2. Port forwarding is active: iproxy 8100 8100\n"
                f"3. URL is correct: {self.wda_url}"
            )
            self._client = None
            self._session = None
            return False

    async def cleanup(self) -> None:
        if self._session is not None:
            try:
                await asyncio.to_thread(self._session.close)
            except Exception as e:
                logger.debug(f"Error closing WDA session: {e}")
            finally:
                self._session = None
        self._client = None

    async def __aenter__(self):
        if not await self.init_client():
            raise RuntimeError(f"Failed to connect to WebDriverAgent at {self.wda_url}")
        return self

    async def __aexit__(self, exc_type, exc_val, exc_tb):
        await self.cleanup()
        return False

    def _ensure_session(self) -> wda.Session:
        if self._session is None:
            raise RuntimeError(
                "WDA session not initialized. Call init_client() first or use as context manager."
            )
        return self._session

    @with_wda_client
    async def tap(self, x: int, y: int, duration_ms: int | None = None) -> bool:
        session = self._ensure_session()
        if duration_ms:
            await asyncio.to_thread(session.tap_hold, x, y, duration_ms / 1000)
        else:
            await asyncio.to_thread(session.tap, x, y)
        return True

    @with_wda_client
    async def double_tap(self, x: int, y: int) -> bool:
        session = self._ensure_session()
        await asyncio.to_thread(session.double_tap, x, y)
        return True

    @with_wda_client
    async def swipe(
        self, x1: int, y1: int, x2: int, y2: int, duration_ms: int | None = None
    ) -> bool:
        session = self._ensure_session()
        duration = (duration_ms or 300) / 1000
        await asyncio.to_thread(session.swipe, x1, y1, x2, y2, duration)
        return True

    @with_wda_client
    async def screenshot(self) -> bytes | None:
        session = self._ensure_session()
        data = await asyncio.to_thread(session.screenshot, format="raw")
        if isinstance(data, bytes):
            return data
        logger.warning(f"Expected bytes, got: {type(data)}")
        return None

    @with_wda_client
    async def launch(self, bundle_id: str) -> bool:
        session = self._ensure_session()
        await asyncio.to_thread(session.app_launch, bundle_id)
        return True

    @with_wda_client
    async def terminate(self, bundle_id: str) -> bool:
        session = self._ensure_session()
        await asyncio.to_thread(session.app_terminate, bundle_id)
        return True

    @with_wda_client
    async def text(self, text: str) -> bool:
        session = self._ensure_session()
        await asyncio.to_thread(session.send_keys, text)
        return True

    @with_wda_client
    async def open_url(self, url: str) -> bool:
        session = self._ensure_session()
        await asyncio.to_thread(session.open_url, url)
        return True

    @with_wda_client
    async def button(self, name: str) -> bool:
        """Press a hardware button by name (home, volumeUp, volumeDown)."""
        client = self._client
        if client is None:
            raise RuntimeError("WDA client not initialized")
        lowered = name.lower()
        if lowered == "home":
            await asyncio.to_thread(client.home)
        elif lowered in ("volume_up", "volumeup"):
            await asyncio.to_thread(self._ensure_session().press, "volumeUp")
        elif lowered in ("volume_down", "volumedown"):
            await asyncio.to_thread(self._ensure_session().press, "volumeDown")
        else:
            logger.warning(f"Unsupported WDA button: {name}")
            return False
        return True

    @with_wda_client
    async def window_size(self) -> tuple[int, int] | None:
        session = self._ensure_session()
        size = await asyncio.to_thread(session.window_size)
        return int(size.width), int(size.height)

    async def describe_all(self) -> list[dict[str, Any]] | None:
        """UI hierarchy as a flat list of dicts in the idb `describe-all` shape."""
        try:
            session = self._ensure_session()
            xml_source = await asyncio.to_thread(session.source, format="xml")
            if xml_source is None:
                return None
            return parse_source_xml(xml_source)
        except Exception as e:
            logger.error(f"Failed to describe_all: {e}")
            return None


def parse_source_xml(xml_source: str) -> list[dict[str, Any]]:
    elements = []
    try:
        root = ET.fromstring(xml_source)
    except ET.ParseError as e:
        logger.error(f"Failed to parse XML: {e}")
        return elements
    for elem in root.iter():
        if elem.tag == "AppiumAUT":
            continue
        element_type = elem.get("type", elem.tag)
        elements.append(
            {
                "type": element_type.removeprefix("XCUIElementType"),
                "value": elem.get("value", ""),
                "label": elem.get("label", ""),
                "identifier": elem.get("name", ""),
                "placeholder": elem.get("placeholderValue", ""),
                "frame": {
                    "x": float(elem.get("x", 0)),
                    "y": float(elem.get("y", 0)),
                    "width": float(elem.get("width", 0)),
                    "height": float(elem.get("height", 0)),
                },
                "enabled": elem.get("enabled", "false").lower() == "true",
                "visible": elem.get("visible", "true").lower() == "true",
            }
        )
    return elements
