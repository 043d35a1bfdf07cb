"""
In-memory driver over a synthetic Android hierarchy.

It runs the real selector resolution and waiting logic of `DeviceDriver` on a
virtual clock, and records every raw gesture instead of touching a device.
Used to exercise the executor without hardware.
"""

import asyncio
from pathlib import Path

from lumi.tester.drivers.device_driver import DeviceDriver
from lumi.tester.drivers.speed import SpeedProfile
from lumi.tester.hierarchy.models import AndroidElement, Bounds, UiElement
from lumi.tester.services.mock_location import LocationUpdate, MockLocationManager


class VirtualClock:
    """Monotonic clock that only advances when someone sleeps on it."""

    def __init__(self):
        self.now = 0.0

    def __call__(self) -> float:
        return self.now

    async def sleep(self, seconds: float) -> None:
        self.now += max(seconds, 0)
        await asyncio.sleep(0)


def element(
    text: str = "",
    bounds: tuple[int, int, int, int] = (0, 0, 100, 100),
    resource_id: str = "",
    class_name: str = "android.widget.TextView",
    clickable: bool = True,
    **kwargs,
) -> AndroidElement:
    left, top, right, bottom = bounds
    return AndroidElement(
        text=text,
        resource_id=resource_id,
        class_name=class_name,
        clickable=clickable,
        element_bounds=Bounds(left=left, top=top, right=right, bottom=bottom),
        **kwargs,
    )


class FakeDriver(DeviceDriver):
    platform_name = "fake"

    def __init__(
        self,
        elements: list[UiElement] | None = None,
        screen_size: tuple[int, int] = (1080, 1920),
        speed: SpeedProfile = SpeedProfile.TURBO,
    ):
        self.clock = VirtualClock()
        super().__init__(speed=speed, screen_size=screen_size, sleep=self.clock.sleep, clock=self.clock)
        self.elements: list[UiElement] = list(elements or [])
        self.actions: list[tuple] = []
        self.dump_count = 0
        self.screenshot = b""
        self.logs = ""
        self.clipboard = ""
        self.performance_metrics: dict[str, float] = {}
        self.published: list[LocationUpdate] = []
        self.mock_locations = MockLocationManager(
            publish=self.publish_location, sleep=self.clock.sleep, control_file=None, clock=self.clock
        )

    async def _dump_elements(self) -> list[UiElement]:
        self.dump_count += 1
        return list(self.elements)

    async def _tap_at(self, x: int, y: int) -> None:
        self.actions.append(("tap", x, y))

    async def _long_press_at(self, x: int, y: int, duration_ms: int) -> None:
        self.actions.append(("long_press", x, y, duration_ms))

    async def _swipe_between(
        self, start_x: int, start_y: int, end_x: int, end_y: int, duration_ms: int
    ) -> None:
        self.actions.append(("swipe", start_x, start_y, end_x, end_y))

    async def publish_location(self, update: LocationUpdate) -> None:
        self.published.append(update)

    @property
    def taps(self) -> list[tuple[int, int]]:
        return [(a[1], a[2]) for a in self.actions if a[0] == "tap"]

    async def launch_app(self, app_id: str, clear_state: bool = False) -> None:
        self.actions.append(("launch", app_id, clear_state))

    async def stop_app(self, app_id: str) -> None:
        self.actions.append(("stop", app_id))

    async def input_text(self, text: str, unicode: bool = False) -> None:
        self.actions.append(("input", text))
        await self.invalidate_cache()

    async def erase_text(self, char_count: int | None = None) -> None:
        self.actions.append(("erase", char_count))

    async def hide_keyboard(self) -> None:
        self.actions.append(("hide_keyboard",))

    async def press_key(self, key: str) -> None:
        self.actions.append(("key", key))

    async def dump_ui_hierarchy(self) -> str:
        return "<hierarchy/>"

    async def dump_logs(self, limit: int) -> str:
        return self.logs

    async def screenshot_bytes(self) -> bytes:
        return self.screenshot

    async def start_recording(self, path: str) -> None:
        self.actions.append(("record", path))

    async def stop_recording(self) -> None:
        self.actions.append(("stop_record",))

    async def open_link(self, url: str, app_id: str | None = None) -> None:
        self.actions.append(("open_link", url))

    async def back(self) -> None:
        self.actions.append(("back",))
        await self.invalidate_cache()

    async def home(self) -> None:
        self.actions.append(("home",))
        await self.invalidate_cache()

    async def set_clipboard(self, text: str) -> None:
        self.clipboard = text

    async def get_clipboard(self) -> str:
        return self.clipboard

    async def get_performance_metrics(self) -> dict[str, float]:
        return dict(self.performance_metrics)

    async def take_screenshot(self, path: str) -> None:
        target = Path(path)
        target.parent.mkdir(parents=True, exist_ok=True)
        target.write_bytes(self.screenshot)
