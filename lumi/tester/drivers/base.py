"""
Capability interface every platform driver satisfies.

The executor only talks to `PlatformDriver`; it never knows which concrete
backend it drives. Operations a backend cannot perform keep the default
implementation, which raises `NotSupportedError`.
"""

from abc import ABC, abstractmethod
from enum import Enum
from pathlib import Path

from lumi.tester.errors import NotSupportedError
from lumi.tester.matching.image_matcher import pixel_color
from lumi.tester.parser.gps import GpsPoint
from lumi.tester.selectors.models import BaseSelector, SwipeDirection
from lumi.tester.services.mock_location import MockLocationManager, SpeedMode
from lumi.tester.utils.logger import get_logger

logger = get_logger(__name__)

DEFAULT_SCROLL_DURATION_MS = 500


class Orientation(str, Enum):
    PORTRAIT = "portrait"
    LANDSCAPE = "landscape"
    UPSIDE_DOWN = "upside_down"
    LANDSCAPE_LEFT = "landscape_left"
    LANDSCAPE_RIGHT = "landscape_right"

    @classmethod
    def parse(cls, value: str) -> "Orientation":
        normalized = value.strip().lower().replace("-", "_")
        normalized = {
            "portraitupsidedown": "upside_down",
            "portrait_upside_down": "upside_down",
            "upsidedown": "upside_down",
            "landscapeleft": "landscape_left",
            "landscaperight": "landscape_right",
        }.get(normalized, normalized)
        return cls(normalized)


class PlatformDriver(ABC):
    """Platform-agnostic driver interface."""

    platform_name: str = "unknown"

    # Set by drivers that support mock location playback
    mock_locations: MockLocationManager | None = None

    def device_serial(self) -> str | None:
        return None

    def _not_supported(self, operation: str) -> NotSupportedError:
        return NotSupportedError(f"{operation} is not supported on {self.platform_name}")

    # Lifecycle

    @abstractmethod
    async def launch_app(self, app_id: str, clear_state: bool = False) -> None: ...

    @abstractmethod
    async def stop_app(self, app_id: str) -> None: ...

    async def install_app(self, path: str) -> None:
        raise self._not_supported("install_app")

    async def uninstall_app(self, app_id: str) -> None:
        raise self._not_supported("uninstall_app")

    async def clear_app_data(self, app_id: str) -> None:
        raise self._not_supported("clear_app_data")

    async def background_app(self, app_id: str | None, duration_ms: int) -> None:
        raise self._not_supported("background_app")

    async def set_permissions(self, app_id: str, permissions: dict[str, str]) -> None:
        raise self._not_supported("set_permissions")

    async def clear_keychain(self) -> None:
        raise self._not_supported("clear_keychain")

    # Gestures

    @abstractmethod
    async def tap(self, selector: BaseSelector) -> None: ...

    @abstractmethod
    async def long_press(self, selector: BaseSelector, duration_ms: int) -> None: ...

    @abstractmethod
    async def double_tap(self, selector: BaseSelector) -> None: ...

    async def right_click(self, selector: BaseSelector) -> None:
        raise self._not_supported("right_click")

    @abstractmethod
    async def swipe(
        self,
        direction: SwipeDirection,
        duration_ms: int | None = None,
        from_selector: BaseSelector | None = None,
    ) -> None: ...

    @abstractmethod
    async def scroll_until_visible(
        self,
        selector: BaseSelector,
        max_scrolls: int,
        direction: SwipeDirection | None = None,
        from_selector: BaseSelector | None = None,
    ) -> bool:
        """
        Scroll until an element becomes visible.

        Returns:
            True if the element was found, False after `max_scrolls` attempts.
        """

    async def tap_by_type_index(self, element_type: str, index: int) -> None:
        raise self._not_supported("tap_by_type_index")

    async def input_by_type_index(self, element_type: str, index: int, text: str) -> None:
        raise self._not_supported("input_by_type_index")

    # Text

    @abstractmethod
    async def input_text(self, text: str, unicode: bool = False) -> None: ...

    @abstractmethod
    async def erase_text(self, char_count: int | None = None) -> None: ...

    @abstractmethod
    async def hide_keyboard(self) -> None: ...

    async def press_key(self, key: str) -> None:
        raise self._not_supported("press_key")

    # State queries

    @abstractmethod
    async def is_visible(self, selector: BaseSelector) -> bool: ...

    @abstractmethod
    async def wait_for_element(self, selector: BaseSelector, timeout_ms: int) -> bool:
        """
        Wait for an element to become visible.

        A timeout of 0 checks exactly once.
        """

    @abstractmethod
    async def wait_for_absence(self, selector: BaseSelector, timeout_ms: int) -> bool: ...

    @abstractmethod
    async def get_element_text(self, selector: BaseSelector) -> str: ...

    @abstractmethod
    async def get_screen_size(self) -> tuple[int, int]: ...

    @abstractmethod
    async def dump_ui_hierarchy(self) -> str: ...

    @abstractmethod
    async def dump_logs(self, limit: int) -> str: ...

    async def get_pixel_color(self, x: int, y: int) -> tuple[int, int, int]:
        return pixel_color(await self.screenshot_bytes(), x, y)

    async def invalidate_cache(self) -> None:
        pass

    # Capture

    @abstractmethod
    async def screenshot_bytes(self) -> bytes: ...

    async def take_screenshot(self, path: str) -> None:
        data = await self.screenshot_bytes()
        target = Path(path)
        target.parent.mkdir(parents=True, exist_ok=True)
        target.write_bytes(data)

    @abstractmethod
    async def compare_screenshot(self, reference_path: Path, tolerance_percent: float) -> float:
        """Returns the percentage of differing pixels against the reference image."""

    @abstractmethod
    async def start_recording(self, path: str) -> None: ...

    @abstractmethod
    async def stop_recording(self) -> None: ...

    @abstractmethod
    async def open_link(self, url: str, app_id: str | None = None) -> None: ...

    # Navigation

    @abstractmethod
    async def back(self) -> None: ...

    @abstractmethod
    async def home(self) -> None: ...

    async def rotate_screen(self, mode: str) -> None:
        raise self._not_supported("rotate_screen")

    async def set_orientation(self, orientation: Orientation) -> None:
        raise self._not_supported("set_orientation")

    async def select_display(self, display_id: int) -> None:
        raise self._not_supported("select_display")

    async def detect_android_auto_display(self) -> int | None:
        return None

    # System

    async def push_file(self, local_path: str, remote_path: str) -> None:
        raise self._not_supported("push_file")

    async def pull_file(self, remote_path: str, local_path: str) -> None:
        raise self._not_supported("pull_file")

    async def set_clipboard(self, text: str) -> None:
        raise self._not_supported("set_clipboard")

    async def get_clipboard(self) -> str:
        raise self._not_supported("get_clipboard")

    async def set_network_connection(self, wifi: bool | None, data: bool | None) -> None:
        raise self._not_supported("set_network_connection")

    async def toggle_airplane_mode(self) -> None:
        raise self._not_supported("toggle_airplane_mode")

    async def open_notifications(self) -> None:
        raise self._not_supported("open_notifications")

    async def open_quick_settings(self) -> None:
        raise self._not_supported("open_quick_settings")

    async def set_volume(self, level: int) -> None:
        raise self._not_supported("set_volume")

    async def lock_device(self) -> None:
        raise self._not_supported("lock_device")

    async def unlock_device(self) -> None:
        raise self._not_supported("unlock_device")

    async def set_locale(self, locale: str) -> None:
        logger.warning(f"setLocale('{locale}') not supported on {self.platform_name}, skipping")

    # Mock location

    def _require_mock_locations(self) -> MockLocationManager:
        if self.mock_locations is None:
            raise self._not_supported("mock location")
        return self.mock_locations

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
        await self._require_mock_locations().start(
            name,
            points,
            speed_kmh=speed_kmh,
            speed_mode=speed_mode,
            speed_noise=speed_noise,
            interval_ms=interval_ms,
            loop_route=loop_route,
        )

    async def stop_mock_location(self) -> None:
        await self._require_mock_locations().stop()

    async def wait_for_location(
        self, name: str, lat: float, lon: float, tolerance: float, timeout_ms: int
    ) -> None:
        await self._require_mock_locations().wait_for_location(name, lat, lon, tolerance, timeout_ms)

    async def wait_for_mock_completion(self, name: str, timeout_ms: int | None = None) -> None:
        await self._require_mock_locations().wait_for_completion(name, timeout_ms)

    async def control_mock_location(
        self,
        name: str,
        speed: float | None = None,
        speed_mode: SpeedMode | None = None,
        speed_noise: float | None = None,
        pause: bool | None = None,
        resume: bool | None = None,
    ) -> None:
        await self._require_mock_locations().control(
            name,
            speed=speed,
            speed_mode=speed_mode,
            speed_noise=speed_noise,
            pause=pause,
            resume=resume,
        )

    # Profiling

    async def start_profiling(self, package: str | None = None, interval_ms: int | None = None) -> None:
        raise self._not_supported("start_profiling")

    async def stop_profiling(self) -> None:
        raise self._not_supported("stop_profiling")

    async def get_performance_metrics(self) -> dict[str, float]:
        """Keys follow the conventional names: cpu, memory, fps, jank_rate, load_time_ms, fcp_ms, memory_heap_mb."""
        raise self._not_supported("get_performance_metrics")

    async def set_cpu_throttling(self, rate: float) -> None:
        raise self._not_supported("set_cpu_throttling")

    async def set_network_conditions(self, profile: str) -> None:
        raise self._not_supported("set_network_conditions")

    # Media and audio

    async def play_media(self, file_path: Path, loop_playback: bool = False) -> None:
        raise self._not_supported("play_media")

    async def stop_media(self) -> None:
        raise self._not_supported("stop_media")

    async def start_audio_capture(self, duration_ms: int | None = None, port: int | None = None) -> None:
        raise self._not_supported("start_audio_capture")

    async def stop_audio_capture(self) -> None:
        raise self._not_supported("stop_audio_capture")

    async def verify_audio_ducking(self, min_events: int, drop_threshold: float) -> None:
        raise self._not_supported("verify_audio_ducking")

    async def close(self) -> None:
        pass
