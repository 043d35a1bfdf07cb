from enum import Enum


class SpeedProfile(str, Enum):
    """Preset post-action delays and poll intervals, in milliseconds."""

    TURBO = "turbo"
    FAST = "fast"
    NORMAL = "normal"
    SAFE = "safe"

    @classmethod
    def from_str(cls, value: str | None) -> "SpeedProfile":
        lowered = (value or "").strip().lower()
        if lowered in ("turbo", "max"):
            return cls.TURBO
        if lowered == "fast":
            return cls.FAST
        if lowered in ("safe", "slow"):
            return cls.SAFE
        return cls.NORMAL

    @property
    def tap_delay_ms(self) -> int:
        return _DELAYS[self][0]

    @property
    def scroll_delay_ms(self) -> int:
        return _DELAYS[self][1]

    @property
    def poll_interval_ms(self) -> int:
        return _DELAYS[self][2]

    @property
    def ui_idle_max_wait_ms(self) -> int:
        return _DELAYS[self][3]

    @property
    def skip_ui_idle(self) -> bool:
        return self is SpeedProfile.TURBO


# (tap, scroll, poll, ui idle)
_DELAYS = {
    SpeedProfile.TURBO: (0, 100, 30, 0),
    SpeedProfile.FAST: (50, 300, 100, 100),
    SpeedProfile.NORMAL: (150, 500, 300, 200),
    SpeedProfile.SAFE: (300, 1000, 500, 400),
}
