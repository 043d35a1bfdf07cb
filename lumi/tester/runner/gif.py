import io
import time
from collections.abc import Callable
from pathlib import Path

from PIL import Image

from lumi.tester.errors import FlowConfigError, LumiError

# Palette size and dithering per quality level
QUALITY_SETTINGS = {
    "high": (256, Image.Dither.FLOYDSTEINBERG),
    "medium": (None, Image.Dither.FLOYDSTEINBERG),
    "low": (64, Image.Dither.NONE),
}


def parse_crop(crop: str) -> tuple[float, float, float, float]:
    """`"left%,top%,width%,height%"` as four fractions."""
    try:
        parts = [float(p.strip().rstrip("%")) / 100 for p in crop.split(",")]
    except ValueError as e:
        raise FlowConfigError(f"Invalid crop '{crop}': {e}") from e
    if len(parts) != 4:
        raise FlowConfigError("Invalid crop format, expected: left%,top%,width%,height%")
    return parts[0], parts[1], parts[2], parts[3]


def crop_png(data: bytes, crop: str) -> bytes:
    left, top, width, height = parse_crop(crop)
    image = Image.open(io.BytesIO(data))
    w, h = image.size
    x, y = int(left * w), int(top * h)
    box = (x, y, x + int(width * w), y + int(height * h))
    buffer = io.BytesIO()
    image.crop(box).save(buffer, format="PNG")
    return buffer.getvalue()


def resize(image: Image.Image, width: int | None = None, height: int | None = None) -> Image.Image:
    """Scale keeping the aspect ratio; width wins when both are given."""
    w, h = image.size
    if width:
        return image.resize((width, max(1, int(h * width / w))), Image.Resampling.LANCZOS)
    if height:
        return image.resize((max(1, int(w * height / h)), height), Image.Resampling.LANCZOS)
    return image


def encode_gif(
    frames: list[tuple[bytes, int]],
    output: Path,
    width: int | None = None,
    height: int | None = None,
    quality: str = "medium",
    colors: int = 128,
    loop_count: int | None = 0,
) -> Path:
    """
    Write PNG frames with per-frame delays (ms) as an animated GIF.

    Args:
        loop_count: 0 loops forever, None plays once, n loops n times.
    """
    if not frames:
        raise LumiError("No frames to encode")

    palette_size, dither = QUALITY_SETTINGS.get(quality, QUALITY_SETTINGS["medium"])
    palette_size = palette_size or colors

    images = []
    for data, _ in frames:
        image = resize(Image.open(io.BytesIO(data)).convert("RGB"), width, height)
        images.append(image.quantize(colors=palette_size, dither=dither))

    output.parent.mkdir(parents=True, exist_ok=True)
    save_kwargs = {
        "save_all": True,
        "append_images": images[1:],
        "duration": [delay for _, delay in frames],
        "optimize": quality != "high",
    }
    if loop_count is not None:
        save_kwargs["loop"] = loop_count
    images[0].save(output, format="GIF", **save_kwargs)
    return output


class AutoGifCapture:
    """Frames snapped after each successful command while capture is active."""

    def __init__(self, clock: Callable[[], float] = time.monotonic):
        self.clock = clock
        self.active = False
        self.interval_ms = 200
        self.max_frames = 150
        self.width: int | None = None
        self.frames: list[bytes] = []
        self._last_capture = 0.0

    def start(self, interval_ms: int, max_frames: int, width: int | None) -> None:
        self.frames.clear()
        self.active = True
        self.interval_ms = interval_ms
        self.max_frames = max_frames
        self.width = width
        self._last_capture = self.clock()

    def due(self) -> bool:
        if not self.active or len(self.frames) >= self.max_frames:
            return False
        return (self.clock() - self._last_capture) * 1000 >= self.interval_ms

    def add(self, frame: bytes) -> None:
        self.frames.append(frame)
        self._last_capture = self.clock()

    def stop(self) -> list[bytes]:
        self.active = False
        frames, self.frames = self.frames, []
        return frames
