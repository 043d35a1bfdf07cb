"""
Template matching of reference images against device screenshots.

Screens and templates are compared as 8-bit grayscale with OpenCV's
normalized cross-correlation. Large screens are downscaled first so a
full-screen search stays fast.
"""

from enum import Enum

import cv2
import numpy as np
from pydantic import BaseModel, ConfigDict

from lumi.tester.errors import LumiError
from lumi.tester.utils.logger import get_logger

logger = get_logger(__name__)


class ImageRegion(str, Enum):
    FULL = "full"
    TOP = "top"
    BOTTOM = "bottom"
    LEFT = "left"
    RIGHT = "right"
    TOP_LEFT = "top-left"
    TOP_RIGHT = "top-right"
    BOTTOM_LEFT = "bottom-left"
    BOTTOM_RIGHT = "bottom-right"
    CENTER = "center"

    @classmethod
    def from_str(cls, value: str | None) -> "ImageRegion":
        if not value:
            return cls.FULL
        key = value.lower().replace("-", "").replace("_", "")
        return _REGION_ALIASES.get(key, cls.FULL)

    def crop_rect(self, screen_width: int, screen_height: int) -> tuple[int, int, int, int]:
        """(x, y, width, height) of this region on a screen of the given size."""
        half_w, half_h = screen_width // 2, screen_height // 2
        quarter_w, quarter_h = screen_width // 4, screen_height // 4
        return {
            ImageRegion.FULL: (0, 0, screen_width, screen_height),
            ImageRegion.TOP: (0, 0, screen_width, half_h),
            ImageRegion.BOTTOM: (0, half_h, screen_width, half_h),
            ImageRegion.LEFT: (0, 0, half_w, screen_height),
            ImageRegion.RIGHT: (half_w, 0, half_w, screen_height),
            ImageRegion.TOP_LEFT: (0, 0, half_w, half_h),
            ImageRegion.TOP_RIGHT: (half_w, 0, half_w, half_h),
            ImageRegion.BOTTOM_LEFT: (0, half_h, half_w, half_h),
            ImageRegion.BOTTOM_RIGHT: (half_w, half_h, half_w, half_h),
            ImageRegion.CENTER: (quarter_w, quarter_h, half_w, half_h),
        }[self]


_REGION_ALIASES = {
    "top": ImageRegion.TOP,
    "bottom": ImageRegion.BOTTOM,
    "left": ImageRegion.LEFT,
    "right": ImageRegion.RIGHT,
    "topleft": ImageRegion.TOP_LEFT,
    "topright": ImageRegion.TOP_RIGHT,
    "bottomleft": ImageRegion.BOTTOM_LEFT,
    "bottomright": ImageRegion.BOTTOM_RIGHT,
    "center": ImageRegion.CENTER,
    "middle": ImageRegion.CENTER,
}


class MatchConfig(BaseModel):
    model_config = ConfigDict(frozen=True)

    target_width: float = 220.0
    threshold: float = 0.7
    region: ImageRegion = ImageRegion.FULL


class MatchResult(BaseModel):
    x: int
    y: int
    confidence: float


def decode_grayscale(data: bytes) -> np.ndarray:
    image = cv2.imdecode(np.frombuffer(data, dtype=np.uint8), cv2.IMREAD_GRAYSCALE)
    if image is None:
        raise LumiError("Failed to decode image")
    return image


def load_grayscale(path: str) -> np.ndarray:
    image = cv2.imread(path, cv2.IMREAD_GRAYSCALE)
    if image is None:
        raise LumiError(f"Failed to load template image: {path}")
    return image


def crop_region(image: np.ndarray, region: ImageRegion) -> tuple[np.ndarray, int, int]:
    """Crop an image to a region; returns (cropped, offset_x, offset_y)."""
    height, width = image.shape[:2]
    x, y, w, h = region.crop_rect(width, height)
    return image[y : y + h, x : x + w], x, y


def find_template(
    screen: np.ndarray, template: np.ndarray, config: MatchConfig | None = None
) -> MatchResult | None:
    """Locate the template on screen and return the center of the best match."""
    config = config or MatchConfig()
    screen_width = screen.shape[1]

    cropped, offset_x, offset_y = crop_region(screen, config.region)
    crop_h, crop_w = cropped.shape[:2]
    tpl_h, tpl_w = template.shape[:2]
    if tpl_w > crop_w or tpl_h > crop_h:
        logger.debug("Template is larger than the search area")
        return None

    scale = min(1.0, config.target_width / screen_width)
    if scale < 1.0:
        search = cv2.resize(
            cropped,
            (max(1, int(crop_w * scale)), max(1, int(crop_h * scale))),
            interpolation=cv2.INTER_NEAREST,
        )
        needle = cv2.resize(
            template,
            (max(3, int(tpl_w * scale)), max(3, int(tpl_h * scale))),
            interpolation=cv2.INTER_NEAREST,
        )
        if needle.shape[0] > search.shape[0] or needle.shape[1] > search.shape[1]:
            return None
    else:
        search, needle = cropped, template

    result = cv2.matchTemplate(search, needle, cv2.TM_CCORR_NORMED)
    _, max_val, _, max_loc = cv2.minMaxLoc(result)
    if max_val < config.threshold:
        logger.debug(f"Best template score {max_val:.3f} below threshold {config.threshold}")
        return None

    match_x = int(max_loc[0] / scale)
    match_y = int(max_loc[1] / scale)
    return MatchResult(
        x=offset_x + match_x + tpl_w // 2,
        y=offset_y + match_y + tpl_h // 2,
        confidence=float(max_val),
    )


def find_template_in_png(
    screen_png: bytes, template_path: str, region: str | None = None
) -> tuple[int, int] | None:
    """Match a template file against PNG screenshot bytes. CPU-bound; run in a worker thread."""
    screen = decode_grayscale(screen_png)
    template = load_grayscale(template_path)
    match = find_template(screen, template, MatchConfig(region=ImageRegion.from_str(region)))
    if match is None:
        return None
    logger.debug(f"Template matched at ({match.x}, {match.y}) score={match.confidence:.3f}")
    return match.x, match.y


def pixel_difference_percent(current_png: bytes, reference_png: bytes, channel_tolerance: int = 0) -> float:
    """Percentage of pixels whose RGB channels differ by more than the tolerance.

    Images of different dimensions are reported as 100% different.
    """
    current = cv2.imdecode(np.frombuffer(current_png, dtype=np.uint8), cv2.IMREAD_COLOR)
    reference = cv2.imdecode(np.frombuffer(reference_png, dtype=np.uint8), cv2.IMREAD_COLOR)
    if current is None or reference is None:
        raise LumiError("Failed to decode image for comparison")
    if current.shape != reference.shape:
        return 100.0

    diff = cv2.absdiff(current, reference)
    changed = np.any(diff > channel_tolerance, axis=2)
    total = changed.size
    return float(np.count_nonzero(changed)) * 100.0 / total if total else 0.0


def pixel_color(png: bytes, x: int, y: int) -> tuple[int, int, int]:
    """RGB color at a point, clamped to the image bounds."""
    image = cv2.imdecode(np.frombuffer(png, dtype=np.uint8), cv2.IMREAD_COLOR)
    if image is None:
        raise LumiError("Failed to decode screenshot")
    height, width = image.shape[:2]
    x = min(max(x, 0), width - 1)
    y = min(max(y, 0), height - 1)
    blue, green, red = image[y, x][:3]
    return int(red), int(green), int(blue)
