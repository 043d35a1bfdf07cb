import asyncio
import re
from collections import defaultdict
from io import BytesIO

import pytesseract
from PIL import Image
from pydantic import BaseModel

from lumi.tester.config import settings
from lumi.tester.errors import LumiError
from lumi.tester.matching.image_matcher import ImageRegion
from lumi.tester.utils.logger import get_logger

logger = get_logger(__name__)

OCR_LANGUAGES = "eng+vie"
OCR_CONFIG = "--psm 3"


class OcrMatch(BaseModel):
    text: str
    x: int
    y: int
    width: int
    height: int
    confidence: float


def group_lines(data: dict[str, list]) -> list[OcrMatch]:
    """Merge tesseract word boxes into text lines, sorted top-to-bottom then left-to-right."""
    groups: dict[tuple[int, int, int], list[int]] = defaultdict(list)
    for i, word in enumerate(data.get("text", [])):
        if not str(word).strip():
            continue
        key = (int(data["block_num"][i]), int(data["par_num"][i]), int(data["line_num"][i]))
        groups[key].append(i)

    lines = []
    for indices in groups.values():
        left = min(int(data["left"][i]) for i in indices)
        top = min(int(data["top"][i]) for i in indices)
        right = max(int(data["left"][i]) + int(data["width"][i]) for i in indices)
        bottom = max(int(data["top"][i]) + int(data["height"][i]) for i in indices)
        confidence = sum(float(data["conf"][i]) for i in indices) / len(indices) / 100.0
        lines.append(
            OcrMatch(
                text=" ".join(str(data["text"][i]).strip() for i in indices),
                x=(left + right) // 2,
                y=(top + bottom) // 2,
                width=right - left,
                height=bottom - top,
                confidence=confidence,
            )
        )
    lines.sort(key=lambda m: (m.y, m.x))
    return lines


def filter_lines(lines: list[OcrMatch], search_text: str, is_regex: bool) -> list[OcrMatch]:
    if is_regex:
        try:
            pattern = re.compile(search_text, re.IGNORECASE)
        except re.error as e:
            raise LumiError(f"Invalid regex pattern: {e}") from e
        return [line for line in lines if pattern.search(line.text)]
    wanted = search_text.lower()
    return [line for line in lines if wanted in line.text.lower()]


def crop_to_region(image_data: bytes, region: ImageRegion) -> tuple[bytes, int, int]:
    """Crop PNG bytes to a screen region; returns (png, offset_x, offset_y)."""
    if region is ImageRegion.FULL:
        return image_data, 0, 0
    image = Image.open(BytesIO(image_data))
    x, y, width, height = region.crop_rect(image.width, image.height)
    buffer = BytesIO()
    image.crop((x, y, x + width, y + height)).save(buffer, format="PNG")
    return buffer.getvalue(), x, y


class OcrEngine:
    """Tesseract-backed text finder. The binary is located and checked on first use."""

    def __init__(self, tesseract_cmd: str | None = None):
        self.tesseract_cmd = tesseract_cmd or settings.TESSERACT_CMD
        self._ready = False
        self._lock = asyncio.Lock()

    async def ensure_ready(self) -> None:
        async with self._lock:
            if self._ready:
                return
            if self.tesseract_cmd:
                pytesseract.pytesseract.tesseract_cmd = self.tesseract_cmd
            try:
                version = await asyncio.to_thread(pytesseract.get_tesseract_version)
            except pytesseract.TesseractNotFoundError as e:
                raise LumiError(
                    "Tesseract not found. Please install: brew install tesseract tesseract-lang"
                ) from e
            logger.debug(f"Using tesseract {version}")
            self._ready = True

    def read_lines(self, image_data: bytes) -> list[OcrMatch]:
        image = Image.open(BytesIO(image_data))
        data = pytesseract.image_to_data(
            image,
            lang=OCR_LANGUAGES,
            config=OCR_CONFIG,
            output_type=pytesseract.Output.DICT,
        )
        lines = group_lines(data)
        logger.debug(f"OCR lines: {[line.text for line in lines]}")
        return lines

    def find_text(self, image_data: bytes, search_text: str, is_regex: bool) -> list[OcrMatch]:
        return filter_lines(self.read_lines(image_data), search_text, is_regex)

    async def find_text_at_index(
        self, image_data: bytes, search_text: str, is_regex: bool, index: int
    ) -> OcrMatch | None:
        """Center of the nth line matching the text, in the input image's coordinates."""
        await self.ensure_ready()
        matches = await asyncio.to_thread(self.find_text, image_data, search_text, is_regex)
        logger.info(f"OCR found {len(matches)} match(es) for '{search_text}'")
        return matches[index] if index < len(matches) else None
