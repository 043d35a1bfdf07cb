import cv2
import numpy as np
import pytest

from lumi.tester.matching.image_matcher import (
    ImageRegion,
    MatchConfig,
    find_template,
    pixel_color,
    pixel_difference_percent,
)
from lumi.tester.matching.ocr import filter_lines, group_lines


def _png(image: np.ndarray) -> bytes:
    ok, buffer = cv2.imencode(".png", image)
    assert ok
    return buffer.tobytes()


@pytest.fixture
def screen_with_marker():
    rng = np.random.default_rng(7)
    screen = rng.integers(0, 60, size=(400, 200), dtype=np.uint8)
    marker = np.zeros((40, 40), dtype=np.uint8)
    marker[:20, :] = 255
    marker[:, :10] = 180
    screen[300:340, 120:160] = marker
    return screen, marker


class TestImageRegion:
    def test_from_str_aliases(self):
        assert ImageRegion.from_str("top-left") == ImageRegion.TOP_LEFT
        assert ImageRegion.from_str("top_right") == ImageRegion.TOP_RIGHT
        assert ImageRegion.from_str("bottomleft") == ImageRegion.BOTTOM_LEFT
        assert ImageRegion.from_str("middle") == ImageRegion.CENTER
        assert ImageRegion.from_str("unknown") == ImageRegion.FULL
        assert ImageRegion.from_str(None) == ImageRegion.FULL

    def test_crop_rect(self):
        assert ImageRegion.TOP_RIGHT.crop_rect(1000, 2000) == (500, 0, 500, 1000)
        assert ImageRegion.CENTER.crop_rect(1000, 2000) == (250, 500, 500, 1000)


class TestFindTemplate:
    def test_finds_marker_center(self, screen_with_marker):
        screen, marker = screen_with_marker
        match = find_template(screen, marker, MatchConfig(threshold=0.9))
        assert match is not None
        assert (match.x, match.y) == (140, 320)

    def test_region_offsets_are_translated_back(self, screen_with_marker):
        screen, marker = screen_with_marker
        match = find_template(screen, marker, MatchConfig(threshold=0.9, region=ImageRegion.BOTTOM_RIGHT))
        assert match is not None
        assert (match.x, match.y) == (140, 320)

    def test_template_larger_than_region(self, screen_with_marker):
        screen, _ = screen_with_marker
        big = np.zeros((300, 150), dtype=np.uint8)
        assert find_template(screen, big, MatchConfig(region=ImageRegion.TOP_LEFT)) is None


class TestPixelHelpers:
    def test_identical_images_have_no_difference(self):
        image = np.full((10, 10, 3), 128, dtype=np.uint8)
        assert pixel_difference_percent(_png(image), _png(image)) == 0.0

    def test_dimension_mismatch_is_full_difference(self):
        a = np.zeros((10, 10, 3), dtype=np.uint8)
        b = np.zeros((20, 10, 3), dtype=np.uint8)
        assert pixel_difference_percent(_png(a), _png(b)) == 100.0

    def test_partial_difference(self):
        a = np.zeros((10, 10, 3), dtype=np.uint8)
        b = a.copy()
        b[:5, :, :] = 200
        assert pixel_difference_percent(_png(a), _png(b), channel_tolerance=5) == 50.0

    def test_pixel_color_is_rgb(self):
        image = np.zeros((4, 4, 3), dtype=np.uint8)
        image[1, 2] = (10, 20, 230)  # BGR
        assert pixel_color(_png(image), 2, 1) == (230, 20, 10)
        assert pixel_color(_png(image), 99, 99) == (0, 0, 0)


class TestOcrLines:
    def data(self):
        return {
            "text": ["", "Hello", "World", "Tiếp", "tục", " "],
            "block_num": [1, 1, 1, 1, 1, 1],
            "par_num": [1, 1, 1, 1, 1, 1],
            "line_num": [1, 1, 1, 2, 2, 2],
            "left": [0, 10, 70, 10, 60, 0],
            "top": [0, 10, 12, 50, 50, 0],
            "width": [0, 50, 50, 40, 30, 0],
            "height": [0, 20, 20, 20, 20, 0],
            "conf": [-1, 90, 80, 70, 90, -1],
        }

    def test_words_group_into_lines(self):
        lines = group_lines(self.data())
        assert [line.text for line in lines] == ["Hello World", "Tiếp tục"]
        assert (lines[0].x, lines[0].y) == (65, 21)
        assert lines[0].confidence == pytest.approx(0.85)

    def test_filter_contains_is_case_insensitive(self):
        lines = group_lines(self.data())
        assert [m.text for m in filter_lines(lines, "world", False)] == ["Hello World"]

    def test_filter_regex(self):
        lines = group_lines(self.data())
        assert [m.text for m in filter_lines(lines, r"^ti.p", True)] == ["Tiếp tục"]
