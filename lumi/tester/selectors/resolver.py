import math
import re
from collections.abc import Sequence

from lumi.tester.hierarchy.models import Bounds, UiElement
from lumi.tester.selectors.models import (
    AccessibilityIdSelector,
    AnyClickableSelector,
    BaseSelector,
    DescriptionRegexSelector,
    DescriptionSelector,
    HasChildSelector,
    IdRegexSelector,
    IdSelector,
    PlaceholderSelector,
    RelativeDirection,
    RelativeSelector,
    RoleSelector,
    ScrollableItemSelector,
    ScrollableSelector,
    TextRegexSelector,
    TextSelector,
    TypeSelector,
    selector_index,
)
from lumi.tester.utils.logger import get_logger
from lumi.tester.utils.text import is_id_regex, normalize_text

logger = get_logger(__name__)

EDGE_SLACK_PX = 50
MAX_CROSS_AXIS_OFFSET_PX = 200
MAX_WIDTH_RATIO = 0.95
MAX_HEIGHT_RATIO = 0.8
ALIGNMENT_WEIGHT = 100.0
WELL_ALIGNED_THRESHOLD = 0.5


def _compile(pattern: str) -> re.Pattern | None:
    try:
        return re.compile(pattern)
    except re.error as e:
        logger.warning(f"Invalid regex '{pattern}': {e}")
        return None


def _id_matches(element_id: str, wanted: str) -> bool:
    return element_id == wanted or element_id.endswith(f"/{wanted}")


def _nth(items: Sequence[UiElement], index: int) -> UiElement | None:
    return items[index] if 0 <= index < len(items) else None


def _text_tiers(elements: Sequence[UiElement], pattern: str, exact: bool) -> list[list[UiElement]]:
    """Candidate lists in preference order: exact, then case-insensitive equals, then contains."""
    wanted = normalize_text(pattern)
    tiers = [
        [e for e in elements if any(normalize_text(v) == wanted for v in e.text_values())],
    ]
    if exact:
        return tiers

    lowered = wanted.lower()
    tiers.append(
        [e for e in elements if any(normalize_text(v).lower() == lowered for v in e.text_values())]
    )
    if lowered:
        tiers.append(
            [
                e
                for e in elements
                if any(v and lowered in normalize_text(v).lower() for v in e.text_values())
            ]
        )
    return tiers


def _overlap(start_a: int, end_a: int, start_b: int, end_b: int) -> int:
    return max(0, min(end_a, end_b) - max(start_a, start_b))


def _screen_size(elements: Sequence[UiElement]) -> tuple[int, int]:
    width = max((e.bounds.right for e in elements), default=0)
    height = max((e.bounds.bottom for e in elements), default=0)
    return max(width, 1), max(height, 1)


def _passes_direction(candidate: Bounds, anchor: Bounds, direction: RelativeDirection) -> bool:
    cx, cy = candidate.center
    ax, ay = anchor.center
    inside = anchor.contains(candidate)

    if direction == RelativeDirection.RIGHT_OF:
        outside = (
            candidate.left >= anchor.right - EDGE_SLACK_PX
            and abs(cy - ay) <= MAX_CROSS_AXIS_OFFSET_PX
        )
        return outside or (inside and cx >= ax)
    if direction == RelativeDirection.LEFT_OF:
        outside = (
            candidate.right <= anchor.left + EDGE_SLACK_PX
            and abs(cy - ay) <= MAX_CROSS_AXIS_OFFSET_PX
        )
        return outside or (inside and cx <= ax)
    if direction == RelativeDirection.BELOW:
        outside = (
            candidate.top >= anchor.bottom - EDGE_SLACK_PX
            and abs(cx - ax) <= MAX_CROSS_AXIS_OFFSET_PX
        )
        return outside or (inside and cy >= ay)
    if direction == RelativeDirection.ABOVE:
        outside = (
            candidate.bottom <= anchor.top + EDGE_SLACK_PX
            and abs(cx - ax) <= MAX_CROSS_AXIS_OFFSET_PX
        )
        return outside or (inside and cy <= ay)
    return True


def edge_distance(candidate: Bounds, anchor: Bounds, direction: RelativeDirection) -> float:
    """Gap between the facing edges along the direction axis; center-to-center for `near`."""
    if direction == RelativeDirection.RIGHT_OF:
        return candidate.left - anchor.right
    if direction == RelativeDirection.LEFT_OF:
        return anchor.left - candidate.right
    if direction == RelativeDirection.BELOW:
        return candidate.top - anchor.bottom
    if direction == RelativeDirection.ABOVE:
        return anchor.top - candidate.bottom
    (cx, cy), (ax, ay) = candidate.center, anchor.center
    return math.hypot(cx - ax, cy - ay)


def alignment_factor(candidate: Bounds, anchor: Bounds, direction: RelativeDirection) -> float:
    """Share of the anchor covered by the candidate on the axis orthogonal to the direction."""
    if direction in (RelativeDirection.RIGHT_OF, RelativeDirection.LEFT_OF):
        size = anchor.height
        overlap = _overlap(candidate.top, candidate.bottom, anchor.top, anchor.bottom)
    elif direction in (RelativeDirection.ABOVE, RelativeDirection.BELOW):
        size = anchor.width
        overlap = _overlap(candidate.left, candidate.right, anchor.left, anchor.right)
    else:
        return 0.0
    return overlap / size if size > 0 else 0.0


def rank_relative_candidates(
    candidates: Sequence[UiElement],
    anchor: UiElement,
    direction: RelativeDirection,
    max_dist: int | None,
    screen_size: tuple[int, int],
) -> list[UiElement]:
    """
    Filter candidates by direction and distance, then order best match first.

    Ordering: well-aligned candidates first, then lower score
    (|edge distance| - 100 * alignment), then higher alignment.
    """
    screen_width, screen_height = screen_size
    anchor_bounds = anchor.bounds
    scored: list[tuple[bool, float, float, int, UiElement]] = []

    for position, candidate in enumerate(candidates):
        if candidate is anchor:
            continue
        bounds = candidate.bounds
        if bounds.width > screen_width * MAX_WIDTH_RATIO:
            continue
        if bounds.height > screen_height * MAX_HEIGHT_RATIO:
            continue
        if not _passes_direction(bounds, anchor_bounds, direction):
            continue

        distance = edge_distance(bounds, anchor_bounds, direction)
        if max_dist is not None and abs(distance) > max_dist:
            continue

        alignment = alignment_factor(bounds, anchor_bounds, direction)
        score = abs(distance) - ALIGNMENT_WEIGHT * alignment
        scored.append((alignment > WELL_ALIGNED_THRESHOLD, score, alignment, position, candidate))

    scored.sort(key=lambda item: (not item[0], item[1], -item[2], item[3]))
    return [item[4] for item in scored]


class SelectorResolver:
    """Finds hierarchy elements for abstract selectors.

    Point, Image and OCR selectors have no hierarchy element; drivers handle
    them before reaching the resolver, which returns no match for them.
    """

    def __init__(self, screen_size: tuple[int, int] | None = None):
        self.screen_size = screen_size

    def resolve(
        self,
        selector: BaseSelector,
        elements: Sequence[UiElement],
        allow_fallback: bool = False,
    ) -> tuple[UiElement | None, bool]:
        """Resolve a selector to (element, fallback_triggered).

        Args:
            selector: The selector to resolve.
            elements: Flat hierarchy in document order.
            allow_fallback: For right-of/left-of relative selectors with no distinct
                target, return the anchor itself with fallback_triggered=True.
        """
        visible = [e for e in elements if e.is_visible()]

        if isinstance(selector, RelativeSelector):
            return self._resolve_relative(selector, visible, allow_fallback)

        if isinstance(selector, TextSelector):
            for tier in _text_tiers(visible, selector.pattern, selector.exact):
                match = _nth(tier, selector.index)
                if match is not None:
                    return match, False
            return None, False

        if isinstance(selector, HasChildSelector):
            parents = self._matching_parents(selector, visible)
            return _nth(parents, selector_index(selector.parent)), False

        if isinstance(selector, ScrollableItemSelector):
            return self._resolve_scrollable_item(selector, visible), False

        if isinstance(selector, AccessibilityIdSelector):
            return _nth(self.find_all(selector, visible), 0), False

        return _nth(self.find_all(selector, visible), selector_index(selector)), False

    def find_all(self, selector: BaseSelector, elements: Sequence[UiElement]) -> list[UiElement]:
        """All elements matching a selector's predicate, ignoring its index."""
        if isinstance(selector, TextSelector):
            for tier in _text_tiers(elements, selector.pattern, selector.exact):
                if tier:
                    return tier
            return []

        if isinstance(selector, TextRegexSelector):
            regex = _compile(selector.pattern)
            if regex is None:
                return []
            return [e for e in elements if any(regex.search(v) for v in e.text_values() if v)]

        if isinstance(selector, IdSelector):
            if is_id_regex(selector.id):
                return self.find_all(IdRegexSelector(pattern=selector.id), elements)
            return [e for e in elements if _id_matches(e.id_value(), selector.id)]

        if isinstance(selector, IdRegexSelector):
            regex = _compile(selector.pattern)
            if regex is None:
                return []
            return [e for e in elements if regex.search(e.id_value())]

        if isinstance(selector, (TypeSelector, RoleSelector)):
            type_name = selector.type_name if isinstance(selector, TypeSelector) else selector.role
            return [e for e in elements if e.matches_type(type_name)]

        if isinstance(selector, DescriptionSelector):
            return [e for e in elements if e.matches_description(selector.description)]

        if isinstance(selector, DescriptionRegexSelector):
            regex = _compile(selector.pattern)
            if regex is None:
                return []
            return [e for e in elements if regex.search(e.description())]

        if isinstance(selector, PlaceholderSelector):
            matches = [
                e
                for e in elements
                if e.placeholder_value() and selector.placeholder in e.placeholder_value()
            ]
            if matches:
                return matches
            return self.find_all(TextSelector(pattern=selector.placeholder), elements)

        if isinstance(selector, AccessibilityIdSelector):
            return [e for e in elements if e.matches_accessibility_id(selector.id)]

        if isinstance(selector, AnyClickableSelector):
            return [e for e in elements if e.is_clickable() and e.is_enabled()]

        if isinstance(selector, ScrollableSelector):
            return [e for e in elements if e.is_scrollable()]

        if isinstance(selector, HasChildSelector):
            return self._matching_parents(selector, elements)

        if isinstance(selector, RelativeSelector):
            anchor, _ = self.resolve(selector.anchor, elements)
            if anchor is None:
                return []
            return rank_relative_candidates(
                self.find_all(selector.target, elements),
                anchor,
                selector.direction,
                selector.max_dist,
                self.screen_size or _screen_size(elements),
            )

        return []

    def tap_point(
        self, selector: BaseSelector, element: UiElement, fallback: bool
    ) -> tuple[int, int]:
        """Point to act on for a resolved element.

        A fallback right-of/left-of match targets the anchor's trailing/leading
        edge, where composite rows (e.g. Switch rows) keep their toggle.
        """
        bounds = element.bounds
        if fallback and isinstance(selector, RelativeSelector):
            if selector.direction == RelativeDirection.RIGHT_OF:
                return bounds.relative_point(0.9, 0.5)
            if selector.direction == RelativeDirection.LEFT_OF:
                return bounds.relative_point(0.1, 0.5)
        return bounds.center

    def _resolve_relative(
        self,
        selector: RelativeSelector,
        elements: Sequence[UiElement],
        allow_fallback: bool,
    ) -> tuple[UiElement | None, bool]:
        anchor, _ = self.resolve(selector.anchor, elements)
        if anchor is None:
            logger.debug(f"Anchor not found: {selector.anchor.describe()}")
            return None, False

        ranked = rank_relative_candidates(
            self.find_all(selector.target, elements),
            anchor,
            selector.direction,
            selector.max_dist,
            self.screen_size or _screen_size(elements),
        )
        match = _nth(ranked, selector_index(selector.target))
        if match is not None:
            return match, False

        if allow_fallback and selector.direction in (
            RelativeDirection.RIGHT_OF,
            RelativeDirection.LEFT_OF,
        ):
            logger.debug(f"No distinct target {selector.direction.value} anchor, using anchor edge")
            return anchor, True
        return None, False

    def _matching_parents(
        self, selector: HasChildSelector, elements: Sequence[UiElement]
    ) -> list[UiElement]:
        parents = self.find_all(selector.parent, elements)
        children = self.find_all(selector.child, elements)
        return [
            parent
            for parent in parents
            if any(child is not parent and parent.bounds.contains(child.bounds) for child in children)
        ]

    def _resolve_scrollable_item(
        self, selector: ScrollableItemSelector, elements: Sequence[UiElement]
    ) -> UiElement | None:
        scrollables = [e for e in elements if e.is_scrollable()]
        container = _nth(scrollables, selector.scrollable_index)
        # Without an item index there is nothing to target, so scrolling continues
        if container is None or selector.item_index is None:
            return None

        wanted = str(selector.item_index)
        for element in elements:
            if element is container:
                continue
            x, y = element.bounds.center
            if container.bounds.contains_point(x, y) and element.index_attribute() == wanted:
                return element
        return None
