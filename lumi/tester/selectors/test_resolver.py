import pytest

from lumi.tester.hierarchy.models import AndroidElement, Bounds, IosElement, IosFrame
from lumi.tester.selectors.models import (
    AnyClickableSelector,
    DescriptionSelector,
    HasChildSelector,
    IdRegexSelector,
    IdSelector,
    PointSelector,
    RelativeDirection,
    RelativeSelector,
    ScrollableItemSelector,
    TextRegexSelector,
    TextSelector,
    TypeSelector,
)
from lumi.tester.selectors.resolver import SelectorResolver


def element(
    text: str = "",
    bounds: tuple[int, int, int, int] = (0, 0, 10, 10),
    clickable: bool = False,
    resource_id: str = "",
    class_name: str = "android.widget.TextView",
    content_desc: str = "",
    **kwargs,
) -> AndroidElement:
    left, top, right, bottom = bounds
    return AndroidElement(
        text=text,
        element_bounds=Bounds(left=left, top=top, right=right, bottom=bottom),
        clickable=clickable,
        resource_id=resource_id,
        class_name=class_name,
        content_desc=content_desc,
        **kwargs,
    )


@pytest.fixture
def resolver():
    return SelectorResolver(screen_size=(1080, 2340))


@pytest.fixture
def wifi_screen():
    """Settings row with a label and three switches stacked to its right."""
    return [
        element("Wi-Fi", (0, 100, 300, 200)),
        element("", (400, 100, 500, 200), clickable=True, class_name="android.widget.Switch"),
        element("", (400, 300, 500, 400), clickable=True, class_name="android.widget.Switch"),
        element("", (400, 500, 500, 600), clickable=True, class_name="android.widget.Switch"),
    ]


class TestTextSelector:
    def test_nth_exact_match_in_document_order(self, resolver):
        elements = [
            element("Login", (0, 0, 100, 50)),
            element("Other", (0, 50, 100, 100)),
            element("Login", (0, 100, 100, 150)),
            element("Login", (0, 150, 100, 200)),
        ]
        exact = [e for e in elements if e.text == "Login"]

        for i, expected in enumerate(exact):
            found, fallback = resolver.resolve(TextSelector(pattern="Login", index=i), elements)
            assert found is expected
            assert fallback is False

    def test_index_past_matches_returns_none(self, resolver):
        elements = [element("Login")]
        found, _ = resolver.resolve(TextSelector(pattern="Login", index=1, exact=True), elements)
        assert found is None

    def test_case_insensitive_fallback(self, resolver):
        elements = [element("LOGIN")]
        found, _ = resolver.resolve(TextSelector(pattern="login"), elements)
        assert found is elements[0]

    def test_exact_disables_fallbacks(self, resolver):
        elements = [element("LOGIN NOW")]
        found, _ = resolver.resolve(TextSelector(pattern="login", exact=True), elements)
        assert found is None

    def test_contains_fallback(self, resolver):
        elements = [element("Please Login Now")]
        found, _ = resolver.resolve(TextSelector(pattern="login"), elements)
        assert found is elements[0]

    def test_non_breaking_space_is_normalized(self, resolver):
        elements = [element("Save\u00a0changes ")]
        found, _ = resolver.resolve(TextSelector(pattern="Save changes", exact=True), elements)
        assert found is elements[0]

    def test_matches_content_description_and_hint(self, resolver):
        elements = [element(content_desc="Menu"), element(hint="Search")]
        assert resolver.resolve(TextSelector(pattern="Menu"), elements)[0] is elements[0]
        assert resolver.resolve(TextSelector(pattern="Search"), elements)[0] is elements[1]

    def test_regex(self, resolver):
        elements = [element("Order #123"), element("Order #456")]
        found, _ = resolver.resolve(TextRegexSelector(pattern=r"#\d+", index=1), elements)
        assert found is elements[1]

    def test_invalid_regex_matches_nothing(self, resolver):
        found, _ = resolver.resolve(TextRegexSelector(pattern="(unclosed"), [element("x")])
        assert found is None


class TestIdSelector:
    def test_trailing_segment_match(self, resolver):
        elements = [element(resource_id="com.app:id/submit")]
        found, _ = resolver.resolve(IdSelector(id="submit"), elements)
        assert found is elements[0]

    def test_full_id_match(self, resolver):
        elements = [element(resource_id="com.app:id/submit")]
        found, _ = resolver.resolve(IdSelector(id="com.app:id/submit"), elements)
        assert found is elements[0]

    def test_partial_segment_does_not_match(self, resolver):
        elements = [element(resource_id="com.app:id/submit_button")]
        found, _ = resolver.resolve(IdSelector(id="submit"), elements)
        assert found is None

    def test_id_with_regex_syntax_is_routed_to_regex(self, resolver):
        elements = [element(resource_id="com.app:id/item_1"), element(resource_id="com.app:id/item_2")]
        found, _ = resolver.resolve(IdSelector(id=".*item_2", index=0), elements)
        assert found is elements[1]

    def test_id_regex_single_match(self, resolver):
        elements = [
            element(resource_id="com.app:id/title"),
            element(resource_id="com.app:id/btn_ok"),
            element(resource_id="com.app:id/subtitle"),
        ]
        found, _ = resolver.resolve(IdRegexSelector(pattern=r"btn_\w+$"), elements)
        assert found is elements[1]


class TestTypeAndDescription:
    def test_type_alias(self, resolver):
        elements = [
            element(class_name="android.widget.TextView"),
            element(class_name="android.widget.Button"),
            element(class_name="android.widget.Button"),
        ]
        found, _ = resolver.resolve(TypeSelector(type_name="button", index=1), elements)
        assert found is elements[2]

    def test_description(self, resolver):
        elements = [element(content_desc="Navigate up")]
        found, _ = resolver.resolve(DescriptionSelector(description="Navigate up"), elements)
        assert found is elements[0]

    def test_ios_type_alias(self, resolver):
        elements = [
            IosElement(element_type="StaticText", label="Title"),
            IosElement(element_type="Button", label="Done"),
        ]
        found, _ = resolver.resolve(TypeSelector(type_name="btn"), elements)
        assert found is elements[1]

    def test_ios_invisible_elements_are_skipped(self, resolver):
        elements = [
            IosElement(label="Done", visible=False),
            IosElement(label="Done", frame=IosFrame(x=10, y=10, width=20, height=20)),
        ]
        found, _ = resolver.resolve(TextSelector(pattern="Done"), elements)
        assert found is elements[1]


class TestRelativeSelector:
    def test_picks_vertically_aligned_switch(self, resolver, wifi_screen):
        selector = RelativeSelector(
            target=AnyClickableSelector(),
            anchor=TextSelector(pattern="Wi-Fi"),
            direction=RelativeDirection.RIGHT_OF,
        )
        found, fallback = resolver.resolve(selector, wifi_screen)
        assert found is wifi_screen[1]
        assert fallback is False
        assert resolver.tap_point(selector, found, fallback) == (450, 150)

    def test_target_index_selects_among_ranked(self, resolver, wifi_screen):
        selector = RelativeSelector(
            target=AnyClickableSelector(index=1),
            anchor=TextSelector(pattern="Wi-Fi"),
            direction=RelativeDirection.RIGHT_OF,
        )
        found, _ = resolver.resolve(selector, wifi_screen)
        assert found is wifi_screen[2]

    def test_far_vertical_offset_is_rejected(self, resolver, wifi_screen):
        selector = RelativeSelector(
            target=AnyClickableSelector(index=2),
            anchor=TextSelector(pattern="Wi-Fi"),
            direction=RelativeDirection.RIGHT_OF,
        )
        found, _ = resolver.resolve(selector, wifi_screen)
        assert found is None

    def test_result_satisfies_direction_and_is_not_anchor(self, resolver):
        anchor = element("Name", (100, 500, 400, 600), clickable=True)
        elements = [
            anchor,
            element("", (360, 510, 420, 590), clickable=True),
            element("", (0, 500, 90, 600), clickable=True),
            element("", (600, 1000, 700, 1100), clickable=True),
            element("", (800, 520, 900, 580), clickable=True),
        ]
        selector = RelativeSelector(
            target=AnyClickableSelector(),
            anchor=TextSelector(pattern="Name"),
            direction=RelativeDirection.RIGHT_OF,
            max_dist=450,
        )
        ranked = resolver.find_all(selector, elements)
        assert anchor not in ranked
        for candidate in ranked:
            b = candidate.bounds
            inside = anchor.bounds.contains(b) and b.center[0] >= anchor.bounds.center[0]
            assert b.left >= anchor.bounds.right - 50 or inside
            assert abs(b.center[1] - anchor.bounds.center[1]) <= 200
            assert abs(b.left - anchor.bounds.right) <= 450
        assert ranked[0] is elements[1]

    def test_max_dist_rejects_distant_candidates(self, resolver):
        elements = [
            element("Label", (0, 0, 100, 50)),
            element("", (500, 0, 600, 50), clickable=True),
        ]
        selector = RelativeSelector(
            target=AnyClickableSelector(),
            anchor=TextSelector(pattern="Label"),
            direction=RelativeDirection.RIGHT_OF,
            max_dist=100,
        )
        assert resolver.resolve(selector, elements)[0] is None

    def test_screen_wide_containers_are_rejected(self, resolver):
        elements = [
            element("Label", (0, 0, 100, 50)),
            element("", (0, 60, 1070, 200), clickable=True),
        ]
        selector = RelativeSelector(
            target=AnyClickableSelector(),
            anchor=TextSelector(pattern="Label"),
            direction=RelativeDirection.BELOW,
        )
        assert resolver.resolve(selector, elements)[0] is None

    def test_fallback_returns_anchor_and_shifts_tap_point(self, resolver):
        row = element("Bluetooth", (0, 100, 1000, 200), clickable=True)
        selector = RelativeSelector(
            target=AnyClickableSelector(),
            anchor=TextSelector(pattern="Bluetooth"),
            direction=RelativeDirection.RIGHT_OF,
        )

        assert resolver.resolve(selector, [row])[0] is None

        found, fallback = resolver.resolve(selector, [row], allow_fallback=True)
        assert found is row
        assert fallback is True
        assert resolver.tap_point(selector, found, fallback) == (900, 150)

        left = selector.model_copy(update={"direction": RelativeDirection.LEFT_OF})
        assert resolver.tap_point(left, row, True) == (100, 150)

    def test_above_and_near(self, resolver):
        elements = [
            element("Header", (0, 0, 200, 50)),
            element("Field", (0, 100, 200, 150)),
            element("Hint", (0, 160, 200, 200)),
        ]
        above = RelativeSelector(
            target=TextSelector(pattern="Header"),
            anchor=TextSelector(pattern="Field"),
            direction=RelativeDirection.ABOVE,
        )
        near = RelativeSelector(
            target=TextSelector(pattern="Hint"),
            anchor=TextSelector(pattern="Field"),
            direction=RelativeDirection.NEAR,
            max_dist=100,
        )
        assert resolver.resolve(above, elements)[0] is elements[0]
        assert resolver.resolve(near, elements)[0] is elements[2]


class TestHasChildSelector:
    def test_returns_parent_strictly_containing_child(self, resolver):
        elements = [
            element("", (0, 0, 500, 200), clickable=True, class_name="android.widget.LinearLayout"),
            element("Premium", (10, 10, 200, 60)),
            element("", (0, 300, 500, 500), clickable=True, class_name="android.widget.LinearLayout"),
        ]
        selector = HasChildSelector(
            parent=AnyClickableSelector(), child=TextSelector(pattern="Premium")
        )
        found, _ = resolver.resolve(selector, elements)
        assert found is elements[0]
        assert found.bounds.contains(elements[1].bounds)

    def test_element_is_not_its_own_child(self, resolver):
        elements = [element("Premium", (0, 0, 100, 100), clickable=True)]
        selector = HasChildSelector(
            parent=AnyClickableSelector(), child=TextSelector(pattern="Premium")
        )
        assert resolver.resolve(selector, elements)[0] is None


class TestScrollableItem:
    def test_item_by_index_attribute_inside_container(self, resolver):
        elements = [
            element("", (0, 0, 500, 1000), scrollable=True, class_name="androidx.recyclerview"),
            element("A", (0, 0, 500, 100), index="0"),
            element("B", (0, 100, 500, 200), index="1"),
        ]
        found, _ = resolver.resolve(
            ScrollableItemSelector(scrollable_index=0, item_index=1), elements
        )
        assert found is elements[2]

    def test_without_item_index_returns_none(self, resolver):
        elements = [element("", (0, 0, 500, 1000), scrollable=True)]
        assert resolver.resolve(ScrollableItemSelector(), elements)[0] is None


class TestBounds:
    def test_contains_is_reflexive(self):
        b = Bounds(left=0, top=0, right=10, bottom=10)
        assert b.contains(b)

    def test_contains_is_transitive(self):
        outer = Bounds(left=0, top=0, right=100, bottom=100)
        middle = Bounds(left=10, top=10, right=90, bottom=90)
        inner = Bounds(left=20, top=20, right=80, bottom=80)
        assert outer.contains(middle) and middle.contains(inner)
        assert outer.contains(inner)
        assert not inner.contains(outer)

    def test_from_string(self):
        assert Bounds.from_string("[0,0][1080,1920]") == Bounds(left=0, top=0, right=1080, bottom=1920)
        assert Bounds.from_string("garbage") is None


class TestPointSelector:
    def test_percentages_are_not_clamped(self):
        point = PointSelector.parse("150%,50%")
        assert point.to_pixels(1000, 2000) == (1500, 1000)

    def test_absolute_coordinates(self):
        assert PointSelector.parse("540, 1200").to_pixels(1080, 2340) == (540, 1200)

    def test_mixed_axes(self):
        assert PointSelector.parse("50%,300").to_pixels(1080, 2340) == (540, 300)

    def test_invalid(self):
        with pytest.raises(ValueError):
            PointSelector.parse("12")
