from __future__ import annotations

import re
from enum import Enum
from typing import Annotated, Literal

from pydantic import BaseModel, ConfigDict, Field


class RelativeDirection(str, Enum):
    LEFT_OF = "left_of"
    RIGHT_OF = "right_of"
    ABOVE = "above"
    BELOW = "below"
    NEAR = "near"

    @classmethod
    def parse(cls, value: str) -> RelativeDirection:
        normalized = value.strip().lower().replace("-", "_").replace("rightof", "right_of")
        normalized = normalized.replace("leftof", "left_of")
        return cls(normalized)


class SwipeDirection(str, Enum):
    UP = "up"
    DOWN = "down"
    LEFT = "left"
    RIGHT = "right"

    @classmethod
    def parse(cls, value: str) -> SwipeDirection:
        return cls(value.strip().lower())

    def opposite(self) -> SwipeDirection:
        return {
            SwipeDirection.UP: SwipeDirection.DOWN,
            SwipeDirection.DOWN: SwipeDirection.UP,
            SwipeDirection.LEFT: SwipeDirection.RIGHT,
            SwipeDirection.RIGHT: SwipeDirection.LEFT,
        }[self]


class BaseSelector(BaseModel):
    model_config = ConfigDict(frozen=True)

    def describe(self) -> str:
        fields = ", ".join(f"{k}={v!r}" for k, v in self.model_dump(exclude={"kind"}).items())
        return f"{self.kind}({fields})"  # type: ignore[attr-defined]


class TextSelector(BaseSelector):
    kind: Literal["text"] = "text"
    pattern: str
    index: int = Field(default=0, ge=0)
    exact: bool = False

    def describe(self) -> str:
        return f'text="{self.pattern}"' + (f" [index={self.index}]" if self.index else "")


class TextRegexSelector(BaseSelector):
    kind: Literal["text_regex"] = "text_regex"
    pattern: str
    index: int = Field(default=0, ge=0)

    def describe(self) -> str:
        return f"regex=/{self.pattern}/" + (f" [index={self.index}]" if self.index else "")


class IdSelector(BaseSelector):
    kind: Literal["id"] = "id"
    id: str
    index: int = Field(default=0, ge=0)

    def describe(self) -> str:
        return f'id="{self.id}"' + (f" [index={self.index}]" if self.index else "")


class IdRegexSelector(BaseSelector):
    kind: Literal["id_regex"] = "id_regex"
    pattern: str
    index: int = Field(default=0, ge=0)


class TypeSelector(BaseSelector):
    kind: Literal["type"] = "type"
    type_name: str
    index: int = Field(default=0, ge=0)

    def describe(self) -> str:
        return f'type="{self.type_name}" [index={self.index}]'


class RoleSelector(BaseSelector):
    kind: Literal["role"] = "role"
    role: str
    index: int = Field(default=0, ge=0)


class DescriptionSelector(BaseSelector):
    kind: Literal["description"] = "description"
    description: str
    index: int = Field(default=0, ge=0)


class DescriptionRegexSelector(BaseSelector):
    kind: Literal["description_regex"] = "description_regex"
    pattern: str
    index: int = Field(default=0, ge=0)


class PlaceholderSelector(BaseSelector):
    kind: Literal["placeholder"] = "placeholder"
    placeholder: str
    index: int = Field(default=0, ge=0)


class AccessibilityIdSelector(BaseSelector):
    kind: Literal["accessibility_id"] = "accessibility_id"
    id: str


class XPathSelector(BaseSelector):
    kind: Literal["xpath"] = "xpath"
    xpath: str


class CssSelector(BaseSelector):
    kind: Literal["css"] = "css"
    css: str


class PointSelector(BaseSelector):
    """Raw coordinates; either axis may be a percentage of the current screen size."""

    kind: Literal["point"] = "point"
    x: float
    y: float
    x_percent: bool = False
    y_percent: bool = False

    @classmethod
    def parse(cls, value: str) -> PointSelector:
        """Parse `"540,1200"` or `"50%,80%"` (each axis independently)."""
        parts = [p.strip() for p in value.split(",")]
        if len(parts) != 2:
            raise ValueError(f"Invalid point '{value}', expected 'x,y'")
        x_raw, y_raw = parts
        return cls(
            x=float(x_raw.rstrip("%")),
            y=float(y_raw.rstrip("%")),
            x_percent=x_raw.endswith("%"),
            y_percent=y_raw.endswith("%"),
        )

    @property
    def is_relative(self) -> bool:
        return self.x_percent or self.y_percent

    def to_pixels(self, width: int, height: int) -> tuple[int, int]:
        # Percentages are not clamped, 150% resolves past the screen edge
        x = int(width * self.x / 100) if self.x_percent else int(self.x)
        y = int(height * self.y / 100) if self.y_percent else int(self.y)
        return x, y

    def describe(self) -> str:
        x = f"{self.x:g}%" if self.x_percent else f"{self.x:g}"
        y = f"{self.y:g}%" if self.y_percent else f"{self.y:g}"
        return f"point=({x},{y})"


class ImageSelector(BaseSelector):
    kind: Literal["image"] = "image"
    path: str
    region: str | None = None

    def describe(self) -> str:
        return f'image="{self.path}"' + (f" [region={self.region}]" if self.region else "")


class OcrSelector(BaseSelector):
    kind: Literal["ocr"] = "ocr"
    text: str
    index: int = Field(default=0, ge=0)
    is_regex: bool = False
    region: str | None = None

    def describe(self) -> str:
        return f'ocr="{self.text}"' + (f" [index={self.index}]" if self.index else "")


class AnyClickableSelector(BaseSelector):
    kind: Literal["any_clickable"] = "any_clickable"
    index: int = Field(default=0, ge=0)

    def describe(self) -> str:
        return f"clickable[{self.index}]"


class ScrollableSelector(BaseSelector):
    kind: Literal["scrollable"] = "scrollable"
    index: int = Field(default=0, ge=0)


class ScrollableItemSelector(BaseSelector):
    kind: Literal["scrollable_item"] = "scrollable_item"
    scrollable_index: int = Field(default=0, ge=0)
    item_index: int | None = None


class RelativeSelector(BaseSelector):
    kind: Literal["relative"] = "relative"
    target: Selector
    anchor: Selector
    direction: RelativeDirection
    max_dist: int | None = None

    def describe(self) -> str:
        return f"{self.target.describe()} {self.direction.value} {self.anchor.describe()}"


class HasChildSelector(BaseSelector):
    kind: Literal["has_child"] = "has_child"
    parent: Selector
    child: Selector

    def describe(self) -> str:
        return f"{self.parent.describe()} containing {self.child.describe()}"


Selector = Annotated[
    TextSelector
    | TextRegexSelector
    | IdSelector
    | IdRegexSelector
    | TypeSelector
    | RoleSelector
    | DescriptionSelector
    | DescriptionRegexSelector
    | PlaceholderSelector
    | AccessibilityIdSelector
    | XPathSelector
    | CssSelector
    | PointSelector
    | ImageSelector
    | OcrSelector
    | AnyClickableSelector
    | ScrollableSelector
    | ScrollableItemSelector
    | RelativeSelector
    | HasChildSelector,
    Field(discriminator="kind"),
]

RelativeSelector.model_rebuild()
HasChildSelector.model_rebuild()


def selector_index(selector: BaseSelector) -> int:
    return getattr(selector, "index", 0)


_POINT_RE = re.compile(r"^\s*-?\d+(\.\d+)?%?\s*,\s*-?\d+(\.\d+)?%?\s*$")


def looks_like_point(value: str) -> bool:
    return bool(_POINT_RE.match(value))
