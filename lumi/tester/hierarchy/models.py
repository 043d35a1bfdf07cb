from __future__ import annotations

from abc import ABC, abstractmethod

from pydantic import BaseModel, Field


class Bounds(BaseModel):
    """Axis-aligned rectangle in device pixels."""

    left: int = 0
    top: int = 0
    right: int = 0
    bottom: int = 0

    @property
    def width(self) -> int:
        return self.right - self.left

    @property
    def height(self) -> int:
        return self.bottom - self.top

    @property
    def center(self) -> tuple[int, int]:
        return (self.left + self.right) // 2, (self.top + self.bottom) // 2

    def contains(self, other: Bounds) -> bool:
        return (
            self.left <= other.left
            and self.top <= other.top
            and self.right >= other.right
            and self.bottom >= other.bottom
        )

    def contains_point(self, x: int, y: int) -> bool:
        return self.left <= x <= self.right and self.top <= y <= self.bottom

    def relative_point(self, x_percent: float, y_percent: float) -> tuple[int, int]:
        """
        Returns the point at x_percent of the width and y_percent of the height.

        Ex: (0.9, 0.5) is the right edge area of the element, vertically centered.
        """
        return (
            int(self.left + self.width * x_percent),
            int(self.top + self.height * y_percent),
        )

    @classmethod
    def from_string(cls, value: str) -> Bounds | None:
        """Parse uiautomator bounds like `[0,0][1080,1920]`."""
        parts = value.split("][")
        if len(parts) != 2:
            return None
        try:
            left, top = (int(v) for v in parts[0].lstrip("[").split(","))
            right, bottom = (int(v) for v in parts[1].rstrip("]").split(","))
        except ValueError:
            return None
        return cls(left=left, top=top, right=right, bottom=bottom)


class UiElement(BaseModel, ABC):
    """Platform-neutral view of a hierarchy node used by the selector resolver."""

    @property
    @abstractmethod
    def bounds(self) -> Bounds: ...

    @abstractmethod
    def text_values(self) -> list[str]:
        """Rendered text, accessibility label and hint, in matching order."""

    @abstractmethod
    def id_value(self) -> str: ...

    @abstractmethod
    def description(self) -> str: ...

    @abstractmethod
    def placeholder_value(self) -> str: ...

    @abstractmethod
    def type_name(self) -> str: ...

    def is_clickable(self) -> bool:
        return self.is_enabled()

    def is_enabled(self) -> bool:
        return True

    def is_visible(self) -> bool:
        return True

    def is_scrollable(self) -> bool:
        return False

    def index_attribute(self) -> str:
        return ""

    @abstractmethod
    def matches_type(self, type_name: str) -> bool: ...

    def matches_description(self, description: str) -> bool:
        return self.description() == description

    def matches_accessibility_id(self, accessibility_id: str) -> bool:
        return self.id_value() == accessibility_id

    def display_text(self) -> str:
        for value in self.text_values():
            if value:
                return value
        return ""


class AndroidElement(UiElement):
    class_name: str = ""
    text: str = ""
    resource_id: str = ""
    content_desc: str = ""
    hint: str = ""
    element_bounds: Bounds = Field(default_factory=Bounds)
    clickable: bool = False
    enabled: bool = True
    focusable: bool = False
    scrollable: bool = False
    index: str = ""

    @property
    def bounds(self) -> Bounds:
        return self.element_bounds

    def text_values(self) -> list[str]:
        return [self.text, self.content_desc, self.hint]

    def id_value(self) -> str:
        return self.resource_id

    def description(self) -> str:
        return self.content_desc

    def placeholder_value(self) -> str:
        # uiautomator exposes placeholders as the hint attribute when it exposes them at all
        return self.hint

    def type_name(self) -> str:
        return self.class_name

    def is_clickable(self) -> bool:
        return self.clickable

    def is_enabled(self) -> bool:
        return self.enabled

    def is_scrollable(self) -> bool:
        return self.scrollable

    def index_attribute(self) -> str:
        return self.index

    def matches_type(self, type_name: str) -> bool:
        return map_android_type(type_name) in self.class_name

    def matches_accessibility_id(self, accessibility_id: str) -> bool:
        return self.content_desc == accessibility_id


class IosFrame(BaseModel):
    x: float = 0.0
    y: float = 0.0
    width: float = 0.0
    height: float = 0.0

    def to_bounds(self) -> Bounds:
        return Bounds(
            left=int(self.x),
            top=int(self.y),
            right=int(self.x + self.width),
            bottom=int(self.y + self.height),
        )


class IosElement(UiElement):
    label: str | None = None
    identifier: str | None = None
    element_type: str | None = None
    value: str | None = None
    placeholder: str | None = None
    frame: IosFrame = Field(default_factory=IosFrame)
    enabled: bool = True
    visible: bool = True
    children: list[IosElement] = Field(default_factory=list)

    @property
    def bounds(self) -> Bounds:
        return self.frame.to_bounds()

    def text_values(self) -> list[str]:
        return [self.label or "", self.value or "", self.placeholder or ""]

    def id_value(self) -> str:
        return self.identifier or ""

    def description(self) -> str:
        return self.label or ""

    def placeholder_value(self) -> str:
        return self.placeholder or ""

    def type_name(self) -> str:
        return self.element_type or ""

    def is_clickable(self) -> bool:
        return self.enabled and self.visible

    def is_enabled(self) -> bool:
        return self.enabled

    def is_visible(self) -> bool:
        return self.visible

    def matches_type(self, type_name: str) -> bool:
        mapped = map_ios_type(type_name)
        actual = self.type_name()
        return bool(actual) and (actual.lower() == mapped.lower() or actual.endswith(mapped))

    def matches_description(self, description: str) -> bool:
        label = self.label or ""
        return (bool(label) and description in label) or self.identifier == description

    def is_scrollable(self) -> bool:
        return self.type_name() in ("ScrollView", "Table", "CollectionView")

    def flatten(self) -> list[IosElement]:
        """Depth-first list of this node and all of its descendants, children detached."""
        result: list[IosElement] = [self.model_copy(update={"children": []})]
        for child in self.children:
            result.extend(child.flatten())
        return result


_ANDROID_TYPES = {
    "input": "android.widget.EditText",
    "edittext": "android.widget.EditText",
    "textfield": "android.widget.EditText",
    "button": "android.widget.Button",
    "btn": "android.widget.Button",
    "image": "android.widget.ImageView",
    "img": "android.widget.ImageView",
    "icon": "android.widget.ImageView",
    "text": "android.widget.TextView",
    "label": "android.widget.TextView",
    "textview": "android.widget.TextView",
    "switch": "android.widget.Switch",
    "checkbox": "android.widget.CheckBox",
    "view": "android.view.View",
}

_IOS_TYPES = {
    "input": "TextField",
    "edittext": "TextField",
    "textfield": "TextField",
    "button": "Button",
    "btn": "Button",
    "image": "Image",
    "img": "Image",
    "icon": "Image",
    "text": "StaticText",
    "label": "StaticText",
    "textview": "StaticText",
    "switch": "Switch",
    "cell": "Cell",
}


def map_android_type(type_name: str) -> str:
    return _ANDROID_TYPES.get(type_name.lower(), type_name)


def map_ios_type(type_name: str) -> str:
    return _IOS_TYPES.get(type_name.lower(), type_name)
