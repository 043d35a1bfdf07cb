"""
Typed test commands.

A command is authored either as a bare name (`back`) or as a single-key
mapping (`tapOn: {text: Login}`). Parameter records accept camelCase keys and
every command can be emitted back into the mapping form it was parsed from.
"""

from __future__ import annotations

from collections.abc import Callable
from typing import Annotated, Any, ClassVar

from pydantic import (
    AliasChoices,
    BaseModel,
    BeforeValidator,
    ConfigDict,
    Field,
    PlainSerializer,
    ValidationError,
    field_validator,
)
from pydantic.alias_generators import to_camel

from lumi.tester.errors import FlowConfigError
from lumi.tester.selectors.models import (
    AccessibilityIdSelector,
    AnyClickableSelector,
    BaseSelector,
    CssSelector,
    DescriptionRegexSelector,
    DescriptionSelector,
    HasChildSelector,
    IdRegexSelector,
    IdSelector,
    ImageSelector,
    OcrSelector,
    PlaceholderSelector,
    PointSelector,
    RelativeDirection,
    RelativeSelector,
    RoleSelector,
    SwipeDirection,
    TextRegexSelector,
    TextSelector,
    TypeSelector,
    XPathSelector,
)
from lumi.tester.utils.text import is_id_regex, is_regex_string


def _parse_command_list(value: Any) -> Any:
    if value is None:
        return None
    items = value if isinstance(value, list) else [value]
    return [parse_command(item) for item in items]


def _emit_command_list(commands: list[Command] | None) -> Any:
    if commands is None:
        return None
    return [command.to_yaml() for command in commands]


CommandList = Annotated[
    list["Command"],
    BeforeValidator(_parse_command_list),
    PlainSerializer(_emit_command_list),
]


class ParamsModel(BaseModel):
    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True, extra="ignore")

    # Field that receives the value when the command is written as `name: scalar`
    scalar_field: ClassVar[str | None] = None

    @classmethod
    def from_scalar(cls, value: Any) -> ParamsModel:
        if cls.scalar_field is None:
            raise FlowConfigError(f"{cls.__name__} requires a mapping, got {value!r}")
        return cls.model_validate({cls.scalar_field: value})

    def to_yaml(self) -> Any:
        return self.model_dump(mode="json", by_alias=True, exclude_defaults=True, exclude_none=True)

    def describe(self) -> str:
        return ""


# Selectors


class AnchorParams(ParamsModel):
    text: str | None = None
    regex: str | None = None
    id: str | None = None
    css: str | None = None
    xpath: str | None = None
    placeholder: str | None = None
    role: str | None = None
    index: int | None = None

    def to_selector(self) -> BaseSelector:
        index = self.index or 0
        if self.regex:
            return TextRegexSelector(pattern=self.regex, index=index)
        if self.text:
            return TextSelector(pattern=self.text, index=index)
        if self.id:
            if is_id_regex(self.id):
                return IdRegexSelector(pattern=self.id, index=index)
            return IdSelector(id=self.id, index=index)
        if self.css:
            return CssSelector(css=self.css)
        if self.xpath:
            return XPathSelector(xpath=self.xpath)
        if self.placeholder:
            return PlaceholderSelector(placeholder=self.placeholder, index=index)
        if self.role:
            return RoleSelector(role=self.role, index=index)
        raise FlowConfigError("Relative anchor needs text, regex, id, css, xpath, placeholder or role")


Anchor = str | AnchorParams


def anchor_selector(anchor: Anchor) -> BaseSelector:
    if isinstance(anchor, AnchorParams):
        return anchor.to_selector()
    return TextSelector(pattern=anchor)


class RelativeParams(ParamsModel):
    right_of: Anchor | None = None
    left_of: Anchor | None = None
    above: Anchor | None = None
    below: Anchor | None = None
    near: Anchor | None = None
    max_dist: int | None = Field(
        default=None, validation_alias=AliasChoices("maxDist", "maxDistance", "max_dist")
    )

    def direction(self) -> tuple[RelativeDirection, Anchor] | None:
        for direction, anchor in (
            (RelativeDirection.RIGHT_OF, self.right_of),
            (RelativeDirection.LEFT_OF, self.left_of),
            (RelativeDirection.ABOVE, self.above),
            (RelativeDirection.BELOW, self.below),
            (RelativeDirection.NEAR, self.near),
        ):
            if anchor is not None:
                return direction, anchor
        return None


class ElementParams(ParamsModel):
    """Selector-bearing parameters shared by taps, assertions and waits."""

    text: str | None = None
    regex: str | None = None
    id: str | None = None
    element_type: str | None = Field(
        default=None,
        validation_alias=AliasChoices("type", "elementType", "element_type"),
        serialization_alias="type",
    )
    css: str | None = None
    xpath: str | None = None
    role: str | None = None
    placeholder: str | None = None
    description: str | None = None
    accessibility_id: str | None = None
    ocr: str | None = None
    point: str | None = None
    image: str | None = None
    image_region: str | None = None
    index: int | None = None
    exact: bool = False
    optional: bool = False
    soft: bool = False
    timeout: int | None = None
    duration: int | None = None
    relative: RelativeParams | None = None
    contains_child: ElementParams | None = None
    right_of: Anchor | None = None
    left_of: Anchor | None = None
    above: Anchor | None = None
    below: Anchor | None = None

    @classmethod
    def from_scalar(cls, value: Any) -> ElementParams:
        text = str(value)
        if is_regex_string(text):
            return cls(regex=text)
        return cls(text=text)

    def effective_relative(self) -> RelativeParams | None:
        """The `relative` record with the flat right_of/left_of/above/below fields merged in."""
        flat = {
            "right_of": self.right_of,
            "left_of": self.left_of,
            "above": self.above,
            "below": self.below,
        }
        flat = {k: v for k, v in flat.items() if v is not None}
        if not flat:
            return self.relative
        base = self.relative or RelativeParams()
        return base.model_copy(update=flat)

    def primary_selector(self, resolve_path: Callable[[str], str] | None = None) -> BaseSelector | None:
        index = self.index or 0
        if self.point:
            return PointSelector.parse(self.point)
        if self.regex:
            return TextRegexSelector(pattern=self.regex, index=index)
        if self.text:
            return TextSelector(pattern=self.text, index=index, exact=self.exact)
        if self.id:
            if is_id_regex(self.id):
                return IdRegexSelector(pattern=self.id, index=index)
            return IdSelector(id=self.id, index=index)
        if self.accessibility_id:
            return AccessibilityIdSelector(id=self.accessibility_id)
        if self.description:
            if is_regex_string(self.description):
                return DescriptionRegexSelector(pattern=self.description, index=index)
            return DescriptionSelector(description=self.description, index=index)
        if self.placeholder:
            return PlaceholderSelector(placeholder=self.placeholder, index=index)
        if self.role:
            return RoleSelector(role=self.role, index=index)
        if self.element_type:
            return TypeSelector(type_name=self.element_type, index=index)
        if self.css:
            return CssSelector(css=self.css)
        if self.image:
            path = resolve_path(self.image) if resolve_path else self.image
            return ImageSelector(path=path, region=self.image_region)
        if self.ocr:
            return OcrSelector(
                text=self.ocr, index=index, is_regex=is_regex_string(self.ocr), region=self.image_region
            )
        if self.xpath:
            return XPathSelector(xpath=self.xpath)
        return None

    def to_selector(self, resolve_path: Callable[[str], str] | None = None) -> BaseSelector:
        """
        Build the selector these parameters describe.

        A relative clause without a primary field targets the nth clickable
        element; `containsChild` wraps the result as the parent of a HasChild.
        """
        primary = self.primary_selector(resolve_path)
        relative = self.effective_relative()
        clause = relative.direction() if relative else None

        if clause is not None:
            direction, anchor = clause
            target = primary or AnyClickableSelector(index=self.index or 0)
            selector: BaseSelector = RelativeSelector(
                target=target,
                anchor=anchor_selector(anchor),
                direction=direction,
                max_dist=relative.max_dist,
            )
        elif primary is not None:
            selector = primary
        else:
            raise FlowConfigError("No selector specified (text, regex, id, type, point, image, ...)")

        if self.contains_child is not None:
            selector = HasChildSelector(parent=selector, child=self.contains_child.to_selector(resolve_path))
        return selector

    def describe(self) -> str:
        for label, value in (
            ("text", self.text),
            ("regex", self.regex),
            ("id", self.id),
            ("type", self.element_type),
            ("css", self.css),
            ("xpath", self.xpath),
            ("point", self.point),
            ("image", self.image),
            ("ocr", self.ocr),
            ("placeholder", self.placeholder),
            ("role", self.role),
            ("description", self.description),
            ("accessibilityId", self.accessibility_id),
        ):
            if value:
                suffix = f", index: {self.index}" if self.index else ""
                return f'{label}: "{value}"{suffix}'
        clause = self.effective_relative()
        if clause and clause.direction():
            direction, anchor = clause.direction()
            return f"{direction.value}: {anchor if isinstance(anchor, str) else anchor.to_yaml()}"
        return ""


def _element_from_scalar(value: Any) -> Any:
    if value is None or isinstance(value, (dict, ElementParams)):
        return value
    return ElementParams.from_scalar(value)


ElementField = Annotated[ElementParams, BeforeValidator(_element_from_scalar)]


class ScrollUntilVisibleParams(ElementParams):
    max_scrolls: int = 10
    direction: SwipeDirection | None = None
    from_: ElementField | None = Field(default=None, alias="from")

    @field_validator("direction", mode="before")
    @classmethod
    def _lower_direction(cls, value: Any) -> Any:
        return value.strip().lower() if isinstance(value, str) else value


# Gestures and input


class LaunchAppParams(ParamsModel):
    scalar_field = "app_id"

    app_id: str | None = None
    url: str | None = None
    clear_state: bool = False
    clear_keychain: bool = False
    stop_app: bool = True
    permissions: dict[str, str] | None = None

    def describe(self) -> str:
        return self.app_id or self.url or ""


class TypeIndexParams(ParamsModel):
    element_type: str = Field(
        validation_alias=AliasChoices("type", "elementType", "element_type"), serialization_alias="type"
    )
    index: int = 0

    def describe(self) -> str:
        return f"{self.element_type}[{self.index}]"


class InputAtParams(TypeIndexParams):
    text: str

    def describe(self) -> str:
        return f'{self.element_type}[{self.index}], "{self.text}"'


class InputTextParams(ParamsModel):
    scalar_field = "text"

    text: str
    unicode: bool = False

    @field_validator("text", mode="before")
    @classmethod
    def _stringify(cls, value: Any) -> Any:
        return value if isinstance(value, str) else str(value)

    def describe(self) -> str:
        return f'"{self.text}"'


class EraseTextParams(ParamsModel):
    scalar_field = "char_count"

    char_count: int | None = None


class SwipeParams(ParamsModel):
    scalar_field = "direction"

    direction: SwipeDirection
    distance: str | None = None
    duration: int | None = None
    from_: ElementField | None = Field(default=None, alias="from")

    @field_validator("direction", mode="before")
    @classmethod
    def _lower_direction(cls, value: Any) -> Any:
        return value.strip().lower() if isinstance(value, str) else value

    def describe(self) -> str:
        return self.direction.value


class WaitParams(ParamsModel):
    scalar_field = "ms"

    ms: int = 1000

    def describe(self) -> str:
        return f"{self.ms}ms"


class ExtendedWaitParams(ParamsModel):
    timeout: int | None = None
    visible: ElementField | None = None
    not_visible: ElementField | None = None


class RandomLengthParams(ParamsModel):
    scalar_field = "length"

    length: int | None = None


class CopyTextFromParams(ElementParams):
    pass


# Control flow


class Condition(ParamsModel):
    visible: str | None = None
    visible_regex: str | None = None
    not_visible: str | None = None
    not_visible_regex: str | None = None
    script: str | None = None

    def describe(self) -> str:
        for label, value in (
            ("visible", self.visible),
            ("visibleRegex", self.visible_regex),
            ("notVisible", self.not_visible),
            ("notVisibleRegex", self.not_visible_regex),
            ("script", self.script),
        ):
            if value:
                return f'{label}: "{value}"'
        return ""


class RepeatParams(ParamsModel):
    times: int | None = None
    while_: Any = Field(default=None, alias="while")
    commands: CommandList

    def describe(self) -> str:
        if self.times is not None:
            return f"{self.times} times"
        return "while" if self.while_ is not None else ""


class RetryParams(ParamsModel):
    max_retries: int = 3
    commands: CommandList

    def describe(self) -> str:
        return f"max: {self.max_retries}"


class RunFlowParams(ParamsModel):
    scalar_field = "path"

    path: str | None = None
    vars: dict[str, str] | None = Field(default=None, validation_alias=AliasChoices("vars", "env"))
    commands: CommandList | None = None
    when: Any = None
    label: str | None = None
    optional: bool = False

    @field_validator("vars", mode="before")
    @classmethod
    def _stringify_vars(cls, value: Any) -> Any:
        if isinstance(value, dict):
            return {str(k): _stringify(v) for k, v in value.items()}
        return value

    def describe(self) -> str:
        if self.label:
            return self.label
        if self.path:
            return f'"{self.path}"'
        return "inline" if self.commands is not None else ""


class ConditionalParams(ParamsModel):
    condition: Condition
    then: CommandList
    else_: CommandList | None = Field(default=None, alias="else")

    def describe(self) -> str:
        return self.condition.describe()


class SetVarParams(ParamsModel):
    name: str
    value: str = ""

    @field_validator("value", mode="before")
    @classmethod
    def _stringify_value(cls, value: Any) -> Any:
        return _stringify(value)

    def describe(self) -> str:
        return f'{self.name} = "{self.value}"'


class VariableParams(ParamsModel):
    scalar_field = "name"

    name: str


class AssertVarParams(ParamsModel):
    name: str
    expected: str
    soft: bool = False

    @field_validator("expected", mode="before")
    @classmethod
    def _stringify_expected(cls, value: Any) -> Any:
        return _stringify(value)

    def describe(self) -> str:
        return f'{self.name} == "{self.expected}"'


class AssertScreenshotParams(ParamsModel):
    scalar_field = "name"

    name: str
    soft: bool = False

    def describe(self) -> str:
        return self.name


class AssertTrueParams(ParamsModel):
    scalar_field = "condition"

    condition: str
    soft: bool = False

    def describe(self) -> str:
        return self.condition


class GenerateParams(ParamsModel):
    name: str
    data_type: str = Field(alias="type")
    format: str | None = None

    def describe(self) -> str:
        return f"{self.name}: {self.data_type}"


class RunScriptParams(ParamsModel):
    scalar_field = "command"

    command: str
    args: list[str] | None = None
    save_output: str | None = None
    timeout_ms: int | None = None
    fail_on_error: bool = False

    def describe(self) -> str:
        return f'"{self.command}"'


class HttpRequestParams(ParamsModel):
    url: str
    method: str = "GET"
    headers: dict[str, str] | None = None
    body: Any = None
    # variable name -> JSON path
    save_response: dict[str, str] | None = None
    timeout_ms: int | None = None

    def describe(self) -> str:
        return f"{self.method} {self.url}"


class DbQueryParams(ParamsModel):
    connection: str
    query: str
    params: list[Any] | None = None
    # column -> variable name
    save: dict[str, str] | None = None

    def describe(self) -> str:
        return self.query


# Capture and reports


class PathParams(ParamsModel):
    scalar_field = "path"

    path: str | None = None

    def describe(self) -> str:
        return self.path or ""


class ExportReportParams(ParamsModel):
    scalar_field = "path"

    path: str
    format: str = "json"


class CaptureGifFrameParams(ParamsModel):
    scalar_field = "name"

    name: str
    crop: str | None = None

    def describe(self) -> str:
        return self.name


class GifFrame(ParamsModel):
    name: str
    delay: int | None = None


def _frame_from_scalar(value: Any) -> Any:
    if isinstance(value, str):
        return GifFrame(name=value)
    return value


class BuildGifParams(ParamsModel):
    frames: list[Annotated[GifFrame, BeforeValidator(_frame_from_scalar)]]
    output: str
    delay: int = 500
    width: int | None = None
    height: int | None = None
    quality: str = "medium"
    colors: int = 128
    loop_gif: bool = True
    loop_count: int | None = None

    def describe(self) -> str:
        return f"{len(self.frames)} frames -> {self.output}"


class StartGifCaptureParams(ParamsModel):
    interval: int = 200
    max_frames: int = 150
    width: int | None = None


class StopGifCaptureParams(ParamsModel):
    scalar_field = "output"

    output: str
    delay: int | None = None
    quality: str = "medium"
    loop_count: int | None = None

    def describe(self) -> str:
        return self.output


# Web


class NavigateParams(ParamsModel):
    scalar_field = "url"

    url: str

    def describe(self) -> str:
        return self.url


class ClickParams(ParamsModel):
    scalar_field = "selector"

    selector: str | None = None
    text: str | None = None

    def describe(self) -> str:
        return self.selector or self.text or ""


class WebTypeParams(ParamsModel):
    scalar_field = "text"

    text: str
    selector: str | None = None

    def describe(self) -> str:
        return f'"{self.text}", "{self.selector or "focused"}"'


# Mock location


class MockLocationParams(ParamsModel):
    scalar_field = "file"

    name: str | None = None
    file: str
    speed: float | None = None
    speed_mode: str | None = None
    speed_noise: float | None = None
    loop_: bool = Field(default=False, alias="loop")
    start_index: int | None = None
    interval_ms: int | None = None

    def describe(self) -> str:
        return self.file if not self.name else f"{self.name}: {self.file}"


class MockLocationControlParams(ParamsModel):
    name: str | None = None
    speed: float | None = None
    speed_mode: str | None = None
    speed_noise: float | None = None
    pause: bool | None = None
    resume: bool | None = None


class WaitForLocationParams(ParamsModel):
    name: str | None = None
    lat: float
    lon: float
    tolerance: float = 50.0
    timeout: int = 1000

    def describe(self) -> str:
        return f"{self.lat}, {self.lon}"


class WaitForMockCompletionParams(ParamsModel):
    scalar_field = "timeout"

    name: str | None = None
    timeout: int | None = None


# Device control


class AssertClipboardParams(ParamsModel):
    scalar_field = "expected"

    expected: str
    soft: bool = False

    @field_validator("expected", mode="before")
    @classmethod
    def _stringify_expected(cls, value: Any) -> Any:
        return _stringify(value)

    def describe(self) -> str:
        return f'"{self.expected}"'


class AssertColorParams(ParamsModel):
    point: str
    color: str
    tolerance: float = 10.0
    soft: bool = False

    def describe(self) -> str:
        return f"{self.point} == {self.color}"


class ModeParams(ParamsModel):
    scalar_field = "mode"

    mode: str

    def describe(self) -> str:
        return self.mode


class NetworkParams(ParamsModel):
    wifi: bool | None = None
    data: bool | None = None


class BackgroundAppParams(ParamsModel):
    app_id: str | None = None
    duration_ms: int = 5000


class FileTransferParams(ParamsModel):
    source: str
    destination: str

    def describe(self) -> str:
        return f"{self.source} -> {self.destination}"


class StartProfilingParams(ParamsModel):
    sampling_interval_ms: int | None = None
    package: str | None = None


class StopProfilingParams(ParamsModel):
    scalar_field = "save_path"

    save_path: str | None = None


class AssertPerformanceParams(ParamsModel):
    metric: str
    limit: str
    soft: bool = False

    @field_validator("limit", mode="before")
    @classmethod
    def _stringify_limit(cls, value: Any) -> Any:
        return _stringify(value)

    def describe(self) -> str:
        return f"{self.metric} {self.limit}"


class PlayMediaParams(ParamsModel):
    scalar_field = "file"

    file: str
    loop_: bool = Field(default=False, alias="loop")

    def describe(self) -> str:
        return self.file


class StartAudioCaptureParams(ParamsModel):
    scalar_field = "duration_ms"

    duration_ms: int | None = None
    port: int | None = None


class VerifyAudioDuckingParams(ParamsModel):
    min_events: int = 1
    drop_threshold: float = 20.0


def _stringify(value: Any) -> Any:
    if isinstance(value, bool):
        return "true" if value else "false"
    if isinstance(value, (int, float)):
        return str(value)
    return value


# Registry


class CommandSpec(BaseModel):
    """
    How one command is written.

    `simple` commands may appear as a bare name. A command with a `params`
    model takes a mapping (or a scalar shorthand). A command with a
    `value_type` takes a single scalar that is stored as-is.
    """

    model_config = ConfigDict(arbitrary_types_allowed=True)

    name: str
    aliases: tuple[str, ...] = ()
    simple: bool = False
    params: type[ParamsModel] | None = None
    value_type: type | None = None

    def build(self, value: Any) -> Any:
        if self.value_type is not None:
            if isinstance(value, (dict, list)):
                raise FlowConfigError(f"Command '{self.name}' expects a single value, got {value!r}")
            if self.value_type is str:
                return _stringify(value)
            try:
                return self.value_type(value)
            except (TypeError, ValueError) as e:
                raise FlowConfigError(f"Invalid value for '{self.name}': {value!r}") from e

        assert self.params is not None
        try:
            if isinstance(value, dict):
                params = self.params.model_validate(value)
            else:
                params = self.params.from_scalar(value)
        except ValidationError as e:
            raise FlowConfigError(f"Invalid parameters for '{self.name}': {e}") from e
        if self.simple and params == self.params():
            return None
        return params


def _spec(name: str, *aliases: str, **kwargs) -> CommandSpec:
    return CommandSpec(name=name, aliases=aliases, **kwargs)


COMMAND_SPECS: list[CommandSpec] = [
    # Lifecycle
    _spec("launchApp", "open", simple=True, params=LaunchAppParams),
    _spec("stopApp", "stop", simple=True, value_type=str),
    _spec("clearAppData", simple=True, value_type=str),
    _spec("installApp", value_type=str),
    _spec("uninstallApp", value_type=str),
    _spec("backgroundApp", simple=True, params=BackgroundAppParams),
    # Gestures
    _spec("tapOn", "tap", params=ElementParams),
    _spec("longPressOn", "longPress", params=ElementParams),
    _spec("doubleTapOn", "doubleTap", params=ElementParams),
    _spec("rightClick", "contextClick", params=ElementParams),
    _spec("tapAt", params=TypeIndexParams),
    _spec("inputAt", params=InputAtParams),
    _spec("swipe", "manualScroll", params=SwipeParams),
    _spec("swipeLeft", simple=True),
    _spec("swipeRight", simple=True),
    _spec("swipeUp", simple=True),
    _spec("swipeDown", simple=True),
    _spec("scrollUntilVisible", "scrollTo", params=ScrollUntilVisibleParams),
    # Text
    _spec("inputText", "write", params=InputTextParams),
    _spec("eraseText", "clear", simple=True, params=EraseTextParams),
    _spec("hideKeyboard", "hideKbd", simple=True),
    _spec("pressKey", "press", value_type=str),
    _spec("copyTextFrom", params=CopyTextFromParams),
    _spec("pasteText", simple=True),
    _spec("inputRandomEmail", simple=True),
    _spec("inputRandomNumber", "inputRandomPhoneNumber", simple=True, params=RandomLengthParams),
    _spec("inputRandomPersonName", simple=True),
    _spec("inputRandomText", simple=True, params=RandomLengthParams),
    # Assertions and waits
    _spec("assertVisible", "see", params=ElementParams),
    _spec("assertNotVisible", "notSee", params=ElementParams),
    _spec("waitUntilVisible", "waitSee", params=ElementParams),
    _spec("waitUntilNotVisible", "waitNotSee", params=ElementParams),
    _spec("extendedWaitUntil", params=ExtendedWaitParams),
    _spec("wait", "await", params=WaitParams),
    _spec("waitForAnimationToEnd", simple=True),
    _spec("assertTrue", "assert", params=AssertTrueParams),
    _spec("assertScreenshot", params=AssertScreenshotParams),
    _spec("assertColor", "checkColor", params=AssertColorParams),
    # Control flow and variables
    _spec("repeat", params=RepeatParams),
    _spec("retry", params=RetryParams),
    _spec("runFlow", params=RunFlowParams),
    _spec("conditional", params=ConditionalParams),
    _spec("setVar", params=SetVarParams),
    _spec("assertVar", params=AssertVarParams),
    _spec("evalScript", value_type=str),
    _spec("runScript", params=RunScriptParams),
    _spec("generate", params=GenerateParams),
    _spec("httpRequest", params=HttpRequestParams),
    _spec("dbQuery", params=DbQueryParams),
    # Capture
    _spec("takeScreenshot", "screenshot", simple=True, params=PathParams),
    _spec("startRecording", simple=True, params=PathParams),
    _spec("stopRecording", "stopRecord", simple=True),
    _spec("exportReport", params=ExportReportParams),
    _spec("captureGifFrame", "captureFrame", params=CaptureGifFrameParams),
    _spec("buildGif", "createGif", params=BuildGifParams),
    _spec("startGifCapture", simple=True, params=StartGifCaptureParams),
    _spec("stopGifCapture", params=StopGifCaptureParams),
    # Navigation
    _spec("back", simple=True),
    _spec("pressHome", "home", simple=True),
    _spec("openLink", "deepLink", value_type=str),
    _spec("navigate", params=NavigateParams),
    _spec("click", params=ClickParams),
    _spec("type", params=WebTypeParams),
    # Mock location
    _spec("mockLocation", "gps", params=MockLocationParams),
    _spec("stopMockLocation", "stopGps", simple=True),
    _spec("mockLocationControl", params=MockLocationControlParams),
    _spec("waitForLocation", params=WaitForLocationParams),
    _spec("waitForMockCompletion", simple=True, params=WaitForMockCompletionParams),
    # Device
    _spec("rotate", "rotateScreen", params=ModeParams),
    _spec("setOrientation", params=ModeParams),
    _spec("setNetwork", params=NetworkParams),
    _spec("airplaneMode", "toggleAirplaneMode", simple=True),
    _spec("setVolume", value_type=int),
    _spec("lockDevice", simple=True),
    _spec("unlockDevice", simple=True),
    _spec("openNotifications", simple=True),
    _spec("openQuickSettings", simple=True),
    _spec("pushFile", params=FileTransferParams),
    _spec("pullFile", params=FileTransferParams),
    _spec("setClipboard", value_type=str),
    _spec("getClipboard", params=VariableParams),
    _spec("assertClipboard", params=AssertClipboardParams),
    _spec("selectDisplay", "display", value_type=str),
    _spec("setLocale", "locale", value_type=str),
    # Profiling
    _spec("startProfiling", simple=True, params=StartProfilingParams),
    _spec("stopProfiling", simple=True, params=StopProfilingParams),
    _spec("assertPerformance", params=AssertPerformanceParams),
    _spec("setCpuThrottling", value_type=float),
    _spec("setNetworkConditions", value_type=str),
    # Media and audio
    _spec("playMedia", params=PlayMediaParams),
    _spec("stopMedia", simple=True),
    _spec("startAudioCapture", simple=True, params=StartAudioCaptureParams),
    _spec("stopAudioCapture", simple=True),
    _spec("verifyAudioDucking", simple=True, params=VerifyAudioDuckingParams),
]

COMMANDS_BY_NAME: dict[str, CommandSpec] = {}
for _command_spec in COMMAND_SPECS:
    for _key in (_command_spec.name, *_command_spec.aliases):
        COMMANDS_BY_NAME[_key] = _command_spec


def lookup_command(name: str) -> CommandSpec:
    spec = COMMANDS_BY_NAME.get(name)
    if spec is None:
        raise FlowConfigError(f"Unknown command: {name}")
    return spec


class Command(BaseModel):
    """One parsed command: its canonical name and its parameters (a record, a scalar or None)."""

    name: str
    params: Any = None

    @property
    def spec(self) -> CommandSpec:
        return COMMANDS_BY_NAME[self.name]

    def to_yaml(self) -> Any:
        if self.params is None:
            return self.name
        if isinstance(self.params, ParamsModel):
            dumped = self.params.to_yaml()
            if not dumped and self.spec.simple:
                return self.name
            return {self.name: dumped}
        return {self.name: self.params}

    def describe(self) -> str:
        """Short human form shown in progress output and reports."""
        if self.params is None:
            return self.name
        if isinstance(self.params, ParamsModel):
            detail = self.params.describe()
            return f"{self.name}({detail})" if detail else self.name
        return f'{self.name}("{self.params}")'


def parse_command(raw: Any) -> Command:
    if isinstance(raw, Command):
        return raw
    if isinstance(raw, str):
        spec = lookup_command(raw.strip())
        if not spec.simple:
            raise FlowConfigError(f"Command '{spec.name}' requires parameters")
        return Command(name=spec.name)
    if isinstance(raw, dict) and len(raw) == 1:
        key, value = next(iter(raw.items()))
        spec = lookup_command(str(key))
        if value is None or value == {}:
            if spec.simple:
                return Command(name=spec.name)
            if spec.params is None:
                raise FlowConfigError(f"Command '{spec.name}' requires a value")
            return Command(name=spec.name, params=spec.build({}))
        if spec.params is None and spec.value_type is None:
            raise FlowConfigError(f"Command '{spec.name}' takes no parameters")
        return Command(name=spec.name, params=spec.build(value))
    raise FlowConfigError(f"Invalid command: {raw!r}")


def parse_commands(raw: Any) -> list[Command]:
    if raw is None:
        return []
    if not isinstance(raw, list):
        raise FlowConfigError(f"Expected a list of commands, got {type(raw).__name__}")
    return [parse_command(item) for item in raw]


RepeatParams.model_rebuild()
RetryParams.model_rebuild()
RunFlowParams.model_rebuild()
ConditionalParams.model_rebuild()
