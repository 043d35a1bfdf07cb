import json
from typing import Any

from lumi.tester.errors import BridgeError
from lumi.tester.hierarchy.models import IosElement, IosFrame
from lumi.tester.utils.logger import get_logger

logger = get_logger(__name__)


def _first(data: dict[str, Any], *keys: str) -> Any:
    for key in keys:
        if data.get(key) is not None:
            return data[key]
    return None


def _as_text(value: Any) -> str | None:
    if value is None:
        return None
    return value if isinstance(value, str) else str(value)


def element_from_dict(data: dict[str, Any]) -> IosElement:
    """Build an element from a `ui describe-all` node, accepting both AX-prefixed and plain keys."""
    frame_data = data.get("frame") or {}
    frame = IosFrame(
        x=float(frame_data.get("x", 0.0)),
        y=float(frame_data.get("y", 0.0)),
        width=float(frame_data.get("width", 0.0)),
        height=float(frame_data.get("height", 0.0)),
    )
    children = [element_from_dict(child) for child in data.get("children") or [] if isinstance(child, dict)]
    return IosElement(
        label=_as_text(_first(data, "label", "AXLabel")),
        identifier=_as_text(_first(data, "identifier", "AXUniqueId")),
        element_type=_as_text(_first(data, "type", "element_type")),
        value=_as_text(_first(data, "value", "AXValue")),
        placeholder=_as_text(data.get("placeholder")),
        frame=frame,
        enabled=bool(data.get("enabled", True)),
        visible=bool(data.get("visible", True)),
        children=children,
    )


def parse_hierarchy_tree(output: str) -> list[IosElement]:
    """
    Parse `ui describe-all --json` output into root elements.

    The bridge emits a JSON array, a single object, or one JSON object per line
    depending on its version.
    """
    try:
        data = json.loads(output)
        if isinstance(data, list):
            return [element_from_dict(item) for item in data if isinstance(item, dict)]
        if isinstance(data, dict):
            return [element_from_dict(data)]
    except json.JSONDecodeError:
        pass

    elements = []
    for line in output.splitlines():
        if not line.strip():
            continue
        try:
            item = json.loads(line)
        except json.JSONDecodeError:
            continue
        if isinstance(item, dict):
            elements.append(element_from_dict(item))

    if not elements:
        raise BridgeError("Failed to parse UI hierarchy JSON")
    return elements


def flatten_elements(roots: list[IosElement]) -> list[IosElement]:
    result: list[IosElement] = []
    for root in roots:
        result.extend(root.flatten())
    return result


def parse_hierarchy(output: str) -> list[IosElement]:
    elements = flatten_elements(parse_hierarchy_tree(output))
    logger.debug(f"Parsed {len(elements)} iOS elements")
    return elements
