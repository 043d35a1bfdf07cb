import xml.etree.ElementTree as ET

from lumi.tester.errors import BridgeError
from lumi.tester.hierarchy.models import AndroidElement, Bounds
from lumi.tester.utils.logger import get_logger
from lumi.tester.utils.text import decode_html_entities

logger = get_logger(__name__)


def _flag(value: str | None, default: bool = False) -> bool:
    if value is None:
        return default
    return value == "true"


def element_from_attributes(attributes: dict[str, str]) -> AndroidElement:
    bounds = Bounds.from_string(attributes.get("bounds", "")) or Bounds()
    return AndroidElement(
        class_name=attributes.get("class", ""),
        text=decode_html_entities(attributes.get("text", "")),
        resource_id=attributes.get("resource-id", ""),
        content_desc=decode_html_entities(attributes.get("content-desc", "")),
        hint=decode_html_entities(attributes.get("hint", "")),
        element_bounds=bounds,
        clickable=_flag(attributes.get("clickable")),
        enabled=_flag(attributes.get("enabled"), default=True),
        focusable=_flag(attributes.get("focusable")),
        scrollable=_flag(attributes.get("scrollable")),
        index=attributes.get("index", ""),
    )


def parse_hierarchy(xml: str) -> list[AndroidElement]:
    """
    Parse a `uiautomator dump` document into a flat, document-ordered element list.

    Raises:
        BridgeError: if the document is not well-formed XML.
    """
    start = xml.find("<")
    if start > 0:
        # `exec-out uiautomator dump /dev/tty` prefixes/suffixes status lines
        xml = xml[start:]
    end = xml.rfind(">")
    if end != -1:
        xml = xml[: end + 1]

    try:
        root = ET.fromstring(xml)
    except ET.ParseError as e:
        raise BridgeError(f"Failed to parse UI hierarchy XML: {e}") from e

    elements = [element_from_attributes(node.attrib) for node in root.iter("node")]
    logger.debug(f"Parsed {len(elements)} Android elements")
    return elements
