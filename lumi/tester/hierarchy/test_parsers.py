import pytest

from lumi.tester.errors import BridgeError
from lumi.tester.hierarchy.android import parse_hierarchy as parse_android
from lumi.tester.hierarchy.ios import parse_hierarchy as parse_ios
from lumi.tester.hierarchy.models import AndroidElement, UiElement
from lumi.tester.utils.text import decode_html_entities

ANDROID_DUMP = """UI hierchary dumped to: /dev/tty
<?xml version='1.0' encoding='UTF-8' standalone='yes' ?>
<hierarchy rotation="0">
  <node index="0" text="" resource-id="" class="android.widget.FrameLayout" content-desc="" clickable="false" enabled="true" focusable="false" scrollable="false" bounds="[0,0][1080,2340]">
    <node index="0" text="Devices &amp; Groups&#10;2 on" resource-id="com.app:id/title" class="android.widget.TextView" content-desc="" clickable="true" enabled="true" focusable="true" scrollable="false" bounds="[40,200][600,300]" />
    <node index="1" text="" resource-id="com.app:id/list" class="androidx.recyclerview.widget.RecyclerView" content-desc="Items" clickable="false" enabled="false" focusable="false" scrollable="true" bounds="[0,300][1080,2000]" />
  </node>
</hierarchy>"""


class TestDecodeHtmlEntities:
    def test_mixed_named_and_numeric(self):
        assert decode_html_entities("Devices &amp; Groups&#10;2 on") == "Devices & Groups\n2 on"

    def test_named(self):
        assert decode_html_entities("&lt;tag&gt; &quot;q&quot; it&apos;s") == "<tag> \"q\" it's"

    def test_decimal_and_hex(self):
        assert decode_html_entities("&#65;&#66;&#x43;&#x0A;") == "ABC\n"

    def test_nbsp_becomes_space(self):
        assert decode_html_entities("a&nbsp;b") == "a b"

    def test_plain_text_is_unchanged(self):
        assert decode_html_entities("Normal text") == "Normal text"
        assert decode_html_entities("") == ""


class TestAndroidParser:
    def test_flat_document_order(self):
        elements = parse_android(ANDROID_DUMP)
        assert [e.class_name for e in elements] == [
            "android.widget.FrameLayout",
            "android.widget.TextView",
            "androidx.recyclerview.widget.RecyclerView",
        ]

    def test_attributes(self):
        title = parse_android(ANDROID_DUMP)[1]
        assert title.text == "Devices & Groups\n2 on"
        assert title.resource_id == "com.app:id/title"
        assert title.clickable is True
        assert title.bounds.center == (320, 250)

        recycler = parse_android(ANDROID_DUMP)[2]
        assert recycler.scrollable is True
        assert recycler.enabled is False
        assert recycler.content_desc == "Items"

    def test_malformed_xml_raises(self):
        with pytest.raises(BridgeError):
            parse_android("<hierarchy><node></hierarchy>")


class TestIosParser:
    def test_array_with_nested_children_is_flattened(self):
        output = """[{"AXLabel": "Settings", "type": "Window",
            "frame": {"x": 0, "y": 0, "width": 390, "height": 844},
            "children": [{"AXLabel": "Wi-Fi", "AXUniqueId": "wifi", "type": "Cell",
                "frame": {"x": 0, "y": 100, "width": 390, "height": 44}}]}]"""
        elements = parse_ios(output)
        assert [e.label for e in elements] == ["Settings", "Wi-Fi"]
        assert elements[1].identifier == "wifi"
        assert elements[1].bounds.center == (195, 122)
        assert elements[0].children == []

    def test_single_object(self):
        elements = parse_ios('{"label": "OK", "type": "Button"}')
        assert len(elements) == 1
        assert elements[0].element_type == "Button"

    def test_line_delimited(self):
        output = '{"AXLabel": "A"}\n\n{"AXLabel": "B", "AXValue": "on"}\n'
        elements = parse_ios(output)
        assert [e.label for e in elements] == ["A", "B"]
        assert elements[1].value == "on"

    def test_garbage_raises(self):
        with pytest.raises(BridgeError):
            parse_ios("not json at all")


class TestUiElement:
    def test_base_is_abstract(self):
        with pytest.raises(TypeError):
            UiElement()

    def test_android_element_implements_interface(self):
        node = AndroidElement(text="OK", class_name="android.widget.Button")
        assert node.display_text() == "OK"
        assert node.matches_type("button")
