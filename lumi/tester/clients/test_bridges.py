from unittest.mock import AsyncMock, patch

import pytest

from lumi.tester.clients.adb_bridge import (
    AdbBridge,
    is_landscape_rotation,
    parse_devices_output,
    parse_wm_size,
)
from lumi.tester.clients.idb_bridge import (
    build_target_args,
    parse_list_targets,
    parse_screen_dimensions,
    parse_xctrace_devices,
)
from lumi.tester.clients.ios_client import WdaClientConfig
from lumi.tester.clients.wda_client import parse_source_xml
from lumi.tester.errors import BridgeError
from lumi.tester.utils.text import escape_for_android_shell

FAKE_PNG = b"\x89PNG\r\n\x1a\n" + b"\x00" * 200


class TestAdbParsing:
    def test_wm_size_prefers_override(self):
        output = "Physical size: 1080x2400\nOverride size: 720x1600\n"
        assert parse_wm_size(output) == (720, 1600)

    def test_wm_size_physical_only(self):
        assert parse_wm_size("Physical size: 1440x3120") == (1440, 3120)

    def test_wm_size_defaults_when_unparsable(self):
        assert parse_wm_size("error: no display") == (1080, 1920)

    def test_landscape_rotation(self):
        assert is_landscape_rotation("  mRotation=1 mAltOrientation=false")
        assert is_landscape_rotation("mRotation=3")
        assert not is_landscape_rotation("mRotation=0")

    def test_devices_output(self):
        output = "List of devices attached\nemulator-5554\tdevice\nR58M\tunauthorized\n\n"
        devices = parse_devices_output(output)
        assert [(d.serial, d.state) for d in devices] == [
            ("emulator-5554", "device"),
            ("R58M", "unauthorized"),
        ]

    def test_escape_for_android_shell(self):
        assert escape_for_android_shell("a b") == "a%sb"
        assert escape_for_android_shell("x&y") == "x\\&y"
        assert escape_for_android_shell("it's") == "it\\'s"


class TestAdbBridge:
    @pytest.fixture(autouse=True)
    def fake_adb(self):
        with patch("lumi.tester.clients.adb_bridge.find_adb", return_value="adb"):
            yield

    def test_args_include_serial(self):
        bridge = AdbBridge(serial="emulator-5554")
        assert bridge._args("shell", "ls") == ["adb", "-s", "emulator-5554", "shell", "ls"]

    def test_args_without_serial(self):
        assert AdbBridge()._args("devices") == ["adb", "devices"]

    @pytest.mark.asyncio
    async def test_screenshot_fast_path(self):
        bridge = AdbBridge(serial="s1")
        with patch(
            "lumi.tester.clients.adb_bridge.run_command", new=AsyncMock(return_value=FAKE_PNG)
        ) as run:
            data = await bridge.screenshot()
        assert data == FAKE_PNG
        run.assert_awaited_once()
        assert run.await_args.args[0] == ["adb", "-s", "s1", "exec-out", "screencap -p"]

    @pytest.mark.asyncio
    async def test_screenshot_falls_back_when_stream_is_not_png(self):
        bridge = AdbBridge(serial="s1")
        calls = []

        async def fake_run(args, check=True, timeout=None, stdin=None):
            calls.append(args)
            if args[3] == "exec-out":
                return b"not a png at all"
            if args[3] == "pull":
                with open(args[5], "wb") as f:
                    f.write(FAKE_PNG)
            return b""

        with patch("lumi.tester.clients.adb_bridge.run_command", new=fake_run):
            data = await bridge.screenshot()

        assert data == FAKE_PNG
        commands = [c[3:5] for c in calls]
        assert ["shell", "screencap -p /sdcard/lumi_screenshot.png"] in commands
        assert commands[-1] == ["shell", "rm /sdcard/lumi_screenshot.png"]

    @pytest.mark.asyncio
    async def test_screen_size_swaps_in_landscape(self):
        bridge = AdbBridge()
        outputs = {
            "wm size": "Physical size: 1080x1920",
            "dumpsys window displays | grep mRotation": "mRotation=1",
        }

        async def fake_shell(command, timeout=None):
            return outputs[command]

        with patch.object(bridge, "shell", side_effect=fake_shell):
            assert await bridge.get_screen_size() == (1920, 1080)

    @pytest.mark.asyncio
    async def test_exec_out_without_output_raises(self):
        bridge = AdbBridge()
        with patch("lumi.tester.clients.adb_bridge.run_command", new=AsyncMock(return_value=b"")):
            with pytest.raises(BridgeError):
                await bridge.exec_out_binary("cat /nope")


class TestIdbArguments:
    def test_ui_group_places_udid_after_subcommand(self):
        assert build_target_args("U1", ["ui", "tap", "10", "20"]) == [
            "ui",
            "tap",
            "--udid",
            "U1",
            "10",
            "20",
        ]

    def test_file_group(self):
        assert build_target_args("U1", ["file", "push", "a", "b"])[:4] == [
            "file",
            "push",
            "--udid",
            "U1",
        ]

    def test_plain_subcommand(self):
        assert build_target_args("U1", ["launch", "com.app"]) == ["launch", "--udid", "U1", "com.app"]


class TestIdbParsing:
    def test_list_targets_ndjson(self):
        output = (
            '{"udid":"12345-ABCDE","name":"iPhone 15","type":"simulator","state":"Booted"}\n'
            "\n"
            "garbage\n"
            '{"udid":"777","name":"iPad","type":"simulator","state":"Shutdown"}\n'
        )
        targets = parse_list_targets(output)
        assert [t.udid for t in targets] == ["12345-ABCDE", "777"]
        assert targets[0].is_simulator and targets[0].is_booted
        assert not targets[1].is_booted

    def test_xctrace_devices(self):
        output = (
            "== Devices ==\n"
            "Studio Mac mini (2) (FB8951E3-8F4C-5CB9-BA86-B907BAF6D911)\n"
            "Phone (18.5) (00008020-0012446C1ADA002E)\n"
            "== Devices Offline ==\n"
            "Spare (18.6.2) (00008110-000439C63AE9801E)\n"
            "== Simulators ==\n"
            "iPhone 15 (17.0) (AAAAAAAA-BBBB-CCCC-DDDD-EEEEEEEEEEEE)\n"
        )
        devices = parse_xctrace_devices(output)
        assert [(d.name, d.state) for d in devices] == [("Phone", "Booted"), ("Spare", "Offline")]
        assert all(not d.is_simulator for d in devices)

    def test_screen_dimensions(self):
        assert parse_screen_dimensions('{"screen_dimensions": {"width_points": 393, "height_points": 852}}') == (
            393,
            852,
        )
        assert parse_screen_dimensions("not json") == (390, 844)


class TestWda:
    def test_config_overrides_only_given_fields(self):
        config = WdaClientConfig.with_overrides(wda_url="http://localhost:8101")
        assert config.wda_url == "http://localhost:8101"
        assert config.timeout == WdaClientConfig().timeout
        assert config.port == 8101

    def test_config_without_overrides(self):
        assert WdaClientConfig.with_overrides() == WdaClientConfig()

    def test_parse_source_xml(self):
        xml = (
            '<AppiumAUT><XCUIElementTypeApplication type="XCUIElementTypeApplication" '
            'x="0" y="0" width="390" height="844" enabled="true" visible="true">'
            '<XCUIElementTypeButton type="XCUIElementTypeButton" name="login_btn" label="Login" '
            'x="10" y="20" width="100" height="40" enabled="true" visible="true"/>'
            "</XCUIElementTypeApplication></AppiumAUT>"
        )
        elements = parse_source_xml(xml)
        assert len(elements) == 2
        button = elements[1]
        assert button["type"] == "Button"
        assert button["label"] == "Login"
        assert button["identifier"] == "login_btn"
        assert button["frame"] == {"x": 10.0, "y": 20.0, "width": 100.0, "height": 40.0}
