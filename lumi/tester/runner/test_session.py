from unittest.mock import AsyncMock, patch

import pytest

from lumi.tester.drivers.factory import DeviceInfo, Platform
from lumi.tester.drivers.fake import FakeDriver
from lumi.tester.drivers.web import WebDriverConfig
from lumi.tester.errors import FlowFailedError, LumiError
from lumi.tester.runner.executor import ExecutorOptions
from lumi.tester.runner.session import (
    collect_flow_files,
    resolve_devices,
    resolve_platform,
    run_tests,
    web_config_for,
)


@pytest.fixture
def suite(tmp_path):
    (tmp_path / "subflows").mkdir()
    (tmp_path / "nested").mkdir()
    (tmp_path / "a_login.yaml").write_text("- inputText: login\n")
    (tmp_path / "nested" / "b_cart.yml").write_text("- inputText: cart\n")
    (tmp_path / "subflows" / "helper.yaml").write_text("- back\n")
    (tmp_path / "setup.yaml").write_text("- inputText: setup\n")
    (tmp_path / "teardown.yaml").write_text("- inputText: teardown\n")
    (tmp_path / "notes.txt").write_text("not a flow")
    return tmp_path


class RecordingFactory:
    def __init__(self):
        self.drivers: list[FakeDriver] = []
        self.calls: list[tuple] = []

    async def __call__(self, platform, device_id, web_config):
        self.calls.append((platform, device_id, web_config))
        driver = FakeDriver()
        driver.close = AsyncMock()
        self.drivers.append(driver)
        return driver


def _inputs(driver: FakeDriver) -> list[str]:
    return [a[1] for a in driver.actions if a[0] == "input"]


class TestCollectFlowFiles:
    def test_skips_hooks_and_subflows(self, suite):
        files = collect_flow_files(suite)
        assert [f.name for f in files] == ["a_login.yaml", "b_cart.yml"]

    def test_single_file(self, suite):
        assert collect_flow_files(suite / "a_login.yaml") == [suite / "a_login.yaml"]

    def test_missing_path(self, tmp_path):
        with pytest.raises(LumiError, match="Path not found"):
            collect_flow_files(tmp_path / "nope")


class TestPlatformAndConfig:
    def test_platform_from_first_flow(self, tmp_path):
        flow = tmp_path / "web.yaml"
        flow.write_text("platform: web\nbrowser: Firefox\ncloseWhenFinish: false\n---\n- back\n")

        assert resolve_platform([flow], None) == Platform.WEB
        assert resolve_platform([flow], Platform.IOS) == Platform.IOS

        config = web_config_for([flow])
        assert config.browser == "firefox"
        assert config.close_when_finish is False

    def test_defaults_to_android(self, suite):
        assert resolve_platform(collect_flow_files(suite), None) == Platform.ANDROID

    @pytest.mark.asyncio
    async def test_explicit_devices_win(self):
        assert await resolve_devices(Platform.ANDROID, ["emulator-5554"]) == ["emulator-5554"]

    @pytest.mark.asyncio
    async def test_android_without_devices_fails(self):
        with patch("lumi.tester.runner.session.list_all_devices", AsyncMock(return_value=[])):
            with pytest.raises(LumiError, match="No Android devices connected"):
                await resolve_devices(Platform.ANDROID, None)

    @pytest.mark.asyncio
    async def test_android_uses_connected_devices(self):
        connected = [DeviceInfo(platform=Platform.ANDROID, device_id="serial-1")]
        with patch("lumi.tester.runner.session.list_all_devices", AsyncMock(return_value=connected)):
            assert await resolve_devices(Platform.ANDROID_AUTO, None) == ["serial-1"]

    @pytest.mark.asyncio
    async def test_web_runs_once_without_device(self):
        assert await resolve_devices(Platform.WEB, None) == [None]


class TestRunTests:
    @pytest.mark.asyncio
    async def test_hooks_wrap_flows(self, suite):
        factory = RecordingFactory()

        summaries = await run_tests(
            [suite],
            platform=Platform.WEB,
            options=ExecutorOptions(output_dir=suite / "out"),
            driver_factory=factory,
        )

        driver = factory.drivers[0]
        assert _inputs(driver) == ["setup", "login", "cart", "teardown"]
        assert summaries[0].total_flows == 4
        assert isinstance(factory.calls[0][2], WebDriverConfig)
        driver.close.assert_awaited_once()

    @pytest.mark.asyncio
    async def test_one_session_per_device(self, suite):
        factory = RecordingFactory()

        summaries = await run_tests(
            [suite / "a_login.yaml"],
            platform=Platform.ANDROID,
            devices=["one", "two"],
            options=ExecutorOptions(output_dir=suite / "out"),
            driver_factory=factory,
        )

        assert [c[1] for c in factory.calls] == ["one", "two"]
        assert factory.calls[0][2] is None
        assert len(summaries) == 2

    @pytest.mark.asyncio
    async def test_teardown_runs_after_failure(self, suite):
        (suite / "a_login.yaml").write_text('- assertTrue: "false"\n')
        factory = RecordingFactory()

        with pytest.raises(FlowFailedError):
            await run_tests(
                [suite],
                platform=Platform.WEB,
                options=ExecutorOptions(output_dir=suite / "out"),
                driver_factory=factory,
            )

        driver = factory.drivers[0]
        assert _inputs(driver) == ["setup", "teardown"]
        driver.close.assert_awaited_once()

    @pytest.mark.asyncio
    async def test_no_flows(self, tmp_path):
        with pytest.raises(LumiError, match="No flow files found"):
            await run_tests([tmp_path], platform=Platform.WEB, driver_factory=RecordingFactory())
