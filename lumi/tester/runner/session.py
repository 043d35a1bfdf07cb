"""
Test session orchestration.

Collects flow files, picks the platform and devices, and runs every flow on
each device in turn with `setup`/`teardown` hooks around them.
"""

from collections.abc import Awaitable, Callable
from pathlib import Path

from lumi.tester.drivers.base import PlatformDriver
from lumi.tester.drivers.factory import Platform, create_driver, list_all_devices
from lumi.tester.drivers.web import WebDriverConfig
from lumi.tester.errors import LumiError
from lumi.tester.parser.yaml_loader import parse_flow_file
from lumi.tester.runner.events import EventEmitter
from lumi.tester.runner.executor import ExecutorOptions, TestExecutor
from lumi.tester.runner.state import SessionSummary
from lumi.tester.utils.logger import get_logger

logger = get_logger(__name__)

FLOW_SUFFIXES = (".yaml", ".yml")
SETUP_FILES = ("setup.yaml", "setup.yml")
TEARDOWN_FILES = ("teardown.yaml", "teardown.yml")
SUBFLOW_DIR = "subflows"

DriverFactory = Callable[
    [Platform, str | None, WebDriverConfig | None], Awaitable[PlatformDriver]
]


def collect_flow_files(path: Path) -> list[Path]:
    """
    Flow files to run for `path`.

    A file is returned as is. A directory is walked recursively for YAML
    files, leaving out `subflows/` directories and the setup/teardown hooks.
    """
    if not path.exists():
        raise LumiError(f"Path not found: {path}")
    if path.is_file():
        return [path]
    return sorted(
        p
        for p in path.rglob("*")
        if p.is_file()
        and p.suffix in FLOW_SUFFIXES
        and SUBFLOW_DIR not in p.relative_to(path).parts
        and p.name not in SETUP_FILES + TEARDOWN_FILES
    )


def find_hook(base_dir: Path, names: tuple[str, ...]) -> Path | None:
    return next((base_dir / n for n in names if (base_dir / n).is_file()), None)


def resolve_platform(files: list[Path], platform: Platform | None) -> Platform:
    """The explicit platform, else the one declared by the first flow, else Android."""
    if platform is not None:
        return platform
    if not files:
        return Platform.ANDROID
    return Platform.parse(parse_flow_file(files[0]).platform)


def web_config_for(files: list[Path]) -> WebDriverConfig:
    """Browser settings taken from the header of the first flow."""
    if not files:
        return WebDriverConfig()
    header = parse_flow_file(files[0]).header
    return WebDriverConfig.with_overrides(
        browser=header.browser.lower() if header.browser else None,
        close_when_finish=header.close_when_finish,
    )


async def resolve_devices(platform: Platform, devices: list[str] | None) -> list[str | None]:
    if devices:
        return list(devices)
    if platform in (Platform.ANDROID, Platform.ANDROID_AUTO):
        connected = await list_all_devices(Platform.ANDROID)
        if not connected:
            raise LumiError("No Android devices connected")
        return [d.device_id for d in connected]
    return [None]


async def run_on_device(
    files: list[Path],
    base_dir: Path,
    platform: Platform,
    device_id: str | None,
    options: ExecutorOptions,
    emitter: EventEmitter,
    command_index: int | None = None,
    command_name: str | None = None,
    driver_factory: DriverFactory = create_driver,
) -> SessionSummary:
    web_config = web_config_for(files) if platform == Platform.WEB else None
    driver = await driver_factory(platform, device_id, web_config)
    executor = TestExecutor(driver, options=options, emitter=emitter, base_dir=base_dir)
    try:
        setup = find_hook(base_dir, SETUP_FILES)
        if setup:
            logger.info(f"Running setup hook {setup.name}")
            await executor.run_file(setup, filter_tags=False)

        try:
            for file in files:
                await executor.run_file(file, command_index, command_name)
        finally:
            teardown = find_hook(base_dir, TEARDOWN_FILES)
            if teardown:
                logger.info(f"Running teardown hook {teardown.name}")
                try:
                    await executor.run_file(teardown, filter_tags=False)
                except Exception as e:
                    logger.error(f"Failed to run teardown hook: {e}")
    finally:
        summary = await executor.finish()
        try:
            await driver.close()
        except Exception as e:
            logger.error(f"Failed to close driver: {e}")
    return summary


async def run_tests(
    paths: list[Path],
    platform: Platform | None = None,
    devices: list[str] | None = None,
    options: ExecutorOptions | None = None,
    emitter: EventEmitter | None = None,
    command_index: int | None = None,
    command_name: str | None = None,
    driver_factory: DriverFactory = create_driver,
) -> list[SessionSummary]:
    """
    Run every flow under `paths` on each target device.

    Hooks are looked up next to the first path (its parent when it is a file).

    Raises:
        FlowFailedError: a flow failed and `continue_on_failure` is off.
        LumiError: nothing to run, or no device available.
    """
    files = [f for p in paths for f in collect_flow_files(p)]
    if not files:
        raise LumiError(f"No flow files found in {', '.join(str(p) for p in paths)}")

    options = options or ExecutorOptions()
    emitter = emitter or EventEmitter()
    platform = resolve_platform(files, platform)
    base_dir = paths[0] if paths[0].is_dir() else paths[0].parent
    targets = await resolve_devices(platform, devices)
    logger.info(f"Running {len(files)} flow(s) on {len(targets)} {platform.value} target(s)")

    summaries = []
    for device_id in targets:
        summaries.append(
            await run_on_device(
                files,
                base_dir,
                platform,
                device_id,
                options,
                emitter,
                command_index,
                command_name,
                driver_factory,
            )
        )
    return summaries
