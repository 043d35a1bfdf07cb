"""
Test executor.

Runs parsed flows command by command against a `PlatformDriver`, keeps the
session/flow/command state, and reports every transition on the event
emitter. Nested blocks (runFlow, repeat, retry, conditional) run as sub-flows
one level deeper.
"""

import asyncio
import re
import uuid
from collections.abc import Awaitable, Callable
from datetime import datetime
from pathlib import Path
from typing import Any

from pydantic import BaseModel, ConfigDict

from lumi.tester.drivers.base import PlatformDriver
from lumi.tester.errors import (
    FlowConfigError,
    FlowFailedError,
    ScriptError,
    SkipCommand,
    SoftAssertionFailure,
)
from lumi.tester.parser.commands import Command, Condition, ElementParams
from lumi.tester.parser.yaml_loader import load_data_rows, parse_flow_file
from lumi.tester.report.generate import write_reports
from lumi.tester.runner.actions import (  # noqa: F401
    assertions,
    capture,
    device,
    flow_control,
    interaction,
    location,
    scripting,
)
from lumi.tester.runner.actions.registry import get_action
from lumi.tester.runner.context import TestContext
from lumi.tester.runner.events import (
    CommandFailed,
    CommandPassed,
    CommandSkipped,
    CommandStarted,
    EventEmitter,
    FlowFinished,
    FlowStarted,
    SessionFinished,
    SessionStarted,
)
from lumi.tester.runner.gif import AutoGifCapture
from lumi.tester.runner.js_engine import JsEngine
from lumi.tester.runner.state import (
    CommandState,
    FlowState,
    FlowStatus,
    SessionState,
    SessionSummary,
)
from lumi.tester.selectors.models import BaseSelector, TextRegexSelector, TextSelector
from lumi.tester.utils.logger import get_logger

logger = get_logger(__name__)

FAILURE_LOG_LINES = 1000


class ExecutorOptions(BaseModel):
    model_config = ConfigDict(frozen=True)

    continue_on_failure: bool = False
    record: bool = False
    snapshot: bool = False
    report: bool = False
    tags: tuple[str, ...] = ()
    output_dir: Path | None = None

    @classmethod
    def with_overrides(
        cls,
        continue_on_failure: bool | None = None,
        record: bool | None = None,
        snapshot: bool | None = None,
        report: bool | None = None,
        tags: list[str] | None = None,
        output_dir: Path | None = None,
    ) -> "ExecutorOptions":
        """Create ExecutorOptions with only specified fields overridden."""
        overrides = {
            k: v
            for k, v in {
                "continue_on_failure": continue_on_failure,
                "record": record,
                "snapshot": snapshot,
                "report": report,
                "tags": tuple(tags) if tags is not None else None,
                "output_dir": output_dir,
            }.items()
            if v is not None
        }
        return cls().model_copy(update=overrides)

    @property
    def capture_failures(self) -> bool:
        return self.snapshot or self.report


def select_commands(
    commands: list[Command], index: int | None = None, name: str | None = None
) -> list[Command]:
    """Narrow a flow to one command, picked by position or by (prefix of) its name."""
    if index is not None:
        if index < 0 or index >= len(commands):
            raise FlowConfigError(
                f"Command index {index} is out of range. File has {len(commands)} commands."
            )
        return [commands[index]]
    if name is not None:
        needle = name.lower()
        for command in commands:
            label = command.describe().lower()
            if command.name.lower() == needle or label == needle or label.startswith(needle):
                return [command]
        available = ", ".join(c.name for c in commands)
        raise FlowConfigError(
            f"Command '{name}' not found in file. Available commands: {available}"
        )
    return commands


class TestExecutor:
    __test__ = False

    def __init__(
        self,
        driver: PlatformDriver,
        options: ExecutorOptions | None = None,
        emitter: EventEmitter | None = None,
        base_dir: Path | None = None,
        sleep: Callable[[float], Awaitable[None]] = asyncio.sleep,
    ):
        self.driver = driver
        self.sleep = sleep
        self.options = options or ExecutorOptions()
        self.emitter = emitter or EventEmitter()
        self.context = TestContext(
            base_dir or Path.cwd(),
            output_dir=self.options.output_dir,
            continue_on_failure=self.options.continue_on_failure,
            device_id=driver.device_serial(),
            platform=driver.platform_name,
        )
        self.session = SessionState(session_id=str(uuid.uuid4()))
        self.depth = 0
        self.soft_errors: list[str] = []
        self.gif_frames: dict[str, bytes] = {}
        self.auto_gif = AutoGifCapture()
        self.current_flow: FlowState | None = None
        self.current_command: CommandState | None = None

    # Session

    def start(self) -> None:
        if self.session.started_at is not None:
            return
        self.session.start()
        self.emitter.emit(SessionStarted(session_id=self.session.session_id))

    async def finish(self) -> SessionSummary:
        self.start()
        self.session.finish()
        summary = self.session.summary()
        self.emitter.emit(SessionFinished(summary=summary))
        if self.options.report:
            for path in write_reports(self.session, self.context.output_dir):
                logger.info(f"Report written: {path}")
        return summary

    # Flows

    async def run_file(
        self,
        path: str | Path,
        command_index: int | None = None,
        command_name: str | None = None,
        filter_tags: bool = True,
    ) -> list[FlowState]:
        """
        Run one flow file, once per data row when the header names a CSV file.

        Raises:
            FlowFailedError: a run failed and the options do not allow continuing.
        """
        self.start()
        flow = parse_flow_file(path)

        required = self.options.tags
        if filter_tags and required and not all(tag in flow.tags for tag in required):
            logger.info(f"Skipping {flow.name}: tags {flow.tags} do not include {list(required)}")
            self.emitter.log(f"Skipped {flow.name} (tags do not match)")
            return []

        self.context.base_dir = flow.base_dir
        self.context.update_from_flow(flow)
        commands = select_commands(flow.commands, command_index, command_name)

        rows: list[dict[str, str]] = [{}]
        if flow.header.data:
            rows = load_data_rows(self.context.resolve_path(flow.header.data))
            logger.info(f"Loaded {len(rows)} data rows for {flow.name}")

        results = []
        for i, row in enumerate(rows):
            name = f"{flow.name} [{i + 1}]" if len(rows) > 1 else flow.name
            self.context.merge_vars(row)
            state = await self.run_commands(commands, name, str(flow.path or ""))
            self.session.add_flow(state)
            results.append(state)
            if state.status == FlowStatus.FAILED and not self.options.continue_on_failure:
                raise FlowFailedError(f"Flow failed: {name}")
        return results

    async def run_commands(
        self, commands: list[Command], flow_name: str, flow_path: str = ""
    ) -> FlowState:
        flow = FlowState(
            name=flow_name,
            path=flow_path,
            depth=self.depth,
            commands=[
                CommandState(index=i, name=c.name, label=c.describe())
                for i, c in enumerate(commands)
            ],
        )
        outer_soft_errors, self.soft_errors = self.soft_errors, []
        outer_flow = self.current_flow
        self.current_flow = flow

        flow.start()
        self.emitter.emit(
            FlowStarted(
                name=flow_name, path=flow_path, command_count=len(commands), depth=self.depth
            )
        )
        video = await self._start_video(flow_name) if self._records_video() else None

        try:
            for index, command in enumerate(commands):
                if await self._run_command(flow, index, command):
                    continue
                if not self.options.continue_on_failure:
                    self._skip_rest(flow, index + 1, "Previous command failed")
                    break
        finally:
            soft_errors = self.soft_errors
            self.soft_errors = outer_soft_errors
            self.current_flow = outer_flow

        flow.finish(self.options.continue_on_failure, soft_errors)
        if video:
            await self._stop_video()
            flow.video_path = video

        self.emitter.emit(
            FlowFinished(
                name=flow_name,
                status=flow.status.value,
                duration_ms=flow.total_duration_ms or 0,
                error=flow.error,
                depth=self.depth,
            )
        )
        return flow

    async def run_nested(self, commands: list[Command], name: str, path: str = "") -> FlowState:
        """Run a block one level deeper; anything short of a full pass raises."""
        self.depth += 1
        try:
            flow = await self.run_commands(commands, name, path)
        finally:
            self.depth -= 1
        if flow.status != FlowStatus.PASSED:
            raise FlowFailedError(flow.error or f"Flow failed: {name}")
        return flow

    def _skip_rest(self, flow: FlowState, from_index: int, reason: str) -> None:
        flow.skip_remaining(from_index, reason)
        for command in flow.commands[from_index:]:
            self.emitter.emit(
                CommandSkipped(flow=flow.name, index=command.index, reason=reason, depth=self.depth)
            )

    async def _run_command(self, flow: FlowState, index: int, command: Command) -> bool:
        """Run one command and settle its state. False means a hard failure."""
        state = flow.commands[index]
        state.start()
        self.current_command = state
        self.emitter.emit(
            CommandStarted(flow=flow.name, index=index, command=state.label, depth=self.depth)
        )

        try:
            await self.execute_command(command)
        except SkipCommand as e:
            state.skip(e.reason)
            self.emitter.emit(
                CommandSkipped(flow=flow.name, index=index, reason=e.reason, depth=self.depth)
            )
            return True
        except SoftAssertionFailure as e:
            message = str(e)
            self.soft_errors.append(message)
            state.fail(message)
            logger.warning(f"Soft assertion failed: {message}")
            self.emitter.emit(
                CommandFailed(
                    flow=flow.name,
                    index=index,
                    error=message,
                    duration_ms=state.duration_ms or 0,
                    soft=True,
                    depth=self.depth,
                )
            )
            return True
        except Exception as e:
            message = str(e) or type(e).__name__
            if self.options.capture_failures:
                state.screenshot_path = await self._capture_failure(flow.name, index)
            state.fail(message)
            self.emitter.emit(
                CommandFailed(
                    flow=flow.name,
                    index=index,
                    error=message,
                    duration_ms=state.duration_ms or 0,
                    depth=self.depth,
                )
            )
            return False

        state.pass_()
        await self._capture_auto_gif_frame()
        self.emitter.emit(
            CommandPassed(
                flow=flow.name, index=index, duration_ms=state.duration_ms or 0, depth=self.depth
            )
        )
        return True

    async def execute_command(self, command: Command) -> None:
        entry = get_action(command.name)
        params = command.params if entry.raw else self.context.substitute(command.params)
        try:
            await entry.handler(self, params)
        except (SkipCommand, SoftAssertionFailure):
            raise
        except Exception as e:
            if entry.soft and getattr(params, "soft", False):
                raise SoftAssertionFailure(str(e)) from e
            raise

    def build_selector(self, params: ElementParams) -> BaseSelector:
        return params.to_selector(lambda path: str(self.context.resolve_path(path)))

    # Conditions and scripts

    def js_engine(self) -> JsEngine:
        engine = JsEngine()
        engine.set_vars(self.context.env)
        engine.set_vars(self.context.vars)
        return engine

    async def evaluate_condition(self, value: Any) -> bool:
        """
        Truth of a `when` / `while` value.

        Booleans and numbers are taken as-is, strings are JavaScript expressions
        over the flow variables, and mappings are condition records.
        """
        if value is None:
            return True
        if isinstance(value, bool):
            return value
        if isinstance(value, (int, float)):
            return value != 0
        if isinstance(value, str):
            expression = self.context.substitute_vars(value)
            try:
                return self.js_engine().eval_bool(expression)
            except ScriptError as e:
                logger.warning(f"Condition '{expression}' could not be evaluated: {e}")
                return False
        if isinstance(value, Condition):
            return await self.check_condition(value)
        if isinstance(value, dict):
            raw = value.get("condition", value)
            return await self.check_condition(Condition.model_validate(raw))
        return True

    async def check_condition(self, condition: Condition) -> bool:
        substitute = self.context.substitute_vars
        try:
            if condition.visible:
                return await self.driver.is_visible(
                    TextSelector(pattern=substitute(condition.visible))
                )
            if condition.visible_regex:
                return await self.driver.is_visible(
                    TextRegexSelector(pattern=substitute(condition.visible_regex))
                )
            if condition.not_visible:
                return not await self.driver.is_visible(
                    TextSelector(pattern=substitute(condition.not_visible))
                )
            if condition.not_visible_regex:
                return not await self.driver.is_visible(
                    TextRegexSelector(pattern=substitute(condition.not_visible_regex))
                )
        except Exception as e:
            logger.warning(f"Condition check failed: {e}")
            return False
        if condition.script:
            return await self.evaluate_condition(condition.script)
        return True

    # Artifacts

    def _records_video(self) -> bool:
        return self.options.record and self.depth == 0

    async def _start_video(self, flow_name: str) -> str | None:
        safe = re.sub(r"[^A-Za-z0-9]", "_", flow_name)
        filename = f"video_{safe}_{uuid.uuid4().hex[:8]}.mp4"
        try:
            await self.driver.start_recording(str(self.context.output_path(filename)))
        except Exception as e:
            logger.error(f"Failed to start recording: {e}")
            return None
        return filename

    async def _stop_video(self) -> None:
        try:
            await self.driver.stop_recording()
        except Exception as e:
            logger.error(f"Failed to stop recording: {e}")

    async def _capture_failure(self, flow_name: str, index: int) -> str | None:
        """Save hierarchy, screenshot and device log next to the report; returns the screenshot name."""
        self.emitter.log("Capturing failure context...", self.depth)
        safe = flow_name.replace("/", "_").replace("\\", "_")
        timestamp = datetime.now().strftime("%H%M%S")
        stem = f"fail_{safe}_{timestamp}_cmd{index}_{uuid.uuid4().hex[:8]}"

        try:
            hierarchy = await self.driver.dump_ui_hierarchy()
            self.context.output_path(f"{stem}.xml").write_text(hierarchy, encoding="utf-8")
        except Exception as e:
            logger.error(f"Failed to dump UI hierarchy: {e}")

        screenshot: str | None = f"{stem}.png"
        try:
            await self.driver.take_screenshot(str(self.context.output_path(screenshot)))
        except Exception as e:
            logger.error(f"Failed to take failure screenshot: {e}")
            screenshot = None

        try:
            logs = await self.driver.dump_logs(FAILURE_LOG_LINES)
            self.context.output_path(f"{stem}.log").write_text(logs, encoding="utf-8")
        except Exception as e:
            logger.error(f"Failed to dump device logs: {e}")

        return screenshot

    async def _capture_auto_gif_frame(self) -> None:
        if not self.auto_gif.due():
            return
        try:
            frame = await self.driver.screenshot_bytes()
        except Exception as e:
            logger.warning(f"Failed to capture GIF frame: {e}")
            return
        self.auto_gif.add(frame)
