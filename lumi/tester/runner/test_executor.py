import contextlib
import io
import sqlite3
import textwrap
import uuid

import pytest
from PIL import Image

from lumi.tester.drivers.fake import FakeDriver, element
from lumi.tester.errors import FlowConfigError, FlowFailedError
from lumi.tester.parser.yaml_loader import parse_flow_content
from lumi.tester.runner.events import (
    CommandFailed,
    CommandPassed,
    CommandRetrying,
    CommandSkipped,
    FlowFinished,
    FlowStarted,
    SessionFinished,
)
from lumi.tester.runner.executor import ExecutorOptions, TestExecutor, select_commands
from lumi.tester.runner.state import CommandStatus, FlowStatus


def _commands(source: str):
    return parse_flow_content(textwrap.dedent(source)).commands


def _write(path, source: str):
    path.write_text(textwrap.dedent(source), encoding="utf-8")
    return path


@pytest.fixture
def driver():
    return FakeDriver(
        [
            element("Welcome", (0, 0, 1080, 100)),
            element("Login", (100, 200, 300, 260)),
            element("OK", (100, 400, 300, 460)),
        ]
    )


@pytest.fixture
def events():
    return []


@pytest.fixture
def make_executor(driver, events, tmp_path):
    def make(**options) -> TestExecutor:
        executor = TestExecutor(
            driver,
            options=ExecutorOptions.with_overrides(output_dir=tmp_path / "out", **options),
            base_dir=tmp_path,
            sleep=driver.clock.sleep,
        )
        executor.emitter.add_listener(events.append)
        return executor

    return make


def _of(events, kind):
    return [e for e in events if isinstance(e, kind)]


def _png(color) -> bytes:
    buffer = io.BytesIO()
    Image.new("RGB", (40, 20), color).save(buffer, format="PNG")
    return buffer.getvalue()


FAILING_ASSERTIONS = {
    "assertVisible": "text: Missing",
    "assertNotVisible": "text: Login",
    "waitUntilVisible": "text: Missing, timeout: 100",
    "waitUntilNotVisible": "text: Login, timeout: 100",
    "assertTrue": "condition: '1 > 2'",
    "assertVar": "name: x, expected: '2'",
    "assertColor": "point: '50%,50%', color: '#0000FF'",
    "assertScreenshot": "name: home",
    "assertClipboard": "expected: pasted",
    "assertPerformance": "metric: memory, limit: 200MB",
}


@pytest.fixture
def failing_screen(driver, tmp_path):
    driver.screenshot = _png((255, 0, 0))
    driver.clipboard = "copied"
    driver.performance_metrics = {"memory": 512.0}
    (tmp_path / "screenshots").mkdir()
    (tmp_path / "screenshots" / "home.png").write_bytes(_png((0, 0, 255)))
    return driver


def _assertion_flow(name: str, soft: bool):
    params = FAILING_ASSERTIONS[name]
    if soft:
        params += ", soft: true"
    return _commands(
        f"""
        - setVar: {{name: x, value: '1'}}
        - {name}: {{{params}}}
        - tapOn: OK
        """
    )


class TestRunCommands:
    @pytest.mark.asyncio
    async def test_text_tap_passes(self, make_executor, driver, events):
        flow = await make_executor().run_commands(_commands('- tapOn: "Login"'), "login")

        assert driver.taps == [(200, 230)]
        assert flow.status == FlowStatus.PASSED
        assert len(_of(events, CommandPassed)) == 1

    @pytest.mark.asyncio
    async def test_soft_assertion_fails_flow_but_continues(self, make_executor, driver, events):
        commands = _commands(
            """
            - assertVisible:
                text: Z
                soft: true
            - tapOn: OK
            """
        )

        flow = await make_executor().run_commands(commands, "soft")

        failed = _of(events, CommandFailed)
        assert len(failed) == 1 and failed[0].soft
        assert len(_of(events, CommandPassed)) == 1
        assert driver.taps == [(200, 430)]
        finished = _of(events, FlowFinished)[-1]
        assert finished.status == "failed"
        assert flow.error.startswith("1 soft assertion(s) failed")

    @pytest.mark.asyncio
    async def test_hard_failure_skips_remaining(self, make_executor, driver, events):
        commands = _commands(
            """
            - tapOn:
                text: Missing
                timeout: 0
            - back
            """
        )

        flow = await make_executor().run_commands(commands, "hard")

        assert flow.status == FlowStatus.FAILED
        assert flow.error.startswith("Element not found")
        assert flow.commands[1].status == CommandStatus.SKIPPED
        assert flow.commands[1].skip_reason == "Previous command failed"
        assert _of(events, CommandSkipped)[0].index == 1
        assert ("back",) not in driver.actions

    @pytest.mark.asyncio
    async def test_continue_on_failure_is_partial(self, make_executor, driver):
        commands = _commands(
            """
            - tapOn:
                text: Missing
                timeout: 0
            - back
            """
        )

        flow = await make_executor(continue_on_failure=True).run_commands(commands, "partial")

        assert flow.status == FlowStatus.PARTIALLY_PASSED
        assert ("back",) in driver.actions

    @pytest.mark.asyncio
    async def test_zero_timeout_wait_is_single_check(self, make_executor, driver):
        commands = _commands(
            """
            - waitUntilVisible:
                text: Missing
                timeout: 0
            """
        )

        flow = await make_executor().run_commands(commands, "zero-timeout")

        assert flow.status == FlowStatus.FAILED
        assert driver.clock.now == 0

    @pytest.mark.asyncio
    async def test_zero_timeout_wait_passes_when_present(self, make_executor, driver):
        commands = _commands(
            """
            - waitUntilVisible:
                text: Login
                timeout: 0
            """
        )

        flow = await make_executor().run_commands(commands, "zero-timeout")

        assert flow.status == FlowStatus.PASSED

    @pytest.mark.asyncio
    async def test_unresolved_variables_stay_literal(self, make_executor, driver):
        commands = _commands(
            """
            - setVar:
                name: user
                value: alice
            - inputText: "${user}/${missing}"
            """
        )

        await make_executor().run_commands(commands, "vars")

        assert ("input", "alice/${missing}") in driver.actions

    @pytest.mark.asyncio
    async def test_failure_capture_writes_artifacts(self, make_executor, tmp_path):
        commands = _commands(
            """
            - tapOn:
                text: Missing
                timeout: 0
            """
        )

        flow = await make_executor(snapshot=True).run_commands(commands, "capture")

        screenshot = flow.commands[0].screenshot_path
        assert screenshot and screenshot.startswith("fail_capture_")
        stem = screenshot.removesuffix(".png")
        out = tmp_path / "out"
        assert (out / f"{stem}.xml").read_text() == "<hierarchy/>"
        assert (out / f"{stem}.log").exists()

    @pytest.mark.asyncio
    async def test_record_wraps_top_level_flow(self, make_executor, driver):
        flow = await make_executor(record=True).run_commands(_commands("- back"), "My Flow")

        assert flow.video_path.startswith("video_My_Flow_")
        assert driver.actions[0][0] == "record"
        assert driver.actions[-1] == ("stop_record",)


class TestSoftAssertions:
    @pytest.mark.asyncio
    @pytest.mark.parametrize("name", sorted(FAILING_ASSERTIONS))
    async def test_soft_failure_continues(self, name, make_executor, failing_screen, events):
        flow = await make_executor().run_commands(_assertion_flow(name, soft=True), name)

        assert failing_screen.taps == [(200, 430)]
        failed = _of(events, CommandFailed)
        assert len(failed) == 1 and failed[0].soft
        assert flow.status == FlowStatus.FAILED
        assert flow.error.startswith("1 soft assertion(s) failed")

    @pytest.mark.asyncio
    @pytest.mark.parametrize("name", sorted(FAILING_ASSERTIONS))
    async def test_hard_failure_stops_flow(self, name, make_executor, failing_screen, events):
        flow = await make_executor().run_commands(_assertion_flow(name, soft=False), name)

        assert failing_screen.taps == []
        assert not _of(events, CommandFailed)[0].soft
        assert flow.status == FlowStatus.FAILED
        assert not flow.error.startswith("1 soft assertion(s) failed")
        assert flow.commands[2].status == CommandStatus.SKIPPED


class TestNestedBlocks:
    @pytest.mark.asyncio
    async def test_retry_succeeds_on_second_attempt(self, make_executor, events):
        commands = _commands(
            """
            - setVar:
                name: attempts
                value: 0
            - retry:
                maxRetries: 3
                commands:
                  - evalScript: attempts = attempts + 1
                  - assertTrue: attempts >= 2
            """
        )
        executor = make_executor()

        flow = await executor.run_commands(commands, "retry")

        assert flow.status == FlowStatus.PASSED
        retrying = _of(events, CommandRetrying)
        assert [e.attempt for e in retrying] == [1]
        attempts = [e.name for e in _of(events, FlowStarted) if e.name.startswith("Retry")]
        assert attempts == ["Retry attempt #1", "Retry attempt #2"]
        assert executor.context.vars["attempts"] == "2"
        assert flow.commands[1].retry_count == 1

    @pytest.mark.asyncio
    async def test_single_retry_runs_once_and_fails(self, make_executor, events):
        commands = _commands(
            """
            - retry:
                maxRetries: 1
                commands:
                  - assertTrue: "false"
            """
        )

        flow = await make_executor().run_commands(commands, "retry")

        assert flow.status == FlowStatus.FAILED
        assert "Retry failed after 1 attempts" in flow.error
        assert _of(events, CommandRetrying) == []
        assert len([e for e in _of(events, FlowStarted) if e.name.startswith("Retry")]) == 1

    @pytest.mark.asyncio
    async def test_run_flow_false_condition_is_skipped(self, make_executor, driver, events):
        commands = _commands(
            """
            - runFlow:
                when: false
                commands:
                  - back
            """
        )

        flow = await make_executor().run_commands(commands, "when")

        assert flow.status == FlowStatus.PASSED
        assert flow.commands[0].skip_reason == "condition false"
        assert _of(events, CommandSkipped)[0].reason == "condition false"
        assert ("back",) not in driver.actions

    @pytest.mark.asyncio
    async def test_run_flow_file_with_vars(self, make_executor, driver, tmp_path):
        _write(tmp_path / "sub.yaml", "- inputText: ${name}\n")
        commands = _commands(
            """
            - runFlow:
                path: sub.yaml
                vars:
                  name: bob
            """
        )

        flow = await make_executor().run_commands(commands, "parent")

        assert flow.status == FlowStatus.PASSED
        assert ("input", "bob") in driver.actions

    @pytest.mark.asyncio
    async def test_optional_run_flow_swallows_failure(self, make_executor, driver):
        commands = _commands(
            """
            - runFlow:
                optional: true
                commands:
                  - assertTrue: "false"
            - back
            """
        )

        flow = await make_executor().run_commands(commands, "optional")

        assert flow.status == FlowStatus.PASSED
        assert ("back",) in driver.actions

    @pytest.mark.asyncio
    async def test_nested_events_are_one_level_deeper(self, make_executor, events):
        commands = _commands(
            """
            - runFlow:
                commands:
                  - back
            """
        )

        await make_executor().run_commands(commands, "depth")

        depths = [e.depth for e in _of(events, FlowStarted)]
        assert depths == [0, 1]

    @pytest.mark.asyncio
    async def test_repeat_times(self, make_executor, driver):
        commands = _commands(
            """
            - repeat:
                times: 3
                commands:
                  - back
            """
        )

        await make_executor().run_commands(commands, "repeat")

        assert driver.actions.count(("back",)) == 3

    @pytest.mark.asyncio
    async def test_repeat_while(self, make_executor, driver):
        commands = _commands(
            """
            - setVar:
                name: n
                value: 0
            - repeat:
                while: n < 2
                commands:
                  - evalScript: n = n + 1
                  - back
            """
        )

        await make_executor().run_commands(commands, "repeat")

        assert driver.actions.count(("back",)) == 2

    @pytest.mark.asyncio
    async def test_conditional_branches(self, make_executor, driver):
        commands = _commands(
            """
            - conditional:
                condition:
                  visible: Login
                then:
                  - back
                else:
                  - home
            - conditional:
                condition:
                  visible: Logout
                then:
                  - back
                else:
                  - home
            """
        )

        await make_executor().run_commands(commands, "branches")

        assert [a for a in driver.actions if a in (("back",), ("home",))] == [
            ("back",),
            ("home",),
        ]


class TestScripting:
    @pytest.mark.asyncio
    async def test_assert_var(self, make_executor):
        commands = _commands(
            """
            - setVar:
                name: greeting
                value: hello
            - assertVar:
                name: greeting
                expected: hello
            """
        )

        flow = await make_executor().run_commands(commands, "vars")

        assert flow.status == FlowStatus.PASSED

    @pytest.mark.asyncio
    async def test_generate_uuid_and_number(self, make_executor):
        commands = _commands(
            """
            - generate:
                name: id
                type: uuid
            - generate:
                name: n
                type: number
                format: 5-5
            """
        )
        executor = make_executor()

        await executor.run_commands(commands, "generate")

        uuid.UUID(executor.context.vars["id"])
        assert executor.context.vars["n"] == "5"


    @pytest.mark.asyncio
    async def test_db_query_saves_first_row_and_closes(self, make_executor, tmp_path, monkeypatch):
        database = tmp_path / "app.db"
        with contextlib.closing(sqlite3.connect(database)) as setup:
            setup.execute("CREATE TABLE users (id INTEGER, email TEXT)")
            setup.execute("INSERT INTO users VALUES (1, 'a@example.com')")
            setup.commit()
        opened = []
        connect = sqlite3.connect

        def tracking_connect(*args, **kwargs):
            connection = connect(*args, check_same_thread=False, **kwargs)
            opened.append(connection)
            return connection

        monkeypatch.setattr(sqlite3, "connect", tracking_connect)
        executor = make_executor()
        commands = _commands(
            """
            - dbQuery:
                connection: sqlite:///app.db
                query: SELECT email FROM users WHERE id = ?
                params: [1]
                save:
                  email: user_email
            """
        )

        flow = await executor.run_commands(commands, "db")

        assert flow.status == FlowStatus.PASSED
        assert executor.context.vars["user_email"] == "a@example.com"
        assert len(opened) == 1
        with pytest.raises(sqlite3.ProgrammingError, match="closed"):
            opened[0].execute("SELECT 1")


class TestRunFile:
    @pytest.mark.asyncio
    async def test_data_rows_run_once_each(self, make_executor, driver, events, tmp_path):
        _write(tmp_path / "users.csv", "user,pass\na,1\nb,2\n")
        path = _write(
            tmp_path / "flow.yaml",
            """
            data: users.csv
            ---
            - inputText: ${user}
            - inputText: ${pass}
            """,
        )

        results = await make_executor().run_file(path)

        assert [r.name for r in results] == ["flow [1]", "flow [2]"]
        assert [e.name for e in _of(events, FlowStarted)] == ["flow [1]", "flow [2]"]
        assert len(_of(events, FlowFinished)) == 2
        inputs = [a[1] for a in driver.actions if a[0] == "input"]
        assert inputs == ["a", "1", "b", "2"]

    @pytest.mark.asyncio
    async def test_tag_filter_skips_flow(self, make_executor, driver, tmp_path):
        path = _write(
            tmp_path / "flow.yaml",
            """
            tags: [smoke]
            ---
            - back
            """,
        )

        results = await make_executor(tags=["regression"]).run_file(path)

        assert results == []
        assert driver.actions == []

    @pytest.mark.asyncio
    async def test_failed_flow_raises(self, make_executor, tmp_path):
        path = _write(tmp_path / "bad.yaml", '- assertTrue: "1 > 2"\n')

        with pytest.raises(FlowFailedError, match="Flow failed: bad"):
            await make_executor().run_file(path)

    @pytest.mark.asyncio
    async def test_command_name_selects_one(self, make_executor, driver, tmp_path):
        path = _write(tmp_path / "flow.yaml", "- back\n- pressHome\n")

        await make_executor().run_file(path, command_name="pressHome")

        assert driver.actions == [("home",)]

    @pytest.mark.asyncio
    async def test_finish_writes_reports(self, make_executor, events, tmp_path):
        path = _write(tmp_path / "flow.yaml", "- back\n")
        executor = make_executor(report=True)

        await executor.run_file(path)
        summary = await executor.finish()

        assert summary.passed_flows == 1
        assert isinstance(events[-1], SessionFinished)
        assert (tmp_path / "out" / "test-results.json").exists()
        assert (tmp_path / "out" / "report.junit.xml").exists()


class TestSelectCommands:
    def test_index_out_of_range(self):
        with pytest.raises(FlowConfigError, match="Command index 5 is out of range"):
            select_commands(_commands("- back"), index=5)

    def test_unknown_name_lists_available(self):
        with pytest.raises(FlowConfigError, match="Available commands: back"):
            select_commands(_commands("- back"), name="tapOn")

    def test_no_filter_keeps_all(self):
        commands = _commands("- back\n- pressHome")
        assert select_commands(commands) == commands
