import io

import pytest
from PIL import Image

from lumi.tester.errors import FlowConfigError, LumiError
from lumi.tester.runner.context import TestContext
from lumi.tester.runner.events import EventEmitter, FlowStarted, LogMessage
from lumi.tester.runner.gif import AutoGifCapture, crop_png, encode_gif, parse_crop
from lumi.tester.runner.js_engine import find_assignment
from lumi.tester.runner.state import CommandState, CommandStatus, FlowState, FlowStatus


def _png(size=(40, 20), color=(255, 0, 0)) -> bytes:
    buffer = io.BytesIO()
    Image.new("RGB", size, color).save(buffer, format="PNG")
    return buffer.getvalue()


@pytest.fixture
def context(tmp_path):
    return TestContext(tmp_path, output_dir=tmp_path / "out", device_id="emulator:5554")


class TestContextSubstitution:
    def test_plain_text_untouched(self, context):
        assert context.substitute_vars("no tokens here") == "no tokens here"

    def test_unresolved_left_literal(self, context):
        assert context.substitute_vars("${nope}") == "${nope}"

    def test_vars_shadow_env(self, context, monkeypatch):
        monkeypatch.setenv("LUMI_TEST_USER", "from-os")
        assert context.substitute_vars("${LUMI_TEST_USER}") == "from-os"
        context.env["LUMI_TEST_USER"] = "from-env"
        assert context.substitute_vars("${LUMI_TEST_USER}") == "from-env"
        context.set_var("LUMI_TEST_USER", "from-var")
        assert context.substitute_vars("${LUMI_TEST_USER}") == "from-var"

    def test_json_path_into_variable(self, context):
        context.vars["response"] = '{"user": {"id": 7, "tags": ["a", "b"]}}'
        assert context.substitute_vars("${response.user.id}") == "7"
        assert context.substitute_vars("${response.user.tags.1}") == "b"
        assert context.substitute_vars("${response.user.missing}") == "${response.user.missing}"

    def test_builtins(self, context):
        context.app_id = "com.example"
        assert context.substitute_vars("${appId}") == "com.example"
        assert context.substitute_vars("${deviceId}") == "emulator:5554"

    def test_output_dir_per_device(self, context, tmp_path):
        assert context.output_dir == tmp_path / "out" / "emulator_5554"
        assert context.output_dir.is_dir()

    def test_resolve_path_relative_to_base(self, context, tmp_path):
        assert context.resolve_path("data/a.csv") == tmp_path / "data" / "a.csv"
        absolute = tmp_path / "elsewhere.yaml"
        assert context.resolve_path(str(absolute)) == absolute


class TestCommandState:
    def test_lifecycle(self):
        state = CommandState(index=0, name="back", label="back")
        state.start()
        state.pass_()
        assert state.status == CommandStatus.PASSED
        assert state.duration_ms is not None

    def test_cannot_finish_twice(self):
        state = CommandState(index=0, name="back", label="back")
        state.start()
        state.fail("boom")
        with pytest.raises(LumiError, match="cannot go from failed to passed"):
            state.pass_()

    def test_pending_can_be_skipped(self):
        state = CommandState(index=0, name="back", label="back")
        state.skip("not run")
        assert state.status == CommandStatus.SKIPPED


class TestFlowState:
    def _flow(self, *outcomes) -> FlowState:
        flow = FlowState(
            name="f",
            commands=[CommandState(index=i, name="x", label="x") for i in range(len(outcomes))],
        )
        flow.start()
        for command, outcome in zip(flow.commands, outcomes):
            command.start()
            if outcome:
                command.pass_()
            else:
                command.fail("bad")
        return flow

    def test_all_passed(self):
        flow = self._flow(True, True)
        flow.finish()
        assert flow.status == FlowStatus.PASSED

    def test_failure_without_continue(self):
        flow = self._flow(True, False)
        flow.finish()
        assert flow.status == FlowStatus.FAILED
        assert flow.error == "bad"

    def test_partial_with_continue(self):
        flow = self._flow(True, False)
        flow.finish(continue_on_failure=True)
        assert flow.status == FlowStatus.PARTIALLY_PASSED

    def test_soft_errors_fail_flow(self):
        flow = self._flow(True)
        flow.finish(soft_errors=["a", "b"])
        assert flow.status == FlowStatus.FAILED
        assert flow.error.startswith("2 soft assertion(s) failed")


class TestFindAssignment:
    @pytest.mark.parametrize(
        "expression, target",
        [
            ("x = 1", "x"),
            ("let total = a + b", "total"),
            ("x == 1", None),
            ("x != 1", None),
            ("x <= 1", None),
            ("x >= 1", None),
            ("obj.x = 1", None),
            ("1 + 1", None),
        ],
    )
    def test_targets(self, expression, target):
        assert find_assignment(expression) == target


class TestGif:
    def test_parse_crop(self):
        assert parse_crop("10%,20%,50%,25%") == (0.1, 0.2, 0.5, 0.25)

    def test_parse_crop_rejects_wrong_arity(self):
        with pytest.raises(FlowConfigError):
            parse_crop("10,20")

    def test_crop_png(self):
        cropped = Image.open(io.BytesIO(crop_png(_png((100, 50)), "0,0,50%,50%")))
        assert cropped.size == (50, 25)

    def test_encode_gif(self, tmp_path):
        output = encode_gif(
            [(_png(), 100), (_png(color=(0, 0, 255)), 200)], tmp_path / "a.gif", width=20
        )
        image = Image.open(output)
        assert image.format == "GIF"
        assert image.n_frames == 2
        assert image.size == (20, 10)

    def test_encode_without_frames(self, tmp_path):
        with pytest.raises(LumiError):
            encode_gif([], tmp_path / "a.gif")

    def test_auto_capture_respects_interval_and_cap(self):
        now = [0.0]
        capture = AutoGifCapture(clock=lambda: now[0])
        capture.start(interval_ms=100, max_frames=2, width=None)
        assert not capture.due()
        now[0] = 0.1
        assert capture.due()
        capture.add(b"1")
        assert not capture.due()
        now[0] = 0.3
        capture.add(b"2")
        now[0] = 1.0
        assert not capture.due()
        assert capture.stop() == [b"1", b"2"]
        assert not capture.active


class TestEventEmitter:
    @pytest.mark.asyncio
    async def test_subscribers_see_emission_order(self):
        emitter = EventEmitter()
        queue = emitter.subscribe()
        emitter.emit(FlowStarted(name="f", command_count=1))
        emitter.log("hello")

        first = await queue.get()
        second = await queue.get()
        assert isinstance(first, FlowStarted)
        assert isinstance(second, LogMessage) and second.message == "hello"

    def test_failing_listener_does_not_break_others(self):
        emitter = EventEmitter()
        seen = []

        def broken(event):
            raise RuntimeError("boom")

        emitter.add_listener(broken)
        emitter.add_listener(seen.append)
        emitter.log("x")
        assert len(seen) == 1

    def test_unsubscribe(self):
        emitter = EventEmitter()
        queue = emitter.subscribe()
        emitter.unsubscribe(queue)
        emitter.log("x")
        assert queue.empty()
