import textwrap

import pytest

from lumi.tester.errors import FlowConfigError
from lumi.tester.parser.commands import (
    ConditionalParams,
    ElementParams,
    InputTextParams,
    RepeatParams,
    RunFlowParams,
    SwipeParams,
    WaitParams,
    parse_command,
)
from lumi.tester.parser.yaml_loader import (
    dump_commands,
    dump_flow,
    load_env_file,
    parse_flow_content,
    parse_flow_file,
)
from lumi.tester.selectors.models import (
    AnyClickableSelector,
    HasChildSelector,
    IdRegexSelector,
    PointSelector,
    RelativeDirection,
    RelativeSelector,
    TextRegexSelector,
    TextSelector,
)

FLOW = textwrap.dedent(
    """
    appId: com.example.app
    tags: [smoke, login]
    env:
      USER: alice
      RETRIES: 3
      DEBUG: true
    ---
    - launchApp
    - tapOn: "Login"
    - tap:
        rightOf: "Wi-Fi"
        index: 1
    - inputText: ${USER}
    - see:
        text: Welcome
        soft: true
        timeout: 2000
    - swipe:
        direction: UP
        duration: 300
    - repeat:
        times: 2
        commands:
          - back
          - wait: 500
    - conditional:
        condition:
          visible: "Allow"
        then:
          - tapOn: Allow
        else:
          - back
    - runFlow:
        path: sub/login.yaml
        env:
          PASS: 1234
    - gps:
        file: route.gpx
        speed: 36
        loop: true
    - pressKey: enter
    - setVolume: 5
    - hideKbd
    """
)


class TestFlowFile:
    def test_header_and_commands(self):
        flow = parse_flow_content(FLOW, name="login")

        assert flow.name == "login"
        assert flow.app_id == "com.example.app"
        assert flow.platform == "android"
        assert flow.tags == ["smoke", "login"]
        assert flow.header.env == {"USER": "alice", "RETRIES": "3", "DEBUG": "true"}
        assert [c.name for c in flow.commands] == [
            "launchApp",
            "tapOn",
            "tapOn",
            "inputText",
            "assertVisible",
            "swipe",
            "repeat",
            "conditional",
            "runFlow",
            "mockLocation",
            "pressKey",
            "setVolume",
            "hideKeyboard",
        ]

    def test_bare_list(self):
        flow = parse_flow_content("- back\n- home\n")
        assert [c.name for c in flow.commands] == ["back", "pressHome"]
        assert flow.header.app_id is None

    def test_mapping_with_steps(self):
        flow = parse_flow_content("url: https://example.com\nplatform: Web\nsteps:\n  - back\n")
        assert flow.platform == "web"
        assert flow.url == "https://example.com"
        assert len(flow.commands) == 1

    def test_mapping_without_commands_is_rejected(self):
        with pytest.raises(FlowConfigError):
            parse_flow_content("appId: x\n")

    def test_invalid_yaml(self):
        with pytest.raises(FlowConfigError):
            parse_flow_content("- tapOn: [unclosed\n")

    def test_env_file_relative_to_flow(self, tmp_path):
        (tmp_path / "vars.env").write_text("# comment\n\nUSER=bob\nTOKEN = \"abc\"\n")
        flow_path = tmp_path / "flow.yaml"
        flow_path.write_text("env:\n  file: vars.env\n---\n- back\n")

        flow = parse_flow_file(flow_path)

        assert flow.name == "flow"
        assert flow.header.env == {"USER": "bob", "TOKEN": "abc"}
        assert flow.base_dir == tmp_path.resolve()

    def test_load_env_file_skips_comments(self, tmp_path):
        path = tmp_path / ".env"
        path.write_text("A=1\n#B=2\nnot a pair\n")
        assert load_env_file(path) == {"A": "1"}


class TestCommandParsing:
    def test_unknown_command(self):
        with pytest.raises(FlowConfigError, match="Unknown command: tapOnn"):
            parse_command({"tapOnn": "x"})

    def test_bare_name_requires_simple_command(self):
        with pytest.raises(FlowConfigError):
            parse_command("tapOn")

    def test_multi_key_mapping_is_invalid(self):
        with pytest.raises(FlowConfigError):
            parse_command({"back": None, "home": None})

    def test_null_param_falls_back_to_simple(self):
        assert parse_command({"back": None}).params is None
        assert parse_command({"eraseText": {}}).params is None

    def test_string_shorthand_text_or_regex(self):
        assert parse_command({"tapOn": "Login"}).params == ElementParams(text="Login")
        assert parse_command({"tapOn": "Item .*"}).params == ElementParams(regex="Item .*")

    def test_scalar_shorthands(self):
        assert parse_command({"inputText": 42}).params == InputTextParams(text="42")
        assert parse_command({"wait": 250}).params == WaitParams(ms=250)
        assert parse_command({"swipe": "left"}).params.direction.value == "left"
        assert parse_command({"runFlow": "a.yaml"}).params == RunFlowParams(path="a.yaml")

    def test_value_commands_are_coerced(self):
        assert parse_command({"setVolume": "7"}).params == 7
        assert parse_command({"setCpuThrottling": 4}).params == 4.0
        with pytest.raises(FlowConfigError):
            parse_command({"setVolume": "loud"})

    def test_nested_commands_are_parsed(self):
        command = parse_command({"retry": {"maxRetries": 2, "commands": ["back", {"tap": "OK"}]}})
        assert command.params.max_retries == 2
        assert [c.name for c in command.params.commands] == ["back", "tapOn"]

    def test_conditional_then_accepts_single_command(self):
        command = parse_command({"conditional": {"condition": {"notVisible": "X"}, "then": "back"}})
        assert isinstance(command.params, ConditionalParams)
        assert command.params.then[0].name == "back"
        assert command.params.else_ is None

    def test_invalid_nested_command_is_reported(self):
        with pytest.raises(FlowConfigError):
            parse_command({"repeat": {"times": 2, "commands": ["nope"]}})

    def test_element_type_aliases(self):
        assert parse_command({"tapAt": {"elementType": "button", "index": 2}}).params.element_type == "button"
        assert parse_command({"tapOn": {"type": "switch"}}).params.element_type == "switch"

    def test_describe(self):
        assert parse_command({"tapOn": "Login"}).describe() == 'tapOn(text: "Login")'
        assert parse_command({"wait": 100}).describe() == "wait(100ms)"
        assert parse_command({"openLink": "app://x"}).describe() == 'openLink("app://x")'
        assert parse_command("back").describe() == "back"


class TestSelectorBuilding:
    def test_flat_relative_defaults_to_any_clickable(self):
        selector = ElementParams(right_of="Wi-Fi", index=1).to_selector()
        assert selector == RelativeSelector(
            target=AnyClickableSelector(index=1),
            anchor=TextSelector(pattern="Wi-Fi"),
            direction=RelativeDirection.RIGHT_OF,
        )

    def test_relative_record_with_max_distance(self):
        params = ElementParams.model_validate(
            {"text": "Edit", "relative": {"below": {"id": "header"}, "maxDistance": 300}}
        )
        selector = params.to_selector()
        assert isinstance(selector, RelativeSelector)
        assert selector.direction == RelativeDirection.BELOW
        assert selector.max_dist == 300
        assert selector.target == TextSelector(pattern="Edit")

    def test_contains_child_wraps_parent(self):
        params = ElementParams.model_validate({"id": "row", "containsChild": {"text": "Price"}})
        selector = params.to_selector()
        assert isinstance(selector, HasChildSelector)
        assert selector.child == TextSelector(pattern="Price")

    def test_id_regex_and_point(self):
        assert isinstance(ElementParams(id="item_.*").to_selector(), IdRegexSelector)
        assert ElementParams(point="50%,80%").to_selector() == PointSelector(
            x=50, y=80, x_percent=True, y_percent=True
        )

    def test_regex_wins_over_text(self):
        assert ElementParams(text="a", regex="b+").to_selector() == TextRegexSelector(pattern="b+")

    def test_image_path_is_resolved(self):
        selector = ElementParams(image="logo.png", image_region="top").to_selector(lambda p: f"/flows/{p}")
        assert selector.path == "/flows/logo.png"
        assert selector.region == "top"

    def test_empty_params_are_a_config_error(self):
        with pytest.raises(FlowConfigError):
            ElementParams().to_selector()


class TestRoundTrip:
    def test_reemitted_commands_parse_to_the_same_list(self):
        flow = parse_flow_content(FLOW)
        reparsed = parse_flow_content(dump_commands(flow.commands))
        assert reparsed.commands == flow.commands

    def test_reemitted_flow_keeps_header(self):
        flow = parse_flow_content(FLOW, name="login")
        reparsed = parse_flow_content(dump_flow(flow), name="login")
        assert reparsed.header == flow.header
        assert reparsed.commands == flow.commands

    def test_to_yaml_forms(self):
        assert parse_command("back").to_yaml() == "back"
        assert parse_command({"tapOn": "Login"}).to_yaml() == {"tapOn": {"text": "Login"}}
        assert parse_command({"swipe": {"direction": "up", "from": "List"}}).to_yaml() == {
            "swipe": {"direction": "up", "from": {"text": "List"}}
        }
        repeat = parse_command({"repeat": {"times": 2, "commands": ["back"]}})
        assert isinstance(repeat.params, RepeatParams)
        assert repeat.to_yaml() == {"repeat": {"times": 2, "commands": ["back"]}}

    def test_swipe_direction_is_case_insensitive(self):
        assert parse_command({"swipe": {"direction": "Down"}}).params == SwipeParams(direction="down")
