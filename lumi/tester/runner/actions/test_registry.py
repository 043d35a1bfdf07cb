import pytest

import lumi.tester.runner.executor  # noqa: F401
from lumi.tester.errors import LumiError
from lumi.tester.parser.commands import COMMAND_SPECS
from lumi.tester.runner.actions.registry import ActionEntry, action, get_action, registered_names

ASSERTIONS = [
    "assertVisible",
    "assertNotVisible",
    "waitUntilVisible",
    "waitUntilNotVisible",
    "assertTrue",
    "assertVar",
    "assertColor",
    "assertScreenshot",
    "assertClipboard",
    "assertPerformance",
]


class TestRegistry:
    def test_every_command_has_a_handler(self):
        assert {spec.name for spec in COMMAND_SPECS} == registered_names()

    def test_entry_is_immutable(self):
        entry = get_action("back")
        assert isinstance(entry, ActionEntry)
        with pytest.raises(AttributeError):
            entry.soft = True

    @pytest.mark.parametrize("name", ASSERTIONS)
    def test_assertions_accept_soft(self, name):
        assert get_action(name).soft

    @pytest.mark.parametrize("name", ASSERTIONS)
    def test_assertion_params_declare_soft(self, name):
        spec = next(s for s in COMMAND_SPECS if s.name == name)
        assert spec.params is not None
        assert "soft" in spec.params.model_fields

    def test_duplicate_name_rejected(self):
        with pytest.raises(LumiError, match="Duplicate handler"):

            @action("back")
            async def another_back(executor, params):
                pass

    def test_unknown_command(self):
        with pytest.raises(LumiError, match="No handler registered"):
            get_action("teleport")
