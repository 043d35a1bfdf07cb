"""Embedded JavaScript for `runScript *.js`, `evalScript`, `assertTrue` and `when` conditions."""

import json
import re

from py_mini_racer import JSEvalException, MiniRacer

from lumi.tester.errors import ScriptError

IDENTIFIER_RE = re.compile(r"^[A-Za-z_$][A-Za-z0-9_$]*$")
NUMBER_RE = re.compile(r"^-?\d+(\.\d+)?$")

OUTPUT_PRELUDE = "var output = {}; function json(text) { return JSON.parse(text); }"


def _js_literal(value: str) -> str:
    if NUMBER_RE.match(value) or value in ("true", "false"):
        return value
    return json.dumps(value)


def find_assignment(expression: str) -> str | None:
    """Target of a top-level `name = value` expression, ignoring `==`, `!=`, `<=` and `>=`."""
    index = expression.find("=")
    if index <= 0:
        return None
    before, after = expression[:index], expression[index + 1 :]
    if before.endswith(("!", "<", ">", "=")) or after.startswith("="):
        return None
    target = before.strip()
    if target.startswith(("var ", "let ", "const ")):
        target = target.split(None, 1)[1].strip()
    return target if IDENTIFIER_RE.match(target) else None


class JsEngine:
    def __init__(self):
        self.ctx = MiniRacer()

    def _eval(self, code: str):
        try:
            return self.ctx.eval(code)
        except JSEvalException as e:
            raise ScriptError(f"JavaScript error: {e}") from e

    def set_vars(self, variables: dict[str, str]) -> None:
        """Expose variables as globals; numeric and boolean strings become JS numbers and booleans."""
        for name, value in variables.items():
            if IDENTIFIER_RE.match(name):
                self._eval(f"var {name} = {_js_literal(value)};")

    def eval(self, expression: str) -> str:
        return self._eval(f"String(eval({json.dumps(expression)}))")

    def eval_bool(self, expression: str) -> bool:
        return bool(self._eval(f"Boolean(eval({json.dumps(expression)}))"))

    def eval_assignment(self, expression: str) -> tuple[str, str] | None:
        """Evaluate; for an assignment return `(name, value)` so the caller can store it."""
        value = self.eval(expression)
        target = find_assignment(expression)
        return (target, value) if target else None

    def execute_script_with_output(self, script: str) -> str:
        """Run a script with a global `output` object and return it serialized as JSON."""
        self._eval(OUTPUT_PRELUDE)
        self._eval(script)
        result = self._eval("JSON.stringify(output)")
        return result if isinstance(result, str) else "{}"
