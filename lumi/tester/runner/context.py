import json
import os
import re
from datetime import datetime
from pathlib import Path
from typing import Any

from pydantic import BaseModel

from lumi.tester.parser.commands import Command
from lumi.tester.parser.models import TestFlow

VARIABLE_RE = re.compile(r"\$\{([a-zA-Z0-9_.]+)\}")
DEFAULT_TIMEOUT_MS = 10_000


def _json_lookup(document: str, path: str) -> str | None:
    try:
        value = json.loads(document)
    except ValueError:
        return None
    for part in path.split("."):
        if isinstance(value, dict) and part in value:
            value = value[part]
        elif isinstance(value, list) and part.isdigit() and int(part) < len(value):
            value = value[int(part)]
        else:
            return None
    return value if isinstance(value, str) else json.dumps(value)


class TestContext:
    """Runtime state shared by every command of a run: paths, app target and variables."""

    __test__ = False

    def __init__(
        self,
        base_dir: Path,
        output_dir: Path | None = None,
        continue_on_failure: bool = False,
        device_id: str | None = None,
        platform: str = "android",
    ):
        self.base_dir = Path(base_dir)
        output = Path(output_dir) if output_dir else self.base_dir / "output"
        if device_id:
            output = output / device_id.replace(":", "_")
        output.mkdir(parents=True, exist_ok=True)
        self.output_dir = output

        self.platform = platform
        self.app_id: str | None = None
        self.url: str | None = None
        self.env: dict[str, str] = {}
        self.vars: dict[str, str] = {}
        self.continue_on_failure = continue_on_failure
        self.device_id = device_id
        self.default_timeout_ms = DEFAULT_TIMEOUT_MS

    def update_from_flow(self, flow: TestFlow) -> None:
        if flow.app_id:
            self.app_id = flow.app_id
        if flow.url:
            self.url = flow.url
        self.env.update(flow.header.env)
        if flow.header.default_timeout is not None:
            self.default_timeout_ms = flow.header.default_timeout

    def resolve_path(self, relative: str) -> Path:
        path = Path(relative).expanduser()
        return path if path.is_absolute() else self.base_dir / path

    def output_path(self, filename: str) -> Path:
        return self.output_dir / filename

    def _builtin(self, name: str) -> str | None:
        match name:
            case "time":
                return datetime.now().strftime("%H:%M:%S")
            case "date":
                return datetime.now().strftime("%Y-%m-%d")
            case "timestamp":
                return str(int(datetime.now().timestamp()))
            case "appId":
                return self.app_id
            case "url":
                return self.url
            case "platform":
                return self.platform
            case "deviceId":
                return self.device_id
        return None

    def get_var(self, name: str) -> str | None:
        if name in self.vars:
            return self.vars[name]
        if name in self.env:
            return self.env[name]
        return os.environ.get(name)

    def set_var(self, name: str, value: str) -> None:
        self.vars[name] = self.substitute_vars(value)

    def merge_vars(self, variables: dict[str, str]) -> None:
        for name, value in variables.items():
            self.set_var(name, value)

    def _lookup(self, key: str) -> str | None:
        value = self.get_var(key)
        if value is not None:
            return value
        value = self._builtin(key)
        if value is not None:
            return value
        if "." in key:
            name, path = key.split(".", 1)
            document = self.get_var(name)
            if document is not None:
                return _json_lookup(document, path)
        return None

    def substitute_vars(self, text: str) -> str:
        """
        Expand `${name}` tokens.

        A name may carry a dotted path into a variable holding JSON
        (`${response.user.id}`). Tokens that resolve to nothing are kept as-is.
        """
        if "${" not in text:
            return text

        def replace(match: re.Match) -> str:
            value = self._lookup(match.group(1))
            return match.group(0) if value is None else value

        return VARIABLE_RE.sub(replace, text)

    def substitute(self, value: Any) -> Any:
        """Expand variables in every string of a parameter value; nested commands are left for later."""
        if isinstance(value, str):
            return self.substitute_vars(value)
        if isinstance(value, Command):
            return value
        if isinstance(value, list):
            return [self.substitute(item) for item in value]
        if isinstance(value, dict):
            return {key: self.substitute(item) for key, item in value.items()}
        if isinstance(value, BaseModel):
            updates = {
                name: self.substitute(getattr(value, name))
                for name in type(value).model_fields
            }
            return value.model_copy(update=updates)
        return value
