"""
Flow file loading.

A flow file holds an optional header mapping and a command list, either as two
YAML documents separated by `---`, as a bare list, or as one mapping with a
`commands` (or `steps`) key next to the header keys.
"""

import csv
from pathlib import Path
from typing import Any

import yaml
from pydantic import ValidationError

from lumi.tester.errors import FlowConfigError
from lumi.tester.parser.commands import Command, parse_commands
from lumi.tester.parser.models import FlowHeader, TestFlow
from lumi.tester.utils.logger import get_logger

logger = get_logger(__name__)

ENV_KEYS = ("env", "vars", "var")


def load_env_file(path: Path) -> dict[str, str]:
    """Read `KEY=VALUE` lines, skipping blanks and `#` comments."""
    try:
        content = path.read_text(encoding="utf-8")
    except OSError as e:
        raise FlowConfigError(f"Failed to read env file {path}: {e}") from e

    env = {}
    for line in content.splitlines():
        line = line.strip()
        if not line or line.startswith("#") or "=" not in line:
            continue
        key, value = line.split("=", 1)
        env[key.strip()] = value.strip().strip("\"'")
    return env


def load_data_rows(path: Path) -> list[dict[str, str]]:
    """CSV data file as one mapping per row, keyed by the header row."""
    try:
        with path.open(newline="", encoding="utf-8") as f:
            return [
                {key.strip(): (value or "").strip() for key, value in row.items() if key}
                for row in csv.DictReader(f)
            ]
    except OSError as e:
        raise FlowConfigError(f"Failed to read data file {path}: {e}") from e


def _scalar_to_str(value: Any) -> str:
    if isinstance(value, bool):
        return "true" if value else "false"
    if value is None:
        return ""
    return str(value)


def _resolve_env(raw: Any, base_dir: Path | None) -> dict[str, str]:
    if raw is None:
        return {}
    if not isinstance(raw, dict):
        raise FlowConfigError(f"env must be a mapping, got {type(raw).__name__}")
    if set(raw) == {"file"}:
        env_path = Path(str(raw["file"]))
        if not env_path.is_absolute() and base_dir is not None:
            env_path = base_dir / env_path
        return load_env_file(env_path)
    return {str(k): _scalar_to_str(v) for k, v in raw.items()}


def _load_documents(content: str) -> list[Any]:
    try:
        return [doc for doc in yaml.safe_load_all(content)]
    except yaml.YAMLError as e:
        raise FlowConfigError(f"Invalid YAML: {e}") from e


def _split_header(documents: list[Any]) -> tuple[dict, Any]:
    if len(documents) >= 2:
        header, body = documents[0] or {}, documents[1]
        if not isinstance(header, dict):
            raise FlowConfigError("Flow header must be a mapping")
        return header, body

    body = documents[0] if documents else None
    if isinstance(body, dict):
        header = dict(body)
        commands = header.pop("commands", None)
        if commands is None:
            commands = header.pop("steps", None)
        if commands is None:
            raise FlowConfigError("Flow mapping has no 'commands' or 'steps' list")
        return header, commands
    return {}, body


def parse_header(raw: dict, base_dir: Path | None = None) -> FlowHeader:
    raw = dict(raw)
    for key in ENV_KEYS:
        if key in raw:
            raw["env"] = _resolve_env(raw.pop(key), base_dir)
            break
    try:
        return FlowHeader.model_validate(raw)
    except ValidationError as e:
        raise FlowConfigError(f"Invalid flow header: {e}") from e


def parse_flow_content(content: str, name: str = "flow", path: Path | None = None) -> TestFlow:
    base_dir = path.parent if path else None
    header_raw, body = _split_header(_load_documents(content))
    header = parse_header(header_raw, base_dir)
    commands = parse_commands(body)
    return TestFlow(name=name, path=path, header=header, commands=commands)


def parse_flow_file(path: str | Path) -> TestFlow:
    flow_path = Path(path)
    try:
        content = flow_path.read_text(encoding="utf-8")
    except OSError as e:
        raise FlowConfigError(f"Failed to read flow file {flow_path}: {e}") from e
    logger.debug(f"Parsing flow {flow_path}")
    return parse_flow_content(content, name=flow_path.stem, path=flow_path.resolve())


def dump_commands(commands: list[Command]) -> str:
    return yaml.safe_dump(
        [command.to_yaml() for command in commands], sort_keys=False, allow_unicode=True
    )


def dump_flow(flow: TestFlow) -> str:
    header = flow.header.model_dump(
        mode="json", by_alias=True, exclude_defaults=True, exclude_none=True
    )
    body = dump_commands(flow.commands)
    if not header:
        return body
    return yaml.safe_dump(header, sort_keys=False, allow_unicode=True) + "---\n" + body
