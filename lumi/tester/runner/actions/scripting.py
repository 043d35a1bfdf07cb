"""Variables, embedded JavaScript, shell scripts, HTTP calls and database lookups."""

import asyncio
import contextlib
import json
import random
import sqlite3
import uuid
from typing import TYPE_CHECKING, Any

import httpx
from faker import Faker

from lumi.tester.errors import AssertionFailure, ScriptError
from lumi.tester.parser.commands import (
    AssertVarParams,
    DbQueryParams,
    GenerateParams,
    HttpRequestParams,
    RunScriptParams,
    SetVarParams,
)
from lumi.tester.runner.actions.registry import action
from lumi.tester.utils.logger import get_logger

if TYPE_CHECKING:
    from lumi.tester.runner.executor import TestExecutor

logger = get_logger(__name__)

DEFAULT_HTTP_TIMEOUT_MS = 30_000
SCRIPT_OUTPUT_VAR = "output"

fake = Faker()


@action("setVar")
async def set_var(executor: "TestExecutor", params: SetVarParams) -> None:
    executor.context.set_var(params.name, params.value)


@action("assertVar", soft=True)
async def assert_var(executor: "TestExecutor", params: AssertVarParams) -> None:
    actual = executor.context.get_var(params.name) or ""
    if actual != params.expected:
        raise AssertionFailure(
            f"Variable {params.name} expected '{params.expected}', got '{actual}'"
        )


@action("evalScript")
async def eval_script(executor: "TestExecutor", expression: str) -> None:
    engine = executor.js_engine()
    try:
        assignment = engine.eval_assignment(expression)
    except ScriptError as e:
        raise ScriptError(f"evalScript error: {e}") from e
    if assignment is not None:
        name, value = assignment
        executor.context.vars[name] = value
        executor.emitter.log(f"evalScript: {name} = {value}", executor.depth)
    else:
        executor.emitter.log(f"evalScript: {expression}", executor.depth)


async def _run_js_file(executor: "TestExecutor", params: RunScriptParams, path) -> None:
    engine = executor.js_engine()
    try:
        output = engine.execute_script_with_output(path.read_text(encoding="utf-8"))
    except ScriptError as e:
        if params.fail_on_error:
            raise ScriptError(f"JS Script execution failed: {e}") from e
        logger.warning(f"JS Script execution failed: {e}")
        return
    executor.context.vars[SCRIPT_OUTPUT_VAR] = output
    executor.emitter.log(f"Executed JS script: {path.name}", executor.depth)


async def _run_shell(executor: "TestExecutor", params: RunScriptParams) -> None:
    command = params.command
    if params.args:
        command = " ".join([command, *params.args])
    process = await asyncio.create_subprocess_exec(
        "sh",
        "-c",
        command,
        cwd=executor.context.base_dir,
        stdout=asyncio.subprocess.PIPE,
        stderr=asyncio.subprocess.PIPE,
    )
    timeout = params.timeout_ms / 1000 if params.timeout_ms else None
    try:
        stdout, stderr = await asyncio.wait_for(process.communicate(), timeout=timeout)
    except asyncio.TimeoutError as e:
        process.kill()
        await process.wait()
        raise ScriptError(f"Script timed out after {params.timeout_ms}ms: {command}") from e

    if process.returncode != 0:
        message = stderr.decode(errors="replace").strip()
        if params.fail_on_error:
            raise ScriptError(f"Script failed: {message}")
        logger.warning(f"Script exited with {process.returncode}: {message}")
    if params.save_output:
        executor.context.vars[params.save_output] = stdout.decode(errors="replace").strip()


@action("runScript")
async def run_script(executor: "TestExecutor", params: RunScriptParams) -> None:
    """A `.js` path runs in the embedded engine; anything else is a shell command."""
    command = params.command.strip()
    if command.endswith(".js"):
        path = executor.context.resolve_path(command)
        if path.exists():
            await _run_js_file(executor, params, path)
            return
    await _run_shell(executor, params)


def generate_value(data_type: str, format: str | None = None) -> str:
    match data_type.lower():
        case "uuid":
            return str(uuid.uuid4())
        case "email" | "safeemail":
            return fake.safe_email()
        case "name" | "fullname":
            return fake.name()
        case "firstname":
            return fake.first_name()
        case "phone" | "phonenumber":
            return fake.phone_number()
        case "city" | "address":
            return fake.city()
        case "number":
            low, high = 0, 100
            if format and format.count("-") == 1:
                start, end = format.split("-")
                try:
                    low, high = int(start), int(end)
                except ValueError:
                    logger.warning(f"Invalid number range '{format}', using 0-100")
            return str(random.randint(low, high))
    return "unknown"


@action("generate")
async def generate(executor: "TestExecutor", params: GenerateParams) -> None:
    value = generate_value(params.data_type, params.format)
    executor.context.vars[params.name] = value


def extract_json_path(document: Any, path: str) -> Any:
    """
    Value at `path` inside a decoded JSON document, or None.

    `$` and `.` select the whole document, `/a/0/b` is a JSON pointer and
    `a.0.b` a dot path. A key that contains dots is tried as-is last.
    """
    if path in ("$", "."):
        return document
    parts = path.strip("/").split("/") if path.startswith("/") else path.split(".")
    value = document
    for part in parts:
        if isinstance(value, dict) and part in value:
            value = value[part]
        elif isinstance(value, list) and part.isdigit() and int(part) < len(value):
            value = value[int(part)]
        else:
            value = None
            break
    if value is None and isinstance(document, dict):
        return document.get(path)
    return value


def _as_variable(value: Any) -> str:
    return value if isinstance(value, str) else json.dumps(value)


@action("httpRequest")
async def http_request(executor: "TestExecutor", params: HttpRequestParams) -> None:
    body = params.body
    if body is not None and not isinstance(body, str):
        body = json.dumps(body)
    timeout = (params.timeout_ms or DEFAULT_HTTP_TIMEOUT_MS) / 1000

    async with httpx.AsyncClient(timeout=timeout) as client:
        response = await client.request(
            params.method.upper(), params.url, headers=params.headers, content=body
        )
    if response.is_error:
        logger.warning(f"HTTP Request failed: {response.status_code}")

    if not params.save_response:
        return
    try:
        document = response.json()
    except ValueError as e:
        raise ScriptError(f"Response from {params.url} is not JSON: {e}") from e
    for var_name, json_path in params.save_response.items():
        value = extract_json_path(document, json_path)
        if value is None:
            logger.warning(f"JSON path '{json_path}' not found in response")
            continue
        executor.context.vars[var_name] = _as_variable(value)


def _sqlite_path(connection: str) -> str:
    for prefix in ("sqlite:///", "sqlite://", "sqlite:"):
        if connection.startswith(prefix):
            return connection[len(prefix) :]
    return connection


def _query(database: str, query: str, args: list[Any]) -> list[dict[str, Any]]:
    with contextlib.closing(sqlite3.connect(database)) as connection:
        connection.row_factory = sqlite3.Row
        return [dict(row) for row in connection.execute(query, args).fetchall()]


@action("dbQuery")
async def db_query(executor: "TestExecutor", params: DbQueryParams) -> None:
    database = _sqlite_path(params.connection)
    if database != ":memory:":
        database = str(executor.context.resolve_path(database))
    try:
        rows = await asyncio.to_thread(_query, database, params.query, params.params or [])
    except sqlite3.Error as e:
        raise ScriptError(f"Failed to execute query: {e}") from e
    executor.emitter.log(f"Fetched {len(rows)} rows", executor.depth)

    if not params.save:
        return
    if not rows:
        executor.emitter.log("No rows returned, cannot save variables", executor.depth)
        return
    first = rows[0]
    for column, var_name in params.save.items():
        value = first.get(column)
        executor.context.vars[var_name] = "null" if value is None else str(value)
