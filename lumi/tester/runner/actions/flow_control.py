"""Nested blocks: runFlow, repeat, retry and conditional."""

from typing import TYPE_CHECKING

from lumi.tester.errors import FlowFailedError, LumiError, SkipCommand
from lumi.tester.parser.commands import (
    ConditionalParams,
    RepeatParams,
    RetryParams,
    RunFlowParams,
)
from lumi.tester.parser.yaml_loader import parse_flow_file
from lumi.tester.runner.actions.registry import action
from lumi.tester.runner.events import CommandRetrying
from lumi.tester.utils.logger import get_logger

if TYPE_CHECKING:
    from lumi.tester.runner.executor import TestExecutor

logger = get_logger(__name__)

MAX_REPEAT_ITERATIONS = 1000


@action("runFlow", raw=True)
async def run_flow(executor: "TestExecutor", params: RunFlowParams) -> None:
    context = executor.context
    if params.when is not None and not await executor.evaluate_condition(params.when):
        label = params.label or params.path or "subflow"
        executor.emitter.log(f"Skipped flow '{label}': condition false", executor.depth)
        raise SkipCommand("condition false")

    if params.commands is not None:
        commands = params.commands
    elif params.path:
        path = context.resolve_path(context.substitute_vars(params.path))
        commands = parse_flow_file(path).commands
    else:
        logger.warning("runFlow has neither 'path' nor 'commands', nothing to run")
        return

    if params.vars:
        context.merge_vars(params.vars)

    name = params.label or params.path or "subflow"
    try:
        await executor.run_nested(commands, name, params.path or "")
    except FlowFailedError as e:
        if params.optional:
            executor.emitter.log(f"Optional flow failed (ignored): {e}", executor.depth)
            return
        raise FlowFailedError(f"Flow failed: {e}") from e


@action("repeat", raw=True)
async def repeat(executor: "TestExecutor", params: RepeatParams) -> None:
    """Run the block `times` times and/or while the condition holds."""
    if params.times is None and params.while_ is None:
        logger.warning("repeat has neither 'times' nor 'while', nothing to run")
        return

    iteration = 0
    while True:
        iteration += 1
        if params.times is not None and iteration > params.times:
            break
        if params.while_ is not None and not await executor.evaluate_condition(params.while_):
            break
        if iteration > MAX_REPEAT_ITERATIONS:
            raise LumiError(f"Repeat limit reached ({MAX_REPEAT_ITERATIONS} iterations)")
        await executor.run_nested(params.commands, f"Repeat #{iteration}", "repeat")


@action("retry", raw=True)
async def retry(executor: "TestExecutor", params: RetryParams) -> None:
    flow, state = executor.current_flow, executor.current_command
    attempts = max(params.max_retries, 1)
    last_error: Exception | None = None

    for attempt in range(1, attempts + 1):
        try:
            await executor.run_nested(params.commands, f"Retry attempt #{attempt}", "retry")
            return
        except FlowFailedError as e:
            last_error = e
        if attempt < attempts:
            executor.emitter.log(f"Attempt {attempt} failed, retrying...", executor.depth)
            if flow is not None and state is not None:
                state.retry_count = attempt
                executor.emitter.emit(
                    CommandRetrying(
                        flow=flow.name,
                        index=state.index,
                        attempt=attempt,
                        max_attempts=attempts,
                        depth=executor.depth,
                    )
                )

    raise FlowFailedError(
        f"Retry failed after {attempts} attempts. Last error: {last_error or 'Unknown error'}"
    )


@action("conditional", raw=True)
async def conditional(executor: "TestExecutor", params: ConditionalParams) -> None:
    met = await executor.check_condition(params.condition)
    commands = params.then if met else params.else_
    if not commands:
        return
    executor.emitter.log(
        f"Condition met: {str(met).lower()}, running {len(commands)} nested commands",
        executor.depth,
    )
    await executor.run_nested(commands, "then" if met else "else", "conditional")
