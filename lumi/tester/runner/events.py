"""
Run lifecycle events and their fan-out.

Every subscriber gets its own queue, so each one sees events in emission
order. Listeners registered with `add_listener` are called synchronously
at emit time; the console renderer is one of them.
"""

import asyncio
from collections.abc import Callable
from typing import Annotated, Literal

from pydantic import BaseModel, ConfigDict, Field
from rich.console import Console
from rich.markup import escape
from rich.status import Status

from lumi.tester.runner.state import SessionSummary
from lumi.tester.utils.logger import get_logger

logger = get_logger(__name__)


class BaseEvent(BaseModel):
    model_config = ConfigDict(frozen=True)

    depth: int = 0


class SessionStarted(BaseEvent):
    kind: Literal["session_started"] = "session_started"
    session_id: str


class SessionFinished(BaseEvent):
    kind: Literal["session_finished"] = "session_finished"
    summary: SessionSummary


class FlowStarted(BaseEvent):
    kind: Literal["flow_started"] = "flow_started"
    name: str
    path: str = ""
    command_count: int


class FlowFinished(BaseEvent):
    kind: Literal["flow_finished"] = "flow_finished"
    name: str
    status: str
    duration_ms: int = 0
    error: str | None = None


class CommandStarted(BaseEvent):
    kind: Literal["command_started"] = "command_started"
    flow: str
    index: int
    command: str


class CommandPassed(BaseEvent):
    kind: Literal["command_passed"] = "command_passed"
    flow: str
    index: int
    duration_ms: int = 0


class CommandFailed(BaseEvent):
    kind: Literal["command_failed"] = "command_failed"
    flow: str
    index: int
    error: str
    duration_ms: int = 0
    soft: bool = False


class CommandRetrying(BaseEvent):
    kind: Literal["command_retrying"] = "command_retrying"
    flow: str
    index: int
    attempt: int
    max_attempts: int


class CommandSkipped(BaseEvent):
    kind: Literal["command_skipped"] = "command_skipped"
    flow: str
    index: int
    reason: str


class LogMessage(BaseEvent):
    kind: Literal["log"] = "log"
    message: str


TestEvent = Annotated[
    SessionStarted
    | SessionFinished
    | FlowStarted
    | FlowFinished
    | CommandStarted
    | CommandPassed
    | CommandFailed
    | CommandRetrying
    | CommandSkipped
    | LogMessage,
    Field(discriminator="kind"),
]

EventListener = Callable[[BaseEvent], None]


class EventEmitter:
    def __init__(self):
        self._queues: list[asyncio.Queue] = []
        self._listeners: list[EventListener] = []

    def subscribe(self) -> asyncio.Queue:
        queue: asyncio.Queue = asyncio.Queue()
        self._queues.append(queue)
        return queue

    def unsubscribe(self, queue: asyncio.Queue) -> None:
        if queue in self._queues:
            self._queues.remove(queue)

    def add_listener(self, listener: EventListener) -> None:
        self._listeners.append(listener)

    def emit(self, event: BaseEvent) -> None:
        for queue in self._queues:
            queue.put_nowait(event)
        for listener in self._listeners:
            try:
                listener(event)
            except Exception as e:
                logger.error(f"Event listener failed on {event.kind}: {e}")  # type: ignore[attr-defined]

    def log(self, message: str, depth: int = 0) -> None:
        self.emit(LogMessage(message=message, depth=depth))


class ConsoleReporter:
    """Live progress on the terminal, one spinner per nesting depth."""

    def __init__(self, console: Console | None = None):
        self.console = console or Console()
        self._spinners: list[tuple[int, Status]] = []

    @staticmethod
    def _indent(depth: int) -> str:
        return "  " * (depth + 1)

    def _push_spinner(self, depth: int, text: str) -> None:
        if self._spinners:
            self._spinners[-1][1].stop()
        status = self.console.status(f"{self._indent(depth)}{text}")
        status.start()
        self._spinners.append((depth, status))

    def _pop_spinner(self, depth: int) -> None:
        while self._spinners and self._spinners[-1][0] >= depth:
            _, status = self._spinners.pop()
            status.stop()
        if self._spinners:
            self._spinners[-1][1].start()

    def _print(self, line: str) -> None:
        self.console.print(line, highlight=False)

    def __call__(self, event: BaseEvent) -> None:
        indent = self._indent(event.depth)
        match event:
            case SessionStarted():
                self._print(f"[bold]Session {event.session_id}[/bold]")
            case FlowStarted():
                self._print(
                    f"{indent[2:]}[bold cyan]▶ {escape(event.name)}[/bold cyan] "
                    f"({event.command_count} commands)"
                )
            case CommandStarted():
                self._push_spinner(event.depth, f"[{event.index + 1}] {escape(event.command)}")
            case CommandPassed():
                self._pop_spinner(event.depth)
                self._print(
                    f"{indent}[green]✓[/green] [{event.index + 1}] [dim]{event.duration_ms}ms[/dim]"
                )
            case CommandFailed():
                self._pop_spinner(event.depth)
                marker = "[yellow]⚠ soft[/yellow]" if event.soft else "[red]✗[/red]"
                self._print(
                    f"{indent}{marker} [{event.index + 1}] {escape(event.error)} "
                    f"[dim]{event.duration_ms}ms[/dim]"
                )
            case CommandRetrying():
                self._print(f"{indent}[yellow]↻[/yellow] retry {event.attempt}/{event.max_attempts}")
            case CommandSkipped():
                self._pop_spinner(event.depth)
                self._print(
                    f"{indent}[dim]- [{event.index + 1}] skipped: {escape(event.reason)}[/dim]"
                )
            case FlowFinished():
                self._pop_spinner(event.depth)
                color = "green" if event.status == "passed" else "red"
                self._print(
                    f"{indent[2:]}[{color}]■ {escape(event.name)}: {event.status}[/{color}] "
                    f"[dim]{event.duration_ms}ms[/dim]"
                )
                if event.error:
                    self._print(f"{indent}[red]{escape(event.error)}[/red]")
            case LogMessage():
                self._print(f"{indent}{escape(event.message)}")
            case SessionFinished():
                self._pop_spinner(0)
                s = event.summary
                self._print(
                    f"\n[bold]{s.total_flows} flows[/bold]: [green]{s.passed_flows} passed[/green], "
                    f"[red]{s.failed_flows} failed[/red] | commands: {s.passed} passed, "
                    f"{s.failed} failed, {s.skipped} skipped"
                )
