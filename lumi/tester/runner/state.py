import time
from enum import Enum

from pydantic import BaseModel, Field

from lumi.tester.errors import LumiError


class CommandStatus(str, Enum):
    PENDING = "pending"
    RUNNING = "running"
    PASSED = "passed"
    FAILED = "failed"
    SKIPPED = "skipped"

    @property
    def is_terminal(self) -> bool:
        return self in (CommandStatus.PASSED, CommandStatus.FAILED, CommandStatus.SKIPPED)


class FlowStatus(str, Enum):
    PENDING = "pending"
    RUNNING = "running"
    PASSED = "passed"
    FAILED = "failed"
    PARTIALLY_PASSED = "partially_passed"
    SKIPPED = "skipped"


_ALLOWED_TRANSITIONS = {
    CommandStatus.PENDING: {CommandStatus.RUNNING, CommandStatus.SKIPPED},
    CommandStatus.RUNNING: {CommandStatus.PASSED, CommandStatus.FAILED, CommandStatus.SKIPPED},
}


class CommandState(BaseModel):
    index: int
    name: str
    label: str
    status: CommandStatus = CommandStatus.PENDING
    started_at: float | None = None
    duration_ms: int | None = None
    error: str | None = None
    skip_reason: str | None = None
    retry_count: int = 0
    screenshot_path: str | None = None

    def _move(self, status: CommandStatus) -> None:
        if status not in _ALLOWED_TRANSITIONS.get(self.status, set()):
            raise LumiError(f"Command {self.index} cannot go from {self.status.value} to {status.value}")
        self.status = status

    def start(self) -> None:
        self._move(CommandStatus.RUNNING)
        self.started_at = time.monotonic()

    def _finish(self, status: CommandStatus) -> None:
        self._move(status)
        if self.started_at is not None:
            self.duration_ms = int((time.monotonic() - self.started_at) * 1000)

    def pass_(self) -> None:
        self._finish(CommandStatus.PASSED)

    def fail(self, error: str) -> None:
        self._finish(CommandStatus.FAILED)
        self.error = error

    def skip(self, reason: str) -> None:
        self._finish(CommandStatus.SKIPPED)
        self.skip_reason = reason


class FlowState(BaseModel):
    name: str
    path: str = ""
    commands: list[CommandState] = Field(default_factory=list)
    status: FlowStatus = FlowStatus.PENDING
    started_at: float | None = None
    total_duration_ms: int | None = None
    error: str | None = None
    video_path: str | None = None
    depth: int = 0

    def start(self) -> None:
        self.status = FlowStatus.RUNNING
        self.started_at = time.monotonic()

    def skip_remaining(self, from_index: int, reason: str) -> None:
        for command in self.commands[from_index:]:
            if command.status == CommandStatus.PENDING:
                command.skip(reason)

    def counts(self) -> tuple[int, int, int]:
        passed = sum(1 for c in self.commands if c.status == CommandStatus.PASSED)
        failed = sum(1 for c in self.commands if c.status == CommandStatus.FAILED)
        skipped = sum(1 for c in self.commands if c.status == CommandStatus.SKIPPED)
        return passed, failed, skipped

    def finish(self, continue_on_failure: bool = False, soft_errors: list[str] | None = None) -> None:
        """
        Settle the flow status from its commands.

        Any failure fails the flow unless execution continued past it, in which
        case a mix of passes and failures is `partially_passed`. Pending soft
        assertion errors always fail the flow.
        """
        if self.started_at is not None:
            self.total_duration_ms = int((time.monotonic() - self.started_at) * 1000)

        passed, failed, _ = self.counts()
        if soft_errors:
            self.status = FlowStatus.FAILED
            self.error = f"{len(soft_errors)} soft assertion(s) failed:\n" + "\n".join(
                f"  - {e}" for e in soft_errors
            )
        elif failed == 0:
            self.status = FlowStatus.PASSED
        elif continue_on_failure and passed > 0:
            self.status = FlowStatus.PARTIALLY_PASSED
        else:
            self.status = FlowStatus.FAILED

        if self.error is None and failed:
            self.error = next(c.error for c in self.commands if c.status == CommandStatus.FAILED)


class SessionSummary(BaseModel):
    session_id: str
    total_flows: int = 0
    passed_flows: int = 0
    failed_flows: int = 0
    total_commands: int = 0
    passed: int = 0
    failed: int = 0
    skipped: int = 0
    duration_ms: int | None = None


class SessionState(BaseModel):
    session_id: str
    flows: list[FlowState] = Field(default_factory=list)
    started_at: float | None = None
    finished_at: float | None = None

    def start(self) -> None:
        self.started_at = time.monotonic()

    def finish(self) -> None:
        self.finished_at = time.monotonic()

    def add_flow(self, flow: FlowState) -> None:
        self.flows.append(flow)

    @property
    def has_failures(self) -> bool:
        return any(f.status in (FlowStatus.FAILED, FlowStatus.PARTIALLY_PASSED) for f in self.flows)

    def summary(self) -> SessionSummary:
        summary = SessionSummary(session_id=self.session_id, total_flows=len(self.flows))
        for flow in self.flows:
            if flow.status == FlowStatus.PASSED:
                summary.passed_flows += 1
            elif flow.status in (FlowStatus.FAILED, FlowStatus.PARTIALLY_PASSED):
                summary.failed_flows += 1
            passed, failed, skipped = flow.counts()
            summary.total_commands += len(flow.commands)
            summary.passed += passed
            summary.failed += failed
            summary.skipped += skipped
        if self.started_at is not None:
            end = self.finished_at if self.finished_at is not None else time.monotonic()
            summary.duration_ms = int((end - self.started_at) * 1000)
        return summary
