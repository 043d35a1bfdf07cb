"""
Session report records.

The report is a snapshot of a finished `SessionState`, serialized with
camelCase keys to `test-results.json`. The HTML and JUnit views are
rendered from the same records, so a report can be regenerated from the
JSON file alone.
"""

from datetime import datetime
from pathlib import Path

from pydantic import BaseModel, ConfigDict, Field
from pydantic.alias_generators import to_camel

from lumi.tester.runner.state import CommandState, FlowState, FlowStatus, SessionState


class ReportModel(BaseModel):
    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True)


class CommandReport(ReportModel):
    index: int
    command: str
    name: str
    status: str
    duration_ms: int = 0
    error: str | None = None
    skip_reason: str | None = None
    retry_count: int = 0
    screenshot: str | None = None

    @classmethod
    def from_state(cls, state: CommandState) -> "CommandReport":
        return cls(
            index=state.index,
            command=state.label,
            name=state.name,
            status=state.status.value,
            duration_ms=state.duration_ms or 0,
            error=state.error,
            skip_reason=state.skip_reason,
            retry_count=state.retry_count,
            screenshot=state.screenshot_path,
        )


class FlowReport(ReportModel):
    name: str
    path: str = ""
    status: str
    duration_ms: int = 0
    error: str | None = None
    video: str | None = None
    commands: list[CommandReport] = Field(default_factory=list)

    @classmethod
    def from_state(cls, state: FlowState) -> "FlowReport":
        return cls(
            name=state.name,
            path=state.path,
            status=state.status.value,
            duration_ms=state.total_duration_ms or 0,
            error=state.error,
            video=state.video_path,
            commands=[CommandReport.from_state(c) for c in state.commands],
        )

    def count(self, status: str) -> int:
        return sum(1 for c in self.commands if c.status == status)

    @property
    def passed(self) -> bool:
        return self.status == FlowStatus.PASSED.value


class SummaryReport(ReportModel):
    total: int = 0
    passed: int = 0
    failed: int = 0
    skipped: int = 0
    duration: int = 0
    total_commands: int = 0
    passed_commands: int = 0
    failed_commands: int = 0
    skipped_commands: int = 0


class SessionReport(ReportModel):
    session_id: str
    generated_at: str
    summary: SummaryReport
    flows: list[FlowReport] = Field(default_factory=list)

    @classmethod
    def from_session(cls, session: SessionState) -> "SessionReport":
        totals = session.summary()
        skipped_flows = sum(1 for f in session.flows if f.status == FlowStatus.SKIPPED)
        return cls(
            session_id=session.session_id,
            generated_at=datetime.now().isoformat(timespec="seconds"),
            summary=SummaryReport(
                total=totals.total_flows,
                passed=totals.passed_flows,
                failed=totals.failed_flows,
                skipped=skipped_flows,
                duration=totals.duration_ms or 0,
                total_commands=totals.total_commands,
                passed_commands=totals.passed,
                failed_commands=totals.failed,
                skipped_commands=totals.skipped,
            ),
            flows=[FlowReport.from_state(f) for f in session.flows],
        )

    def to_json(self) -> str:
        return self.model_dump_json(by_alias=True, indent=2)

    @classmethod
    def load(cls, path: Path) -> "SessionReport":
        return cls.model_validate_json(Path(path).read_text(encoding="utf-8"))
