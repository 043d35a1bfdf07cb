"""
Report writers.

`write_reports` runs at the end of a session when reporting is enabled;
`generate_report` rebuilds a single view from a saved `test-results.json`.
"""

from enum import Enum
from pathlib import Path

from lumi.tester.errors import LumiError
from lumi.tester.report.html import render_html
from lumi.tester.report.junit import render_junit
from lumi.tester.report.models import SessionReport
from lumi.tester.runner.state import SessionState
from lumi.tester.utils.logger import get_logger

logger = get_logger(__name__)

RESULTS_FILE = "test-results.json"
HTML_FILE = "report.html"
JUNIT_FILE = "report.junit.xml"


class ReportFormat(str, Enum):
    HTML = "html"
    JUNIT = "junit"
    JSON = "json"

    @property
    def default_filename(self) -> str:
        return {
            ReportFormat.HTML: HTML_FILE,
            ReportFormat.JUNIT: JUNIT_FILE,
            ReportFormat.JSON: RESULTS_FILE,
        }[self]


def render(report: SessionReport, format: ReportFormat) -> str:
    match format:
        case ReportFormat.HTML:
            return render_html(report)
        case ReportFormat.JUNIT:
            return render_junit(report)
        case ReportFormat.JSON:
            return report.to_json()


def write_reports(session: SessionState, output_dir: Path) -> list[Path]:
    """
    Write the JSON results, HTML report and JUnit XML for a finished session.

    Returns:
        The paths written, JSON first.
    """
    output_dir.mkdir(parents=True, exist_ok=True)
    report = SessionReport.from_session(session)
    written = []
    for format in (ReportFormat.JSON, ReportFormat.HTML, ReportFormat.JUNIT):
        path = output_dir / format.default_filename
        path.write_text(render(report, format), encoding="utf-8")
        written.append(path)
    logger.success(f"Reports written to {output_dir}")
    return written


def generate_report(
    results_json: Path, format: ReportFormat = ReportFormat.HTML, output: Path | None = None
) -> Path:
    if not results_json.exists():
        raise LumiError(f"Results file not found: {results_json}")
    try:
        report = SessionReport.load(results_json)
    except ValueError as e:
        raise LumiError(f"Invalid results file {results_json}: {e}") from e

    target = output or results_json.parent / format.default_filename
    target.parent.mkdir(parents=True, exist_ok=True)
    target.write_text(render(report, format), encoding="utf-8")
    return target
