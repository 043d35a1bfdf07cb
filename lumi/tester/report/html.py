from pathlib import Path

from jinja2 import Template

from lumi.tester.report.models import SessionReport


def render_html(report: SessionReport) -> str:
    return Template(
        Path(__file__).parent.joinpath("report.html").read_text(encoding="utf-8"),
        autoescape=True,
    ).render(report=report)
