"""JUnit XML view of a session report: one testsuite per flow, one testcase per command."""

import xml.etree.ElementTree as ET

from lumi.tester.report.models import SessionReport


def _seconds(ms: int) -> str:
    return f"{ms / 1000:.3f}"


def render_junit(report: SessionReport) -> str:
    root = ET.Element(
        "testsuites",
        name="lumi-tester",
        tests=str(report.summary.total_commands),
        failures=str(report.summary.failed_commands),
        skipped=str(report.summary.skipped_commands),
        time=_seconds(report.summary.duration),
    )
    for flow in report.flows:
        suite = ET.SubElement(
            root,
            "testsuite",
            name=flow.name,
            tests=str(len(flow.commands)),
            failures=str(flow.count("failed")),
            skipped=str(flow.count("skipped")),
            time=_seconds(flow.duration_ms),
        )
        if flow.path:
            suite.set("file", flow.path)
        for command in flow.commands:
            case = ET.SubElement(
                suite,
                "testcase",
                classname=flow.name,
                name=f"[{command.index + 1}] {command.command}",
                time=_seconds(command.duration_ms),
            )
            if command.status == "failed":
                failure = ET.SubElement(case, "failure", message=command.error or "failed")
                failure.text = command.error or ""
            elif command.status in ("skipped", "pending"):
                skipped = ET.SubElement(case, "skipped")
                if command.skip_reason:
                    skipped.set("message", command.skip_reason)

    ET.indent(root)
    return ET.tostring(root, encoding="unicode", xml_declaration=True) + "\n"
