import asyncio
from pathlib import Path
from typing import Annotated

import typer
from rich.console import Console
from rich.table import Table

from lumi.tester.drivers.factory import Platform, list_all_devices
from lumi.tester.errors import FlowFailedError, LumiError
from lumi.tester.report.generate import ReportFormat, generate_report
from lumi.tester.runner.events import ConsoleReporter, EventEmitter
from lumi.tester.runner.executor import ExecutorOptions
from lumi.tester.runner.session import run_tests
from lumi.tester.utils.logger import get_logger

app = typer.Typer(add_completion=False, pretty_exceptions_enable=False)
logger = get_logger(__name__)


def _parse_platform(value: str | None) -> Platform | None:
    if value is None:
        return None
    try:
        return Platform.parse(value)
    except LumiError as e:
        raise typer.BadParameter(str(e)) from e


def _split_tags(value: str | None) -> list[str] | None:
    if not value:
        return None
    return [tag.strip() for tag in value.split(",") if tag.strip()]


@app.command()
def run(
    paths: Annotated[
        list[Path],
        typer.Argument(help="Flow files or directories of flows to run."),
    ],
    platform: Annotated[
        str | None,
        typer.Option(
            "--platform",
            "-p",
            help="android, android_auto, ios or web. Defaults to the first flow's platform.",
        ),
    ] = None,
    device: Annotated[
        list[str] | None,
        typer.Option(
            "--device",
            "-d",
            help="Device serial or simulator UDID. Repeat to run on several devices.",
        ),
    ] = None,
    output: Annotated[
        Path,
        typer.Option("--output", "-o", help="Directory for reports and artifacts."),
    ] = Path("./output"),
    continue_on_failure: Annotated[
        bool,
        typer.Option(
            "--continue-on-failure",
            help="Keep running the remaining commands and flows after a failure.",
        ),
    ] = False,
    record: Annotated[
        bool,
        typer.Option("--record", "-r", help="Record a video of every top-level flow."),
    ] = False,
    snapshot: Annotated[
        bool,
        typer.Option(
            "--snapshot",
            "-s",
            help="Save hierarchy, screenshot and logs when a command fails.",
        ),
    ] = False,
    report: Annotated[
        bool,
        typer.Option(
            "--report/--no-report",
            help="Write JSON, HTML and JUnit reports into the output directory.",
        ),
    ] = True,
    tags: Annotated[
        str | None,
        typer.Option(
            "--tags",
            "-t",
            help="Comma-separated tags; only flows carrying all of them run.",
        ),
    ] = None,
    command_index: Annotated[
        int | None,
        typer.Option("--command-index", help="Run only the command at this 0-based index."),
    ] = None,
    command_name: Annotated[
        str | None,
        typer.Option("--command-name", help="Run only the first command matching this name."),
    ] = None,
):
    """
    Run test flows on a device, simulator or browser.
    """
    options = ExecutorOptions.with_overrides(
        continue_on_failure=continue_on_failure,
        record=record,
        snapshot=snapshot,
        report=report,
        tags=_split_tags(tags),
        output_dir=output,
    )
    emitter = EventEmitter()
    emitter.add_listener(ConsoleReporter())

    try:
        summaries = asyncio.run(
            run_tests(
                paths,
                platform=_parse_platform(platform),
                devices=device,
                options=options,
                emitter=emitter,
                command_index=command_index,
                command_name=command_name,
            )
        )
    except FlowFailedError as e:
        logger.error(str(e))
        raise typer.Exit(code=1)
    except LumiError as e:
        logger.error(str(e))
        raise typer.Exit(code=2)

    if any(s.failed_flows for s in summaries):
        raise typer.Exit(code=1)


@app.command()
def devices(
    platform: Annotated[
        str | None,
        typer.Option("--platform", "-p", help="Only list devices of this platform."),
    ] = None,
):
    """
    List connected Android devices and iOS simulators.
    """
    console = Console()
    found = asyncio.run(list_all_devices(_parse_platform(platform)))
    if not found:
        console.print("[yellow]No devices found[/yellow]")
        return

    table = Table(title="Devices")
    table.add_column("Platform")
    table.add_column("ID")
    table.add_column("Name")
    table.add_column("State")
    for info in found:
        table.add_row(info.platform.value, info.device_id, info.name, info.state)
    console.print(table)


@app.command("report")
def report_command(
    results: Annotated[
        Path,
        typer.Argument(help="Path to a test-results.json written by a previous run."),
    ],
    format: Annotated[
        ReportFormat,
        typer.Option("--format", "-f", help="Report format to generate."),
    ] = ReportFormat.HTML,
    output: Annotated[
        Path | None,
        typer.Option("--output", "-o", help="Target file. Defaults to next to the results."),
    ] = None,
):
    """
    Regenerate a report from saved results.
    """
    try:
        target = generate_report(results, format, output)
    except LumiError as e:
        logger.error(str(e))
        raise typer.Exit(code=2)
    logger.success(f"Report written to {target}")


def cli():
    app()


if __name__ == "__main__":
    cli()
