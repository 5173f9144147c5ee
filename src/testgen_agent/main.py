"""CLI entrypoint for testgen-agent."""

import logging
from pathlib import Path

import rich_click as click

from testgen_agent import __version__
from testgen_agent.orchestrator.controllers import (
    REPORT_KINDS,
    LatestReportCommand,
    ParseOutputCommand,
    RunCommand,
    TestGenCliController,
)

click.rich_click.USE_MARKDOWN = True
CONTROLLER = TestGenCliController()


@click.group()
@click.version_option(version=__version__, prog_name="testgen-agent")
@click.option(
    "--log-level",
    type=click.Choice(["DEBUG", "INFO", "WARNING", "ERROR"], case_sensitive=False),
    default="WARNING",
    show_default=True,
    help="Logging level for pipeline diagnostics.",
)
def testgen_agent(log_level: str) -> None:
    """AI-assisted test generation driven by a CLI coding agent."""

    logging.basicConfig(
        level=log_level.upper(),
        format="%(asctime)s %(levelname)s %(name)s: %(message)s",
    )


@testgen_agent.command("run")
@click.option(
    "--workspace",
    type=click.Path(path_type=Path, file_okay=False, exists=True),
    default=Path("."),
    show_default=True,
    help="Workspace root the agent works in.",
)
@click.option(
    "--prompt-file",
    type=click.Path(path_type=Path, dir_okay=False, exists=True),
    required=True,
    help="File with the base generation prompt.",
)
@click.option("--label", default="testgen", show_default=True, help="Run label used in reports.")
@click.option(
    "--target",
    "targets",
    multiple=True,
    help="Target file the tests are generated for. Can be repeated.",
)
@click.option(
    "--runner",
    type=click.Choice(["local", "agent"]),
    default=None,
    help="Test runner. Overrides TESTGEN_AGENT_TEST_EXECUTION_RUNNER.",
)
@click.option(
    "--test-command",
    default=None,
    help="Test command. Empty string skips execution.",
)
@click.option(
    "--no-perspectives",
    is_flag=True,
    default=False,
    help="Skip the perspective table phase.",
)
@click.option("--model", default=None, help="Agent model override.")
def run(  # noqa: PLR0913
    workspace: Path,
    prompt_file: Path,
    label: str,
    targets: tuple[str, ...],
    runner: str | None,
    test_command: str | None,
    no_perspectives: bool,
    model: str | None,
) -> None:
    """Run perspectives, generation and tests once, then print report paths."""

    result = CONTROLLER.run(
        RunCommand(
            workspace=workspace,
            prompt_file=prompt_file,
            label=label,
            targets=targets,
            runner=runner,
            test_command=test_command,
            include_perspectives=not no_perspectives,
            model=model,
        ),
    )
    _emit_lines(result.lines)
    if not result.success:
        raise click.ClickException("Test generation run did not succeed.")


@testgen_agent.command("latest-report")
@click.option(
    "--workspace",
    type=click.Path(path_type=Path, file_okay=False),
    default=Path("."),
    show_default=True,
    help="Workspace root.",
)
@click.option(
    "--kind",
    type=click.Choice(REPORT_KINDS),
    default="execution",
    show_default=True,
    help="Report kind.",
)
def latest_report(workspace: Path, kind: str) -> None:
    """Print the newest report of the given kind."""

    _emit_lines(CONTROLLER.latest_report(LatestReportCommand(workspace=workspace, kind=kind)))


@testgen_agent.command("parse-output")
@click.argument("output_file", type=click.Path(path_type=Path, dir_okay=False, exists=True))
def parse_output(output_file: Path) -> None:
    """Parse mocha-style test output and print pass/fail counts."""

    _emit_lines(CONTROLLER.parse_output(ParseOutputCommand(output_file=output_file)))


def _emit_lines(lines: list[str]) -> None:
    for line in lines:
        click.echo(line)


if __name__ == "__main__":  # pragma: no cover
    testgen_agent()
