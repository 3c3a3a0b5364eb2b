"""CLI entry point for the issue pipeline."""

import asyncio
import json
import sys
from collections.abc import Callable, Coroutine
from pathlib import Path
from typing import Any, TypeVar

import click
import structlog

from issue_pipeline.config.settings import PipelineSettings
from issue_pipeline.engine.orchestrator import PipelineOrchestrator, describe_issue, load_problem
from issue_pipeline.enums import IssueStatus
from issue_pipeline.exceptions import ConfigurationError, IssuePipelineError
from issue_pipeline.models.domain import Issue
from issue_pipeline.utils.logging_config import configure_logging

log = structlog.get_logger(__name__)

T = TypeVar("T")

DEFAULT_CONFIG = "issue_pipeline.yaml"


@click.group()
@click.option(
    "--config",
    default=None,
    help=f"Path to configuration file (default: ./{DEFAULT_CONFIG} if present)",
)
@click.option("--log-level", default="INFO", help="Logging level")
@click.option("--json-logs/--console-logs", default=False, help="Render log lines as JSON")
@click.pass_context
def cli(ctx: click.Context, config: str | None, log_level: str, json_logs: bool) -> None:
    """issue-pipeline: multi-phase issue resolution orchestrator."""
    configure_logging(log_level, json_output=json_logs)
    ctx.ensure_object(dict)

    if "settings" in ctx.obj:
        return

    config_path = Path(config) if config else Path(DEFAULT_CONFIG)
    if config and not config_path.exists():
        click.echo(f"Error: Configuration file not found: {config}", err=True)
        sys.exit(1)

    try:
        settings = PipelineSettings.from_yaml(str(config_path)) if config_path.exists() else PipelineSettings()
    except ConfigurationError as e:
        click.echo(f"Error: {e.message}", err=True)
        log.debug("config_error", exc_info=True)
        sys.exit(1)

    ctx.obj["settings"] = settings


def _orchestrator(ctx: click.Context) -> PipelineOrchestrator:
    if "orchestrator" not in ctx.obj:
        ctx.obj["orchestrator"] = PipelineOrchestrator.from_settings(ctx.obj["settings"])
    orchestrator: PipelineOrchestrator = ctx.obj["orchestrator"]
    return orchestrator


def _run(operation: Callable[[], Coroutine[Any, Any, T]], event: str) -> T:
    """Run a coroutine, turning pipeline errors into a clean exit."""
    try:
        return asyncio.run(operation())
    except IssuePipelineError as e:
        click.echo(f"Error: {e.message}", err=True)
        log.debug(f"{event}_error", exc_info=True)
        sys.exit(1)
    except KeyboardInterrupt:
        click.echo("\nInterrupted by user", err=True)
        sys.exit(130)


def _print_outcome(issue: Issue) -> None:
    click.echo(f"{issue.id}: {issue.status.value} (phase: {issue.current_phase.value})")
    if issue.last_error:
        click.echo(f"  Last error: {issue.last_error['message']}")


@cli.command()
@click.argument("issue_id")
@click.option("--title", default="", help="Short issue title")
@click.option(
    "--description-file",
    type=click.Path(exists=True, dir_okay=False, path_type=Path),
    help="Markdown file with the problem statement",
)
@click.pass_context
def start(ctx: click.Context, issue_id: str, title: str, description_file: Path | None) -> None:
    """Create ISSUE_ID and run it through the pipeline."""
    description = ""
    if description_file is not None:
        heading, description = load_problem(description_file)
        title = title or heading

    orchestrator = _orchestrator(ctx)
    issue = _run(lambda: orchestrator.start(issue_id, title=title, description=description), "start")
    _print_outcome(issue)
    if issue.status != IssueStatus.RESOLVED and issue.status != IssueStatus.REJECTED:
        sys.exit(2)


@cli.command()
@click.argument("issue_id")
@click.pass_context
def resume(ctx: click.Context, issue_id: str) -> None:
    """Continue ISSUE_ID from its last persisted record."""
    orchestrator = _orchestrator(ctx)
    issue = _run(lambda: orchestrator.resume(issue_id), "resume")
    _print_outcome(issue)
    if issue.status != IssueStatus.RESOLVED and issue.status != IssueStatus.REJECTED:
        sys.exit(2)


@cli.command()
@click.argument("issue_id")
@click.option("--json", "as_json", is_flag=True, help="Print the full report as JSON")
@click.pass_context
def status(ctx: click.Context, issue_id: str, as_json: bool) -> None:
    """Show the status and record chain of ISSUE_ID."""
    orchestrator = _orchestrator(ctx)
    context = _run(lambda: orchestrator.status(issue_id), "status")
    report = describe_issue(context)

    if as_json:
        click.echo(json.dumps(report, indent=2))
        return

    click.echo(f"Issue: {report['issue_id']} - {report['title']}")
    click.echo(f"Status: {report['status']}" + (" (archived)" if report["archived"] else ""))
    click.echo(f"Phase: {report['current_phase']}")
    click.echo(f"Implement attempts: {report['retry_count']}")
    if report["last_error"]:
        click.echo(f"Last error: {report['last_error']['type']}: {report['last_error']['message']}")

    click.echo("\nRecords:")
    for record in report["records"]:
        _print_record(record)


def _print_record(record: dict[str, Any]) -> None:
    verdict = record["verdict"]
    if record["reported_verdict"]:
        verdict = f"{verdict} (reported {record['reported_verdict']})"
    click.echo(f"  {record['sequence']:>2}. {record['phase']} #{record['attempt']} -> {verdict}")
    if record["summary"]:
        click.echo(f"      {record['summary']}")
    if record["notes"]:
        for line in record["notes"].splitlines():
            click.echo(f"      | {line}")
    for finding in record["findings"]:
        click.echo(f"      * {finding}")


@cli.command("list")
@click.option(
    "--status",
    "statuses",
    multiple=True,
    type=click.Choice([s.value for s in IssueStatus]),
    help="Only show issues with this status (repeatable)",
)
@click.pass_context
def list_issues(ctx: click.Context, statuses: tuple[str, ...]) -> None:
    """List issues in the store."""
    orchestrator = _orchestrator(ctx)
    issues = _run(lambda: orchestrator.list_issues(IssueStatus(s) for s in statuses), "list")

    if not issues:
        click.echo("No issues found")
        return

    for issue in issues:
        click.echo(f"{issue.id:<40} {issue.status.value:<12} {issue.current_phase.value}")


@cli.command("solve-unsolved")
@click.pass_context
def solve_unsolved(ctx: click.Context) -> None:
    """Run every issue directory that has problem.md but no solution.md."""
    orchestrator = _orchestrator(ctx)
    results = _run(orchestrator.solve_unsolved, "solve_unsolved")

    if not results:
        click.echo("No unsolved issues found")
        return

    failed = 0
    for issue_id, result in results.items():
        if isinstance(result, Issue):
            click.echo(f"{issue_id}: {result.status.value}")
        else:
            failed += 1
            click.echo(f"{issue_id}: failed - {result}", err=True)

    click.echo(f"\nProcessed {len(results)} issue(s), {failed} failed")
    if failed:
        sys.exit(1)


@cli.command()
@click.option("--host", default="127.0.0.1", help="Address to bind")
@click.option("--port", default=8000, type=int, help="Port to bind")
@click.pass_context
def serve(ctx: click.Context, host: str, port: int) -> None:
    """Run the HTTP trigger server."""
    import uvicorn

    from issue_pipeline.webhook_server import create_app

    app = create_app(ctx.obj["settings"], ctx.obj.get("orchestrator"))
    uvicorn.run(app, host=host, port=port)


if __name__ == "__main__":
    cli()
