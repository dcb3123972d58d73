"""
CLI: ``shipline cleanup`` — keep-last-K retention for runs and images.
"""

from __future__ import annotations

import typer

from shipline.cli.utils import fail, load_settings, print_json, print_report
from shipline.core.errors import ShiplineError
from shipline.retention.cleaner import RetentionCleaner, RetentionPolicy
from shipline.retention.github import GitHubClient

app = typer.Typer(no_args_is_help=True)


def _cleaner(keep: int | None, dry_run: bool, settings) -> RetentionCleaner:
    try:
        return RetentionCleaner(RetentionPolicy(keep_last=keep if keep is not None else settings.keep_last), dry_run=dry_run)
    except ShiplineError as e:
        fail(e, code=2)


@app.command("runs")
def clean_runs(
    repository: str | None = typer.Option(None, "--repository", "-r", help="owner/name"),
    keep: int | None = typer.Option(None, "--keep", "-k", help="Completed runs to keep"),
    workflow: str | None = typer.Option(None, "--workflow", "-w", help="Workflow file or id"),
    exclude: list[str] = typer.Option([], "--exclude", help="Run ids that must survive"),
    dry_run: bool = typer.Option(False, "--dry-run"),
    json_out: bool = typer.Option(False, "--json"),
) -> None:
    """Delete completed workflow runs beyond the newest K."""
    settings = load_settings(repository=repository)
    cleaner = _cleaner(keep, dry_run, settings)
    try:
        with GitHubClient.from_settings(settings, workflow=workflow) as client:
            report = cleaner.clean_runs(client, exclude=exclude)
    except ShiplineError as e:
        fail(e)
    if json_out:
        print_json(report.to_dict())
    else:
        print_report(report)


@app.command("images")
def clean_images(
    repository: str | None = typer.Option(None, "--repository", "-r", help="owner/name"),
    package: str | None = typer.Option(None, "--package", "-p", help="Container package name"),
    keep: int | None = typer.Option(None, "--keep", "-k", help="Tagged images to keep"),
    dry_run: bool = typer.Option(False, "--dry-run"),
    json_out: bool = typer.Option(False, "--json"),
) -> None:
    """Delete untagged image versions and tagged ones beyond the newest K."""
    settings = load_settings(repository=repository)
    cleaner = _cleaner(keep, dry_run, settings)
    try:
        with GitHubClient.from_settings(settings, package=package) as client:
            report = cleaner.clean_images(client)
    except ShiplineError as e:
        fail(e)
    if json_out:
        print_json(report.to_dict())
    else:
        print_report(report)
