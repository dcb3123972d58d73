"""
Root Typer application for the shipline CLI.

``plan`` and ``run`` read the trigger from the host environment
(``SHIPLINE_*`` / ``GITHUB_*``) unless overridden by options.
"""

from __future__ import annotations

import functools
from pathlib import Path

import typer
from typer import Typer

from shipline.cli.utils import (
    build_trigger,
    console,
    fail,
    load_pipeline,
    load_settings,
    print_json,
    print_plan,
    print_run,
)
from shipline.core.errors import ShiplineError

app = Typer(
    name="shipline",
    help="shipline — dependency-ordered CI/CD pipelines with loop-safe deployment updates.",
    no_args_is_help=True,
    rich_markup_mode="rich",
)


# ── Version callback ─────────────────────────────────────────────────────


def _version_callback(value: bool) -> None:
    if value:
        from shipline import __version__

        typer.echo(f"shipline {__version__}")
        raise typer.Exit()


@app.callback()
def main(
    version: bool | None = typer.Option(  # noqa: UP007
        None,
        "--version",
        "-V",
        help="Show version and exit.",
        callback=_version_callback,
        is_eager=True,
    ),
) -> None:
    """shipline CLI — plan and run pipelines, update deployments, trim history."""


# ── Shared options ───────────────────────────────────────────────────────

_PIPELINE = typer.Option(None, "--pipeline", "-f", help="Pipeline YAML file (default: standard pipeline)")
_EVENT = typer.Option(None, "--event", "-e", help="push, pull_request or schedule")
_REF = typer.Option(None, "--ref", help="Branch name or refs/heads/<branch>")
_SHA = typer.Option(None, "--sha", help="Commit identifier")
_CHANGED = typer.Option([], "--changed", "-c", help="Changed path (repeatable)")
_MESSAGE = typer.Option(None, "--message", "-m", help="Head commit message")
_SINCE = typer.Option(None, "--changed-since", help="Compute changed paths from git diff BASE..HEAD")


def _changed_paths(changed: list[str], since: str | None, workdir: Path) -> list[str]:
    if since is None:
        return changed
    from shipline.deploy.vcs import GitClient

    return sorted(set(changed) | GitClient(workdir).changed_paths(since))


@app.command()
def plan(
    pipeline_file: Path | None = _PIPELINE,
    event: str | None = _EVENT,
    ref: str | None = _REF,
    sha: str | None = _SHA,
    changed: list[str] = _CHANGED,
    message: str | None = _MESSAGE,
    changed_since: str | None = _SINCE,
    json_out: bool = typer.Option(False, "--json"),
) -> None:
    """Show the execution plan for a trigger without running anything."""
    settings = load_settings()
    try:
        paths = _changed_paths(changed, changed_since, Path.cwd())
        trigger = build_trigger(event, ref, sha, paths, message, settings.repository)
        execution_plan = load_pipeline(pipeline_file, settings).plan(trigger)
    except ShiplineError as e:
        fail(e, code=2)
    if json_out:
        print_json(execution_plan.to_dict())
    else:
        print_plan(execution_plan)


@app.command()
def run(
    pipeline_file: Path | None = _PIPELINE,
    event: str | None = _EVENT,
    ref: str | None = _REF,
    sha: str | None = _SHA,
    changed: list[str] = _CHANGED,
    message: str | None = _MESSAGE,
    changed_since: str | None = _SINCE,
    workdir: Path = typer.Option(Path("."), "--workdir", "-C", help="Working copy the jobs run in"),
    commit: bool = typer.Option(True, "--commit/--no-commit", help="Commit descriptor updates"),
    cleanup: bool = typer.Option(False, "--cleanup/--no-cleanup", help="Trim run history and image versions via the GitHub API"),
    json_out: bool = typer.Option(False, "--json"),
) -> None:
    """Plan and execute a pipeline for a trigger."""
    from shipline.deploy.vcs import GitClient
    from shipline.execution.artifacts import LocalArtifactStore
    from shipline.orchestration.scheduler import RunStatus
    from shipline.pipelines import standard_tools
    from shipline.retention.github import GitHubClient

    settings = load_settings()
    workdir = workdir.resolve()
    github = GitHubClient.from_settings(settings) if cleanup else None
    try:
        paths = _changed_paths(changed, changed_since, workdir)
        trigger = build_trigger(event, ref, sha, paths, message, settings.repository)
        pipeline = load_pipeline(pipeline_file, settings)
        tools = standard_tools(
            settings,
            vcs=GitClient(workdir, settings.commit_author_name, settings.commit_author_email) if commit else None,
            history=github,
            registry=github,
            loop_guard=pipeline.deploy_loop_guard(),
        )
        result = pipeline.run(
            tools,
            trigger,
            store_factory=functools.partial(LocalArtifactStore, settings.data_dir / "artifacts"),
            max_concurrency=settings.max_concurrency,
            default_timeout=settings.job_timeout_seconds,
            working_dir=str(workdir),
        )
    except ShiplineError as e:
        fail(e, code=2)
    finally:
        if github is not None:
            github.close()

    if json_out:
        print_json(result.to_dict())
    else:
        print_run(result)
    if result.status == RunStatus.FAILED:
        raise typer.Exit(code=1)


@app.command("update-image")
def update_image(
    tag: str = typer.Argument(..., help="Image tag, e.g. sha-abc123"),
    descriptor: Path | None = typer.Option(None, "--descriptor", "-d", help="Deployment descriptor path"),
    repo: Path = typer.Option(Path("."), "--repo", help="Git working copy"),
    commit: bool = typer.Option(True, "--commit/--no-commit"),
    push: bool | None = typer.Option(None, "--push/--no-push"),
    json_out: bool = typer.Option(False, "--json"),
) -> None:
    """Point the deployment descriptor at ``<registry>/<repository>:TAG``."""
    from shipline.deploy.updater import DeploymentUpdater
    from shipline.deploy.vcs import GitClient
    from shipline.pipelines import loop_guard_for

    settings = load_settings(push=push)
    image = settings.image_reference(tag)
    try:
        vcs = GitClient(repo, settings.commit_author_name, settings.commit_author_email) if commit else None
        updater = DeploymentUpdater(settings.image_prefix, loop_guard_for(settings), vcs=vcs, push=settings.push)
        path = descriptor or (vcs.root / settings.descriptor_path if vcs else repo / settings.descriptor_path)
        result = updater.update_file(path, image, tag)
    except ShiplineError as e:
        fail(e)

    if json_out:
        print_json(result.to_outputs() | {"path": result.path})
        return
    if result.changed:
        console.print(f"[green]Updated[/green] {result.path} -> {image}")
        if result.commit is not None:
            console.print(f"  commit: {result.commit.outcome.value} {result.commit.sha or ''}")
    else:
        console.print(f"[dim]No changes[/dim]: {result.path} already uses {image}")


# ── Sub-command registration ─────────────────────────────────────────────

from shipline.cli.cleanup import app as cleanup_app  # noqa: E402

app.add_typer(cleanup_app, name="cleanup", help="Retention for workflow runs and images.")
