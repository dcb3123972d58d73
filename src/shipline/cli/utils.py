"""
CLI utility helpers — settings, trigger construction and output formatting.
"""

from __future__ import annotations

import dataclasses
import json
from pathlib import Path
from typing import Any, NoReturn

import typer
from pydantic import ValidationError
from rich.console import Console
from rich.table import Table

from shipline.core.errors import InvalidConfigError, ShiplineError
from shipline.core.logging import configure_logging
from shipline.core.settings import ShiplineSettings
from shipline.orchestration.planner import ExecutionPlan
from shipline.orchestration.scheduler import RunResult, RunStatus
from shipline.orchestration.trigger import EventKind, TriggerContext
from shipline.pipelines import Pipeline, standard_pipeline
from shipline.retention.cleaner import CleanupReport

console = Console()
err_console = Console(stderr=True)

_STATUS_STYLE = {
    "succeeded": "green",
    "failed": "bold red",
    "skipped": "yellow",
    "cancelled": "magenta",
}


# ── Settings / inputs ────────────────────────────────────────────────────


def load_settings(**overrides: Any) -> ShiplineSettings:
    """Settings from the environment, with non-None CLI overrides applied."""
    values = {k: v for k, v in overrides.items() if v is not None}
    try:
        settings = ShiplineSettings(**values)
    except ValidationError as e:
        err_console.print(f"[bold red]Invalid settings[/bold red]: {e}")
        raise typer.Exit(code=2) from e
    configure_logging(level=settings.log_level)
    return settings


def build_trigger(
    event: str | None = None,
    ref: str | None = None,
    sha: str | None = None,
    changed: list[str] | None = None,
    message: str | None = None,
    repository: str | None = None,
) -> TriggerContext:
    """TriggerContext from host environment variables, overridden by options."""
    trigger = TriggerContext.from_env()
    overrides: dict[str, Any] = {}
    if event is not None:
        try:
            overrides["event"] = EventKind(event)
        except ValueError as e:
            raise InvalidConfigError("event", event, f"Unsupported trigger event: {event!r}") from e
    if ref is not None:
        overrides["ref"] = ref if ref.startswith("refs/") else f"refs/heads/{ref}"
    if sha is not None:
        overrides["commit"] = sha
    if changed:
        overrides["changed_paths"] = frozenset(changed)
    if message is not None:
        overrides["commit_message"] = message
    if repository is not None and not trigger.repository:
        overrides["repository"] = repository
    return dataclasses.replace(trigger, **overrides) if overrides else trigger


def load_pipeline(path: Path | None, settings: ShiplineSettings) -> Pipeline:
    """Pipeline file at ``path``, or the standard pipeline."""
    if path is None:
        return standard_pipeline(settings)
    from shipline.orchestration.pipeline_yaml import load_pipeline as _load

    try:
        return _load(path)
    except ValidationError as e:
        raise InvalidConfigError("pipeline", str(path), f"Invalid pipeline file {path}: {e}") from e
    except OSError as e:
        raise InvalidConfigError("pipeline", str(path), f"Cannot read pipeline file {path}: {e}") from e


def fail(error: ShiplineError, code: int = 1) -> NoReturn:
    err_console.print(f"[bold red]Error[/bold red] ({error.category.value}): {error.message}")
    raise typer.Exit(code=code)


# ── Output helpers ───────────────────────────────────────────────────────


def print_json(payload: Any) -> None:
    console.print_json(json.dumps(payload, default=str))


def print_plan(plan: ExecutionPlan, *, title: str = "Plan") -> None:
    if plan.gated_out:
        console.print(f"[yellow]Run gated out[/yellow]: {plan.reason}")
        return
    table = Table(title=title, pad_edge=False)
    table.add_column("batch")
    table.add_column("jobs", overflow="fold")
    for index, batch in enumerate(plan.batches):
        table.add_row(str(index), ", ".join(batch))
    console.print(table)
    for job_id, reason in plan.skipped.items():
        console.print(f"  [dim]skip[/dim] [cyan]{job_id}[/cyan]: {reason.value}")


def print_run(run: RunResult) -> None:
    table = Table(title=f"Run {run.run_id}", pad_edge=False)
    for column in ("job", "status", "detail", "seconds"):
        table.add_column(column, overflow="fold")
    for job_id, result in run.results.items():
        style = _STATUS_STYLE.get(result.status.value, "")
        detail = result.error or (result.skip_reason.value if result.skip_reason else "")
        if result.succeeded and result.outputs:
            detail = ", ".join(f"{k}={v}" for k, v in result.outputs.items())
        seconds = f"{result.duration_seconds:.1f}" if result.duration_seconds is not None else ""
        table.add_row(job_id, f"[{style}]{result.status.value}[/{style}]", detail, seconds)
    console.print(table)
    for warning in run.warnings:
        console.print(f"[yellow]warning[/yellow]: {warning}")
    style = _STATUS_STYLE.get(run.status.value, "")
    console.print(f"[bold]Status[/bold]: [{style}]{run.status.value}[/{style}]")
    if run.status == RunStatus.SKIPPED:
        console.print(f"[dim]{run.plan.reason}[/dim]")


def print_report(report: CleanupReport) -> None:
    verb = "would delete" if report.dry_run else "deleted"
    console.print(f"[bold]{report.collection}s[/bold]: kept {len(report.kept)}")
    for outcome in report.outcomes:
        if outcome.error:
            console.print(f"  [red]failed[/red] {outcome.label}: {outcome.error}")
        else:
            console.print(f"  [dim]{verb}[/dim] {outcome.label} ({outcome.reason})")
    for warning in report.warnings:
        err_console.print(f"[yellow]warning[/yellow]: {warning}")
