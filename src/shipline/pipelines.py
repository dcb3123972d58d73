"""Standard pipelines — the build/publish/deploy/cleanup graph as data.

Manifesto:
    The CI/CD flow of a containerized web service is a small DAG:
test and lint in parallel, build the bundle, build/scan/push the image,
point the deployment descriptor at the new image, then trim history.
Expressing it as ``Job`` values (instead of a host-specific workflow file)
lets the same graph be planned, executed and tested anywhere.

ARCHITECTURE
────────────
::

    test ──┐
           ├── build ── docker ── update-deployment ── cleanup (always_run)
    lint ──┘   (dist)   (image_tag, image,    (main + push only)
                       image_digest, image_created_at)

    Pipeline            ── name + jobs + TriggerFilter
    standard_pipeline() ── the graph above, from ShiplineSettings
    standard_tools()    ── ToolRegistry wiring for its tool identifiers
    ImagePublisher      ── docker build -> trivy scan -> docker push -> inspect
    RetentionTool       ── runs RetentionCleaner as the cleanup job body

Tags:
    shipline, pipelines, ci-cd, docker, deploy

Doc-Types:
    api-reference
"""

from __future__ import annotations

import subprocess
from collections.abc import Callable
from dataclasses import dataclass
from pathlib import Path
from typing import Any

import structlog

from shipline.core.errors import ConfigError
from shipline.core.settings import ShiplineSettings
from shipline.deploy.updater import DeploymentUpdater
from shipline.deploy.vcs import GitClient
from shipline.execution.adapters import SubprocessToolAdapter, ToolRegistry, ToolRequest, ToolResponse
from shipline.execution.artifacts import unpack_blob
from shipline.orchestration.job import Job
from shipline.orchestration.planner import ExecutionPlan, PlanResolver
from shipline.orchestration.scheduler import DependencyScheduler, RunResult
from shipline.orchestration.trigger import (
    EventKind,
    LoopGuard,
    TriggerContext,
    TriggerFilter,
    all_of,
    on_branch,
    on_event,
)
from shipline.retention.cleaner import ImageRegistry, RetentionCleaner, RetentionPolicy, RunHistory

logger = structlog.get_logger()

SHELL_TOOL = "sh"
PUBLISH_TOOL = "image-publish"
DEPLOY_TOOL = "update-deployment"
CLEANUP_TOOL = "retention-cleanup"

# RepoDigests is filled once the image has been pushed
INSPECT_FORMAT = "{{index .RepoDigests 0}} {{.Created}}"

CommandRunner = Callable[[list[str], Path], subprocess.CompletedProcess]


@dataclass
class Pipeline:
    """A named job graph with its run-level trigger filter."""

    name: str
    jobs: list[Job]
    trigger_filter: TriggerFilter | None = None

    @property
    def loop_guard(self) -> LoopGuard | None:
        """Guard the trigger filter enforces; descriptor commits must carry it."""
        return self.trigger_filter.loop_guard if self.trigger_filter is not None else None

    def deploy_loop_guard(self) -> LoopGuard | None:
        """Guard for descriptor commits; a pipeline that updates the descriptor must declare one."""
        if self.loop_guard is None and any(job.tool == DEPLOY_TOOL for job in self.jobs):
            raise ConfigError(
                f"Pipeline '{self.name}' updates the deployment descriptor but declares no loop_guard; "
                "its own descriptor commits would re-trigger it"
            )
        return self.loop_guard

    def job(self, job_id: str) -> Job:
        for job in self.jobs:
            if job.id == job_id:
                return job
        raise KeyError(job_id)

    def plan(self, trigger: TriggerContext) -> ExecutionPlan:
        return PlanResolver(self.trigger_filter).resolve(self.jobs, trigger)

    def scheduler(self, adapter, **kwargs: Any) -> DependencyScheduler:
        return DependencyScheduler(adapter, trigger_filter=self.trigger_filter, **kwargs)

    def run(self, adapter, trigger: TriggerContext, run_id: str | None = None, **kwargs: Any) -> RunResult:
        return self.scheduler(adapter, **kwargs).run(self.jobs, trigger, run_id=run_id)


@dataclass
class PipelineCommands:
    """Shell command lines for the language-specific jobs."""

    test: str = 'npm ci && (npm test || echo "No tests found")'
    lint: str = "npm ci && npm run lint"
    build: str = "npm ci && npm run build"
    build_output: str = "dist"


def loop_guard_for(settings: ShiplineSettings) -> LoopGuard:
    return LoopGuard(descriptor_path=settings.descriptor_path, marker=settings.skip_marker)


def standard_trigger_filter(settings: ShiplineSettings) -> TriggerFilter:
    return TriggerFilter.from_loop_guard(
        loop_guard_for(settings),
        branches=(settings.branch,),
        extra_ignored=tuple(settings.ignored_paths),
    )


def standard_pipeline(settings: ShiplineSettings, commands: PipelineCommands | None = None) -> Pipeline:
    """Build the standard CI/CD graph for ``settings``."""
    commands = commands or PipelineCommands()
    dist = commands.build_output
    jobs = [
        Job(id="test", name="Unit Testing", tool=SHELL_TOOL, args=("-c", commands.test)),
        Job(id="lint", name="Static Code Analysis", tool=SHELL_TOOL, args=("-c", commands.lint)),
        Job(
            id="build",
            name="Build",
            tool=SHELL_TOOL,
            args=("-c", commands.build),
            needs=("test", "lint"),
            artifacts_out=(dist,),
        ),
        Job(
            id="docker",
            name="Docker Build and Push",
            tool=PUBLISH_TOOL,
            needs=("build",),
            artifacts_in=(dist,),
            outputs=("image_tag", "image", "image_digest", "image_created_at"),
        ),
        Job(
            id="update-deployment",
            name="Update Kubernetes Deployment",
            tool=DEPLOY_TOOL,
            args=(settings.descriptor_path,),
            needs=("docker",),
            when=all_of(on_branch(settings.branch), on_event(EventKind.PUSH)),
            inputs=("docker.image_tag", "docker.image"),
            outputs=("image", "changed", "commit_outcome", "commit_sha"),
        ),
        Job(
            id="cleanup",
            name="Cleanup Old Workflow Runs",
            tool=CLEANUP_TOOL,
            needs=("update-deployment",),
            always_run=True,
            outputs=("runs_deleted", "images_deleted"),
        ),
    ]
    return Pipeline(name="ci-cd", jobs=jobs, trigger_filter=standard_trigger_filter(settings))


# =============================================================================
# Tool bodies
# =============================================================================


def _run_command(command: list[str], cwd: Path) -> subprocess.CompletedProcess:
    return subprocess.run(command, cwd=cwd, capture_output=True, text=True, check=False)


class ImagePublisher:
    """Builds, scans and pushes the service image tagged ``sha-<commit>``.

    After a push the registry digest and creation time are read back with
    ``docker inspect`` and published as ``image_digest``/``image_created_at``;
    both stay empty when pushing is disabled.
    """

    def __init__(
        self,
        image_prefix: str,
        runner: CommandRunner = _run_command,
        scan: bool = True,
        push: bool = True,
        severity: str = "CRITICAL,HIGH",
    ):
        self.image_prefix = image_prefix
        self.runner = runner
        self.scan = scan
        self.push = push
        self.severity = severity

    @staticmethod
    def tag_for(commit: str) -> str:
        return f"sha-{commit}"

    def commands(self, image: str) -> list[list[str]]:
        steps = [["docker", "build", "--tag", image, "."]]
        if self.scan:
            steps.append(
                [
                    "trivy", "image",
                    "--exit-code", "1",
                    "--ignore-unfixed",
                    "--vuln-type", "os,library",
                    "--severity", self.severity,
                    image,
                ]
            )
        if self.push:
            steps.append(["docker", "push", image])
            steps.append(["docker", "inspect", "--format", INSPECT_FORMAT, image])
        return steps

    @staticmethod
    def parse_inspect(output: str) -> tuple[str, str]:
        """Split ``<name>@<digest> <created>`` into digest and creation time."""
        fields = output.split()
        if len(fields) != 2 or "@" not in fields[0]:
            raise ValueError(f"unexpected docker inspect output: {output.strip()!r}")
        return fields[0].rsplit("@", 1)[1], fields[1]

    def __call__(self, request: ToolRequest) -> ToolResponse:
        commit = request.env.get("SHIPLINE_SHA", "")
        if not commit:
            return ToolResponse.fail("No commit identifier in the trigger context")
        tag = self.tag_for(commit)
        image = f"{self.image_prefix}:{tag}"

        cwd = Path(request.cwd) if request.cwd else Path.cwd()
        for name, blob in request.consumed_artifacts.items():
            unpack_blob(blob, cwd / name)

        outputs = {"image_tag": tag, "image": image, "image_digest": "", "image_created_at": ""}
        for command in self.commands(image):
            logger.info("publish.step", job=request.job_id, command=command[:2], image=image)
            completed = self.runner(command, cwd)
            if completed.returncode != 0:
                return ToolResponse.fail(
                    f"{' '.join(command[:2])} exited with status {completed.returncode}",
                    exit_code=completed.returncode,
                    log=(completed.stdout or "") + (completed.stderr or ""),
                )
            if command[:2] == ["docker", "inspect"]:
                try:
                    digest, created = self.parse_inspect(completed.stdout or "")
                except ValueError as e:
                    return ToolResponse.fail(str(e))
                outputs.update(image_digest=digest, image_created_at=created)
        return ToolResponse.ok(outputs)


class RetentionTool:
    """Cleanup job body: trims run history and, when given, image versions."""

    def __init__(
        self,
        cleaner: RetentionCleaner,
        history: RunHistory | None = None,
        registry: ImageRegistry | None = None,
    ):
        self.cleaner = cleaner
        self.history = history
        self.registry = registry

    def __call__(self, request: ToolRequest) -> ToolResponse:
        outputs = {"runs_deleted": "0", "images_deleted": "0"}
        warnings: list[str] = []
        if self.history is not None:
            report = self.cleaner.clean_runs(self.history)
            outputs["runs_deleted"] = str(report.total_deleted)
            warnings.extend(report.warnings)
        if self.registry is not None:
            report = self.cleaner.clean_images(self.registry)
            outputs["images_deleted"] = str(report.total_deleted)
            warnings.extend(report.warnings)
        if self.history is None and self.registry is None:
            warnings.append("no run history or image registry configured; nothing cleaned")
        return ToolResponse.ok(outputs, warnings=warnings)


def standard_tools(
    settings: ShiplineSettings,
    *,
    vcs: GitClient | None = None,
    history: RunHistory | None = None,
    registry: ImageRegistry | None = None,
    runner: CommandRunner = _run_command,
    loop_guard: LoopGuard | None = None,
    shell: str = "sh",
) -> ToolRegistry:
    """Wire the standard pipeline's tool identifiers to their bodies.

    ``loop_guard`` overrides the settings-derived guard; pass the pipeline's
    own guard so descriptor commits carry the marker its filter ignores.
    """
    tools = ToolRegistry(default=SubprocessToolAdapter())
    tools.register(SHELL_TOOL, SubprocessToolAdapter(executable=shell))
    tools.register(PUBLISH_TOOL, ImagePublisher(settings.image_prefix, runner=runner))
    updater = DeploymentUpdater(
        settings.image_prefix,
        loop_guard=loop_guard or loop_guard_for(settings),
        vcs=vcs,
        push=settings.push,
    )
    tools.register(DEPLOY_TOOL, updater.as_tool())
    cleaner = RetentionCleaner(RetentionPolicy(keep_last=settings.keep_last))
    tools.register(CLEANUP_TOOL, RetentionTool(cleaner, history=history, registry=registry))
    return tools


__all__ = [
    "Pipeline",
    "PipelineCommands",
    "ImagePublisher",
    "RetentionTool",
    "loop_guard_for",
    "standard_pipeline",
    "standard_tools",
    "standard_trigger_filter",
]
