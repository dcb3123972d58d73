"""Dependency Scheduler — executes a planned job graph batch by batch.

The scheduler takes an :class:`~shipline.orchestration.planner.ExecutionPlan`
and runs each batch in a thread pool, passing every job only the outputs of
its direct dependencies.  It handles:

- **Gating** skips decided by the planner
- **Failure propagation**: dependents of a failed or skipped job are skipped
  (unless ``always_run``); sibling branches keep running
- **Output scoping**: sealed ``JobOutput`` snapshots, direct dependencies only
- **Artifacts** through a run-scoped ``ArtifactStore``
- **Timeouts** per job (a timeout is a job failure)
- **Cancellation**: jobs not yet started are skipped; started jobs finish

Example::

    from shipline.execution.adapters import SubprocessToolAdapter
    from shipline.orchestration import DependencyScheduler, TriggerContext

    scheduler = DependencyScheduler(adapter=SubprocessToolAdapter())
    result = scheduler.run(jobs, TriggerContext(event="push", ref="refs/heads/main"))

    if result.status == RunStatus.FAILED:
        print(f"Failed jobs: {result.failed_jobs}")
"""

from __future__ import annotations

import contextvars
import threading
import uuid
from collections.abc import Callable, Sequence
from concurrent.futures import ThreadPoolExecutor, as_completed
from dataclasses import dataclass, field
from datetime import UTC, datetime
from enum import Enum
from typing import Any

from shipline.core.errors import ErrorCategory, ShiplineError
from shipline.core.logging import LogContext, get_logger
from shipline.execution.adapters import ExternalToolAdapter, ToolRequest, ToolResponse
from shipline.execution.artifacts import ArtifactStore, MemoryArtifactStore
from shipline.execution.timeout import TimeoutExpired, run_with_timeout
from shipline.orchestration.job import (
    Job,
    JobOutput,
    JobResult,
    JobStatus,
    SkipReason,
    render_args,
)
from shipline.orchestration.planner import ExecutionPlan, PlanResolver, artifact_producers
from shipline.orchestration.trigger import TriggerContext, TriggerFilter

logger = get_logger(__name__)

DEFAULT_JOB_TIMEOUT = 1800.0


class RunStatus(str, Enum):
    """Overall status of a pipeline run."""

    SUCCEEDED = "succeeded"
    FAILED = "failed"
    SKIPPED = "skipped"  # gated out by the trigger filter
    CANCELLED = "cancelled"


def new_run_id() -> str:
    return uuid.uuid4().hex[:12]


@dataclass
class RunResult:
    """Result of executing one pipeline run."""

    run_id: str
    status: RunStatus
    plan: ExecutionPlan
    results: dict[str, JobResult] = field(default_factory=dict)
    started_at: datetime = field(default_factory=lambda: datetime.now(UTC))
    completed_at: datetime | None = None

    def result(self, job_id: str) -> JobResult:
        return self.results[job_id]

    def status_of(self, job_id: str) -> JobStatus:
        return self.results[job_id].status

    def outputs(self, job_id: str) -> dict[str, str]:
        output = self.results[job_id].outputs
        return dict(output) if output else {}

    @property
    def executed_jobs(self) -> list[str]:
        """Jobs that were attempted (succeeded or failed)."""
        return [j for j, r in self.results.items() if r.status != JobStatus.SKIPPED]

    @property
    def succeeded_jobs(self) -> list[str]:
        return [j for j, r in self.results.items() if r.status == JobStatus.SUCCEEDED]

    @property
    def failed_jobs(self) -> list[str]:
        return [j for j, r in self.results.items() if r.status == JobStatus.FAILED]

    @property
    def skipped_jobs(self) -> list[str]:
        return [j for j, r in self.results.items() if r.status == JobStatus.SKIPPED]

    @property
    def warnings(self) -> list[str]:
        return [f"{job_id}: {w}" for job_id, r in self.results.items() for w in r.warnings]

    @property
    def duration_seconds(self) -> float | None:
        if self.completed_at:
            return (self.completed_at - self.started_at).total_seconds()
        return None

    def to_dict(self) -> dict[str, Any]:
        return {
            "run_id": self.run_id,
            "status": self.status.value,
            "plan": self.plan.to_dict(),
            "started_at": self.started_at.isoformat(),
            "completed_at": self.completed_at.isoformat() if self.completed_at else None,
            "duration_seconds": self.duration_seconds,
            "failed_jobs": self.failed_jobs,
            "warnings": self.warnings,
            "jobs": [r.to_dict() for r in self.results.values()],
        }


class DependencyScheduler:
    """Plans and executes job graphs through an ExternalToolAdapter."""

    def __init__(
        self,
        adapter: ExternalToolAdapter,
        trigger_filter: TriggerFilter | None = None,
        store_factory: Callable[[str], ArtifactStore] = MemoryArtifactStore,
        max_concurrency: int = 4,
        default_timeout: float = DEFAULT_JOB_TIMEOUT,
        working_dir: str | None = None,
    ) -> None:
        """
        Args:
            adapter: Adapter (usually a ToolRegistry) that runs job bodies
            trigger_filter: Optional run-level gate
            store_factory: Builds the run-scoped ArtifactStore from a run id
            max_concurrency: Max jobs of one batch running at once
            default_timeout: Timeout for jobs without their own
            working_dir: Default cwd for jobs without their own
        """
        self.adapter = adapter
        self.resolver = PlanResolver(trigger_filter)
        self.store_factory = store_factory
        self.max_concurrency = max_concurrency
        self.default_timeout = default_timeout
        self.working_dir = working_dir
        self._cancelled = threading.Event()

    # =========================================================================
    # Public API
    # =========================================================================

    def plan(self, jobs: Sequence[Job], trigger: TriggerContext) -> ExecutionPlan:
        return self.resolver.resolve(jobs, trigger)

    def run(
        self,
        jobs: Sequence[Job],
        trigger: TriggerContext,
        run_id: str | None = None,
    ) -> RunResult:
        """Plan and execute ``jobs`` for ``trigger``."""
        return self.execute(self.plan(jobs, trigger), run_id=run_id)

    def cancel(self) -> None:
        """Skip every job not yet started; running jobs finish on their own."""
        self._cancelled.set()
        logger.warning("scheduler.cancel_requested")

    @property
    def cancelled(self) -> bool:
        return self._cancelled.is_set()

    def execute(self, plan: ExecutionPlan, run_id: str | None = None) -> RunResult:
        """Execute a resolved plan."""
        run_id = run_id or new_run_id()
        run = RunResult(run_id=run_id, status=RunStatus.SUCCEEDED, plan=plan)
        store = self.store_factory(run_id)

        for job_id, reason in plan.skipped.items():
            run.results[job_id] = JobResult.skipped(job_id, reason)
            store.mark_unavailable(job_id, f"was skipped ({reason.value})")

        with LogContext(run_id=run_id, commit=plan.trigger.commit):
            if plan.gated_out:
                run.status = RunStatus.SKIPPED
                run.completed_at = datetime.now(UTC)
                logger.info("scheduler.run_gated_out", reason=plan.reason)
                return self._ordered(run)

            logger.info(
                "scheduler.run_started",
                batches=len(plan.batches),
                jobs=len(plan.scheduled),
                trigger_event=plan.trigger.event.value,
                ref=plan.trigger.ref,
            )

            # Results keep only refs; blobs do not outlive the run.
            try:
                with ThreadPoolExecutor(
                    max_workers=self.max_concurrency, thread_name_prefix="shipline-job"
                ) as pool:
                    for index, batch in enumerate(plan.batches):
                        self._run_batch(index, batch, plan, run, store, pool)
            finally:
                store.discard_run()

            run.status = self._final_status(plan, run)
            run.completed_at = datetime.now(UTC)

            for warning in run.warnings:
                logger.warning("scheduler.run_warning", detail=warning)
            logger.info(
                "scheduler.run_complete",
                status=run.status.value,
                duration_seconds=run.duration_seconds,
                succeeded=len(run.succeeded_jobs),
                failed=len(run.failed_jobs),
                skipped=len(run.skipped_jobs),
            )

        return self._ordered(run)

    # =========================================================================
    # Batches
    # =========================================================================

    def _run_batch(
        self,
        index: int,
        batch: list[str],
        plan: ExecutionPlan,
        run: RunResult,
        store: ArtifactStore,
        pool: ThreadPoolExecutor,
    ) -> None:
        ready: list[Job] = []
        for job_id in batch:
            job = plan.jobs[job_id]
            skip = self._skip_reason(job, run)
            if skip is not None:
                reason, detail = skip
                run.results[job_id] = JobResult.skipped(job_id, reason, detail)
                store.mark_unavailable(job_id, f"was skipped ({reason.value})")
                logger.warning("scheduler.job_skipped", job=job_id, reason=reason.value, detail=detail)
                continue
            ready.append(job)

        if not ready:
            return

        logger.debug("scheduler.batch_started", batch=index, jobs=[j.id for j in ready])

        # Every job in the batch reads the same sealed snapshots of its dependencies.
        snapshot = {job_id: r.outputs for job_id, r in run.results.items() if r.outputs is not None}
        futures = {
            pool.submit(
                contextvars.copy_context().run,
                self._execute_job,
                job,
                snapshot,
                store,
                run.run_id,
                plan,
            ): job
            for job in ready
        }
        for future in as_completed(futures):
            job = futures[future]
            result = future.result()
            run.results[job.id] = result
            if result.status is JobStatus.SKIPPED:
                store.mark_unavailable(job.id, f"was skipped ({result.skip_reason.value})")
            elif not result.succeeded:
                store.mark_unavailable(job.id, "failed")

    def _skip_reason(self, job: Job, run: RunResult) -> tuple[SkipReason, str] | None:
        if self._cancelled.is_set():
            return SkipReason.CANCELLED, "run cancelled before dispatch"

        unmet = [dep for dep in job.needs if not run.results[dep].succeeded]
        if not unmet:
            return None
        if not job.always_run:
            return SkipReason.DEPENDENCY, f"upstream not successful: {', '.join(unmet)}"

        # always_run jobs still cannot read data that never materialized
        data_sources = set(job.input_sources())
        for name in job.artifacts_in:
            data_sources.update(j.id for j in run.plan.jobs.values() if name in j.artifacts_out)
        missing = sorted(data_sources.intersection(unmet))
        if missing:
            return SkipReason.DEPENDENCY, f"inputs unavailable from: {', '.join(missing)}"
        return None

    # =========================================================================
    # Single job
    # =========================================================================

    def _execute_job(
        self,
        job: Job,
        snapshot: dict[str, JobOutput],
        store: ArtifactStore,
        run_id: str,
        plan: ExecutionPlan,
    ) -> JobResult:
        # Queued behind a busy pool, a job can outlive the cancel check at dispatch.
        if self._cancelled.is_set():
            logger.warning("scheduler.job_skipped", job=job.id, reason=SkipReason.CANCELLED.value)
            return JobResult.skipped(job.id, SkipReason.CANCELLED, "run cancelled before start")

        started_at = datetime.now(UTC)
        timeout = job.timeout_seconds or self.default_timeout
        logger.info("scheduler.job_started", job=job.id, tool=job.tool, timeout=timeout)

        try:
            request = self._build_request(job, snapshot, store, run_id, timeout, plan)
            response = run_with_timeout(
                self.adapter.invoke,
                timeout,
                operation=job.id,
                args=(request,),
            )
            result = self._collect(job, response, store)
        except TimeoutExpired as e:
            result = self._failed(job, str(e), ErrorCategory.TIMEOUT)
        except ShiplineError as e:
            logger.error("scheduler.job_error", job=job.id, **e.to_dict())
            result = self._failed(job, e.message, e.category)
        except Exception as e:
            logger.exception("scheduler.job_exception", job=job.id, error=str(e))
            result = self._failed(job, str(e), ErrorCategory.INTERNAL)

        result.started_at = started_at
        result.completed_at = datetime.now(UTC)

        if result.succeeded:
            logger.info(
                "scheduler.job_succeeded",
                job=job.id,
                duration_seconds=result.duration_seconds,
                outputs=sorted(result.outputs or {}),
            )
        else:
            logger.error(
                "scheduler.job_failed",
                job=job.id,
                error=result.error,
                category=result.error_category,
                exit_code=result.exit_code,
            )
        return result

    def _build_request(
        self,
        job: Job,
        snapshot: dict[str, JobOutput],
        store: ArtifactStore,
        run_id: str,
        timeout: float,
        plan: ExecutionPlan,
    ) -> ToolRequest:
        inputs = {dep: snapshot[dep] for dep in job.needs if dep in snapshot}
        producers = artifact_producers(plan.jobs)
        consumed = {
            name: store.get(store.lookup(producers.get(name, ""), name))
            for name in job.artifacts_in
        }
        return ToolRequest(
            tool=job.tool,
            args=tuple(render_args(job.args, inputs)),
            cwd=job.cwd or self.working_dir,
            consumed_artifacts=consumed,
            produces_artifacts=job.artifacts_out,
            inputs=inputs,
            env={**plan.trigger.to_env(), **job.env},
            timeout_seconds=timeout,
            job_id=job.id,
            run_id=run_id,
        )

    def _collect(self, job: Job, response: ToolResponse, store: ArtifactStore) -> JobResult:
        if not response.succeeded:
            result = self._failed(job, response.error or "tool failed", ErrorCategory.TOOL)
            result.exit_code = response.exit_code
            return result

        output = JobOutput(job.id)
        for key, value in response.outputs.items():
            if key in job.outputs:
                output.publish(key, value)
            else:
                logger.warning("scheduler.undeclared_output", job=job.id, key=key)

        missing = [key for key in job.outputs if key not in output]
        if missing:
            return self._failed(
                job, f"declared outputs not published: {', '.join(missing)}", ErrorCategory.CONTRACT
            )

        refs = {}
        for name in job.artifacts_out:
            if name not in response.artifacts:
                return self._failed(job, f"declared artifact '{name}' not produced", ErrorCategory.CONTRACT)
            refs[name] = store.put(job.id, name, response.artifacts[name])

        return JobResult(
            job_id=job.id,
            status=JobStatus.SUCCEEDED,
            outputs=output.seal(),
            artifacts=refs,
            exit_code=response.exit_code,
            warnings=list(response.warnings),
        )

    @staticmethod
    def _failed(job: Job, error: str, category: ErrorCategory) -> JobResult:
        return JobResult(
            job_id=job.id,
            status=JobStatus.FAILED,
            error=error,
            error_category=category.value,
        )

    # =========================================================================
    # Status
    # =========================================================================

    def _final_status(self, plan: ExecutionPlan, run: RunResult) -> RunStatus:
        required_failed = [
            job_id for job_id in run.failed_jobs if not plan.jobs[job_id].always_run
        ]
        if required_failed:
            return RunStatus.FAILED
        if self._cancelled.is_set():
            return RunStatus.CANCELLED
        return RunStatus.SUCCEEDED

    @staticmethod
    def _ordered(run: RunResult) -> RunResult:
        order = list(run.plan.jobs)
        run.results = {job_id: run.results[job_id] for job_id in order if job_id in run.results}
        return run
