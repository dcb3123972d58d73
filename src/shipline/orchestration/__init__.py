"""
shipline orchestration — job graphs, trigger gating and execution.

ARCHITECTURE
────────────
::

    TriggerContext ── why the run exists (event, ref, paths, commit)
    TriggerFilter  ── run-level gate (branches, paths-ignore, LoopGuard marker)
    Job            ── node: needs, gate, tool body, outputs, artifacts
    PlanResolver   ── validate DAG + contracts, gate, batch
    DependencyScheduler ── execute batches, propagate failures and outputs

MODULE MAP
──────────
1. trigger.py        ─ TriggerContext, predicates, LoopGuard, TriggerFilter
2. job.py            ─ Job, JobOutput, JobResult
3. planner.py        ─ ExecutionPlan, PlanResolver, validate_jobs
4. scheduler.py      ─ DependencyScheduler, RunResult
5. pipeline_yaml.py  ─ declarative pipeline files
"""

from shipline.orchestration.job import Job, JobOutput, JobResult, JobStatus, SkipReason
from shipline.orchestration.planner import ExecutionPlan, PlanResolver, plan, validate_jobs
from shipline.orchestration.scheduler import DependencyScheduler, RunResult, RunStatus
from shipline.orchestration.trigger import (
    EventKind,
    LoopGuard,
    TriggerContext,
    TriggerFilter,
    all_of,
    always,
    any_of,
    on_branch,
    on_event,
)

__all__ = [
    "DependencyScheduler",
    "EventKind",
    "ExecutionPlan",
    "Job",
    "JobOutput",
    "JobResult",
    "JobStatus",
    "LoopGuard",
    "PlanResolver",
    "RunResult",
    "RunStatus",
    "SkipReason",
    "TriggerContext",
    "TriggerFilter",
    "all_of",
    "always",
    "any_of",
    "on_branch",
    "on_event",
    "plan",
    "validate_jobs",
]
