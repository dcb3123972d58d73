"""
Plan Resolver - turns a job graph and a trigger into an execution plan.

This is the core orchestration logic:
1. Validate job ids are unique and dependencies reference existing jobs
2. Validate the dependency graph is a DAG (no cycles)
3. Validate output/artifact contracts (every consumed input has a producer
   the consumer depends on)
4. Apply the run-level TriggerFilter (gate the whole run out if needed)
5. Evaluate each job's gate; propagate skips to dependents
6. Reject plans where a gated-in job consumes from a skipped producer
7. Group the remaining jobs into batches of mutually independent jobs

Design Principles:
- Pure functions where possible (testable, deterministic)
- No execution (that's for DependencyScheduler)
- Clear error messages for all failure modes
"""

from __future__ import annotations

from collections.abc import Iterable, Sequence
from dataclasses import dataclass, field

import structlog

from shipline.core.errors import (
    ContractViolationError,
    CycleDetectedError,
    DependencyError,
    DuplicateJobError,
)
from shipline.orchestration.job import Job, SkipReason, arg_references, parse_input_ref
from shipline.orchestration.trigger import TriggerContext, TriggerFilter

logger = structlog.get_logger()


@dataclass
class ExecutionPlan:
    """
    Ordered batches of job ids for one run.

    Jobs inside a batch are independent of each other and may run
    concurrently; every job appears after all of its scheduled dependencies.

    Attributes:
        trigger: The trigger the plan was computed for
        jobs: All jobs of the pipeline keyed by id (declaration order)
        batches: Scheduled job ids, batch by batch
        skipped: Jobs skipped while planning, with the reason
        gated_out: True when the run-level filter rejected the trigger
        reason: Why the run was gated out
    """

    trigger: TriggerContext
    jobs: dict[str, Job]
    batches: list[list[str]] = field(default_factory=list)
    skipped: dict[str, SkipReason] = field(default_factory=dict)
    gated_out: bool = False
    reason: str = ""

    @property
    def scheduled(self) -> list[str]:
        """Scheduled job ids in execution order."""
        return [job_id for batch in self.batches for job_id in batch]

    @property
    def is_empty(self) -> bool:
        return not self.batches

    def batch_of(self, job_id: str) -> int:
        """Index of the batch containing ``job_id`` (-1 if not scheduled)."""
        for index, batch in enumerate(self.batches):
            if job_id in batch:
                return index
        return -1

    def to_dict(self) -> dict:
        return {
            "commit": self.trigger.commit,
            "event": self.trigger.event.value,
            "ref": self.trigger.ref,
            "gated_out": self.gated_out,
            "reason": self.reason,
            "batches": [list(b) for b in self.batches],
            "skipped": {job_id: reason.value for job_id, reason in self.skipped.items()},
        }


class PlanResolver:
    """
    Resolves a list of jobs into an ExecutionPlan.

    Thread-safe: No mutable state, each resolve() call is independent.

    Example:
        resolver = PlanResolver(trigger_filter=TriggerFilter.from_loop_guard(guard))
        plan = resolver.resolve(jobs, trigger)
        for batch in plan.batches:
            ...
    """

    def __init__(self, trigger_filter: TriggerFilter | None = None):
        self.trigger_filter = trigger_filter

    def resolve(self, jobs: Sequence[Job], trigger: TriggerContext) -> ExecutionPlan:
        """
        Resolve jobs into an executable plan for ``trigger``.

        Raises:
            DuplicateJobError: If two jobs share an id
            DependencyError: If a job depends on an unknown job
            CycleDetectedError: If dependencies contain a cycle
            ContractViolationError: If a consumed output or artifact cannot
                materialize
        """
        job_map = validate_jobs(jobs)

        plan = ExecutionPlan(trigger=trigger, jobs=job_map)

        if self.trigger_filter is not None:
            decision = self.trigger_filter.evaluate(trigger)
            if not decision.run:
                plan.gated_out = True
                plan.reason = decision.reason
                plan.skipped = {job_id: SkipReason.GATED for job_id in job_map}
                logger.info(
                    "planner.run_gated_out",
                    commit=trigger.commit,
                    reason=decision.reason,
                )
                return plan

        order = _topological_sort(job_map)
        gated_in = {job_id for job_id in order if job_map[job_id].is_gated_in(trigger)}

        for job_id in order:
            job = job_map[job_id]
            if job_id not in gated_in:
                plan.skipped[job_id] = SkipReason.GATED
            elif not job.always_run and any(dep in plan.skipped for dep in job.needs):
                plan.skipped[job_id] = SkipReason.DEPENDENCY

        _check_skipped_producers(job_map, gated_in, plan.skipped)

        plan.batches = _layer(job_map, order, plan.skipped)

        logger.info(
            "planner.resolved",
            commit=trigger.commit,
            trigger_event=trigger.event.value,
            batch_count=len(plan.batches),
            scheduled=len(plan.scheduled),
            skipped=len(plan.skipped),
        )
        return plan


def plan(
    jobs: Sequence[Job],
    trigger: TriggerContext,
    trigger_filter: TriggerFilter | None = None,
) -> ExecutionPlan:
    """Convenience wrapper around :class:`PlanResolver`."""
    return PlanResolver(trigger_filter).resolve(jobs, trigger)


# =============================================================================
# Structural validation
# =============================================================================


def validate_jobs(jobs: Iterable[Job]) -> dict[str, Job]:
    """
    Validate the static job graph and return it keyed by id.

    Checks uniqueness, dependency references, acyclicity and the
    output/artifact contracts that do not depend on the trigger.
    """
    job_map: dict[str, Job] = {}
    for job in jobs:
        if job.id in job_map:
            raise DuplicateJobError(job.id)
        job_map[job.id] = job

    for job in job_map.values():
        if job.id in job.needs:
            raise CycleDetectedError([job.id, job.id])
        missing = [dep for dep in job.needs if dep not in job_map]
        if missing:
            raise DependencyError(job.id, missing)

    _validate_no_cycles(job_map)
    _validate_inputs(job_map)
    _validate_artifacts(job_map)
    return job_map


def _validate_no_cycles(job_map: dict[str, Job]) -> None:
    """
    Depth-first search with three-color marking.

    - WHITE (0): Unvisited
    - GRAY (1): On the current path
    - BLACK (2): Finished

    Reaching a GRAY node means a cycle.
    """
    WHITE, GRAY, BLACK = 0, 1, 2
    color = {job_id: WHITE for job_id in job_map}
    path: list[str] = []

    def dfs(node: str) -> list[str] | None:
        color[node] = GRAY
        path.append(node)
        for neighbor in job_map[node].needs:
            if color[neighbor] == GRAY:
                return path[path.index(neighbor):] + [neighbor]
            if color[neighbor] == WHITE:
                cycle = dfs(neighbor)
                if cycle:
                    return cycle
        color[node] = BLACK
        path.pop()
        return None

    for job_id in job_map:
        if color[job_id] == WHITE:
            cycle = dfs(job_id)
            if cycle:
                raise CycleDetectedError(cycle)


def _validate_inputs(job_map: dict[str, Job]) -> None:
    for job in job_map.values():
        for ref in job.inputs:
            producer_id, key = parse_input_ref(ref)
            if producer_id not in job.needs:
                raise ContractViolationError(
                    job.id, f"input '{ref}' reads from '{producer_id}', which is not a declared dependency"
                )
            if key not in job_map[producer_id].outputs:
                raise ContractViolationError(
                    job.id, f"input '{ref}' is not a declared output of '{producer_id}'"
                )
        undeclared = arg_references(job.args) - set(job.inputs)
        if undeclared:
            raise ContractViolationError(
                job.id, f"arguments reference undeclared inputs: {', '.join(sorted(undeclared))}"
            )


def _validate_artifacts(job_map: dict[str, Job]) -> None:
    producers: dict[str, str] = {}
    for job in job_map.values():
        for name in job.artifacts_out:
            if name in producers:
                raise ContractViolationError(
                    job.id, f"artifact '{name}' is already produced by '{producers[name]}'"
                )
            producers[name] = job.id

    for job in job_map.values():
        if not job.artifacts_in:
            continue
        ancestors = _ancestors(job_map, job.id)
        for name in job.artifacts_in:
            producer_id = producers.get(name)
            if producer_id is None:
                raise ContractViolationError(job.id, f"artifact '{name}' has no producer")
            if producer_id not in ancestors:
                raise ContractViolationError(
                    job.id, f"artifact '{name}' is produced by '{producer_id}', which the job does not depend on"
                )


def artifact_producers(job_map: dict[str, Job]) -> dict[str, str]:
    """Artifact name -> producing job id."""
    return {name: job.id for job in job_map.values() for name in job.artifacts_out}


def _ancestors(job_map: dict[str, Job], job_id: str) -> set[str]:
    seen: set[str] = set()
    stack = list(job_map[job_id].needs)
    while stack:
        node = stack.pop()
        if node not in seen:
            seen.add(node)
            stack.extend(job_map[node].needs)
    return seen


# =============================================================================
# Trigger-dependent checks and batching
# =============================================================================


def _check_skipped_producers(
    job_map: dict[str, Job],
    gated_in: set[str],
    skipped: dict[str, SkipReason],
) -> None:
    """A scheduled consumer must never depend on data from a skipped producer."""
    producers = artifact_producers(job_map)
    for job_id in gated_in:
        if job_id in skipped:
            continue
        job = job_map[job_id]
        for name in job.artifacts_in:
            producer_id = producers[name]
            if producer_id in skipped:
                raise ContractViolationError(
                    job_id,
                    f"artifact '{name}' can never materialize: producer '{producer_id}' "
                    f"is skipped ({skipped[producer_id].value})",
                )
        for producer_id in job.input_sources():
            if producer_id in skipped:
                raise ContractViolationError(
                    job_id,
                    f"outputs of '{producer_id}' can never materialize: producer "
                    f"is skipped ({skipped[producer_id].value})",
                )


def _topological_sort(job_map: dict[str, Job]) -> list[str]:
    """Kahn's algorithm; ties keep declaration order."""
    in_degree = {job_id: len(job.needs) for job_id, job in job_map.items()}
    dependents: dict[str, list[str]] = {job_id: [] for job_id in job_map}
    for job in job_map.values():
        for dep in job.needs:
            dependents[dep].append(job.id)

    ready = [job_id for job_id in job_map if in_degree[job_id] == 0]
    result: list[str] = []
    while ready:
        node = ready.pop(0)
        result.append(node)
        for neighbor in dependents[node]:
            in_degree[neighbor] -= 1
            if in_degree[neighbor] == 0:
                ready.append(neighbor)
    return result


def _layer(
    job_map: dict[str, Job],
    order: list[str],
    skipped: dict[str, SkipReason],
) -> list[list[str]]:
    """Assign each scheduled job to the batch after its deepest dependency.

    Depth is measured over the whole graph, skipped jobs included, so an
    ``always_run`` job still runs after the jobs its skipped dependency would
    have followed.  Batches left empty by skips are dropped.
    """
    depth: dict[str, int] = {}
    for job_id in order:
        deps = [depth[d] for d in job_map[job_id].needs]
        depth[job_id] = max(deps) + 1 if deps else 0

    levels = sorted({depth[job_id] for job_id in order if job_id not in skipped})
    batches: list[list[str]] = [[] for _ in levels]
    index = {level: i for i, level in enumerate(levels)}
    for job_id in job_map:
        if job_id not in skipped:
            batches[index[depth[job_id]]].append(job_id)
    return batches
