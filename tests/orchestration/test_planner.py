"""Tests for plan resolution: validation, gating, skip propagation and batching."""

from __future__ import annotations

import pytest

from shipline.core.errors import (
    ContractViolationError,
    CycleDetectedError,
    DependencyError,
    DuplicateJobError,
)
from shipline.orchestration.job import Job, SkipReason
from shipline.orchestration.planner import PlanResolver, plan, validate_jobs
from shipline.orchestration.trigger import (
    EventKind,
    LoopGuard,
    TriggerFilter,
    all_of,
    on_branch,
    on_event,
)


def ci_jobs() -> list[Job]:
    return [
        Job(id="test", tool="sh"),
        Job(id="lint", tool="sh"),
        Job(id="build", tool="sh", needs=("test", "lint"), artifacts_out=("dist",)),
        Job(
            id="docker",
            tool="publish",
            needs=("build",),
            artifacts_in=("dist",),
            outputs=("image_tag",),
        ),
        Job(
            id="update-deployment",
            tool="deploy",
            needs=("docker",),
            when=all_of(on_branch("main"), on_event(EventKind.PUSH)),
            inputs=("docker.image_tag",),
        ),
        Job(id="cleanup", tool="cleanup", needs=("update-deployment",), always_run=True),
    ]


class TestValidation:
    def test_duplicate_ids(self):
        with pytest.raises(DuplicateJobError):
            validate_jobs([Job(id="a", tool="sh"), Job(id="a", tool="sh")])

    def test_unknown_dependency(self):
        with pytest.raises(DependencyError) as exc:
            validate_jobs([Job(id="a", tool="sh", needs=("ghost",))])
        assert exc.value.missing == ["ghost"]

    def test_self_dependency_is_a_cycle(self):
        with pytest.raises(CycleDetectedError):
            validate_jobs([Job(id="a", tool="sh", needs=("a",))])

    def test_cycle_rejected_with_path(self):
        jobs = [
            Job(id="a", tool="sh", needs=("c",)),
            Job(id="b", tool="sh", needs=("a",)),
            Job(id="c", tool="sh", needs=("b",)),
        ]
        with pytest.raises(CycleDetectedError) as exc:
            validate_jobs(jobs)
        cycle = exc.value.cycle
        assert cycle[0] == cycle[-1]
        assert set(cycle) == {"a", "b", "c"}

    def test_input_from_non_dependency(self):
        jobs = [
            Job(id="docker", tool="sh", outputs=("image_tag",)),
            Job(id="other", tool="sh"),
            Job(id="deploy", tool="sh", needs=("other",), inputs=("docker.image_tag",)),
        ]
        with pytest.raises(ContractViolationError, match="not a declared dependency"):
            validate_jobs(jobs)

    def test_transitive_dependency_output_is_not_visible(self):
        jobs = [
            Job(id="build", tool="sh", outputs=("version",)),
            Job(id="docker", tool="sh", needs=("build",)),
            Job(id="deploy", tool="sh", needs=("docker",), inputs=("build.version",)),
        ]
        with pytest.raises(ContractViolationError):
            validate_jobs(jobs)

    def test_input_key_must_be_declared_output(self):
        jobs = [
            Job(id="docker", tool="sh", outputs=("image",)),
            Job(id="deploy", tool="sh", needs=("docker",), inputs=("docker.image_tag",)),
        ]
        with pytest.raises(ContractViolationError, match="not a declared output"):
            validate_jobs(jobs)

    def test_args_may_only_reference_declared_inputs(self):
        jobs = [
            Job(id="docker", tool="sh", outputs=("image_tag",)),
            Job(id="deploy", tool="sh", needs=("docker",), args=("${docker.image_tag}",)),
        ]
        with pytest.raises(ContractViolationError, match="undeclared inputs"):
            validate_jobs(jobs)

    def test_artifact_without_producer(self):
        with pytest.raises(ContractViolationError, match="no producer"):
            validate_jobs([Job(id="docker", tool="sh", artifacts_in=("dist",))])

    def test_artifact_producer_must_be_ancestor(self):
        jobs = [
            Job(id="build", tool="sh", artifacts_out=("dist",)),
            Job(id="docker", tool="sh", artifacts_in=("dist",)),
        ]
        with pytest.raises(ContractViolationError, match="does not depend on"):
            validate_jobs(jobs)

    def test_artifact_from_transitive_ancestor_is_allowed(self):
        jobs = [
            Job(id="build", tool="sh", artifacts_out=("dist",)),
            Job(id="scan", tool="sh", needs=("build",)),
            Job(id="docker", tool="sh", needs=("scan",), artifacts_in=("dist",)),
        ]
        assert list(validate_jobs(jobs)) == ["build", "scan", "docker"]

    def test_artifact_produced_twice(self):
        jobs = [
            Job(id="a", tool="sh", artifacts_out=("dist",)),
            Job(id="b", tool="sh", artifacts_out=("dist",)),
        ]
        with pytest.raises(ContractViolationError, match="already produced"):
            validate_jobs(jobs)


class TestBatching:
    def test_push_to_main_batches(self, push_main):
        result = plan(ci_jobs(), push_main)
        assert result.batches == [
            ["test", "lint"],
            ["build"],
            ["docker"],
            ["update-deployment"],
            ["cleanup"],
        ]
        assert result.skipped == {}

    def test_every_job_follows_its_dependencies(self, push_main):
        jobs = ci_jobs()
        result = plan(jobs, push_main)
        for job in jobs:
            for dep in job.needs:
                assert result.batch_of(dep) < result.batch_of(job.id)

    def test_independent_chains_share_batches(self, push_main):
        jobs = [
            Job(id="a1", tool="sh"),
            Job(id="b1", tool="sh"),
            Job(id="a2", tool="sh", needs=("a1",)),
            Job(id="b2", tool="sh", needs=("b1",)),
            Job(id="join", tool="sh", needs=("a2", "b1")),
        ]
        result = plan(jobs, push_main)
        assert result.batches == [["a1", "b1"], ["a2", "b2"], ["join"]]

    def test_empty_job_list(self, push_main):
        result = plan([], push_main)
        assert result.is_empty
        assert result.scheduled == []


class TestGating:
    def test_pull_request_skips_deploy_but_runs_cleanup(self, pull_request):
        result = plan(ci_jobs(), pull_request)
        assert result.skipped == {"update-deployment": SkipReason.GATED}
        assert result.batch_of("update-deployment") == -1
        assert result.batches[-1] == ["cleanup"]
        assert result.batch_of("cleanup") == 3

    def test_gated_job_skips_its_dependents(self, push_main):
        jobs = [
            Job(id="a", tool="sh", when=on_branch("release")),
            Job(id="b", tool="sh", needs=("a",)),
            Job(id="c", tool="sh", needs=("b",)),
            Job(id="d", tool="sh"),
        ]
        result = plan(jobs, push_main)
        assert result.skipped == {
            "a": SkipReason.GATED,
            "b": SkipReason.DEPENDENCY,
            "c": SkipReason.DEPENDENCY,
        }
        assert result.batches == [["d"]]

    def test_consumer_of_gated_artifact_producer_is_contract_violation(self, pull_request):
        jobs = [
            Job(id="build", tool="sh", artifacts_out=("dist",), when=on_event("push")),
            Job(id="docker", tool="sh", needs=("build",), artifacts_in=("dist",), always_run=True),
        ]
        with pytest.raises(ContractViolationError, match="can never materialize"):
            plan(jobs, pull_request)

    def test_consumer_of_gated_output_producer_is_contract_violation(self, pull_request):
        jobs = [
            Job(id="docker", tool="sh", outputs=("image_tag",), when=on_event("push")),
            Job(
                id="report",
                tool="sh",
                needs=("docker",),
                inputs=("docker.image_tag",),
                always_run=True,
            ),
        ]
        with pytest.raises(ContractViolationError):
            plan(jobs, pull_request)

    def test_skipped_consumer_of_skipped_producer_is_fine(self, pull_request):
        jobs = [
            Job(id="build", tool="sh", artifacts_out=("dist",), when=on_event("push")),
            Job(id="docker", tool="sh", needs=("build",), artifacts_in=("dist",)),
        ]
        result = plan(jobs, pull_request)
        assert result.skipped == {"build": SkipReason.GATED, "docker": SkipReason.DEPENDENCY}

    def test_transitively_skipped_input_consumer_is_fine(self, pull_request):
        jobs = [
            Job(id="docker", tool="sh", outputs=("image_tag",), when=on_event("push")),
            Job(id="deploy", tool="sh", needs=("docker",), inputs=("docker.image_tag",)),
            Job(id="notify", tool="sh", needs=("deploy",)),
            Job(id="lint", tool="sh"),
        ]
        result = plan(jobs, pull_request)
        assert result.skipped == {
            "docker": SkipReason.GATED,
            "deploy": SkipReason.DEPENDENCY,
            "notify": SkipReason.DEPENDENCY,
        }
        assert result.batches == [["lint"]]


class TestRunLevelFilter:
    def test_descriptor_only_change_gates_out_the_whole_run(self, descriptor_only_push):
        resolver = PlanResolver(TriggerFilter.from_loop_guard(LoopGuard()))
        result = resolver.resolve(ci_jobs(), descriptor_only_push)
        assert result.gated_out
        assert result.is_empty
        assert set(result.skipped) == {job.id for job in ci_jobs()}
        assert all(reason is SkipReason.GATED for reason in result.skipped.values())

    def test_structural_errors_reported_even_when_gated_out(self, descriptor_only_push):
        resolver = PlanResolver(TriggerFilter.from_loop_guard(LoopGuard()))
        with pytest.raises(CycleDetectedError):
            resolver.resolve(
                [Job(id="a", tool="sh", needs=("b",)), Job(id="b", tool="sh", needs=("a",))],
                descriptor_only_push,
            )

    def test_to_dict(self, push_main):
        data = plan(ci_jobs(), push_main).to_dict()
        assert data["event"] == "push"
        assert data["batches"][0] == ["test", "lint"]
        assert data["gated_out"] is False
