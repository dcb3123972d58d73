"""Pydantic models for declarative pipeline files.

A pipeline file describes the same ``Job`` graph that code-first authors
build in Python, so a repository can carry its own pipeline next to its
source.  Conditions are structured (``branches`` / ``events``); there is no
expression language.

Usage::

    from shipline.orchestration.pipeline_yaml import PipelineSpec

    pipeline = PipelineSpec.from_yaml_file("shipline.yaml").to_pipeline()
    plan = pipeline.plan(trigger)

Example YAML::

    apiVersion: shipline.io/v1
    kind: Pipeline
    metadata:
      name: ci-cd
    spec:
      loop_guard:
        descriptor_path: kubernetes/deployment.yaml
        marker: "[skip ci]"
      triggers:
        push:
          branches: [main]
          paths_ignore: [kubernetes/deployment.yaml, "**/*.md"]
        pull_request:
          branches: [main]
      jobs:
        - id: build
          tool: sh
          args: ["-c", "npm ci && npm run build"]
          artifacts_out: [dist]
        - id: docker
          tool: image-publish
          needs: [build]
          artifacts_in: [dist]
          outputs: [image_tag, image]
        - id: update-deployment
          tool: update-deployment
          needs: [docker]
          when: {branches: [main], events: [push]}
          inputs: [docker.image_tag, docker.image]

Tags:
    shipline, orchestration, yaml, declarative, config-driven

Doc-Types:
    api-reference
"""

from __future__ import annotations

from pathlib import Path
from typing import TYPE_CHECKING, Literal

import yaml
from pydantic import BaseModel, ConfigDict, Field, field_validator, model_validator

from shipline.core.errors import InvalidConfigError
from shipline.orchestration.job import Job
from shipline.orchestration.trigger import (
    EventKind,
    EventRule,
    LoopGuard,
    Predicate,
    TriggerFilter,
    all_of,
    always,
    on_branch,
    on_event,
)

if TYPE_CHECKING:
    from shipline.pipelines import Pipeline


class PipelineMetadataSpec(BaseModel):
    """Metadata section of a pipeline file."""

    model_config = ConfigDict(extra="forbid")

    name: str = Field(..., min_length=1, description="Pipeline name")
    description: str = Field(default="", description="Human-readable description")


class ConditionSpec(BaseModel):
    """Job gate: every listed dimension must match (empty = any)."""

    model_config = ConfigDict(extra="forbid")

    branches: list[str] = Field(default_factory=list)
    events: list[EventKind] = Field(default_factory=list)

    def to_predicate(self) -> Predicate:
        parts: list[Predicate] = []
        if self.branches:
            parts.append(on_branch(*self.branches))
        if self.events:
            parts.append(on_event(*self.events))
        if not parts:
            return always
        return parts[0] if len(parts) == 1 else all_of(*parts)


class JobSpec(BaseModel):
    """One job of the graph."""

    model_config = ConfigDict(extra="forbid")

    id: str = Field(..., min_length=1)
    name: str = ""
    tool: str = Field(..., min_length=1, description="Tool identifier resolved by the registry")
    args: list[str] = Field(default_factory=list)
    needs: list[str] = Field(default_factory=list)
    when: ConditionSpec | None = None
    outputs: list[str] = Field(default_factory=list)
    inputs: list[str] = Field(default_factory=list, description="'job.key' references")
    artifacts_out: list[str] = Field(default_factory=list)
    artifacts_in: list[str] = Field(default_factory=list)
    cwd: str | None = None
    env: dict[str, str] = Field(default_factory=dict)
    timeout_seconds: float | None = Field(default=None, gt=0)
    always_run: bool = False

    def to_job(self) -> Job:
        return Job(
            id=self.id,
            name=self.name,
            tool=self.tool,
            args=tuple(self.args),
            needs=tuple(self.needs),
            when=self.when.to_predicate() if self.when else always,
            outputs=tuple(self.outputs),
            inputs=tuple(self.inputs),
            artifacts_out=tuple(self.artifacts_out),
            artifacts_in=tuple(self.artifacts_in),
            cwd=self.cwd,
            env=dict(self.env),
            timeout_seconds=self.timeout_seconds,
            always_run=self.always_run,
        )


class EventRuleSpec(BaseModel):
    model_config = ConfigDict(extra="forbid")

    branches: list[str] = Field(default_factory=list)
    paths_ignore: list[str] = Field(default_factory=list)

    def to_rule(self) -> EventRule:
        return EventRule(branches=tuple(self.branches), paths_ignore=tuple(self.paths_ignore))


class LoopGuardSpec(BaseModel):
    model_config = ConfigDict(extra="forbid")

    descriptor_path: str = "kubernetes/deployment.yaml"
    marker: str = "[skip ci]"

    def to_guard(self) -> LoopGuard:
        return LoopGuard(descriptor_path=self.descriptor_path, marker=self.marker)


class PipelineSpecSection(BaseModel):
    """The 'spec' section: triggers, loop guard and jobs."""

    model_config = ConfigDict(extra="forbid")

    triggers: dict[EventKind, EventRuleSpec] = Field(default_factory=dict)
    loop_guard: LoopGuardSpec | None = None
    jobs: list[JobSpec] = Field(..., min_length=1)

    @field_validator("jobs")
    @classmethod
    def validate_unique_ids(cls, v: list[JobSpec]) -> list[JobSpec]:
        """Ensure job ids are unique."""
        ids = [job.id for job in v]
        if len(ids) != len(set(ids)):
            duplicates = {i for i in ids if ids.count(i) > 1}
            raise ValueError(f"Duplicate job ids: {duplicates}")
        return v

    @model_validator(mode="after")
    def validate_needs(self) -> PipelineSpecSection:
        """Ensure needs reference declared jobs."""
        ids = {job.id for job in self.jobs}
        for job in self.jobs:
            unknown = set(job.needs) - ids
            if unknown:
                raise ValueError(f"Job '{job.id}' needs unknown jobs: {unknown}")
        return self

    def to_trigger_filter(self) -> TriggerFilter | None:
        if not self.triggers and self.loop_guard is None:
            return None
        return TriggerFilter(
            rules={event: rule.to_rule() for event, rule in self.triggers.items()},
            loop_guard=self.loop_guard.to_guard() if self.loop_guard else None,
        )


class PipelineSpec(BaseModel):
    """Root model of a pipeline file."""

    model_config = ConfigDict(extra="forbid")

    apiVersion: Literal["shipline.io/v1"] = "shipline.io/v1"
    kind: Literal["Pipeline"] = "Pipeline"
    metadata: PipelineMetadataSpec
    spec: PipelineSpecSection

    def to_pipeline(self) -> Pipeline:
        """Convert to a runtime ``Pipeline``.

        Raises
        ------
        ConfigError
            If the push trigger does not ignore the loop guard's descriptor.
        """
        from shipline.pipelines import Pipeline

        return Pipeline(
            name=self.metadata.name,
            jobs=[job.to_job() for job in self.spec.jobs],
            trigger_filter=self.spec.to_trigger_filter(),
        )

    @classmethod
    def from_yaml(cls, yaml_content: str) -> PipelineSpec:
        """Parse and validate YAML content.

        Raises
        ------
        InvalidConfigError
            If the content is not valid YAML.
        pydantic.ValidationError
            If it does not match the schema.
        """
        try:
            data = yaml.safe_load(yaml_content)
        except yaml.YAMLError as e:
            raise InvalidConfigError("pipeline", "<yaml>", f"Invalid YAML: {e}") from e
        return cls.model_validate(data)

    @classmethod
    def from_yaml_file(cls, path: str | Path) -> PipelineSpec:
        return cls.from_yaml(Path(path).read_text(encoding="utf-8"))


def load_pipeline(path: str | Path) -> Pipeline:
    """Load a pipeline file straight into a runtime ``Pipeline``."""
    return PipelineSpec.from_yaml_file(path).to_pipeline()
