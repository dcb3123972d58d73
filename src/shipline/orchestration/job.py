"""Job — one gated unit of work in a pipeline graph, and its outcome.

Manifesto:
    A job is data: an id, the jobs it needs, a gate over the trigger, the
tool invocation that does the work, and the outputs/artifacts it promises.
The planner reasons about these declarations without running anything, and
the scheduler turns each execution into a ``JobResult``.

ARCHITECTURE
────────────
::

    Job
      ├── needs            ── dependency ids (ordered)
      ├── when             ── Predicate(TriggerContext) -> bool
      ├── tool/args/cwd    ── body, delegated to an ExternalToolAdapter
      ├── outputs          ── declared output keys
      ├── inputs           ── "job.key" references into dependencies
      ├── artifacts_out/in ── produced / consumed artifact names
      ├── timeout_seconds  ── per-job budget (None -> scheduler default)
      └── always_run       ── runs regardless of upstream outcome

    JobOutput   ── sealed key -> str mapping (immutable after completion)
    JobResult   ── status, skip reason, outputs, artifacts, timings

Tags:
    shipline, orchestration, job, result, outputs

Doc-Types:
    api-reference
"""

from __future__ import annotations

import re
from collections.abc import Iterator, Mapping
from dataclasses import dataclass, field
from datetime import datetime
from enum import Enum
from threading import Lock
from typing import Any

from shipline.core.errors import InvalidConfigError, OutputSealedError
from shipline.orchestration.trigger import Predicate, TriggerContext, always

_INPUT_REF = re.compile(r"^([A-Za-z0-9_.-]+)\.([A-Za-z0-9_-]+)$")
_ARG_REF = re.compile(r"\$\{([A-Za-z0-9_-]+)\.([A-Za-z0-9_-]+)\}")


def parse_input_ref(ref: str) -> tuple[str, str]:
    """Split ``"job.key"`` into ``("job", "key")``; the key is after the last dot."""
    job_id, sep, key = ref.rpartition(".")
    if not sep or not job_id or not key or not _INPUT_REF.match(ref):
        raise InvalidConfigError("inputs", ref, f"Input reference must be 'job.key', got {ref!r}")
    return job_id, key


def arg_references(args: tuple[str, ...]) -> set[str]:
    """``${job.key}`` placeholders used in an argument list."""
    return {f"{m.group(1)}.{m.group(2)}" for arg in args for m in _ARG_REF.finditer(arg)}


def render_args(args: tuple[str, ...], inputs: Mapping[str, Mapping[str, str]]) -> list[str]:
    """Substitute ``${job.key}`` placeholders from dependency outputs."""

    def replace(match: re.Match[str]) -> str:
        return inputs[match.group(1)][match.group(2)]

    return [_ARG_REF.sub(replace, arg) for arg in args]


class JobStatus(str, Enum):
    """Terminal state of a job in one run."""

    SUCCEEDED = "succeeded"
    FAILED = "failed"
    SKIPPED = "skipped"


class SkipReason(str, Enum):
    """Why a job was skipped (skip = never attempted)."""

    GATED = "gated"  # predicate false
    DEPENDENCY = "dependency"  # upstream failed or skipped
    CANCELLED = "cancelled"  # run cancelled before dispatch


@dataclass(frozen=True)
class Job:
    """
    A node in the pipeline graph.

    Attributes:
        id: Unique job identifier
        tool: Tool identifier resolved by the adapter registry
        args: Ordered argument list; ``${job.key}`` placeholders are filled
            from declared inputs
        needs: Ids of jobs that must reach a terminal state first
        when: Gate evaluated against the TriggerContext
        outputs: Output keys the job promises to publish
        inputs: ``"job.key"`` references read from direct dependencies
        artifacts_out: Artifact names the job produces
        artifacts_in: Artifact names the job consumes
        cwd: Working directory for the tool
        env: Extra environment for the tool
        timeout_seconds: Per-job timeout (``None`` uses the scheduler default)
        always_run: Run even when a dependency failed or was skipped
        name: Human-readable label
    """

    id: str
    tool: str
    args: tuple[str, ...] = ()
    needs: tuple[str, ...] = ()
    when: Predicate = always
    outputs: tuple[str, ...] = ()
    inputs: tuple[str, ...] = ()
    artifacts_out: tuple[str, ...] = ()
    artifacts_in: tuple[str, ...] = ()
    cwd: str | None = None
    env: Mapping[str, str] = field(default_factory=dict)
    timeout_seconds: float | None = None
    always_run: bool = False
    name: str = ""

    def __post_init__(self):
        if not self.id:
            raise InvalidConfigError("id", self.id, "Job id must not be empty")
        for attr in ("args", "needs", "outputs", "inputs", "artifacts_out", "artifacts_in"):
            value = getattr(self, attr)
            if isinstance(value, str):
                raise InvalidConfigError(attr, value, f"Job '{self.id}': {attr} must be a sequence, not a string")
            object.__setattr__(self, attr, tuple(value))
        if self.timeout_seconds is not None and self.timeout_seconds <= 0:
            raise InvalidConfigError("timeout_seconds", self.timeout_seconds)
        if len(set(self.needs)) != len(self.needs):
            raise InvalidConfigError("needs", self.needs, f"Job '{self.id}' lists a dependency twice")
        for ref in self.inputs:
            parse_input_ref(ref)

    @property
    def label(self) -> str:
        return self.name or self.id

    def is_gated_in(self, trigger: TriggerContext) -> bool:
        return bool(self.when(trigger))

    def input_sources(self) -> dict[str, set[str]]:
        """Declared inputs grouped by producing job."""
        grouped: dict[str, set[str]] = {}
        for ref in self.inputs:
            job_id, key = parse_input_ref(ref)
            grouped.setdefault(job_id, set()).add(key)
        return grouped


class JobOutput(Mapping[str, str]):
    """
    Output entries published by one job execution.

    Values are opaque strings.  A job may overwrite its own keys while it is
    running; once sealed the mapping is read-only and every dependent sees the
    same snapshot.
    """

    def __init__(self, job_id: str, entries: Mapping[str, str] | None = None):
        self.job_id = job_id
        self._entries: dict[str, str] = {}
        self._sealed = False
        self._lock = Lock()
        for key, value in (entries or {}).items():
            self.publish(key, value)

    def publish(self, key: str, value: Any) -> None:
        with self._lock:
            if self._sealed:
                raise OutputSealedError(self.job_id, key)
            self._entries[key] = str(value)

    def seal(self) -> JobOutput:
        with self._lock:
            self._sealed = True
        return self

    @property
    def sealed(self) -> bool:
        return self._sealed

    def __getitem__(self, key: str) -> str:
        return self._entries[key]

    def __iter__(self) -> Iterator[str]:
        return iter(self._entries)

    def __len__(self) -> int:
        return len(self._entries)

    def __repr__(self) -> str:
        state = "sealed" if self._sealed else "open"
        return f"JobOutput({self.job_id!r}, {self._entries!r}, {state})"


@dataclass
class JobResult:
    """Outcome of one job in one run."""

    job_id: str
    status: JobStatus
    skip_reason: SkipReason | None = None
    outputs: JobOutput | None = None
    artifacts: dict[str, Any] = field(default_factory=dict)
    exit_code: int | None = None
    error: str | None = None
    error_category: str | None = None
    warnings: list[str] = field(default_factory=list)
    started_at: datetime | None = None
    completed_at: datetime | None = None

    @classmethod
    def skipped(cls, job_id: str, reason: SkipReason, detail: str | None = None) -> JobResult:
        return cls(job_id=job_id, status=JobStatus.SKIPPED, skip_reason=reason, error=detail)

    @property
    def succeeded(self) -> bool:
        return self.status == JobStatus.SUCCEEDED

    @property
    def duration_seconds(self) -> float | None:
        if self.started_at and self.completed_at:
            return (self.completed_at - self.started_at).total_seconds()
        return None

    def to_dict(self) -> dict[str, Any]:
        """Serialize for logging/reporting."""
        return {
            "job_id": self.job_id,
            "status": self.status.value,
            "skip_reason": self.skip_reason.value if self.skip_reason else None,
            "exit_code": self.exit_code,
            "error": self.error,
            "error_category": self.error_category,
            "warnings": list(self.warnings),
            "outputs": dict(self.outputs) if self.outputs else {},
            "artifacts": {name: str(ref) for name, ref in self.artifacts.items()},
            "started_at": self.started_at.isoformat() if self.started_at else None,
            "completed_at": self.completed_at.isoformat() if self.completed_at else None,
            "duration_seconds": self.duration_seconds,
        }
