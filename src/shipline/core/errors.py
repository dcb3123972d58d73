"""
Structured error types for shipline.

Every failure the orchestrator raises carries a category, a retryable flag
and a structured context, so run reports and logs can classify it without
matching on message text.

Hierarchy::

    ShiplineError (category, retryable, context, cause)
    ├── ConfigError ─────────── InvalidConfigError, ContractViolationError
    ├── OrchestrationError ──── CycleDetectedError, DependencyError,
    │                           DuplicateJobError, OutputSealedError
    ├── ToolError ───────────── UnknownToolError
    ├── StorageError ────────── ArtifactNotFoundError
    ├── DeploymentError ─────── DescriptorFormatError, VersionControlError
    └── RegistryError

Guardrails:
    ❌ DON'T: Raise ContractViolationError when a job reads its inputs
    ✅ DO: Detect unresolvable inputs and artifacts while planning

    ❌ DON'T: Drop the underlying exception
    ✅ DO: Pass it as ``cause=`` so ``__cause__`` is chained

Tags:
    error-handling, exception-hierarchy, error-context, shipline

Doc-Types:
    - API Reference
"""

from __future__ import annotations

from dataclasses import dataclass, field, fields
from enum import Enum
from typing import Any


class ErrorCategory(str, Enum):
    """
    Coarse classification used in job results and run reports.

    Attributes:
        CONFIG: Pipeline definition or settings are wrong
        CONTRACT: A declared input or artifact can never materialize
        ORCHESTRATION: Planner or scheduler rejected the graph
        TOOL: An external tool returned non-success
        TIMEOUT: A job exceeded its deadline
        STORAGE: Artifact store failure
        DEPLOYMENT: Descriptor update or commit failure
        REGISTRY: Registry / run-history API failure
        NETWORK: Connection-level failure
        INTERNAL: Bug or unexpected state inside shipline
        UNKNOWN: Anything else
    """

    CONFIG = "CONFIG"
    CONTRACT = "CONTRACT"
    ORCHESTRATION = "ORCHESTRATION"
    TOOL = "TOOL"
    TIMEOUT = "TIMEOUT"
    STORAGE = "STORAGE"
    DEPLOYMENT = "DEPLOYMENT"
    REGISTRY = "REGISTRY"
    NETWORK = "NETWORK"
    INTERNAL = "INTERNAL"
    UNKNOWN = "UNKNOWN"


@dataclass
class ErrorContext:
    """
    Where an error happened.

    Unset fields are left out of :meth:`to_dict`; ad-hoc keys live in
    ``metadata`` and are flattened into the same mapping.

    Examples:
        >>> ErrorContext(job="docker", tool="trivy").to_dict()
        {'job': 'docker', 'tool': 'trivy'}
    """

    pipeline: str | None = None
    job: str | None = None
    run_id: str | None = None
    tool: str | None = None
    path: str | None = None
    url: str | None = None
    http_status: int | None = None
    metadata: dict[str, Any] = field(default_factory=dict)

    def to_dict(self) -> dict[str, Any]:
        data = {
            f.name: getattr(self, f.name)
            for f in fields(self)
            if f.name != "metadata" and getattr(self, f.name) is not None
        }
        data.update(self.metadata)
        return data


class ShiplineError(Exception):
    """
    Root of every error shipline raises on purpose.

    Subclasses pick their ``default_category`` (and, rarely,
    ``default_retryable``); call sites usually pass only a message.

    Examples:
        >>> err = ToolError("docker push failed").with_context(job="docker")
        >>> err.category, err.context.job
        (<ErrorCategory.TOOL: 'TOOL'>, 'docker')
    """

    default_category = ErrorCategory.INTERNAL
    default_retryable = False

    def __init__(
        self,
        message: str,
        *,
        category: ErrorCategory | None = None,
        retryable: bool | None = None,
        context: ErrorContext | None = None,
        cause: Exception | None = None,
    ):
        super().__init__(message)
        self.message = message
        self.category = category if category is not None else self.default_category
        self.retryable = self.default_retryable if retryable is None else retryable
        self.context = context if context is not None else ErrorContext()
        self.cause = cause
        if cause is not None:
            self.__cause__ = cause

    def with_context(self, **values: Any) -> ShiplineError:
        """Set context fields in place and return ``self``; unknown keys go to ``metadata``."""
        known = {f.name for f in fields(self.context)} - {"metadata"}
        for key, value in values.items():
            if key in known:
                setattr(self.context, key, value)
            else:
                self.context.metadata[key] = value
        return self

    def to_dict(self) -> dict[str, Any]:
        """Serializable form for logs and run reports."""
        data: dict[str, Any] = {
            "error_type": type(self).__name__,
            "message": self.message,
            "category": self.category.value,
            "retryable": self.retryable,
        }
        if context := self.context.to_dict():
            data["context"] = context
        if self.cause is not None:
            data["cause"] = str(self.cause)
        return data

    def __repr__(self) -> str:
        return f"{type(self).__name__}({self.message!r}, category={self.category.value})"


# =============================================================================
# CONFIGURATION ERRORS
# =============================================================================


class ConfigError(ShiplineError):
    """The pipeline definition or settings must be fixed; never retried."""

    default_category = ErrorCategory.CONFIG


class InvalidConfigError(ConfigError):
    """A single configuration value is unusable."""

    def __init__(self, key: str, value: Any, message: str | None = None):
        self.key = key
        self.value = value
        super().__init__(message or f"{key} has an unusable value: {value!r}")


class ContractViolationError(ConfigError):
    """A job consumes an output or artifact that can never materialize."""

    default_category = ErrorCategory.CONTRACT

    def __init__(self, job_id: str, message: str):
        self.job_id = job_id
        super().__init__(f"Job '{job_id}': {message}", context=ErrorContext(job=job_id))


# =============================================================================
# ORCHESTRATION ERRORS
# =============================================================================


class OrchestrationError(ShiplineError):
    default_category = ErrorCategory.ORCHESTRATION


class CycleDetectedError(OrchestrationError):
    """The job graph is not acyclic."""

    def __init__(self, cycle: list[str]):
        self.cycle = cycle
        super().__init__(f"Cycle detected in job graph: {' -> '.join(cycle)}")


class DependencyError(OrchestrationError):
    """A job needs jobs that are not part of the pipeline."""

    def __init__(self, job_id: str, missing: list[str]):
        self.job_id = job_id
        self.missing = missing
        super().__init__(f"Job '{job_id}' depends on unknown jobs: {', '.join(missing)}")


class DuplicateJobError(OrchestrationError):
    def __init__(self, job_id: str):
        self.job_id = job_id
        super().__init__(f"Duplicate job id: {job_id}")


class OutputSealedError(OrchestrationError):
    """A completed job's output was written to."""

    def __init__(self, job_id: str, key: str):
        self.job_id = job_id
        self.key = key
        super().__init__(f"Output of job '{job_id}' is sealed; cannot publish '{key}'")


# =============================================================================
# TOOL ERRORS
# =============================================================================


class ToolError(ShiplineError):
    """An external tool could not be invoked or broke its contract."""

    default_category = ErrorCategory.TOOL


class UnknownToolError(ToolError):
    def __init__(self, tool: str):
        self.tool = tool
        super().__init__(f"No adapter registered for tool: {tool}", context=ErrorContext(tool=tool))


# =============================================================================
# STORAGE ERRORS
# =============================================================================


class StorageError(ShiplineError):
    default_category = ErrorCategory.STORAGE


class ArtifactNotFoundError(StorageError):
    """The artifact reference does not resolve in this run."""

    def __init__(self, ref: Any):
        self.ref = ref
        super().__init__(f"Artifact not found: {ref}")


# =============================================================================
# DEPLOYMENT ERRORS
# =============================================================================


class DeploymentError(ShiplineError):
    default_category = ErrorCategory.DEPLOYMENT


class DescriptorFormatError(DeploymentError):
    """The descriptor has no ``image:`` line for the configured prefix."""

    def __init__(self, prefix: str, path: str | None = None):
        self.prefix = prefix
        super().__init__(
            f"No 'image: {prefix}:<tag>' line found in deployment descriptor",
            context=ErrorContext(path=path),
        )


class VersionControlError(DeploymentError):
    """Committing or pushing the descriptor failed."""


# =============================================================================
# REGISTRY ERRORS
# =============================================================================


class RegistryError(ShiplineError):
    """Registry or run-history API error."""

    default_category = ErrorCategory.REGISTRY


def categorize_error(error: Exception) -> ErrorCategory:
    """Category for any exception, shipline's own or not."""
    if isinstance(error, ShiplineError):
        return error.category
    if isinstance(error, TimeoutError):
        return ErrorCategory.TIMEOUT
    if isinstance(error, OSError):
        return ErrorCategory.NETWORK
    if isinstance(error, (ValueError, KeyError)):
        return ErrorCategory.CONFIG
    return ErrorCategory.UNKNOWN


__all__ = [
    "ArtifactNotFoundError",
    "ConfigError",
    "ContractViolationError",
    "CycleDetectedError",
    "DependencyError",
    "DeploymentError",
    "DescriptorFormatError",
    "DuplicateJobError",
    "ErrorCategory",
    "ErrorContext",
    "InvalidConfigError",
    "OrchestrationError",
    "OutputSealedError",
    "RegistryError",
    "ShiplineError",
    "StorageError",
    "ToolError",
    "UnknownToolError",
    "VersionControlError",
    "categorize_error",
]
