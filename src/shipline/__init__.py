"""
shipline - dependency-ordered CI/CD pipelines.

Jobs are data, plans are pure, and the deployment descriptor update breaks
its own re-trigger loop with a commit marker plus a changed-path filter.
"""

__version__ = "0.1.0"

from shipline.core.errors import ShiplineError  # noqa: E402
from shipline.core.settings import ShiplineSettings  # noqa: E402
from shipline.deploy.updater import DeploymentUpdater  # noqa: E402
from shipline.execution.adapters import (  # noqa: E402
    ExternalToolAdapter,
    SubprocessToolAdapter,
    ToolRegistry,
    ToolRequest,
    ToolResponse,
)
from shipline.execution.artifacts import ArtifactRef, ArtifactStore, LocalArtifactStore, MemoryArtifactStore  # noqa: E402
from shipline.orchestration import (  # noqa: E402
    DependencyScheduler,
    ExecutionPlan,
    Job,
    JobStatus,
    LoopGuard,
    RunResult,
    RunStatus,
    SkipReason,
    TriggerContext,
    TriggerFilter,
)
from shipline.pipelines import Pipeline, standard_pipeline, standard_tools  # noqa: E402
from shipline.retention.cleaner import ImageRecord, RetentionCleaner, RetentionPolicy, RunRecord  # noqa: E402

__all__ = [
    "__version__",
    "ArtifactRef",
    "ArtifactStore",
    "DependencyScheduler",
    "DeploymentUpdater",
    "ExecutionPlan",
    "ExternalToolAdapter",
    "ImageRecord",
    "Job",
    "JobStatus",
    "LocalArtifactStore",
    "LoopGuard",
    "MemoryArtifactStore",
    "Pipeline",
    "RetentionCleaner",
    "RetentionPolicy",
    "RunRecord",
    "RunResult",
    "RunStatus",
    "ShiplineError",
    "ShiplineSettings",
    "SkipReason",
    "SubprocessToolAdapter",
    "ToolRegistry",
    "ToolRequest",
    "ToolResponse",
    "TriggerContext",
    "TriggerFilter",
    "standard_pipeline",
    "standard_tools",
]
