"""
Execution layer: tool adapters, the run-scoped artifact store and timeouts.
"""

from shipline.execution.adapters import (
    CallableToolAdapter,
    ExternalToolAdapter,
    SubprocessToolAdapter,
    ToolRegistry,
    ToolRequest,
    ToolResponse,
)
from shipline.execution.artifacts import ArtifactRef, ArtifactStore, LocalArtifactStore, MemoryArtifactStore
from shipline.execution.timeout import TimeoutExpired, run_with_timeout

__all__ = [
    "ArtifactRef",
    "ArtifactStore",
    "CallableToolAdapter",
    "ExternalToolAdapter",
    "LocalArtifactStore",
    "MemoryArtifactStore",
    "SubprocessToolAdapter",
    "TimeoutExpired",
    "ToolRegistry",
    "ToolRequest",
    "ToolResponse",
    "run_with_timeout",
]
