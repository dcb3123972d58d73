"""
Test support utilities for shipline tests.

Helpers that are not fixtures: a recording tool registry and tool-body
factories for in-process jobs.
"""

from __future__ import annotations

import threading
from collections.abc import Callable

from shipline.execution.adapters import ToolRegistry, ToolRequest, ToolResponse

DEPLOYMENT_YAML = """\
apiVersion: apps/v1
kind: Deployment
metadata:
  name: web
spec:
  replicas: 2
  template:
    spec:
      containers:
        - name: web
          image: ghcr.io/org/repo:sha-000000
          ports:
            - containerPort: 3000
        - name: sidecar
          image: docker.io/library/nginx:1.27
"""


class RecordingTools(ToolRegistry):
    """ToolRegistry that records every request it dispatches."""

    def __init__(self):
        super().__init__()
        self.requests: list[ToolRequest] = []
        self._lock = threading.Lock()

    def invoke(self, request: ToolRequest) -> ToolResponse:
        with self._lock:
            self.requests.append(request)
        return super().invoke(request)

    def request_for(self, job_id: str) -> ToolRequest:
        for request in self.requests:
            if request.job_id == job_id:
                return request
        raise KeyError(job_id)

    @property
    def invoked(self) -> list[str]:
        return [r.job_id for r in self.requests]


def ok(**outputs: str) -> Callable[[ToolRequest], ToolResponse]:
    """Tool body that succeeds and publishes ``outputs``."""

    def tool(request: ToolRequest) -> ToolResponse:
        return ToolResponse.ok(outputs)

    return tool


def fail(message: str = "boom", exit_code: int = 1) -> Callable[[ToolRequest], ToolResponse]:
    """Tool body that reports a non-zero exit."""

    def tool(request: ToolRequest) -> ToolResponse:
        return ToolResponse.fail(message, exit_code=exit_code)

    return tool
