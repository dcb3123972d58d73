"""External tool adapters — the narrow contract between jobs and the tools they run.

The scheduler never knows whether a job runs ``npm test``, ``docker build``,
a registry API call or an in-process Python function.  It builds a
``ToolRequest`` and hands it to an ``ExternalToolAdapter``; the adapter
answers with a ``ToolResponse`` (exit status, published outputs, produced
artifacts).

ARCHITECTURE
────────────
::

    ToolRequest   ── tool, args, cwd, env, inputs, consumed artifacts,
                     artifacts to collect, timeout
    ToolResponse  ── exit_code, outputs, artifacts, log tail

    ExternalToolAdapter (Protocol)
      ├── SubprocessToolAdapter ── runs an executable; outputs via the
      │                            $SHIPLINE_OUTPUT file (key=value lines)
      ├── CallableToolAdapter   ── wraps a Python callable
      └── ToolRegistry          ── dispatches by tool identifier

Artifacts are exchanged by name: a consumed artifact ``dist`` is unpacked to
``<cwd>/dist`` before the tool runs, and a produced artifact ``dist`` is
packed from ``<cwd>/dist`` after it succeeds.

Tags:
    shipline, execution, adapters, subprocess, tools

Doc-Types:
    api-reference
"""

from __future__ import annotations

import os
import subprocess
import tempfile
from collections.abc import Callable, Mapping
from dataclasses import dataclass, field
from pathlib import Path
from typing import Protocol, runtime_checkable

import structlog

from shipline.core.errors import ToolError, UnknownToolError
from shipline.execution.artifacts import pack_path, unpack_blob
from shipline.execution.timeout import TimeoutExpired

logger = structlog.get_logger()

OUTPUT_ENV_VARS = ("SHIPLINE_OUTPUT", "GITHUB_OUTPUT")
_LOG_TAIL_CHARS = 4000


@dataclass(frozen=True)
class ToolRequest:
    """
    One invocation of an external tool.

    Attributes:
        tool: Tool identifier (resolved by a ToolRegistry)
        args: Ordered argument list, placeholders already rendered
        cwd: Working directory (None -> current directory)
        consumed_artifacts: Artifact name -> blob, for declared inputs
        produces_artifacts: Artifact names to collect after success
        inputs: Producing job id -> its sealed outputs
        env: Extra environment variables
        timeout_seconds: Deadline the adapter may enforce itself
        job_id: Requesting job (for logs)
        run_id: Requesting run (for logs)
    """

    tool: str
    args: tuple[str, ...] = ()
    cwd: str | None = None
    consumed_artifacts: Mapping[str, bytes] = field(default_factory=dict)
    produces_artifacts: tuple[str, ...] = ()
    inputs: Mapping[str, Mapping[str, str]] = field(default_factory=dict)
    env: Mapping[str, str] = field(default_factory=dict)
    timeout_seconds: float | None = None
    job_id: str = ""
    run_id: str = ""

    def input(self, job_id: str, key: str, default: str | None = None) -> str | None:
        """Read one dependency output."""
        return self.inputs.get(job_id, {}).get(key, default)


@dataclass
class ToolResponse:
    """What a tool reported back."""

    exit_code: int
    outputs: dict[str, str] = field(default_factory=dict)
    artifacts: dict[str, bytes] = field(default_factory=dict)
    log: str = ""
    error: str | None = None
    warnings: list[str] = field(default_factory=list)

    @property
    def succeeded(self) -> bool:
        return self.exit_code == 0

    @classmethod
    def ok(cls, outputs: Mapping[str, str] | None = None, **kwargs) -> ToolResponse:
        return cls(exit_code=0, outputs=dict(outputs or {}), **kwargs)

    @classmethod
    def fail(cls, error: str, exit_code: int = 1, **kwargs) -> ToolResponse:
        return cls(exit_code=exit_code, error=error, **kwargs)


@runtime_checkable
class ExternalToolAdapter(Protocol):
    """Anything that can run a ToolRequest to completion."""

    def invoke(self, request: ToolRequest) -> ToolResponse: ...


def parse_output_file(text: str) -> dict[str, str]:
    """
    Parse ``key=value`` lines, plus ``key<<DELIM`` ... ``DELIM`` blocks.

    Later lines overwrite earlier ones for the same key.
    """
    outputs: dict[str, str] = {}
    lines = text.splitlines()
    i = 0
    while i < len(lines):
        line = lines[i]
        i += 1
        if not line.strip():
            continue
        if "<<" in line and ("=" not in line or line.index("<<") < line.index("=")):
            key, delimiter = line.split("<<", 1)
            block: list[str] = []
            while i < len(lines) and lines[i] != delimiter:
                block.append(lines[i])
                i += 1
            if i >= len(lines):
                raise ToolError(f"Unterminated output block for '{key}' (missing {delimiter!r})")
            i += 1
            outputs[key.strip()] = "\n".join(block)
        elif "=" in line:
            key, value = line.split("=", 1)
            outputs[key.strip()] = value
        else:
            raise ToolError(f"Malformed output line: {line!r}")
    return outputs


class SubprocessToolAdapter:
    """
    Runs the tool identifier (or ``executable``) as a child process.

    The child finds an output file path in ``$SHIPLINE_OUTPUT`` (and
    ``$GITHUB_OUTPUT``) and appends ``key=value`` lines to publish outputs.
    """

    def __init__(self, executable: str | None = None, base_env: Mapping[str, str] | None = None):
        self.executable = executable
        self.base_env = dict(base_env) if base_env is not None else None

    def invoke(self, request: ToolRequest) -> ToolResponse:
        cwd = Path(request.cwd) if request.cwd else Path.cwd()
        for name, blob in request.consumed_artifacts.items():
            unpack_blob(blob, cwd / name)

        command = [self.executable or request.tool, *request.args]
        with tempfile.TemporaryDirectory(prefix="shipline-") as tmp:
            output_file = Path(tmp) / "outputs"
            output_file.touch()
            env = dict(os.environ if self.base_env is None else self.base_env)
            env.update(request.env)
            for var in OUTPUT_ENV_VARS:
                env[var] = str(output_file)

            logger.debug("tool.exec", job=request.job_id, command=command, cwd=str(cwd))
            try:
                completed = subprocess.run(
                    command,
                    cwd=cwd,
                    env=env,
                    capture_output=True,
                    text=True,
                    timeout=request.timeout_seconds,
                    check=False,
                )
            except subprocess.TimeoutExpired as e:
                raise TimeoutExpired(
                    timeout=request.timeout_seconds or 0.0,
                    operation=request.job_id or request.tool,
                ) from e
            except FileNotFoundError:
                return ToolResponse.fail(f"Executable not found: {command[0]}", exit_code=127)

            log = (completed.stdout + completed.stderr)[-_LOG_TAIL_CHARS:]
            if completed.returncode != 0:
                return ToolResponse.fail(
                    f"{command[0]} exited with status {completed.returncode}",
                    exit_code=completed.returncode,
                    log=log,
                )

            outputs = parse_output_file(output_file.read_text(encoding="utf-8"))

        artifacts: dict[str, bytes] = {}
        for name in request.produces_artifacts:
            path = cwd / name
            if not path.exists():
                return ToolResponse.fail(
                    f"Declared artifact '{name}' was not produced at {path}",
                    outputs=outputs,
                    log=log,
                )
            artifacts[name] = pack_path(path)

        return ToolResponse(exit_code=0, outputs=outputs, artifacts=artifacts, log=log)


class CallableToolAdapter:
    """Adapter around a Python callable ``fn(request) -> ToolResponse``."""

    def __init__(self, fn: Callable[[ToolRequest], ToolResponse], name: str | None = None):
        self.fn = fn
        self.name = name or getattr(fn, "__name__", "callable")

    def invoke(self, request: ToolRequest) -> ToolResponse:
        response = self.fn(request)
        if not isinstance(response, ToolResponse):
            raise ToolError(
                f"Tool '{self.name}' returned {type(response).__name__}, expected ToolResponse"
            ).with_context(tool=self.name, job=request.job_id)
        return response


class ToolRegistry:
    """
    Dispatches requests to the adapter registered for ``request.tool``.

    A ``default`` adapter (typically :class:`SubprocessToolAdapter`) handles
    tool identifiers with no explicit registration.
    """

    def __init__(self, default: ExternalToolAdapter | None = None):
        self._adapters: dict[str, ExternalToolAdapter] = {}
        self.default = default

    def register(self, tool: str, adapter: ExternalToolAdapter | Callable[[ToolRequest], ToolResponse]) -> None:
        if not isinstance(adapter, ExternalToolAdapter):
            adapter = CallableToolAdapter(adapter, name=tool)
        self._adapters[tool] = adapter

    def resolve(self, tool: str) -> ExternalToolAdapter:
        adapter = self._adapters.get(tool, self.default)
        if adapter is None:
            raise UnknownToolError(tool)
        return adapter

    def invoke(self, request: ToolRequest) -> ToolResponse:
        return self.resolve(request.tool).invoke(request)

    def __contains__(self, tool: str) -> bool:
        return tool in self._adapters

    def tools(self) -> list[str]:
        return sorted(self._adapters)
