"""Artifact store — run-scoped, content-addressed handoff between jobs.

Manifesto:
    Jobs do not share a filesystem.  The build job's ``dist`` tree reaches the
docker job only through the store: the producer ``put``s a blob and gets an
``ArtifactRef`` carrying its digest; the consumer ``get``s the blob back and
the digest is re-checked on read.  Refs are scoped to one run, so nothing a
previous run produced can leak into the current one.

ARCHITECTURE
────────────
::

    ArtifactStore (abstract, bound to one run_id)
      ├── put(producer_job_id, name, blob) -> ArtifactRef
      ├── get(ref) -> bytes                       (ArtifactNotFoundError)
      ├── lookup(producer_job_id, name) -> ArtifactRef
      ├── mark_unavailable(job_id, reason)        (failed / skipped producer)
      └── discard_run()

    MemoryArtifactStore   ── dict backend (tests, single-process runs)
    LocalArtifactStore    ── <root>/<run_id>/<producer>/<name>/<hex>.blob

    pack_path(path) / unpack_blob(blob, dest)   ── gzip tarball helpers

Tags:
    shipline, execution, artifacts, content-addressed, storage

Doc-Types:
    api-reference
"""

from __future__ import annotations

import io
import shutil
import tarfile
from abc import ABC, abstractmethod
from dataclasses import dataclass
from pathlib import Path
from threading import Lock

import structlog

from shipline.core.errors import (
    ArtifactNotFoundError,
    ContractViolationError,
    InvalidConfigError,
    StorageError,
)
from shipline.core.hashing import content_digest

logger = structlog.get_logger()


@dataclass(frozen=True)
class ArtifactRef:
    """Reference to one stored artifact version."""

    run_id: str
    producer: str
    name: str
    digest: str

    def __str__(self) -> str:
        return f"{self.run_id}/{self.producer}/{self.name}@{self.digest}"


class ArtifactStore(ABC):
    """Base class for run-scoped artifact stores."""

    def __init__(self, run_id: str):
        if not run_id:
            raise InvalidConfigError("run_id", run_id, "Artifact store requires a run id")
        self.run_id = run_id
        self._unavailable: dict[str, str] = {}
        self._lock = Lock()

    # ------------------------------------------------------------------
    # Public API
    # ------------------------------------------------------------------

    def put(self, producer_job_id: str, artifact_name: str, blob: bytes) -> ArtifactRef:
        """Store ``blob`` as ``artifact_name`` produced by ``producer_job_id``."""
        if not artifact_name or "/" in artifact_name or artifact_name in (".", ".."):
            raise InvalidConfigError("artifact_name", artifact_name)
        ref = ArtifactRef(
            run_id=self.run_id,
            producer=producer_job_id,
            name=artifact_name,
            digest=content_digest(blob),
        )
        with self._lock:
            self._write(ref, blob)
        logger.debug(
            "artifacts.put",
            run_id=self.run_id,
            producer=producer_job_id,
            artifact=artifact_name,
            digest=ref.digest,
            size=len(blob),
        )
        return ref

    def get(self, ref: ArtifactRef) -> bytes:
        """Read an artifact back; the digest is verified."""
        self._check_available(ref.producer, ref.name)
        if ref.run_id != self.run_id:
            raise ArtifactNotFoundError(ref)
        with self._lock:
            blob = self._read(ref)
        if blob is None:
            raise ArtifactNotFoundError(ref)
        if content_digest(blob) != ref.digest:
            raise StorageError(f"Digest mismatch for artifact {ref}")
        return blob

    def lookup(self, producer_job_id: str, artifact_name: str) -> ArtifactRef:
        """Latest ref for ``artifact_name`` produced by ``producer_job_id`` in this run."""
        self._check_available(producer_job_id, artifact_name)
        with self._lock:
            ref = self._latest(producer_job_id, artifact_name)
        if ref is None:
            raise ArtifactNotFoundError(f"{self.run_id}/{producer_job_id}/{artifact_name}")
        return ref

    def mark_unavailable(self, job_id: str, reason: str) -> None:
        """Record that ``job_id`` failed or was skipped; its artifacts never resolve."""
        self._unavailable[job_id] = reason

    def discard_run(self) -> None:
        """Drop every artifact of this run."""
        with self._lock:
            self._clear()
        logger.debug("artifacts.discarded", run_id=self.run_id)

    # ------------------------------------------------------------------
    # Backend hooks
    # ------------------------------------------------------------------

    @abstractmethod
    def _write(self, ref: ArtifactRef, blob: bytes) -> None: ...

    @abstractmethod
    def _read(self, ref: ArtifactRef) -> bytes | None: ...

    @abstractmethod
    def _latest(self, producer: str, name: str) -> ArtifactRef | None: ...

    @abstractmethod
    def _clear(self) -> None: ...

    def _check_available(self, producer: str, name: str) -> None:
        reason = self._unavailable.get(producer)
        if reason is not None:
            raise ContractViolationError(
                producer, f"artifact '{name}' requested but the producing job {reason}"
            )


class MemoryArtifactStore(ArtifactStore):
    """In-process store; pass a shared ``backend`` dict to model several runs."""

    def __init__(self, run_id: str, backend: dict[ArtifactRef, bytes] | None = None):
        super().__init__(run_id)
        self._blobs = backend if backend is not None else {}
        self._order: list[ArtifactRef] = []

    def _write(self, ref: ArtifactRef, blob: bytes) -> None:
        self._blobs[ref] = bytes(blob)
        self._order.append(ref)

    def _read(self, ref: ArtifactRef) -> bytes | None:
        return self._blobs.get(ref)

    def _latest(self, producer: str, name: str) -> ArtifactRef | None:
        for ref in reversed(self._order):
            if ref.producer == producer and ref.name == name:
                return ref
        return None

    def _clear(self) -> None:
        for ref in [r for r in self._blobs if r.run_id == self.run_id]:
            del self._blobs[ref]
        self._order.clear()


class LocalArtifactStore(ArtifactStore):
    """Filesystem store under ``<root>/<run_id>/``."""

    def __init__(self, root: Path | str, run_id: str):
        super().__init__(run_id)
        self.root = Path(root)
        self.run_dir = self.root / run_id

    def _path(self, ref: ArtifactRef) -> Path:
        return self.run_dir / ref.producer / ref.name / (ref.digest.split(":", 1)[-1] + ".blob")

    def _write(self, ref: ArtifactRef, blob: bytes) -> None:
        path = self._path(ref)
        try:
            path.parent.mkdir(parents=True, exist_ok=True)
            tmp = path.with_suffix(".tmp")
            tmp.write_bytes(blob)
            tmp.replace(path)
        except OSError as e:
            raise StorageError(f"Failed to write artifact {ref}", cause=e) from e

    def _read(self, ref: ArtifactRef) -> bytes | None:
        path = self._path(ref)
        if not path.is_file():
            return None
        return path.read_bytes()

    def _latest(self, producer: str, name: str) -> ArtifactRef | None:
        directory = self.run_dir / producer / name
        if not directory.is_dir():
            return None
        blobs = sorted(directory.glob("*.blob"), key=lambda p: p.stat().st_mtime_ns)
        if not blobs:
            return None
        return ArtifactRef(
            run_id=self.run_id,
            producer=producer,
            name=name,
            digest="sha256:" + blobs[-1].stem,
        )

    def _clear(self) -> None:
        shutil.rmtree(self.run_dir, ignore_errors=True)


# =============================================================================
# Tree packing
# =============================================================================


def pack_path(path: Path | str) -> bytes:
    """Pack a file or directory tree into a gzip tarball (entries relative to ``path``)."""
    source = Path(path)
    if not source.exists():
        raise ArtifactNotFoundError(str(source))
    buffer = io.BytesIO()
    with tarfile.open(fileobj=buffer, mode="w:gz") as tar:
        if source.is_dir():
            for child in sorted(source.rglob("*")):
                tar.add(child, arcname=str(child.relative_to(source)), recursive=False)
        else:
            tar.add(source, arcname=source.name, recursive=False)
    return buffer.getvalue()


def unpack_blob(blob: bytes, destination: Path | str) -> Path:
    """Extract a tarball produced by :func:`pack_path` into ``destination``."""
    dest = Path(destination)
    dest.mkdir(parents=True, exist_ok=True)
    try:
        with tarfile.open(fileobj=io.BytesIO(blob), mode="r:gz") as tar:
            tar.extractall(dest, filter="data")
    except tarfile.TarError as e:
        raise StorageError(f"Artifact is not a valid tarball: {e}", cause=e) from e
    return dest
