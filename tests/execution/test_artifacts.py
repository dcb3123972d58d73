"""Tests for the run-scoped artifact stores."""

from __future__ import annotations

import pytest

from shipline.core.errors import (
    ArtifactNotFoundError,
    ContractViolationError,
    InvalidConfigError,
    StorageError,
)
from shipline.core.hashing import content_digest
from shipline.execution.artifacts import (
    ArtifactRef,
    LocalArtifactStore,
    MemoryArtifactStore,
    pack_path,
    unpack_blob,
)


@pytest.fixture(params=["memory", "local"])
def store(request, tmp_path):
    if request.param == "memory":
        return MemoryArtifactStore("run-1")
    return LocalArtifactStore(tmp_path / "artifacts", "run-1")


class TestArtifactStore:
    def test_put_get(self, store):
        ref = store.put("build", "dist", b"bundle")
        assert ref == ArtifactRef("run-1", "build", "dist", content_digest(b"bundle"))
        assert store.get(ref) == b"bundle"
        assert store.lookup("build", "dist") == ref

    def test_same_bytes_same_ref(self, store):
        assert store.put("build", "dist", b"x") == store.put("build", "dist", b"x")

    def test_lookup_missing(self, store):
        with pytest.raises(ArtifactNotFoundError):
            store.lookup("build", "dist")

    def test_ref_from_other_run_does_not_resolve(self, store):
        store.put("build", "dist", b"bundle")
        foreign = ArtifactRef("run-0", "build", "dist", content_digest(b"bundle"))
        with pytest.raises(ArtifactNotFoundError):
            store.get(foreign)

    def test_unavailable_producer_is_a_contract_violation(self, store):
        store.mark_unavailable("build", "was skipped")
        with pytest.raises(ContractViolationError) as exc:
            store.lookup("build", "dist")
        assert "was skipped" in exc.value.message

    @pytest.mark.parametrize("name", ["", "a/b", "..", "."])
    def test_rejects_bad_names(self, store, name):
        with pytest.raises(InvalidConfigError):
            store.put("build", name, b"x")

    def test_discard_run(self, store):
        ref = store.put("build", "dist", b"bundle")
        store.discard_run()
        with pytest.raises(ArtifactNotFoundError):
            store.get(ref)

    def test_requires_run_id(self):
        with pytest.raises(InvalidConfigError):
            MemoryArtifactStore("")


def test_memory_backend_shared_between_runs_keeps_runs_apart():
    backend: dict = {}
    first = MemoryArtifactStore("run-1", backend)
    second = MemoryArtifactStore("run-2", backend)
    first.put("build", "dist", b"old")
    with pytest.raises(ArtifactNotFoundError):
        second.lookup("build", "dist")
    second.put("build", "dist", b"new")
    first.discard_run()
    assert second.get(second.lookup("build", "dist")) == b"new"


def test_memory_lookup_returns_latest_version():
    store = MemoryArtifactStore("run-1")
    store.put("build", "dist", b"v1")
    latest = store.put("build", "dist", b"v2")
    assert store.lookup("build", "dist") == latest


def test_local_store_detects_tampering(tmp_path):
    store = LocalArtifactStore(tmp_path, "run-1")
    ref = store.put("build", "dist", b"bundle")
    blob_path = tmp_path / "run-1" / "build" / "dist" / (ref.digest.split(":")[1] + ".blob")
    blob_path.write_bytes(b"tampered")
    with pytest.raises(StorageError, match="Digest mismatch"):
        store.get(ref)


class TestPacking:
    def test_directory_round_trip(self, tmp_path):
        src = tmp_path / "dist"
        (src / "assets").mkdir(parents=True)
        (src / "index.html").write_text("<html></html>")
        (src / "assets" / "app.js").write_text("console.log(1)")

        dest = unpack_blob(pack_path(src), tmp_path / "out")
        assert (dest / "index.html").read_text() == "<html></html>"
        assert (dest / "assets" / "app.js").read_text() == "console.log(1)"

    def test_missing_path(self, tmp_path):
        with pytest.raises(ArtifactNotFoundError):
            pack_path(tmp_path / "missing")

    def test_invalid_blob(self, tmp_path):
        with pytest.raises(StorageError):
            unpack_blob(b"not a tarball", tmp_path / "out")
