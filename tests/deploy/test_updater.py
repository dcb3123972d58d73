"""Tests for the deployment descriptor updater."""

from __future__ import annotations

import pytest

from shipline.core.errors import DescriptorFormatError, InvalidConfigError
from shipline.deploy.updater import DeploymentUpdater
from shipline.execution.adapters import ToolRequest
from shipline.orchestration.trigger import LoopGuard

PREFIX = "ghcr.io/org/repo"
NEW_IMAGE = "ghcr.io/org/repo:sha-abc123"


@pytest.fixture
def updater() -> DeploymentUpdater:
    return DeploymentUpdater(PREFIX)


class TestApply:
    def test_rewrites_only_the_matching_line(self, updater, descriptor_text):
        updated, changed = updater.apply(descriptor_text, NEW_IMAGE)
        assert changed
        assert updated == descriptor_text.replace("ghcr.io/org/repo:sha-000000", NEW_IMAGE)
        assert "image: docker.io/library/nginx:1.27" in updated

    def test_is_idempotent(self, updater, descriptor_text):
        once, _ = updater.apply(descriptor_text, NEW_IMAGE)
        twice, changed = updater.apply(once, NEW_IMAGE)
        assert twice == once
        assert not changed

    def test_preserves_crlf_and_comments(self, updater):
        text = "spec:\r\n  image: 'ghcr.io/org/repo:old'  # pinned by CI\r\n  replicas: 1\r\n"
        updated, _ = updater.apply(text, NEW_IMAGE)
        assert updated == f"spec:\r\n  image: '{NEW_IMAGE}'  # pinned by CI\r\n  replicas: 1\r\n"

    def test_crlf_line_without_comment(self, updater):
        text = "spec:\r\n  image: ghcr.io/org/repo:old\r\n  replicas: 1\r\n"
        updated, changed = updater.apply(text, NEW_IMAGE)
        assert changed
        assert updated == f"spec:\r\n  image: {NEW_IMAGE}\r\n  replicas: 1\r\n"
        assert updater.current_references(text) == ["ghcr.io/org/repo:old"]

    def test_list_item_form_and_digest_reference(self, updater):
        text = "containers:\n  - image: ghcr.io/org/repo@sha256:deadbeef\n"
        updated, changed = updater.apply(text, NEW_IMAGE)
        assert changed
        assert updated == f"containers:\n  - image: {NEW_IMAGE}\n"

    def test_untagged_reference(self, updater):
        updated, _ = updater.apply("image: ghcr.io/org/repo\n", NEW_IMAGE)
        assert updated == f"image: {NEW_IMAGE}\n"

    def test_does_not_touch_longer_repository_names(self, updater):
        text = "image: ghcr.io/org/repo-worker:1\nimage: ghcr.io/org/repo:1\n"
        updated, _ = updater.apply(text, NEW_IMAGE)
        assert updated == f"image: ghcr.io/org/repo-worker:1\nimage: {NEW_IMAGE}\n"

    def test_no_matching_line(self, updater):
        with pytest.raises(DescriptorFormatError):
            updater.apply("image: docker.io/library/nginx:1.27\n", NEW_IMAGE)

    def test_reference_must_carry_prefix(self, updater, descriptor_text):
        with pytest.raises(InvalidConfigError):
            updater.apply(descriptor_text, "docker.io/other:1")

    @pytest.mark.parametrize(
        "reference",
        ["ghcr.io/org/repository:v1", "ghcr.io/org/repo-worker:1", "ghcr.io/org/repo:", "ghcr.io/org/repo:a b"],
    )
    def test_reference_must_name_exactly_the_repository(self, updater, descriptor_text, reference):
        with pytest.raises(InvalidConfigError):
            updater.apply(descriptor_text, reference)
        assert not updater.owns(reference)

    def test_applied_reference_is_matched_again(self, updater, descriptor_text):
        for reference in ("ghcr.io/org/repo", "ghcr.io/org/repo:v1", "ghcr.io/org/repo@sha256:beef"):
            once, _ = updater.apply(descriptor_text, reference)
            twice, changed = updater.apply(once, reference)
            assert not changed
            assert twice == once
            assert updater.current_references(once) == [reference]

    def test_current_references(self, updater, descriptor_text):
        assert updater.current_references(descriptor_text) == ["ghcr.io/org/repo:sha-000000"]


def test_prefix_with_tag_is_rejected():
    with pytest.raises(InvalidConfigError):
        DeploymentUpdater("ghcr.io/org/repo:latest")


class TestUpdateFile:
    def test_writes_file_without_vcs(self, updater, descriptor_text, tmp_path):
        path = tmp_path / "deployment.yaml"
        path.write_bytes(descriptor_text.replace("\n", "\r\n").encode())

        result = updater.update_file(path, NEW_IMAGE, "sha-abc123")

        assert result.changed
        assert result.previous == ["ghcr.io/org/repo:sha-000000"]
        assert result.commit is None
        assert path.read_bytes() == descriptor_text.replace("\n", "\r\n").replace(
            "ghcr.io/org/repo:sha-000000", NEW_IMAGE
        ).encode()
        assert result.to_outputs() == {
            "image": NEW_IMAGE,
            "changed": "true",
            "commit_outcome": "written",
            "commit_sha": "",
        }

    def test_unchanged_file_is_not_rewritten(self, updater, tmp_path):
        path = tmp_path / "deployment.yaml"
        path.write_text(f"image: {NEW_IMAGE}\n")
        before = path.stat().st_mtime_ns

        result = updater.update_file(path, NEW_IMAGE)

        assert not result.changed
        assert result.to_outputs()["commit_outcome"] == "noop"
        assert path.stat().st_mtime_ns == before

    def test_format_error_names_the_file(self, updater, tmp_path):
        path = tmp_path / "deployment.yaml"
        path.write_text("kind: Deployment\n")
        with pytest.raises(DescriptorFormatError) as exc:
            updater.update_file(path, NEW_IMAGE)
        assert exc.value.context.path == str(path)


class TestAsTool:
    def test_reads_image_from_producer_outputs(self, updater, descriptor_text, tmp_path):
        (tmp_path / "kubernetes").mkdir()
        descriptor = tmp_path / "kubernetes" / "deployment.yaml"
        descriptor.write_text(descriptor_text)

        tool = updater.as_tool()
        response = tool(
            ToolRequest(
                tool="update-deployment",
                args=("kubernetes/deployment.yaml",),
                cwd=str(tmp_path),
                inputs={"docker": {"image": NEW_IMAGE, "image_tag": "sha-abc123"}},
            )
        )

        assert response.succeeded
        assert response.outputs["changed"] == "true"
        assert f"image: {NEW_IMAGE}" in descriptor.read_text()

    def test_builds_image_from_tag(self, descriptor_text, tmp_path):
        updater = DeploymentUpdater(PREFIX, LoopGuard(descriptor_path="deployment.yaml"))
        (tmp_path / "deployment.yaml").write_text(descriptor_text)
        response = updater.as_tool()(
            ToolRequest(tool="update-deployment", cwd=str(tmp_path), inputs={"docker": {"image_tag": "sha-abc123"}})
        )
        assert response.outputs["image"] == NEW_IMAGE

    def test_fails_without_image(self, updater):
        response = updater.as_tool()(ToolRequest(tool="update-deployment"))
        assert not response.succeeded
