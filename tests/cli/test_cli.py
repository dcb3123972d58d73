"""Tests for the ``shipline`` command line."""

from __future__ import annotations

import json
import os
from datetime import datetime, timezone
from unittest.mock import MagicMock, patch

import pytest
from typer.testing import CliRunner

from shipline import __version__
from shipline.cli.app import app
from shipline.retention.cleaner import RunRecord

runner = CliRunner()

PIPELINE_YAML = """\
apiVersion: shipline.io/v1
kind: Pipeline
metadata:
  name: smoke
spec:
  triggers:
    push:
      branches: [main]
  jobs:
    - id: hello
      tool: sh
      args: ["-c", "echo greeting=hi >> \\"$SHIPLINE_OUTPUT\\""]
      outputs: [greeting]
    - id: check
      tool: sh
      needs: [hello]
      args: ["-c", "{exit_command}"]
"""


@pytest.fixture(autouse=True)
def _clean_env(tmp_path, monkeypatch):
    monkeypatch.chdir(tmp_path)
    for name in list(os.environ):
        if name.startswith(("SHIPLINE_", "GITHUB_")):
            monkeypatch.delenv(name)
    monkeypatch.setenv("SHIPLINE_REPOSITORY", "org/repo")
    monkeypatch.setenv("SHIPLINE_LOG_LEVEL", "WARNING")
    monkeypatch.setenv("SHIPLINE_DATA_DIR", str(tmp_path / "data"))


def _push_args(*changed: str) -> list[str]:
    args = ["--event", "push", "--ref", "main", "--sha", "abc123"]
    for path in changed:
        args += ["--changed", path]
    return args


def test_version():
    result = runner.invoke(app, ["--version"])
    assert result.exit_code == 0
    assert f"shipline {__version__}" in result.stdout


class TestPlan:
    def test_push_plan(self):
        result = runner.invoke(app, ["plan", *_push_args("src/app.js"), "--json"])
        assert result.exit_code == 0, result.output
        plan = json.loads(result.stdout)
        assert plan["gated_out"] is False
        assert plan["batches"] == [["test", "lint"], ["build"], ["docker"], ["update-deployment"], ["cleanup"]]

    def test_descriptor_only_push_is_gated_out(self):
        result = runner.invoke(app, ["plan", *_push_args("kubernetes/deployment.yaml"), "--json"])
        assert result.exit_code == 0, result.output
        plan = json.loads(result.stdout)
        assert plan["gated_out"] is True
        assert plan["batches"] == []

    def test_pull_request_skips_deployment(self):
        result = runner.invoke(app, ["plan", "--event", "pull_request", "--ref", "main", "--changed", "a.js", "--json"])
        assert json.loads(result.stdout)["skipped"] == {"update-deployment": "gated"}

    def test_table_output(self):
        result = runner.invoke(app, ["plan", *_push_args("src/app.js")])
        assert result.exit_code == 0
        assert "update-deployment" in result.stdout

    def test_unknown_event(self):
        result = runner.invoke(app, ["plan", "--event", "tag"])
        assert result.exit_code == 2

    def test_missing_pipeline_file(self, tmp_path):
        result = runner.invoke(app, ["plan", "-f", str(tmp_path / "nope.yaml")])
        assert result.exit_code == 2


class TestRun:
    def _write_pipeline(self, tmp_path, exit_command: str):
        path = tmp_path / "shipline.yaml"
        path.write_text(PIPELINE_YAML.replace("{exit_command}", exit_command))
        return path

    def test_successful_run(self, tmp_path):
        pipeline = self._write_pipeline(tmp_path, "exit 0")
        result = runner.invoke(
            app, ["run", "-f", str(pipeline), *_push_args("src/app.js"), "-C", str(tmp_path), "--no-commit", "--json"]
        )
        assert result.exit_code == 0, result.output
        payload = json.loads(result.stdout)
        assert payload["status"] == "succeeded"
        assert payload["jobs"][0]["outputs"] == {"greeting": "hi"}

    def test_failed_run_exits_non_zero(self, tmp_path):
        pipeline = self._write_pipeline(tmp_path, "exit 4")
        result = runner.invoke(app, ["run", "-f", str(pipeline), *_push_args("src/app.js"), "-C", str(tmp_path), "--no-commit"])
        assert result.exit_code == 1
        assert "failed" in result.stdout

    @patch("shipline.retention.github.GitHubClient")
    def test_cleanup_wires_history_and_registry(self, mock_client_cls, tmp_path):
        from shipline.pipelines import standard_tools

        client = mock_client_cls.from_settings.return_value
        pipeline = self._write_pipeline(tmp_path, "exit 0")
        with patch("shipline.pipelines.standard_tools", wraps=standard_tools) as wired:
            result = runner.invoke(
                app, ["run", "-f", str(pipeline), *_push_args("src/app.js"), "-C", str(tmp_path), "--no-commit", "--cleanup"]
            )

        assert result.exit_code == 0, result.output
        kwargs = wired.call_args.kwargs
        assert kwargs["history"] is client
        assert kwargs["registry"] is client
        client.close.assert_called_once()

    def test_descriptor_commits_use_the_pipeline_loop_guard(self, tmp_path):
        from shipline.orchestration.trigger import LoopGuard
        from shipline.pipelines import standard_tools

        path = tmp_path / "shipline.yaml"
        path.write_text(
            PIPELINE_YAML.replace("{exit_command}", "exit 0")
            .replace("spec:\n  triggers:", "spec:\n  loop_guard:\n    descriptor_path: deploy/web.yaml\n    marker: \"[ci skip]\"\n  triggers:")
            .replace("      branches: [main]\n", "      branches: [main]\n      paths_ignore: [deploy/web.yaml]\n")
        )
        with patch("shipline.pipelines.standard_tools", wraps=standard_tools) as wired:
            result = runner.invoke(
                app, ["run", "-f", str(path), *_push_args("src/app.js"), "-C", str(tmp_path), "--no-commit"]
            )

        assert result.exit_code == 0, result.output
        assert wired.call_args.kwargs["loop_guard"] == LoopGuard("deploy/web.yaml", "[ci skip]")

    def test_deploying_pipeline_without_loop_guard_is_rejected(self, tmp_path):
        path = tmp_path / "shipline.yaml"
        path.write_text(PIPELINE_YAML.replace("{exit_command}", "exit 0").replace("      tool: sh\n      needs:", "      tool: update-deployment\n      needs:"))
        result = runner.invoke(app, ["run", "-f", str(path), *_push_args("src/app.js"), "-C", str(tmp_path), "--no-commit"])
        assert result.exit_code == 2


class TestUpdateImage:
    def test_updates_descriptor_without_commit(self, tmp_path, descriptor_text):
        descriptor = tmp_path / "deployment.yaml"
        descriptor.write_text(descriptor_text)

        result = runner.invoke(
            app, ["update-image", "sha-abc123", "--descriptor", str(descriptor), "--no-commit", "--json"]
        )

        assert result.exit_code == 0, result.output
        outputs = json.loads(result.stdout)
        assert outputs["changed"] == "true"
        assert outputs["image"] == "ghcr.io/org/repo:sha-abc123"
        assert "image: ghcr.io/org/repo:sha-abc123" in descriptor.read_text()

    def test_descriptor_without_image_line(self, tmp_path):
        descriptor = tmp_path / "deployment.yaml"
        descriptor.write_text("kind: Deployment\n")
        result = runner.invoke(app, ["update-image", "sha-abc123", "--descriptor", str(descriptor), "--no-commit"])
        assert result.exit_code == 1


class TestCleanup:
    @patch("shipline.cli.cleanup.GitHubClient")
    def test_runs_dry_run(self, mock_client_cls):
        t0 = datetime(2026, 1, 1, tzinfo=timezone.utc)
        client = MagicMock()
        client.list_runs.return_value = [
            RunRecord(str(n), "completed", t0.replace(hour=n)) for n in range(4)
        ]
        mock_client_cls.from_settings.return_value.__enter__.return_value = client

        result = runner.invoke(app, ["cleanup", "runs", "--dry-run", "--json"])

        assert result.exit_code == 0, result.output
        report = json.loads(result.stdout)
        assert report["dry_run"] is True
        assert report["kept"] == ["3", "2"]
        assert report["deleted"] == []
        client.delete_run.assert_not_called()

    @patch("shipline.cli.cleanup.GitHubClient")
    def test_images_with_custom_window(self, mock_client_cls):
        from shipline.retention.cleaner import ImageRecord

        t0 = datetime(2026, 1, 1, tzinfo=timezone.utc)
        client = MagicMock()
        client.list_images.return_value = [
            ImageRecord(str(n), "org/repo", f"sha-{n}", f"sha256:{n}", t0.replace(hour=n)) for n in range(3)
        ]
        mock_client_cls.from_settings.return_value.__enter__.return_value = client

        result = runner.invoke(app, ["cleanup", "images", "--keep", "1", "--json"])

        assert result.exit_code == 0, result.output
        assert sorted(json.loads(result.stdout)["deleted"]) == ["0", "1"]
        assert client.delete_image.call_count == 2

    def test_negative_window_is_rejected(self):
        result = runner.invoke(app, ["cleanup", "runs", "--keep", "-1"])
        assert result.exit_code == 2
