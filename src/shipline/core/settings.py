"""Settings for shipline runs.

Configuration is explicit, validated, and environment-driven: every value can
be set through a ``SHIPLINE_``-prefixed environment variable or a ``.env``
file, which is how CI hosts hand secrets and repository coordinates to a run.

Features:
    - **ShiplineSettings:** registry/image coordinates, descriptor path,
      loop-breaking marker, commit author, retention window, GitHub API
      access, scheduler limits, data directory, log level
    - **.env file support:** Automatic loading via pydantic-settings
    - **Extra ignore:** Unknown env vars don't cause startup failures

Examples:
    >>> from shipline.core.settings import ShiplineSettings
    >>> settings = ShiplineSettings(repository="org/repo")
    >>> settings.image_prefix
    'ghcr.io/org/repo'

Tags:
    settings, configuration, pydantic, environment, shipline
"""

from __future__ import annotations

from pathlib import Path

from pydantic import Field, SecretStr, field_validator
from pydantic_settings import BaseSettings, SettingsConfigDict


class ShiplineSettings(BaseSettings):
    """Settings shared by the CLI, the standard pipeline and the cleaners.

    Fields
    ──────
    registry            : Container registry host (``ghcr.io``)
    repository          : ``owner/name`` slug; also the image repository
    descriptor_path     : Deployment manifest edited by the updater
    skip_marker         : Loop-breaking commit marker
    ignored_paths       : Extra push paths that never trigger a run
    commit_author_*     : Fixed identity for descriptor commits
    keep_last           : Retention window (K) for images and runs
    github_api_url      : REST API base URL
    github_token        : Bearer token for the API and registry
    job_timeout_seconds : Default per-job timeout
    max_concurrency     : Thread pool size for a batch
    data_dir            : Root of the filesystem artifact store
    log_level           : Structlog log level
    """

    model_config = SettingsConfigDict(
        env_prefix="SHIPLINE_",
        env_file=".env",
        env_file_encoding="utf-8",
        extra="ignore",
    )

    # ── Image coordinates ────────────────────────────────────────
    registry: str = "ghcr.io"
    repository: str = Field(default="org/repo", description="owner/name slug")
    branch: str = "main"

    # ── Deployment descriptor ────────────────────────────────────
    descriptor_path: str = "kubernetes/deployment.yaml"
    skip_marker: str = "[skip ci]"
    ignored_paths: list[str] = Field(default_factory=lambda: ["**/*.md"])
    commit_author_name: str = "GitHub Actions"
    commit_author_email: str = "actions@github.com"
    push: bool = True

    # ── Retention ────────────────────────────────────────────────
    keep_last: int = Field(default=2, ge=0)

    # ── GitHub API ───────────────────────────────────────────────
    github_api_url: str = "https://api.github.com"
    github_token: SecretStr | None = None
    package_owner_type: str = Field(default="orgs", description="'orgs' or 'users'")

    # ── Scheduler ────────────────────────────────────────────────
    job_timeout_seconds: float = Field(default=1800.0, gt=0)
    max_concurrency: int = Field(default=4, ge=1)

    # ── Observability / storage ──────────────────────────────────
    log_level: str = "INFO"
    data_dir: Path = Field(
        default_factory=lambda: Path.home() / ".shipline",
        description="Root directory for run-scoped artifacts",
    )

    @field_validator("repository")
    @classmethod
    def _validate_repository(cls, value: str) -> str:
        owner, sep, name = value.partition("/")
        if not sep or not owner or not name or "/" in name:
            raise ValueError(f"repository must be 'owner/name', got {value!r}")
        return value.lower()

    @property
    def image_prefix(self) -> str:
        """``<registry>/<repository>`` without a tag."""
        return f"{self.registry}/{self.repository}"

    @property
    def repository_owner(self) -> str:
        return self.repository.split("/", 1)[0]

    @property
    def repository_name(self) -> str:
        return self.repository.split("/", 1)[1]

    def image_reference(self, tag: str) -> str:
        """Full image reference for a tag."""
        return f"{self.image_prefix}:{tag}"
