"""GitHub REST client for workflow run history and GHCR image versions.

Implements the ``RunHistory`` and ``ImageRegistry`` protocols used by
``RetentionCleaner``:

- ``GET/DELETE /repos/{owner}/{repo}/actions/runs[/{id}]``
- ``GET/DELETE /{orgs|users}/{owner}/packages/container/{package}/versions[/{id}]``

A container version with an empty ``metadata.container.tags`` list is an
untagged (dangling) image.
"""

from __future__ import annotations

from datetime import datetime
from typing import Any

import httpx
import structlog

from shipline.core.errors import ErrorCategory, RegistryError
from shipline.core.settings import ShiplineSettings
from shipline.retention.cleaner import ImageRecord, RunRecord

logger = structlog.get_logger()

API_VERSION = "2022-11-28"
PAGE_SIZE = 100


def _parse_time(value: str) -> datetime:
    return datetime.fromisoformat(value.replace("Z", "+00:00"))


class GitHubClient:
    """Synchronous GitHub API client (one ``httpx.Client`` per instance)."""

    def __init__(
        self,
        repository: str,
        token: str | None = None,
        base_url: str = "https://api.github.com",
        owner_type: str = "orgs",
        package: str | None = None,
        workflow: str | None = None,
        timeout: float = 30.0,
        transport: httpx.BaseTransport | None = None,
    ):
        if owner_type not in ("orgs", "users"):
            raise RegistryError(f"owner_type must be 'orgs' or 'users', got {owner_type!r}", category=ErrorCategory.CONFIG)
        self.repository = repository
        self.owner, _, self.name = repository.partition("/")
        self.owner_type = owner_type
        self.package = package or self.name
        self.workflow = workflow
        headers = {
            "Accept": "application/vnd.github+json",
            "X-GitHub-Api-Version": API_VERSION,
        }
        if token:
            headers["Authorization"] = f"Bearer {token}"
        self._client = httpx.Client(base_url=base_url, headers=headers, timeout=timeout, transport=transport)

    @classmethod
    def from_settings(cls, settings: ShiplineSettings, **kwargs: Any) -> GitHubClient:
        token = settings.github_token.get_secret_value() if settings.github_token else None
        return cls(
            repository=settings.repository,
            token=token,
            base_url=settings.github_api_url,
            owner_type=settings.package_owner_type,
            **kwargs,
        )

    def close(self) -> None:
        self._client.close()

    def __enter__(self) -> GitHubClient:
        return self

    def __exit__(self, *args) -> None:
        self.close()

    # ------------------------------------------------------------------
    # HTTP
    # ------------------------------------------------------------------

    def _request(self, method: str, url: str, **kwargs: Any) -> httpx.Response:
        try:
            response = self._client.request(method, url, **kwargs)
        except httpx.HTTPError as e:
            raise RegistryError(
                f"{method} {url} failed: {e}", category=ErrorCategory.NETWORK, retryable=True, cause=e
            ).with_context(url=url) from e
        if response.status_code >= 400:
            raise RegistryError(
                f"{method} {url} returned {response.status_code}: {response.text[:200]}",
                retryable=response.status_code >= 500 or response.status_code == 429,
            ).with_context(url=url, http_status=response.status_code)
        return response

    def _paginate(self, url: str, items_key: str | None = None, params: dict | None = None) -> list[dict]:
        items: list[dict] = []
        page = 1
        while True:
            query = {**(params or {}), "per_page": PAGE_SIZE, "page": page}
            payload = self._request("GET", url, params=query).json()
            batch = payload[items_key] if items_key else payload
            items.extend(batch)
            if len(batch) < PAGE_SIZE:
                return items
            page += 1

    # ------------------------------------------------------------------
    # Workflow runs (RunHistory)
    # ------------------------------------------------------------------

    @property
    def _runs_url(self) -> str:
        if self.workflow:
            return f"/repos/{self.repository}/actions/workflows/{self.workflow}/runs"
        return f"/repos/{self.repository}/actions/runs"

    def list_runs(self) -> list[RunRecord]:
        runs = self._paginate(self._runs_url, items_key="workflow_runs")
        logger.debug("github.runs_listed", repository=self.repository, count=len(runs))
        return [
            RunRecord(
                id=str(run["id"]),
                status=run.get("status") or "unknown",
                created_at=_parse_time(run["created_at"]),
                conclusion=run.get("conclusion"),
                name=f"{run.get('name', 'run')} #{run.get('run_number', run['id'])}",
            )
            for run in runs
        ]

    def delete_run(self, record: RunRecord) -> None:
        self._request("DELETE", f"/repos/{self.repository}/actions/runs/{record.id}")

    # ------------------------------------------------------------------
    # Container package versions (ImageRegistry)
    # ------------------------------------------------------------------

    @property
    def _versions_url(self) -> str:
        return f"/{self.owner_type}/{self.owner}/packages/container/{self.package}/versions"

    def list_images(self) -> list[ImageRecord]:
        versions = self._paginate(self._versions_url)
        logger.debug("github.images_listed", package=self.package, count=len(versions))
        records = []
        for version in versions:
            tags = tuple(version.get("metadata", {}).get("container", {}).get("tags", []))
            records.append(
                ImageRecord(
                    id=str(version["id"]),
                    repository=self.repository,
                    tag=tags[0] if tags else None,
                    digest=version.get("name", ""),
                    created_at=_parse_time(version["created_at"]),
                    tags=tags,
                )
            )
        return records

    def delete_image(self, record: ImageRecord) -> None:
        self._request("DELETE", f"{self._versions_url}/{record.id}")
