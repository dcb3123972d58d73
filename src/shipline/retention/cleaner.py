"""Keep-last-K retention for published images and pipeline run history.

Two independent collections are trimmed by rank, not by age:

- **Images**: untagged (dangling) versions are always deleted; tagged
  versions keep the newest ``keep_last`` and delete the rest.
- **Runs**: completed runs keep the newest ``keep_last`` regardless of
  their conclusion; runs still in progress are never touched.

Deletion is best-effort.  Each attempt is recorded as a ``DeletionOutcome``
and a failed delete never stops the rest of the batch; the report carries
failures as warnings for the cleanup job instead of failing the run.
"""

from __future__ import annotations

from collections.abc import Callable, Iterable, Sequence
from dataclasses import dataclass, field
from datetime import datetime
from typing import Protocol, runtime_checkable

import structlog

from shipline.core.errors import InvalidConfigError, ShiplineError

logger = structlog.get_logger()


@dataclass(frozen=True)
class ImageRecord:
    """One published image version."""

    id: str
    repository: str
    tag: str | None
    digest: str
    created_at: datetime
    tags: tuple[str, ...] = ()

    @property
    def tagged(self) -> bool:
        return bool(self.tag or self.tags)

    @property
    def label(self) -> str:
        return self.tag or (self.tags[0] if self.tags else self.digest[:19])


@dataclass(frozen=True)
class RunRecord:
    """One historical pipeline execution."""

    id: str
    status: str
    created_at: datetime
    conclusion: str | None = None
    name: str = ""

    @property
    def completed(self) -> bool:
        return self.status == "completed"

    @property
    def label(self) -> str:
        return self.name or self.id


@runtime_checkable
class ImageRegistry(Protocol):
    def list_images(self) -> list[ImageRecord]: ...

    def delete_image(self, record: ImageRecord) -> None: ...


@runtime_checkable
class RunHistory(Protocol):
    def list_runs(self) -> list[RunRecord]: ...

    def delete_run(self, record: RunRecord) -> None: ...


@dataclass(frozen=True)
class RetentionPolicy:
    """How many of the newest entries survive a cleanup."""

    keep_last: int = 2

    def __post_init__(self):
        if self.keep_last < 0:
            raise InvalidConfigError("keep_last", self.keep_last, "keep_last must be >= 0")


@dataclass
class DeletionOutcome:
    """Result of one delete attempt."""

    record_id: str
    label: str
    deleted: bool
    reason: str
    error: str | None = None


@dataclass
class CleanupReport:
    """Aggregated results of one cleanup pass over a collection."""

    collection: str
    kept: list[str] = field(default_factory=list)
    outcomes: list[DeletionOutcome] = field(default_factory=list)
    dry_run: bool = False

    @property
    def deleted(self) -> list[str]:
        return [o.record_id for o in self.outcomes if o.deleted]

    @property
    def failed(self) -> list[DeletionOutcome]:
        return [o for o in self.outcomes if o.error is not None]

    @property
    def total_deleted(self) -> int:
        return len(self.deleted)

    @property
    def success(self) -> bool:
        return not self.failed

    @property
    def warnings(self) -> list[str]:
        return [f"failed to delete {self.collection} {o.label}: {o.error}" for o in self.failed]

    def to_dict(self) -> dict:
        return {
            "collection": self.collection,
            "dry_run": self.dry_run,
            "kept": list(self.kept),
            "deleted": self.deleted,
            "failed": {o.record_id: o.error for o in self.failed},
        }


def rank_newest_first(records: Iterable, key: Callable = lambda r: r.created_at) -> list:
    """Sort newest first; ties keep their listing order."""
    return sorted(records, key=key, reverse=True)


def select_images(
    records: Sequence[ImageRecord], policy: RetentionPolicy
) -> tuple[list[ImageRecord], list[tuple[ImageRecord, str]]]:
    """Split image versions into (kept, [(to_delete, reason)]).

    Parameters
    ----------
    records
        Image versions of one repository, in any order.
    policy
        Retention window.

    Returns
    -------
    tuple
        Kept records newest first, and deletions with their reason.
    """
    ranked = rank_newest_first(records)
    tagged = [r for r in ranked if r.tagged]
    doomed = [(r, "untagged") for r in ranked if not r.tagged]
    doomed.extend((r, f"beyond newest {policy.keep_last}") for r in tagged[policy.keep_last:])
    return tagged[: policy.keep_last], doomed


def select_runs(
    records: Sequence[RunRecord], policy: RetentionPolicy
) -> tuple[list[RunRecord], list[tuple[RunRecord, str]]]:
    """Split run records into (kept, [(to_delete, reason)]); in-progress runs are always kept."""
    ranked = rank_newest_first(records)
    completed = [r for r in ranked if r.completed]
    kept = [r for r in ranked if not r.completed] + completed[: policy.keep_last]
    doomed = [(r, f"beyond newest {policy.keep_last}") for r in completed[policy.keep_last:]]
    return kept, doomed


class RetentionCleaner:
    """Applies a ``RetentionPolicy`` to an image registry and a run history."""

    def __init__(self, policy: RetentionPolicy | None = None, dry_run: bool = False):
        self.policy = policy or RetentionPolicy()
        self.dry_run = dry_run

    def clean_images(self, registry: ImageRegistry) -> CleanupReport:
        kept, doomed = select_images(registry.list_images(), self.policy)
        report = CleanupReport("image", kept=[r.label for r in kept], dry_run=self.dry_run)
        for record, reason in doomed:
            report.outcomes.append(self._delete(record, reason, registry.delete_image))
        self._log(report)
        return report

    def clean_runs(self, history: RunHistory, exclude: Iterable[str] = ()) -> CleanupReport:
        """Trim run history; ``exclude`` holds ids that must survive (e.g. the current run)."""
        excluded = set(exclude)
        records = [r for r in history.list_runs() if r.id not in excluded]
        kept, doomed = select_runs(records, self.policy)
        report = CleanupReport("run", kept=[r.id for r in kept], dry_run=self.dry_run)
        for record, reason in doomed:
            report.outcomes.append(self._delete(record, reason, history.delete_run))
        self._log(report)
        return report

    def _delete(self, record, reason: str, delete: Callable) -> DeletionOutcome:
        if self.dry_run:
            logger.info("retention.would_delete", record=record.id, label=record.label, reason=reason)
            return DeletionOutcome(record.id, record.label, deleted=False, reason=reason)
        try:
            delete(record)
        except ShiplineError as e:
            logger.warning("retention.delete_failed", record=record.id, label=record.label, error=e.message)
            return DeletionOutcome(record.id, record.label, deleted=False, reason=reason, error=e.message)
        except Exception as e:
            logger.warning("retention.delete_failed", record=record.id, label=record.label, error=str(e))
            return DeletionOutcome(record.id, record.label, deleted=False, reason=reason, error=str(e))
        logger.info("retention.deleted", record=record.id, label=record.label, reason=reason)
        return DeletionOutcome(record.id, record.label, deleted=True, reason=reason)

    @staticmethod
    def _log(report: CleanupReport) -> None:
        logger.info(
            "retention.complete",
            collection=report.collection,
            kept=len(report.kept),
            deleted=report.total_deleted,
            failed=len(report.failed),
            dry_run=report.dry_run,
        )
