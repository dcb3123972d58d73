"""Version control for deployment descriptor commits (GitPython).

The updater only needs three things from git: stage one file, commit it
under a fixed author, and push.  A commit that would record no change is a
successful no-op, since a concurrent or repeated run may already have
landed the identical descriptor.

Tags:
    shipline, deploy, git, vcs
"""

from __future__ import annotations

from dataclasses import dataclass
from enum import Enum
from pathlib import Path

import structlog
from git import Actor, GitCommandError, InvalidGitRepositoryError, NoSuchPathError, Repo

from shipline.core.errors import VersionControlError

logger = structlog.get_logger()


class CommitOutcome(str, Enum):
    COMMITTED = "committed"
    NOOP = "noop"


@dataclass(frozen=True)
class CommitResult:
    outcome: CommitOutcome
    sha: str | None = None
    pushed: bool = False

    @property
    def committed(self) -> bool:
        return self.outcome == CommitOutcome.COMMITTED


class GitClient:
    """Thin wrapper over a working copy."""

    def __init__(
        self,
        path: Path | str,
        author_name: str = "GitHub Actions",
        author_email: str = "actions@github.com",
        remote: str = "origin",
    ):
        try:
            self.repo = Repo(path, search_parent_directories=True)
        except (InvalidGitRepositoryError, NoSuchPathError) as e:
            raise VersionControlError(f"Not a git working copy: {path}", cause=e) from e
        self.author = Actor(author_name, author_email)
        self.remote = remote

    @property
    def root(self) -> Path:
        return Path(self.repo.working_tree_dir or ".")

    def head_sha(self) -> str:
        return self.repo.head.commit.hexsha

    def changed_paths(self, base: str, head: str = "HEAD") -> frozenset[str]:
        """Paths touched between two revisions (relative to the repository root)."""
        try:
            output = self.repo.git.diff("--name-only", base, head)
        except GitCommandError as e:
            raise VersionControlError(f"git diff {base}..{head} failed", cause=e) from e
        return frozenset(line for line in output.splitlines() if line.strip())

    def commit_file(self, relative_path: str, message: str, push: bool = False) -> CommitResult:
        """Stage and commit one file; returns NOOP when the index has no change for it."""
        try:
            self.repo.index.add([relative_path])
            if self.repo.head.is_valid() and not self.repo.index.diff("HEAD", paths=[relative_path]):
                logger.info("vcs.nothing_to_commit", path=relative_path)
                return CommitResult(CommitOutcome.NOOP)
            commit = self.repo.index.commit(message, author=self.author, committer=self.author)
        except GitCommandError as e:
            raise VersionControlError(f"Failed to commit {relative_path}", cause=e) from e

        logger.info("vcs.committed", path=relative_path, sha=commit.hexsha[:12])
        pushed = False
        if push:
            self.push()
            pushed = True
        return CommitResult(CommitOutcome.COMMITTED, sha=commit.hexsha, pushed=pushed)

    def push(self) -> None:
        try:
            remote = self.repo.remote(self.remote)
            branch = self.repo.active_branch.name
            infos = remote.push(refspec=f"{branch}:{branch}")
        except (GitCommandError, ValueError, TypeError) as e:
            raise VersionControlError(f"Failed to push to {self.remote}", cause=e) from e
        for info in infos:
            if info.flags & info.ERROR:
                raise VersionControlError(f"Push rejected: {info.summary.strip()}")
        logger.info("vcs.pushed", remote=self.remote)
