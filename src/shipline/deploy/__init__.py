"""Deployment descriptor updates and their git commits."""

from shipline.deploy.updater import DeploymentUpdater, UpdateResult
from shipline.deploy.vcs import CommitOutcome, CommitResult, GitClient

__all__ = ["CommitOutcome", "CommitResult", "DeploymentUpdater", "GitClient", "UpdateResult"]
