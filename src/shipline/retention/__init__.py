"""Keep-last-K retention for images and run history."""

from shipline.retention.cleaner import (
    CleanupReport,
    DeletionOutcome,
    ImageRecord,
    RetentionCleaner,
    RetentionPolicy,
    RunRecord,
)

__all__ = [
    "CleanupReport",
    "DeletionOutcome",
    "ImageRecord",
    "RetentionCleaner",
    "RetentionPolicy",
    "RunRecord",
]
