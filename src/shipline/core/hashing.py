"""
Content digests for content-addressed artifacts.

Artifact references carry the SHA-256 digest of the stored blob, so the same
bytes always produce the same reference and a tampered or truncated blob is
detected on read.

Examples:
    >>> content_digest(b"hello")
    'sha256:2cf24dba5fb0a30e26e83b2ac5b9e29e1b161e5c1fa7425e73043362938b9824'

Tags:
    hashing, utility, shipline
"""

from __future__ import annotations

import hashlib


def content_digest(blob: bytes) -> str:
    """OCI-style ``sha256:<hex>`` digest of a blob."""
    return "sha256:" + hashlib.sha256(blob).hexdigest()
