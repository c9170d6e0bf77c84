"""Content fingerprinting and version arithmetic for knowledge fragments."""

from __future__ import annotations

import hashlib


def content_hash(content: str) -> str:
    """SHA-256 hex digest of the fragment content as stored."""
    return hashlib.sha256(content.encode("utf-8")).hexdigest()


def next_version(current: int) -> int:
    if current < 1:
        raise ValueError(f"Fragment versions start at 1, got {current}")
    return current + 1
