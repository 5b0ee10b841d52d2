"""Indexer exceptions.

Typed failures that stop an indexing run before or during the pipeline.
Absent repositories/files are not exceptions: they are recorded on the
repository row and returned as results.
"""

from typing import Any


class IndexerError(Exception):
    """Base exception for all indexing errors."""

    code = "error"

    def __init__(self, message: str, details: dict[str, Any] | None = None) -> None:
        super().__init__(message)
        self.message = message
        self.details = details or {}

    def __str__(self) -> str:
        if self.details:
            return f"{self.message} - {self.details}"
        return self.message


class InvalidInputError(IndexerError):
    """Raised when a repository identifier cannot be normalized."""

    code = "invalid_input"

    def __init__(
        self,
        value: str,
        reason: str = "Repository must be a valid GitHub owner/repo or GitHub URL.",
    ) -> None:
        super().__init__(reason, {"value": value[:200]})
        self.value = value


class ConflictError(IndexerError):
    """Raised when another run holds the repository's index lock."""

    code = "conflict"

    def __init__(self, slug: str, expires_at_ms: int | None = None) -> None:
        details: dict[str, Any] = {"slug": slug}
        if expires_at_ms is not None:
            details["expires_at_ms"] = expires_at_ms
        super().__init__(
            "This repository is already being indexed. Please wait a moment and retry.",
            details,
        )
        self.slug = slug
        self.expires_at_ms = expires_at_ms


class RateLimitedError(IndexerError):
    """Raised when any of the fixed-window counters is exceeded."""

    code = "rate_limited"

    def __init__(self, tier: str, key: str, limit: int, retry_after_seconds: int) -> None:
        super().__init__(
            f"Too many indexing attempts ({tier}). Please wait and retry.",
            {"tier": tier, "limit": limit, "retry_after": retry_after_seconds},
        )
        self.tier = tier
        self.key = key
        self.limit = limit
        self.retry_after_seconds = retry_after_seconds


class UpstreamError(IndexerError):
    """Raised when the content source cannot produce an answer at all."""

    code = "upstream_error"


class UpstreamTimeoutError(UpstreamError):
    """Raised when a content fetch exceeds its time budget."""

    def __init__(self, timeout_seconds: float) -> None:
        super().__init__(f"Content source timed out after {timeout_seconds:g}s. Please retry.")
        self.details["timeout_seconds"] = timeout_seconds
        self.timeout_seconds = timeout_seconds
