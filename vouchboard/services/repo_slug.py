"""Normalize user-supplied GitHub repository identifiers to ``owner/name`` slugs."""

import re
from dataclasses import dataclass

from vouchboard.exceptions import InvalidInputError

MAX_REPO_INPUT_LENGTH = 200

_VALID_REPO_PART = re.compile(r"^[a-z0-9._-]+$", re.IGNORECASE)
_GITHUB_URL_PREFIX = re.compile(r"^https?://github\.com/", re.IGNORECASE)
_GITHUB_HOST_PREFIX = re.compile(r"^github\.com/", re.IGNORECASE)
_GIT_SUFFIX = re.compile(r"\.git$", re.IGNORECASE)


@dataclass(frozen=True)
class NormalizedRepo:
    owner: str
    name: str

    @property
    def slug(self) -> str:
        return f"{self.owner}/{self.name}"


def normalize_github_repo(value: str) -> NormalizedRepo | None:
    """Return the normalized repository, or None if the input is not owner/repo shaped."""
    value = value.strip()
    value = _GITHUB_URL_PREFIX.sub("", value)
    value = _GITHUB_HOST_PREFIX.sub("", value)
    value = re.split(r"[?#]", value, maxsplit=1)[0]
    value = _GIT_SUFFIX.sub("", value)
    value = value.strip("/")

    parts = [part for part in value.split("/") if part]
    if len(parts) != 2:
        return None

    owner, name = (part.strip().lower() for part in parts)
    if not owner or not name:
        return None
    if not _VALID_REPO_PART.match(owner) or not _VALID_REPO_PART.match(name):
        return None

    return NormalizedRepo(owner=owner, name=name)


def require_github_repo(value: str) -> NormalizedRepo:
    """Like normalize_github_repo, but raises InvalidInputError instead of returning None."""
    if not value or not value.strip() or len(value.strip()) > MAX_REPO_INPUT_LENGTH:
        raise InvalidInputError(value or "", "Expected a non-empty repo string.")
    normalized = normalize_github_repo(value)
    if normalized is None:
        raise InvalidInputError(value)
    return normalized
