"""Content sources: where VOUCHED.td text comes from.

The indexer only depends on the ContentSource protocol. GithubContentSource
reads the file from the repository's default branch through the GitHub REST
API; tests substitute an in-memory source.
"""

import asyncio
import base64
from dataclasses import dataclass
from typing import Any, Literal, Protocol
from urllib.parse import quote

import httpx

from vouchboard.config import get_settings
from vouchboard.exceptions import UpstreamTimeoutError
from vouchboard.logging_config import get_logger
from vouchboard.schemas import BlockSource

logger = get_logger(__name__)

GITHUB_ACCEPT = "application/vnd.github+json"
GITHUB_API_VERSION = "2022-11-28"
CANDIDATE_PATHS = (".github/VOUCHED.td", "VOUCHED.td")
DEFAULT_BRANCH = "main"

AbsenceKind = Literal["missing_repo", "missing_file", "transient_error"]


@dataclass(frozen=True)
class FetchedContent:
    text: str
    file_path: str
    commit_sha: str
    default_branch: str = DEFAULT_BRANCH
    commit_url: str | None = None
    source_url: str | None = None
    commit_actor: str | None = None
    committed_at: str | None = None

    def block_source(self) -> BlockSource:
        return BlockSource(
            file_path=self.file_path,
            commit_sha=self.commit_sha,
            commit_url=self.commit_url,
            source_url=self.source_url,
            commit_actor=self.commit_actor,
            committed_at=self.committed_at,
        )


@dataclass(frozen=True)
class ContentAbsence:
    kind: AbsenceKind
    message: str
    default_branch: str = DEFAULT_BRANCH


class ContentSource(Protocol):
    async def fetch(self, slug: str) -> FetchedContent | ContentAbsence: ...


def _is_bot(account: dict[str, Any] | None) -> bool:
    if not account:
        return False
    login = str(account.get("login") or "")
    return account.get("type") == "Bot" or login.endswith("[bot]")


def pick_commit_actor(commit: dict[str, Any]) -> str | None:
    """Prefer the author; when the author is a bot, use a human committer if there is one."""
    author = commit.get("author")
    committer = commit.get("committer")
    if author and not _is_bot(author):
        return author.get("login")
    if committer and committer.get("login") and not _is_bot(committer):
        return committer.get("login")
    if author and author.get("login"):
        return author["login"]
    git_author = (commit.get("commit") or {}).get("author") or {}
    return git_author.get("name")


class GithubContentSource:
    """Fetch VOUCHED.td from GitHub, bounded by a single overall timeout."""

    def __init__(
        self,
        api_url: str | None = None,
        token: str | None = None,
        timeout_seconds: float | None = None,
        transport: httpx.AsyncBaseTransport | None = None,
    ) -> None:
        settings = get_settings()
        self.api_url = (api_url or settings.github_api_url).rstrip("/")
        self.token = token if token is not None else settings.github_token
        self.timeout_seconds = timeout_seconds or settings.fetch_timeout_seconds
        self._transport = transport

    def _headers(self) -> dict[str, str]:
        headers = {
            "Accept": GITHUB_ACCEPT,
            "X-GitHub-Api-Version": GITHUB_API_VERSION,
        }
        if self.token:
            headers["Authorization"] = f"Bearer {self.token}"
        return headers

    async def fetch(self, slug: str) -> FetchedContent | ContentAbsence:
        try:
            return await asyncio.wait_for(self._fetch(slug), timeout=self.timeout_seconds)
        except (asyncio.TimeoutError, httpx.TimeoutException):
            logger.warning("content_fetch_timeout", slug=slug, timeout=self.timeout_seconds)
            raise UpstreamTimeoutError(self.timeout_seconds)

    async def _fetch(self, slug: str) -> FetchedContent | ContentAbsence:
        async with httpx.AsyncClient(
            base_url=self.api_url,
            headers=self._headers(),
            timeout=self.timeout_seconds,
            transport=self._transport,
        ) as client:
            try:
                return await self._fetch_with(client, slug)
            except httpx.TimeoutException:
                raise
            except httpx.HTTPError as e:
                logger.warning("content_fetch_failed", slug=slug, error=str(e))
                return ContentAbsence("transient_error", f"GitHub request failed: {e}")
            except ValueError as e:
                # Non-JSON body or undecodable file content on a 200 response.
                logger.warning("content_fetch_unreadable", slug=slug, error=str(e))
                return ContentAbsence(
                    "transient_error", f"GitHub returned an unreadable response: {e}"
                )

    async def _fetch_with(
        self, client: httpx.AsyncClient, slug: str
    ) -> FetchedContent | ContentAbsence:
        resp = await client.get(f"/repos/{slug}")
        if resp.status_code == 404:
            return ContentAbsence("missing_repo", _error_message(resp))
        if resp.status_code != 200:
            return ContentAbsence("transient_error", _error_message(resp))

        repo_data = resp.json()
        if not isinstance(repo_data, dict):
            raise ValueError("repository payload is not an object")
        default_branch = repo_data.get("default_branch") or DEFAULT_BRANCH

        for path in CANDIDATE_PATHS:
            file_resp = await client.get(
                f"/repos/{slug}/contents/{path}", params={"ref": default_branch}
            )
            if file_resp.status_code == 404:
                continue
            if file_resp.status_code != 200:
                return ContentAbsence(
                    "transient_error", _error_message(file_resp), default_branch
                )

            payload = file_resp.json()
            content = payload.get("content") if isinstance(payload, dict) else None
            if not content:
                continue

            commit = await self._latest_commit(client, slug, path, default_branch)
            logger.debug("content_fetched", slug=slug, path=path)
            return FetchedContent(
                text=base64.b64decode(content).decode("utf-8", errors="replace"),
                file_path=path,
                commit_sha=payload.get("sha") or repo_data.get("pushed_at") or "",
                default_branch=default_branch,
                commit_url=commit.get("html_url"),
                source_url=payload.get("html_url")
                or f"https://github.com/{slug}/blob/{quote(default_branch)}/{path}",
                commit_actor=pick_commit_actor(commit) if commit else None,
                committed_at=((commit.get("commit") or {}).get("committer") or {}).get("date"),
            )

        return ContentAbsence(
            "missing_file", "VOUCHED.td was not found in this repository.", default_branch
        )

    async def _latest_commit(
        self, client: httpx.AsyncClient, slug: str, path: str, branch: str
    ) -> dict[str, Any]:
        """Most recent commit touching the file. Metadata only, so failures yield {}."""
        resp = await client.get(
            f"/repos/{slug}/commits",
            params={"path": path, "sha": branch, "per_page": 1},
        )
        if resp.status_code != 200:
            logger.debug("commit_lookup_failed", slug=slug, status=resp.status_code)
            return {}
        try:
            commits = resp.json()
        except ValueError:
            logger.debug("commit_lookup_unreadable", slug=slug)
            return {}
        if isinstance(commits, list) and commits and isinstance(commits[0], dict):
            return commits[0]
        return {}


def _error_message(resp: httpx.Response) -> str:
    try:
        payload = resp.json()
    except ValueError:
        payload = None
    if isinstance(payload, dict) and isinstance(payload.get("message"), str):
        return payload["message"]
    return f"GitHub request failed with status {resp.status_code}"
