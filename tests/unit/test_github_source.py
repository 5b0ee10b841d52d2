"""Tests for GithubContentSource against a mocked GitHub API."""

import asyncio
import base64

import httpx
import pytest

from vouchboard.exceptions import UpstreamTimeoutError
from vouchboard.services.github_source import (
    ContentAbsence,
    FetchedContent,
    GithubContentSource,
    pick_commit_actor,
)

SLUG = "acme/widgets"


def _content(text: str, sha: str = "blobsha", path: str = "VOUCHED.td") -> dict:
    return {
        "content": base64.b64encode(text.encode()).decode(),
        "sha": sha,
        "html_url": f"https://github.com/{SLUG}/blob/trunk/{path}",
    }


def _source(routes: dict, seen: list | None = None, **kwargs) -> GithubContentSource:
    """Build a source whose transport answers from ``routes`` keyed by path."""

    def handler(request: httpx.Request) -> httpx.Response:
        if seen is not None:
            seen.append(request)
        status, body = routes.get(request.url.path, (404, {"message": "Not Found"}))
        return httpx.Response(status, json=body)

    return GithubContentSource(transport=httpx.MockTransport(handler), **kwargs)


class TestGithubContentSource:
    @pytest.mark.asyncio
    async def test_fetches_dot_github_path_first(self):
        seen: list[httpx.Request] = []
        source = _source(
            {
                f"/repos/{SLUG}": (200, {"default_branch": "trunk"}),
                f"/repos/{SLUG}/contents/.github/VOUCHED.td": (200, _content("@alice\n")),
                f"/repos/{SLUG}/commits": (
                    200,
                    [
                        {
                            "sha": "c0ffee",
                            "html_url": f"https://github.com/{SLUG}/commit/c0ffee",
                            "author": {"login": "alice", "type": "User"},
                            "commit": {"committer": {"date": "2026-01-02T03:04:05Z"}},
                        }
                    ],
                ),
            },
            seen,
            token="secret",
        )

        result = await source.fetch(SLUG)

        assert isinstance(result, FetchedContent)
        assert result.text == "@alice\n"
        assert result.file_path == ".github/VOUCHED.td"
        assert result.commit_sha == "blobsha"
        assert result.default_branch == "trunk"
        assert result.commit_url == f"https://github.com/{SLUG}/commit/c0ffee"
        assert result.commit_actor == "alice"
        assert result.committed_at == "2026-01-02T03:04:05Z"

        first = seen[0]
        assert first.headers["accept"] == "application/vnd.github+json"
        assert first.headers["x-github-api-version"] == "2022-11-28"
        assert first.headers["authorization"] == "Bearer secret"
        assert seen[1].url.params["ref"] == "trunk"

    @pytest.mark.asyncio
    async def test_falls_back_to_root_path(self):
        source = _source(
            {
                f"/repos/{SLUG}": (200, {"default_branch": "main", "pushed_at": "2026-01-01"}),
                f"/repos/{SLUG}/contents/VOUCHED.td": (200, _content("bob\n", sha="")),
            }
        )

        result = await source.fetch(SLUG)

        assert isinstance(result, FetchedContent)
        assert result.file_path == "VOUCHED.td"
        assert result.commit_sha == "2026-01-01"
        assert result.commit_actor is None

    @pytest.mark.asyncio
    async def test_missing_repo(self):
        result = await _source({}).fetch(SLUG)
        assert result == ContentAbsence("missing_repo", "Not Found")

    @pytest.mark.asyncio
    async def test_missing_file(self):
        result = await _source({f"/repos/{SLUG}": (200, {"default_branch": "dev"})}).fetch(SLUG)

        assert isinstance(result, ContentAbsence)
        assert result.kind == "missing_file"
        assert result.default_branch == "dev"

    @pytest.mark.asyncio
    async def test_server_error_is_transient(self):
        source = _source(
            {
                f"/repos/{SLUG}": (200, {"default_branch": "main"}),
                f"/repos/{SLUG}/contents/.github/VOUCHED.td": (
                    502,
                    {"message": "Server Error"},
                ),
            }
        )

        result = await source.fetch(SLUG)

        assert result == ContentAbsence("transient_error", "Server Error", "main")

    @pytest.mark.asyncio
    async def test_rate_limited_repo_lookup_is_transient(self):
        source = _source({f"/repos/{SLUG}": (403, {"message": "API rate limit exceeded"})})

        result = await source.fetch(SLUG)

        assert result.kind == "transient_error"
        assert result.message == "API rate limit exceeded"

    @pytest.mark.asyncio
    async def test_html_body_on_success_is_transient(self):
        source = GithubContentSource(
            transport=httpx.MockTransport(
                lambda request: httpx.Response(200, text="<html>proxy</html>")
            )
        )

        result = await source.fetch(SLUG)

        assert isinstance(result, ContentAbsence)
        assert result.kind == "transient_error"
        assert result.message.startswith("GitHub returned an unreadable response")

    @pytest.mark.asyncio
    async def test_undecodable_file_content_is_transient(self):
        source = _source(
            {
                f"/repos/{SLUG}": (200, {"default_branch": "main"}),
                f"/repos/{SLUG}/contents/.github/VOUCHED.td": (200, {"content": "abc", "sha": "x"}),
            }
        )

        result = await source.fetch(SLUG)

        assert result.kind == "transient_error"

    @pytest.mark.asyncio
    async def test_unreadable_commit_metadata_is_ignored(self):
        def handler(request: httpx.Request) -> httpx.Response:
            if request.url.path.endswith("/commits"):
                return httpx.Response(200, text="<html>proxy</html>")
            if request.url.path == f"/repos/{SLUG}":
                return httpx.Response(200, json={"default_branch": "main"})
            if request.url.path.endswith("/.github/VOUCHED.td"):
                return httpx.Response(200, json=_content("@alice\n"))
            return httpx.Response(404, json={"message": "Not Found"})

        source = GithubContentSource(transport=httpx.MockTransport(handler))

        result = await source.fetch(SLUG)

        assert isinstance(result, FetchedContent)
        assert result.commit_url is None
        assert result.commit_actor is None

    @pytest.mark.asyncio
    async def test_timeout_raises(self):
        async def slow(request: httpx.Request) -> httpx.Response:
            await asyncio.sleep(1)
            return httpx.Response(200, json={})

        source = GithubContentSource(
            transport=httpx.MockTransport(slow), timeout_seconds=0.05
        )

        with pytest.raises(UpstreamTimeoutError) as exc_info:
            await source.fetch(SLUG)
        assert exc_info.value.code == "upstream_error"


class TestPickCommitActor:
    def test_human_author(self):
        assert pick_commit_actor({"author": {"login": "alice", "type": "User"}}) == "alice"

    def test_bot_author_falls_back_to_committer(self):
        commit = {
            "author": {"login": "dependabot[bot]", "type": "Bot"},
            "committer": {"login": "bob", "type": "User"},
        }
        assert pick_commit_actor(commit) == "bob"

    def test_bot_only(self):
        commit = {
            "author": {"login": "renovate[bot]", "type": "Bot"},
            "committer": {"login": "web-flow[bot]", "type": "Bot"},
        }
        assert pick_commit_actor(commit) == "renovate[bot]"

    def test_git_author_name_when_no_account(self):
        commit = {"author": None, "commit": {"author": {"name": "Carol"}}}
        assert pick_commit_actor(commit) == "Carol"
