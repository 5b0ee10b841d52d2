"""Indexer pipeline: guard, fetch, parse, then reconcile, audit and rank in one transaction.

Public requests are charged against the rate limiter; scheduled reindexing runs
as a trusted caller and skips it. Every run holds the repository lock, which is
released however the run ends.
"""

from datetime import datetime, timezone

from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession

from vouchboard.config import get_settings
from vouchboard.database import get_db_session
from vouchboard.exceptions import ConflictError, UpstreamError
from vouchboard.logging_config import bind_index_context, clear_index_context, get_logger
from vouchboard.models import Entry, Repository, Snapshot
from vouchboard.schemas import (
    ExistingEntry,
    IndexedResult,
    IndexFailure,
    IndexResult,
    ReindexSummary,
)
from vouchboard.services.audit_service import append_audit_block, diff_entries, index_by_handle
from vouchboard.services.github_source import (
    ContentAbsence,
    ContentSource,
    FetchedContent,
    GithubContentSource,
)
from vouchboard.services.guard_service import check_rate_limits, now_ms, repo_lock
from vouchboard.services.leaderboard_service import (
    apply_leaderboard_deltas,
    compute_leaderboard_deltas,
)
from vouchboard.services.reconcile_service import (
    apply_reconciliation_plan,
    plan_entry_reconciliation,
)
from vouchboard.services.repo_slug import NormalizedRepo, require_github_repo
from vouchboard.services.trustdown import parse_trustdown

logger = get_logger(__name__)

ANONYMOUS_REQUESTER = "anonymous"
MAX_REINDEX_LIMIT = 100

_ABSENCE_MESSAGES = {
    "missing_repo": "GitHub repository was not found.",
    "missing_file": "No VOUCHED.td file was found.",
}


async def index_repository(
    repo_input: str,
    requester: str | None = None,
    trusted: bool = False,
    source: ContentSource | None = None,
) -> IndexResult:
    """
    Index one repository and return the outcome.

    Raises InvalidInputError, RateLimitedError or ConflictError before any
    stored state changes. Everything after the lock is taken is reported in
    the returned result instead.
    """
    normalized = require_github_repo(repo_input)
    slug = normalized.slug
    bind_index_context(slug, requester)
    try:
        if not trusted:
            await check_rate_limits(requester or ANONYMOUS_REQUESTER, slug)
        async with repo_lock(slug):
            return await _run_pipeline(normalized, source or GithubContentSource())
    finally:
        clear_index_context()


async def _run_pipeline(normalized: NormalizedRepo, source: ContentSource) -> IndexResult:
    slug = normalized.slug
    logger.info("repo_index_started")

    try:
        fetched = await source.fetch(slug)
    except UpstreamError as e:
        await _record_failure(normalized, "error", e.message)
        return IndexFailure(status="error", slug=slug, message=e.message)
    except Exception as e:
        logger.exception("repo_fetch_failed", error=str(e))
        await _record_failure(normalized, "error", f"Content fetch failed: {e}")
        return IndexFailure(
            status="error", slug=slug, message="Fetching the repository content failed."
        )

    if isinstance(fetched, ContentAbsence):
        status = "error" if fetched.kind == "transient_error" else fetched.kind
        await _record_failure(normalized, status, fetched.message, fetched.default_branch)
        logger.info("repo_index_absent", status=status, reason=fetched.message)
        return IndexFailure(
            status=status,
            slug=slug,
            message=_ABSENCE_MESSAGES.get(status, fetched.message),
        )

    try:
        return await _write_snapshot(normalized, fetched)
    except Exception as e:
        logger.exception("repo_index_failed", error=str(e))
        await _record_failure(normalized, "error", str(e), fetched.default_branch)
        return IndexFailure(
            status="error", slug=slug, message="Indexing failed while writing results."
        )


async def _get_or_create_repository(
    db: AsyncSession, normalized: NormalizedRepo
) -> Repository:
    result = await db.execute(select(Repository).where(Repository.slug == normalized.slug))
    repo = result.scalar_one_or_none()
    if repo is None:
        repo = Repository(slug=normalized.slug, owner=normalized.owner, name=normalized.name)
        db.add(repo)
        await db.flush()
        logger.info("repository_created")
    return repo


async def _record_failure(
    normalized: NormalizedRepo,
    status: str,
    message: str,
    default_branch: str | None = None,
) -> None:
    """Record a failed attempt in its own transaction. Entries are left untouched."""
    async with get_db_session() as db:
        repo = await _get_or_create_repository(db, normalized)
        repo.status = status
        repo.last_error = message
        repo.last_attempt_at = datetime.now(timezone.utc)
        if default_branch:
            repo.default_branch = default_branch
        await db.commit()


async def _write_snapshot(normalized: NormalizedRepo, fetched: FetchedContent) -> IndexedResult:
    slug = normalized.slug
    now = datetime.now(timezone.utc)

    async with get_db_session() as db:
        repo = await _get_or_create_repository(db, normalized)
        snapshot = (
            await db.execute(select(Snapshot).where(Snapshot.repository_id == repo.id))
        ).scalar_one_or_none()

        if (
            repo.status == "indexed"
            and snapshot is not None
            and snapshot.commit_sha == fetched.commit_sha
            and snapshot.file_path == fetched.file_path
        ):
            repo.last_attempt_at = now
            await db.commit()
            logger.info("repo_index_skipped_no_changes", commit_sha=fetched.commit_sha)
            return IndexedResult(
                slug=slug,
                file_path=fetched.file_path,
                entries_indexed=repo.entry_count,
                changes_detected=0,
                audit_recorded=False,
                skipped_no_changes=True,
            )

        if snapshot is None:
            snapshot = Snapshot(
                repository_id=repo.id,
                commit_sha=fetched.commit_sha,
                file_path=fetched.file_path,
                indexed_at=now,
            )
            db.add(snapshot)
            await db.flush()
        else:
            snapshot.commit_sha = fetched.commit_sha
            snapshot.file_path = fetched.file_path
            snapshot.indexed_at = now

        rows = (
            await db.execute(select(Entry).where(Entry.repository_id == repo.id))
        ).scalars().all()
        existing = [ExistingEntry.model_validate(row) for row in rows]
        before = list(index_by_handle(existing).values())
        entries = parse_trustdown(fetched.text)

        plan = plan_entry_reconciliation(existing, entries, slug, snapshot.id)
        await apply_reconciliation_plan(db, repo.id, slug, snapshot.id, plan)

        changes = diff_entries(before, entries)
        block = await append_audit_block(
            db, repo.id, slug, snapshot.id, fetched.block_source(), changes, now_ms()
        )
        await apply_leaderboard_deltas(db, compute_leaderboard_deltas(changes))

        repo.default_branch = fetched.default_branch
        repo.status = "indexed"
        repo.last_error = None
        repo.last_attempt_at = now
        repo.last_indexed_at = now
        repo.entry_count = len(entries)
        repo.vouched_count = sum(1 for e in entries if e.type == "vouch")
        repo.denounced_count = sum(1 for e in entries if e.type == "denounce")

        await db.commit()

    logger.info(
        "repo_indexed",
        entries=len(entries),
        changes=len(changes),
        audit_height=block.height if block else None,
    )
    return IndexedResult(
        slug=slug,
        file_path=fetched.file_path,
        entries_indexed=len(entries),
        changes_detected=len(changes),
        audit_recorded=block is not None,
        audit_height=block.height if block else None,
    )


async def list_tracked_repo_slugs(db: AsyncSession, limit: int) -> list[str]:
    """Least recently attempted repositories first, skipping ones GitHub does not know."""
    limit = max(1, min(limit, MAX_REINDEX_LIMIT))
    result = await db.execute(
        select(Repository.slug)
        .where(Repository.status != "missing_repo")
        .order_by(Repository.last_attempt_at.asc())
        .limit(limit)
    )
    return list(result.scalars().all())


async def reindex_tracked_repos(
    limit: int | None = None,
    source: ContentSource | None = None,
) -> ReindexSummary:
    """Reindex a batch of tracked repositories as a trusted caller."""
    limit = limit if limit is not None else get_settings().reindex_batch_size
    async with get_db_session() as db:
        slugs = await list_tracked_repo_slugs(db, limit)

    source = source or GithubContentSource()
    summary = ReindexSummary()
    for slug in slugs:
        summary.attempted += 1
        try:
            result = await index_repository(slug, trusted=True, source=source)
        except ConflictError as e:
            result = IndexFailure(status="error", slug=slug, message=e.message)
        except Exception as e:
            logger.exception("reindex_repo_failed", slug=slug, error=str(e))
            result = IndexFailure(status="error", slug=slug, message="Reindexing failed.")

        if result.status == "indexed":
            summary.indexed += 1
        elif result.status == "missing_file":
            summary.missing_file += 1
        elif result.status == "missing_repo":
            summary.missing_repo += 1
        else:
            summary.failed += 1
        summary.results.append(result)

    logger.info(
        "reindex_batch_complete",
        attempted=summary.attempted,
        indexed=summary.indexed,
        missing_file=summary.missing_file,
        missing_repo=summary.missing_repo,
        failed=summary.failed,
    )
    return summary
