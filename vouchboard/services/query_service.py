"""Read queries over indexed repositories, entries and the audit chain."""

from dataclasses import dataclass, field

from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession

from vouchboard.models import Entry, Repository, Snapshot
from vouchboard.schemas import (
    AuditBlockResponse,
    ChainVerification,
    EntryResponse,
    HandleSearchRow,
    RepositoryOverview,
    RepositoryResponse,
    SnapshotResponse,
    UserOverview,
    UserOverviewRow,
)
from vouchboard.services.audit_service import list_audit_blocks, verify_audit_chain
from vouchboard.services.repo_slug import require_github_repo

SEARCH_SCAN_LIMIT = 250


def _clamp(value: int, low: int, high: int) -> int:
    return max(low, min(value, high))


async def get_repository_by_slug(db: AsyncSession, repo_input: str) -> Repository | None:
    slug = require_github_repo(repo_input).slug
    result = await db.execute(select(Repository).where(Repository.slug == slug))
    return result.scalar_one_or_none()


async def get_repository_overview(
    db: AsyncSession, repo_input: str
) -> RepositoryOverview | None:
    """Repository, its current snapshot and entries (denounce before vouch, then by handle)."""
    repo = await get_repository_by_slug(db, repo_input)
    if repo is None:
        return None

    snapshot = (
        await db.execute(select(Snapshot).where(Snapshot.repository_id == repo.id))
    ).scalar_one_or_none()
    entries = (
        await db.execute(
            select(Entry)
            .where(Entry.repository_id == repo.id)
            .order_by(Entry.type.asc(), Entry.handle.asc())
        )
    ).scalars().all()

    return RepositoryOverview(
        repo=RepositoryResponse.model_validate(repo),
        snapshot=SnapshotResponse.model_validate(snapshot) if snapshot else None,
        entries=[EntryResponse.model_validate(e) for e in entries],
        vouched=sum(1 for e in entries if e.type == "vouch"),
        denounced=sum(1 for e in entries if e.type == "denounce"),
    )


def _split_handle_query(raw: str) -> tuple[str | None, str]:
    """``platform:user``, ``@user`` or ``user`` to (platform filter, username)."""
    value = raw.strip().lower()
    if value.startswith("@"):
        value = value[1:]
    if ":" in value:
        platform, username = value.split(":", 1)
        return platform.strip() or None, username.strip()
    return None, value


async def get_user_overview(db: AsyncSession, handle_input: str) -> UserOverview | None:
    """Every repository vouching for or denouncing a user, on one platform or all."""
    platform, username = _split_handle_query(handle_input)
    if not username:
        return None

    query = (
        select(Entry, Repository.slug)
        .join(Repository, Repository.id == Entry.repository_id)
        .where(Entry.username == username)
        .order_by(Entry.type.asc(), Repository.slug.asc())
    )
    if platform:
        query = query.where(Entry.platform == platform)

    result = await db.execute(query)
    rows = [
        UserOverviewRow(entry=EntryResponse.model_validate(entry), repo_slug=slug)
        for entry, slug in result.all()
    ]
    if not rows:
        return None

    return UserOverview(
        handle=f"{platform}:{username}" if platform else username,
        vouched=sum(1 for row in rows if row.entry.type == "vouch"),
        denounced=sum(1 for row in rows if row.entry.type == "denounce"),
        repositories=len({row.repo_slug for row in rows}),
        rows=rows,
    )


@dataclass
class _HandleTally:
    platform: str
    username: str
    vouched: int = 0
    denounced: int = 0
    repository_ids: set = field(default_factory=set)


async def search_handles(db: AsyncSession, query: str, limit: int = 12) -> list[HandleSearchRow]:
    """Handles whose username contains the query, best standing first."""
    limit = _clamp(limit, 1, 30)
    _, username = _split_handle_query(query)
    if not username:
        return []

    result = await db.execute(
        select(Entry)
        .where(Entry.username.contains(username, autoescape=True))
        .limit(SEARCH_SCAN_LIMIT)
    )

    grouped: dict[str, _HandleTally] = {}
    for entry in result.scalars().all():
        tally = grouped.setdefault(entry.handle, _HandleTally(entry.platform, entry.username))
        if entry.type == "vouch":
            tally.vouched += 1
        else:
            tally.denounced += 1
        tally.repository_ids.add(entry.repository_id)

    ranked = sorted(
        grouped.items(),
        key=lambda item: (
            -(item[1].vouched - item[1].denounced),
            -item[1].vouched,
            item[0],
        ),
    )
    return [
        HandleSearchRow(
            handle=handle,
            platform=tally.platform,
            username=tally.username,
            vouched_count=tally.vouched,
            denounced_count=tally.denounced,
            repositories=len(tally.repository_ids),
        )
        for handle, tally in ranked[:limit]
    ]


async def list_recent_repos(db: AsyncSession, limit: int = 12) -> list[RepositoryResponse]:
    limit = _clamp(limit, 1, 50)
    result = await db.execute(
        select(Repository)
        .order_by(Repository.last_indexed_at.desc().nulls_last(), Repository.slug.asc())
        .limit(limit)
    )
    return [RepositoryResponse.model_validate(repo) for repo in result.scalars().all()]


async def get_audit_chain(
    db: AsyncSession, repo_input: str, limit: int | None = None
) -> list[AuditBlockResponse] | None:
    repo = await get_repository_by_slug(db, repo_input)
    if repo is None:
        return None
    blocks = await list_audit_blocks(db, repo.id, limit=limit)
    return [AuditBlockResponse.model_validate(block) for block in blocks]


async def verify_repository_chain(
    db: AsyncSession, repo_input: str
) -> ChainVerification | None:
    repo = await get_repository_by_slug(db, repo_input)
    if repo is None:
        return None
    return await verify_audit_chain(db, repo.id, repo.slug)
