"""Leaderboard service: cross-repository standing per handle, maintained from audit diffs."""

from dataclasses import dataclass
from datetime import datetime, timezone
from typing import Iterable

from sqlalchemy import and_, case, delete, or_, select, update
from sqlalchemy.ext.asyncio import AsyncSession

from vouchboard.database import insert_if_absent
from vouchboard.logging_config import get_logger
from vouchboard.models import Entry, LeaderboardRow
from vouchboard.schemas import AuditChangeRecord, LeaderboardEntry
from vouchboard.services.trustdown import DEFAULT_PLATFORM

logger = get_logger(__name__)

MAX_LEADERBOARD_LIMIT = 100


@dataclass
class HandleDelta:
    platform: str
    username: str
    vouched: int = 0
    denounced: int = 0
    repositories: int = 0

    def bump(self, entry_type: str | None, amount: int) -> None:
        if entry_type == "vouch":
            self.vouched += amount
        elif entry_type == "denounce":
            self.denounced += amount


def split_handle(handle: str) -> tuple[str, str]:
    if ":" in handle:
        platform, username = handle.split(":", 1)
        return platform, username
    return DEFAULT_PLATFORM, handle


def compute_leaderboard_deltas(
    changes: Iterable[AuditChangeRecord],
) -> dict[str, HandleDelta]:
    """Turn diff records into per-handle count deltas, summed per handle."""
    deltas: dict[str, HandleDelta] = {}
    for change in changes:
        delta = deltas.get(change.handle)
        if delta is None:
            platform, username = split_handle(change.handle)
            delta = deltas[change.handle] = HandleDelta(platform=platform, username=username)

        if change.action == "added":
            delta.bump(change.after_type, 1)
            delta.repositories += 1
        elif change.action == "removed":
            delta.bump(change.before_type, -1)
            delta.repositories -= 1
        else:
            delta.bump(change.before_type, -1)
            delta.bump(change.after_type, 1)
    return deltas


def _clamped(column, amount: int):
    total = column + amount
    return case((total < 0, 0), else_=total)


async def apply_leaderboard_deltas(db: AsyncSession, deltas: dict[str, HandleDelta]) -> None:
    """
    Apply deltas to the materialized rows inside the caller's transaction.

    Each row is created if absent and then adjusted in a single UPDATE.
    Counts are clamped at zero. A row with no repositories, or with neither
    vouches nor denouncements, is deleted.
    """
    now = datetime.now(timezone.utc)
    # Fixed order so concurrent transactions take row locks in the same order.
    for handle in sorted(deltas):
        delta = deltas[handle]
        if delta.vouched == 0 and delta.denounced == 0 and delta.repositories == 0:
            continue

        vouched = _clamped(LeaderboardRow.vouched_count, delta.vouched)
        denounced = _clamped(LeaderboardRow.denounced_count, delta.denounced)
        adjust = (
            update(LeaderboardRow)
            .where(LeaderboardRow.handle == handle)
            .values(
                vouched_count=vouched,
                denounced_count=denounced,
                repositories_count=_clamped(LeaderboardRow.repositories_count, delta.repositories),
                score=vouched - denounced,
                updated_at=now,
            )
            .execution_options(synchronize_session=False)
        )
        # A parallel run may delete the row between the insert and the update.
        for _ in range(2):
            await insert_if_absent(
                db,
                LeaderboardRow,
                {
                    "handle": handle,
                    "platform": delta.platform,
                    "username": delta.username,
                    "vouched_count": 0,
                    "denounced_count": 0,
                    "repositories_count": 0,
                    "score": 0,
                    "updated_at": now,
                },
                index_elements=["handle"],
            )
            if (await db.execute(adjust)).rowcount:
                break

        await db.execute(
            delete(LeaderboardRow)
            .where(
                LeaderboardRow.handle == handle,
                or_(
                    LeaderboardRow.repositories_count == 0,
                    and_(
                        LeaderboardRow.vouched_count == 0,
                        LeaderboardRow.denounced_count == 0,
                    ),
                ),
            )
            .execution_options(synchronize_session=False)
        )

    logger.debug("leaderboard_deltas_applied", handles=len(deltas))


async def rebuild_leaderboard(db: AsyncSession) -> int:
    """
    Recompute every leaderboard row from a full scan of the entries.

    Repair tool only; indexing keeps the rows current incrementally. Returns
    the number of rows written. The caller commits.
    """
    await db.execute(delete(LeaderboardRow))

    result = await db.execute(
        select(Entry.repository_id, Entry.handle, Entry.platform, Entry.username, Entry.type)
    )
    seen: set[tuple] = set()
    totals: dict[str, HandleDelta] = {}
    for repository_id, handle, platform, username, entry_type in result.all():
        # One entry per repository and handle, as the diff sees them.
        if (repository_id, handle) in seen:
            continue
        seen.add((repository_id, handle))

        delta = totals.get(handle)
        if delta is None:
            delta = totals[handle] = HandleDelta(platform=platform, username=username)
        delta.bump(entry_type, 1)
        delta.repositories += 1

    now = datetime.now(timezone.utc)
    for handle, delta in totals.items():
        db.add(
            LeaderboardRow(
                handle=handle,
                platform=delta.platform,
                username=delta.username,
                vouched_count=delta.vouched,
                denounced_count=delta.denounced,
                repositories_count=delta.repositories,
                score=delta.vouched - delta.denounced,
                updated_at=now,
            )
        )
    await db.flush()

    logger.info("leaderboard_rebuilt", rows=len(totals))
    return len(totals)


async def list_top_handles(db: AsyncSession, limit: int = 25) -> list[LeaderboardEntry]:
    limit = max(1, min(limit, MAX_LEADERBOARD_LIMIT))
    result = await db.execute(
        select(LeaderboardRow)
        .order_by(
            LeaderboardRow.score.desc(),
            LeaderboardRow.vouched_count.desc(),
            LeaderboardRow.denounced_count.asc(),
            LeaderboardRow.repositories_count.desc(),
            LeaderboardRow.handle.asc(),
        )
        .limit(limit)
    )
    return [LeaderboardEntry.model_validate(row) for row in result.scalars().all()]
