"""Concurrency guard: per-repository index lock and fixed-window rate limits.

Both live as rows in the main database with an explicit expiry. Expired rows
are treated as absent and pruned on access.
"""

import math
import time
from contextlib import asynccontextmanager
from dataclasses import dataclass
from typing import AsyncIterator

from sqlalchemy import case, delete, select, update
from sqlalchemy.exc import IntegrityError
from sqlalchemy.ext.asyncio import AsyncSession

from vouchboard.config import get_settings
from vouchboard.database import get_db_session, insert_if_absent
from vouchboard.exceptions import ConflictError, RateLimitedError
from vouchboard.logging_config import get_logger
from vouchboard.models import IndexLock, RateBucket

logger = get_logger(__name__)


def now_ms() -> int:
    return int(time.time() * 1000)


# ---------------------------------------------------------------------------
# Repository lock
# ---------------------------------------------------------------------------


async def acquire_repo_lock(slug: str, at_ms: int | None = None) -> int:
    """
    Take the index lock for a repository. Returns the lock's expiry (epoch ms).

    Fails fast with ConflictError while an unexpired lock exists. The write is
    committed in its own transaction so other workers see it immediately.
    """
    at_ms = now_ms() if at_ms is None else at_ms
    expires_at_ms = at_ms + get_settings().lock_ttl_seconds * 1000

    async with get_db_session() as db:
        await db.execute(
            delete(IndexLock).where(
                IndexLock.repo_slug == slug,
                IndexLock.expires_at_ms <= at_ms,
            )
        )
        db.add(IndexLock(repo_slug=slug, expires_at_ms=expires_at_ms))
        try:
            await db.commit()
        except IntegrityError:
            await db.rollback()
            held_until = await db.scalar(
                select(IndexLock.expires_at_ms).where(IndexLock.repo_slug == slug)
            )
            logger.info("repo_lock_conflict", slug=slug, held_until=held_until)
            raise ConflictError(slug, held_until)

    logger.debug("repo_lock_acquired", slug=slug, expires_at_ms=expires_at_ms)
    return expires_at_ms


async def release_repo_lock(slug: str) -> None:
    async with get_db_session() as db:
        await db.execute(delete(IndexLock).where(IndexLock.repo_slug == slug))
        await db.commit()
    logger.debug("repo_lock_released", slug=slug)


@asynccontextmanager
async def repo_lock(slug: str) -> AsyncIterator[int]:
    """Hold the repository lock for the body; release it however the body exits.

    A failed release is logged and left to the TTL.
    """
    expires_at_ms = await acquire_repo_lock(slug)
    try:
        yield expires_at_ms
    finally:
        try:
            await release_repo_lock(slug)
        except Exception as e:
            logger.error("repo_lock_release_failed", slug=slug, error=str(e))


# ---------------------------------------------------------------------------
# Rate limits
# ---------------------------------------------------------------------------


@dataclass(frozen=True)
class RateTier:
    name: str
    key: str
    limit: int


@dataclass(frozen=True)
class BucketState:
    count: int
    reset_at_ms: int


def rate_tiers(requester: str, slug: str) -> list[RateTier]:
    """The three counters one indexing request is charged against, in check order."""
    settings = get_settings()
    return [
        RateTier("requester", f"global:{requester}", settings.max_requests_per_requester),
        RateTier(
            "requester_repo",
            f"repo:{requester}:{slug}",
            settings.max_requests_per_repo_requester,
        ),
        RateTier("repo", f"repo-global:{slug}", settings.max_requests_per_repo),
    ]


async def consume_rate_bucket(
    db: AsyncSession, key: str, window_ms: int, at_ms: int
) -> BucketState:
    """Count one request against a fixed-window bucket.

    A missing or expired bucket restarts at 1 with a fresh window. The
    increment happens in SQL, so concurrent attempts are all counted.
    """
    await insert_if_absent(
        db,
        RateBucket,
        {"key": key, "count": 0, "reset_at_ms": at_ms + window_ms},
        index_elements=["key"],
    )
    expired = RateBucket.reset_at_ms <= at_ms
    result = await db.execute(
        update(RateBucket)
        .where(RateBucket.key == key)
        .values(
            count=case((expired, 1), else_=RateBucket.count + 1),
            reset_at_ms=case((expired, at_ms + window_ms), else_=RateBucket.reset_at_ms),
        )
        .returning(RateBucket.count, RateBucket.reset_at_ms)
        .execution_options(synchronize_session=False)
    )
    count, reset_at_ms = result.one()
    return BucketState(count=count, reset_at_ms=reset_at_ms)


async def _charge_tiers(
    db: AsyncSession, tiers: list[RateTier], window_ms: int, at_ms: int
) -> tuple[RateTier, BucketState] | None:
    await db.execute(delete(RateBucket).where(RateBucket.reset_at_ms <= at_ms))
    for tier in tiers:
        state = await consume_rate_bucket(db, tier.key, window_ms, at_ms)
        if state.count > tier.limit:
            return tier, state
    return None


async def check_rate_limits(requester: str, slug: str, at_ms: int | None = None) -> None:
    """
    Charge a request against every tier; raise RateLimitedError on the first exceeded.

    Tiers after the exceeded one are not charged. Counts are committed even
    when the request is rejected.
    """
    at_ms = now_ms() if at_ms is None else at_ms
    window_ms = get_settings().rate_window_seconds * 1000
    tiers = rate_tiers(requester, slug)

    async with get_db_session() as db:
        exceeded = await _charge_tiers(db, tiers, window_ms, at_ms)
        await db.commit()

    if exceeded is not None:
        tier, state = exceeded
        retry_after = max(1, math.ceil((state.reset_at_ms - at_ms) / 1000))
        logger.warning(
            "rate_limit_exceeded",
            tier=tier.name,
            key=tier.key,
            count=state.count,
            limit=tier.limit,
        )
        raise RateLimitedError(tier.name, tier.key, tier.limit, retry_after)
