"""Background scheduler for periodic reindexing of tracked repositories.

Runs as an asyncio task. Every interval it reindexes the least recently
attempted repositories as a trusted caller, so rate limits do not apply but
the per-repository lock still does.
"""

import asyncio

from vouchboard.config import get_settings
from vouchboard.logging_config import get_logger
from vouchboard.schemas import ReindexSummary
from vouchboard.services.github_source import ContentSource
from vouchboard.services.indexer_service import reindex_tracked_repos

logger = get_logger(__name__)


async def run_reindex_cycle(
    limit: int | None = None, source: ContentSource | None = None
) -> ReindexSummary:
    """Single cycle: reindex one batch of tracked repositories."""
    summary = await reindex_tracked_repos(limit=limit, source=source)
    if summary.attempted > 0:
        logger.info(
            "reindex_cycle_complete",
            attempted=summary.attempted,
            indexed=summary.indexed,
            failed=summary.failed,
        )
    return summary


async def scheduler_loop(
    stop_event: asyncio.Event,
    interval_seconds: float | None = None,
    source: ContentSource | None = None,
) -> None:
    """Main scheduler loop. Runs until stop_event is set."""
    settings = get_settings()
    interval = interval_seconds if interval_seconds is not None else settings.reindex_interval_seconds
    logger.info(
        "scheduler_started",
        interval_seconds=interval,
        batch_size=settings.reindex_batch_size,
    )

    while not stop_event.is_set():
        try:
            await run_reindex_cycle(source=source)
        except Exception:
            logger.exception("scheduler_cycle_error")

        # Wait for the interval or until stopped
        try:
            await asyncio.wait_for(stop_event.wait(), timeout=interval)
            break  # stop_event was set
        except asyncio.TimeoutError:
            pass  # Interval elapsed, run again

    logger.info("scheduler_stopped")
