"""Entry reconciliation: converge stored entries to a freshly parsed set.

Stored rows are patched in place. Rows are deleted only for handles that left
the file and for duplicate handles.
"""

from typing import Sequence
from uuid import UUID

from sqlalchemy import delete, update
from sqlalchemy.ext.asyncio import AsyncSession

from vouchboard.logging_config import get_logger
from vouchboard.models import Entry
from vouchboard.schemas import (
    EntryPatch,
    ExistingEntry,
    PlannedPatch,
    ReconciliationPlan,
    TrustEntry,
)

logger = get_logger(__name__)


def _needs_patch(
    existing: ExistingEntry,
    target: TrustEntry,
    repo_slug: str,
    snapshot_id: UUID,
) -> bool:
    return (
        existing.platform != target.platform
        or existing.username != target.username
        or existing.handle != target.handle
        or existing.type != target.type
        or (existing.details or None) != (target.details or None)
        or existing.snapshot_id != snapshot_id
        or existing.repo_slug != repo_slug
    )


def plan_entry_reconciliation(
    existing_entries: Sequence[ExistingEntry],
    next_entries: Sequence[TrustEntry],
    repo_slug: str,
    snapshot_id: UUID,
) -> ReconciliationPlan:
    """
    Compute the deletions, patches and inserts that turn existing into next.

    Duplicate handles already in storage are repaired first: the first-seen
    row survives, every later row with the same handle is scheduled for
    deletion. Rows without a recorded slug or snapshot always get a patch.
    """
    survivors: dict[str, ExistingEntry] = {}
    duplicate_delete_ids: list[UUID] = []
    for existing in existing_entries:
        if existing.handle in survivors:
            duplicate_delete_ids.append(existing.id)
        else:
            survivors[existing.handle] = existing

    remaining = {entry.handle: entry for entry in next_entries}
    delete_ids: list[UUID] = []
    patches: list[PlannedPatch] = []

    for handle, existing in survivors.items():
        target = remaining.pop(handle, None)
        if target is None:
            delete_ids.append(existing.id)
            continue

        if _needs_patch(existing, target, repo_slug, snapshot_id):
            patches.append(
                PlannedPatch(
                    id=existing.id,
                    patch=EntryPatch(
                        platform=target.platform,
                        username=target.username,
                        handle=target.handle,
                        type=target.type,
                        details=target.details or None,
                        snapshot_id=snapshot_id,
                        repo_slug=repo_slug,
                    ),
                )
            )

    return ReconciliationPlan(
        duplicate_delete_ids=duplicate_delete_ids,
        delete_ids=delete_ids,
        patches=patches,
        inserts=list(remaining.values()),
    )


async def apply_reconciliation_plan(
    db: AsyncSession,
    repository_id: UUID,
    repo_slug: str,
    snapshot_id: UUID,
    plan: ReconciliationPlan,
) -> None:
    """Apply a plan in order: duplicate and stale deletes, then patches, then inserts.

    Runs inside the caller's transaction; nothing is committed here.
    """
    doomed = [*plan.duplicate_delete_ids, *plan.delete_ids]
    if doomed:
        await db.execute(
            delete(Entry)
            .where(Entry.id.in_(doomed))
            .execution_options(synchronize_session=False)
        )

    for planned in plan.patches:
        await db.execute(
            update(Entry)
            .where(Entry.id == planned.id)
            .values(**planned.patch.model_dump())
            .execution_options(synchronize_session=False)
        )

    for entry in plan.inserts:
        db.add(
            Entry(
                repository_id=repository_id,
                snapshot_id=snapshot_id,
                repo_slug=repo_slug,
                platform=entry.platform,
                username=entry.username,
                handle=entry.handle,
                type=entry.type,
                details=entry.details,
            )
        )
    await db.flush()

    logger.info(
        "entries_reconciled",
        repo_slug=repo_slug,
        duplicates_removed=len(plan.duplicate_delete_ids),
        deleted=len(plan.delete_ids),
        patched=len(plan.patches),
        inserted=len(plan.inserts),
    )
