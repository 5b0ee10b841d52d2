"""Audit chain service: hash-linked blocks recording what changed per indexing run."""

import hashlib
import json
from typing import Any, Iterable, Protocol, Sequence
from uuid import UUID

from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession
from sqlalchemy.orm import selectinload

from vouchboard.logging_config import get_logger
from vouchboard.models import AuditBlock, AuditChange
from vouchboard.schemas import AuditChangeRecord, BlockSource, ChainVerification

logger = get_logger(__name__)


class _EntryLike(Protocol):
    handle: str
    type: str
    details: str | None


def index_by_handle(entries: Iterable[_EntryLike]) -> dict[str, _EntryLike]:
    """Key entries by handle; the first occurrence wins, matching duplicate repair."""
    indexed: dict[str, _EntryLike] = {}
    for entry in entries:
        indexed.setdefault(entry.handle, entry)
    return indexed


def diff_entries(
    before: Iterable[_EntryLike],
    after: Iterable[_EntryLike],
) -> list[AuditChangeRecord]:
    """Classify every handle as added, removed or changed, in handle order.

    Unchanged handles produce no record.
    """
    before_map = index_by_handle(before)
    after_map = index_by_handle(after)

    changes: list[AuditChangeRecord] = []
    for handle in sorted(before_map.keys() | after_map.keys()):
        prev = before_map.get(handle)
        curr = after_map.get(handle)

        if prev is None and curr is not None:
            changes.append(
                AuditChangeRecord(
                    handle=handle,
                    action="added",
                    after_type=curr.type,
                    after_details=curr.details or None,
                )
            )
        elif prev is not None and curr is None:
            changes.append(
                AuditChangeRecord(
                    handle=handle,
                    action="removed",
                    before_type=prev.type,
                    before_details=prev.details or None,
                )
            )
        elif prev is not None and curr is not None:
            prev_details = prev.details or None
            curr_details = curr.details or None
            if prev.type != curr.type or prev_details != curr_details:
                changes.append(
                    AuditChangeRecord(
                        handle=handle,
                        action="changed",
                        before_type=prev.type,
                        after_type=curr.type,
                        before_details=prev_details,
                        after_details=curr_details,
                    )
                )

    return changes


def should_record_block(previous_block: AuditBlock | None, changes: Sequence[Any]) -> bool:
    """A block is appended for the genesis run or whenever something changed."""
    return previous_block is None or len(changes) > 0


def block_hash_payload(
    repo_slug: str,
    height: int,
    previous_hash: str | None,
    snapshot_id: UUID | str,
    timestamp_ms: int,
    source: BlockSource,
    changes: Sequence[AuditChangeRecord],
) -> dict[str, Any]:
    """Canonical content of a block. Optional fields are always present, as null."""
    return {
        "repo": repo_slug,
        "height": height,
        "previous_hash": previous_hash,
        "snapshot_id": str(snapshot_id),
        "timestamp": timestamp_ms,
        "file_path": source.file_path,
        "commit_sha": source.commit_sha,
        "commit_url": source.commit_url,
        "source_url": source.source_url,
        "commit_actor": source.commit_actor,
        "committed_at": source.committed_at,
        "changes": [
            {
                "handle": change.handle,
                "action": change.action,
                "before_type": change.before_type,
                "after_type": change.after_type,
                "before_details": change.before_details,
                "after_details": change.after_details,
            }
            for change in changes
        ],
    }


def compute_block_hash(payload: dict[str, Any]) -> str:
    """SHA-256 (lowercase hex) of the payload serialized deterministically."""
    payload_json = json.dumps(payload, sort_keys=True, separators=(",", ":"), default=str)
    return hashlib.sha256(payload_json.encode()).hexdigest()


def recompute_block_hash(block: AuditBlock) -> str:
    """Recompute a stored block's hash from its columns and its change rows."""
    source = BlockSource(
        file_path=block.file_path,
        commit_sha=block.commit_sha,
        commit_url=block.commit_url,
        source_url=block.source_url,
        commit_actor=block.commit_actor,
        committed_at=block.committed_at,
    )
    changes = [AuditChangeRecord.model_validate(change) for change in block.changes]
    return compute_block_hash(
        block_hash_payload(
            block.repo_slug,
            block.height,
            block.previous_hash,
            block.snapshot_id,
            block.created_at_ms,
            source,
            changes,
        )
    )


async def get_latest_block(db: AsyncSession, repository_id: UUID) -> AuditBlock | None:
    result = await db.execute(
        select(AuditBlock)
        .where(AuditBlock.repository_id == repository_id)
        .order_by(AuditBlock.height.desc())
        .limit(1)
    )
    return result.scalar_one_or_none()


async def append_audit_block(
    db: AsyncSession,
    repository_id: UUID,
    repo_slug: str,
    snapshot_id: UUID,
    source: BlockSource,
    changes: Sequence[AuditChangeRecord],
    timestamp_ms: int,
) -> AuditBlock | None:
    """
    Link a new block to the repository's chain if one is warranted.

    Returns the new block, or None when the diff is empty and the chain
    already has a genesis block. Runs inside the caller's transaction.
    """
    previous = await get_latest_block(db, repository_id)
    if not should_record_block(previous, changes):
        return None

    height = previous.height + 1 if previous else 1
    previous_hash = previous.block_hash if previous else None
    block_hash = compute_block_hash(
        block_hash_payload(
            repo_slug, height, previous_hash, snapshot_id, timestamp_ms, source, changes
        )
    )

    block = AuditBlock(
        repository_id=repository_id,
        repo_slug=repo_slug,
        height=height,
        previous_block_id=previous.id if previous else None,
        previous_hash=previous_hash,
        block_hash=block_hash,
        snapshot_id=snapshot_id,
        created_at_ms=timestamp_ms,
        file_path=source.file_path,
        commit_sha=source.commit_sha,
        commit_url=source.commit_url,
        source_url=source.source_url,
        commit_actor=source.commit_actor,
        committed_at=source.committed_at,
        added_count=sum(1 for c in changes if c.action == "added"),
        removed_count=sum(1 for c in changes if c.action == "removed"),
        changed_count=sum(1 for c in changes if c.action == "changed"),
        changes=[
            AuditChange(position=position, **change.model_dump())
            for position, change in enumerate(changes)
        ],
    )
    db.add(block)
    await db.flush()

    logger.info(
        "audit_block_appended",
        repo_slug=repo_slug,
        height=height,
        block_hash=block_hash,
        added=block.added_count,
        removed=block.removed_count,
        changed=block.changed_count,
    )
    return block


async def list_audit_blocks(
    db: AsyncSession, repository_id: UUID, limit: int | None = None
) -> list[AuditBlock]:
    """Blocks of one repository in height order, changes eagerly loaded."""
    query = (
        select(AuditBlock)
        .where(AuditBlock.repository_id == repository_id)
        .options(selectinload(AuditBlock.changes))
        .order_by(AuditBlock.height.asc())
    )
    if limit is not None:
        query = query.limit(limit)
    result = await db.execute(query)
    return list(result.scalars().all())


async def verify_audit_chain(
    db: AsyncSession, repository_id: UUID, repo_slug: str
) -> ChainVerification:
    """Check height continuity, back-links and every stored hash."""
    blocks = await list_audit_blocks(db, repository_id)

    previous: AuditBlock | None = None
    for expected_height, block in enumerate(blocks, start=1):
        reason = None
        if block.height != expected_height:
            reason = f"expected height {expected_height}, found {block.height}"
        elif previous is None and (block.previous_hash or block.previous_block_id):
            reason = "genesis block links to a predecessor"
        elif previous is not None and block.previous_hash != previous.block_hash:
            reason = "previous_hash does not match the preceding block"
        elif previous is not None and block.previous_block_id != previous.id:
            reason = "previous_block_id does not match the preceding block"
        elif recompute_block_hash(block) != block.block_hash:
            reason = "block_hash does not match block contents"

        if reason is not None:
            logger.warning(
                "audit_chain_broken", repo_slug=repo_slug, height=block.height, reason=reason
            )
            return ChainVerification(
                slug=repo_slug,
                valid=False,
                blocks_checked=expected_height,
                broken_height=block.height,
                reason=reason,
            )
        previous = block

    return ChainVerification(slug=repo_slug, valid=True, blocks_checked=len(blocks))
