"""Pydantic v2 schemas shared by the indexer, the audit chain and the read queries."""

from datetime import datetime
from typing import Literal
from uuid import UUID

from pydantic import BaseModel, ConfigDict, Field

EntryType = Literal["vouch", "denounce"]
AuditAction = Literal["added", "removed", "changed"]


# ---------------------------------------------------------------------------
# Trust entries
# ---------------------------------------------------------------------------


class TrustEntry(BaseModel):
    """A parsed Trustdown record."""

    model_config = ConfigDict(frozen=True)

    platform: str
    username: str
    type: EntryType
    details: str | None = None

    @property
    def handle(self) -> str:
        return f"{self.platform}:{self.username}"


class ExistingEntry(BaseModel):
    """A stored entry as the reconciliation planner sees it."""

    model_config = ConfigDict(from_attributes=True)

    id: UUID
    platform: str
    username: str
    handle: str
    type: EntryType
    details: str | None = None
    snapshot_id: UUID | None = None
    repo_slug: str | None = None


class EntryPatch(BaseModel):
    platform: str
    username: str
    handle: str
    type: EntryType
    details: str | None = None
    snapshot_id: UUID
    repo_slug: str


class PlannedPatch(BaseModel):
    id: UUID
    patch: EntryPatch


class ReconciliationPlan(BaseModel):
    duplicate_delete_ids: list[UUID] = Field(default_factory=list)
    delete_ids: list[UUID] = Field(default_factory=list)
    patches: list[PlannedPatch] = Field(default_factory=list)
    inserts: list[TrustEntry] = Field(default_factory=list)

    @property
    def is_empty(self) -> bool:
        return not (
            self.duplicate_delete_ids or self.delete_ids or self.patches or self.inserts
        )


# ---------------------------------------------------------------------------
# Audit chain
# ---------------------------------------------------------------------------


class AuditChangeRecord(BaseModel):
    model_config = ConfigDict(from_attributes=True, frozen=True)

    handle: str
    action: AuditAction
    before_type: EntryType | None = None
    after_type: EntryType | None = None
    before_details: str | None = None
    after_details: str | None = None


class BlockSource(BaseModel):
    """File and commit metadata recorded in (and hashed into) an audit block."""

    file_path: str
    commit_sha: str
    commit_url: str | None = None
    source_url: str | None = None
    commit_actor: str | None = None
    committed_at: str | None = None


class AuditBlockResponse(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    id: UUID
    repo_slug: str
    height: int
    previous_block_id: UUID | None
    previous_hash: str | None
    block_hash: str
    snapshot_id: UUID
    created_at_ms: int
    file_path: str
    commit_sha: str
    commit_url: str | None = None
    source_url: str | None = None
    commit_actor: str | None = None
    committed_at: str | None = None
    added_count: int
    removed_count: int
    changed_count: int
    changes: list[AuditChangeRecord] = Field(default_factory=list)


class ChainVerification(BaseModel):
    slug: str
    valid: bool
    blocks_checked: int
    broken_height: int | None = None
    reason: str | None = None


# ---------------------------------------------------------------------------
# Index results
# ---------------------------------------------------------------------------


class IndexedResult(BaseModel):
    status: Literal["indexed"] = "indexed"
    slug: str
    file_path: str
    entries_indexed: int
    changes_detected: int
    audit_recorded: bool
    audit_height: int | None = None
    skipped_no_changes: bool = False


class IndexFailure(BaseModel):
    status: Literal["missing_file", "missing_repo", "error"]
    slug: str
    message: str


IndexResult = IndexedResult | IndexFailure


class ReindexSummary(BaseModel):
    attempted: int = 0
    indexed: int = 0
    missing_file: int = 0
    missing_repo: int = 0
    failed: int = 0
    results: list[IndexResult] = Field(default_factory=list)


# ---------------------------------------------------------------------------
# Read models
# ---------------------------------------------------------------------------


class RepositoryResponse(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    id: UUID
    slug: str
    owner: str
    name: str
    source: str
    default_branch: str
    status: str
    last_attempt_at: datetime
    last_indexed_at: datetime | None
    last_error: str | None
    entry_count: int
    vouched_count: int
    denounced_count: int


class SnapshotResponse(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    id: UUID
    commit_sha: str
    file_path: str
    indexed_at: datetime


class EntryResponse(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    id: UUID
    platform: str
    username: str
    handle: str
    type: EntryType
    details: str | None = None


class RepositoryOverview(BaseModel):
    repo: RepositoryResponse
    snapshot: SnapshotResponse | None
    entries: list[EntryResponse]
    vouched: int
    denounced: int


class UserOverviewRow(BaseModel):
    entry: EntryResponse
    repo_slug: str


class UserOverview(BaseModel):
    handle: str
    vouched: int
    denounced: int
    repositories: int
    rows: list[UserOverviewRow]


class LeaderboardEntry(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    handle: str
    platform: str
    username: str
    vouched_count: int
    denounced_count: int
    repositories_count: int
    score: int


class HandleSearchRow(BaseModel):
    handle: str
    platform: str
    username: str
    vouched_count: int
    denounced_count: int
    repositories: int
