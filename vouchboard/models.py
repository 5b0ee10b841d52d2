"""SQLAlchemy ORM models for repositories, trust entries, the audit chain and the guard."""

from datetime import datetime, timezone
from uuid import UUID, uuid4

from sqlalchemy import (
    BigInteger,
    CheckConstraint,
    ForeignKey,
    Index,
    Text,
    UniqueConstraint,
    Uuid,
)
from sqlalchemy.orm import DeclarativeBase, Mapped, mapped_column, relationship
from sqlalchemy.types import DateTime, Integer


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


class Base(DeclarativeBase):
    pass


# ---------------------------------------------------------------------------
# Repositories
# ---------------------------------------------------------------------------


class Repository(Base):
    __tablename__ = "repositories"
    __table_args__ = (
        Index("idx_repositories_last_attempt", "last_attempt_at"),
        CheckConstraint(
            "status IN ('new','indexed','missing_file','missing_repo','error')",
            name="ck_repository_status",
        ),
    )

    id: Mapped[UUID] = mapped_column(Uuid, primary_key=True, default=uuid4)
    slug: Mapped[str] = mapped_column(Text, unique=True, nullable=False)
    owner: Mapped[str] = mapped_column(Text, nullable=False)
    name: Mapped[str] = mapped_column(Text, nullable=False)
    source: Mapped[str] = mapped_column(Text, nullable=False, default="github")
    default_branch: Mapped[str] = mapped_column(Text, nullable=False, default="main")
    status: Mapped[str] = mapped_column(Text, nullable=False, default="new")
    last_attempt_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), nullable=False, default=_utcnow
    )
    last_indexed_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True))
    last_error: Mapped[str | None] = mapped_column(Text)
    entry_count: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    vouched_count: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    denounced_count: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), nullable=False, default=_utcnow
    )


# ---------------------------------------------------------------------------
# Snapshots (current indexed file, overwritten in place)
# ---------------------------------------------------------------------------


class Snapshot(Base):
    __tablename__ = "snapshots"

    id: Mapped[UUID] = mapped_column(Uuid, primary_key=True, default=uuid4)
    repository_id: Mapped[UUID] = mapped_column(
        Uuid, ForeignKey("repositories.id", ondelete="CASCADE"), unique=True, nullable=False
    )
    commit_sha: Mapped[str] = mapped_column(Text, nullable=False)
    file_path: Mapped[str] = mapped_column(Text, nullable=False)
    indexed_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), nullable=False, default=_utcnow
    )


# ---------------------------------------------------------------------------
# Trust entries
# ---------------------------------------------------------------------------


class Entry(Base):
    __tablename__ = "entries"
    __table_args__ = (
        Index("idx_entries_repo", "repository_id"),
        Index("idx_entries_handle", "handle"),
        Index("idx_entries_username", "username"),
        CheckConstraint("type IN ('vouch','denounce')", name="ck_entry_type"),
    )

    id: Mapped[UUID] = mapped_column(Uuid, primary_key=True, default=uuid4)
    repository_id: Mapped[UUID] = mapped_column(
        Uuid, ForeignKey("repositories.id", ondelete="CASCADE"), nullable=False
    )
    # Nullable for rows written before snapshot ownership was tracked.
    snapshot_id: Mapped[UUID | None] = mapped_column(Uuid)
    repo_slug: Mapped[str | None] = mapped_column(Text)
    platform: Mapped[str] = mapped_column(Text, nullable=False)
    username: Mapped[str] = mapped_column(Text, nullable=False)
    handle: Mapped[str] = mapped_column(Text, nullable=False)
    type: Mapped[str] = mapped_column(Text, nullable=False)
    details: Mapped[str | None] = mapped_column(Text)


# ---------------------------------------------------------------------------
# Audit chain
# ---------------------------------------------------------------------------


class AuditBlock(Base):
    __tablename__ = "audit_blocks"
    __table_args__ = (
        UniqueConstraint("repository_id", "height", name="uq_audit_block_height"),
        Index("idx_audit_blocks_repo", "repository_id"),
    )

    id: Mapped[UUID] = mapped_column(Uuid, primary_key=True, default=uuid4)
    repository_id: Mapped[UUID] = mapped_column(
        Uuid, ForeignKey("repositories.id", ondelete="CASCADE"), nullable=False
    )
    repo_slug: Mapped[str] = mapped_column(Text, nullable=False)
    height: Mapped[int] = mapped_column(Integer, nullable=False)
    previous_block_id: Mapped[UUID | None] = mapped_column(Uuid)
    previous_hash: Mapped[str | None] = mapped_column(Text)
    block_hash: Mapped[str] = mapped_column(Text, nullable=False)
    snapshot_id: Mapped[UUID] = mapped_column(Uuid, nullable=False)
    # Epoch milliseconds; hashed, so it must round-trip exactly on every backend.
    created_at_ms: Mapped[int] = mapped_column(BigInteger, nullable=False)
    file_path: Mapped[str] = mapped_column(Text, nullable=False)
    commit_sha: Mapped[str] = mapped_column(Text, nullable=False)
    commit_url: Mapped[str | None] = mapped_column(Text)
    source_url: Mapped[str | None] = mapped_column(Text)
    commit_actor: Mapped[str | None] = mapped_column(Text)
    committed_at: Mapped[str | None] = mapped_column(Text)
    added_count: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    removed_count: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    changed_count: Mapped[int] = mapped_column(Integer, nullable=False, default=0)

    changes: Mapped[list["AuditChange"]] = relationship(
        back_populates="block",
        order_by="AuditChange.position",
        cascade="all, delete-orphan",
    )


class AuditChange(Base):
    __tablename__ = "audit_changes"
    __table_args__ = (
        Index("idx_audit_changes_block", "block_id"),
        Index("idx_audit_changes_handle", "handle"),
        CheckConstraint(
            "action IN ('added','removed','changed')", name="ck_audit_change_action"
        ),
    )

    id: Mapped[UUID] = mapped_column(Uuid, primary_key=True, default=uuid4)
    block_id: Mapped[UUID] = mapped_column(
        Uuid, ForeignKey("audit_blocks.id", ondelete="CASCADE"), nullable=False
    )
    position: Mapped[int] = mapped_column(Integer, nullable=False)
    handle: Mapped[str] = mapped_column(Text, nullable=False)
    action: Mapped[str] = mapped_column(Text, nullable=False)
    before_type: Mapped[str | None] = mapped_column(Text)
    after_type: Mapped[str | None] = mapped_column(Text)
    before_details: Mapped[str | None] = mapped_column(Text)
    after_details: Mapped[str | None] = mapped_column(Text)

    block: Mapped["AuditBlock"] = relationship(back_populates="changes")


# ---------------------------------------------------------------------------
# Leaderboard (materialized, maintained from audit deltas)
# ---------------------------------------------------------------------------


class LeaderboardRow(Base):
    __tablename__ = "leaderboard"
    __table_args__ = (
        Index("idx_leaderboard_score", "score"),
    )

    handle: Mapped[str] = mapped_column(Text, primary_key=True)
    platform: Mapped[str] = mapped_column(Text, nullable=False)
    username: Mapped[str] = mapped_column(Text, nullable=False)
    vouched_count: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    denounced_count: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    repositories_count: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    score: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    updated_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), nullable=False, default=_utcnow
    )


# ---------------------------------------------------------------------------
# Concurrency guard (ephemeral, self-pruning)
# ---------------------------------------------------------------------------


class IndexLock(Base):
    __tablename__ = "index_locks"

    repo_slug: Mapped[str] = mapped_column(Text, primary_key=True)
    expires_at_ms: Mapped[int] = mapped_column(BigInteger, nullable=False)


class RateBucket(Base):
    __tablename__ = "rate_buckets"
    __table_args__ = (
        Index("idx_rate_buckets_reset", "reset_at_ms"),
    )

    key: Mapped[str] = mapped_column(Text, primary_key=True)
    count: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    reset_at_ms: Mapped[int] = mapped_column(BigInteger, nullable=False)
